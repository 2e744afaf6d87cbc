import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..api.dependencies import get_app_settings, get_db
from ..config import Settings

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
def health(db: Session = Depends(get_db), settings: Settings = Depends(get_app_settings)) -> Dict[str, Any]:
    """Report storage reachability and the non-sensitive credit policy."""
    database_ok = True
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check could not reach the database.")
        database_ok = False
    return {
        "status": "ok" if database_ok else "degraded",
        "database": database_ok,
        "credit_source_priority": list(settings.credit_source_priority),
        "webhook_signature_required": bool(settings.payment_webhook_secret),
    }
