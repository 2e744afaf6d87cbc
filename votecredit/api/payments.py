import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from ..api.dependencies import get_app_settings, get_db
from ..config import Settings
from ..core.errors import InvalidNotification
from ..schemas.schemas import PaymentAck, SettlementRead, TransactionClaim
from ..services import ledger
from ..services.payments import handle_notification, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook", response_model=PaymentAck)
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> PaymentAck:
    body = await request.body()
    verify_signature(body, request.headers.get(settings.payment_signature_header), settings.payment_webhook_secret)
    try:
        payload = json.loads(body or b"null")
    except ValueError:
        raise InvalidNotification("Notification body is not valid JSON.")

    ack = await run_in_threadpool(handle_notification, db, payload, settings)
    return PaymentAck.model_validate(ack)


@router.post("/transactions/{transaction_id}/claim", response_model=SettlementRead)
def claim_transaction(
    transaction_id: str,
    payload: TransactionClaim,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> SettlementRead:
    result = ledger.claim_transaction(db, transaction_id, payload.account_id, actor=payload.actor, settings=settings)
    return SettlementRead.model_validate(result)
