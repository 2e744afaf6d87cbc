from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..api.dependencies import get_app_settings, get_db
from ..config import Settings
from ..schemas.schemas import AccountCreate, AccountRead, CreditSummaryRead
from ..services.authorization import credit_summary
from ..services.elections import create_account

router = APIRouter()


@router.post("/", response_model=AccountRead, status_code=status.HTTP_201_CREATED)
def register_account(payload: AccountCreate, db: Session = Depends(get_db)) -> AccountRead:
    account = create_account(
        db,
        payload.display_name,
        email=payload.email,
        phone_number=payload.phone_number,
    )
    return AccountRead.model_validate(account)


@router.get("/{account_id}/credits", response_model=CreditSummaryRead)
def get_account_credits(
    account_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> CreditSummaryRead:
    return CreditSummaryRead.model_validate(credit_summary(db, account_id, settings=settings))
