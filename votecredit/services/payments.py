"""Payment reconciler for mobile-money webhook notifications.

The gateway delivers at least once, possibly out of order and concurrently.
Every notification funnels into ``ledger.record_transaction`` and
``ledger.settle_transaction``; their uniqueness and ``status = PENDING``
guards make replays harmless, so this module only has to parse, resolve the
paying account and translate ledger outcomes into an acknowledgement.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..constants import GATEWAY_FAILED_STATUSES, GATEWAY_SUCCESS_STATUSES, TransactionStatus
from ..core.errors import AlreadySettled, DuplicateTransaction, InvalidNotification, UnknownTransaction
from ..core.retry import run_with_retry
from ..models.models import Account, PaymentTransaction
from . import ledger

logger = logging.getLogger(__name__)

PAYMENT_TOPICS = {"buygoods_transaction_received", "incoming_payment"}
# Largest amount a signed 64-bit INTEGER column can hold.
MAX_MINOR_UNITS = 2**63 - 1


@dataclass(frozen=True)
class Notification:
    transaction_id: str
    amount: int
    status: str
    phone_number: Optional[str] = None
    account_id: Optional[int] = None


@dataclass(frozen=True)
class Ack:
    transaction_id: Optional[str]
    status: Optional[str]
    credited: bool = False
    duplicate: bool = False
    ignored: bool = False
    received: bool = True


def normalize_phone(phone_number: Optional[str], country_code: str = "254") -> Optional[str]:
    """Return ``phone_number`` in ``+<country><subscriber>`` form."""
    if not phone_number:
        return None
    phone = "".join(str(phone_number).split())
    if not phone:
        return None
    if phone.startswith("0"):
        return f"+{country_code}{phone[1:]}"
    if phone.startswith(country_code):
        return f"+{phone}"
    if not phone.startswith("+"):
        return f"+{country_code}{phone}"
    return phone


def map_gateway_status(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in GATEWAY_SUCCESS_STATUSES:
        return TransactionStatus.SUCCESS
    if normalized in GATEWAY_FAILED_STATUSES:
        return TransactionStatus.FAILED
    return TransactionStatus.PENDING


def _parse_minor_units(value: Any, *, major_units: bool) -> int:
    if isinstance(value, Mapping):
        value = value.get("value")
    if value is None or isinstance(value, bool):
        raise InvalidNotification("Notification amount is missing.")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise InvalidNotification(f"Notification amount {value!r} is not a number.") from None
    if not amount.is_finite():
        raise InvalidNotification(f"Notification amount {value!r} is not a finite number.")
    if major_units:
        amount = amount * 100
    if amount != amount.to_integral_value():
        raise InvalidNotification(f"Notification amount {value!r} is not a whole number of minor units.")
    if amount <= 0:
        raise InvalidNotification("Notification amount must be positive.")
    if amount > MAX_MINOR_UNITS:
        raise InvalidNotification(f"Notification amount {value!r} exceeds the storable maximum.")
    return int(amount)


def _parse_account_id(value: Any) -> Optional[int]:
    if value in (None, "", "guest"):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_notification(payload: Any, settings: Optional[Settings] = None) -> Optional[Notification]:
    """Parse a flat or enveloped gateway payload.

    Returns ``None`` for envelopes whose topic is not a payment; those are
    acknowledged and ignored. Raises ``InvalidNotification`` for anything
    that cannot be understood.
    """
    settings = settings or get_settings()
    if not isinstance(payload, Mapping):
        raise InvalidNotification("Notification body must be a JSON object.")

    if "event" in payload or "topic" in payload:
        topic = payload.get("topic")
        if topic not in PAYMENT_TOPICS:
            logger.info("Ignoring gateway notification with topic %s", topic)
            return None
        event = payload.get("event") or {}
        resource = event.get("resource") if isinstance(event, Mapping) else None
        if not isinstance(resource, Mapping):
            raise InvalidNotification("Notification event has no resource.")
        transaction_id = resource.get("reference") or resource.get("id")
        metadata = resource.get("metadata")
        if not isinstance(metadata, Mapping):
            metadata = {}
        amount = _parse_minor_units(resource.get("amount"), major_units=True)
        phone_number = resource.get("sender_phone_number")
        status = resource.get("status")
        account_id = _parse_account_id(metadata.get("account_id") or metadata.get("user_id"))
    else:
        transaction_id = payload.get("transactionId") or payload.get("transaction_id")
        amount = _parse_minor_units(payload.get("amount"), major_units=False)
        phone_number = payload.get("phoneNumber") or payload.get("phone_number")
        status = payload.get("status")
        account_id = _parse_account_id(payload.get("accountId") or payload.get("account_id"))

    if not transaction_id or not str(transaction_id).strip():
        raise InvalidNotification("Notification has no transaction id.")
    return Notification(
        transaction_id=str(transaction_id).strip(),
        amount=amount,
        status=map_gateway_status(status),
        phone_number=normalize_phone(phone_number, settings.default_phone_country_code),
        account_id=account_id,
    )


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """Check the HMAC-SHA256 signature of a raw webhook body when a secret is configured."""
    if not secret:
        return
    if not signature:
        raise InvalidNotification("Missing webhook signature.")
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise InvalidNotification("Webhook signature mismatch.")


def resolve_account(
    session: Session,
    account_id: Optional[int],
    phone_number: Optional[str],
    country_code: str = "254",
) -> Optional[int]:
    """Find the paying account by explicit id first, then by phone number."""

    def _resolve() -> Optional[int]:
        if account_id is not None:
            account = session.get(Account, account_id)
            if account and not account.is_archived:
                return account.id
        if phone_number:
            prefix = f"+{country_code}"
            local = "0" + phone_number[len(prefix):] if phone_number.startswith(prefix) else None
            candidates = [phone_number] + ([local] if local else [])
            account = (
                session.query(Account)
                .filter(Account.phone_number.in_(candidates), Account.archived_at.is_(None))
                .order_by(Account.id.asc())
                .first()
            )
            if account:
                return account.id
        return None

    return run_with_retry(session, _resolve, label="resolve paying account")


def _attach_account(session: Session, transaction_id: str, account_id: int) -> None:
    """Fill in the owner of a still-pending transaction recorded before the account was known."""

    def _attach() -> int:
        updated = (
            session.query(PaymentTransaction)
            .filter(
                PaymentTransaction.transaction_id == transaction_id,
                PaymentTransaction.account_id.is_(None),
                PaymentTransaction.status == TransactionStatus.PENDING,
            )
            .update({PaymentTransaction.account_id: account_id}, synchronize_session=False)
        )
        session.commit()
        return updated

    updated = run_with_retry(session, _attach, label=f"attach account to transaction {transaction_id}")
    if updated:
        logger.info("Transaction %s attached to account %s", transaction_id, account_id)


def handle_notification(session: Session, payload: Any, settings: Optional[Settings] = None) -> Ack:
    """Record and settle one gateway notification; safe to call any number of times."""
    settings = settings or get_settings()
    notification = parse_notification(payload, settings)
    if notification is None:
        return Ack(transaction_id=None, status=None, ignored=True)

    account_id = resolve_account(
        session,
        notification.account_id,
        notification.phone_number,
        settings.default_phone_country_code,
    )
    duplicate = False
    try:
        ledger.record_transaction(
            session,
            notification.transaction_id,
            notification.phone_number,
            notification.amount,
            account_id=account_id,
            raw_payload=dict(payload),
        )
    except DuplicateTransaction:
        duplicate = True
        logger.info("Notification for known transaction %s", notification.transaction_id)
        if account_id is not None:
            _attach_account(session, notification.transaction_id, account_id)

    if notification.status == TransactionStatus.PENDING:
        return Ack(transaction_id=notification.transaction_id, status=TransactionStatus.PENDING, duplicate=duplicate)

    try:
        result = ledger.settle_transaction(session, notification.transaction_id, notification.status, settings)
    except AlreadySettled as exc:
        logger.info("Replayed notification for settled transaction %s ignored", notification.transaction_id)
        return Ack(
            transaction_id=notification.transaction_id,
            status=exc.details.get("status"),
            duplicate=True,
        )
    except UnknownTransaction:
        logger.error("Transaction %s vanished between record and settle", notification.transaction_id)
        raise
    return Ack(
        transaction_id=notification.transaction_id,
        status=result.status,
        credited=result.credited,
        duplicate=duplicate,
    )
