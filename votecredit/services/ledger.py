"""Ledger store: payment transactions and account credit balances.

Every balance mutation is a single conditional SQL statement so that
concurrent workers (threads or separate service instances) cannot lose an
update or drive a balance below zero. ``increment_balance`` and
``decrement_balance`` stage work in the caller's transaction; the other
operations commit and retry transient contention themselves.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..constants import UNLIMITED_VOTER_LIMIT, LedgerEntryType, TransactionStatus
from ..core.errors import (
    AlreadySettled,
    DuplicateTransaction,
    InsufficientCredit,
    TransactionNotClaimable,
    UnknownAccount,
    UnknownTransaction,
)
from ..core.retry import Contention, run_with_retry
from ..models.models import (
    Account,
    CreditLedgerEntry,
    PaymentTransaction,
    PricingPlan,
    UnlimitedPackage,
    utcnow,
)
from .audit import audit_log

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionRef:
    id: int
    transaction_id: str
    status: str
    account_id: Optional[int]


@dataclass(frozen=True)
class CreditGrant:
    credits: int
    unlimited: bool = False
    plan_code: Optional[str] = None


@dataclass(frozen=True)
class SettlementResult:
    transaction_id: str
    status: str
    credited: bool
    credits: int
    unlimited: bool = False


def credit_equivalent(session: Session, amount: int, settings: Optional[Settings] = None) -> CreditGrant:
    """Translate a paid amount (minor units) into election credit."""
    settings = settings or get_settings()
    plan = (
        session.query(PricingPlan)
        .filter(PricingPlan.enabled.is_(True), PricingPlan.price == amount)
        .order_by(PricingPlan.id.asc())
        .first()
    )
    if plan:
        if plan.voter_limit == UNLIMITED_VOTER_LIMIT:
            return CreditGrant(credits=0, unlimited=True, plan_code=plan.code)
        return CreditGrant(credits=plan.voter_limit, plan_code=plan.code)
    return CreditGrant(credits=amount // settings.minor_units_per_credit)


def get_balance(session: Session, account_id: int) -> int:
    balance = session.query(Account.shared_credit_balance).filter(Account.id == account_id).scalar()
    if balance is None:
        raise UnknownAccount(f"Account {account_id} not found.", account_id=account_id)
    return int(balance)


def _append_entry(
    session: Session,
    account_id: int,
    entry_type: str,
    credits: int,
    balance_after: int,
    transaction_id: Optional[str] = None,
    election_id: Optional[int] = None,
    description: Optional[str] = None,
) -> CreditLedgerEntry:
    entry = CreditLedgerEntry(
        account_id=account_id,
        entry_type=entry_type,
        credits=credits,
        balance_after=balance_after,
        transaction_id=transaction_id,
        election_id=election_id,
        description=description,
    )
    session.add(entry)
    return entry


def increment_balance(
    session: Session,
    account_id: int,
    credits: int,
    *,
    entry_type: str,
    transaction_id: Optional[str] = None,
    election_id: Optional[int] = None,
    description: Optional[str] = None,
) -> int:
    """Atomically add ``credits`` to the shared balance. Does not commit."""
    if credits < 0:
        raise ValueError("credits must be non-negative")
    updated = (
        session.query(Account)
        .filter(Account.id == account_id)
        .update(
            {Account.shared_credit_balance: Account.shared_credit_balance + credits},
            synchronize_session=False,
        )
    )
    if not updated:
        raise UnknownAccount(f"Account {account_id} not found.", account_id=account_id)
    new_balance = get_balance(session, account_id)
    _append_entry(session, account_id, entry_type, credits, new_balance, transaction_id, election_id, description)
    return new_balance


def decrement_balance(
    session: Session,
    account_id: int,
    amount: int,
    *,
    election_id: Optional[int] = None,
    description: Optional[str] = None,
) -> int:
    """Compare-and-decrement the shared balance. Does not commit.

    The ``balance >= amount`` guard is evaluated by the database inside the
    UPDATE, so two concurrent debits can never both succeed against the same
    credits.
    """
    if amount <= 0:
        raise ValueError("amount must be positive")
    updated = (
        session.query(Account)
        .filter(Account.id == account_id, Account.shared_credit_balance >= amount)
        .update(
            {Account.shared_credit_balance: Account.shared_credit_balance - amount},
            synchronize_session=False,
        )
    )
    if not updated:
        available = get_balance(session, account_id)
        raise InsufficientCredit(
            f"Account {account_id} has {available} credits; {amount} required.",
            account_id=account_id,
            required=amount,
            available=available,
        )
    new_balance = get_balance(session, account_id)
    _append_entry(session, account_id, LedgerEntryType.DEBIT, -amount, new_balance, election_id=election_id, description=description)
    return new_balance


def debit_credit(session: Session, account_id: int, amount: int) -> int:
    """Debit the shared balance as its own unit of work; returns the new balance."""

    def _debit() -> int:
        new_balance = decrement_balance(session, account_id, amount)
        session.commit()
        return new_balance

    return run_with_retry(session, _debit, label=f"debit account {account_id}")


def record_transaction(
    session: Session,
    transaction_id: str,
    phone_number: Optional[str],
    amount: int,
    *,
    account_id: Optional[int] = None,
    raw_payload: Optional[dict[str, Any]] = None,
) -> TransactionRef:
    """Insert a Pending transaction; the unique index rejects a second insert."""
    if not transaction_id:
        raise ValueError("transaction_id is required")
    if amount <= 0:
        raise ValueError("amount must be positive")

    def _record() -> TransactionRef:
        txn = PaymentTransaction(
            transaction_id=transaction_id,
            phone_number=phone_number,
            amount=amount,
            account_id=account_id,
            status=TransactionStatus.PENDING,
            raw_payload=raw_payload,
        )
        session.add(txn)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise DuplicateTransaction(
                f"Transaction {transaction_id} already recorded.",
                transaction_id=transaction_id,
            )
        ref = TransactionRef(id=txn.id, transaction_id=txn.transaction_id, status=txn.status, account_id=txn.account_id)
        session.commit()
        return ref

    return run_with_retry(session, _record, label=f"record transaction {transaction_id}")


def _load_transaction(session: Session, transaction_id: str) -> Optional[PaymentTransaction]:
    return (
        session.query(PaymentTransaction)
        .filter(PaymentTransaction.transaction_id == transaction_id)
        .populate_existing()
        .first()
    )


def _grant_unlimited_package(
    session: Session,
    txn: PaymentTransaction,
    now: datetime,
    settings: Settings,
    entry_type: str = LedgerEntryType.UNLIMITED_PURCHASE,
) -> None:
    package = UnlimitedPackage(
        account_id=txn.account_id,
        transaction_id=txn.transaction_id,
        valid_from=now,
        valid_until=now + timedelta(days=settings.unlimited_package_days),
    )
    session.add(package)
    balance = get_balance(session, txn.account_id)
    _append_entry(
        session,
        txn.account_id,
        entry_type,
        0,
        balance,
        transaction_id=txn.transaction_id,
        description=f"Unlimited package valid for {settings.unlimited_package_days} days",
    )


def _apply_payment_credit(
    session: Session,
    txn: PaymentTransaction,
    now: datetime,
    settings: Settings,
    entry_type: Optional[str] = None,
) -> CreditGrant:
    """Credit the owning account once; guarded by ``credited = false``.

    ``entry_type`` overrides the purchase entry type, so operator claims stay
    distinguishable in the credit history.
    """
    grant = credit_equivalent(session, txn.amount, settings)
    marked = (
        session.query(PaymentTransaction)
        .filter(PaymentTransaction.id == txn.id, PaymentTransaction.credited.is_(False))
        .update(
            {
                PaymentTransaction.credited: True,
                PaymentTransaction.credits_granted: grant.credits,
                PaymentTransaction.plan_code: grant.plan_code,
            },
            synchronize_session=False,
        )
    )
    if not marked:
        raise Contention(f"transaction {txn.transaction_id} was credited concurrently")
    if grant.unlimited:
        _grant_unlimited_package(session, txn, now, settings, entry_type or LedgerEntryType.UNLIMITED_PURCHASE)
    else:
        increment_balance(
            session,
            txn.account_id,
            grant.credits,
            entry_type=entry_type or LedgerEntryType.PURCHASE,
            transaction_id=txn.transaction_id,
            description=f"Payment {txn.transaction_id}" + (f" ({grant.plan_code})" if grant.plan_code else ""),
        )
    return grant


def settle_transaction(
    session: Session,
    transaction_id: str,
    outcome: str,
    settings: Optional[Settings] = None,
) -> SettlementResult:
    """Move a Pending transaction to a terminal status exactly once.

    The status flip and the credit are committed together; whoever wins the
    ``status = PENDING`` guard is the only caller that credits.
    """
    if outcome not in TransactionStatus.TERMINAL:
        raise ValueError(f"outcome must be one of {TransactionStatus.TERMINAL}")
    settings = settings or get_settings()

    def _settle() -> SettlementResult:
        now = utcnow()
        updated = (
            session.query(PaymentTransaction)
            .filter(
                PaymentTransaction.transaction_id == transaction_id,
                PaymentTransaction.status == TransactionStatus.PENDING,
            )
            .update(
                {PaymentTransaction.status: outcome, PaymentTransaction.settled_at: now},
                synchronize_session=False,
            )
        )
        if not updated:
            existing = _load_transaction(session, transaction_id)
            if existing is None:
                raise UnknownTransaction(f"Transaction {transaction_id} not found.", transaction_id=transaction_id)
            raise AlreadySettled(
                f"Transaction {transaction_id} is already {existing.status}.",
                transaction_id=transaction_id,
                status=existing.status,
            )

        txn = _load_transaction(session, transaction_id)
        grant = CreditGrant(credits=0)
        credited = False
        if outcome == TransactionStatus.SUCCESS:
            if txn.account_id is None:
                logger.error(
                    "Payment %s settled successfully but no account could be resolved (phone=%s); awaiting claim.",
                    transaction_id,
                    txn.phone_number,
                )
            else:
                grant = _apply_payment_credit(session, txn, now, settings)
                credited = True
        session.commit()
        return SettlementResult(
            transaction_id=transaction_id,
            status=outcome,
            credited=credited,
            credits=grant.credits,
            unlimited=grant.unlimited,
        )

    result = run_with_retry(session, _settle, label=f"settle transaction {transaction_id}")
    logger.info(
        "Settled transaction %s as %s (credited=%s, credits=%s, unlimited=%s)",
        result.transaction_id,
        result.status,
        result.credited,
        result.credits,
        result.unlimited,
    )
    return result


def claim_transaction(
    session: Session,
    transaction_id: str,
    account_id: int,
    actor: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> SettlementResult:
    """Attach a successful but unassigned payment to an account and credit it once."""
    settings = settings or get_settings()

    def _claim() -> SettlementResult:
        txn = _load_transaction(session, transaction_id)
        if txn is None:
            raise UnknownTransaction(f"Transaction {transaction_id} not found.", transaction_id=transaction_id)
        if txn.status != TransactionStatus.SUCCESS:
            raise TransactionNotClaimable(
                f"Transaction {transaction_id} is {txn.status}; only successful payments can be claimed.",
                transaction_id=transaction_id,
            )
        if txn.credited:
            raise AlreadySettled(
                f"Transaction {transaction_id} has already been credited.",
                transaction_id=transaction_id,
                status=txn.status,
            )
        if session.get(Account, account_id) is None:
            raise UnknownAccount(f"Account {account_id} not found.", account_id=account_id)

        previous_account = txn.account_id
        txn.account_id = account_id
        session.flush()
        grant = _apply_payment_credit(session, txn, utcnow(), settings, entry_type=LedgerEntryType.CLAIM)
        audit_log(
            db_session=session,
            actor=actor,
            action="payments.transaction.claim",
            target_entity_type="PaymentTransaction",
            target_entity_id=transaction_id,
            before={"account_id": previous_account},
            after={"account_id": account_id, "credits": grant.credits, "unlimited": grant.unlimited},
        )
        session.commit()
        return SettlementResult(
            transaction_id=transaction_id,
            status=TransactionStatus.SUCCESS,
            credited=True,
            credits=grant.credits,
            unlimited=grant.unlimited,
        )

    return run_with_retry(session, _claim, label=f"claim transaction {transaction_id}")
