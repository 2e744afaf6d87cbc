"""Credit authorization gate.

Decides whether an organizer can pay for an election's voter limit and from
which credit source, and reverses that decision when an election is
cancelled before anybody voted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..constants import ElectionStatus
from ..core.errors import (
    ElectionStateConflict,
    InsufficientCredit,
    ReleaseRefused,
    UnknownAccount,
    UnknownElection,
)
from ..core.retry import run_with_retry
from ..models.models import (
    Account,
    CreditAuthorization,
    CreditAuthorizationPart,
    Election,
    Vote,
    ensure_utc,
    utcnow,
)
from .audit import audit_log
from .credit_sources import active_windows, build_sources, expired_windows, source_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Authorization:
    id: int
    account_id: int
    election_id: Optional[int]
    source: str
    amount: int
    debited: int

    @classmethod
    def from_record(cls, record: CreditAuthorization) -> "Authorization":
        return cls(
            id=record.id,
            account_id=record.account_id,
            election_id=record.election_id,
            source=record.source,
            amount=record.amount,
            debited=record.debited,
        )


@dataclass(frozen=True)
class ReleaseResult:
    authorization_id: int
    source: str
    restored: int
    already_released: bool = False


@dataclass(frozen=True)
class CreditSummary:
    account_id: int
    shared_credits: int
    unlimited_active: int
    unlimited_expired: int
    active_unlimited_until: Optional[datetime]
    legacy_remaining: int
    legacy_open_grants: int
    can_create_election: bool
    needs_credits: bool
    low_credits: bool
    warning: Optional[str]


def _load_account(session: Session, account_id: int) -> Account:
    account = session.get(Account, account_id, populate_existing=True)
    if account is None:
        raise UnknownAccount(f"Account {account_id} not found.", account_id=account_id)
    if account.is_archived:
        raise UnknownAccount(f"Account {account_id} is archived.", account_id=account_id)
    return account


def _authorize_in_transaction(
    session: Session,
    account: Account,
    voter_limit: int,
    *,
    priority: Sequence[str],
    now: datetime,
    election_id: Optional[int] = None,
) -> CreditAuthorization:
    for source in build_sources(priority):
        debit = source.try_debit(session, account, voter_limit, now, election_id=election_id)
        if debit is None:
            continue
        record = CreditAuthorization(
            account_id=account.id,
            election_id=election_id,
            source=debit.source,
            amount=voter_limit,
            debited=debit.debited,
            created_at=now,
        )
        record.parts = [
            CreditAuthorizationPart(
                amount=part.amount,
                legacy_grant_id=part.legacy_grant_id,
                unlimited_package_id=part.unlimited_package_id,
            )
            for part in debit.parts
        ]
        session.add(record)
        session.flush()
        return record

    raise InsufficientCredit(
        f"No credit source of account {account.id} covers {voter_limit} voters.",
        account_id=account.id,
        required=voter_limit,
    )


def authorize(
    session: Session,
    account_id: int,
    voter_limit: int,
    *,
    election_id: Optional[int] = None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> Authorization:
    """Reserve credit for ``voter_limit`` voters from the first source that covers it.

    Sources are tried in ``settings.credit_source_priority`` order (default:
    an unlimited window covering ``now``, then the shared balance, then legacy
    grants oldest-first). A single source must cover the whole amount. When
    none does, ``InsufficientCredit`` is raised and nothing is written.
    """
    if voter_limit <= 0:
        raise ValueError("voter_limit must be positive")
    settings = settings or get_settings()

    def _authorize() -> Authorization:
        moment = now or utcnow()
        account = _load_account(session, account_id)
        record = _authorize_in_transaction(
            session,
            account,
            voter_limit,
            priority=settings.credit_source_priority,
            now=moment,
            election_id=election_id,
        )
        result = Authorization.from_record(record)
        session.commit()
        return result

    try:
        authorization = run_with_retry(session, _authorize, label=f"authorize account {account_id}")
    except InsufficientCredit:
        logger.info("Authorization declined for account %s: %s voters not covered.", account_id, voter_limit)
        raise
    logger.info(
        "Authorized %s voters for account %s from %s credit (debited %s).",
        voter_limit,
        account_id,
        authorization.source,
        authorization.debited,
    )
    return authorization


def activate_election(
    session: Session,
    election_id: int,
    *,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> Authorization:
    """Authorize credit for the election's voter limit and move it Draft -> Active atomically."""
    settings = settings or get_settings()

    def _activate() -> Authorization:
        moment = now or utcnow()
        election = session.get(Election, election_id, populate_existing=True)
        if election is None:
            raise UnknownElection(f"Election {election_id} not found.", election_id=election_id)
        if election.status != ElectionStatus.DRAFT:
            raise ElectionStateConflict(
                f"Election {election_id} is {election.status}; only DRAFT elections can be activated.",
                election_id=election_id,
                status=election.status,
            )
        ends_at = ensure_utc(election.ends_at)
        if ends_at and ends_at <= moment:
            raise ElectionStateConflict(
                f"Election {election_id} ended at {ends_at.isoformat()}.",
                election_id=election_id,
            )

        flipped = (
            session.query(Election)
            .filter(Election.id == election_id, Election.status == ElectionStatus.DRAFT)
            .update({Election.status: ElectionStatus.ACTIVE, Election.updated_at: moment}, synchronize_session=False)
        )
        if not flipped:
            raise ElectionStateConflict(f"Election {election_id} was activated concurrently.", election_id=election_id)

        account = _load_account(session, election.organizer_id)
        record = _authorize_in_transaction(
            session,
            account,
            election.voter_limit,
            priority=settings.credit_source_priority,
            now=moment,
            election_id=election.id,
        )
        result = Authorization.from_record(record)
        session.commit()
        return result

    try:
        authorization = run_with_retry(session, _activate, label=f"activate election {election_id}")
    except InsufficientCredit:
        logger.info("Election %s stays DRAFT: insufficient credit.", election_id)
        raise
    logger.info("Election %s activated using %s credit.", election_id, authorization.source)
    return authorization


def _release_in_transaction(session: Session, record: CreditAuthorization, now: datetime) -> ReleaseResult:
    marked = (
        session.query(CreditAuthorization)
        .filter(CreditAuthorization.id == record.id, CreditAuthorization.released_at.is_(None))
        .update({CreditAuthorization.released_at: now}, synchronize_session=False)
    )
    if not marked:
        return ReleaseResult(authorization_id=record.id, source=record.source, restored=0, already_released=True)
    source_for(record.source).restore(session, record)
    return ReleaseResult(authorization_id=record.id, source=record.source, restored=record.debited)


def _votes_cast(session: Session, election_id: int) -> int:
    return int(session.query(func.count(Vote.id)).filter(Vote.election_id == election_id).scalar() or 0)


def release(session: Session, authorization_id: int, actor: Optional[str] = None) -> ReleaseResult:
    """Give back the credit debited by an authorization.

    A compensating entry, not a rewrite of history: the original debit stays in
    the credit ledger next to the release. Refused once the election has
    votes. Releasing twice is a no-op.
    """

    def _release() -> ReleaseResult:
        record = session.get(CreditAuthorization, authorization_id, populate_existing=True)
        if record is None:
            raise ReleaseRefused(f"Authorization {authorization_id} not found.", authorization_id=authorization_id)
        if record.election_id is not None and _votes_cast(session, record.election_id):
            raise ReleaseRefused(
                f"Election {record.election_id} already has votes; its credit cannot be released.",
                election_id=record.election_id,
            )
        result = _release_in_transaction(session, record, utcnow())
        if not result.already_released:
            audit_log(
                db_session=session,
                actor=actor,
                action="credits.authorization.release",
                target_entity_type="CreditAuthorization",
                target_entity_id=str(record.id),
                after={"source": result.source, "restored": result.restored},
            )
        session.commit()
        return result

    return run_with_retry(session, _release, label=f"release authorization {authorization_id}")


def cancel_election(session: Session, election_id: int, actor: Optional[str] = None) -> Optional[ReleaseResult]:
    """Close an election that never received a vote and release its credit."""

    def _cancel() -> Optional[ReleaseResult]:
        now = utcnow()
        election = session.get(Election, election_id, populate_existing=True)
        if election is None:
            raise UnknownElection(f"Election {election_id} not found.", election_id=election_id)
        if election.status == ElectionStatus.CLOSED:
            raise ElectionStateConflict(f"Election {election_id} is already closed.", election_id=election_id)
        if _votes_cast(session, election_id):
            raise ReleaseRefused(
                f"Election {election_id} already has votes and cannot be cancelled.",
                election_id=election_id,
            )
        closed = (
            session.query(Election)
            .filter(Election.id == election_id, Election.status != ElectionStatus.CLOSED)
            .update({Election.status: ElectionStatus.CLOSED, Election.updated_at: now}, synchronize_session=False)
        )
        if not closed:
            raise ElectionStateConflict(f"Election {election_id} was closed concurrently.", election_id=election_id)

        record = (
            session.query(CreditAuthorization)
            .filter(CreditAuthorization.election_id == election_id)
            .populate_existing()
            .first()
        )
        result = _release_in_transaction(session, record, now) if record else None
        audit_log(
            db_session=session,
            actor=actor,
            action="elections.cancel",
            target_entity_type="Election",
            target_entity_id=str(election_id),
            before={"status": election.status},
            after={
                "status": ElectionStatus.CLOSED,
                "released": result.restored if result else 0,
                "source": result.source if result else None,
            },
        )
        session.commit()
        return result

    result = run_with_retry(session, _cancel, label=f"cancel election {election_id}")
    logger.info("Election %s cancelled; released %s credits.", election_id, result.restored if result else 0)
    return result


def credit_summary(
    session: Session,
    account_id: int,
    *,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> CreditSummary:
    settings = settings or get_settings()
    moment = now or utcnow()

    def _summarize() -> CreditSummary:
        account = session.get(Account, account_id)
        if account is None:
            raise UnknownAccount(f"Account {account_id} not found.", account_id=account_id)

        active: List = active_windows(session, account, moment)
        expired = expired_windows(session, account, moment)
        legacy_grants = [grant for grant in account.legacy_grants if grant.remaining > 0]
        legacy_remaining = sum(grant.remaining for grant in legacy_grants)
        shared = int(account.shared_credit_balance or 0)

        can_create = shared > 0 or bool(active) or legacy_remaining > 0
        low_credits = shared < settings.low_credit_threshold and not active and legacy_remaining == 0
        warning = "Your credits are running low. Consider purchasing more." if low_credits else None
        return CreditSummary(
            account_id=account.id,
            shared_credits=shared,
            unlimited_active=len(active),
            unlimited_expired=len(expired),
            active_unlimited_until=max((ensure_utc(package.valid_until) for package in active), default=None),
            legacy_remaining=legacy_remaining,
            legacy_open_grants=len(legacy_grants),
            can_create_election=can_create,
            needs_credits=not can_create,
            low_credits=low_credits,
            warning=warning,
        )

    return run_with_retry(session, _summarize, label=f"summarize credits of account {account_id}")
