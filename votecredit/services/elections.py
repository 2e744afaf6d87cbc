from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..constants import DEFAULT_PRICING_PLANS, ElectionStatus
from ..core.errors import (
    DuplicateAccount,
    DuplicateVoter,
    ElectionStateConflict,
    UnknownAccount,
    UnknownElection,
)
from ..core.retry import run_with_retry
from ..models.models import (
    Account,
    AllowedVoter,
    Candidate,
    Election,
    PricingPlan,
    ensure_utc,
    utcnow,
)
from .audit import audit_log
from .payments import normalize_phone

logger = logging.getLogger(__name__)


def ensure_pricing_plans(session: Session) -> None:
    existing = {plan.code: plan for plan in session.query(PricingPlan).all()}
    updated = False
    for entry in DEFAULT_PRICING_PLANS:
        plan = existing.get(entry["code"])
        if not plan:
            session.add(PricingPlan(**entry))
            updated = True
            continue
        for field in ("name", "price", "voter_limit"):
            if getattr(plan, field) != entry[field]:
                setattr(plan, field, entry[field])
                updated = True
    if updated:
        session.commit()


def create_account(
    session: Session,
    display_name: str,
    *,
    email: Optional[str] = None,
    phone_number: Optional[str] = None,
    shared_credit_balance: int = 0,
) -> Account:
    def _create() -> Account:
        account = Account(
            display_name=display_name,
            email=email.lower() if email else None,
            phone_number=normalize_phone(phone_number) if phone_number else None,
            shared_credit_balance=shared_credit_balance,
        )
        session.add(account)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise DuplicateAccount(f"An account with email {email} already exists.", email=email)
        session.refresh(account)
        return account

    account = run_with_retry(session, _create, label="create account")
    logger.info("Account %s created.", account.id)
    return account


def get_election(session: Session, election_id: int) -> Election:
    election = session.get(Election, election_id)
    if election is None:
        raise UnknownElection(f"Election {election_id} not found.", election_id=election_id)
    return election


def create_election(
    session: Session,
    organizer_id: int,
    title: str,
    voter_limit: int,
    *,
    description: Optional[str] = None,
    organization_id: Optional[str] = None,
    plan_type: Optional[str] = None,
    starts_at: Optional[datetime] = None,
    ends_at: Optional[datetime] = None,
) -> Election:
    """Create a DRAFT election; credit is only taken when it is activated."""
    if voter_limit <= 0:
        raise ValueError("voter_limit must be positive")
    if starts_at and ends_at and ensure_utc(ends_at) <= ensure_utc(starts_at):
        raise ValueError("ends_at must be after starts_at")

    def _create() -> Election:
        organizer = session.get(Account, organizer_id)
        if organizer is None or organizer.is_archived:
            raise UnknownAccount(f"Account {organizer_id} not found.", account_id=organizer_id)
        election = Election(
            organizer_id=organizer_id,
            organization_id=organization_id,
            title=title,
            description=description,
            status=ElectionStatus.DRAFT,
            plan_type=plan_type,
            voter_limit=voter_limit,
            starts_at=starts_at,
            ends_at=ends_at,
        )
        session.add(election)
        session.commit()
        session.refresh(election)
        return election

    return run_with_retry(session, _create, label=f"create election for account {organizer_id}")


def _require_draft(election: Election) -> None:
    if election.status != ElectionStatus.DRAFT:
        raise ElectionStateConflict(
            f"Election {election.id} is {election.status}; its ballot can only change while DRAFT.",
            election_id=election.id,
            status=election.status,
        )


def add_candidate(
    session: Session,
    election_id: int,
    position: str,
    name: str,
    manifesto: Optional[str] = None,
) -> Candidate:
    def _add() -> Candidate:
        election = get_election(session, election_id)
        _require_draft(election)
        candidate = Candidate(
            election_id=election.id,
            position=position.strip(),
            name=name.strip(),
            manifesto=manifesto,
            vote_count=0,
        )
        session.add(candidate)
        session.commit()
        session.refresh(candidate)
        return candidate

    return run_with_retry(session, _add, label=f"add candidate to election {election_id}")


def add_allowed_voter(
    session: Session,
    election_id: int,
    student_id: str,
    *,
    name: Optional[str] = None,
    email: Optional[str] = None,
) -> AllowedVoter:
    def _add() -> AllowedVoter:
        election = get_election(session, election_id)
        if election.status == ElectionStatus.CLOSED:
            raise ElectionStateConflict(f"Election {election_id} is closed.", election_id=election_id)
        roll_size = session.query(AllowedVoter).filter(AllowedVoter.election_id == election_id).count()
        if roll_size >= election.voter_limit:
            raise ElectionStateConflict(
                f"Election {election_id} already has {roll_size} voters; its limit is {election.voter_limit}.",
                election_id=election_id,
                voter_limit=election.voter_limit,
            )

        voter = AllowedVoter(election_id=election_id, student_id=student_id.strip(), name=name, email=email)
        session.add(voter)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise DuplicateVoter(
                f"Voter {student_id} is already on the roll of election {election_id}.",
                election_id=election_id,
            )
        session.refresh(voter)
        return voter

    return run_with_retry(session, _add, label=f"add voter to election {election_id}")


def close_election(session: Session, election_id: int, actor: Optional[str] = None) -> Election:
    """Stop voting on an ACTIVE election. Debited credit is kept."""

    def _close() -> None:
        now = utcnow()
        closed = (
            session.query(Election)
            .filter(Election.id == election_id, Election.status == ElectionStatus.ACTIVE)
            .update({Election.status: ElectionStatus.CLOSED, Election.updated_at: now}, synchronize_session=False)
        )
        if not closed:
            election = get_election(session, election_id)
            raise ElectionStateConflict(
                f"Election {election_id} is {election.status}; only ACTIVE elections can be closed.",
                election_id=election_id,
                status=election.status,
            )
        audit_log(
            db_session=session,
            actor=actor,
            action="elections.close",
            target_entity_type="Election",
            target_entity_id=str(election_id),
            before={"status": ElectionStatus.ACTIVE},
            after={"status": ElectionStatus.CLOSED},
        )
        session.commit()

    run_with_retry(session, _close, label=f"close election {election_id}")
    election = session.get(Election, election_id, populate_existing=True)
    logger.info("Election %s closed.", election_id)
    return election


def close_expired_elections(session: Session, now: Optional[datetime] = None) -> List[int]:
    """Close every ACTIVE election whose end time has passed.

    Returns only the ids this run moved to CLOSED; an election closed by
    someone else in the meantime is left out.
    """
    moment = now or utcnow()

    def _close() -> List[int]:
        candidates = (
            session.query(Election.id, Election.ends_at)
            .filter(Election.status == ElectionStatus.ACTIVE, Election.ends_at.isnot(None))
            .order_by(Election.id.asc())
            .all()
        )
        closed_ids = []
        for election_id, ends_at in candidates:
            if ensure_utc(ends_at) >= moment:
                continue
            changed = (
                session.query(Election)
                .filter(Election.id == election_id, Election.status == ElectionStatus.ACTIVE)
                .update({Election.status: ElectionStatus.CLOSED, Election.updated_at: moment}, synchronize_session=False)
            )
            if changed:
                closed_ids.append(election_id)
        session.commit()
        return closed_ids

    closed_ids = run_with_retry(session, _close, label="close expired elections")
    logger.info("Closed %s expired elections.", len(closed_ids))
    return closed_ids
