import sys
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest
from sqlalchemy.orm import Session

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from votecredit.config import build_engine  # noqa: E402
from votecredit.constants import ElectionStatus  # noqa: E402
from votecredit.core.database import Database  # noqa: E402
from votecredit.models.models import (  # noqa: E402
    Account,
    AllowedVoter,
    Candidate,
    Election,
    LegacyCreditGrant,
    UnlimitedPackage,
)
from votecredit.services.elections import ensure_pricing_plans  # noqa: E402


@pytest.fixture
def database(tmp_path) -> Generator[Database, None, None]:
    """A file-backed SQLite database so several threads can share it."""
    db_path = tmp_path / "test.db"
    db = Database(build_engine(f"sqlite:///{db_path}"))
    db.create_all()
    with db.session() as session:
        ensure_pricing_plans(session)
    try:
        yield db
    finally:
        db.dispose()


@pytest.fixture
def db_session(database: Database) -> Generator[Session, None, None]:
    """Provide a fresh SQLite database for each test."""
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory(database: Database) -> Callable[[], Session]:
    return database.SessionLocal


@pytest.fixture
def create_account(db_session: Session) -> Callable[..., Account]:
    counter = {"value": 0}

    def _create(balance: int = 0, phone_number: Optional[str] = None, name: str = "Organizer") -> Account:
        counter["value"] += 1
        account = Account(
            display_name=f"{name} {counter['value']}",
            email=f"organizer{counter['value']}@example.com",
            phone_number=phone_number,
            shared_credit_balance=balance,
        )
        db_session.add(account)
        db_session.commit()
        return account

    return _create


@pytest.fixture
def grant_unlimited(db_session: Session) -> Callable[..., UnlimitedPackage]:
    def _grant(account: Account, days_left: int = 10, days_ago: int = 1) -> UnlimitedPackage:
        now = datetime.now(timezone.utc)
        package = UnlimitedPackage(
            account_id=account.id,
            valid_from=now - timedelta(days=days_ago),
            valid_until=now + timedelta(days=days_left),
        )
        db_session.add(package)
        db_session.commit()
        return package

    return _grant


@pytest.fixture
def grant_legacy(db_session: Session) -> Callable[..., LegacyCreditGrant]:
    def _grant(account: Account, amount: int, remaining: Optional[int] = None, age_days: int = 0) -> LegacyCreditGrant:
        grant = LegacyCreditGrant(
            account_id=account.id,
            plan_code="legacy",
            amount=amount,
            remaining=amount if remaining is None else remaining,
            granted_at=datetime.now(timezone.utc) - timedelta(days=age_days),
        )
        db_session.add(grant)
        db_session.commit()
        return grant

    return _grant


@pytest.fixture
def create_election(db_session: Session) -> Callable[..., Election]:
    def _create(
        organizer: Account,
        voter_limit: int = 100,
        status: str = ElectionStatus.ACTIVE,
        starts_in_hours: int = -1,
        ends_in_hours: int = 24,
    ) -> Election:
        now = datetime.now(timezone.utc)
        election = Election(
            organizer_id=organizer.id,
            title="Student Council 2026",
            status=status,
            voter_limit=voter_limit,
            starts_at=now + timedelta(hours=starts_in_hours),
            ends_at=now + timedelta(hours=ends_in_hours),
        )
        db_session.add(election)
        db_session.commit()
        return election

    return _create


@pytest.fixture
def add_candidate(db_session: Session) -> Callable[..., Candidate]:
    def _add(election: Election, name: str, position: str = "President") -> Candidate:
        candidate = Candidate(election_id=election.id, position=position, name=name, vote_count=0)
        db_session.add(candidate)
        db_session.commit()
        return candidate

    return _add


@pytest.fixture
def enroll_voter(db_session: Session) -> Callable[..., AllowedVoter]:
    def _enroll(election: Election, student_id: str) -> AllowedVoter:
        voter = AllowedVoter(election_id=election.id, student_id=student_id)
        db_session.add(voter)
        db_session.commit()
        return voter

    return _enroll
