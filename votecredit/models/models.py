from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship as orm_relationship

from ..config import Base
from ..constants import ElectionStatus, TransactionStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat those as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("shared_credit_balance >= 0", name="ck_accounts_balance_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    display_name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=True)
    phone_number = Column(String, nullable=True, index=True)
    shared_credit_balance = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    archived_at = Column(DateTime(timezone=True), nullable=True)

    unlimited_packages = orm_relationship(
        "UnlimitedPackage",
        back_populates="account",
        order_by="UnlimitedPackage.valid_from",
    )
    legacy_grants = orm_relationship(
        "LegacyCreditGrant",
        back_populates="account",
        order_by="LegacyCreditGrant.id",
    )
    elections = orm_relationship("Election", back_populates="organizer")
    transactions = orm_relationship("PaymentTransaction", back_populates="account")
    ledger_entries = orm_relationship(
        "CreditLedgerEntry",
        back_populates="account",
        order_by="CreditLedgerEntry.id",
    )

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None


class UnlimitedPackage(Base):
    __tablename__ = "unlimited_packages"
    __table_args__ = (
        CheckConstraint("valid_until > valid_from", name="ck_unlimited_packages_window"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    transaction_id = Column(String, nullable=True)
    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    account = orm_relationship("Account", back_populates="unlimited_packages")

    def covers(self, moment: datetime) -> bool:
        return ensure_utc(self.valid_from) <= moment < ensure_utc(self.valid_until)


class LegacyCreditGrant(Base):
    __tablename__ = "legacy_credit_grants"
    __table_args__ = (
        CheckConstraint("remaining >= 0", name="ck_legacy_grants_remaining_non_negative"),
        CheckConstraint("remaining <= amount", name="ck_legacy_grants_remaining_le_amount"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    plan_code = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)
    remaining = Column(Integer, nullable=False)
    granted_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    account = orm_relationship("Account", back_populates="legacy_grants")


class PricingPlan(Base):
    __tablename__ = "pricing_plans"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False, index=True)
    voter_limit = Column(Integer, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"
    __table_args__ = (
        Index("ix_payment_transactions_account_status", "account_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(String, unique=True, nullable=False)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)
    phone_number = Column(String, nullable=True, index=True)
    amount = Column(Integer, nullable=False)
    status = Column(String, default=TransactionStatus.PENDING, nullable=False)
    credited = Column(Boolean, default=False, nullable=False)
    credits_granted = Column(Integer, default=0, nullable=False)
    plan_code = Column(String, nullable=True)
    raw_payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)

    account = orm_relationship("Account", back_populates="transactions")

    @property
    def is_terminal(self) -> bool:
        return self.status in TransactionStatus.TERMINAL


class CreditLedgerEntry(Base):
    __tablename__ = "credit_ledger_entries"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    entry_type = Column(String, nullable=False)
    credits = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    transaction_id = Column(String, nullable=True, index=True)
    election_id = Column(Integer, ForeignKey("elections.id"), nullable=True)
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    account = orm_relationship("Account", back_populates="ledger_entries")


class Election(Base):
    __tablename__ = "elections"
    __table_args__ = (
        Index("ix_elections_organizer_status", "organizer_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    organizer_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    organization_id = Column(String, nullable=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, default=ElectionStatus.DRAFT, nullable=False, index=True)
    plan_type = Column(String, nullable=True)
    voter_limit = Column(Integer, nullable=False)
    starts_at = Column(DateTime(timezone=True), nullable=True)
    ends_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    organizer = orm_relationship("Account", back_populates="elections")
    candidates = orm_relationship("Candidate", back_populates="election", order_by="Candidate.id")
    allowed_voters = orm_relationship("AllowedVoter", back_populates="election")
    authorization = orm_relationship("CreditAuthorization", back_populates="election", uselist=False)

    def is_open_at(self, moment: datetime) -> bool:
        if self.status != ElectionStatus.ACTIVE:
            return False
        starts_at = ensure_utc(self.starts_at)
        ends_at = ensure_utc(self.ends_at)
        if starts_at and moment < starts_at:
            return False
        if ends_at and moment > ends_at:
            return False
        return True


class CreditAuthorization(Base):
    __tablename__ = "credit_authorizations"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    election_id = Column(Integer, ForeignKey("elections.id"), nullable=True, unique=True)
    source = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    debited = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    released_at = Column(DateTime(timezone=True), nullable=True)

    election = orm_relationship("Election", back_populates="authorization")
    parts = orm_relationship(
        "CreditAuthorizationPart",
        back_populates="authorization",
        cascade="all, delete-orphan",
        order_by="CreditAuthorizationPart.id",
    )


class CreditAuthorizationPart(Base):
    __tablename__ = "credit_authorization_parts"

    id = Column(Integer, primary_key=True, index=True)
    authorization_id = Column(Integer, ForeignKey("credit_authorizations.id"), nullable=False, index=True)
    legacy_grant_id = Column(Integer, ForeignKey("legacy_credit_grants.id"), nullable=True)
    unlimited_package_id = Column(Integer, ForeignKey("unlimited_packages.id"), nullable=True)
    amount = Column(Integer, nullable=False)

    authorization = orm_relationship("CreditAuthorization", back_populates="parts")


class AllowedVoter(Base):
    __tablename__ = "allowed_voters"
    __table_args__ = (
        UniqueConstraint("election_id", "student_id", name="uq_allowed_voters_election_student"),
    )

    id = Column(Integer, primary_key=True, index=True)
    election_id = Column(Integer, ForeignKey("elections.id"), nullable=False)
    student_id = Column(String, nullable=False)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    election = orm_relationship("Election", back_populates="allowed_voters")


class Candidate(Base):
    __tablename__ = "candidates"
    __table_args__ = (
        CheckConstraint("vote_count >= 0", name="ck_candidates_vote_count_non_negative"),
        Index("ix_candidates_election_position", "election_id", "position"),
    )

    id = Column(Integer, primary_key=True, index=True)
    election_id = Column(Integer, ForeignKey("elections.id"), nullable=False)
    position = Column(String, nullable=False)
    name = Column(String, nullable=False)
    manifesto = Column(Text, nullable=True)
    vote_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    election = orm_relationship("Election", back_populates="candidates")


class Vote(Base):
    __tablename__ = "votes"
    __table_args__ = (
        UniqueConstraint("election_id", "voter_id", "position", name="uq_votes_election_voter_position"),
        Index("ix_votes_election_position", "election_id", "position"),
        Index("ix_votes_election_candidate", "election_id", "candidate_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    election_id = Column(Integer, ForeignKey("elections.id"), nullable=False)
    voter_id = Column(String, nullable=False)
    candidate_id = Column(Integer, ForeignKey("candidates.id"), nullable=False)
    position = Column(String, nullable=False)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    actor = Column(String, nullable=True)
    action = Column(String, nullable=False)
    target_entity_type = Column(String, nullable=True)
    target_entity_id = Column(String, nullable=True)
    before = Column(Text, nullable=True)
    after = Column(Text, nullable=True)
