from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AccountCreate(BaseModel):
    display_name: str = Field(min_length=1)
    email: Optional[str] = None
    phone_number: Optional[str] = None


class AccountRead(BaseModel):
    id: int
    display_name: str
    email: Optional[str]
    phone_number: Optional[str]
    shared_credit_balance: int
    created_at: datetime
    archived_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class CreditSummaryRead(BaseModel):
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

    model_config = ConfigDict(from_attributes=True)


class PaymentAck(BaseModel):
    received: bool = True
    transaction_id: Optional[str] = None
    status: Optional[str] = None
    credited: bool = False
    duplicate: bool = False
    ignored: bool = False

    model_config = ConfigDict(from_attributes=True)


class TransactionClaim(BaseModel):
    account_id: int
    actor: Optional[str] = None


class SettlementRead(BaseModel):
    transaction_id: str
    status: str
    credited: bool
    credits: int
    unlimited: bool

    model_config = ConfigDict(from_attributes=True)


class ElectionCreate(BaseModel):
    organizer_id: int
    title: str = Field(min_length=1)
    description: Optional[str] = None
    organization_id: Optional[str] = None
    plan_type: Optional[str] = None
    voter_limit: int = Field(gt=0)
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_window(self) -> "ElectionCreate":
        if self.starts_at and self.ends_at and self.ends_at <= self.starts_at:
            raise ValueError("ends_at must be after starts_at")
        return self


class CandidateCreate(BaseModel):
    position: str = Field(min_length=1)
    name: str = Field(min_length=1)
    manifesto: Optional[str] = None


class CandidateRead(BaseModel):
    id: int
    election_id: int
    position: str
    name: str
    manifesto: Optional[str]
    vote_count: int

    model_config = ConfigDict(from_attributes=True)


class AllowedVoterCreate(BaseModel):
    student_id: str = Field(min_length=1)
    name: Optional[str] = None
    email: Optional[str] = None


class AllowedVoterRead(BaseModel):
    id: int
    election_id: int
    student_id: str
    name: Optional[str]
    email: Optional[str]

    model_config = ConfigDict(from_attributes=True)


class ElectionRead(BaseModel):
    id: int
    organizer_id: int
    organization_id: Optional[str]
    title: str
    description: Optional[str]
    status: str
    plan_type: Optional[str]
    voter_limit: int
    starts_at: Optional[datetime]
    ends_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    candidates: List[CandidateRead] = []

    model_config = ConfigDict(from_attributes=True)


class AuthorizationRead(BaseModel):
    id: int
    account_id: int
    election_id: Optional[int]
    source: str
    amount: int
    debited: int

    model_config = ConfigDict(from_attributes=True)


class ReleaseRead(BaseModel):
    authorization_id: int
    source: str
    restored: int
    already_released: bool

    model_config = ConfigDict(from_attributes=True)


class ElectionCancelRead(BaseModel):
    election_id: int
    status: str
    release: Optional[ReleaseRead] = None


class OperatorAction(BaseModel):
    actor: Optional[str] = None


class VoteCast(BaseModel):
    voter_id: str = Field(min_length=1)
    candidate_id: int
    position: str = Field(min_length=1)


class ReceiptRead(BaseModel):
    vote_id: int
    election_id: int
    candidate_id: int
    position: str
    cast_at: datetime

    model_config = ConfigDict(from_attributes=True)


class EligibilityCheck(BaseModel):
    voter_id: str = Field(min_length=1)


class EligibilityRead(BaseModel):
    election_id: int
    voter_id: str
    on_roll: bool
    election_open: bool
    can_vote: bool
    voted_positions: List[str]

    model_config = ConfigDict(from_attributes=True)


class CandidateCountRead(BaseModel):
    candidate_id: int
    candidate_name: str
    vote_count: int

    model_config = ConfigDict(from_attributes=True)


class TallyRead(BaseModel):
    election_id: int
    position: str
    results: List[CandidateCountRead]


class ElectionResultsRead(BaseModel):
    election_id: int
    positions: Dict[str, List[CandidateCountRead]]


class CounterMismatchRead(BaseModel):
    candidate_id: int
    position: str
    cached: int
    actual: int
    drift: int

    model_config = ConfigDict(from_attributes=True)


class ReconciliationRead(BaseModel):
    election_id: int
    candidates_checked: int
    is_consistent: bool
    mismatches: List[CounterMismatchRead]

    model_config = ConfigDict(from_attributes=True)
