from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session, selectinload

from ..api.dependencies import get_app_settings, get_db
from ..config import Settings
from ..core.errors import UnknownElection
from ..models.models import Election
from ..schemas.schemas import (
    AllowedVoterCreate,
    AllowedVoterRead,
    AuthorizationRead,
    CandidateCountRead,
    CandidateCreate,
    CandidateRead,
    ElectionCancelRead,
    ElectionCreate,
    ElectionRead,
    ElectionResultsRead,
    EligibilityCheck,
    EligibilityRead,
    OperatorAction,
    ReceiptRead,
    ReconciliationRead,
    ReleaseRead,
    TallyRead,
    VoteCast,
)
from ..services import elections as election_service
from ..services import tally as tally_service
from ..services.authorization import activate_election, cancel_election
from ..services.votes import cast_vote, check_eligibility

router = APIRouter()


def _load_election(db: Session, election_id: int) -> Election:
    election = db.get(
        Election,
        election_id,
        options=[selectinload(Election.candidates)],
        populate_existing=True,
    )
    if not election:
        raise UnknownElection(f"Election {election_id} not found.", election_id=election_id)
    return election


@router.post("/", response_model=ElectionRead, status_code=status.HTTP_201_CREATED)
def create_election(payload: ElectionCreate, db: Session = Depends(get_db)) -> ElectionRead:
    election = election_service.create_election(
        db,
        payload.organizer_id,
        payload.title,
        payload.voter_limit,
        description=payload.description,
        organization_id=payload.organization_id,
        plan_type=payload.plan_type,
        starts_at=payload.starts_at,
        ends_at=payload.ends_at,
    )
    return ElectionRead.model_validate(_load_election(db, election.id))


@router.get("/{election_id}", response_model=ElectionRead)
def get_election(election_id: int, db: Session = Depends(get_db)) -> ElectionRead:
    return ElectionRead.model_validate(_load_election(db, election_id))


@router.post("/{election_id}/candidates", response_model=CandidateRead, status_code=status.HTTP_201_CREATED)
def add_candidate(election_id: int, payload: CandidateCreate, db: Session = Depends(get_db)) -> CandidateRead:
    candidate = election_service.add_candidate(db, election_id, payload.position, payload.name, payload.manifesto)
    return CandidateRead.model_validate(candidate)


@router.post("/{election_id}/voters", response_model=AllowedVoterRead, status_code=status.HTTP_201_CREATED)
def add_voter(election_id: int, payload: AllowedVoterCreate, db: Session = Depends(get_db)) -> AllowedVoterRead:
    voter = election_service.add_allowed_voter(
        db,
        election_id,
        payload.student_id,
        name=payload.name,
        email=payload.email,
    )
    return AllowedVoterRead.model_validate(voter)


@router.post("/{election_id}/activate", response_model=AuthorizationRead)
def activate(
    election_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> AuthorizationRead:
    return AuthorizationRead.model_validate(activate_election(db, election_id, settings=settings))


@router.post("/{election_id}/cancel", response_model=ElectionCancelRead)
def cancel(
    election_id: int,
    payload: Optional[OperatorAction] = None,
    db: Session = Depends(get_db),
) -> ElectionCancelRead:
    result = cancel_election(db, election_id, actor=payload.actor if payload else None)
    election = _load_election(db, election_id)
    return ElectionCancelRead(
        election_id=election.id,
        status=election.status,
        release=ReleaseRead.model_validate(result) if result else None,
    )


@router.post("/{election_id}/close", response_model=ElectionRead)
def close(
    election_id: int,
    payload: Optional[OperatorAction] = None,
    db: Session = Depends(get_db),
) -> ElectionRead:
    election_service.close_election(db, election_id, actor=payload.actor if payload else None)
    return ElectionRead.model_validate(_load_election(db, election_id))


@router.post("/{election_id}/votes", response_model=ReceiptRead, status_code=status.HTTP_201_CREATED)
def vote(
    election_id: int,
    payload: VoteCast,
    request: Request,
    db: Session = Depends(get_db),
) -> ReceiptRead:
    receipt = cast_vote(
        db,
        election_id,
        payload.voter_id,
        payload.candidate_id,
        payload.position,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return ReceiptRead.model_validate(receipt)


@router.post("/{election_id}/eligibility", response_model=EligibilityRead)
def eligibility(election_id: int, payload: EligibilityCheck, db: Session = Depends(get_db)) -> EligibilityRead:
    return EligibilityRead.model_validate(check_eligibility(db, election_id, payload.voter_id))


@router.get("/{election_id}/positions/{position}/tally", response_model=TallyRead)
def position_tally(election_id: int, position: str, db: Session = Depends(get_db)) -> TallyRead:
    counts = tally_service.tally(db, election_id, position)
    return TallyRead(
        election_id=election_id,
        position=position,
        results=[CandidateCountRead.model_validate(count) for count in counts],
    )


@router.get("/{election_id}/results", response_model=ElectionResultsRead)
def results(election_id: int, db: Session = Depends(get_db)) -> ElectionResultsRead:
    grouped = tally_service.election_results(db, election_id)
    return ElectionResultsRead(
        election_id=election_id,
        positions={
            position: [CandidateCountRead.model_validate(count) for count in counts]
            for position, counts in grouped.items()
        },
    )


@router.get("/{election_id}/reconciliation", response_model=ReconciliationRead)
def reconciliation(election_id: int, db: Session = Depends(get_db)) -> ReconciliationRead:
    return ReconciliationRead.model_validate(tally_service.reconcile(db, election_id))


@router.post("/{election_id}/reconciliation/repair", response_model=ReconciliationRead)
def repair_counters(
    election_id: int,
    payload: Optional[OperatorAction] = None,
    db: Session = Depends(get_db),
) -> ReconciliationRead:
    report = tally_service.repair(db, election_id, actor=payload.actor if payload else None)
    return ReconciliationRead.model_validate(report)
