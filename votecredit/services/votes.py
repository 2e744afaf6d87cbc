from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.errors import (
    DuplicateVote,
    ElectionNotOpen,
    InvalidCandidate,
    NotAuthorized,
    UnknownElection,
    VoteError,
)
from ..core.retry import run_with_retry
from ..models.models import AllowedVoter, Candidate, Election, Vote, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Receipt:
    vote_id: int
    election_id: int
    candidate_id: int
    position: str
    cast_at: datetime


@dataclass
class Eligibility:
    election_id: int
    voter_id: str
    on_roll: bool
    election_open: bool
    voted_positions: List[str] = field(default_factory=list)

    @property
    def can_vote(self) -> bool:
        return self.on_roll and self.election_open


def _is_on_roll(session: Session, election_id: int, voter_id: str) -> bool:
    return (
        session.query(AllowedVoter.id)
        .filter(AllowedVoter.election_id == election_id, AllowedVoter.student_id == voter_id)
        .first()
        is not None
    )


def cast_vote(
    session: Session,
    election_id: int,
    voter_id: str,
    candidate_id: int,
    position: str,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Receipt:
    """Record one ballot for ``position`` and bump the candidate's counter.

    The insert and the ``vote_count + 1`` update share a transaction, so the
    cached counter can never drift from the votes table through this path.
    The unique (election, voter, position) index decides concurrent attempts.
    """

    def _cast() -> Receipt:
        moment = now or utcnow()
        if not _is_on_roll(session, election_id, voter_id):
            raise NotAuthorized(
                f"Voter {voter_id} is not on the roll of election {election_id}.",
                election_id=election_id,
            )
        election = session.get(Election, election_id, populate_existing=True)
        if election is None or not election.is_open_at(moment):
            raise ElectionNotOpen(
                f"Election {election_id} is not open for voting.",
                election_id=election_id,
                status=election.status if election else None,
            )
        candidate = session.get(Candidate, candidate_id)
        if candidate is None or candidate.election_id != election_id or candidate.position != position:
            raise InvalidCandidate(
                f"Candidate {candidate_id} does not stand for {position!r} in election {election_id}.",
                election_id=election_id,
                candidate_id=candidate_id,
                position=position,
            )

        vote = Vote(
            election_id=election_id,
            voter_id=voter_id,
            candidate_id=candidate_id,
            position=position,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=moment,
        )
        session.add(vote)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise DuplicateVote(
                f"Voter {voter_id} has already voted for {position!r}.",
                election_id=election_id,
                position=position,
            )
        session.query(Candidate).filter(Candidate.id == candidate_id).update(
            {Candidate.vote_count: Candidate.vote_count + 1},
            synchronize_session=False,
        )
        receipt = Receipt(
            vote_id=vote.id,
            election_id=election_id,
            candidate_id=candidate_id,
            position=position,
            cast_at=moment,
        )
        session.commit()
        return receipt

    try:
        receipt = run_with_retry(session, _cast, label=f"cast vote in election {election_id}")
    except VoteError as exc:
        logger.info("Vote rejected (%s) in election %s for %s", exc.code, election_id, position)
        raise
    logger.info("Vote %s recorded in election %s for %s", receipt.vote_id, election_id, position)
    return receipt


def check_eligibility(
    session: Session,
    election_id: int,
    voter_id: str,
    now: Optional[datetime] = None,
) -> Eligibility:
    def _check() -> Eligibility:
        election = session.get(Election, election_id)
        if election is None:
            raise UnknownElection(f"Election {election_id} not found.", election_id=election_id)
        voted_positions = [
            row.position
            for row in session.query(Vote.position)
            .filter(Vote.election_id == election_id, Vote.voter_id == voter_id)
            .order_by(Vote.position.asc())
            .all()
        ]
        return Eligibility(
            election_id=election_id,
            voter_id=voter_id,
            on_roll=_is_on_roll(session, election_id, voter_id),
            election_open=election.is_open_at(now or utcnow()),
            voted_positions=voted_positions,
        )

    return run_with_retry(session, _check, label=f"check eligibility in election {election_id}")
