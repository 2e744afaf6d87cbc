from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..core.errors import ReconciliationMismatch, UnknownElection
from ..core.retry import run_with_retry
from ..models.models import Candidate, Election, Vote
from .audit import audit_log

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CandidateCount:
    candidate_id: int
    candidate_name: str
    vote_count: int


@dataclass(frozen=True)
class CounterMismatch:
    candidate_id: int
    position: str
    cached: int
    actual: int

    @property
    def drift(self) -> int:
        return self.cached - self.actual


@dataclass
class ReconciliationReport:
    election_id: int
    candidates_checked: int
    mismatches: List[CounterMismatch] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.mismatches

    def raise_for_mismatch(self) -> None:
        if self.mismatches:
            raise ReconciliationMismatch(
                f"Election {self.election_id} has {len(self.mismatches)} drifted candidate counters.",
                election_id=self.election_id,
                candidates=[mismatch.candidate_id for mismatch in self.mismatches],
            )


def _require_election(session: Session, election_id: int) -> Election:
    election = session.get(Election, election_id)
    if election is None:
        raise UnknownElection(f"Election {election_id} not found.", election_id=election_id)
    return election


def _grouped_counts(session: Session, election_id: int, position: Optional[str] = None):
    query = (
        session.query(
            Candidate.id.label("candidate_id"),
            Candidate.name.label("candidate_name"),
            Candidate.position.label("position"),
            Candidate.vote_count.label("cached"),
            func.count(Vote.id).label("vote_count"),
        )
        .outerjoin(Vote, Vote.candidate_id == Candidate.id)
        .filter(Candidate.election_id == election_id)
    )
    if position is not None:
        query = query.filter(Candidate.position == position)
    return (
        query.group_by(Candidate.id, Candidate.name, Candidate.position, Candidate.vote_count)
        .order_by(func.count(Vote.id).desc(), Candidate.name.asc())
        .all()
    )


def _read_counts(session: Session, election_id: int, position: Optional[str] = None):
    def _read():
        _require_election(session, election_id)
        return _grouped_counts(session, election_id, position)

    return run_with_retry(session, _read, label=f"count votes of election {election_id}")


def tally(session: Session, election_id: int, position: str) -> List[CandidateCount]:
    """Count votes per candidate for one position straight from the votes table."""
    return [
        CandidateCount(
            candidate_id=row.candidate_id,
            candidate_name=row.candidate_name,
            vote_count=int(row.vote_count),
        )
        for row in _read_counts(session, election_id, position)
    ]


def election_results(session: Session, election_id: int) -> Dict[str, List[CandidateCount]]:
    """Return the tally of every position in the election, keyed by position."""
    results: Dict[str, List[CandidateCount]] = {}
    for row in _read_counts(session, election_id):
        results.setdefault(row.position, []).append(
            CandidateCount(
                candidate_id=row.candidate_id,
                candidate_name=row.candidate_name,
                vote_count=int(row.vote_count),
            )
        )
    return dict(sorted(results.items()))


def reconcile(session: Session, election_id: int) -> ReconciliationReport:
    """Compare cached candidate counters to grouped vote counts. Never writes."""
    rows = _read_counts(session, election_id)
    report = ReconciliationReport(election_id=election_id, candidates_checked=len(rows))
    for row in sorted(rows, key=lambda item: item.candidate_id):
        actual = int(row.vote_count)
        if int(row.cached) != actual:
            report.mismatches.append(
                CounterMismatch(
                    candidate_id=row.candidate_id,
                    position=row.position,
                    cached=int(row.cached),
                    actual=actual,
                )
            )
    if report.mismatches:
        logger.warning(
            "Election %s: %s of %s candidate counters disagree with the votes table.",
            election_id,
            len(report.mismatches),
            report.candidates_checked,
        )
    return report


def repair(session: Session, election_id: int, actor: Optional[str] = None) -> ReconciliationReport:
    """Reset every cached counter of the election to the grouped vote count.

    Returns the report taken before the repair so callers can see what changed.
    """
    before = reconcile(session, election_id)

    def _repair() -> ReconciliationReport:
        actual = (
            select(func.count(Vote.id))
            .where(Vote.candidate_id == Candidate.id)
            .correlate(Candidate)
            .scalar_subquery()
        )
        session.query(Candidate).filter(Candidate.election_id == election_id).update(
            {Candidate.vote_count: actual},
            synchronize_session=False,
        )
        audit_log(
            db_session=session,
            actor=actor,
            action="elections.counters.repair",
            target_entity_type="Election",
            target_entity_id=str(election_id),
            before=[
                {"candidate_id": mismatch.candidate_id, "cached": mismatch.cached}
                for mismatch in before.mismatches
            ],
            after=[
                {"candidate_id": mismatch.candidate_id, "cached": mismatch.actual}
                for mismatch in before.mismatches
            ],
        )
        session.commit()
        return before

    run_with_retry(session, _repair, label=f"repair counters of election {election_id}")
    logger.info("Election %s counters repaired (%s corrected).", election_id, len(before.mismatches))
    return before
