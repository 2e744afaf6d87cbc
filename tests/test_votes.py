import threading

import pytest

from votecredit.config import get_settings
from votecredit.constants import ElectionStatus
from votecredit.core.errors import (
    DuplicateVote,
    ElectionNotOpen,
    InvalidCandidate,
    NotAuthorized,
    UnknownElection,
)
from votecredit.models.models import Candidate, Vote
from votecredit.services.votes import cast_vote, check_eligibility


@pytest.fixture
def ballot(create_account, create_election, add_candidate, enroll_voter):
    organizer = create_account(balance=0)
    election = create_election(organizer)
    c1 = add_candidate(election, "Candidate One")
    c2 = add_candidate(election, "Candidate Two")
    treasurer = add_candidate(election, "Treasurer Hopeful", position="Treasurer")
    enroll_voter(election, "v1")
    enroll_voter(election, "v2")
    return election, c1, c2, treasurer


def _count(db_session, candidate_id):
    db_session.expire_all()
    return db_session.get(Candidate, candidate_id).vote_count


def test_vote_is_recorded_and_counter_incremented(db_session, ballot):
    election, c1, _, _ = ballot

    receipt = cast_vote(db_session, election.id, "v1", c1.id, "President", ip_address="10.0.0.1")

    assert receipt.vote_id
    assert _count(db_session, c1.id) == 1
    vote = db_session.get(Vote, receipt.vote_id)
    assert vote.voter_id == "v1"
    assert vote.ip_address == "10.0.0.1"


def test_second_vote_for_same_position_is_rejected(db_session, ballot):
    election, c1, c2, _ = ballot
    cast_vote(db_session, election.id, "v1", c1.id, "President")

    with pytest.raises(DuplicateVote):
        cast_vote(db_session, election.id, "v1", c2.id, "President")

    assert _count(db_session, c1.id) == 1
    assert _count(db_session, c2.id) == 0
    assert db_session.query(Vote).filter_by(election_id=election.id, voter_id="v1").count() == 1


def test_voter_may_vote_once_per_position(db_session, ballot):
    election, c1, _, treasurer = ballot

    cast_vote(db_session, election.id, "v1", c1.id, "President")
    cast_vote(db_session, election.id, "v1", treasurer.id, "Treasurer")

    assert _count(db_session, c1.id) == 1
    assert _count(db_session, treasurer.id) == 1


def test_voter_not_on_roll_is_rejected(db_session, ballot):
    election, c1, _, _ = ballot

    with pytest.raises(NotAuthorized):
        cast_vote(db_session, election.id, "stranger", c1.id, "President")
    assert _count(db_session, c1.id) == 0


@pytest.mark.parametrize(
    "status, starts_in_hours, ends_in_hours",
    [
        (ElectionStatus.DRAFT, -1, 24),
        (ElectionStatus.CLOSED, -1, 24),
        (ElectionStatus.ACTIVE, 2, 24),
        (ElectionStatus.ACTIVE, -48, -24),
    ],
)
def test_election_must_be_open(
    db_session, create_account, create_election, add_candidate, enroll_voter, status, starts_in_hours, ends_in_hours
):
    election = create_election(
        create_account(),
        status=status,
        starts_in_hours=starts_in_hours,
        ends_in_hours=ends_in_hours,
    )
    candidate = add_candidate(election, "Late Candidate")
    enroll_voter(election, "v1")

    with pytest.raises(ElectionNotOpen):
        cast_vote(db_session, election.id, "v1", candidate.id, "President")


def test_authorization_is_checked_before_election_state(
    db_session, create_account, create_election, add_candidate
):
    election = create_election(create_account(), status=ElectionStatus.CLOSED)
    candidate = add_candidate(election, "Someone")

    with pytest.raises(NotAuthorized):
        cast_vote(db_session, election.id, "nobody", candidate.id, "President")


def test_candidate_must_stand_for_position_in_election(
    db_session, ballot, create_account, create_election, add_candidate
):
    election, c1, _, _ = ballot
    other_election = create_election(create_account())
    outsider = add_candidate(other_election, "Outsider")

    with pytest.raises(InvalidCandidate):
        cast_vote(db_session, election.id, "v1", c1.id, "Treasurer")
    with pytest.raises(InvalidCandidate):
        cast_vote(db_session, election.id, "v1", outsider.id, "President")
    with pytest.raises(InvalidCandidate):
        cast_vote(db_session, election.id, "v1", 999_999, "President")


def test_eligibility_lists_voted_positions(db_session, ballot):
    election, c1, _, _ = ballot
    cast_vote(db_session, election.id, "v1", c1.id, "President")

    eligibility = check_eligibility(db_session, election.id, "v1")
    stranger = check_eligibility(db_session, election.id, "stranger")

    assert eligibility.can_vote is True
    assert eligibility.voted_positions == ["President"]
    assert stranger.on_roll is False
    assert stranger.can_vote is False
    with pytest.raises(UnknownElection):
        check_eligibility(db_session, 424242, "v1")


def test_concurrent_casts_by_same_voter_yield_one_vote(db_session, session_factory, ballot, monkeypatch):
    monkeypatch.setenv("STORAGE_RETRY_ATTEMPTS", "25")
    monkeypatch.setenv("STORAGE_RETRY_BACKOFF_SECONDS", "0.02")
    get_settings.cache_clear()
    election, c1, c2, _ = ballot
    barrier = threading.Barrier(2)
    outcomes = []
    lock = threading.Lock()

    def _cast(candidate_id):
        session = session_factory()
        try:
            barrier.wait()
            cast_vote(session, election.id, "v2", candidate_id, "President")
            result = "recorded"
        except DuplicateVote:
            result = "duplicate"
        finally:
            session.close()
        with lock:
            outcomes.append(result)

    try:
        threads = [threading.Thread(target=_cast, args=(candidate.id,)) for candidate in (c1, c2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
    finally:
        get_settings.cache_clear()

    assert sorted(outcomes) == ["duplicate", "recorded"]
    assert _count(db_session, c1.id) + _count(db_session, c2.id) == 1
    assert db_session.query(Vote).filter_by(election_id=election.id, voter_id="v2").count() == 1
