from datetime import datetime, timedelta, timezone

import pytest

from votecredit.constants import ElectionStatus
from votecredit.core.errors import DuplicateVoter, ElectionStateConflict, UnknownAccount
from votecredit.models.models import AuditLog, Election
from votecredit.services.elections import (
    add_allowed_voter,
    add_candidate,
    close_election,
    close_expired_elections,
    create_election,
)


def _status(db_session, election_id):
    db_session.expire_all()
    return db_session.get(Election, election_id).status


def test_close_expired_elections_reports_only_elections_it_closed(db_session, create_account, create_election):
    organizer = create_account()
    expired = create_election(organizer, starts_in_hours=-48, ends_in_hours=-1)
    running = create_election(organizer)
    already_closed = create_election(organizer, status=ElectionStatus.CLOSED, starts_in_hours=-48, ends_in_hours=-1)

    closed_ids = close_expired_elections(db_session)

    assert closed_ids == [expired.id]
    assert _status(db_session, expired.id) == ElectionStatus.CLOSED
    assert _status(db_session, running.id) == ElectionStatus.ACTIVE
    assert _status(db_session, already_closed.id) == ElectionStatus.CLOSED
    assert close_expired_elections(db_session) == []


def test_close_election_only_from_active(db_session, create_account, create_election):
    election = create_election(create_account())

    closed = close_election(db_session, election.id, actor="organizer")

    assert closed.status == ElectionStatus.CLOSED
    assert db_session.query(AuditLog).filter_by(action="elections.close").count() == 1
    with pytest.raises(ElectionStateConflict):
        close_election(db_session, election.id)


def test_create_election_starts_as_draft(db_session, create_account):
    organizer = create_account()
    now = datetime.now(timezone.utc)

    election = create_election(db_session, organizer.id, "Board", 5, starts_at=now, ends_at=now + timedelta(days=1))

    assert election.status == ElectionStatus.DRAFT
    with pytest.raises(ValueError):
        create_election(db_session, organizer.id, "Board", 0)
    with pytest.raises(UnknownAccount):
        create_election(db_session, 424242, "Board", 5)


def test_ballot_changes_only_while_draft(db_session, create_account, create_election):
    draft = create_election(create_account(), status=ElectionStatus.DRAFT)
    active = create_election(create_account())

    candidate = add_candidate(db_session, draft.id, " Chair ", " Ada ")

    assert (candidate.position, candidate.name) == ("Chair", "Ada")
    with pytest.raises(ElectionStateConflict):
        add_candidate(db_session, active.id, "Chair", "Grace")


def test_roll_is_capped_and_unique(db_session, create_account, create_election):
    election = create_election(create_account(), voter_limit=2, status=ElectionStatus.DRAFT)

    add_allowed_voter(db_session, election.id, "s1")
    with pytest.raises(DuplicateVoter):
        add_allowed_voter(db_session, election.id, "s1")
    add_allowed_voter(db_session, election.id, "s2")
    with pytest.raises(ElectionStateConflict):
        add_allowed_voter(db_session, election.id, "s3")
