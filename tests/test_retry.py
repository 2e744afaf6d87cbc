import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError

from votecredit.config import get_settings
from votecredit.core.errors import Busy, UnknownAccount
from votecredit.core.retry import Contention, run_with_retry
from votecredit.services.authorization import credit_summary
from votecredit.services.payments import handle_notification, resolve_account
from votecredit.services.tally import election_results, reconcile, tally
from votecredit.services.votes import check_eligibility


class RecordingSession:
    def __init__(self):
        self.rollbacks = 0

    def rollback(self):
        self.rollbacks += 1


def _locked():
    return OperationalError("UPDATE accounts", {}, Exception("database is locked"))


@pytest.fixture
def no_backoff(monkeypatch):
    monkeypatch.setenv("STORAGE_RETRY_ATTEMPTS", "3")
    monkeypatch.setenv("STORAGE_RETRY_BACKOFF_SECONDS", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.mark.parametrize("failure", [_locked, lambda: Contention("balance changed")])
def test_transient_failures_become_busy_after_configured_attempts(failure):
    session = RecordingSession()
    calls = []

    def _operation():
        calls.append(1)
        raise failure()

    with pytest.raises(Busy):
        run_with_retry(session, _operation, label="debit account 1", attempts=4, backoff_seconds=0)

    assert len(calls) == 4
    assert session.rollbacks == 4


def test_attempts_default_to_settings(no_backoff):
    session = RecordingSession()
    calls = []

    def _operation():
        calls.append(1)
        raise _locked()

    with pytest.raises(Busy):
        run_with_retry(session, _operation, label="settle transaction tx-1")

    assert len(calls) == 3


def test_transient_failure_then_success_returns_result():
    session = RecordingSession()
    calls = []

    def _operation():
        calls.append(1)
        if len(calls) < 3:
            raise Contention("lost the race")
        return "done"

    assert run_with_retry(session, _operation, label="cast vote", attempts=5, backoff_seconds=0) == "done"
    assert len(calls) == 3
    assert session.rollbacks == 2


def test_non_transient_storage_error_is_classified_without_retrying():
    session = RecordingSession()
    calls = []

    def _operation():
        calls.append(1)
        raise IntegrityError("INSERT INTO votes", {}, Exception("CHECK constraint failed"))

    with pytest.raises(Busy):
        run_with_retry(session, _operation, label="cast vote", attempts=5, backoff_seconds=0)

    assert len(calls) == 1
    assert session.rollbacks == 1


def test_business_errors_roll_back_and_propagate_unchanged():
    session = RecordingSession()

    def _operation():
        raise UnknownAccount("Account 9 not found.", account_id=9)

    with pytest.raises(UnknownAccount):
        run_with_retry(session, _operation, label="debit account 9", attempts=5, backoff_seconds=0)

    assert session.rollbacks == 1


def _drop(db_session, table):
    db_session.execute(text(f"DROP TABLE {table}"))
    db_session.commit()


def test_read_paths_report_busy_when_votes_are_unreadable(
    db_session, no_backoff, create_account, create_election, add_candidate, enroll_voter
):
    election = create_election(create_account())
    add_candidate(election, "Alice")
    enroll_voter(election, "s1")
    _drop(db_session, "votes")

    with pytest.raises(Busy):
        tally(db_session, election.id, "President")
    with pytest.raises(Busy):
        election_results(db_session, election.id)
    with pytest.raises(Busy):
        reconcile(db_session, election.id)
    with pytest.raises(Busy):
        check_eligibility(db_session, election.id, "s1")


def test_credit_summary_reports_busy_when_windows_are_unreadable(db_session, no_backoff, create_account):
    account = create_account(balance=5)
    _drop(db_session, "unlimited_packages")
    db_session.expire_all()

    with pytest.raises(Busy):
        credit_summary(db_session, account.id)


def test_account_lookup_reports_busy_when_accounts_are_unreadable(db_session, no_backoff):
    _drop(db_session, "accounts")

    with pytest.raises(Busy):
        resolve_account(db_session, None, "+254712345678")
    with pytest.raises(Busy):
        handle_notification(
            db_session,
            {"transactionId": "tx-busy", "phoneNumber": "0712345678", "amount": 500, "status": "Success"},
        )
