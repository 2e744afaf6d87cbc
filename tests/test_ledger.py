import threading

import pytest

from votecredit.config import get_settings
from votecredit.constants import LedgerEntryType, TransactionStatus
from votecredit.core.errors import (
    AlreadySettled,
    DuplicateTransaction,
    InsufficientCredit,
    TransactionNotClaimable,
    UnknownTransaction,
)
from votecredit.models.models import (
    Account,
    AuditLog,
    CreditLedgerEntry,
    PaymentTransaction,
    PricingPlan,
    UnlimitedPackage,
    ensure_utc,
    utcnow,
)
from votecredit.services import ledger


@pytest.fixture
def patient_retries(monkeypatch):
    monkeypatch.setenv("STORAGE_RETRY_ATTEMPTS", "25")
    monkeypatch.setenv("STORAGE_RETRY_BACKOFF_SECONDS", "0.02")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _balance(db_session, account_id):
    db_session.expire_all()
    return db_session.get(Account, account_id).shared_credit_balance


def test_record_transaction_inserts_pending(db_session, create_account):
    account = create_account()

    ref = ledger.record_transaction(db_session, "tx-100", "+254700000001", 500, account_id=account.id)

    assert ref.status == TransactionStatus.PENDING
    txn = db_session.query(PaymentTransaction).filter_by(transaction_id="tx-100").one()
    assert txn.account_id == account.id
    assert txn.credited is False


def test_record_transaction_rejects_duplicate_id(db_session):
    ledger.record_transaction(db_session, "tx-dup", None, 500)

    with pytest.raises(DuplicateTransaction):
        ledger.record_transaction(db_session, "tx-dup", None, 700)

    assert db_session.query(PaymentTransaction).filter_by(transaction_id="tx-dup").count() == 1


def test_settle_unknown_transaction(db_session):
    with pytest.raises(UnknownTransaction):
        ledger.settle_transaction(db_session, "missing", TransactionStatus.SUCCESS)


def test_settle_success_credits_once(db_session, create_account):
    account = create_account(balance=10)
    ledger.record_transaction(db_session, "tx-1", None, 500, account_id=account.id)

    result = ledger.settle_transaction(db_session, "tx-1", TransactionStatus.SUCCESS)

    assert result.credited is True
    assert result.credits == 500
    assert _balance(db_session, account.id) == 510

    with pytest.raises(AlreadySettled):
        ledger.settle_transaction(db_session, "tx-1", TransactionStatus.SUCCESS)
    assert _balance(db_session, account.id) == 510

    entries = db_session.query(CreditLedgerEntry).filter_by(account_id=account.id).all()
    assert [(entry.entry_type, entry.credits, entry.balance_after) for entry in entries] == [
        (LedgerEntryType.PURCHASE, 500, 510)
    ]


def test_settle_failed_does_not_credit(db_session, create_account):
    account = create_account()
    ledger.record_transaction(db_session, "tx-fail", None, 500, account_id=account.id)

    result = ledger.settle_transaction(db_session, "tx-fail", TransactionStatus.FAILED)

    assert result.credited is False
    assert _balance(db_session, account.id) == 0
    with pytest.raises(AlreadySettled):
        ledger.settle_transaction(db_session, "tx-fail", TransactionStatus.SUCCESS)
    assert _balance(db_session, account.id) == 0


def test_pricing_plan_price_grants_plan_voter_limit(db_session, create_account):
    account = create_account()
    starter = db_session.query(PricingPlan).filter_by(code="starter").one()
    ledger.record_transaction(db_session, "tx-plan", None, starter.price, account_id=account.id)

    result = ledger.settle_transaction(db_session, "tx-plan", TransactionStatus.SUCCESS)

    assert result.credits == starter.voter_limit
    assert _balance(db_session, account.id) == starter.voter_limit
    txn = db_session.query(PaymentTransaction).filter_by(transaction_id="tx-plan").one()
    assert txn.plan_code == "starter"


def test_unlimited_plan_grants_window_instead_of_balance(db_session, create_account):
    account = create_account(balance=3)
    unlimited = db_session.query(PricingPlan).filter_by(code="unlimited").one()
    ledger.record_transaction(db_session, "tx-unl", None, unlimited.price, account_id=account.id)

    result = ledger.settle_transaction(db_session, "tx-unl", TransactionStatus.SUCCESS)

    assert result.unlimited is True
    assert _balance(db_session, account.id) == 3
    package = db_session.query(UnlimitedPackage).filter_by(account_id=account.id).one()
    assert package.covers(utcnow())
    window = ensure_utc(package.valid_until) - ensure_utc(package.valid_from)
    assert window.days == get_settings().unlimited_package_days


def test_success_without_account_waits_for_claim(db_session, create_account):
    ledger.record_transaction(db_session, "tx-orphan", "+254711111111", 300)

    result = ledger.settle_transaction(db_session, "tx-orphan", TransactionStatus.SUCCESS)

    assert result.status == TransactionStatus.SUCCESS
    assert result.credited is False

    account = create_account()
    claimed = ledger.claim_transaction(db_session, "tx-orphan", account.id, actor="ops@example.com")
    assert claimed.credited is True
    assert _balance(db_session, account.id) == 300

    with pytest.raises(AlreadySettled):
        ledger.claim_transaction(db_session, "tx-orphan", account.id)
    assert _balance(db_session, account.id) == 300
    assert db_session.query(AuditLog).filter_by(action="payments.transaction.claim").count() == 1


def test_claimed_credit_is_recorded_as_claim(db_session, create_account):
    ledger.record_transaction(db_session, "tx-claimed", None, 120)
    ledger.settle_transaction(db_session, "tx-claimed", TransactionStatus.SUCCESS)
    account = create_account()

    ledger.claim_transaction(db_session, "tx-claimed", account.id)

    entries = {
        entry.transaction_id: entry
        for entry in db_session.query(CreditLedgerEntry).filter_by(account_id=account.id).all()
    }
    assert set(entries) == {"tx-claimed"}
    assert entries["tx-claimed"].entry_type == LedgerEntryType.CLAIM
    assert entries["tx-claimed"].credits == 120
    assert entries["tx-claimed"].balance_after == 120


def test_settled_payment_is_recorded_as_purchase(db_session, create_account):
    account = create_account()
    ledger.record_transaction(db_session, "tx-direct", None, 60, account_id=account.id)

    ledger.settle_transaction(db_session, "tx-direct", TransactionStatus.SUCCESS)

    entry = db_session.query(CreditLedgerEntry).filter_by(transaction_id="tx-direct").one()
    assert entry.entry_type == LedgerEntryType.PURCHASE


def test_claim_rejects_pending_transaction(db_session, create_account):
    account = create_account()
    ledger.record_transaction(db_session, "tx-pending", None, 300)

    with pytest.raises(TransactionNotClaimable):
        ledger.claim_transaction(db_session, "tx-pending", account.id)


def test_debit_never_goes_negative(db_session, create_account):
    account = create_account(balance=50)

    assert ledger.debit_credit(db_session, account.id, 30) == 20
    with pytest.raises(InsufficientCredit) as excinfo:
        ledger.debit_credit(db_session, account.id, 21)

    assert excinfo.value.details["available"] == 20
    assert _balance(db_session, account.id) == 20


def test_concurrent_debits_cannot_both_consume_the_same_credit(
    db_session, session_factory, create_account, patient_retries
):
    account = create_account(balance=100)
    barrier = threading.Barrier(4)
    outcomes = []
    lock = threading.Lock()

    def _debit():
        session = session_factory()
        try:
            barrier.wait()
            ledger.debit_credit(session, account.id, 40)
            result = "ok"
        except InsufficientCredit:
            result = "insufficient"
        finally:
            session.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_debit) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["insufficient", "insufficient", "ok", "ok"]
    assert _balance(db_session, account.id) == 20


def test_concurrent_settlement_credits_once(db_session, session_factory, create_account, patient_retries):
    account = create_account()
    ledger.record_transaction(db_session, "tx-race", None, 500, account_id=account.id)
    barrier = threading.Barrier(3)
    outcomes = []
    lock = threading.Lock()

    def _settle():
        session = session_factory()
        try:
            barrier.wait()
            ledger.settle_transaction(session, "tx-race", TransactionStatus.SUCCESS)
            result = "settled"
        except AlreadySettled:
            result = "already"
        finally:
            session.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_settle) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["already", "already", "settled"]
    assert _balance(db_session, account.id) == 500
