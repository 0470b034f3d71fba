from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from conftest import reload
from extensions import db
from models import Transaction
from rewards.atomic import run_atomic
from rewards.errors import ErrorKind, InternalError, OperationResult, RetryExhaustedError
from rewards.ledger import LedgerHelper


@pytest.fixture
def no_sleep(monkeypatch):
    monkeypatch.setattr("rewards.atomic.time.sleep", lambda seconds: None)


def locked_error():
    return OperationalError("UPDATE users SET available_balance=?", {}, Exception("database is locked"))


def test_credits_commute(make_user):
    first = make_user(balance=0)
    second = make_user(balance=0)

    LedgerHelper.credit(first.id, available=Decimal("10"))
    LedgerHelper.credit(first.id, available=Decimal("5.25"))
    LedgerHelper.credit(second.id, available=Decimal("5.25"))
    LedgerHelper.credit(second.id, available=Decimal("10"))
    db.session.commit()

    assert reload(first).available_balance == reload(second).available_balance == Decimal("15.25")


def test_credit_to_missing_user_reports_failure(app):
    assert LedgerHelper.credit(4242, available=Decimal("1")) is False


def test_negative_amounts_are_refused(make_user):
    user = make_user()
    with pytest.raises(ValueError):
        LedgerHelper.credit(user.id, available=Decimal("-1"))


def test_guarded_debit_never_goes_negative(make_user):
    user = make_user(balance=20)

    assert LedgerHelper.debit_available(user.id, Decimal("30")) is False
    assert LedgerHelper.get_balances(user.id)["available_balance"] == Decimal("20")

    assert LedgerHelper.debit_available(user.id, Decimal("20")) is True
    db.session.commit()
    assert reload(user).available_balance == Decimal("0")


def test_release_locked_moves_funds_to_available(make_user):
    user = make_user()
    LedgerHelper.credit(user.id, locked=Decimal("40"))

    assert LedgerHelper.release_locked(user.id, Decimal("50")) is False
    assert LedgerHelper.release_locked(user.id, Decimal("40")) is True
    db.session.commit()

    user = reload(user)
    assert (user.available_balance, user.locked_balance, user.total_earnings) == (40, 0, 40)


def test_record_completes_transaction(make_user):
    user = make_user()
    tx = LedgerHelper.record(user.id, "deposit", Decimal("12.349"))
    db.session.commit()

    tx = db.session.get(Transaction, tx.id)
    assert tx.amount == Decimal("12.34")
    assert tx.status == "completed"
    assert tx.completed_at is not None


def test_completed_transaction_amount_is_frozen(make_user):
    user = make_user()
    tx = LedgerHelper.record(user.id, "deposit", Decimal("10"))
    db.session.commit()

    assert tx.status == "completed"
    tx.amount = Decimal("99")
    with pytest.raises(ValueError):
        db.session.flush()
    db.session.rollback()


def test_run_atomic_retries_conflicting_writes(app, no_sleep):
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise locked_error()
        return "done"

    assert run_atomic(flaky, attempts=3) == "done"
    assert len(calls) == 3


def test_run_atomic_gives_up_after_attempts(app, no_sleep):
    def always_locked():
        raise locked_error()

    with pytest.raises(RetryExhaustedError) as excinfo:
        run_atomic(always_locked, name="always_locked", attempts=2)

    assert isinstance(excinfo.value, InternalError)
    assert isinstance(excinfo.value.cause, OperationalError)
    assert excinfo.value.kind == ErrorKind.INTERNAL


def test_rejection_rolls_back_writes(make_user):
    user = make_user(balance=10)

    def credit_then_reject():
        LedgerHelper.credit(user.id, available=Decimal("100"))
        return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, "changed my mind")

    result = run_atomic(credit_then_reject)

    assert not result.ok
    assert reload(user).available_balance == Decimal("10")


def test_unexpected_errors_propagate_after_rollback(make_user):
    user = make_user(balance=10)

    def credit_then_fail():
        LedgerHelper.credit(user.id, available=Decimal("100"))
        raise KeyError("missing")

    with pytest.raises(KeyError):
        run_atomic(credit_then_fail)
    assert reload(user).available_balance == Decimal("10")
