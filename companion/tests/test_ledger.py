"""
Token ledger: conservation, no negative balances, debit rollback.
"""
import threading

import pytest
from sqlalchemy import select

from companion.core.database import get_db_session, ledger_transactions, cost_logs
from companion.core.errors import InsufficientFundsError, PersistenceError, ValidationError
from companion.features.ledger import service as ledger
from companion.features.ledger.service import credit, debit, get_balance, get_transactions, refund, verify_balance


def _transaction_count(user_id: str) -> int:
    with get_db_session() as session:
        return len(
            session.execute(
                select(ledger_transactions.c.id).where(ledger_transactions.c.user_id == user_id)
            ).fetchall()
        )


def test_balance_is_zero_without_row():
    assert get_balance("nobody") == 0


def test_credit_creates_row_and_transaction():
    result = credit("u1", 10, "purchase", "Token pack")
    assert result.balance_after == 10
    assert get_balance("u1") == 10
    assert _transaction_count("u1") == 1


def test_balance_equals_sum_of_transactions_after_mixed_operations():
    credit("u1", 10, "purchase", "Token pack")
    debit("u1", 3, "Chat message")
    credit("u1", 5, "bonus", "Monthly tokens")
    refund("u1", 2, "Image generation failed")
    debit("u1", 1, "Chat message")

    assert get_balance("u1") == 13
    assert verify_balance("u1")
    amounts = [tx["amount"] for tx in get_transactions("u1")]
    assert sum(amounts) == 13
    assert amounts[0] == -1  # newest first


def test_debit_more_than_balance_raises_and_changes_nothing():
    credit("u1", 2, "purchase", "Token pack")

    with pytest.raises(InsufficientFundsError) as exc:
        debit("u1", 3, "Chat message")

    assert exc.value.balance == 2
    assert exc.value.required == 3
    assert get_balance("u1") == 2
    assert _transaction_count("u1") == 1


def test_debit_without_balance_row_is_insufficient():
    with pytest.raises(InsufficientFundsError):
        debit("ghost", 1, "Chat message")
    assert get_balance("ghost") == 0


@pytest.mark.parametrize("amount", [0, -5])
def test_non_positive_amounts_rejected(amount):
    with pytest.raises(ValidationError):
        debit("u1", amount, "bad")
    with pytest.raises(ValidationError):
        credit("u1", amount, "purchase", "bad")


def test_credit_rejects_usage_kind():
    with pytest.raises(ValidationError):
        credit("u1", 5, "usage", "not a credit")


def test_debit_rolls_back_when_transaction_cannot_be_recorded(monkeypatch):
    credit("u1", 5, "purchase", "Token pack")

    def broken_append(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(ledger, "_append_transaction", broken_append)

    with pytest.raises(PersistenceError):
        debit("u1", 2, "Chat message")

    monkeypatch.undo()
    assert get_balance("u1") == 5
    assert _transaction_count("u1") == 1
    assert verify_balance("u1")


def test_debit_writes_token_usage_cost_entry():
    credit("u1", 5, "purchase", "Token pack")
    debit("u1", 2, "Chat message")

    with get_db_session() as session:
        rows = session.execute(select(cost_logs.c.action, cost_logs.c.tokens_used, cost_logs.c.api_cost)).fetchall()
    assert [(r[0], r[1], r[2]) for r in rows] == [("token_usage", 2, 0.0)]


def test_cost_log_failure_does_not_undo_debit(monkeypatch):
    credit("u1", 5, "purchase", "Token pack")

    def broken_log_cost(*args, **kwargs):
        raise RuntimeError("analytics down")

    monkeypatch.setattr(ledger, "log_cost", broken_log_cost)
    result = debit("u1", 2, "Chat message")

    assert result.balance_after == 3
    assert get_balance("u1") == 3
    assert verify_balance("u1")


def test_concurrent_debits_never_overspend():
    credit("u1", 10, "purchase", "Token pack")
    outcomes = []
    lock = threading.Lock()

    def spend():
        try:
            debit("u1", 1, "Chat message")
            result = "ok"
        except InsufficientFundsError:
            result = "insufficient"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=spend) for _ in range(15)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 10
    assert outcomes.count("insufficient") == 5
    assert get_balance("u1") == 0
    assert verify_balance("u1")


def test_user_locks_are_not_retained_after_use():
    credit("u1", 5, "purchase", "Token pack")
    debit("u1", 2, "Chat message")
    assert "u1" not in ledger._user_locks
