"""
Token ledger.

Manages the user-visible token balance with:
- One balance row per user, never written outside this module
- Append-only transaction log (sum of amounts == balance)
- Per-user serialized debits with a conditional decrement
- Compensating rollback when a debit cannot be recorded
"""
from __future__ import annotations

import threading
import weakref
from dataclasses import dataclass
from typing import Dict, List, Literal, Optional

from sqlalchemy import select, insert, update, func

from companion.core.database import (
    get_db_session,
    account_balances,
    ledger_transactions,
    utc_now,
    as_utc,
)
from companion.core.errors import InsufficientFundsError, PersistenceError, ValidationError
from companion.core.logging import log_event
from companion.features.budget.service import log_cost

TransactionKind = Literal["purchase", "bonus", "usage", "refund", "admin_adjustment"]

CREDIT_KINDS = {"purchase", "bonus", "refund", "admin_adjustment"}

# Entries live while some caller holds the lock
_user_locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
_user_locks_guard = threading.Lock()


@dataclass
class LedgerResult:
    """Outcome of a balance mutation."""
    user_id: str
    amount: int
    balance_after: int
    transaction_id: int


def _lock_for(user_id: str) -> threading.Lock:
    with _user_locks_guard:
        lock = _user_locks.get(user_id)
        if lock is None:
            lock = threading.Lock()
            _user_locks[user_id] = lock
        return lock


def get_balance(user_id: str) -> int:
    """Current balance, 0 when the user has no balance row yet."""
    with get_db_session() as session:
        row = session.execute(
            select(account_balances.c.balance).where(account_balances.c.user_id == user_id)
        ).fetchone()
    return int(row[0]) if row else 0


def _append_transaction(
    user_id: str,
    amount: int,
    kind: str,
    description: str,
    metadata: Optional[Dict] = None,
) -> int:
    with get_db_session() as session:
        result = session.execute(
            insert(ledger_transactions).values(
                user_id=user_id,
                amount=amount,
                kind=kind,
                description=description,
                meta=metadata or {},
                created_at=utc_now(),
            )
        )
        return int(result.inserted_primary_key[0])


def _restore_balance(user_id: str, amount: int) -> None:
    with get_db_session() as session:
        session.execute(
            update(account_balances)
            .where(account_balances.c.user_id == user_id)
            .values(balance=account_balances.c.balance + amount, updated_at=utc_now())
        )


def _record_usage_cost(user_id: str, amount: int, description: str, metadata: Optional[Dict]) -> None:
    try:
        log_cost(
            "token_usage",
            tokens_used=amount,
            api_cost=0.0,
            user_id=user_id,
            metadata={**(metadata or {}), "description": description, "source": "ledger.debit"},
        )
    except Exception as e:
        log_event(
            "warning",
            "ledger.cost_log_failed",
            user_id=user_id,
            event_type="ledger.debit",
            extra={"error": e},
        )


def debit(user_id: str, amount: int, description: str, metadata: Optional[Dict] = None) -> LedgerResult:
    """
    Remove tokens from a user's balance.

    Args:
        user_id: Account to charge
        amount: Positive number of tokens
        description: Human-readable reason stored on the transaction
        metadata: Optional JSON-serializable context

    Returns:
        LedgerResult with the new balance

    Raises:
        ValidationError: amount is not positive
        InsufficientFundsError: balance < amount (nothing was changed)
        PersistenceError: the transaction could not be recorded; the balance
            has been restored to its pre-debit value
    """
    if amount <= 0:
        raise ValidationError("Debit amount must be positive")

    with _lock_for(user_id):
        balance = get_balance(user_id)
        if balance < amount:
            raise InsufficientFundsError(
                "Insufficient tokens",
                balance=balance,
                required=amount,
            )

        with get_db_session() as session:
            result = session.execute(
                update(account_balances)
                .where(account_balances.c.user_id == user_id)
                .where(account_balances.c.balance >= amount)
                .values(balance=account_balances.c.balance - amount, updated_at=utc_now())
            )
            decremented = result.rowcount == 1

        if not decremented:
            # Another writer outside this process spent the balance first
            raise InsufficientFundsError("Insufficient tokens", balance=get_balance(user_id), required=amount)

        try:
            transaction_id = _append_transaction(user_id, -amount, "usage", description, metadata)
        except Exception as e:
            try:
                _restore_balance(user_id, amount)
            except Exception as restore_error:
                log_event(
                    "critical",
                    "ledger.debit.rollback_failed",
                    user_id=user_id,
                    event_type="ledger.debit",
                    error_code="rollback_failed",
                    extra={"amount": amount, "error": restore_error},
                )
            log_event(
                "error",
                "ledger.debit.rolled_back",
                user_id=user_id,
                event_type="ledger.debit",
                error_code="persistence_error",
                extra={"amount": amount, "error": e},
            )
            raise PersistenceError("Could not record token usage") from e

        balance_after = balance - amount

    _record_usage_cost(user_id, amount, description, metadata)
    log_event(
        "info",
        "ledger.debit",
        user_id=user_id,
        event_type="ledger.debit",
        extra={"amount": amount, "balance_after": balance_after},
    )
    return LedgerResult(user_id=user_id, amount=-amount, balance_after=balance_after, transaction_id=transaction_id)


def credit(
    user_id: str,
    amount: int,
    kind: str,
    description: str,
    metadata: Optional[Dict] = None,
) -> LedgerResult:
    """
    Add tokens to a user's balance, creating the balance row if needed.

    A transaction that cannot be recorded after the balance moved is logged
    for out-of-band reconciliation; the balance is not reverted.
    """
    if kind not in CREDIT_KINDS:
        raise ValidationError(f"Unsupported credit kind: {kind}")
    if amount <= 0:
        raise ValidationError("Credit amount must be positive")

    with _lock_for(user_id):
        with get_db_session() as session:
            result = session.execute(
                update(account_balances)
                .where(account_balances.c.user_id == user_id)
                .values(balance=account_balances.c.balance + amount, updated_at=utc_now())
            )
            if result.rowcount == 0:
                session.execute(
                    insert(account_balances).values(user_id=user_id, balance=amount, updated_at=utc_now())
                )

        balance_after = get_balance(user_id)

        try:
            transaction_id = _append_transaction(user_id, amount, kind, description, metadata)
        except Exception as e:
            log_event(
                "error",
                "ledger.credit.unlogged",
                user_id=user_id,
                event_type="ledger.credit",
                error_code="reconcile_required",
                extra={"amount": amount, "kind": kind, "error": e},
            )
            raise PersistenceError("Could not record token credit") from e

    log_event(
        "info",
        "ledger.credit",
        user_id=user_id,
        event_type="ledger.credit",
        extra={"amount": amount, "kind": kind, "balance_after": balance_after},
    )
    return LedgerResult(user_id=user_id, amount=amount, balance_after=balance_after, transaction_id=transaction_id)


def refund(user_id: str, amount: int, description: str, metadata: Optional[Dict] = None) -> LedgerResult:
    return credit(user_id, amount, "refund", description, metadata)


def get_transactions(user_id: str, limit: int = 50) -> List[Dict]:
    """Return a user's transactions, newest first."""
    with get_db_session() as session:
        rows = session.execute(
            select(ledger_transactions)
            .where(ledger_transactions.c.user_id == user_id)
            .order_by(ledger_transactions.c.created_at.desc(), ledger_transactions.c.id.desc())
            .limit(limit)
        ).fetchall()

    return [
        {
            "id": row.id,
            "amount": row.amount,
            "kind": row.kind,
            "description": row.description,
            "metadata": row.meta or {},
            "created_at": as_utc(row.created_at).isoformat(),
        }
        for row in rows
    ]


def verify_balance(user_id: str) -> bool:
    """True when the stored balance equals the sum of recorded transactions."""
    with get_db_session() as session:
        total = session.execute(
            select(func.coalesce(func.sum(ledger_transactions.c.amount), 0))
            .where(ledger_transactions.c.user_id == user_id)
        ).scalar()
    return int(total or 0) == get_balance(user_id)
