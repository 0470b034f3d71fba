# rewards/ledger.py
"""
Balance mutations.

Every change to available/locked balance or total earnings is a single
``UPDATE users SET col = col + :amount`` statement, guarded by ``col >= :amount``
for debits, so concurrent credits commute and balances never go negative.
Callers run these inside ``run_atomic``.
"""
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import update, select

from extensions import db
from models import User, Transaction, TransactionStatus, PaymentMethod
from rewards.config import quantize_money
from logger import ledger_logger
from utils import utcnow

logger = ledger_logger

BALANCE_COLUMNS = ["available_balance", "locked_balance", "total_earnings"]


def _checked(amount) -> Decimal:
    value = quantize_money(amount)
    if value < 0:
        raise ValueError(f"Ledger amounts must be positive, got {amount}")
    return value


def _expire_cached(user_id: int):
    """Loaded User objects go stale after a SQL-level update."""
    user = db.session.identity_map.get(db.session.identity_key(User, user_id))
    if user is not None:
        db.session.expire(user, BALANCE_COLUMNS)


class LedgerHelper:

    @staticmethod
    def credit(user_id: int, available=0, locked=0, earnings=0) -> bool:
        """Increment balance columns. Returns False when the user row does not exist."""
        values = {}
        available, locked, earnings = _checked(available), _checked(locked), _checked(earnings)
        if available:
            values["available_balance"] = User.available_balance + available
        if locked:
            values["locked_balance"] = User.locked_balance + locked
        if earnings:
            values["total_earnings"] = User.total_earnings + earnings
        if not values:
            return True

        result = db.session.execute(
            update(User).where(User.id == user_id).values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.error(f"Credit failed: user {user_id} not found")
            return False
        _expire_cached(user_id)
        logger.info(f"Credited user {user_id}: available={available} locked={locked} earnings={earnings}")
        return True

    @staticmethod
    def debit_available(user_id: int, amount) -> bool:
        """Decrement available balance only if it covers ``amount``."""
        amount = _checked(amount)
        result = db.session.execute(
            update(User)
            .where(User.id == user_id, User.available_balance >= amount)
            .values(available_balance=User.available_balance - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(f"Debit of {amount} refused for user {user_id}: insufficient available balance")
            return False
        _expire_cached(user_id)
        logger.info(f"Debited {amount} from user {user_id}")
        return True

    @staticmethod
    def release_locked(user_id: int, amount, add_to_earnings: bool = True) -> bool:
        """Move ``amount`` from locked to available balance."""
        amount = _checked(amount)
        values = {
            "locked_balance": User.locked_balance - amount,
            "available_balance": User.available_balance + amount,
        }
        if add_to_earnings:
            values["total_earnings"] = User.total_earnings + amount
        result = db.session.execute(
            update(User)
            .where(User.id == user_id, User.locked_balance >= amount)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(f"Release of {amount} locked funds refused for user {user_id}")
            return False
        _expire_cached(user_id)
        logger.info(f"Released {amount} locked funds to available for user {user_id}")
        return True

    @staticmethod
    def get_balances(user_id: int) -> Optional[Dict[str, Decimal]]:
        row = db.session.execute(
            select(User.available_balance, User.locked_balance, User.total_earnings)
            .where(User.id == user_id)
        ).first()
        if row is None:
            return None
        return {
            "available_balance": Decimal(str(row.available_balance)),
            "locked_balance": Decimal(str(row.locked_balance)),
            "total_earnings": Decimal(str(row.total_earnings)),
        }

    @staticmethod
    def record(user_id: int, tx_type: str, amount, status: str = TransactionStatus.COMPLETED.value,
               method: str = PaymentMethod.INTERNAL.value, **fields) -> Transaction:
        """Add a transaction row to the current scope and flush it for its id."""
        tx = Transaction(
            user_id=user_id,
            type=tx_type,
            amount=quantize_money(amount),
            status=status,
            method=method,
            **fields,
        )
        if status == TransactionStatus.COMPLETED.value:
            tx.completed_at = utcnow()
        db.session.add(tx)
        db.session.flush()
        return tx
