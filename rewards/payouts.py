# rewards/payouts.py
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import update, func

from extensions import db
from models import Payout, PayoutStatus, TransactionType, User
from rewards.atomic import run_atomic
from rewards.audit import observer, Events
from rewards.config import quantize_money
from rewards.errors import OperationResult, ErrorKind
from rewards.ledger import LedgerHelper
from utils import utcnow, as_utc

logger = logging.getLogger(__name__)


class PayoutQueueHelper:
    """pending -> ready -> claimed | expired"""

    @staticmethod
    def queue_payout(user_id: int, amount: Decimal, source_type: str = "manual", source_id: int = None,
                     description: str = None, scheduled_at: datetime = None,
                     created_by: int = None) -> OperationResult:
        amount = quantize_money(amount)
        if amount <= 0:
            return OperationResult.reject(ErrorKind.VALIDATION_FAILED, "Payout amount must be positive")

        def enqueue():
            if db.session.get(User, user_id) is None:
                return OperationResult.reject(ErrorKind.NOT_FOUND, "User not found")
            payout = Payout(
                user_id=user_id,
                amount=amount,
                source_type=source_type,
                source_id=source_id,
                description=description,
                status=PayoutStatus.PENDING.value,
                scheduled_at=scheduled_at or utcnow(),
                created_by=created_by,
            )
            db.session.add(payout)
            db.session.flush()
            return OperationResult.success(payout=payout.to_dict())

        result = run_atomic(enqueue, name="queue_payout")
        if result.ok:
            observer.notify(Events.PAYOUT_QUEUED, actor_id=created_by, user_id=user_id, entity_type="payout",
                            entity_id=result.data["payout"]["id"], amount=amount)
        return result

    @staticmethod
    def process_queue(now: datetime = None) -> Dict[str, int]:
        """Promote due payouts to ready and expire stale ready ones."""
        now = now or utcnow()
        expires_at = now + timedelta(days=current_app.config.get("PAYOUT_EXPIRY_DAYS", 30))

        def promote_and_expire():
            promoted = db.session.execute(
                update(Payout)
                .where(Payout.status == PayoutStatus.PENDING.value, Payout.scheduled_at <= now)
                .values(status=PayoutStatus.READY.value, expires_at=expires_at)
                .execution_options(synchronize_session=False)
            ).rowcount
            expired = db.session.execute(
                update(Payout)
                .where(Payout.status == PayoutStatus.READY.value, Payout.expires_at < now)
                .values(status=PayoutStatus.EXPIRED.value)
                .execution_options(synchronize_session=False)
            ).rowcount
            return {"promoted": promoted, "expired": expired}

        stats = run_atomic(promote_and_expire, name="process_payout_queue")
        logger.info(f"Payout queue processed: {stats}")
        return stats

    @staticmethod
    def claim_payout(user_id: int, payout_id: int, password: str) -> OperationResult:
        """Move a ready payout into the owner's available balance."""
        if not password or len(password) < 6:
            return OperationResult.reject(ErrorKind.VALIDATION_FAILED, "Password confirmation is required")

        def claim():
            user = db.session.get(User, user_id, with_for_update=True, populate_existing=True)
            if user is None:
                return OperationResult.reject(ErrorKind.NOT_FOUND, "User not found")
            if not user.check_password(password):
                return OperationResult.reject(ErrorKind.AUTHORIZATION_DENIED, "Invalid password")
            if not user.is_activated or user.is_suspended:
                return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, "Your account must be active to claim payouts")

            payout = db.session.get(Payout, payout_id, with_for_update=True, populate_existing=True)
            if payout is None:
                return OperationResult.reject(ErrorKind.NOT_FOUND, "Payout not found")
            if payout.user_id != user_id:
                return OperationResult.reject(ErrorKind.AUTHORIZATION_DENIED, "This payout belongs to another user")
            if payout.status != PayoutStatus.READY.value:
                return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, f"Payout is {payout.status}")
            now = utcnow()
            if payout.expires_at is not None and as_utc(payout.expires_at) < now:
                return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, "Payout has expired")

            amount = quantize_money(payout.amount)
            claimed = db.session.execute(
                update(Payout)
                .where(Payout.id == payout_id, Payout.status == PayoutStatus.READY.value)
                .values(status=PayoutStatus.CLAIMED.value, claimed_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if claimed != 1:
                return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, "Payout has already been claimed")

            LedgerHelper.credit(user_id, available=amount, earnings=amount)
            tx = LedgerHelper.record(
                user_id,
                TransactionType.PAYOUT_CLAIM.value,
                amount,
                description=payout.description or f"Payout {payout_id} claim",
            )
            db.session.execute(
                update(Payout).where(Payout.id == payout_id).values(transaction_id=tx.id)
                .execution_options(synchronize_session=False)
            )
            balances = LedgerHelper.get_balances(user_id)
            return OperationResult.success(
                payoutId=payout_id,
                claimedAmount=float(amount),
                newBalance=float(balances["available_balance"]),
                transactionId=tx.id,
            )

        result = run_atomic(claim, name="claim_payout")
        if result.ok:
            observer.notify(Events.PAYOUT_CLAIMED, user_id=user_id, entity_type="payout",
                            entity_id=payout_id, amount=result.data["claimedAmount"])
        return result

    @staticmethod
    def get_user_payouts(user_id: int, status: Optional[str] = None, limit: int = 50) -> Dict[str, Any]:
        query = Payout.query.filter_by(user_id=user_id)
        if status:
            query = query.filter_by(status=status)
        payouts: List[Payout] = query.order_by(Payout.id.desc()).limit(limit).all()

        totals = dict(
            db.session.query(Payout.status, func.coalesce(func.sum(Payout.amount), 0))
            .filter(Payout.user_id == user_id)
            .group_by(Payout.status)
            .all()
        )
        return {
            "payouts": [p.to_dict() for p in payouts],
            "summary": {
                "totalReady": float(totals.get(PayoutStatus.READY.value, 0)),
                "totalClaimed": float(totals.get(PayoutStatus.CLAIMED.value, 0)),
                "totalExpired": float(totals.get(PayoutStatus.EXPIRED.value, 0)),
                "totalPending": float(totals.get(PayoutStatus.PENDING.value, 0)),
            },
        }
