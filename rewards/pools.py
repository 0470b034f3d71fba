# rewards/pools.py
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import update, func, case
from sqlalchemy.orm.exc import StaleDataError

from extensions import db
from models import IncomePool, Rank, User, TransactionType
from rewards.atomic import run_atomic
from rewards.audit import observer, Events
from rewards.config import IncomeConfigHelper, quantize_money
from rewards.errors import OperationResult, ErrorKind
from rewards.ledger import LedgerHelper
from rewards.settings import PlatformConfig, PlatformSettingsHelper
from utils import utcnow

logger = logging.getLogger(__name__)


class ReferralCounter:

    @staticmethod
    def count_active_direct(user_id: int) -> int:
        return db.session.query(func.count(User.id)).filter(
            User.sponsor_id == user_id,
            User.status == "active",
        ).scalar() or 0


class IncomePoolHelper:
    """
    Pool lifecycle per (user, rank):
    locked (not claimable) -> locked (claimable) -> claimed.
    """

    # ------------------------------------------------------------------
    # Creation and crediting (called inside an open atomic scope)
    # ------------------------------------------------------------------
    @staticmethod
    def open_pool(user: User, rank: Rank, settings: PlatformConfig,
                  activation_amount: Decimal = None, source_transaction_id: int = None) -> IncomePool:
        amount = quantize_money(activation_amount if activation_amount is not None else rank.activation_amount)
        referrals = ReferralCounter.count_active_direct(user.id)
        required = settings.direct_referral_requirement

        pool = IncomePool(
            user_id=user.id,
            rank_id=rank.id,
            source_transaction_id=source_transaction_id,
            activation_amount=amount,
            max_pool_income=IncomeConfigHelper.pool_cap(amount),
            pool_income=Decimal("0"),
            claimed_amount=Decimal("0"),
            required_direct_referrals=required,
            can_claim=referrals >= required,
            is_locked=True,
        )
        db.session.add(pool)
        db.session.flush()
        logger.info(f"Opened pool {pool.id} for user {user.id} rank {rank.code} "
                    f"cap={pool.max_pool_income} referrals={referrals}/{required}")
        return pool

    @staticmethod
    def get_open_pool(user_id: int, rank_id: int, lock: bool = True) -> Optional[IncomePool]:
        query = IncomePool.query.filter(
            IncomePool.user_id == user_id,
            IncomePool.rank_id == rank_id,
            IncomePool.claimed_at.is_(None),
        ).order_by(IncomePool.id.desc())
        if lock:
            query = query.with_for_update().populate_existing()
        return query.first()

    @staticmethod
    def add_income(pool: IncomePool, amount: Decimal) -> Decimal:
        """
        Add up to ``amount`` to an open pool without passing its cap.

        Returns the amount actually credited (zero when the pool is full).
        """
        amount = quantize_money(amount)
        headroom = Decimal(str(pool.max_pool_income)) - Decimal(str(pool.pool_income))
        credit = min(amount, headroom)
        if credit <= 0:
            logger.info(f"Pool {pool.id} is at its cap of {pool.max_pool_income}, {amount} not credited")
            return Decimal("0")
        if credit < amount:
            logger.warning(f"Pool {pool.id} clamped credit {amount} to {credit}")

        result = db.session.execute(
            update(IncomePool)
            .where(
                IncomePool.id == pool.id,
                IncomePool.claimed_at.is_(None),
            )
            .values(pool_income=case(
                (IncomePool.pool_income + credit > IncomePool.max_pool_income, IncomePool.max_pool_income),
                else_=IncomePool.pool_income + credit,
            ))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Pool changed underneath us, let run_atomic retry with a fresh read
            raise StaleDataError(f"Pool {pool.id} changed while crediting")
        db.session.expire(pool, ["pool_income"])
        return credit

    # ------------------------------------------------------------------
    # Referral count -> claim eligibility
    # ------------------------------------------------------------------
    @staticmethod
    def update_direct_referrals(user_id: int, settings: PlatformConfig = None) -> OperationResult:
        """
        Recount active direct referrals and restamp eligibility on all open pools.
        """
        settings = settings or PlatformSettingsHelper.load()

        def recount():
            user = db.session.get(User, user_id, with_for_update=True, populate_existing=True)
            if user is None:
                return OperationResult.reject(ErrorKind.NOT_FOUND, "User not found")
            count = ReferralCounter.count_active_direct(user_id)
            required = settings.direct_referral_requirement
            user.direct_referrals_count = count

            result = db.session.execute(
                update(IncomePool)
                .where(IncomePool.user_id == user_id, IncomePool.claimed_at.is_(None))
                .values(required_direct_referrals=required, can_claim=count >= required)
                .execution_options(synchronize_session=False)
            )
            return OperationResult.success(
                userId=user_id,
                directReferrals=count,
                required=required,
                canClaim=count >= required,
                poolsUpdated=result.rowcount,
            )

        outcome = run_atomic(recount, name="update_direct_referrals")
        if outcome.ok:
            observer.notify(Events.REFERRALS_UPDATED, user_id=user_id, entity_type="user",
                            entity_id=user_id, **outcome.data)
        return outcome

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------
    @staticmethod
    def claim_pool(user_id: int, pool_id: int) -> OperationResult:
        """
        Drain a claimable pool into available balance.

        Eligibility (locked and claimable and not yet claimed) is re-checked by
        the guarded UPDATE itself, so a concurrent duplicate claim or a
        referral-count downgrade cannot slip through.
        """
        def claim():
            pool = db.session.get(IncomePool, pool_id, with_for_update=True, populate_existing=True)
            if pool is None:
                return OperationResult.reject(ErrorKind.NOT_FOUND, "Income pool not found")
            if pool.user_id != user_id:
                return OperationResult.reject(ErrorKind.AUTHORIZATION_DENIED, "This pool belongs to another user")
            if pool.claimed_at is not None:
                return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, "Pool has already been claimed")
            if not (pool.is_locked and pool.can_claim):
                referrals = ReferralCounter.count_active_direct(user_id)
                return OperationResult.reject(
                    ErrorKind.PRECONDITION_FAILED,
                    f"You need {pool.required_direct_referrals} active direct referrals to claim this pool",
                    directReferrals=referrals,
                    required=pool.required_direct_referrals,
                )
            amount = quantize_money(pool.pool_income)
            if amount <= 0:
                return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, "Pool has no income to claim")

            now = utcnow()
            result = db.session.execute(
                update(IncomePool)
                .where(
                    IncomePool.id == pool_id,
                    IncomePool.is_locked.is_(True),
                    IncomePool.can_claim.is_(True),
                    IncomePool.claimed_at.is_(None),
                )
                .values(
                    pool_income=Decimal("0"),
                    claimed_amount=amount,
                    is_locked=False,
                    claimed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise StaleDataError(f"Pool {pool_id} changed while claiming")

            if not LedgerHelper.release_locked(user_id, amount, add_to_earnings=True):
                # locked balance drifted from pool totals, still credit the claim
                logger.error(f"Locked balance of user {user_id} is below pool {pool_id} income {amount}")
                LedgerHelper.credit(user_id, available=amount, earnings=amount)

            tx = LedgerHelper.record(
                user_id,
                TransactionType.INCOME_CLAIM.value,
                amount,
                description=f"Income pool {pool_id} claim",
            )
            balances = LedgerHelper.get_balances(user_id)
            return OperationResult.success(
                poolId=pool_id,
                claimedAmount=float(amount),
                newBalance=float(balances["available_balance"]),
                transactionId=tx.id,
            )

        outcome = run_atomic(claim, name="claim_pool")
        if outcome.ok:
            observer.notify(Events.POOL_CLAIMED, user_id=user_id, entity_type="income_pool",
                            entity_id=pool_id, amount=outcome.data["claimedAmount"])
        return outcome

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @staticmethod
    def get_user_pools(user_id: int) -> List[IncomePool]:
        return IncomePool.query.filter_by(user_id=user_id).order_by(IncomePool.id.asc()).all()

    @staticmethod
    def get_pool_summary(user_id: int) -> Dict[str, Any]:
        pools = IncomePoolHelper.get_user_pools(user_id)
        open_pools = [p for p in pools if p.claimed_at is None]
        return {
            "totalPools": len(pools),
            "openPools": len(open_pools),
            "claimablePools": len([p for p in open_pools if p.can_claim]),
            "lockedIncome": float(sum((Decimal(str(p.pool_income)) for p in open_pools), Decimal("0"))),
            "claimedIncome": float(sum((Decimal(str(p.claimed_amount)) for p in pools), Decimal("0"))),
        }
