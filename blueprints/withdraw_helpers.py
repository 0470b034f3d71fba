from decimal import Decimal, ROUND_DOWN
from datetime import timedelta
from dataclasses import dataclass
import uuid
import logging
from typing import Any, Dict, Optional, Tuple, Union

from sqlalchemy import func, update

from extensions import db
from models import User, Withdrawal, Transaction, TransactionType, TransactionStatus, PaymentMethod
from rewards.atomic import run_atomic
from rewards.audit import observer, Events
from rewards.errors import OperationResult, Rejection, ErrorKind, validation_failed, precondition_failed
from rewards.ledger import LedgerHelper
from rewards.settings import PlatformSettingsHelper
from utils import utcnow, validate_wallet_address, validate_tx_hash


logger = logging.getLogger(__name__)

# ==========================================================
#                  CONFIGURATION
# ==========================================================
class WithdrawalConfig:
    MIN_WITHDRAWAL = Decimal("10")
    MAX_WITHDRAWAL = Decimal("50000")
    DAILY_LIMIT = Decimal("10000")
    PROCESSING_FEE_PERCENT = Decimal("5.0")
    NETWORK_FEES = {
        PaymentMethod.USDT_BEP20.value: Decimal("2"),
        PaymentMethod.P2P.value: Decimal("0"),
    }

    @staticmethod
    def calculate_fee(amount: Decimal) -> Decimal:
        """Calculate processing fee"""
        fee = (amount * WithdrawalConfig.PROCESSING_FEE_PERCENT) / Decimal("100")
        return fee.quantize(Decimal('0.01'), rounding=ROUND_DOWN)

    @staticmethod
    def network_fee(method: str) -> Decimal:
        return WithdrawalConfig.NETWORK_FEES.get(method, Decimal("0"))

    @staticmethod
    def limits() -> Dict[str, Any]:
        return {
            "minimum": float(WithdrawalConfig.MIN_WITHDRAWAL),
            "maximum": float(WithdrawalConfig.MAX_WITHDRAWAL),
            "dailyLimit": float(WithdrawalConfig.DAILY_LIMIT),
            "processingFeePercent": float(WithdrawalConfig.PROCESSING_FEE_PERCENT),
            "networkFees": {k: float(v) for k, v in WithdrawalConfig.NETWORK_FEES.items()},
        }

# ==========================================================
#                  DESTINATIONS
# ==========================================================
@dataclass(frozen=True)
class WalletDestination:
    address: str
    method = PaymentMethod.USDT_BEP20.value

    def to_record(self) -> Dict[str, Any]:
        return {"walletAddress": self.address}


@dataclass(frozen=True)
class P2PDestination:
    account: str
    platform: Optional[str] = None
    method = PaymentMethod.P2P.value

    def to_record(self) -> Dict[str, Any]:
        return {"account": self.account, "platform": self.platform}


Destination = Union[WalletDestination, P2PDestination]


def parse_destination(method: str, raw: Optional[Dict[str, Any]]) -> Tuple[Optional[Destination], Optional[Rejection]]:
    raw = raw or {}
    if method == PaymentMethod.USDT_BEP20.value:
        address = (raw.get("walletAddress") or "").strip()
        if not validate_wallet_address(address):
            return None, validation_failed("A valid BEP20 wallet address is required")
        return WalletDestination(address=address), None

    if method == PaymentMethod.P2P.value:
        account = (raw.get("account") or "").strip()
        if len(account) < 4 or len(account) > 120:
            return None, validation_failed("A valid P2P account is required")
        platform = (raw.get("platform") or "").strip() or None
        return P2PDestination(account=account, platform=platform), None

    return None, validation_failed(f"Unsupported withdrawal method: {method}")

# ==========================================================
#                  WITHDRAWAL VALIDATOR
# ==========================================================
class WithdrawalValidator:

    @staticmethod
    def check_amount(amount: Decimal, method: str) -> Optional[Rejection]:
        if amount < WithdrawalConfig.MIN_WITHDRAWAL:
            return validation_failed(f"Minimum withdrawal is {WithdrawalConfig.MIN_WITHDRAWAL}")
        if amount > WithdrawalConfig.MAX_WITHDRAWAL:
            return validation_failed(f"Maximum withdrawal is {WithdrawalConfig.MAX_WITHDRAWAL}")
        fees = WithdrawalConfig.calculate_fee(amount) + WithdrawalConfig.network_fee(method)
        if amount <= fees:
            return validation_failed("Amount does not cover the withdrawal fees")
        return None

    @staticmethod
    def withdrawn_today(user_id: int) -> Decimal:
        since = utcnow() - timedelta(hours=24)
        total = db.session.query(func.coalesce(func.sum(Withdrawal.amount), 0)).filter(
            Withdrawal.user_id == user_id,
            Withdrawal.status != "rejected",
            Withdrawal.created_at >= since,
        ).scalar()
        return Decimal(str(total or 0))

    @staticmethod
    def validate(user: User, amount: Decimal) -> Optional[Rejection]:
        """Checks run with the user row locked."""
        if not user.is_activated:
            return precondition_failed("Only active accounts can withdraw")

        pending = Withdrawal.query.filter_by(user_id=user.id, status="pending").first()
        if pending:
            return precondition_failed("You have a pending withdrawal. Please wait for it to complete.",
                                       reference=pending.reference)

        used = WithdrawalValidator.withdrawn_today(user.id)
        if used + amount > WithdrawalConfig.DAILY_LIMIT:
            return precondition_failed(
                "Daily withdrawal limit exceeded",
                dailyLimit=float(WithdrawalConfig.DAILY_LIMIT),
                remaining=float(max(WithdrawalConfig.DAILY_LIMIT - used, Decimal("0"))),
            )

        if Decimal(str(user.available_balance or 0)) < amount:
            return precondition_failed("Insufficient balance",
                                       available=float(user.available_balance or 0))
        return None

# ==========================================================
#                  MAIN WITHDRAWAL PROCESSOR
# ==========================================================
class WithdrawalProcessor:
    """
    pending -> completed | rejected

    The full amount is held (debited) when the request is made; a rejection
    refunds it. The user receives ``amount - fee - network_fee``.
    """

    @staticmethod
    def request_withdrawal(user_id: int, amount: Decimal, method: str,
                           destination: Optional[Dict[str, Any]] = None) -> OperationResult:
        amount = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_DOWN)
        target, rejection = parse_destination(method, destination)
        if rejection:
            return OperationResult.from_rejection(rejection)
        rejection = WithdrawalValidator.check_amount(amount, target.method)
        if rejection:
            return OperationResult.from_rejection(rejection)
        if PlatformSettingsHelper.load().maintenance_mode:
            return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, "The platform is under maintenance")

        fee = WithdrawalConfig.calculate_fee(amount)
        network_fee = WithdrawalConfig.network_fee(target.method)
        net_amount = amount - fee - network_fee

        def hold():
            user = db.session.get(User, user_id, with_for_update=True, populate_existing=True)
            if user is None:
                return OperationResult.reject(ErrorKind.NOT_FOUND, "User not found")
            rejection = WithdrawalValidator.validate(user, amount)
            if rejection:
                return OperationResult.from_rejection(rejection)

            if not LedgerHelper.debit_available(user_id, amount):
                return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, "Insufficient balance")

            tx = LedgerHelper.record(
                user_id,
                TransactionType.WITHDRAWAL.value,
                amount,
                status=TransactionStatus.PENDING.value,
                method=target.method,
                payment_details=target.to_record(),
                description=f"Withdrawal via {target.method}",
            )
            withdrawal = Withdrawal(
                user_id=user_id,
                amount=amount,
                fee=fee,
                network_fee=network_fee,
                net_amount=net_amount,
                method=target.method,
                destination=target.to_record(),
                status="pending",
                reference=str(uuid.uuid4()),
                transaction_id=tx.id,
            )
            db.session.add(withdrawal)
            db.session.flush()
            balances = LedgerHelper.get_balances(user_id)
            return OperationResult.success(
                withdrawal=withdrawal.to_dict(),
                newBalance=float(balances["available_balance"]),
            )

        result = run_atomic(hold, name="request_withdrawal")
        if result.ok:
            logger.info(f"Withdrawal {result.data['withdrawal']['reference']} held {amount} for user {user_id}")
            observer.notify(Events.WITHDRAWAL_REQUESTED, user_id=user_id, entity_type="withdrawal",
                            entity_id=result.data["withdrawal"]["id"], amount=amount, net=net_amount)
        return result

    @staticmethod
    def approve_withdrawal(withdrawal_id: int, admin_id: int, external_txid: str = None) -> OperationResult:
        """Mark withdrawal as completed"""
        external_txid = (external_txid or "").strip() or None
        if external_txid and not validate_tx_hash(external_txid):
            return OperationResult.reject(ErrorKind.VALIDATION_FAILED, "Invalid payout transaction hash")

        def approve():
            withdrawal = db.session.get(Withdrawal, withdrawal_id, with_for_update=True, populate_existing=True)
            if withdrawal is None:
                return OperationResult.reject(ErrorKind.NOT_FOUND, "Withdrawal not found")
            moved = db.session.execute(
                update(Withdrawal)
                .where(Withdrawal.id == withdrawal_id, Withdrawal.status == "pending")
                .values(status="completed", external_txid=external_txid,
                        processed_by=admin_id, processed_at=utcnow())
                .execution_options(synchronize_session=False)
            ).rowcount
            if moved != 1:
                return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, f"Withdrawal is already {withdrawal.status}")
            WithdrawalProcessor._settle_transaction(withdrawal.transaction_id, TransactionStatus.COMPLETED, admin_id)
            db.session.expire(withdrawal)
            return OperationResult.success(withdrawal=withdrawal.to_dict())

        result = run_atomic(approve, name="approve_withdrawal")
        if result.ok:
            observer.notify(Events.WITHDRAWAL_APPROVED, actor_id=admin_id, entity_type="withdrawal",
                            entity_id=withdrawal_id, external_txid=external_txid)
        return result

    @staticmethod
    def reject_withdrawal(withdrawal_id: int, admin_id: int, reason: str = None) -> OperationResult:
        """Mark withdrawal as rejected and refund the held amount"""
        reason = (reason or "Withdrawal rejected")[:255]

        def reject():
            withdrawal = db.session.get(Withdrawal, withdrawal_id, with_for_update=True, populate_existing=True)
            if withdrawal is None:
                return OperationResult.reject(ErrorKind.NOT_FOUND, "Withdrawal not found")
            moved = db.session.execute(
                update(Withdrawal)
                .where(Withdrawal.id == withdrawal_id, Withdrawal.status == "pending")
                .values(status="rejected", rejection_reason=reason,
                        processed_by=admin_id, processed_at=utcnow())
                .execution_options(synchronize_session=False)
            ).rowcount
            if moved != 1:
                return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, f"Withdrawal is already {withdrawal.status}")

            if not LedgerHelper.credit(withdrawal.user_id, available=withdrawal.amount):
                raise ValueError(f"Refund for withdrawal {withdrawal_id} found no user {withdrawal.user_id}")
            WithdrawalProcessor._settle_transaction(withdrawal.transaction_id, TransactionStatus.FAILED,
                                                    admin_id, reason)
            db.session.expire(withdrawal)
            return OperationResult.success(withdrawal=withdrawal.to_dict(), refunded=float(withdrawal.amount))

        result = run_atomic(reject, name="reject_withdrawal")
        if result.ok:
            observer.notify(Events.WITHDRAWAL_REJECTED, actor_id=admin_id, entity_type="withdrawal",
                            entity_id=withdrawal_id, reason=reason)
        return result

    @staticmethod
    def _settle_transaction(transaction_id: Optional[int], status: TransactionStatus,
                            admin_id: int, reason: str = None):
        if transaction_id is None:
            return
        values = {"status": status.value, "processed_by": admin_id}
        if status == TransactionStatus.COMPLETED:
            values["completed_at"] = utcnow()
        if reason:
            values["failure_reason"] = reason
        db.session.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status == TransactionStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

# ==========================================================
#                  QUERY HELPERS
# ==========================================================
class WithdrawalQueryHelper:
    @staticmethod
    def get_user_withdrawals(user_id: int, limit: int = 10):
        """Get user's withdrawal history"""
        return Withdrawal.query.filter_by(user_id=user_id)\
                              .order_by(Withdrawal.id.desc())\
                              .limit(limit)\
                              .all()

    @staticmethod
    def get_pending_withdrawals():
        return Withdrawal.query.filter_by(status="pending").order_by(Withdrawal.id.asc()).all()

    @staticmethod
    def get_withdrawal_by_ref(reference: str):
        """Find withdrawal by reference"""
        return Withdrawal.query.filter_by(reference=reference).first()

    @staticmethod
    def get_limits_for(user_id: int) -> Dict[str, Any]:
        used = WithdrawalValidator.withdrawn_today(user_id)
        limits = WithdrawalConfig.limits()
        limits.update({
            "usedToday": float(used),
            "remainingToday": float(max(WithdrawalConfig.DAILY_LIMIT - used, Decimal("0"))),
        })
        return limits
