# rewards/activation.py
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from models import (
    Rank, Transaction, User, IncomeKind, IncomePool,
    TransactionStatus, TransactionType, PaymentMethod, ACTIVATION_TYPES,
)
from rewards.atomic import run_atomic
from rewards.audit import observer, Events
from rewards.blockchain import ChainVerifier
from rewards.commission import CommissionDistributor
from rewards.config import RankCatalog, quantize_money
from rewards.errors import (
    OperationResult, Rejection, ErrorKind, InternalError,
    validation_failed, precondition_failed, conflict, authorization_denied,
)
from rewards.ledger import LedgerHelper
from rewards.pools import IncomePoolHelper
from rewards.settings import PlatformConfig, PlatformSettingsHelper
from utils import utcnow, validate_tx_hash, validate_wallet_address

logger = logging.getLogger(__name__)

# Pending transactions an admin settles through the activation/deposit routes
CONFIRMABLE_TYPES = ACTIVATION_TYPES + (TransactionType.DEPOSIT.value,)


# ==========================================================
#                  PAYMENT DETAILS
# ==========================================================
@dataclass(frozen=True)
class WalletPayment:
    method = PaymentMethod.WALLET.value

    @property
    def external_reference(self) -> Optional[str]:
        return None

    def to_record(self) -> Dict[str, Any]:
        return {"method": self.method}


@dataclass(frozen=True)
class CryptoPayment:
    transaction_hash: str
    from_wallet: str
    method = PaymentMethod.USDT_BEP20.value

    @property
    def external_reference(self) -> str:
        return f"{self.method}:{self.transaction_hash.lower()}"

    def to_record(self) -> Dict[str, Any]:
        return {"method": self.method, "txHash": self.transaction_hash, "fromWallet": self.from_wallet}


@dataclass(frozen=True)
class P2PPayment:
    reference: str
    platform: Optional[str] = None
    method = PaymentMethod.P2P.value

    @property
    def external_reference(self) -> str:
        return f"{self.method}:{self.reference.lower()}"

    def to_record(self) -> Dict[str, Any]:
        return {"method": self.method, "p2pReference": self.reference, "platform": self.platform}


PaymentDetails = Union[WalletPayment, CryptoPayment, P2PPayment]


def parse_payment_details(method: str, raw: Optional[Dict[str, Any]],
                          allow_wallet: bool = True) -> Tuple[Optional[PaymentDetails], Optional[Rejection]]:
    raw = raw or {}
    if method == PaymentMethod.WALLET.value and allow_wallet:
        return WalletPayment(), None

    if method == PaymentMethod.USDT_BEP20.value:
        tx_hash = (raw.get("txHash") or raw.get("transactionHash") or "").strip()
        from_wallet = (raw.get("fromWallet") or "").strip()
        if not validate_tx_hash(tx_hash):
            return None, validation_failed("A valid BEP20 transaction hash is required")
        if not validate_wallet_address(from_wallet):
            return None, validation_failed("A valid sender wallet address is required")
        return CryptoPayment(transaction_hash=tx_hash, from_wallet=from_wallet), None

    if method == PaymentMethod.P2P.value:
        reference = (raw.get("p2pReference") or raw.get("reference") or "").strip()
        if len(reference) < 4 or len(reference) > 120:
            return None, validation_failed("A valid P2P payment reference is required")
        platform = (raw.get("platform") or "").strip() or None
        return P2PPayment(reference=reference, platform=platform), None

    return None, validation_failed(f"Unsupported payment method: {method}")


def is_external(payment: PaymentDetails) -> bool:
    if isinstance(payment, WalletPayment):
        return False
    if isinstance(payment, (CryptoPayment, P2PPayment)):
        return True
    raise InternalError(f"Unhandled payment variant {type(payment).__name__}")


def reference_in_use(reference: Optional[str]) -> bool:
    if not reference:
        return False
    return db.session.query(Transaction.id).filter(Transaction.external_reference == reference).first() is not None


def _is_reference_conflict(error: IntegrityError) -> bool:
    return "external_reference" in str(getattr(error, "orig", error))


# ==========================================================
#                  VALIDATOR
# ==========================================================
class ActivationValidator:

    @staticmethod
    def check_rank_sequence(user: User, rank: Rank, settings: PlatformConfig) -> Optional[Rejection]:
        """Next rank, or the current rank once its pool has been claimed."""
        if not rank.is_enabled:
            return precondition_failed(f"Rank {rank.name} is not available")
        if RankCatalog.position(rank) > settings.max_rank_level:
            return precondition_failed(f"Rank {rank.name} is above the maximum rank level")

        current = user.current_rank
        if current is not None and rank.id == current.id:
            if IncomePoolHelper.get_open_pool(user.id, rank.id, lock=False) is not None:
                return precondition_failed(f"Rank {rank.name} is already active")
            return None
        if current is not None and rank.order_index < current.order_index:
            return precondition_failed("Rank downgrades are not allowed")

        expected = RankCatalog.next_rank(current)
        if expected is None or expected.id != rank.id:
            return precondition_failed(
                "You can only upgrade to next rank",
                currentRank=current.code if current else None,
                nextRank=expected.code if expected else None,
            )
        return None

    @staticmethod
    def validate(user: User, rank: Optional[Rank], payment: PaymentDetails,
                 settings: PlatformConfig) -> Optional[Rejection]:
        if settings.maintenance_mode:
            return precondition_failed("The platform is under maintenance, please try again later")
        if user.is_suspended:
            return authorization_denied("Your account is suspended")
        if rank is None:
            return validation_failed("Unknown rank")

        if is_external(payment) and reference_in_use(payment.external_reference):
            return conflict("This payment reference has already been used")

        pending = db.session.query(Transaction.id).filter(
            Transaction.user_id == user.id,
            Transaction.type.in_(ACTIVATION_TYPES),
            Transaction.status == TransactionStatus.PENDING.value,
        ).first()
        if pending:
            return precondition_failed("You already have a pending activation", transactionId=pending.id)

        rejection = ActivationValidator.check_rank_sequence(user, rank, settings)
        if rejection:
            return rejection

        if isinstance(payment, WalletPayment):
            if Decimal(str(user.available_balance or 0)) < Decimal(str(rank.activation_amount)):
                return precondition_failed(
                    "Insufficient wallet balance",
                    required=float(rank.activation_amount),
                    available=float(user.available_balance or 0),
                )
        return None


# ==========================================================
#                  SERVICE
# ==========================================================
class ActivationService:

    @staticmethod
    def request_activation(user_id: int, rank_code: str, method: str,
                           details: Optional[Dict[str, Any]] = None) -> OperationResult:
        """
        Create an activation or top-up for ``rank_code``.

        Wallet payments are debited and completed in the same transaction that
        re-reads the user row under lock. External payments are stored pending
        until an admin confirms them.
        """
        settings = PlatformSettingsHelper.load()
        payment, rejection = parse_payment_details(method, details)
        if rejection:
            return OperationResult.from_rejection(rejection)
        rank = RankCatalog.get_by_code(rank_code)

        def create():
            user = db.session.get(User, user_id, with_for_update=True, populate_existing=True)
            if user is None:
                return OperationResult.reject(ErrorKind.NOT_FOUND, "User not found")
            rejection = ActivationValidator.validate(user, rank, payment, settings)
            if rejection:
                return OperationResult.from_rejection(rejection)

            tx_type = TransactionType.ACTIVATION if user.current_rank_id is None else TransactionType.TOPUP
            amount = quantize_money(rank.activation_amount)
            tx = LedgerHelper.record(
                user.id,
                tx_type.value,
                amount,
                status=TransactionStatus.PENDING.value,
                method=payment.method,
                rank_id=rank.id,
                payment_details=payment.to_record(),
                external_reference=payment.external_reference,
                description=f"{rank.name} {tx_type.value}",
            )

            pool = None
            if isinstance(payment, WalletPayment):
                if not LedgerHelper.debit_available(user.id, amount):
                    return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, "Insufficient wallet balance")
                pool = ActivationProcessor.complete_in_scope(tx, user, rank, settings)

            return OperationResult.success(
                transactionId=tx.id,
                type=tx_type.value,
                status=tx.status,
                activatedRanks=[rank.code] if pool else [],
                totalCost=float(amount),
                poolIds=[pool.id] if pool else [],
            )

        try:
            result = run_atomic(create, name="request_activation")
        except IntegrityError as e:
            if _is_reference_conflict(e):
                return OperationResult.reject(ErrorKind.CONFLICT, "This payment reference has already been used")
            raise

        if result.ok:
            observer.notify(Events.ACTIVATION_REQUESTED, user_id=user_id, entity_type="transaction",
                            entity_id=result.data["transactionId"], rank=rank.code, method=payment.method,
                            status=result.data["status"])
            if result.data["status"] == TransactionStatus.COMPLETED.value:
                ActivationProcessor.process_after_commit(result.data["transactionId"])
        return result


class ActivationProcessor:

    @staticmethod
    def complete_in_scope(tx: Transaction, user: User, rank: Rank, settings: PlatformConfig) -> IncomePool:
        """Flip a pending activation to completed and open its pool. Caller holds the user lock."""
        now = utcnow()
        tx.status = TransactionStatus.COMPLETED.value
        tx.completed_at = now
        user.current_rank_id = rank.id
        user.status = "active"
        if user.activated_at is None:
            user.activated_at = now
        db.session.flush()
        return IncomePoolHelper.open_pool(user, rank, settings,
                                          activation_amount=tx.amount,
                                          source_transaction_id=tx.id)

    @staticmethod
    def confirm_pending(transaction_id: int, admin_id: int, verify_onchain: bool = False) -> OperationResult:
        """Admin confirmation of an externally paid activation or deposit."""
        settings = PlatformSettingsHelper.load()
        tx = db.session.get(Transaction, transaction_id)
        if tx is None:
            return OperationResult.reject(ErrorKind.NOT_FOUND, "Transaction not found")

        if verify_onchain and tx.method == PaymentMethod.USDT_BEP20.value:
            verifier = ChainVerifier.from_config()
            if verifier is None:
                return OperationResult.reject(ErrorKind.VALIDATION_FAILED, "On-chain verification is not configured")
            confirmed, message = verifier.verify_transaction((tx.payment_details or {}).get("txHash", ""))
            if not confirmed:
                return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, message)

        def confirm():
            tx = db.session.get(Transaction, transaction_id, with_for_update=True, populate_existing=True)
            if tx.status != TransactionStatus.PENDING.value:
                return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, f"Transaction is already {tx.status}")
            user = db.session.get(User, tx.user_id, with_for_update=True, populate_existing=True)
            tx.processed_by = admin_id

            if tx.type == TransactionType.DEPOSIT.value:
                tx.status = TransactionStatus.COMPLETED.value
                tx.completed_at = utcnow()
                LedgerHelper.credit(user.id, available=tx.amount)
                return OperationResult.success(transactionId=tx.id, type=tx.type, status=tx.status, poolIds=[])

            if tx.type not in CONFIRMABLE_TYPES:
                return OperationResult.reject(ErrorKind.VALIDATION_FAILED, f"Transactions of type {tx.type} cannot be confirmed")
            rejection = ActivationValidator.check_rank_sequence(user, tx.rank, settings)
            if rejection:
                return OperationResult.from_rejection(rejection)
            pool = ActivationProcessor.complete_in_scope(tx, user, tx.rank, settings)
            return OperationResult.success(transactionId=tx.id, type=tx.type, status=tx.status,
                                           activatedRanks=[tx.rank.code], poolIds=[pool.id])

        result = run_atomic(confirm, name="confirm_pending_transaction")
        if result.ok:
            is_deposit = result.data["type"] == TransactionType.DEPOSIT.value
            observer.notify(Events.DEPOSIT_APPROVED if is_deposit else Events.ACTIVATION_COMPLETED,
                            actor_id=admin_id, entity_type="transaction", entity_id=transaction_id)
            if not is_deposit:
                ActivationProcessor.process_after_commit(transaction_id)
        return result

    @staticmethod
    def reject_pending(transaction_id: int, admin_id: int, reason: str = None) -> OperationResult:
        reason = (reason or "Payment could not be verified")[:255]

        def reject():
            tx = db.session.get(Transaction, transaction_id, with_for_update=True, populate_existing=True)
            if tx is None:
                return OperationResult.reject(ErrorKind.NOT_FOUND, "Transaction not found")
            if tx.type not in CONFIRMABLE_TYPES:
                return OperationResult.reject(ErrorKind.VALIDATION_FAILED, f"Transactions of type {tx.type} cannot be rejected here")
            result = db.session.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id, Transaction.status == TransactionStatus.PENDING.value)
                .values(status=TransactionStatus.FAILED.value, failure_reason=reason, processed_by=admin_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, f"Transaction is already {tx.status}")
            return OperationResult.success(transactionId=transaction_id, type=tx.type,
                                           status=TransactionStatus.FAILED.value, reason=reason)

        result = run_atomic(reject, name="reject_pending_transaction")
        if result.ok:
            event = Events.DEPOSIT_REJECTED if result.data["type"] == TransactionType.DEPOSIT.value \
                else Events.ACTIVATION_REJECTED
            observer.notify(event, actor_id=admin_id, entity_type="transaction",
                            entity_id=transaction_id, reason=reason)
        return result

    # ------------------------------------------------------------------
    # Completed activation -> commissions (safe to run more than once)
    # ------------------------------------------------------------------
    @staticmethod
    def process_completed(transaction_id: int) -> Dict[str, Any]:
        tx = db.session.get(Transaction, transaction_id, populate_existing=True)
        if tx is None:
            logger.error(f"Completed-activation processing for unknown transaction {transaction_id}")
            return {"processed": False, "reason": "not found"}
        if tx.status != TransactionStatus.COMPLETED.value or not tx.is_activation:
            return {"processed": False, "reason": f"{tx.type} transaction is {tx.status}"}
        if tx.commissions_processed_at is not None:
            return {"processed": False, "reason": "already processed"}

        settings = PlatformSettingsHelper.load()
        rank, activator_id, amount = tx.rank, tx.user_id, Decimal(str(tx.amount))
        summary = {"processed": True, "transactionId": transaction_id}
        failed = {}
        for kind in (IncomeKind.REFERRAL, IncomeKind.LEVEL, IncomeKind.GLOBAL):
            outcome = CommissionDistributor.distribute(activator_id, amount, rank, kind,
                                                       transaction_id, settings)
            summary[kind.value] = outcome.entry_ids
            if not outcome.complete:
                failed[kind.value] = outcome.failed_recipients

        activator = db.session.get(User, activator_id)
        if activator.sponsor_id:
            IncomePoolHelper.update_direct_referrals(activator.sponsor_id, settings)

        if failed:
            # Left unmarked so the sweeper pays the missing recipients later
            logger.warning(f"Commissions for tx {transaction_id} incomplete, will be re-delivered: {failed}")
            summary.update(processed=False, reason="incomplete", failedRecipients=failed)
            return summary

        def mark_processed():
            db.session.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id, Transaction.commissions_processed_at.is_(None))
                .values(commissions_processed_at=utcnow())
                .execution_options(synchronize_session=False)
            )

        run_atomic(mark_processed, name="mark_commissions_processed")
        observer.notify(Events.COMMISSIONS_DISTRIBUTED, user_id=activator_id, entity_type="transaction",
                        entity_id=transaction_id,
                        entries={k: len(v) for k, v in summary.items() if isinstance(v, list)})
        return summary

    @staticmethod
    def process_after_commit(transaction_id: int) -> Optional[Dict[str, Any]]:
        """
        Commissions for an activation that has already committed.

        The payment and rank change stand whatever happens here; a failure is
        logged and the transaction stays unprocessed for ``sweep_unprocessed``.
        """
        try:
            return ActivationProcessor.process_completed(transaction_id)
        except (InternalError, SQLAlchemyError) as e:
            db.session.rollback()
            logger.error(f"Commission processing for tx {transaction_id} failed, left for the sweeper: {e}")
            return None

    @staticmethod
    def sweep_unprocessed(limit: int = 100) -> Dict[str, int]:
        """Re-deliver completed activations whose commissions never ran."""
        pending_ids = [row.id for row in db.session.query(Transaction.id).filter(
            Transaction.type.in_(ACTIVATION_TYPES),
            Transaction.status == TransactionStatus.COMPLETED.value,
            Transaction.commissions_processed_at.is_(None),
        ).order_by(Transaction.id.asc()).limit(limit).all()]

        stats = {"found": len(pending_ids), "processed": 0, "failed": 0}
        for tx_id in pending_ids:
            try:
                summary = ActivationProcessor.process_completed(tx_id)
            except (InternalError, SQLAlchemyError) as e:
                db.session.rollback()
                stats["failed"] += 1
                logger.error(f"Re-delivery of transaction {tx_id} failed: {e}")
                continue
            if summary.get("processed"):
                stats["processed"] += 1
            elif summary.get("reason") == "incomplete":
                stats["failed"] += 1
        return stats


class DepositService:

    MIN_DEPOSIT = Decimal("0.01")
    MAX_DEPOSIT = Decimal("1000000")

    @staticmethod
    def request_deposit(user_id: int, amount: Decimal, method: str,
                        details: Optional[Dict[str, Any]] = None) -> OperationResult:
        """Externally funded wallet top-up, credited once an admin confirms it."""
        amount = Decimal(str(amount))
        if amount > DepositService.MAX_DEPOSIT:
            return OperationResult.reject(ErrorKind.VALIDATION_FAILED, f"Maximum deposit is {DepositService.MAX_DEPOSIT}")
        amount = quantize_money(amount)
        if amount < DepositService.MIN_DEPOSIT:
            return OperationResult.reject(ErrorKind.VALIDATION_FAILED, f"Minimum deposit is {DepositService.MIN_DEPOSIT}")
        payment, rejection = parse_payment_details(method, details, allow_wallet=False)
        if rejection:
            return OperationResult.from_rejection(rejection)
        settings = PlatformSettingsHelper.load()
        if settings.maintenance_mode:
            return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, "The platform is under maintenance")

        def create():
            user = db.session.get(User, user_id, with_for_update=True, populate_existing=True)
            if user is None:
                return OperationResult.reject(ErrorKind.NOT_FOUND, "User not found")
            if reference_in_use(payment.external_reference):
                return OperationResult.reject(ErrorKind.CONFLICT, "This payment reference has already been used")
            tx = LedgerHelper.record(
                user.id,
                TransactionType.DEPOSIT.value,
                amount,
                status=TransactionStatus.PENDING.value,
                method=payment.method,
                payment_details=payment.to_record(),
                external_reference=payment.external_reference,
                description="Wallet deposit",
            )
            return OperationResult.success(transactionId=tx.id, status=tx.status, amount=float(tx.amount))

        try:
            result = run_atomic(create, name="request_deposit")
        except IntegrityError as e:
            if _is_reference_conflict(e):
                return OperationResult.reject(ErrorKind.CONFLICT, "This payment reference has already been used")
            raise
        if result.ok:
            observer.notify(Events.DEPOSIT_REQUESTED, user_id=user_id, entity_type="transaction",
                            entity_id=result.data["transactionId"], amount=amount)
        return result
