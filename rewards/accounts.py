# rewards/accounts.py
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import User, TransactionType
from rewards.atomic import run_atomic
from rewards.audit import observer, Events
from rewards.config import quantize_money
from rewards.errors import OperationResult, ErrorKind
from rewards.ledger import LedgerHelper
from rewards.settings import PlatformSettingsHelper
from rewards.upline import UplineWalker
from utils import validate_email, validate_username, generate_referral_code

logger = logging.getLogger(__name__)

REFERRAL_CODE_ATTEMPTS = 10


class RegistrationService:

    @staticmethod
    def _unique_referral_code() -> str:
        for _ in range(REFERRAL_CODE_ATTEMPTS):
            code = generate_referral_code()
            if not db.session.query(User.id).filter_by(referral_code=code).first():
                return code
        raise ValueError("Could not generate a unique referral code")

    @staticmethod
    def register(username: str, email: str, password: str,
                 referral_code: Optional[str] = None, role: str = "user") -> OperationResult:
        """
        Create a user placed under the sponsor owning ``referral_code``.

        The sponsor link is written once here and never changes afterwards.
        """
        username = (username or "").strip()
        email = (email or "").strip().lower()
        referral_code = (referral_code or "").strip().upper() or None

        if not validate_username(username):
            return OperationResult.reject(ErrorKind.VALIDATION_FAILED,
                                          "Username must be 3-40 letters, digits, dots or underscores")
        if not validate_email(email):
            return OperationResult.reject(ErrorKind.VALIDATION_FAILED, "Invalid email address")
        if not password or len(password) < 6:
            return OperationResult.reject(ErrorKind.VALIDATION_FAILED, "Password must be at least 6 characters")

        settings = PlatformSettingsHelper.load()
        if settings.maintenance_mode:
            return OperationResult.reject(ErrorKind.PRECONDITION_FAILED,
                                          "The platform is under maintenance, please try again later")
        if not settings.registration_open:
            return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, "Registration is currently closed")

        def create():
            taken = User.query.filter(
                (func.lower(User.username) == username.lower()) | (User.email == email)
            ).first()
            if taken:
                return OperationResult.reject(ErrorKind.CONFLICT, "Username or email already exists")

            sponsor = None
            if referral_code:
                sponsor = User.query.filter_by(referral_code=referral_code).first()
                if sponsor is None:
                    return OperationResult.reject(ErrorKind.NOT_FOUND, "Referral code not found")
                loop_at = UplineWalker.find_cycle(sponsor.id)
                if loop_at is not None:
                    logger.error(f"Sponsor chain above user {sponsor.id} loops at user {loop_at}")
                    return OperationResult.reject(ErrorKind.PRECONDITION_FAILED,
                                                  "This sponsor cannot accept new referrals")

            user = User(
                username=username,
                email=email,
                role=role,
                referral_code=RegistrationService._unique_referral_code(),
                sponsor_id=sponsor.id if sponsor else None,
            )
            user.set_password(password)
            db.session.add(user)
            db.session.flush()

            bonus = quantize_money(settings.welcome_bonus)
            if bonus > 0:
                LedgerHelper.credit(user.id, available=bonus)
                LedgerHelper.record(user.id, TransactionType.WELCOME_BONUS.value, bonus,
                                    description="Welcome bonus")
                db.session.refresh(user)
            return OperationResult.success(user=user.to_dict())

        try:
            result = run_atomic(create, name="register_user")
        except IntegrityError:
            return OperationResult.reject(ErrorKind.CONFLICT, "Username or email already exists")

        if result.ok:
            created = result.data["user"]
            observer.notify(Events.USER_REGISTERED, user_id=created["id"], entity_type="user",
                            entity_id=created["id"], sponsor_id=created["sponsorId"])
        return result


class TransferService:

    @staticmethod
    def transfer(sender_id: int, recipient_code: str, amount: Decimal, note: str = None) -> OperationResult:
        """Move available balance to the user owning ``recipient_code``."""
        recipient_code = (recipient_code or "").strip().upper()
        if not recipient_code:
            return OperationResult.reject(ErrorKind.VALIDATION_FAILED, "Recipient referral code is required")
        amount = quantize_money(amount)
        if amount <= 0:
            return OperationResult.reject(ErrorKind.VALIDATION_FAILED, "Transfer amount must be positive")
        if PlatformSettingsHelper.load().maintenance_mode:
            return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, "The platform is under maintenance")

        def move():
            recipient = User.query.filter_by(referral_code=recipient_code).first()
            if recipient is None:
                return OperationResult.reject(ErrorKind.NOT_FOUND, "Recipient not found")
            if recipient.id == sender_id:
                return OperationResult.reject(ErrorKind.VALIDATION_FAILED, "You cannot transfer funds to yourself")
            if recipient.is_suspended:
                return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, "Recipient account is suspended")

            # Lock in id order so two opposite transfers cannot deadlock
            first, second = sorted((sender_id, recipient.id))
            db.session.get(User, first, with_for_update=True, populate_existing=True)
            db.session.get(User, second, with_for_update=True, populate_existing=True)

            if not LedgerHelper.debit_available(sender_id, amount):
                balances = LedgerHelper.get_balances(sender_id) or {}
                return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, "Insufficient balance",
                                              available=float(balances.get("available_balance", 0)))
            LedgerHelper.credit(recipient.id, available=amount)

            description = (note or "").strip()[:200] or None
            out_tx = LedgerHelper.record(sender_id, TransactionType.TRANSFER_OUT.value, amount,
                                         counterparty_id=recipient.id,
                                         description=description or f"Transfer to {recipient.username}")
            in_tx = LedgerHelper.record(recipient.id, TransactionType.TRANSFER_IN.value, amount,
                                        counterparty_id=sender_id,
                                        description=description or "Transfer received")
            balances = LedgerHelper.get_balances(sender_id)
            return OperationResult.success(
                amount=float(amount),
                recipient=recipient.username,
                newBalance=float(balances["available_balance"]),
                transactionIds=[out_tx.id, in_tx.id],
            )

        result = run_atomic(move, name="transfer_funds")
        if result.ok:
            observer.notify(Events.FUNDS_TRANSFERRED, user_id=sender_id, entity_type="transaction",
                            entity_id=result.data["transactionIds"][0], amount=amount,
                            recipient=result.data["recipient"])
        return result


def account_overview(user: User) -> Dict[str, Any]:
    """Profile payload with live balances."""
    data = user.to_dict()
    balances = LedgerHelper.get_balances(user.id)
    if balances:
        data.update({
            "availableBalance": float(balances["available_balance"]),
            "lockedBalance": float(balances["locked_balance"]),
            "totalEarnings": float(balances["total_earnings"]),
        })
    return data


class AccountStatusService:

    @staticmethod
    def set_suspended(admin_id: int, user_id: int, suspended: bool) -> OperationResult:
        """Soft status change; users are never deleted."""
        if admin_id == user_id:
            return OperationResult.reject(ErrorKind.PRECONDITION_FAILED, "You cannot change your own status")

        def apply():
            user = db.session.get(User, user_id, with_for_update=True, populate_existing=True)
            if user is None:
                return OperationResult.reject(ErrorKind.NOT_FOUND, "User not found")
            previous = bool(user.is_suspended)
            user.is_suspended = bool(suspended)
            return OperationResult.success(userId=user_id, isSuspended=user.is_suspended, previous=previous)

        result = run_atomic(apply, name="set_user_status")
        if result.ok and result.data["previous"] != result.data["isSuspended"]:
            observer.notify(Events.USER_STATUS_CHANGED, actor_id=admin_id, entity_type="user",
                            entity_id=user_id, is_suspended=result.data["isSuspended"])
        return result
