# models.py - Flask-SQLAlchemy models for the rank / income pool platform
from decimal import Decimal
import enum
from flask_login import UserMixin
from sqlalchemy import UniqueConstraint, CheckConstraint, Index, event, text, inspect
from sqlalchemy.orm.attributes import NO_VALUE
from werkzeug.security import check_password_hash, generate_password_hash
from extensions import db


# ===========================================================
# ENUM DEFINITIONS
# ===========================================================

class TransactionType(enum.Enum):
    ACTIVATION = "activation"
    TOPUP = "topup"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    INCOME_CLAIM = "income_claim"
    PAYOUT_CLAIM = "payout_claim"
    WELCOME_BONUS = "welcome_bonus"


class TransactionStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(enum.Enum):
    WALLET = "wallet"
    USDT_BEP20 = "usdt_bep20"
    P2P = "p2p"
    INTERNAL = "internal"


class IncomeKind(enum.Enum):
    REFERRAL = "referral"
    LEVEL = "level"
    GLOBAL = "global"


class PayoutStatus(enum.Enum):
    PENDING = "pending"
    READY = "ready"
    CLAIMED = "claimed"
    EXPIRED = "expired"


ACTIVATION_TYPES = (TransactionType.ACTIVATION.value, TransactionType.TOPUP.value)


def _money(value) -> float:
    return float(value) if value is not None else 0.0


def _iso(value):
    return value.isoformat() if value else None


# ===========================================================
# BASE MIXIN FOR COMMON FIELDS
# ===========================================================

class BaseMixin:
    """Provides created_at and updated_at timestamps to inheriting models."""
    created_at = db.Column(db.DateTime(timezone=True), default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=db.func.now(),
                           onupdate=db.func.now())


# ===========================================================
# RANKS (reference data)
# ===========================================================

class Rank(db.Model, BaseMixin):
    """A tier in the strictly ordered rank ladder."""
    __tablename__ = "ranks"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(40), unique=True, nullable=False)
    name = db.Column(db.String(80), nullable=False)
    order_index = db.Column(db.Integer, unique=True, nullable=False)
    activation_amount = db.Column(db.Numeric(18, 2), nullable=False)
    referral_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=Decimal("50"))
    global_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=Decimal("10"))
    # {"1": "50", "2": "10", ...} percent of the package amount per upline level
    level_percentages = db.Column(db.JSON, nullable=False, default=dict)
    is_enabled = db.Column(db.Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("activation_amount > 0", name="ck_rank_amount_positive"),
    )

    def level_table(self):
        """Level percentages as {int level: Decimal percent}."""
        return {int(level): Decimal(str(pct)) for level, pct in (self.level_percentages or {}).items()}

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "order": self.order_index,
            "activationAmount": _money(self.activation_amount),
            "referralPercentage": _money(self.referral_percentage),
            "globalPercentage": _money(self.global_percentage),
            "levelPercentages": {str(k): float(v) for k, v in sorted(self.level_table().items())},
            "isEnabled": self.is_enabled,
        }

    def __repr__(self):
        return f"<Rank {self.code} #{self.order_index}>"


# ===========================================================
# USER MODEL
# ===========================================================

class User(UserMixin, db.Model, BaseMixin):
    """Identity plus MLM position. Balances only move through rewards.ledger."""
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default="user", index=True)

    referral_code = db.Column(db.String(20), unique=True, nullable=False)
    sponsor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    current_rank_id = db.Column(db.Integer, db.ForeignKey("ranks.id"), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="inactive", index=True)
    activated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_suspended = db.Column(db.Boolean, nullable=False, default=False)

    available_balance = db.Column(db.Numeric(18, 2), nullable=False, default=0, server_default=text("0"))
    locked_balance = db.Column(db.Numeric(18, 2), nullable=False, default=0, server_default=text("0"))
    total_earnings = db.Column(db.Numeric(18, 2), nullable=False, default=0, server_default=text("0"))
    direct_referrals_count = db.Column(db.Integer, nullable=False, default=0, server_default=text("0"))

    wallet_address = db.Column(db.String(64), nullable=True)
    last_login = db.Column(db.DateTime(timezone=True), nullable=True)

    sponsor = db.relationship("User", remote_side=[id], backref=db.backref("direct_referrals", lazy="dynamic"))
    current_rank = db.relationship("Rank")

    __table_args__ = (
        CheckConstraint("available_balance >= 0", name="ck_user_available_non_negative"),
        CheckConstraint("locked_balance >= 0", name="ck_user_locked_non_negative"),
        CheckConstraint("total_earnings >= 0", name="ck_user_earnings_non_negative"),
        Index("idx_user_referral_code", "referral_code"),
    )

    # Flask-Login uses is_active to refuse logins for suspended accounts
    @property
    def is_active(self):
        return not self.is_suspended

    @property
    def is_activated(self) -> bool:
        return self.status == "active"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def to_dict(self, include_balances=True):
        result = {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "referralCode": self.referral_code,
            "sponsorId": self.sponsor_id,
            "status": self.status,
            "isSuspended": self.is_suspended,
            "currentRank": self.current_rank.code if self.current_rank else None,
            "directReferrals": self.direct_referrals_count or 0,
            "activatedAt": _iso(self.activated_at),
            "memberSince": _iso(self.created_at),
        }
        if include_balances:
            result.update({
                "availableBalance": _money(self.available_balance),
                "lockedBalance": _money(self.locked_balance),
                "totalEarnings": _money(self.total_earnings),
            })
        return result

    def __repr__(self):
        return f"<User {self.username}>"


@event.listens_for(User.sponsor_id, "set", active_history=True)
def _sponsor_is_immutable(target, value, oldvalue, initiator):
    if oldvalue is NO_VALUE or not inspect(target).persistent:
        return
    if value != oldvalue:
        raise ValueError("A user's sponsor cannot be changed once set")


# ===========================================================
# TRANSACTIONS
# ===========================================================

class Transaction(db.Model, BaseMixin):
    """One money-moving event. pending -> completed | failed, never back."""
    __tablename__ = "transactions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    type = db.Column(db.String(30), nullable=False, index=True)
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=TransactionStatus.PENDING.value, index=True)
    method = db.Column(db.String(20), nullable=False, default=PaymentMethod.INTERNAL.value)
    rank_id = db.Column(db.Integer, db.ForeignKey("ranks.id"), nullable=True)

    payment_details = db.Column(db.JSON, nullable=True)
    # "<method>:<hash or reference>" for externally funded payments
    external_reference = db.Column(db.String(160), unique=True, nullable=True)
    counterparty_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    description = db.Column(db.String(255), nullable=True)

    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)
    processed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    commissions_processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship("User", foreign_keys=[user_id], backref=db.backref("transactions", lazy="dynamic"))
    rank = db.relationship("Rank")

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_transaction_amount_non_negative"),
        Index("idx_transaction_user_status", "user_id", "status"),
    )

    @property
    def is_activation(self) -> bool:
        return self.type in ACTIVATION_TYPES

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": self.type,
            "amount": _money(self.amount),
            "status": self.status,
            "method": self.method,
            "rank": self.rank.code if self.rank else None,
            "paymentDetails": self.payment_details or {},
            "description": self.description,
            "failureReason": self.failure_reason,
            "createdAt": _iso(self.created_at),
            "completedAt": _iso(self.completed_at),
        }


@event.listens_for(Transaction, "before_update")
def _completed_transaction_is_frozen(mapper, connection, target):
    state = inspect(target)
    status_history = state.attrs.status.history
    was_completed = (status_history.deleted or [target.status])[0] == TransactionStatus.COMPLETED.value
    if not was_completed:
        return
    for field in ("amount", "user_id"):
        if state.attrs[field].history.has_changes():
            raise ValueError(f"Completed transaction {target.id} cannot change {field}")
    if status_history.has_changes():
        raise ValueError(f"Completed transaction {target.id} cannot change status")


# ===========================================================
# INCOME (commission entries and pools)
# ===========================================================

class IncomeEntry(db.Model):
    """Immutable record of one commission payment."""
    __tablename__ = "income_entries"

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    source_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    source_transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)
    kind = db.Column(db.String(20), nullable=False)
    level = db.Column(db.Integer, nullable=False, default=0)
    percentage = db.Column(db.Numeric(5, 2), nullable=False)
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    pool_id = db.Column(db.Integer, db.ForeignKey("income_pools.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=db.func.now())

    __table_args__ = (
        UniqueConstraint("source_transaction_id", "recipient_id", "kind", "level",
                         name="uq_income_source_recipient_kind_level"),
        CheckConstraint("amount > 0", name="ck_income_amount_positive"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "recipientId": self.recipient_id,
            "sourceUserId": self.source_user_id,
            "sourceTransactionId": self.source_transaction_id,
            "kind": self.kind,
            "level": self.level,
            "percentage": _money(self.percentage),
            "amount": _money(self.amount),
            "poolId": self.pool_id,
            "createdAt": _iso(self.created_at),
        }


@event.listens_for(IncomeEntry, "before_update")
def _income_entry_is_immutable(mapper, connection, target):
    raise ValueError(f"Income entry {target.id} is immutable")


class IncomePool(db.Model, BaseMixin):
    """Per-(user, rank) accumulator, locked until the referral requirement is met."""
    __tablename__ = "income_pools"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    rank_id = db.Column(db.Integer, db.ForeignKey("ranks.id"), nullable=False)
    source_transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True)

    activation_amount = db.Column(db.Numeric(18, 2), nullable=False)
    max_pool_income = db.Column(db.Numeric(18, 2), nullable=False)
    pool_income = db.Column(db.Numeric(18, 2), nullable=False, default=0, server_default=text("0"))
    claimed_amount = db.Column(db.Numeric(18, 2), nullable=False, default=0, server_default=text("0"))

    required_direct_referrals = db.Column(db.Integer, nullable=False)
    can_claim = db.Column(db.Boolean, nullable=False, default=False)
    is_locked = db.Column(db.Boolean, nullable=False, default=True)
    claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship("User", backref=db.backref("income_pools", lazy="dynamic"))
    rank = db.relationship("Rank")

    __table_args__ = (
        CheckConstraint("pool_income >= 0", name="ck_pool_income_non_negative"),
        CheckConstraint("pool_income <= max_pool_income", name="ck_pool_income_capped"),
        Index("idx_pool_user_rank", "user_id", "rank_id"),
    )

    @property
    def state(self) -> str:
        if self.claimed_at is not None:
            return "claimed"
        return "claimable" if self.can_claim else "locked"

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "rank": self.rank.code if self.rank else None,
            "activationAmount": _money(self.activation_amount),
            "maxPoolIncome": _money(self.max_pool_income),
            "poolIncome": _money(self.pool_income),
            "claimedAmount": _money(self.claimed_amount),
            "requiredDirectReferrals": self.required_direct_referrals,
            "canClaim": self.can_claim,
            "isLocked": self.is_locked,
            "state": self.state,
            "claimedAt": _iso(self.claimed_at),
            "createdAt": _iso(self.created_at),
        }


# ===========================================================
# PLATFORM SETTINGS + AUDIT
# ===========================================================

class PlatformSettings(db.Model, BaseMixin):
    """Singleton row (id = 1) of admin controlled switches."""
    __tablename__ = "platform_settings"

    id = db.Column(db.Integer, primary_key=True)
    direct_referral_requirement = db.Column(db.Integer, nullable=False, default=2)
    maintenance_mode = db.Column(db.Boolean, nullable=False, default=False)
    registration_open = db.Column(db.Boolean, nullable=False, default=True)
    welcome_bonus = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    max_rank_level = db.Column(db.Integer, nullable=False, default=10)
    updated_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.Integer, nullable=True, index=True)
    action = db.Column(db.String(80), nullable=False, index=True)
    entity_type = db.Column(db.String(40), nullable=True)
    entity_id = db.Column(db.Integer, nullable=True)
    details = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "actorId": self.actor_id,
            "action": self.action,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "details": self.details or {},
            "createdAt": _iso(self.created_at),
        }


# ===========================================================
# PAYOUT QUEUE
# ===========================================================

class Payout(db.Model, BaseMixin):
    __tablename__ = "payout_queue"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    source_type = db.Column(db.String(40), nullable=False, default="manual")
    source_id = db.Column(db.Integer, nullable=True)
    description = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=PayoutStatus.PENDING.value, index=True)
    scheduled_at = db.Column(db.DateTime(timezone=True), default=db.func.now())
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payout_amount_positive"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "amount": _money(self.amount),
            "sourceType": self.source_type,
            "description": self.description,
            "status": self.status,
            "scheduledAt": _iso(self.scheduled_at),
            "expiresAt": _iso(self.expires_at),
            "claimedAt": _iso(self.claimed_at),
            "transactionId": self.transaction_id,
        }


# ===========================================================
# WITHDRAWALS
# ===========================================================

class Withdrawal(db.Model, BaseMixin):
    __tablename__ = "withdrawals"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    fee = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    network_fee = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    net_amount = db.Column(db.Numeric(18, 2), nullable=False)
    method = db.Column(db.String(20), nullable=False)
    destination = db.Column(db.JSON, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    reference = db.Column(db.String(64), unique=True, nullable=False)
    external_txid = db.Column(db.String(100), nullable=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True)
    processed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.String(255), nullable=True)

    user = db.relationship("User", foreign_keys=[user_id], backref=db.backref("withdrawals", lazy="dynamic"))

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "amount": _money(self.amount),
            "fee": _money(self.fee),
            "networkFee": _money(self.network_fee),
            "netAmount": _money(self.net_amount),
            "method": self.method,
            "destination": self.destination or {},
            "status": self.status,
            "reference": self.reference,
            "externalTxid": self.external_txid,
            "rejectionReason": self.rejection_reason,
            "createdAt": _iso(self.created_at),
            "processedAt": _iso(self.processed_at),
        }
