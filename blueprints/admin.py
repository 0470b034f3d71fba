#======================================================================================
#
# ADMIN CONSOLE API
#
#=======================================================================================
from datetime import datetime
import logging

from flask import jsonify, request, Blueprint, g
from sqlalchemy import or_, func

from blueprints.withdraw_helpers import WithdrawalProcessor, WithdrawalQueryHelper
from extensions import db
from models import (
    User, Transaction, Withdrawal, IncomeEntry, IncomePool, Payout, AuditLog,
    TransactionStatus, ACTIVATION_TYPES,
)
from rewards.accounts import AccountStatusService
from rewards.activation import ActivationProcessor
from rewards.errors import validation_failed, not_found
from rewards.payouts import PayoutQueueHelper
from rewards.security import admin_required
from rewards.settings import PlatformSettingsHelper
from utils import parse_amount, utcnow

logger = logging.getLogger(__name__)

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')


#=======================================================================
#      PLATFORM SETTINGS
#=======================================================================
@admin_bp.route("/settings", methods=["GET"])
@admin_required
def get_settings():
    return jsonify({"success": True, "settings": PlatformSettingsHelper.load().to_dict()}), 200


@admin_bp.route("/settings", methods=["PUT", "PATCH"])
@admin_required
def update_settings():
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        return validation_failed("Provide at least one setting to update").to_response()
    return PlatformSettingsHelper.update(g.user.id, data).to_response()


@admin_bp.route("/data", methods=["GET"])
@admin_required
def admin_data():
    """Platform totals for the dashboard"""
    today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)

    def total(column, *criteria):
        return float(db.session.query(func.coalesce(func.sum(column), 0)).filter(*criteria).scalar() or 0)

    income_by_kind = dict(
        db.session.query(IncomeEntry.kind, func.coalesce(func.sum(IncomeEntry.amount), 0))
        .group_by(IncomeEntry.kind).all()
    )
    return jsonify({
        "success": True,
        "total_users": User.query.count(),
        "active_users": User.query.filter_by(status="active").count(),
        "suspended_users": User.query.filter_by(is_suspended=True).count(),
        "daily_new_users": User.query.filter(User.created_at >= today).count(),
        "pending_activations": Transaction.query.filter(
            Transaction.type.in_(ACTIVATION_TYPES),
            Transaction.status == TransactionStatus.PENDING.value).count(),
        "pending_deposits": Transaction.query.filter_by(
            type="deposit", status=TransactionStatus.PENDING.value).count(),
        "pending_withdrawals": Withdrawal.query.filter_by(status="pending").count(),
        "activation_volume": total(Transaction.amount, Transaction.type.in_(ACTIVATION_TYPES),
                                   Transaction.status == TransactionStatus.COMPLETED.value),
        "income_paid": {k: float(v) for k, v in income_by_kind.items()},
        "locked_pool_income": total(IncomePool.pool_income, IncomePool.claimed_at.is_(None)),
        "total_withdrawn": total(Withdrawal.amount, Withdrawal.status == "completed"),
        "daily_payouts": total(Withdrawal.amount, Withdrawal.created_at >= today),
        "ready_payouts": total(Payout.amount, Payout.status == "ready"),
    }), 200


#============================================================================================================
#      PENDING ACTIVATIONS AND DEPOSITS
#============================================================================================================
@admin_bp.route("/transactions/pending", methods=["GET"])
@admin_required
def pending_transactions():
    tx_type = request.args.get("type")
    query = Transaction.query.filter_by(status=TransactionStatus.PENDING.value)
    if tx_type:
        query = query.filter_by(type=tx_type)
    else:
        query = query.filter(Transaction.type.in_(ACTIVATION_TYPES + ("deposit",)))
    transactions = query.order_by(Transaction.id.asc()).limit(200).all()
    return jsonify({"success": True, "transactions": [t.to_dict() for t in transactions]}), 200


@admin_bp.route("/activations/<int:transaction_id>/confirm", methods=["POST"])
@admin_bp.route("/deposits/<int:transaction_id>/confirm", methods=["POST"])
@admin_required
def confirm_transaction(transaction_id):
    data = request.get_json(silent=True) or {}
    result = ActivationProcessor.confirm_pending(transaction_id, g.user.id,
                                                 verify_onchain=bool(data.get("verifyOnchain")))
    if result.ok:
        logger.info(f"Admin {g.user.id} confirmed transaction {transaction_id}")
    return result.to_response()


@admin_bp.route("/activations/<int:transaction_id>/reject", methods=["POST"])
@admin_bp.route("/deposits/<int:transaction_id>/reject", methods=["POST"])
@admin_required
def reject_transaction(transaction_id):
    data = request.get_json(silent=True) or {}
    result = ActivationProcessor.reject_pending(transaction_id, g.user.id, data.get("reason"))
    if result.ok:
        logger.info(f"Admin {g.user.id} rejected transaction {transaction_id}")
    return result.to_response()


#============================================================================================================
#      WITHDRAWALS
#============================================================================================================
@admin_bp.route("/withdrawals/pending", methods=["GET"])
@admin_required
def pending_withdrawals():
    withdrawals = WithdrawalQueryHelper.get_pending_withdrawals()
    return jsonify({"success": True, "withdrawals": [w.to_dict() for w in withdrawals]}), 200


@admin_bp.route("/withdrawals/<int:withdrawal_id>/approve", methods=["POST"])
@admin_required
def approve_withdrawal(withdrawal_id):
    data = request.get_json(silent=True) or {}
    return WithdrawalProcessor.approve_withdrawal(withdrawal_id, g.user.id, data.get("txHash")).to_response()


@admin_bp.route("/withdrawals/<int:withdrawal_id>/reject", methods=["POST"])
@admin_required
def reject_withdrawal(withdrawal_id):
    data = request.get_json(silent=True) or {}
    return WithdrawalProcessor.reject_withdrawal(withdrawal_id, g.user.id, data.get("reason")).to_response()


#============================================================================================================
#      PAYOUT QUEUE
#============================================================================================================
@admin_bp.route("/payouts", methods=["POST"])
@admin_required
def queue_payout():
    """
    Expected JSON:
    {
        "userId": 1,
        "amount": 50,
        "description": "",
        "scheduledAt": "2026-01-01T00:00:00+00:00"   (optional)
    }
    """
    data = request.get_json(silent=True) or {}
    amount = parse_amount(data.get("amount"))
    if amount is None:
        return validation_failed("A positive amount is required").to_response()
    user_id = data.get("userId")
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        return validation_failed("userId must be an integer").to_response()

    scheduled_at = None
    if data.get("scheduledAt"):
        try:
            scheduled_at = datetime.fromisoformat(str(data["scheduledAt"]))
        except ValueError:
            return validation_failed("scheduledAt must be an ISO-8601 timestamp").to_response()

    result = PayoutQueueHelper.queue_payout(
        user_id, amount,
        source_type=data.get("sourceType") or "manual",
        description=data.get("description"),
        scheduled_at=scheduled_at,
        created_by=g.user.id,
    )
    return result.to_response(status=201) if result.ok else result.to_response()


#============================================================================================================
#      USERS
#============================================================================================================
@admin_bp.route('/search', methods=['GET'])
@admin_required
def admin_search():
    """Search users by username, email, referral code, or ID"""
    query = request.args.get('q', '').strip()
    if not query:
        return validation_failed('Please provide a search query').to_response()

    criteria = [
        User.username.ilike(f'%{query}%'),
        User.email.ilike(f'%{query}%'),
        User.referral_code.ilike(f'%{query}%'),
    ]
    if query.isdigit():
        criteria.append(User.id == int(query))
    users = User.query.filter(or_(*criteria)).limit(50).all()
    return jsonify({'success': True, 'users': [u.to_dict() for u in users], 'total_results': len(users)}), 200


@admin_bp.route("/users/<int:user_id>/status", methods=["POST"])
@admin_required
def set_user_status(user_id):
    """
    Expected JSON: {"suspended": true | false}
    """
    data = request.get_json(silent=True) or {}
    suspended = data.get("suspended")
    if not isinstance(suspended, bool):
        return validation_failed("suspended must be true or false").to_response()
    return AccountStatusService.set_suspended(g.user.id, user_id, suspended).to_response()


@admin_bp.route("/users/<int:user_id>", methods=["GET"])
@admin_required
def get_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        return not_found("User not found").to_response()
    pools = IncomePool.query.filter_by(user_id=user_id).order_by(IncomePool.id.asc()).all()
    return jsonify({"success": True, "user": user.to_dict(), "pools": [p.to_dict() for p in pools]}), 200


@admin_bp.route("/audit", methods=["GET"])
@admin_required
def audit_log():
    action = request.args.get("action")
    limit = min(request.args.get("limit", 100, type=int), 500)
    query = AuditLog.query
    if action:
        query = query.filter_by(action=action)
    entries = query.order_by(AuditLog.id.desc()).limit(limit).all()
    return jsonify({"success": True, "entries": [e.to_dict() for e in entries]}), 200
