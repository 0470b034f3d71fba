from flask import Blueprint, jsonify, request, g, current_app
from datetime import timedelta
from decimal import Decimal
from sqlalchemy import func
import logging

from extensions import db
from models import User, IncomeEntry, Transaction
from rewards.accounts import account_overview
from rewards.errors import validation_failed
from rewards.pools import IncomePoolHelper
from rewards.security import login_required_json
from rewards.upline import UplineWalker
from utils import utcnow, validate_wallet_address

logger = logging.getLogger(__name__)

bp = Blueprint('profile', __name__, url_prefix="")


# ----------------------------------------------------------------------------------
# 1️⃣ PROFILE WITH BALANCES
# ----------------------------------------------------------------------------------
@bp.route("/api/user/profile", methods=["GET"])
@login_required_json
def get_user_profile():
    data = account_overview(g.user)
    data["pools"] = IncomePoolHelper.get_pool_summary(g.user.id)
    return jsonify({"success": True, "user": data}), 200


@bp.route('/api/user/profile', methods=['PUT'])
@login_required_json
def update_user_profile():
    """Only the payout wallet address is user-editable"""
    data = request.get_json(silent=True) or {}
    address = (data.get("walletAddress") or "").strip()
    if address and not validate_wallet_address(address):
        return validation_failed("Invalid BEP20 wallet address").to_response()

    g.user.wallet_address = address or None
    db.session.commit()
    logger.info(f"User {g.user.id} updated wallet address")
    return jsonify({"success": True, "user": account_overview(g.user)}), 200


#=======================================================================================
#      NETWORK: UPLINE AND DIRECT REFERRALS
#=======================================================================================
@bp.route("/api/user/upline", methods=["GET"])
@login_required_json
def get_user_upline():
    depth = request.args.get("depth", type=int)
    return jsonify({
        "success": True,
        "upline": UplineWalker.get_upline_summary(g.user.id, depth),
    }), 200


@bp.route("/api/user/referrals", methods=["GET"])
@login_required_json
def get_direct_referrals():
    referrals = User.query.filter_by(sponsor_id=g.user.id).order_by(User.id.asc()).all()
    active = [r for r in referrals if r.is_activated]
    return jsonify({
        "success": True,
        "referrals": [r.to_dict(include_balances=False) for r in referrals],
        "total": len(referrals),
        "active": len(active),
        "referralCode": g.user.referral_code,
        "referralLink": f"{current_app.config['APP_BASE_URL']}/signup?ref={g.user.referral_code}",
    }), 200


#=========================================================================
#      INCOME HISTORY AND EARNINGS
#=========================================================================
@bp.route("/api/user/income", methods=["GET"])
@login_required_json
def get_income_history():
    kind = request.args.get("kind")
    limit = min(request.args.get("limit", 50, type=int), 200)

    query = IncomeEntry.query.filter_by(recipient_id=g.user.id)
    if kind:
        query = query.filter_by(kind=kind)
    entries = query.order_by(IncomeEntry.id.desc()).limit(limit).all()

    totals = dict(
        db.session.query(IncomeEntry.kind, func.coalesce(func.sum(IncomeEntry.amount), 0))
        .filter(IncomeEntry.recipient_id == g.user.id)
        .group_by(IncomeEntry.kind)
        .all()
    )
    return jsonify({
        "success": True,
        "entries": [e.to_dict() for e in entries],
        "totals": {k: float(v) for k, v in totals.items()},
    }), 200


@bp.route('/api/user/total-earnings', methods=['GET'])
@login_required_json
def get_current_user_total_earnings():
    """
    Income received today, this week and this month, plus referral statistics
    """
    now = utcnow()
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    week_start = today_start - timedelta(days=today_start.weekday())
    month_start = today_start.replace(day=1)

    def income_since(start):
        total = db.session.query(func.coalesce(func.sum(IncomeEntry.amount), 0)).filter(
            IncomeEntry.recipient_id == g.user.id,
            IncomeEntry.created_at >= start,
        ).scalar()
        return float(Decimal(str(total or 0)))

    claimed = db.session.query(func.coalesce(func.sum(Transaction.amount), 0)).filter(
        Transaction.user_id == g.user.id,
        Transaction.type.in_(["income_claim", "payout_claim"]),
    ).scalar()

    return jsonify({
        "success": True,
        "earnings": {
            "today": income_since(today_start),
            "this_week": income_since(week_start),
            "this_month": income_since(month_start),
            "lifetime": float(g.user.total_earnings or 0),
            "claimed": float(Decimal(str(claimed or 0))),
        },
        "referrals": {
            "direct": User.query.filter_by(sponsor_id=g.user.id).count(),
            "active": g.user.direct_referrals_count or 0,
        },
    }), 200
