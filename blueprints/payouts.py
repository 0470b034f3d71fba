from flask import Blueprint, jsonify, request, g

from models import PayoutStatus
from rewards.errors import validation_failed
from rewards.payouts import PayoutQueueHelper
from rewards.security import rate_limiter, GENERAL_LIMIT, login_required_json


bp = Blueprint("payouts", __name__, url_prefix="/api/payouts")

PAYOUT_STATUSES = {s.value for s in PayoutStatus}


@bp.route("", methods=["GET"])
@login_required_json
def list_payouts():
    status = request.args.get("status")
    if status and status not in PAYOUT_STATUSES:
        return validation_failed(f"Unknown payout status: {status}").to_response()
    return jsonify({"success": True, **PayoutQueueHelper.get_user_payouts(g.user.id, status)}), 200


@bp.route("/<int:payout_id>/claim", methods=["POST"])
@login_required_json
@rate_limiter.limit(*GENERAL_LIMIT, scope="payout_claim")
def claim_payout(payout_id):
    """
    Expected JSON:
    {
        "password": ""   (confirmation credential)
    }
    """
    data = request.get_json(silent=True) or {}
    return PayoutQueueHelper.claim_payout(g.user.id, payout_id, data.get("password")).to_response()
