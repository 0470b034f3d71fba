from flask import Blueprint, jsonify, request, g, current_app

from blueprints.withdraw_helpers import WithdrawalProcessor, WithdrawalQueryHelper
from rewards.errors import validation_failed, not_found
from rewards.security import rate_limiter, WITHDRAWAL_LIMIT, login_required_json
from utils import parse_amount


bp = Blueprint("withdrawals", __name__, url_prefix="/api/withdrawals")


@bp.route("", methods=["POST"])
@login_required_json
@rate_limiter.limit(*WITHDRAWAL_LIMIT, scope="withdrawal")
def request_withdrawal():
    """
    Expected JSON:
    {
        "amount": 100,
        "method": "usdt_bep20" | "p2p",
        "destination": {"walletAddress": ""} | {"account": "", "platform": ""}
    }
    """
    data = request.get_json(silent=True)
    if not data:
        return validation_failed("Invalid or missing JSON body").to_response()

    amount = parse_amount(data.get("amount"))
    if amount is None:
        return validation_failed("A positive amount is required").to_response()
    destination = data.get("destination")
    if destination is not None and not isinstance(destination, dict):
        return validation_failed("destination must be an object").to_response()

    method = (data.get("method") or "").strip().lower()
    result = WithdrawalProcessor.request_withdrawal(g.user.id, amount, method, destination)
    if not result.ok:
        current_app.logger.info(f"Withdrawal refused for user {g.user.id}: {result.rejection.message}")
        return result.to_response()
    return result.to_response(status=201)


@bp.route("", methods=["GET"])
@login_required_json
def withdrawal_history():
    limit = min(request.args.get("limit", 10, type=int), 100)
    withdrawals = WithdrawalQueryHelper.get_user_withdrawals(g.user.id, limit)
    return jsonify({"success": True, "withdrawals": [w.to_dict() for w in withdrawals]}), 200


@bp.route("/<reference>", methods=["GET"])
@login_required_json
def withdrawal_status(reference):
    withdrawal = WithdrawalQueryHelper.get_withdrawal_by_ref(reference)
    if withdrawal is None or withdrawal.user_id != g.user.id:
        return not_found("Withdrawal not found").to_response()
    return jsonify({"success": True, "withdrawal": withdrawal.to_dict()}), 200


@bp.route("/limits", methods=["GET"])
@login_required_json
def withdrawal_limits():
    return jsonify({"success": True, "limits": WithdrawalQueryHelper.get_limits_for(g.user.id)}), 200
