from flask import Blueprint, request, g, jsonify

from models import Transaction
from rewards.accounts import TransferService
from rewards.activation import DepositService
from rewards.errors import validation_failed
from rewards.security import rate_limiter, GENERAL_LIMIT, login_required_json
from utils import parse_amount


bp = Blueprint("wallet", __name__, url_prefix="/api/wallet")


@bp.route("/transfer", methods=["POST"])
@login_required_json
@rate_limiter.limit(*GENERAL_LIMIT, scope="transfer")
def transfer_funds():
    """
    Expected JSON:
    {
        "recipientCode": "",   (recipient's referral code)
        "amount": 25,
        "note": ""
    }
    """
    data = request.get_json(silent=True) or {}
    amount = parse_amount(data.get("amount"))
    if amount is None:
        return validation_failed("A positive amount is required").to_response()

    result = TransferService.transfer(g.user.id, data.get("recipientCode"), amount, data.get("note"))
    return result.to_response()


@bp.route("/deposits", methods=["POST"])
@login_required_json
@rate_limiter.limit(*GENERAL_LIMIT, scope="deposit")
def request_deposit():
    data = request.get_json(silent=True) or {}
    amount = parse_amount(data.get("amount"))
    if amount is None:
        return validation_failed("A positive amount is required").to_response()
    method = (data.get("paymentMethod") or "").strip().lower()
    details = data.get("paymentDetails")
    if details is not None and not isinstance(details, dict):
        return validation_failed("paymentDetails must be an object").to_response()

    result = DepositService.request_deposit(g.user.id, amount, method, details)
    return result.to_response(status=201) if result.ok else result.to_response()


@bp.route("/transactions", methods=["GET"])
@login_required_json
def list_transactions():
    tx_type = request.args.get("type")
    limit = min(request.args.get("limit", 50, type=int), 200)
    query = Transaction.query.filter_by(user_id=g.user.id)
    if tx_type:
        query = query.filter_by(type=tx_type)
    transactions = query.order_by(Transaction.id.desc()).limit(limit).all()
    return jsonify({"success": True, "transactions": [t.to_dict() for t in transactions]}), 200
