from flask import Blueprint, request, jsonify, g, current_app

from rewards.activation import ActivationService
from rewards.config import RankCatalog, IncomeConfigHelper
from rewards.errors import validation_failed
from rewards.security import rate_limiter, GENERAL_LIMIT, login_required_json
from rewards.settings import PlatformSettingsHelper


#==========================================================================
bp = Blueprint("activation", __name__, url_prefix="/api")
#==========================================================================


@bp.route("/ranks", methods=["GET"])
def list_ranks():
    """Rank ladder with the commission table of each rank"""
    settings = PlatformSettingsHelper.load()
    ranks = []
    for position, rank in enumerate(RankCatalog.ordered(), start=1):
        data = rank.to_dict()
        data["position"] = position
        data["activatable"] = bool(rank.is_enabled) and position <= settings.max_rank_level
        data["poolCap"] = float(IncomeConfigHelper.pool_cap(rank.activation_amount))
        data["commission"] = IncomeConfigHelper.get_distribution_summary(rank)
        ranks.append(data)
    return jsonify({"success": True, "ranks": ranks}), 200


# --------------------------------------------------
#      Rank activation / top-up
# --------------------------------------------------
@bp.route("/activations", methods=["POST"])
@login_required_json
@rate_limiter.limit(*GENERAL_LIMIT, scope="activation")
def request_activation():
    """
    Expected JSON:
    {
        "rank": "azurite",
        "paymentMethod": "wallet" | "usdt_bep20" | "p2p",
        "paymentDetails": {"txHash": "", "fromWallet": ""} | {"p2pReference": "", "platform": ""}
    }
    """
    data = request.get_json(silent=True)
    if not data:
        return validation_failed("Invalid or missing JSON body").to_response()

    rank_code = data.get("rank") or data.get("rankId")
    method = (data.get("paymentMethod") or "").strip().lower()
    if not rank_code or not method:
        return validation_failed("rank and paymentMethod are required").to_response()

    details = data.get("paymentDetails")
    if details is not None and not isinstance(details, dict):
        return validation_failed("paymentDetails must be an object").to_response()

    result = ActivationService.request_activation(g.user.id, rank_code, method, details)
    if result.ok:
        current_app.logger.info(
            f"Activation {result.data['transactionId']} for user {g.user.id}: {result.data['status']}")
        return result.to_response(status=201)
    return result.to_response()
