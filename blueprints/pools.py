from flask import Blueprint, jsonify, g

from rewards.pools import IncomePoolHelper
from rewards.security import rate_limiter, GENERAL_LIMIT, login_required_json


bp = Blueprint("pools", __name__, url_prefix="/api/pools")


@bp.route("", methods=["GET"])
@login_required_json
def list_pools():
    pools = IncomePoolHelper.get_user_pools(g.user.id)
    return jsonify({
        "success": True,
        "pools": [p.to_dict() for p in pools],
        "summary": IncomePoolHelper.get_pool_summary(g.user.id),
    }), 200


@bp.route("/<int:pool_id>/claim", methods=["POST"])
@login_required_json
@rate_limiter.limit(*GENERAL_LIMIT, scope="pool_claim")
def claim_pool(pool_id):
    return IncomePoolHelper.claim_pool(g.user.id, pool_id).to_response()
