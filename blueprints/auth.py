from flask import Blueprint, request, jsonify, session, current_app
from flask_login import login_user, logout_user

from extensions import db
from models import User
from rewards.accounts import RegistrationService, account_overview
from rewards.errors import validation_failed, authentication_required, authorization_denied
from rewards.security import rate_limiter, SIGNUP_LIMIT, GENERAL_LIMIT, login_required_json, current_session_user
from utils import utcnow


#==========================================================================
bp = Blueprint("auth", __name__, url_prefix="")
#==========================================================================


# --------------------------------------------------
#      1️⃣ Signup Route
# --------------------------------------------------
@bp.route("/api/signup", methods=["POST",])
@rate_limiter.limit(*SIGNUP_LIMIT, scope="signup")
def signup():
    """
    Expected JSON:
    {
        "username": "",
        "email": "",
        "password": "",
        "referralCode": ""   (optional, the sponsor's code)
    }
    """
    data = request.get_json(silent=True)
    if not data:
        return validation_failed("Invalid or missing JSON body").to_response()

    result = RegistrationService.register(
        username=data.get("username"),
        email=data.get("email"),
        password=data.get("password"),
        referral_code=data.get("referralCode") or data.get("referral_code"),
    )
    if not result.ok:
        current_app.logger.info(f"[SIGNUP] rejected: {result.rejection.message}")
        return result.to_response()

    user = db.session.get(User, result.data["user"]["id"])
    session["user_id"] = user.id
    login_user(user)
    current_app.logger.info(f"[SIGNUP] user {user.id} registered under sponsor {user.sponsor_id}")
    return result.to_response(status=201)


# --------------------------------------------------
#      2️⃣ Login Route
# --------------------------------------------------
@bp.route("/api/login", methods=["POST"])
@rate_limiter.limit(*GENERAL_LIMIT, scope="login")
def login():
    """
    Expected JSON:
    {
        "login": "",      (email or username)
        "password": ""
    }
    """
    data = request.get_json(silent=True) or {}
    identifier = (data.get("login") or data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    if not identifier or not password:
        return validation_failed("Email/username and password are required").to_response()

    user = User.query.filter(
        (User.email == identifier) | (db.func.lower(User.username) == identifier)).first()

    if not user or not user.check_password(password):
        return authentication_required("Invalid credentials").to_response()
    if user.is_suspended:
        return authorization_denied("Your account is suspended").to_response()

    user.last_login = utcnow()
    db.session.commit()

    session["user_id"] = user.id
    login_user(user)
    return jsonify({"success": True, "message": "Login successful", "user": user.to_dict()}), 200


#-----------------------------------------------------------------------------------------------------
@bp.route("/api/logout", methods=["POST"])
def logout():
    """
    Destroy User session
    """
    logout_user()
    session.clear()
    return jsonify({"success": True, "message": "Logged out successfully"}), 200


# --------------------------------------------------
# 4️⃣ Check Session (for frontend auto-login)
# --------------------------------------------------
@bp.route("/api/session", methods=["GET"])
def check_session():
    """Returns current logged-in user data if authenticated"""
    user = current_session_user()
    if not user:
        session.clear()
        return jsonify({"authenticated": False}), 200
    return jsonify({"authenticated": True, "user": user.to_dict()}), 200


@bp.route("/api/me", methods=["GET"])
@login_required_json
def me():
    user = current_session_user()
    return jsonify({"success": True, "user": account_overview(user)}), 200
