# rewards/security.py
import logging
from functools import wraps

from flask import request, jsonify, current_app, session, g
from redis import Redis
from redis.exceptions import RedisError

from extensions import db
from models import User
from rewards.errors import authentication_required, authorization_denied

logger = logging.getLogger(__name__)


class RateLimiter:
    """Fixed-window request counter kept in redis."""

    def __init__(self, redis_client=None):
        self._redis = redis_client

    def init_app(self, app):
        url = app.config.get("REDIS_URL")
        if url and self._redis is None:
            self._redis = Redis.from_url(url, decode_responses=True)
        app.extensions["rate_limiter"] = self

    @property
    def redis(self):
        return self._redis

    def use_client(self, redis_client):
        self._redis = redis_client

    def hit(self, key: str, limit: int, window: int) -> bool:
        """Count one request. Returns False once ``limit`` is exceeded within ``window`` seconds."""
        pipeline = self._redis.pipeline()
        pipeline.incr(key, 1)
        pipeline.ttl(key)
        current, ttl = pipeline.execute()
        if ttl is None or int(ttl) < 0:
            self._redis.expire(key, window)
        return int(current) <= limit

    def limit(self, limit: int, window: int, scope: str = None):
        """Decorator for view functions."""
        def decorator(f):
            @wraps(f)
            def decorated_function(*args, **kwargs):
                if not current_app.config.get("RATELIMIT_ENABLED") or self._redis is None:
                    return f(*args, **kwargs)

                identity = session.get("user_id") or request.remote_addr
                key = f"rate_limit:{identity}:{scope or request.endpoint}"
                try:
                    allowed = self.hit(key, limit, window)
                except RedisError as e:
                    logger.warning(f"Rate limiter unavailable, allowing request: {e}")
                    return f(*args, **kwargs)

                if not allowed:
                    return jsonify({
                        "success": False,
                        "error": "Rate limit exceeded",
                        "code": "resource-exhausted",
                        "retry_after": window,
                    }), 429
                return f(*args, **kwargs)
            return decorated_function
        return decorator


rate_limiter = RateLimiter()

# (requests, window seconds)
SIGNUP_LIMIT = (5, 15 * 60)
WITHDRAWAL_LIMIT = (5, 60 * 60)
GENERAL_LIMIT = (100, 15 * 60)


# ==========================================================
#                  AUTH DECORATORS
# ==========================================================
def current_session_user():
    user_id = session.get("user_id")
    if not user_id:
        return None
    user = getattr(g, "user", None)
    if user is None or user.id != user_id:
        user = db.session.get(User, user_id)
    return user


def login_required_json(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = current_session_user()
        if user is None:
            return authentication_required("Please log in to continue").to_response()
        if user.is_suspended:
            return authorization_denied("Your account is suspended").to_response()
        g.user = user
        return f(*args, **kwargs)
    return decorated_function


def admin_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = current_session_user()
        if user is None:
            return authentication_required("Please log in to continue").to_response()
        if user.role != "admin":
            return authorization_denied("Admin access required").to_response()
        g.user = user
        return f(*args, **kwargs)
    return decorated_function
