from decimal import Decimal

from redis.exceptions import RedisError

from conftest import PASSWORD, reload
from models import Transaction, User
from rewards.security import rate_limiter
from rewards.settings import PlatformSettingsHelper


def signup_payload(username="newuser", **extra):
    payload = {"username": username, "email": f"{username}@example.com", "password": PASSWORD}
    payload.update(extra)
    return payload


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    def incr(self, key, amount=1):
        self.commands.append(("incr", key, amount))
        return self

    def ttl(self, key):
        self.commands.append(("ttl", key))
        return self

    def execute(self):
        results = []
        for command in self.commands:
            if command[0] == "incr":
                self.redis.counters[command[1]] = self.redis.counters.get(command[1], 0) + command[2]
                results.append(self.redis.counters[command[1]])
            else:
                results.append(self.redis.ttls.get(command[1], -1))
        self.commands = []
        return results


class FakeRedis:
    def __init__(self):
        self.counters = {}
        self.ttls = {}

    def pipeline(self):
        return FakePipeline(self)

    def expire(self, key, seconds):
        self.ttls[key] = seconds


class BrokenRedis:
    def pipeline(self):
        raise RedisError("connection refused")


def test_signup_creates_user_and_session(client):
    response = client.post("/api/signup", json=signup_payload())

    assert response.status_code == 201
    user = response.get_json()["user"]
    assert user["username"] == "newuser"
    assert user["sponsorId"] is None
    assert user["status"] == "inactive"
    assert len(user["referralCode"]) == 8

    session = client.get("/api/session").get_json()
    assert session["authenticated"] is True
    assert session["user"]["id"] == user["id"]


def test_signup_places_user_under_sponsor(client, make_user):
    sponsor = make_user()

    response = client.post("/api/signup", json=signup_payload(referralCode=sponsor.referral_code.lower()))

    assert response.status_code == 201
    assert response.get_json()["user"]["sponsorId"] == sponsor.id


def test_signup_welcome_bonus(client, admin):
    PlatformSettingsHelper.update(admin.id, {"welcomeBonus": 5})

    response = client.post("/api/signup", json=signup_payload())

    assert response.status_code == 201
    created = response.get_json()["user"]
    assert created["availableBalance"] == 5.0
    bonus = Transaction.query.filter_by(user_id=created["id"], type="welcome_bonus").one()
    assert bonus.amount == Decimal("5")


def test_signup_duplicate_username(client, make_user):
    make_user(username="taken")

    response = client.post("/api/signup", json=signup_payload(username="TAKEN"))

    assert response.status_code == 409
    assert response.get_json()["code"] == "already-exists"


def test_signup_unknown_referral_code(client):
    response = client.post("/api/signup", json=signup_payload(referralCode="NOPE1234"))

    assert response.status_code == 404
    assert User.query.count() == 0


def test_signup_validation(client):
    assert client.post("/api/signup", json=signup_payload(username="x!")).status_code == 400
    assert client.post("/api/signup", json=signup_payload(email="not-an-email")).status_code == 400
    assert client.post("/api/signup", json=signup_payload(password="123")).status_code == 400
    assert client.post("/api/signup", data="nope", content_type="text/plain").status_code == 400


def test_signup_closed_or_in_maintenance(client, admin):
    PlatformSettingsHelper.update(admin.id, {"registrationOpen": False})
    closed = client.post("/api/signup", json=signup_payload())
    assert closed.status_code == 412
    assert closed.get_json()["error"] == "Registration is currently closed"

    PlatformSettingsHelper.update(admin.id, {"registrationOpen": True, "maintenanceMode": True})
    assert client.post("/api/signup", json=signup_payload()).status_code == 412


def test_login_logout_and_me(client, make_user):
    user = make_user(username="carol", balance=12)

    bad = client.post("/api/login", json={"login": "carol", "password": "wrong-password"})
    assert bad.status_code == 401

    response = client.post("/api/login", json={"login": "carol", "password": PASSWORD})
    assert response.status_code == 200
    assert response.get_json()["user"]["username"] == "carol"
    assert reload(user).last_login is not None

    me = client.get("/api/me")
    assert me.status_code == 200
    assert me.get_json()["user"]["availableBalance"] == 12.0

    assert client.post("/api/logout").status_code == 200
    assert client.get("/api/me").status_code == 401
    assert client.get("/api/session").get_json() == {"authenticated": False}


def test_suspended_user_cannot_log_in(client, make_user):
    user = make_user(suspended=True)

    response = client.post("/api/login", json={"email": user.email, "password": PASSWORD})

    assert response.status_code == 403
    assert response.get_json()["code"] == "permission-denied"


def test_signup_rate_limit(app):
    app.config["RATELIMIT_ENABLED"] = True
    rate_limiter.use_client(FakeRedis())

    statuses = [
        app.test_client().post("/api/signup", json=signup_payload(f"burst{i}")).status_code
        for i in range(6)
    ]

    assert statuses == [201] * 5 + [429]


def test_rate_limiter_fails_open_when_redis_is_down(app):
    app.config["RATELIMIT_ENABLED"] = True
    rate_limiter.use_client(BrokenRedis())

    response = app.test_client().post("/api/signup", json=signup_payload())

    assert response.status_code == 201
