from decimal import Decimal

import requests

from conftest import reload
from models import AuditLog, Rank, User
from extensions import db
from rewards.audit import observer, persist_activity
from rewards.blockchain import ChainVerifier
from rewards.errors import InternalError, GENERIC_INTERNAL_MESSAGE
from rewards.payouts import PayoutQueueHelper


class StubResponse:
    def __init__(self, payload):
        self.payload = payload

    def raise_for_status(self):
        pass

    def json(self):
        return self.payload


class StubSession:
    def __init__(self, payload=None, error=None):
        self.payload = payload
        self.error = error
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params, timeout))
        if self.error:
            raise self.error
        return StubResponse(self.payload)


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_http_errors_use_json_envelope(client):
    missing = client.get("/api/does-not-exist")
    assert missing.status_code == 404
    assert missing.get_json()["code"] == "not-found"

    wrong_method = client.get("/api/signup")
    assert wrong_method.status_code == 405
    assert wrong_method.get_json()["code"] == "method-not-allowed"


def test_internal_errors_are_not_leaked(app):
    @app.route("/_boom")
    def boom():
        raise InternalError("database password is hunter2")

    @app.route("/_crash")
    def crash():
        raise RuntimeError("stack details")

    client = app.test_client()
    for path in ("/_boom", "/_crash"):
        response = client.get(path)
        assert response.status_code == 500
        assert response.get_json() == {"success": False, "error": GENERIC_INTERNAL_MESSAGE, "code": "internal"}


def test_failing_observer_handler_does_not_break_operation(make_user):
    user = make_user(status="active")

    def broken_handler(event_name, data):
        raise RuntimeError("handler down")

    observer.subscribe("payout.queued", broken_handler)
    try:
        result = PayoutQueueHelper.queue_payout(user.id, Decimal("3"))
    finally:
        observer.unsubscribe("payout.queued", broken_handler)

    assert result.ok
    entry = AuditLog.query.filter_by(action="payout.queued").one()
    assert entry.entity_id == result.data["payout"]["id"]
    assert entry.details["amount"] == "3.00"


def test_audit_write_leaves_caller_session_alone(make_user):
    user = make_user(username="erin")
    user_id = user.id
    user.email = "changed@example.com"

    persist_activity("user.status_changed", {"actor_id": user_id, "entity_type": "user", "entity_id": user_id})
    db.session.rollback()

    assert reload(user).email == "erin@example.com"
    entry = AuditLog.query.filter_by(action="user.status_changed").one()
    assert entry.actor_id == user_id
    assert entry.details == {"actor_id": user_id, "entity_type": "user", "entity_id": user_id}


def test_chain_verifier_confirmed():
    session = StubSession({"status": "1", "message": "OK", "result": {"status": "1"}})
    verifier = ChainVerifier("key", "https://explorer.test/api", session=session)

    assert verifier.verify_transaction("0xabc") == (True, "Transaction confirmed on chain")
    url, params, timeout = session.calls[0]
    assert params["txhash"] == "0xabc"
    assert params["apikey"] == "key"
    assert timeout == 15


def test_chain_verifier_failed_and_unavailable():
    failed = ChainVerifier("key", "https://explorer.test/api",
                           session=StubSession({"status": "1", "result": {"status": "0"}}))
    assert failed.verify_transaction("0xabc") == (False, "Transaction failed on chain")

    slow = ChainVerifier("key", "https://explorer.test/api",
                         session=StubSession(error=requests.exceptions.Timeout()))
    assert slow.verify_transaction("0xabc") == (False, "Blockchain explorer timed out")

    down = ChainVerifier("key", "https://explorer.test/api",
                         session=StubSession(error=requests.exceptions.ConnectionError("refused")))
    assert down.verify_transaction("0xabc") == (False, "Blockchain explorer unavailable")


def test_chain_verifier_from_config(app):
    assert ChainVerifier.from_config() is None
    app.config["BSCSCAN_API_KEY"] = "secret"
    verifier = ChainVerifier.from_config()
    assert verifier.api_key == "secret"
    assert verifier.base_url == app.config["BSCSCAN_BASE_URL"]


def test_cli_seed_ranks(app):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["seed-ranks"])
    assert result.exit_code == 0
    assert "Seeded 10 rank(s)." in result.output
    assert [r.code for r in Rank.query.order_by(Rank.order_index)][:2] == ["azurite", "pearl"]

    assert "Seeded 0 rank(s)." in runner.invoke(args=["seed-ranks"]).output


def test_cli_create_admin(app, make_user):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["create-admin", "--username", "boss", "--email", "boss@example.com",
                                 "--password", "secret123"])
    assert result.exit_code == 0, result.output
    assert "Created admin id=" in result.output
    assert User.query.filter_by(username="boss").one().role == "admin"

    existing = make_user(username="promoted")
    result = runner.invoke(args=["create-admin", "--username", "ignored", "--email", existing.email,
                                 "--password", "secret123"])
    assert "is now admin" in result.output
    assert User.query.filter_by(username="promoted").one().role == "admin"

    bad = runner.invoke(args=["create-admin", "--username", "x", "--email", "x@example.com",
                              "--password", "secret123"])
    assert bad.exit_code != 0


def test_cli_queue_commands(app, ranks, make_user):
    user = make_user(status="active")
    PayoutQueueHelper.queue_payout(user.id, Decimal("4"))
    runner = app.test_cli_runner()

    assert "promoted=1 expired=0" in runner.invoke(args=["process-payouts"]).output
    assert "found=0 processed=0 failed=0" in runner.invoke(args=["process-activations"]).output


def test_cli_refresh_referrals(app, make_user):
    sponsor = make_user()
    make_user(sponsor=sponsor, status="active")
    make_user(sponsor=sponsor, status="active")

    result = app.test_cli_runner().invoke(args=["refresh-referrals"])

    assert "Refreshed 1 sponsor(s)." in result.output
    assert reload(sponsor).direct_referrals_count == 2
