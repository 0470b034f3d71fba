from conftest import reload
from models import AuditLog
from rewards.activation import ActivationService

TX_HASH = "0x" + "77" * 32
FROM_WALLET = "0x" + "34" * 20


def test_dashboard_totals(ranks, make_user, activate, admin, login):
    activate(make_user(), ranks["starter"])
    make_user()

    body = login(admin).get("/api/admin/data").get_json()

    assert body["total_users"] == 3
    assert body["active_users"] == 2
    assert body["activation_volume"] == 100.0
    assert body["income_paid"] == {"global": 10.0}
    assert body["locked_pool_income"] == 10.0
    assert body["pending_withdrawals"] == 0


def test_admin_routes_reject_regular_users(make_user, login, client):
    assert client.get("/api/admin/data").status_code == 401
    response = login(make_user()).get("/api/admin/data")
    assert response.status_code == 403
    assert response.get_json()["code"] == "permission-denied"


def test_suspend_and_restore_user(make_user, admin, login):
    user = make_user(username="dave")
    client = login(admin)

    response = client.post(f"/api/admin/users/{user.id}/status", json={"suspended": True})
    assert response.status_code == 200
    assert response.get_json() == {"success": True, "userId": user.id, "isSuspended": True, "previous": False}
    assert reload(user).is_suspended is True

    denied = client.application.test_client().post("/api/login", json={"login": "dave", "password": "secret123"})
    assert denied.status_code == 403

    assert client.post(f"/api/admin/users/{user.id}/status", json={"suspended": False}).status_code == 200
    assert reload(user).is_suspended is False
    assert AuditLog.query.filter_by(action="user.status_changed", entity_id=user.id).count() == 2


def test_status_change_guards(make_user, admin, login):
    client = login(admin)
    assert client.post(f"/api/admin/users/{admin.id}/status", json={"suspended": True}).status_code == 412
    assert client.post("/api/admin/users/4040/status", json={"suspended": True}).status_code == 404
    assert client.post(f"/api/admin/users/{admin.id}/status", json={"suspended": "yes"}).status_code == 400


def test_suspended_session_is_cut_off(make_user, admin, login):
    user = make_user()
    user_client = login(user)
    login(admin).post(f"/api/admin/users/{user.id}/status", json={"suspended": True})

    assert user_client.get("/api/me").status_code == 403


def test_search_users(make_user, admin, login):
    target = make_user(username="findme")
    client = login(admin)

    body = client.get("/api/admin/search?q=findme").get_json()
    assert [u["id"] for u in body["users"]] == [target.id]
    assert body["total_results"] == 1

    by_id = client.get(f"/api/admin/search?q={target.id}").get_json()
    assert target.id in [u["id"] for u in by_id["users"]]

    assert client.get("/api/admin/search?q=").status_code == 400


def test_user_detail(ranks, make_user, activate, admin, login):
    user = make_user()
    activate(user, ranks["starter"])

    body = login(admin).get(f"/api/admin/users/{user.id}").get_json()
    assert body["user"]["status"] == "active"
    assert len(body["pools"]) == 1
    assert login(admin).get("/api/admin/users/999").status_code == 404


def test_pending_queues(ranks, make_user, admin, login):
    user = make_user()
    pending = ActivationService.request_activation(user.id, "starter", "usdt_bep20",
                                                   {"txHash": TX_HASH, "fromWallet": FROM_WALLET})
    client = login(admin)

    transactions = client.get("/api/admin/transactions/pending").get_json()["transactions"]
    assert [t["id"] for t in transactions] == [pending.data["transactionId"]]
    assert transactions[0]["paymentDetails"]["txHash"] == TX_HASH

    assert client.get("/api/admin/transactions/pending?type=deposit").get_json()["transactions"] == []
    assert client.get("/api/admin/withdrawals/pending").get_json()["withdrawals"] == []


def test_audit_trail(ranks, make_user, activate, admin, login):
    activate(make_user(), ranks["starter"])

    entries = login(admin).get("/api/admin/audit?action=activation.requested").get_json()["entries"]

    assert len(entries) == 1
    assert entries[0]["details"]["rank"] == "starter"
    assert entries[0]["details"]["status"] == "completed"
