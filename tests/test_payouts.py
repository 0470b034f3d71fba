from datetime import timedelta
from decimal import Decimal

from conftest import PASSWORD, reload
from extensions import db
from models import Payout, Transaction
from rewards.payouts import PayoutQueueHelper
from utils import utcnow


def test_admin_queues_payout(admin, make_user, login):
    user = make_user(status="active")

    response = login(admin).post("/api/admin/payouts",
                                 json={"userId": user.id, "amount": 25, "description": "Leadership award"})

    assert response.status_code == 201
    payout = response.get_json()["payout"]
    assert payout["status"] == "pending"
    assert payout["amount"] == 25.0
    assert payout["sourceType"] == "manual"


def test_admin_payout_validation(admin, login):
    client = login(admin)
    assert client.post("/api/admin/payouts", json={"userId": "1", "amount": 5}).status_code == 400
    assert client.post("/api/admin/payouts", json={"userId": 1, "amount": -5}).status_code == 400
    assert client.post("/api/admin/payouts",
                       json={"userId": 1, "amount": 5, "scheduledAt": "tomorrow"}).status_code == 400
    assert client.post("/api/admin/payouts", json={"userId": 777, "amount": 5}).status_code == 404


def test_payout_lifecycle(make_user, login):
    user = make_user(status="active")
    queued = PayoutQueueHelper.queue_payout(user.id, Decimal("25"))
    payout_id = queued.data["payout"]["id"]

    assert PayoutQueueHelper.process_queue() == {"promoted": 1, "expired": 0}
    assert db.session.get(Payout, payout_id).status == "ready"

    client = login(user)
    assert client.post(f"/api/payouts/{payout_id}/claim", json={"password": "abc"}).status_code == 400
    assert client.post(f"/api/payouts/{payout_id}/claim", json={"password": "wrong-one"}).status_code == 403

    response = client.post(f"/api/payouts/{payout_id}/claim", json={"password": PASSWORD})
    assert response.status_code == 200
    assert response.get_json()["claimedAmount"] == 25.0

    user = reload(user)
    assert user.available_balance == Decimal("25")
    assert user.total_earnings == Decimal("25")
    payout = db.session.get(Payout, payout_id)
    assert payout.status == "claimed"
    assert db.session.get(Transaction, payout.transaction_id).type == "payout_claim"

    again = client.post(f"/api/payouts/{payout_id}/claim", json={"password": PASSWORD})
    assert again.status_code == 412


def test_future_payout_is_not_claimable(make_user):
    user = make_user(status="active")
    queued = PayoutQueueHelper.queue_payout(user.id, Decimal("10"), scheduled_at=utcnow() + timedelta(days=2))

    assert PayoutQueueHelper.process_queue() == {"promoted": 0, "expired": 0}
    result = PayoutQueueHelper.claim_payout(user.id, queued.data["payout"]["id"], PASSWORD)

    assert not result.ok
    assert result.rejection.message == "Payout is pending"


def test_unclaimed_payout_expires(make_user):
    user = make_user(status="active")
    queued = PayoutQueueHelper.queue_payout(user.id, Decimal("10"))
    payout_id = queued.data["payout"]["id"]
    PayoutQueueHelper.process_queue()

    stats = PayoutQueueHelper.process_queue(utcnow() + timedelta(days=31))

    assert stats == {"promoted": 0, "expired": 1}
    result = PayoutQueueHelper.claim_payout(user.id, payout_id, PASSWORD)
    assert not result.ok
    assert result.rejection.message == "Payout is expired"


def test_inactive_owner_cannot_claim(make_user):
    user = make_user(status="inactive")
    queued = PayoutQueueHelper.queue_payout(user.id, Decimal("10"))
    PayoutQueueHelper.process_queue()

    result = PayoutQueueHelper.claim_payout(user.id, queued.data["payout"]["id"], PASSWORD)

    assert not result.ok
    assert result.rejection.kind.http_status == 412
    assert reload(user).available_balance == Decimal("0")


def test_payout_of_another_user(make_user):
    owner = make_user(status="active")
    other = make_user(status="active")
    queued = PayoutQueueHelper.queue_payout(owner.id, Decimal("10"))
    PayoutQueueHelper.process_queue()

    result = PayoutQueueHelper.claim_payout(other.id, queued.data["payout"]["id"], PASSWORD)

    assert result.rejection.kind.http_status == 403


def test_payout_listing(make_user, login):
    user = make_user(status="active")
    PayoutQueueHelper.queue_payout(user.id, Decimal("10"))
    PayoutQueueHelper.queue_payout(user.id, Decimal("5"), scheduled_at=utcnow() + timedelta(days=1))
    PayoutQueueHelper.process_queue()
    client = login(user)

    body = client.get("/api/payouts").get_json()
    assert len(body["payouts"]) == 2
    assert body["summary"]["totalReady"] == 10.0
    assert body["summary"]["totalPending"] == 5.0

    assert len(client.get("/api/payouts?status=ready").get_json()["payouts"]) == 1
    assert client.get("/api/payouts?status=bogus").status_code == 400
