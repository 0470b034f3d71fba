from decimal import Decimal

from conftest import reload
from models import Transaction
from rewards.accounts import TransferService
from rewards.activation import DepositService

P2P_DETAILS = {"p2pReference": "BINANCE-55110", "platform": "binance"}


def test_transfer_moves_available_balance(make_user, login):
    sender = make_user(username="sender", balance=100)
    recipient = make_user(username="recipient", balance=5)

    response = login(sender).post("/api/wallet/transfer",
                                  json={"recipientCode": recipient.referral_code.lower(), "amount": 40,
                                        "note": "rent"})

    assert response.status_code == 200
    body = response.get_json()
    assert body["amount"] == 40.0
    assert body["recipient"] == "recipient"
    assert body["newBalance"] == 60.0
    assert len(body["transactionIds"]) == 2

    assert reload(sender).available_balance == Decimal("60")
    assert reload(recipient).available_balance == Decimal("45")
    out_tx = Transaction.query.filter_by(user_id=sender.id, type="transfer_out").one()
    in_tx = Transaction.query.filter_by(user_id=recipient.id, type="transfer_in").one()
    assert out_tx.counterparty_id == recipient.id
    assert in_tx.counterparty_id == sender.id
    assert out_tx.description == "rent"


def test_transfer_to_self_is_invalid(make_user):
    sender = make_user(balance=100)
    result = TransferService.transfer(sender.id, sender.referral_code, Decimal("10"))
    assert result.rejection.kind.http_status == 400


def test_transfer_requires_funds(make_user):
    sender = make_user(balance=10)
    recipient = make_user()

    result = TransferService.transfer(sender.id, recipient.referral_code, Decimal("50"))

    assert result.rejection.kind.http_status == 412
    assert result.rejection.details == {"available": 10.0}
    assert reload(recipient).available_balance == Decimal("0")
    assert Transaction.query.count() == 0


def test_transfer_to_unknown_or_suspended_recipient(make_user):
    sender = make_user(balance=100)
    suspended = make_user(suspended=True)

    assert TransferService.transfer(sender.id, "ZZZZ9999", Decimal("5")).rejection.kind.http_status == 404
    assert TransferService.transfer(sender.id, suspended.referral_code,
                                    Decimal("5")).rejection.kind.http_status == 412


def test_transfer_endpoint_validates_amount(make_user, login):
    client = login(make_user(balance=100))
    assert client.post("/api/wallet/transfer", json={"recipientCode": "CODE0001", "amount": 0}).status_code == 400
    assert client.post("/api/wallet/transfer", json={"recipientCode": "CODE0001", "amount": "abc"}).status_code == 400


def test_deposit_is_credited_after_confirmation(make_user, admin, login):
    user = make_user()
    client = login(user)

    response = client.post("/api/wallet/deposits",
                           json={"amount": 75, "paymentMethod": "p2p", "paymentDetails": P2P_DETAILS})
    assert response.status_code == 201
    tx_id = response.get_json()["transactionId"]
    assert reload(user).available_balance == Decimal("0")

    duplicate = client.post("/api/wallet/deposits",
                            json={"amount": 75, "paymentMethod": "p2p", "paymentDetails": P2P_DETAILS})
    assert duplicate.status_code == 409

    confirmed = login(admin).post(f"/api/admin/deposits/{tx_id}/confirm", json={})
    assert confirmed.status_code == 200
    assert reload(user).available_balance == Decimal("75")

    history = client.get("/api/wallet/transactions?type=deposit").get_json()["transactions"]
    assert [(t["id"], t["status"]) for t in history] == [(tx_id, "completed")]


def test_deposit_rejects_wallet_method(make_user, login):
    response = login(make_user()).post("/api/wallet/deposits", json={"amount": 10, "paymentMethod": "wallet"})
    assert response.status_code == 400


def test_deposit_amount_bounds(make_user, login):
    user = make_user()

    too_small = DepositService.request_deposit(user.id, Decimal("0.004"), "p2p", P2P_DETAILS)
    too_large = DepositService.request_deposit(user.id, Decimal("5000000"), "p2p", P2P_DETAILS)

    assert too_small.rejection.kind.http_status == 400
    assert too_small.rejection.message == "Minimum deposit is 0.01"
    assert too_large.rejection.kind.http_status == 400
    assert Transaction.query.count() == 0

    client = login(user)
    huge = client.post("/api/wallet/deposits",
                       json={"amount": "1e30", "paymentMethod": "p2p", "paymentDetails": P2P_DETAILS})
    assert huge.status_code == 400
    assert client.post("/api/wallet/transfer", json={"recipientCode": "CODE0001", "amount": 1e30}).status_code == 400


def test_recent_activity_feed(ranks, make_user, activate, login):
    user = make_user()
    activate(user, ranks["starter"])
    client = login(user)

    body = client.get("/api/recent_activity?page_size=10").get_json()
    titles = {a["title"] for a in body["activities"]}
    assert "Rank Activation" in titles
    assert "Global Income" in titles
    assert body["pagination"]["total"] == 2

    assert client.get("/api/recent_activity?page=0").status_code == 400
    assert client.get("/api/recent_activity?page_size=1000").status_code == 400


def test_profile_and_referrals(ranks, make_user, activate, login):
    sponsor = make_user(username="sponsor")
    activate(sponsor, ranks["starter"])
    activate(make_user(username="direct", sponsor=sponsor), ranks["starter"])
    client = login(sponsor)

    profile = client.get("/api/user/profile").get_json()["user"]
    assert profile["currentRank"] == "starter"
    assert profile["lockedBalance"] == 60.0
    assert profile["pools"]["totalPools"] == 1

    referrals = client.get("/api/user/referrals").get_json()
    assert referrals["total"] == 1
    assert referrals["active"] == 1
    assert referrals["referralCode"] == sponsor.referral_code
    assert referrals["referralLink"].endswith(f"/signup?ref={sponsor.referral_code}")

    income = client.get("/api/user/income").get_json()
    assert income["totals"] == {"global": 10.0, "level": 50.0, "referral": 50.0}

    earnings = client.get("/api/user/total-earnings").get_json()
    assert earnings["earnings"]["lifetime"] == 50.0
    assert earnings["referrals"] == {"direct": 1, "active": 1}

    assert client.put("/api/user/profile", json={"walletAddress": "nope"}).status_code == 400
    updated = client.put("/api/user/profile", json={"walletAddress": "0x" + "ab" * 20})
    assert updated.status_code == 200
