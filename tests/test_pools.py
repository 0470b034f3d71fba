from decimal import Decimal

from conftest import reload
from models import IncomePool, Transaction
from rewards.pools import IncomePoolHelper
from rewards.settings import PlatformSettingsHelper


def sponsor_with_referrals(make_user, activate, rank, referrals):
    sponsor = make_user(username="sponsor")
    activate(sponsor, rank)
    for index in range(referrals):
        activate(make_user(username=f"member{index}", sponsor=sponsor), rank)
    return sponsor


def test_claim_after_referral_requirement_met(ranks, make_user, activate, login):
    sponsor = sponsor_with_referrals(make_user, activate, ranks["starter"], 2)
    pool = IncomePool.query.filter_by(user_id=sponsor.id).one()
    assert pool.can_claim is True
    assert pool.pool_income == Decimal("110")

    response = login(sponsor).post(f"/api/pools/{pool.id}/claim")

    assert response.status_code == 200
    body = response.get_json()
    assert body["claimedAmount"] == 110.0
    assert body["newBalance"] == 210.0

    sponsor = reload(sponsor)
    assert sponsor.available_balance == Decimal("210")
    assert sponsor.locked_balance == Decimal("0")
    assert sponsor.total_earnings == Decimal("210")
    pool = reload(pool)
    assert pool.state == "claimed"
    assert pool.pool_income == Decimal("0")
    assert pool.claimed_amount == Decimal("110")
    assert pool.is_locked is False
    assert Transaction.query.filter_by(user_id=sponsor.id, type="income_claim").count() == 1


def test_pool_cannot_be_claimed_twice(ranks, make_user, activate):
    sponsor = sponsor_with_referrals(make_user, activate, ranks["starter"], 2)
    pool = IncomePool.query.filter_by(user_id=sponsor.id).one()

    assert IncomePoolHelper.claim_pool(sponsor.id, pool.id).ok
    second = IncomePoolHelper.claim_pool(sponsor.id, pool.id)

    assert not second.ok
    assert second.rejection.kind.http_status == 412
    assert second.rejection.message == "Pool has already been claimed"
    assert reload(sponsor).available_balance == Decimal("210")


def test_claim_of_another_users_pool_is_denied(ranks, make_user, activate):
    sponsor = sponsor_with_referrals(make_user, activate, ranks["starter"], 2)
    intruder = make_user(username="intruder")
    pool = IncomePool.query.filter_by(user_id=sponsor.id).one()

    result = IncomePoolHelper.claim_pool(intruder.id, pool.id)

    assert not result.ok
    assert result.rejection.kind.http_status == 403


def test_locked_pool_reports_missing_referrals(ranks, make_user, activate, login):
    sponsor = sponsor_with_referrals(make_user, activate, ranks["starter"], 1)
    pool = IncomePool.query.filter_by(user_id=sponsor.id).one()

    response = login(sponsor).post(f"/api/pools/{pool.id}/claim")

    assert response.status_code == 412
    body = response.get_json()
    assert body["code"] == "failed-precondition"
    assert body["details"] == {"directReferrals": 1, "required": 2}
    assert reload(pool).pool_income == Decimal("60")


def test_unknown_pool(ranks, make_user, login):
    user = make_user()
    response = login(user).post("/api/pools/999/claim")
    assert response.status_code == 404


def test_requirement_change_applies_on_recount(ranks, make_user, activate, admin):
    user = make_user()
    activate(user, ranks["starter"])
    pool = IncomePool.query.filter_by(user_id=user.id).one()
    assert pool.required_direct_referrals == 2

    PlatformSettingsHelper.update(admin.id, {"directReferralRequirement": 0})
    pool = reload(pool)
    assert pool.required_direct_referrals == 2
    assert pool.can_claim is False

    result = IncomePoolHelper.update_direct_referrals(user.id)
    assert result.ok
    assert result.data["poolsUpdated"] == 1
    pool = reload(pool)
    assert pool.required_direct_referrals == 0
    assert pool.can_claim is True


def test_new_pools_use_current_requirement(ranks, make_user, activate, admin):
    PlatformSettingsHelper.update(admin.id, {"directReferralRequirement": 1})
    user = make_user()
    activate(user, ranks["starter"])

    pool = IncomePool.query.filter_by(user_id=user.id).one()
    assert pool.required_direct_referrals == 1


def test_pool_listing(ranks, make_user, activate, login):
    sponsor = sponsor_with_referrals(make_user, activate, ranks["starter"], 1)

    response = login(sponsor).get("/api/pools")

    assert response.status_code == 200
    body = response.get_json()
    assert len(body["pools"]) == 1
    assert body["pools"][0]["state"] == "locked"
    assert body["summary"]["openPools"] == 1
    assert body["summary"]["lockedIncome"] == 60.0
