from models import AuditLog
from rewards.settings import PlatformSettingsHelper


def test_defaults_without_settings_row(app):
    settings = PlatformSettingsHelper.load()
    assert settings.direct_referral_requirement == 2
    assert settings.maintenance_mode is False
    assert settings.registration_open is True


def test_admin_reads_and_updates_settings(admin, login):
    client = login(admin)

    assert client.get("/api/admin/settings").get_json()["settings"]["directReferralRequirement"] == 2

    response = client.put("/api/admin/settings", json={"directReferralRequirement": 3, "welcomeBonus": "2.50"})

    assert response.status_code == 200
    body = response.get_json()
    assert body["changed"] == ["direct_referral_requirement", "welcome_bonus"]
    assert body["settings"]["directReferralRequirement"] == 3
    assert body["settings"]["welcomeBonus"] == 2.5
    assert body["settings"]["updatedBy"] == admin.id
    assert PlatformSettingsHelper.load().direct_referral_requirement == 3

    audit = AuditLog.query.filter_by(action="settings.updated").one()
    assert audit.actor_id == admin.id
    assert audit.details["old"]["direct_referral_requirement"] == "2"
    assert audit.details["new"]["direct_referral_requirement"] == "3"


def test_invalid_settings_are_rejected_with_field_errors(admin, login):
    client = login(admin)

    response = client.patch("/api/admin/settings",
                            json={"directReferralRequirement": 99, "maintenanceMode": "yes", "colour": "red"})

    assert response.status_code == 400
    fields = response.get_json()["details"]["fields"]
    assert set(fields) == {"directReferralRequirement", "maintenanceMode", "colour"}
    assert fields["colour"] == "unknown setting"
    assert AuditLog.query.filter_by(action="settings.updated").count() == 0


def test_empty_update_is_rejected(admin, login):
    assert login(admin).put("/api/admin/settings", json={}).status_code == 400


def test_settings_require_admin(make_user, login, client):
    assert client.get("/api/admin/settings").status_code == 401
    assert login(make_user()).put("/api/admin/settings", json={"maintenanceMode": True}).status_code == 403
    assert PlatformSettingsHelper.load().maintenance_mode is False
