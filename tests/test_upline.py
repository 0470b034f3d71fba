import logging

import pytest
from sqlalchemy import update

from conftest import reload
from extensions import db
from models import User
from rewards.accounts import RegistrationService
from rewards.upline import UplineWalker


def set_sponsor_raw(user_id, sponsor_id):
    """Bypass the ORM guard to simulate damaged data."""
    db.session.execute(update(User).where(User.id == user_id).values(sponsor_id=sponsor_id))
    db.session.commit()
    db.session.expire_all()


def test_walk_returns_levels_up_to_depth(make_user):
    root = make_user(username="root")
    middle = make_user(username="middle", sponsor=root)
    leaf = make_user(username="leaf", sponsor=middle)

    members = UplineWalker.walk_upline(leaf.id)
    assert [(m.user.username, m.level) for m in members] == [("middle", 1), ("root", 2)]

    assert [m.user.username for m in UplineWalker.walk_upline(leaf.id, 1)] == ["middle"]
    assert UplineWalker.walk_upline(root.id) == []
    assert UplineWalker.walk_upline(leaf.id, 0) == []


def test_walk_stops_at_orphaned_sponsor(make_user, caplog):
    sponsor = make_user(username="sponsor")
    member = make_user(username="member", sponsor=sponsor)
    leaf = make_user(username="leaf", sponsor=member)
    set_sponsor_raw(member.id, 9999)

    with caplog.at_level(logging.ERROR, logger="rewards.upline"):
        members = UplineWalker.walk_upline(leaf.id)

    assert [m.user.username for m in members] == ["member"]
    assert "Orphaned sponsor reference" in caplog.text


def test_walk_of_unknown_user_is_empty(app, caplog):
    with caplog.at_level(logging.ERROR, logger="rewards.upline"):
        assert UplineWalker.walk_upline(31337) == []
    assert "unknown user 31337" in caplog.text


def test_cycle_terminates_walk_and_blocks_placement(make_user, caplog):
    first = make_user(username="first")
    second = make_user(username="second", sponsor=first)
    set_sponsor_raw(first.id, second.id)

    with caplog.at_level(logging.ERROR, logger="rewards.upline"):
        members = UplineWalker.walk_upline(second.id, 6)
    assert [m.user.username for m in members] == ["first"]
    assert "Sponsor cycle detected" in caplog.text

    assert UplineWalker.find_cycle(second.id) is not None

    result = RegistrationService.register("third", "third@example.com", "secret123",
                                          referral_code=reload(second).referral_code)
    assert not result.ok
    assert result.rejection.kind.http_status == 412
    assert User.query.filter_by(username="third").first() is None


def test_find_cycle_on_healthy_chain(make_user):
    root = make_user()
    child = make_user(sponsor=root)
    assert UplineWalker.find_cycle(child.id) is None
    assert UplineWalker.find_cycle(root.id, new_user_id=root.id) == root.id


def test_sponsor_cannot_change_once_set(make_user):
    original = make_user()
    other = make_user()
    member = make_user(sponsor=original)

    member.sponsor_id = original.id
    with pytest.raises(ValueError):
        member.sponsor_id = other.id

    assert reload(member).sponsor_id == original.id


def test_upline_endpoint(make_user, login):
    root = make_user(username="root")
    leaf = make_user(username="leaf", sponsor=root)

    response = login(leaf).get("/api/user/upline")

    assert response.status_code == 200
    assert response.get_json()["upline"] == [
        {"level": 1, "userId": root.id, "username": "root", "status": "inactive", "rank": None}
    ]
