import os

os.environ.setdefault("FLASK_ENV", "testing")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from decimal import Decimal

import pytest

from app import create_app
from config import Config
from extensions import db
from models import Rank, User
from rewards.activation import ActivationService
from rewards.config import IncomeConfigHelper
from rewards.ledger import LedgerHelper
from rewards.security import rate_limiter

PASSWORD = "secret123"


class TestConfig(Config):
    __test__ = False

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    REDIS_URL = None
    BSCSCAN_API_KEY = None
    TX_RETRY_ATTEMPTS = 3


@pytest.fixture
def app(tmp_path):
    class FileConfig(TestConfig):
        # file-backed so side-channel writes get a connection of their own
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'rankpool.db'}"

    app = create_app(FileConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()
    rate_limiter.use_client(None)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ranks(app):
    """Three-step ladder: starter 100, silver 200, gold 400."""
    level_table = {str(k): str(v) for k, v in IncomeConfigHelper.LEVEL_PERCENTAGES.items()}
    created = []
    for index, (code, amount) in enumerate([("starter", "100"), ("silver", "200"), ("gold", "400")], start=1):
        rank = Rank(
            code=code,
            name=code.title(),
            order_index=index,
            activation_amount=Decimal(amount),
            referral_percentage=Decimal("50"),
            global_percentage=Decimal("10"),
            level_percentages=level_table,
        )
        db.session.add(rank)
        created.append(rank)
    db.session.commit()
    return {rank.code: rank for rank in created}


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make(username=None, sponsor=None, balance=0, status="inactive", rank=None,
              role="user", password=PASSWORD, suspended=False):
        counter["n"] += 1
        name = username or f"user{counter['n']}"
        user = User(
            username=name,
            email=f"{name}@example.com",
            referral_code=f"CODE{counter['n']:04d}",
            sponsor_id=sponsor.id if sponsor else None,
            available_balance=Decimal(str(balance)),
            status=status,
            current_rank_id=rank.id if rank else None,
            role=role,
            is_suspended=suspended,
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def admin(make_user):
    return make_user(username="admin", role="admin", status="active")


@pytest.fixture
def login(app):
    """Returns a fresh test client logged in as ``user``."""
    def _login(user, password=PASSWORD):
        client = app.test_client()
        response = client.post("/api/login", json={"login": user.email, "password": password})
        assert response.status_code == 200, response.get_json()
        return client

    return _login


@pytest.fixture
def activate(app):
    """Activate ``rank`` for ``user`` through the wallet, funding the wallet first."""
    def _activate(user, rank):
        LedgerHelper.credit(user.id, available=rank.activation_amount)
        db.session.commit()
        result = ActivationService.request_activation(user.id, rank.code, "wallet")
        assert result.ok, result.rejection
        return result

    return _activate


def reload(obj):
    db.session.expire_all()
    return db.session.get(type(obj), obj.id)
