# ==========================================================================================================
# -------------- Configuration file for the RankPool Flask application ------------------------------------
# ==========================================================================================================
import os
from dotenv import load_dotenv


if os.environ.get("FLASK_ENV") != "production":
    load_dotenv()

basedir = os.path.abspath(os.path.dirname(__file__))


def _env_flag(name, default="False"):
    return os.getenv(name, default).lower() in ("true", "1", "t")


class Config:

    FLASK_ENV = os.getenv("FLASK_ENV", "production")
    DEBUG = _env_flag("DEBUG")

    SECRET_KEY = os.getenv("SECRET_KEY")
    if not SECRET_KEY:
        if FLASK_ENV == "production":
            raise ValueError("SECRET_KEY must be set in production")
        SECRET_KEY = "dev_key_change_me"

    _database_url = os.getenv("DATABASE_URL")
    if not _database_url:
        _database_url = f"sqlite:///{os.path.join(basedir, 'instance', 'rankpool.db')}"

    if _database_url.startswith("postgres://"):
        _database_url = _database_url.replace("postgres://", "postgresql+pg8000://", 1)

    SQLALCHEMY_DATABASE_URI = _database_url
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    if _database_url.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {
            "pool_size": 10,
            "max_overflow": 20,
            "pool_pre_ping": True,
            "pool_recycle": 300,
        }

    # Rate limiting (redis)
    REDIS_URL = os.getenv("REDIS_URL")
    RATELIMIT_ENABLED = _env_flag("RATELIMIT_ENABLED", "True" if REDIS_URL else "False")

    # Ledger / income engine
    TX_RETRY_ATTEMPTS = int(os.getenv("TX_RETRY_ATTEMPTS", 3))
    LEVEL_INCOME_DEPTH = int(os.getenv("LEVEL_INCOME_DEPTH", 6))
    POOL_CAP_MULTIPLIER = int(os.getenv("POOL_CAP_MULTIPLIER", 100))
    PAYOUT_EXPIRY_DAYS = int(os.getenv("PAYOUT_EXPIRY_DAYS", 30))

    # On-chain verification (BscScan compatible explorer)
    BSCSCAN_API_KEY = os.getenv("BSCSCAN_API_KEY")
    BSCSCAN_BASE_URL = os.getenv("BSCSCAN_BASE_URL", "https://api.bscscan.com/api")

    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000")
