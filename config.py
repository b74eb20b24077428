# ==========================================================================================================
# -------------- Configuration for the Fincore financial core ----------------------------------------------
# ==========================================================================================================
import os
from dotenv import load_dotenv


if os.environ.get("FLASK_ENV") != "production":
    load_dotenv()

basedir = os.path.abspath(os.path.dirname(__file__))


def env_flag(name, default="false"):
    return os.getenv(name, default).strip().lower() in ("true", "1", "t", "yes")


class Config:

    FLASK_ENV = os.getenv("FLASK_ENV", "production")
    DEBUG = env_flag("DEBUG", "False")
    TESTING = False

    SECRET_KEY = os.getenv("SECRET_KEY")
    if not SECRET_KEY and FLASK_ENV == "production":
        raise ValueError("SECRET_KEY must be set in production")

    _database_url = os.getenv("DATABASE_URL")
    if not _database_url:
        _database_url = f"sqlite:///{os.path.join(basedir, 'instance', 'fincore.db')}"

    if _database_url.startswith("postgres://"):
        _database_url = _database_url.replace("postgres://", "postgresql+pg8000://", 1)

    SQLALCHEMY_DATABASE_URI = _database_url
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }
    if not _database_url.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS.update({"pool_size": 10, "max_overflow": 20})

    # ------------------------------------------------------------------
    # Operation flags
    # ------------------------------------------------------------------
    ENABLE_BENEFITS_RELEASE = env_flag("ENABLE_BENEFITS_RELEASE")
    ENABLE_COMMISSIONS_RELEASE = env_flag("ENABLE_COMMISSIONS_RELEASE")
    READ_ONLY_API = env_flag("READ_ONLY_API")
    MAINTENANCE_MODE = env_flag("MAINTENANCE_MODE")

    # ------------------------------------------------------------------
    # Wallet pool
    # ------------------------------------------------------------------
    WALLET_NETWORK = os.getenv("WALLET_NETWORK", "BEP20")
    WALLET_CURRENCY = os.getenv("WALLET_CURRENCY", "USDT")
    WALLET_ASSIGNMENT_TTL_HOURS = int(os.getenv("WALLET_ASSIGNMENT_TTL_HOURS", "24"))
    WALLET_COOLDOWN_MINUTES = int(os.getenv("WALLET_COOLDOWN_MINUTES", "15"))
    WALLET_ROTATION_POLICY = os.getenv("WALLET_ROTATION_POLICY", "random")
    WALLET_LOW_AVAILABILITY_RATIO = float(os.getenv("WALLET_LOW_AVAILABILITY_RATIO", "0.10"))

    # ------------------------------------------------------------------
    # Batch jobs
    # ------------------------------------------------------------------
    BENEFIT_MAX_ATTEMPTS = int(os.getenv("BENEFIT_MAX_ATTEMPTS", "3"))
    JOB_STALE_HOURS = int(os.getenv("JOB_STALE_HOURS", "25"))
    JOB_LOCK_TTL_SECONDS = int(os.getenv("JOB_LOCK_TTL_SECONDS", "3600"))
    REDIS_URL = os.getenv("REDIS_URL")

    ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL")
    ALERT_TIMEOUT_SECONDS = int(os.getenv("ALERT_TIMEOUT_SECONDS", "10"))

    LOG_DIR = os.getenv("LOG_DIR", "logs")


class TestingConfig(Config):
    TESTING = True
    DEBUG = False
    SECRET_KEY = "testing"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}

    ENABLE_BENEFITS_RELEASE = True
    ENABLE_COMMISSIONS_RELEASE = True
    READ_ONLY_API = False
    MAINTENANCE_MODE = False

    WALLET_ROTATION_POLICY = "random"
    REDIS_URL = None
    ALERT_WEBHOOK_URL = None
