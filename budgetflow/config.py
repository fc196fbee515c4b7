"""
School Budget Workflow
Configuration classes for the Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'budgetflow_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
    }

    # Redis (named locks + rate-limiter storage); memory:// disables it
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    LOCK_TIMEOUT_SECONDS = float(os.getenv("LOCK_TIMEOUT_SECONDS", "10"))

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Auth
    JWT_ACCESS_EXPIRES = int(os.getenv("JWT_ACCESS_EXPIRES", "900"))
    AUTH_HEADER_FALLBACK = False

    # Email / SMTP (no SMTP_SERVER → log-only mode)
    SMTP_SERVER = os.getenv("SMTP_SERVER")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"
    EMAIL_USER = os.getenv("EMAIL_USER")
    EMAIL_PASS = os.getenv("EMAIL_PASS")
    EMAIL_FROM = os.getenv("EMAIL_FROM", "noreply@budget.local")
    EMAIL_RATE_LIMIT_PER_MINUTE = int(os.getenv("EMAIL_RATE_LIMIT_PER_MINUTE", "25"))
    EMAIL_MAX_ATTEMPTS = 3
    EMAIL_RETRY_BASE_SECONDS = 2.0
    EMAIL_GROUP_PAUSE_SECONDS = 30.0
    EMAIL_RECIPIENT_PAUSE_SECONDS = 0.2
    EMAIL_DEBUG_VERBOSE = os.getenv("EMAIL_DEBUG_VERBOSE") == "1"
    EMAIL_DEBUG_DRYRUN = os.getenv("EMAIL_DEBUG_DRYRUN") == "1"

    # Deep links used in emails (omitted links are skipped)
    APP_BASE_URL = os.getenv("APP_BASE_URL", "")
    APP_PRINCIPAL_CONTROL_URL = os.getenv("APP_PRINCIPAL_CONTROL_URL", "")
    APP_PRINCIPAL_TO_APPROVE_URL = os.getenv("APP_PRINCIPAL_TO_APPROVE_URL", "")
    APP_BUDGET_URL_PREFIX = os.getenv("APP_BUDGET_URL_PREFIX", "")
    APP_REVISED_ITEMS_URL = os.getenv("APP_REVISED_ITEMS_URL", "")
    HQ_NAME = os.getenv("HQ_NAME", "Headquarters")
    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
    ADMIN_NOTIFY_ROLES = [
        r.strip() for r in os.getenv("ADMIN_NOTIFY_ROLES", "admin,hq_admin").split(",") if r.strip()
    ]

    # After-commit notifications run on a worker thread unless NOTIFY_SYNC
    NOTIFY_SYNC = False

    # Chat event stream
    CHAT_STREAM_KEEPALIVE_SECONDS = float(os.getenv("CHAT_STREAM_KEEPALIVE_SECONDS", "15"))

    # Scheduler
    ENABLE_SCHEDULER = _flag("ENABLE_SCHEDULER")
    SCHEDULER_TIMEZONE = os.getenv("SCHEDULER_TIMEZONE", "Asia/Kabul")
    DIGEST_HOUR = int(os.getenv("DIGEST_HOUR", "9"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )
    # X-User-Id header accepted alongside Bearer tokens
    AUTH_HEADER_FALLBACK = True


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    REDIS_URL = "memory://"
    AUTH_HEADER_FALLBACK = True
    NOTIFY_SYNC = True
    ENABLE_SCHEDULER = False
    SMTP_SERVER = None
    EMAIL_DEBUG_DRYRUN = False
    EMAIL_RETRY_BASE_SECONDS = 0.0
    EMAIL_GROUP_PAUSE_SECONDS = 0.0
    EMAIL_RECIPIENT_PAUSE_SECONDS = 0.0
    LOCK_TIMEOUT_SECONDS = 1.0
    ADMIN_EMAIL = "admin@budget.test"


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
