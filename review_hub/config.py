"""
ACC Review Hub configuration.

Selected by ``APP_ENV`` (development | testing | production); every value
below can be overridden from the environment.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))


def _database_url(default=None):
    # Heroku-style postgres:// URLs are not accepted by SQLAlchemy 2.x
    raw = os.getenv("DATABASE_URL", "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else default


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class Config:
    """Settings shared by every environment."""

    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Logging: "text" or "json"; level defaults depend on the environment
    LOG_LEVEL = os.getenv("LOG_LEVEL")
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")

    # ACC REST API
    ACC_API_BASE_URL = os.getenv("ACC_API_BASE_URL", "https://developer.api.autodesk.com")
    ACC_REQUEST_TIMEOUT = _int("ACC_REQUEST_TIMEOUT", 30)
    ACC_PAGE_SIZE = _int("ACC_PAGE_SIZE", 50)

    # Sync cycle
    SYNC_INTERVAL_MINUTES = _int("SYNC_INTERVAL_MINUTES", 2)
    SYNC_LEASE_SECONDS = _int("SYNC_LEASE_SECONDS", 600)
    SYNC_LOG_RETENTION_DAYS = _int("SYNC_LOG_RETENTION_DAYS", 30)

    # Official response dispatch
    DISPATCH_LEASE_SECONDS = _int("DISPATCH_LEASE_SECONDS", 120)

    # Internal deadlines as a percentage of the time left until the ACC due date
    DEFAULT_REVIEW_PERCENT = _int("DEFAULT_REVIEW_PERCENT", 50)
    DEFAULT_QC_PERCENT = _int("DEFAULT_QC_PERCENT", 75)


class DevelopmentConfig(Config):
    DEBUG = True
    LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG")
    SQLALCHEMY_DATABASE_URI = _database_url(
        f"sqlite:///{os.path.join(basedir, 'instance', 'review_hub_dev.db')}"
    )


class TestingConfig(Config):
    TESTING = True
    LOG_LEVEL = "WARNING"
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    # In-memory SQLite uses a StaticPool, which rejects pool options
    SQLALCHEMY_ENGINE_OPTIONS = {}


class ProductionConfig(Config):
    """Postgres only; refuses to start without the required secrets."""

    LOG_FORMAT = os.getenv("LOG_FORMAT", "json")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        missing = [
            name for name, present in (
                ("DATABASE_URL", self.SQLALCHEMY_DATABASE_URI),
                ("SECRET_KEY", os.getenv("SECRET_KEY")),
                ("ENCRYPTION_KEY", os.getenv("ENCRYPTION_KEY")),
            )
            if not present
        ]
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
