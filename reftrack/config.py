"""
Reference Routing Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'reftrack_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)

_DATASTORE_TIMEOUT = int(os.getenv("DATASTORE_TIMEOUT_SECONDS", "20"))


def _normalise_db_url(raw: str) -> str:
    # Heroku-style URLs use postgres:// but SQLAlchemy 2.0 requires postgresql://
    return raw.replace("postgres://", "postgresql://", 1)


def _timeout_connect_args(url: str | None) -> dict:
    """Driver connect args carrying the datastore timeout."""
    if url and url.startswith("postgresql"):
        return {"options": f"-c statement_timeout={_DATASTORE_TIMEOUT * 1000}"}
    return {"timeout": _DATASTORE_TIMEOUT}   # sqlite busy timeout (seconds)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "pool_timeout": _DATASTORE_TIMEOUT,
        "connect_args": _timeout_connect_args(None),
    }
    DATASTORE_TIMEOUT_SECONDS = _DATASTORE_TIMEOUT

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # ── Reference engine ─────────────────────────────────────────────────
    REMARKS_WORD_LIMIT = int(os.getenv("REMARKS_WORD_LIMIT", "150"))
    BULK_MAX_WORKERS = int(os.getenv("BULK_MAX_WORKERS", "4"))
    BULK_CONFLICT_RETRIES = int(os.getenv("BULK_CONFLICT_RETRIES", "3"))
    IDENTITY_SYNC_BATCH_SIZE = int(os.getenv("IDENTITY_SYNC_BATCH_SIZE", "200"))
    CLOSE_ROUTES_TO_ADMINS = os.getenv("CLOSE_ROUTES_TO_ADMINS", "true").lower() == "true"
    DEFAULT_PAGE_SIZE = 10
    MAX_PAGE_SIZE = 100

    # Logging (json | text); unset picks json outside DEBUG
    LOG_LEVEL = os.getenv("LOG_LEVEL")
    LOG_FORMAT = os.getenv("LOG_FORMAT")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _normalise_db_url(_raw_db_url) if _raw_db_url else _SQLITE_DEV
    SQLALCHEMY_ENGINE_OPTIONS = {
        **Config.SQLALCHEMY_ENGINE_OPTIONS,
        "connect_args": _timeout_connect_args(SQLALCHEMY_DATABASE_URI),
    }


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
    RATELIMIT_ENABLED = False
    # In-memory SQLite is per-connection; bulk items run on the calling thread
    BULK_MAX_WORKERS = 1
    IDENTITY_SYNC_BATCH_SIZE = 2


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _normalise_db_url(_raw_db_url) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    # Override engine options with PostgreSQL statement timeout
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": _DATASTORE_TIMEOUT,
        "connect_args": _timeout_connect_args("postgresql"),
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
