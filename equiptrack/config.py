"""
EquipTrack: Equipment Accountability & Clearance
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets
from decimal import Decimal

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'equiptrack_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


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
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # Redis (optional; cache and rate limiter fall back to memory)
    REDIS_URL = os.getenv("REDIS_URL")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Change feed: "push" (row notifications on commit) or "poll"
    CHANGE_FEED_MODE = os.getenv("CHANGE_FEED_MODE", "push")
    CHANGE_FEED_POLL_INTERVAL = int(os.getenv("CHANGE_FEED_POLL_INTERVAL", "30"))
    CHANGE_FEED_AUTOSTART = True

    # Accountability rules
    # reuse | reject | allow: what record_loss does when an unsettled
    # record already exists for (personnel, equipment, clearance request)
    ACCOUNTABILITY_DUPLICATE_POLICY = os.getenv("ACCOUNTABILITY_DUPLICATE_POLICY", "reuse")
    DAMAGED_CHARGE_RATE = Decimal(os.getenv("DAMAGED_CHARGE_RATE", "0.50"))

    # Logging: "json" or "readable"; unset picks json outside DEBUG/TESTING
    LOG_LEVEL = os.getenv("LOG_LEVEL")
    LOG_FORMAT = os.getenv("LOG_FORMAT")
    SLOW_REQUEST_MS = int(os.getenv("SLOW_REQUEST_MS", "1000"))

    # Clearance status cache TTL (seconds)
    CLEARANCE_STATUS_CACHE_TTL = int(os.getenv("CLEARANCE_STATUS_CACHE_TTL", "300"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # In-memory SQLite runs on a single static connection
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    CHANGE_FEED_MODE = "push"
    CHANGE_FEED_AUTOSTART = False
    ACCOUNTABILITY_DUPLICATE_POLICY = "reuse"


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    # Override engine options with PostgreSQL statement timeout
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
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
