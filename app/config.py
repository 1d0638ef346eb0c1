"""
Protocol Review Workflow Engine
Configuration classes for the Flask App Factory.

Selected by APP_ENV (development | testing | production):
    app.config.from_object(config[config_name])

Workflow settings:
    TIMELINE_EXCLUDED_VALUES  comma-separated sentinels hidden from timelines
    REVIEWER_POOL_LIMIT       max board members offered for assignment
    RATELIMIT_WRITE / RATELIMIT_READ   per-IP limits on the protocol API
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'protocol_review_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _database_url(env_var: str, fallback: str | None) -> str | None:
    """Read a database URL, rewriting Heroku-style postgres:// for SQLAlchemy 2."""
    raw = os.getenv(env_var, "")
    if not raw:
        return fallback
    return raw.replace("postgres://", "postgresql://", 1)


def _csv_env(name: str, default: str) -> tuple[str, ...]:
    return tuple(v.strip() for v in os.getenv(name, default).split(",") if v.strip())


class Config:
    """Base configuration shared across all environments."""

    # Random per process unless set; production refuses to start without one
    SECRET_KEY = os.getenv("SECRET_KEY", secrets.token_hex(32))
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = os.getenv("SQLALCHEMY_ECHO", "false").lower() == "true"
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    MAX_CONTENT_LENGTH = 1024 * 1024  # 1 MB request bodies

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")
    RATELIMIT_WRITE = os.getenv("RATELIMIT_WRITE", "60/minute")
    RATELIMIT_READ = os.getenv("RATELIMIT_READ", "200/minute")

    TIMELINE_EXCLUDED_VALUES = _csv_env("TIMELINE_EXCLUDED_VALUES", "test")
    REVIEWER_POOL_LIMIT = int(os.getenv("REVIEWER_POOL_LIMIT", "200"))


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL", _SQLITE_DEV)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = _database_url("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    TIMELINE_EXCLUDED_VALUES = ("test",)
    REVIEWER_POOL_LIMIT = 50


class ProductionConfig(Config):
    """PostgreSQL only; CORS origins must be listed explicitly."""

    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL", None)
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {"options": "-c statement_timeout=30000"},  # 30s
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
