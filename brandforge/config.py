"""
BrandForge Stage Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets
import socket

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'brandforge_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


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

    # Redis (rate-limit storage)
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    RUN_STAGE_RATE_LIMIT = os.getenv("RUN_STAGE_RATE_LIMIT", "30 per minute")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # AI providers
    AI_PROVIDER = os.getenv("AI_PROVIDER", "openai")
    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
    ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
    MODEL_DEFAULTS_JSON = os.getenv("MODEL_DEFAULTS_JSON", "")
    OPENAI_MODEL_ALLOWLIST = os.getenv("OPENAI_MODEL_ALLOWLIST", "")
    ANTHROPIC_MODEL_ALLOWLIST = os.getenv("ANTHROPIC_MODEL_ALLOWLIST", "")
    PROMPTS_DIR = os.getenv("PROMPTS_DIR", os.path.join(basedir, "prompts"))

    # Job queue
    JOB_EXECUTION_MODE = os.getenv("JOB_EXECUTION_MODE", "queue")   # queue | inline
    JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", "3"))
    JOB_STALE_LOCK_SECONDS = int(os.getenv("JOB_STALE_LOCK_SECONDS", "0"))  # 0 = disabled
    WORKER_POLL_INTERVAL_MS = int(os.getenv("WORKER_POLL_INTERVAL_MS", "5000"))
    WORKER_BATCH_SIZE = int(os.getenv("WORKER_BATCH_SIZE", "5"))
    WORKER_INSTANCE_ID = os.getenv("WORKER_INSTANCE_ID") or _default_worker_id()

    # Business plan guard
    BUSINESS_PLAN_GENERATE_LIMIT = int(os.getenv("BUSINESS_PLAN_GENERATE_LIMIT", "3"))
    BUSINESS_PLAN_GENERATE_WINDOW_MINUTES = int(
        os.getenv("BUSINESS_PLAN_GENERATE_WINDOW_MINUTES", "60")
    )


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
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False

    # Offline provider, no credentials leak into tests
    AI_PROVIDER = "mock"
    OPENAI_API_KEY = ""
    ANTHROPIC_API_KEY = ""
    MODEL_DEFAULTS_JSON = ""
    OPENAI_MODEL_ALLOWLIST = ""
    ANTHROPIC_MODEL_ALLOWLIST = ""
    JOB_EXECUTION_MODE = "queue"
    JOB_MAX_ATTEMPTS = 3
    JOB_STALE_LOCK_SECONDS = 0
    WORKER_POLL_INTERVAL_MS = 10
    WORKER_INSTANCE_ID = "test-worker"


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
