"""
Inspection Workflow Platform
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'inspection_workflow_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _db_url(default=None):
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    raw = os.getenv("DATABASE_URL", "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else default


class Config:
    """Base configuration shared across all environments."""

    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
    }

    # Redis (optional; workflow config cache falls back to memory)
    REDIS_URL = os.getenv("REDIS_URL")

    LOG_LEVEL = os.getenv("LOG_LEVEL")

    # Workflow engine
    WORKFLOW_CONFIG_CACHE_TTL = int(os.getenv("WORKFLOW_CONFIG_CACHE_TTL", "300"))

    # Escalation sweep
    ESCALATION_SWEEP_WORKERS = int(os.getenv("ESCALATION_SWEEP_WORKERS", "4"))
    ESCALATION_RECORD_TIMEOUT_SECONDS = float(os.getenv("ESCALATION_RECORD_TIMEOUT_SECONDS", "30"))
    ESCALATION_SWEEP_INTERVAL_MINUTES = int(os.getenv("ESCALATION_SWEEP_INTERVAL_MINUTES", "5"))
    SCHEDULER_AUTOSTART = os.getenv("SCHEDULER_AUTOSTART", "false").lower() == "true"


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _db_url(_SQLITE_DEV)


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    REDIS_URL = None
    ESCALATION_SWEEP_WORKERS = 1
    ESCALATION_RECORD_TIMEOUT_SECONDS = 5
    SCHEDULER_AUTOSTART = False


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _db_url()

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


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
