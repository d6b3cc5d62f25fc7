"""
Inspection Workflow Platform
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

from flask import Flask
from flask_migrate import Migrate

from app.config import config
from app.models import db
from app.middleware.logging_config import configure_logging

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


def init_workflow(app, dispatcher=None):
    """Build the workflow services once and keep them in ``app.extensions``.

    Args:
        app:        Flask application (config already loaded).
        dispatcher: NotificationDispatcher; defaults to LoggingDispatcher.
    """
    from app.services.cache_service import ConfigCache
    from app.services.escalation import EscalationService
    from app.services.notification import WorkflowNotifier
    from app.services.workflow_config import WorkflowConfigService
    from app.services.workflow_engine import WorkflowEngine
    from app.services.workflow_store import WorkflowStore

    store = WorkflowStore()
    config_service = WorkflowConfigService(cache=ConfigCache.from_app(app))
    engine = WorkflowEngine(store, config_service)
    engine.notifier = WorkflowNotifier(dispatcher, users_with_role=engine._user_ids_with_role)

    app.extensions["workflow_config"] = config_service
    app.extensions["workflow_engine"] = engine
    app.extensions["escalation_service"] = EscalationService.from_app(app, engine)
    return engine


def create_app(config_name=None, dispatcher=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        dispatcher:  Notification delivery collaborator (optional).

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import auth as _auth_models               # noqa: F401
    from app.models import audit as _audit_models             # noqa: F401
    from app.models import inspection as _inspection_models   # noqa: F401
    from app.models import workflow as _workflow_models       # noqa: F401
    from app.models import workflow_config as _workflow_config_models  # noqa: F401
    from app.models import scheduling as _scheduling_models   # noqa: F401

    # ── Auto-create tables in development / testing ──────────────────────
    if config_name != "production":
        with app.app_context():
            if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and \
                    ":memory:" not in app.config["SQLALCHEMY_DATABASE_URI"]:
                os.makedirs(app.instance_path, exist_ok=True)
            try:
                db.create_all()
                app.logger.info("db.create_all() completed successfully")
            except Exception as e:
                app.logger.warning("db.create_all() failed: %s", e)

    # ── Workflow engine ──────────────────────────────────────────────────
    init_workflow(app, dispatcher)

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("app.services.scheduled_jobs")  # registers @register_job handlers
    from app.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)
    if app.config.get("SCHEDULER_AUTOSTART"):
        _SchedulerSvc.ensure_jobs_registered()
        _SchedulerSvc.start()

    logger.info("Inspection workflow app created (%s)", config_name)
    return app
