"""
Inspection Workflow Platform
Scheduler Service.

Interval job runner for the workflow's periodic work. The escalation sweep
is the main client: it is registered with the interval setting it reads
from app config and ticked by a daemon thread (or by an external cron
calling ``run_job`` / ``run_due_jobs``).

Every run happens in a fresh app context and is recorded on its
``ScheduledJob`` row; a job returning ``{"errors": [...]}`` is a partial run.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

from flask import Flask

from app.models import db
from app.models.scheduling import ScheduledJob
from app.services.workflow_conditions import as_utc

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = 60


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}
_job_intervals: dict[str, str] = {}


def register_job(name: str, *, interval_setting: str | None = None):
    """Register ``fn(app)`` as a scheduled job.

    ``interval_setting`` names the app config key holding the job's interval
    in minutes; jobs without one run hourly.

        @register_job("escalation_sweep", interval_setting="ESCALATION_SWEEP_INTERVAL_MINUTES")
        def run_escalation_sweep(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        if interval_setting:
            _job_intervals[name] = interval_setting
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


def job_interval_minutes(job_name: str, app: Flask) -> int:
    setting = _job_intervals.get(job_name)
    if setting is None:
        return DEFAULT_INTERVAL_MINUTES
    return int(app.config.get(setting, DEFAULT_INTERVAL_MINUTES))


def _is_due(job: ScheduledJob, now: datetime) -> bool:
    if job.last_run_at is None:
        return True
    return as_utc(job.last_run_at) + timedelta(minutes=job.interval_minutes) <= now


def _run_status(result, error) -> str:
    if error is not None:
        return "failed"
    if isinstance(result, dict) and result.get("errors"):
        return "partial"
    return "success"


class SchedulerService:
    """Class-level scheduler bound to one Flask app by ``init_app``."""

    _app: Flask | None = None
    _thread: threading.Thread | None = None
    _stop: threading.Event | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("Scheduler bound with jobs: %s", ", ".join(sorted(_job_registry)) or "-")

    # ── Job records ──────────────────────────────────────────────────────

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        if not cls._app:
            return []

        with cls._app.app_context():
            known = {name for (name,) in db.session.query(ScheduledJob.job_name)}
            created = [
                ScheduledJob.for_interval(
                    name,
                    job_interval_minutes(name, cls._app),
                    description=(fn.__doc__ or name).strip().splitlines()[0],
                )
                for name, fn in _job_registry.items()
                if name not in known
            ]
            if created:
                db.session.add_all(created)
                db.session.commit()
                logger.info("Registered scheduled jobs: %s", [j.job_name for j in created])
        return created

    @classmethod
    def list_jobs(cls) -> list[dict]:
        records = {j.job_name: j for j in ScheduledJob.query.all()}
        return [
            {
                "job_name": name,
                "registered": True,
                "db_record": records[name].to_dict() if name in records else None,
            }
            for name in _job_registry
        ]

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Pause or resume a job; None when it has no record."""
        job = ScheduledJob.query.filter_by(job_name=job_name).first()
        if job is None:
            return None
        job.set_enabled(enabled)
        db.session.commit()
        logger.info("Scheduled job %s %s", job_name, job.status)
        return job.to_dict()

    # ── Execution ────────────────────────────────────────────────────────

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """Execute one job in its own app context and record the run."""
        fn = _job_registry.get(job_name)
        if not fn:
            return {"status": "error", "error": f"Unknown job: {job_name}"}
        if not cls._app:
            return {"status": "error", "error": "Scheduler not initialized"}

        started = time.monotonic()
        result = error = None
        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception as exc:
            error = str(exc)
            logger.exception("Job %s failed", job_name, extra={"event_type": "scheduled_job"})

        status = _run_status(result, error)
        duration_ms = int((time.monotonic() - started) * 1000)
        cls._record_run(job_name, status, duration_ms, result, error)
        logger.info(
            "Job %s finished: %s in %dms", job_name, status, duration_ms,
            extra={"event_type": "scheduled_job", "duration_ms": duration_ms},
        )
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def _record_run(cls, job_name, status, duration_ms, result, error) -> None:
        try:
            with cls._app.app_context():
                job = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job is None:
                    return
                job.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
                db.session.commit()
        except Exception:
            logger.exception("Could not record run of %s", job_name)

    @classmethod
    def run_due_jobs(cls, now: datetime | None = None) -> list[dict]:
        """Run every enabled job whose interval has elapsed since its last run."""
        if not cls._app:
            return []
        now = as_utc(now or datetime.now(timezone.utc))
        with cls._app.app_context():
            due = [
                job.job_name
                for job in ScheduledJob.query.filter_by(is_enabled=True).all()
                if job.job_name in _job_registry and _is_due(job, now)
            ]
        return [cls.run_job(name) for name in due]

    # ── Background thread ────────────────────────────────────────────────

    @classmethod
    def start(cls, tick_seconds: float = 30.0) -> None:
        """Tick ``run_due_jobs`` from a daemon thread until ``stop``."""
        if cls._thread is not None or not cls._app:
            return
        stop = cls._stop = threading.Event()

        def loop():
            while not stop.is_set():
                try:
                    cls.run_due_jobs()
                except Exception:
                    logger.exception("Scheduler tick failed")
                stop.wait(tick_seconds)

        cls._thread = threading.Thread(target=loop, name="workflow-scheduler", daemon=True)
        cls._thread.start()
        logger.info("Scheduler thread started (tick=%ss)", tick_seconds)

    @classmethod
    def stop(cls) -> None:
        if cls._thread is None:
            return
        cls._stop.set()
        cls._thread.join(timeout=5)
        cls._thread = None
