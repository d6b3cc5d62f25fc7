"""
Inspection Workflow Platform
Scheduling model.

Models:
    - ScheduledJob: one row per registered interval job, with its run history
"""

from datetime import datetime, timezone

from app.models import db


RUN_STATUSES = ("success", "partial", "failed")


def _utcnow():
    return datetime.now(timezone.utc)


class ScheduledJob(db.Model):
    """Persisted state of a periodic job such as the escalation sweep."""

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    schedule_type = db.Column(db.String(30), default="interval")
    schedule_config = db.Column(db.JSON, default=dict, comment='{"minutes": N}')
    status = db.Column(db.String(20), default="active", comment="active | paused")
    is_enabled = db.Column(db.Boolean, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True)
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True, comment="SweepReport of the last run")
    run_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @classmethod
    def for_interval(cls, job_name: str, minutes: int, description: str = "") -> "ScheduledJob":
        return cls(
            job_name=job_name,
            description=description,
            schedule_type="interval",
            schedule_config={"minutes": minutes, "description": f"Every {minutes} minutes"},
            status="active",
            is_enabled=True,
            run_count=0,
            error_count=0,
        )

    @property
    def interval_minutes(self) -> int:
        return int((self.schedule_config or {}).get("minutes", 60))

    def set_enabled(self, enabled: bool) -> None:
        self.is_enabled = enabled
        self.status = "active" if enabled else "paused"

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        """Record one execution; only ``failed`` runs count as errors."""
        if status not in RUN_STATUSES:
            raise ValueError(f"Unknown run status: {status}")
        self.last_run_at = _utcnow()
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = str(error) if error else None

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "interval_minutes": self.interval_minutes,
            "status": self.status,
            "is_enabled": self.is_enabled,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} every {self.interval_minutes}m [{self.status}]>"
