"""
Inspection Workflow Platform
Approval workflow models.

Models:
    - ApprovalWorkflow: the manager-review record opened when an inspection
      is submitted for review. At most one ``pending`` row per inspection.
    - ApprovalHistory: append-only trail of every lifecycle edge and
      escalation (who, when, from/to state, comments, metadata).
    - TimeoutFiring: idempotency ledger for timeout warnings, timeout
      auto-actions and auto-triggers.
"""

from datetime import datetime, timezone

from sqlalchemy import event

from app.models import db
from app.models.audit import forbid_mutation
from app.models.base import TenantModel


WORKFLOW_STATUSES = {"pending", "approved", "rejected", "changes_requested"}
PRIORITIES = {"low", "normal", "high", "urgent"}


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class ApprovalWorkflow(TenantModel):
    __tablename__ = "approval_workflows"
    __table_args__ = (
        # One open review per inspection, enforced by the database as well.
        db.Index(
            "uq_approval_workflows_one_pending", "inspection_id",
            unique=True,
            sqlite_where=db.text("status = 'pending'"),
            postgresql_where=db.text("status = 'pending'"),
        ),
        db.Index("ix_approval_workflows_tenant_status_priority", "tenant_id", "status", "priority"),
    )

    id = db.Column(db.Integer, primary_key=True)
    inspection_id = db.Column(
        db.Integer, db.ForeignKey("inspections.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    submitted_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    status = db.Column(db.String(30), nullable=False, default="pending",
                       comment="pending | approved | rejected | changes_requested")
    assigned_to = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    priority = db.Column(db.String(20), nullable=False, default="normal",
                         comment="low | normal | high | urgent")

    approved_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    approved_at = db.Column(db.DateTime(timezone=True))
    rejected_at = db.Column(db.DateTime(timezone=True))
    rejection_reason = db.Column(db.Text)
    manager_comments = db.Column(db.Text)
    requested_changes = db.Column(db.JSON, default=list)

    # Set once by the escalation sweep, never cleared.
    escalated_at = db.Column(db.DateTime(timezone=True))
    escalated_to = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))

    # Manual review claim; suppresses auto-approve while fresh.
    review_started_at = db.Column(db.DateTime(timezone=True))
    review_started_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    inspection = db.relationship("Inspection")

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "inspection_id": self.inspection_id,
            "submitted_by": self.submitted_by,
            "submitted_at": _iso(self.submitted_at),
            "status": self.status,
            "assigned_to": self.assigned_to,
            "priority": self.priority,
            "approved_by": self.approved_by,
            "approved_at": _iso(self.approved_at),
            "rejected_at": _iso(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "manager_comments": self.manager_comments,
            "requested_changes": self.requested_changes or [],
            "escalated_at": _iso(self.escalated_at),
            "escalated_to": self.escalated_to,
            "review_started_at": _iso(self.review_started_at),
            "review_started_by": self.review_started_by,
        }

    def __repr__(self):
        return f"<ApprovalWorkflow {self.id}: inspection={self.inspection_id} [{self.status}/{self.priority}]>"


class ApprovalHistory(TenantModel):
    """Append-only: rows are inserted, never updated or deleted."""

    __tablename__ = "approval_history"
    __table_args__ = (
        db.Index("ix_approval_history_inspection_created", "inspection_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    inspection_id = db.Column(
        db.Integer, db.ForeignKey("inspections.id", ondelete="CASCADE"), nullable=False,
    )
    # NULL for edges taken before the first submission (no review record yet).
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("approval_workflows.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    # NULL = system principal
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    action = db.Column(db.String(40), nullable=False,
                       comment="started | submitted | approved | rejected | changes_requested | "
                               "resumed | sent_to_customer | completed | escalated | review_started | …")
    from_state = db.Column(db.String(30))
    to_state = db.Column(db.String(30))
    comments = db.Column(db.Text)
    details = db.Column("metadata", db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "inspection_id": self.inspection_id,
            "workflow_id": self.workflow_id,
            "actor_id": self.actor_id,
            "action": self.action,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "comments": self.comments,
            "metadata": self.details or {},
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ApprovalHistory {self.id}: {self.action} {self.from_state}->{self.to_state}>"


event.listen(ApprovalHistory, "before_update", forbid_mutation)
event.listen(ApprovalHistory, "before_delete", forbid_mutation)


class TimeoutFiring(TenantModel):
    """One row per (inspection, state, entry time, kind). A duplicate insert means "already fired"."""

    __tablename__ = "workflow_timeout_firings"
    __table_args__ = (
        db.UniqueConstraint(
            "inspection_id", "state", "state_entered_key", "kind",
            name="uq_timeout_firing",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    inspection_id = db.Column(
        db.Integer, db.ForeignKey("inspections.id", ondelete="CASCADE"), nullable=False,
    )
    state = db.Column(db.String(30), nullable=False)
    state_entered_key = db.Column(db.String(40), nullable=False,
                                  comment="UTC ISO timestamp of the state entry being timed")
    kind = db.Column(db.String(80), nullable=False,
                     comment="warning:<minutes> | escalation_action | auto_action | trigger:<edge>:<condition>")
    fired_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self):
        return f"<TimeoutFiring {self.inspection_id}/{self.state}/{self.kind}>"
