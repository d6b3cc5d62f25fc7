"""
Inspection Workflow Platform
Audit domain model.

Models:
    - AuditLog: append-only trail of configuration and bulk review events
      (per-shop workflow overrides, bulk approvals). Lifecycle edges of a
      single inspection go to ``approval_history`` (app.models.workflow).

Both tables share ``forbid_mutation``: once flushed, a row can be neither
updated nor deleted through the ORM.
"""

from datetime import UTC, datetime

from sqlalchemy import event

from app.models import db

AUDIT_ACTIONS = frozenset({
    "workflow_config.override_saved",
    "workflow_config.override_deactivated",
    "approval_workflow.bulk_approve",
})


class ImmutableRecordError(RuntimeError):
    """Raised when code tries to change or delete an append-only row."""


def forbid_mutation(mapper, connection, target):
    raise ImmutableRecordError(
        f"{type(target).__name__} rows are append-only (id={target.id})"
    )


class AuditLog(db.Model):
    """One row per audited action; ``changes`` holds what the action touched."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "occurred_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    entity_type = db.Column(db.String(30), nullable=False, comment="workflow_config | approval_workflow")
    entity_id = db.Column(db.String(36), nullable=False, comment="row id, or 'bulk'")
    action = db.Column(db.String(60), nullable=False)
    actor_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
        comment="NULL for system-initiated entries",
    )
    changes = db.Column(db.JSON, nullable=False, default=dict)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "changes": self.changes or {},
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


event.listen(AuditLog, "before_update", forbid_mutation)
event.listen(AuditLog, "before_delete", forbid_mutation)


def write_audit(
    action: str,
    entity_id,
    *,
    tenant_id: int | None = None,
    actor_user_id: int | None = None,
    changes: dict | None = None,
) -> AuditLog:
    """Append an audit row for *action* (``<entity_type>.<verb>``).

    Flushes only; the caller owns the transaction.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    log = AuditLog(
        tenant_id=tenant_id,
        entity_type=action.split(".", 1)[0],
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        changes=changes or {},
    )
    db.session.add(log)
    db.session.flush()
    return log
