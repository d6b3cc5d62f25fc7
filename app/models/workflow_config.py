"""
Inspection Workflow Platform
Per-shop workflow override models.

Models:
    - WorkflowConfigOverride: one versioned override per save; only the
      newest version of a shop is active, earlier versions stay readable.
    - OverrideBusinessRule / OverrideTransition / OverrideDisabledNotification /
      OverrideValidationRule / OverrideTimeoutRule / OverrideEscalationRule:
      typed child rows, one per override fragment.
"""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel


def _utcnow():
    return datetime.now(timezone.utc)


class WorkflowConfigOverride(TenantModel):
    __tablename__ = "workflow_config_overrides"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "version", name="uq_workflow_override_tenant_version"),
        db.Index("ix_workflow_override_active", "tenant_id", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    version = db.Column(db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    deactivated_at = db.Column(db.DateTime(timezone=True))

    business_rules = db.relationship(
        "OverrideBusinessRule", cascade="all, delete-orphan", lazy="selectin",
        order_by="OverrideBusinessRule.id",
    )
    transitions = db.relationship(
        "OverrideTransition", cascade="all, delete-orphan", lazy="selectin",
        order_by="OverrideTransition.id",
    )
    disabled_notifications = db.relationship(
        "OverrideDisabledNotification", cascade="all, delete-orphan", lazy="selectin",
        order_by="OverrideDisabledNotification.id",
    )
    validation_rules = db.relationship(
        "OverrideValidationRule", cascade="all, delete-orphan", lazy="selectin",
        order_by="OverrideValidationRule.id",
    )
    timeout_rules = db.relationship(
        "OverrideTimeoutRule", cascade="all, delete-orphan", lazy="selectin",
        order_by="OverrideTimeoutRule.id",
    )
    escalation_rules = db.relationship(
        "OverrideEscalationRule", cascade="all, delete-orphan", lazy="selectin",
        order_by="OverrideEscalationRule.id",
    )

    def to_payload(self) -> dict:
        """Raw override payload, the shape ``override_from_dict`` parses."""
        return {
            "version": self.version,
            "business_rules": {r.key: r.value for r in self.business_rules},
            "extra_transitions": [t.to_payload() for t in self.transitions],
            "disabled_notifications": [n.trigger_event for n in self.disabled_notifications],
            "custom_validation_rules": [v.to_payload() for v in self.validation_rules],
            "custom_timeout_rules": [t.to_payload() for t in self.timeout_rules],
            "custom_escalation_rules": [e.to_payload() for e in self.escalation_rules],
        }

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "version": self.version,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "deactivated_at": self.deactivated_at.isoformat() if self.deactivated_at else None,
            "override": self.to_payload(),
        }

    def __repr__(self):
        state = "active" if self.is_active else "inactive"
        return f"<WorkflowConfigOverride tenant={self.tenant_id} v{self.version} [{state}]>"


class _OverrideChild(db.Model):
    __abstract__ = True

    override_id = db.Column(
        db.Integer, db.ForeignKey("workflow_config_overrides.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )


class OverrideBusinessRule(_OverrideChild):
    __tablename__ = "workflow_override_business_rules"
    __table_args__ = (
        db.UniqueConstraint("override_id", "key", name="uq_override_business_rule_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(80), nullable=False)
    value = db.Column(db.JSON)


class OverrideTransition(_OverrideChild):
    __tablename__ = "workflow_override_transitions"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(60))
    from_state = db.Column(db.String(30), nullable=False)
    to_state = db.Column(db.String(30), nullable=False)
    allowed_roles = db.Column(db.JSON, default=list)
    required_conditions = db.Column(db.JSON, default=list)
    optional_conditions = db.Column(db.JSON, default=list)
    validation_checks = db.Column(db.JSON, default=list)
    pre_actions = db.Column(db.JSON, default=list)
    post_actions = db.Column(db.JSON, default=list)
    auto_triggers = db.Column(db.JSON, default=list)
    history_action = db.Column(db.String(40))

    def to_payload(self):
        return {
            "name": self.name,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "allowed_roles": self.allowed_roles or [],
            "required_conditions": self.required_conditions or [],
            "optional_conditions": self.optional_conditions or [],
            "validation_checks": self.validation_checks or [],
            "pre_actions": self.pre_actions or [],
            "post_actions": self.post_actions or [],
            "auto_triggers": self.auto_triggers or [],
            "history_action": self.history_action,
        }


class OverrideDisabledNotification(_OverrideChild):
    __tablename__ = "workflow_override_disabled_notifications"

    id = db.Column(db.Integer, primary_key=True)
    trigger_event = db.Column(db.String(80), nullable=False)


class OverrideValidationRule(_OverrideChild):
    __tablename__ = "workflow_override_validation_rules"

    id = db.Column(db.Integer, primary_key=True)
    rule_name = db.Column(db.String(80), nullable=False)
    scope = db.Column(db.String(20), nullable=False)
    validation_logic = db.Column(db.String(60), nullable=False)
    severity = db.Column(db.String(20), nullable=False, default="error")
    conditions = db.Column(db.JSON, default=list)
    error_message = db.Column(db.Text)
    warning_message = db.Column(db.Text)
    params = db.Column(db.JSON, default=dict)

    def to_payload(self):
        return {
            "rule_name": self.rule_name,
            "scope": self.scope,
            "validation_logic": self.validation_logic,
            "severity": self.severity,
            "conditions": self.conditions or [],
            "error_message": self.error_message or "",
            "warning_message": self.warning_message or "",
            "params": self.params or {},
        }


class OverrideTimeoutRule(_OverrideChild):
    __tablename__ = "workflow_override_timeout_rules"

    id = db.Column(db.Integer, primary_key=True)
    state = db.Column(db.String(30), nullable=False)
    timeout_minutes = db.Column(db.Integer, nullable=False)
    escalation_action = db.Column(db.String(40))
    notify_before_minutes = db.Column(db.JSON, default=list)
    auto_action = db.Column(db.String(40))

    def to_payload(self):
        return {
            "state": self.state,
            "timeout_minutes": self.timeout_minutes,
            "escalation_action": self.escalation_action,
            "notify_before_minutes": self.notify_before_minutes or [],
            "auto_action": self.auto_action,
        }


class OverrideEscalationRule(_OverrideChild):
    __tablename__ = "workflow_override_escalation_rules"

    id = db.Column(db.Integer, primary_key=True)
    priority = db.Column(db.String(20), nullable=False)
    threshold_minutes = db.Column(db.Integer, nullable=False)
    escalate_to_role = db.Column(db.String(30), nullable=False)
    notify_immediately = db.Column(db.Boolean, default=False)

    def to_payload(self):
        return {
            "priority": self.priority,
            "threshold_minutes": self.threshold_minutes,
            "escalate_to_role": self.escalate_to_role,
            "notify_immediately": bool(self.notify_immediately),
        }


def build_override_rows(override_dict: dict) -> dict:
    """Child rows for a serialised TenantOverride (``rule_to_dict`` output)."""
    return {
        "business_rules": [
            OverrideBusinessRule(key=k, value=list(v) if isinstance(v, tuple) else v)
            for k, v in override_dict.get("business_rules", {}).items()
        ],
        "transitions": [
            OverrideTransition(**t) for t in override_dict.get("extra_transitions", [])
        ],
        "disabled_notifications": [
            OverrideDisabledNotification(trigger_event=e)
            for e in override_dict.get("disabled_notifications", [])
        ],
        "validation_rules": [
            OverrideValidationRule(**v) for v in override_dict.get("custom_validation_rules", [])
        ],
        "timeout_rules": [
            OverrideTimeoutRule(**t) for t in override_dict.get("custom_timeout_rules", [])
        ],
        "escalation_rules": [
            OverrideEscalationRule(**e) for e in override_dict.get("custom_escalation_rules", [])
        ],
    }
