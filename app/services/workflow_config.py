"""
Inspection Workflow — Config Resolver

Produces the effective rule set for a shop: the default configuration with
the shop's active override merged on top, validated, and cached.

    resolve_config(default, override)   pure merge
    validate_config(config)             structural + semantic checks
    WorkflowConfigService               cache-aside resolution and
                                        versioned override persistence

Merge semantics:
  - business rule scalars are replaced key by key
  - extra transitions are appended (a duplicate (from, to) edge fails validation)
  - disabled notification events are filtered out
  - custom validation rules replace a default of the same name, else append
  - timeout rules replace by state, escalation rules by priority, else append
"""

from __future__ import annotations

import dataclasses
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.core.exceptions import ConfigInvalid, ConflictError
from app.models import db
from app.models.audit import write_audit
from app.models.workflow_config import WorkflowConfigOverride, build_override_rows
from app.services.cache_service import ConfigCache
from app.services.workflow_conditions import TransitionContext, evaluate_condition, missing_evaluators
from app.services.workflow_rules import (
    CANONICAL_STATES,
    DEFAULT_WORKFLOW_CONFIG,
    AutoAction,
    InspectionState,
    Role,
    TenantOverride,
    ValidationScope,
    WorkflowConfig,
    config_from_dict,
    config_to_dict,
    override_from_dict,
    rule_to_dict,
)

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Merge
# ═════════════════════════════════════════════════════════════════════════════

def _replace_by(defaults: tuple, custom: tuple, key) -> tuple:
    merged = list(defaults)
    for rule in custom:
        idx = next((i for i, r in enumerate(merged) if key(r) == key(rule)), None)
        if idx is None:
            merged.append(rule)
        else:
            merged[idx] = rule
    return tuple(merged)


def resolve_config(default: WorkflowConfig, override: TenantOverride | None) -> WorkflowConfig:
    """Merge *override* over *default*. Neither input is modified."""
    if override is None:
        return default

    disabled = set(override.disabled_notifications)
    return WorkflowConfig(
        business_rules=dataclasses.replace(default.business_rules, **dict(override.business_rules)),
        transitions=default.transitions + tuple(override.extra_transitions),
        notifications=tuple(n for n in default.notifications if n.trigger_event not in disabled),
        validation_rules=_replace_by(
            default.validation_rules, override.custom_validation_rules, key=lambda r: r.rule_name,
        ),
        timeout_rules=_replace_by(
            default.timeout_rules, override.custom_timeout_rules, key=lambda r: r.state,
        ),
        escalation_rules=_replace_by(
            default.escalation_rules, override.custom_escalation_rules, key=lambda r: r.priority,
        ),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class ConfigValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"valid": self.valid, "errors": self.errors}


# Edges a timeout auto-action fires through the engine as the system principal.
_AUTO_ACTION_EDGES = {
    AutoAction.AUTO_APPROVE_IF_NO_CRITICAL: (InspectionState.PENDING_REVIEW, InspectionState.APPROVED),
    AutoAction.SEND_TO_CUSTOMER: (InspectionState.APPROVED, InspectionState.SENT_TO_CUSTOMER),
    AutoAction.COMPLETE: (InspectionState.SENT_TO_CUSTOMER, InspectionState.COMPLETED),
}

_POSITIVE_BUSINESS_RULES = (
    "max_inspection_duration_minutes",
    "max_in_progress_hours",
    "max_pending_review_hours",
    "lock_timeout_minutes",
    "max_odometer_jump",
)
_NON_NEGATIVE_BUSINESS_RULES = (
    "min_items_required",
    "require_manager_approval_threshold",
    "min_photos_per_critical_item",
    "max_estimate_without_approval",
    "min_cost_estimate",
)


def _reachable_from_draft(config: WorkflowConfig) -> set[InspectionState]:
    seen = {InspectionState.DRAFT}
    queue = deque([InspectionState.DRAFT])
    while queue:
        state = queue.popleft()
        for rule in config.transitions_from(state):
            if rule.to_state not in seen:
                seen.add(rule.to_state)
                queue.append(rule.to_state)
    return seen


def validate_config(config: WorkflowConfig) -> ConfigValidation:
    """Check that *config* is a usable lifecycle graph with sane rules."""
    errors: list[str] = []

    # ── Graph ────────────────────────────────────────────────────────────
    states = {r.from_state for r in config.transitions} | {r.to_state for r in config.transitions}
    for state in CANONICAL_STATES:
        if state not in states:
            errors.append(f"Missing required state: {state.value}")

    reachable = _reachable_from_draft(config)
    for state in CANONICAL_STATES:
        if state in states and state not in reachable:
            errors.append(f"State {state.value} is not reachable from draft")

    seen_edges = set()
    for rule in config.transitions:
        edge = f"{rule.from_state.value}->{rule.to_state.value}"
        if rule.key in seen_edges:
            errors.append(f"Duplicate transition {edge}")
        seen_edges.add(rule.key)
        if not rule.allowed_roles:
            errors.append(f"Transition {edge} must allow at least one role")
        for name in rule.validation_checks:
            if config.validation_rule(name) is None:
                errors.append(f"Transition {edge} names unknown validation check '{name}'")
        for trigger in rule.auto_triggers:
            if trigger.delay_minutes < 0:
                errors.append(f"Transition {edge} has a negative auto-trigger delay")
            if not trigger.requires_confirmation and Role.SYSTEM not in rule.allowed_roles:
                errors.append(f"Transition {edge} has an auto-trigger but does not allow the system role")

    # ── Timeouts & escalations ───────────────────────────────────────────
    seen_timeout_states = set()
    for rule in config.timeout_rules:
        if rule.state in seen_timeout_states:
            errors.append(f"Duplicate timeout rule for state {rule.state.value}")
        seen_timeout_states.add(rule.state)
        if rule.timeout_minutes <= 0:
            errors.append(f"Timeout for {rule.state.value} must be positive")
        for offset in rule.notify_before_minutes:
            if offset <= 0 or offset >= rule.timeout_minutes:
                errors.append(
                    f"Timeout warning offset {offset} for {rule.state.value} must be between 0 and the timeout"
                )
        edge = _AUTO_ACTION_EDGES.get(rule.auto_action)
        if edge is not None:
            target = config.transition_for(*edge)
            if target is None or Role.SYSTEM not in target.allowed_roles:
                errors.append(
                    f"Auto action {rule.auto_action.value} needs a {edge[0].value}->{edge[1].value} "
                    "transition that allows the system role"
                )

    review_exits = config.transitions_from(InspectionState.PENDING_REVIEW)
    seen_priorities = set()
    for rule in config.escalation_rules:
        if rule.priority in seen_priorities:
            errors.append(f"Duplicate escalation rule for priority {rule.priority.value}")
        seen_priorities.add(rule.priority)
        if rule.threshold_minutes <= 0:
            errors.append(f"Escalation threshold for {rule.priority.value} must be positive")
        if rule.escalate_to_role == Role.SYSTEM:
            errors.append(f"Escalation for {rule.priority.value} cannot target the system role")
        for exit_rule in review_exits:
            if rule.escalate_to_role not in exit_rule.allowed_roles:
                errors.append(
                    f"Escalation for {rule.priority.value} targets {rule.escalate_to_role.value}, "
                    f"who may not take {exit_rule.name} from pending_review"
                )

    # ── Business rules ───────────────────────────────────────────────────
    br = config.business_rules
    for name in _POSITIVE_BUSINESS_RULES:
        if getattr(br, name) <= 0:
            errors.append(f"Business rule {name} must be positive")
    for name in _NON_NEGATIVE_BUSINESS_RULES:
        if getattr(br, name) < 0:
            errors.append(f"Business rule {name} cannot be negative")
    if br.min_cost_estimate > br.max_cost_estimate:
        errors.append("Business rule min_cost_estimate exceeds max_cost_estimate")

    # ── Evaluators ───────────────────────────────────────────────────────
    used = set()
    for rule in config.transitions:
        used |= {f"condition:{c.value}" for c in rule.required_conditions + rule.optional_conditions}
        used |= {f"condition:{t.condition.value}" for t in rule.auto_triggers}
    for rule in config.validation_rules:
        used |= {f"condition:{c.value}" for c in rule.conditions}
        used.add(f"validation_logic:{rule.validation_logic.value}")
    for rule in config.notifications:
        used |= {f"condition:{c.value}" for c in rule.conditions}
    for name in sorted(used & set(missing_evaluators())):
        errors.append(f"No evaluator registered for {name}")

    return ConfigValidation(valid=not errors, errors=errors)


# ═════════════════════════════════════════════════════════════════════════════
# Service
# ═════════════════════════════════════════════════════════════════════════════

def _active_override_row(tenant_id: int) -> WorkflowConfigOverride | None:
    return db.session.execute(
        select(WorkflowConfigOverride).where(
            WorkflowConfigOverride.tenant_id == tenant_id,
            WorkflowConfigOverride.is_active.is_(True),
        )
    ).scalar_one_or_none()


class WorkflowConfigService:
    """Resolves and persists per-shop workflow configuration."""

    def __init__(self, cache: ConfigCache | None = None, default: WorkflowConfig = DEFAULT_WORKFLOW_CONFIG):
        self.cache = cache if cache is not None else ConfigCache()
        self.default = default

    # ── Resolution ───────────────────────────────────────────────────────

    def resolve(self, tenant_id: int) -> WorkflowConfig:
        """Effective configuration for *tenant_id* (cache-aside)."""
        cached = self.cache.get(tenant_id)
        if cached is not None:
            try:
                return config_from_dict(cached)
            except ConfigInvalid:
                logger.warning("Discarding unreadable cached config for tenant %s", tenant_id,
                               extra={"tenant_id": tenant_id})
                self.cache.invalidate(tenant_id)

        config = resolve_config(self.default, self.get_override(tenant_id))
        self.cache.set(tenant_id, config_to_dict(config))
        return config

    def get_override(self, tenant_id: int) -> TenantOverride | None:
        row = _active_override_row(tenant_id)
        if row is None:
            return None
        return override_from_dict(tenant_id, row.to_payload())

    # ── Persistence ──────────────────────────────────────────────────────

    def save_override(
        self,
        tenant_id: int,
        data: dict,
        *,
        actor_id: int | None = None,
        notes: str | None = None,
    ) -> WorkflowConfigOverride:
        """Validate and store *data* as the shop's new active override version.

        Raises:
            ConfigInvalid: unknown identifiers, or a merged config that fails validation.
            ConflictError: another save for the same shop won the version race.
        """
        override = override_from_dict(tenant_id, data)
        check = validate_config(resolve_config(self.default, override))
        if not check.valid:
            raise ConfigInvalid(check.errors)

        now = datetime.now(timezone.utc)
        try:
            current = _active_override_row(tenant_id)
            last_version = db.session.execute(
                select(func.max(WorkflowConfigOverride.version))
                .where(WorkflowConfigOverride.tenant_id == tenant_id)
            ).scalar()
            version = (last_version or 0) + 1

            if current is not None:
                current.is_active = False
                current.deactivated_at = now
                db.session.flush()

            row = WorkflowConfigOverride(
                tenant_id=tenant_id,
                version=version,
                is_active=True,
                created_by=actor_id,
                notes=notes,
                **build_override_rows(rule_to_dict(override)),
            )
            db.session.add(row)
            db.session.flush()

            write_audit(
                "workflow_config.override_saved",
                row.id,
                tenant_id=tenant_id,
                actor_user_id=actor_id,
                changes={
                    "version": version,
                    "previous_version": current.version if current else None,
                    "business_rules": sorted(override.business_rules),
                    "extra_transitions": len(override.extra_transitions),
                    "disabled_notifications": list(override.disabled_notifications),
                },
            )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError("WorkflowConfigOverride", "version", str(tenant_id))
        except SQLAlchemyError:
            db.session.rollback()
            raise

        self.cache.invalidate(tenant_id)
        logger.info("Saved workflow override v%d for tenant %s", version, tenant_id,
                    extra={"tenant_id": tenant_id, "event_type": "workflow_config.override_saved"})
        return row

    def deactivate_override(self, tenant_id: int, *, actor_id: int | None = None) -> bool:
        """Fall back to the default configuration. Returns False if nothing was active."""
        row = _active_override_row(tenant_id)
        if row is None:
            return False
        try:
            row.is_active = False
            row.deactivated_at = datetime.now(timezone.utc)
            write_audit(
                "workflow_config.override_deactivated",
                row.id,
                tenant_id=tenant_id,
                actor_user_id=actor_id,
                changes={"version": row.version},
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        self.cache.invalidate(tenant_id)
        logger.info("Deactivated workflow override v%d for tenant %s", row.version, tenant_id,
                    extra={"tenant_id": tenant_id, "event_type": "workflow_config.override_deactivated"})
        return True

    def list_versions(self, tenant_id: int) -> list[dict]:
        rows = db.session.execute(
            select(WorkflowConfigOverride)
            .where(WorkflowConfigOverride.tenant_id == tenant_id)
            .order_by(WorkflowConfigOverride.version.desc())
        ).scalars().all()
        return [r.to_dict() for r in rows]

    # ── Lookups ──────────────────────────────────────────────────────────

    def get_valid_transitions(self, from_state, role, tenant_id: int):
        """Transition rules leaving *from_state* that *role* may take."""
        role = Role(role)
        config = self.resolve(tenant_id)
        return [r for r in config.transitions_from(from_state) if role in r.allowed_roles]

    def get_notification_rules(self, event: str, ctx: TransitionContext, tenant_id: int):
        """Enabled notification rules for *event* whose conditions hold in *ctx*."""
        config = self.resolve(tenant_id)
        return [
            n for n in config.notification_rules_for(event)
            if all(evaluate_condition(c, ctx) for c in n.conditions)
        ]

    def get_validation_rules_for_scope(self, scope, ctx: TransitionContext, tenant_id: int):
        """Rules of *scope* that would run for *ctx* (item scope: for at least one item)."""
        scope = ValidationScope(scope)
        config = self.resolve(tenant_id)
        result = []
        for rule in config.validation_rules:
            if rule.scope != scope:
                continue
            if scope == ValidationScope.ITEM and ctx.item is None:
                targets = [ctx.for_item(i) for i in ctx.items]
            else:
                targets = [ctx]
            if any(all(evaluate_condition(c, t) for c in rule.conditions) for t in targets):
                result.append(rule)
        return result

    def get_timeout_rule(self, state, tenant_id: int):
        return self.resolve(tenant_id).timeout_rule_for(state)
