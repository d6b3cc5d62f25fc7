"""
Inspection Workflow — Condition & Check Registry

Every ``Condition`` member has a typed evaluator ``fn(ctx) -> bool`` and every
``ValidationLogic`` member a check ``fn(ctx, rule) -> dict | None`` (the
details of the violation, or None when the check passes). Both registries are
filled at import time with decorators, the same way scheduled jobs are.

The context is built by the transition engine from the inspection row, its
items, the open review record and the caller payload; item-scope checks get
a copy of it with ``item`` set.

Usage:
    from app.services.workflow_conditions import evaluate_condition

    if evaluate_condition(Condition.HAS_ITEMS, ctx):
        ...
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from app.core.exceptions import ConfigInvalid
from app.services.workflow_rules import (
    BusinessRules,
    Condition,
    InspectionState,
    Role,
    ValidationLogic,
    ValidationRule,
)

CRITICAL = "needs_immediate"


# ═══════════════════════════════════════════════════════════════════════════
#  Context
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AuthorizationContext:
    """Who is asking. ``user_id`` is None for the system principal."""
    user_id: int | None
    role: Role
    tenant_id: int

    @classmethod
    def system(cls, tenant_id: int) -> "AuthorizationContext":
        return cls(user_id=None, role=Role.SYSTEM, tenant_id=tenant_id)

    @property
    def is_system(self) -> bool:
        return self.role == Role.SYSTEM


@dataclass(frozen=True)
class TransitionContext:
    tenant_id: int
    inspection: dict[str, Any]
    items: tuple[dict[str, Any], ...]
    business_rules: BusinessRules
    principal: AuthorizationContext | None = None
    workflow: dict[str, Any] | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    from_state: InspectionState | None = None
    to_state: InspectionState | None = None
    item: dict[str, Any] | None = None
    now: datetime | None = None

    def for_item(self, item: dict[str, Any]) -> "TransitionContext":
        return dataclasses.replace(self, item=item)

    @property
    def critical_items(self) -> list[dict[str, Any]]:
        return [i for i in self.items if i.get("condition") == CRITICAL]

    def minutes_since(self, value) -> float | None:
        if value is None:
            return None
        now = self.now or datetime.now(timezone.utc)
        return (now - as_utc(value)).total_seconds() / 60


def as_utc(value: datetime | str) -> datetime:
    """Aware UTC datetime from a column value or a snapshot's ISO string.

    SQLite returns naive datetimes; they are treated as UTC.
    """
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _text(value) -> bool:
    return isinstance(value, str) and bool(value.strip())


# ═══════════════════════════════════════════════════════════════════════════
#  Registries
# ═══════════════════════════════════════════════════════════════════════════

ConditionFn = Callable[[TransitionContext], bool]
CheckFn = Callable[[TransitionContext, ValidationRule], "dict | None"]

_condition_registry: dict[Condition, ConditionFn] = {}
_check_registry: dict[ValidationLogic, CheckFn] = {}


def register_condition(condition: Condition):
    """Decorator to register the evaluator of a named condition."""
    def decorator(fn: ConditionFn) -> ConditionFn:
        _condition_registry[Condition(condition)] = fn
        return fn
    return decorator


def register_check(logic: ValidationLogic):
    """Decorator to register the check behind a validation logic name."""
    def decorator(fn: CheckFn) -> CheckFn:
        _check_registry[ValidationLogic(logic)] = fn
        return fn
    return decorator


def evaluate_condition(condition: Condition, ctx: TransitionContext) -> bool:
    fn = _condition_registry.get(condition)
    if fn is None:
        raise ConfigInvalid([f"no evaluator registered for condition '{condition.value}'"])
    return bool(fn(ctx))


def run_check(rule: ValidationRule, ctx: TransitionContext) -> dict | None:
    fn = _check_registry.get(rule.validation_logic)
    if fn is None:
        raise ConfigInvalid([f"no check registered for logic '{rule.validation_logic.value}'"])
    return fn(ctx, rule)


def missing_evaluators() -> list[str]:
    """Enum members that have no registered evaluator."""
    missing = [f"condition:{c.value}" for c in Condition if c not in _condition_registry]
    missing += [f"validation_logic:{v.value}" for v in ValidationLogic if v not in _check_registry]
    return missing


# ═══════════════════════════════════════════════════════════════════════════
#  Conditions
# ═══════════════════════════════════════════════════════════════════════════

@register_condition(Condition.HAS_ITEMS)
def _has_items(ctx):
    return len(ctx.items) > 0


@register_condition(Condition.ALL_ITEMS_ASSESSED)
def _all_items_assessed(ctx):
    if not ctx.business_rules.require_all_items_assessed:
        return True
    return bool(ctx.items) and all(i.get("condition") for i in ctx.items)


@register_condition(Condition.HAS_ASSIGNED_TECHNICIAN)
def _has_assigned_technician(ctx):
    return ctx.inspection.get("assigned_technician_id") is not None


@register_condition(Condition.TECHNICIAN_WANTS_NOTIFICATIONS)
def _technician_wants_notifications(ctx):
    # Nobody to notify until a technician is assigned.
    return ctx.inspection.get("assigned_technician_id") is not None


@register_condition(Condition.HAS_PHOTOS)
def _has_photos(ctx):
    return any((i.get("photo_count") or 0) > 0 for i in ctx.items)


@register_condition(Condition.HAS_VOICE_NOTES)
def _has_voice_notes(ctx):
    return any((i.get("voice_note_count") or 0) > 0 for i in ctx.items)


@register_condition(Condition.HAS_CRITICAL_ITEMS)
def _has_critical_items(ctx):
    return bool(ctx.critical_items)


@register_condition(Condition.MANAGER_REVIEW_NOTES)
def _manager_review_notes(ctx):
    return _text(ctx.payload.get("comments"))


@register_condition(Condition.REVISION_NOTES)
def _revision_notes(ctx):
    return _text(ctx.payload.get("comments"))


@register_condition(Condition.REJECTION_REASON)
def _rejection_reason(ctx):
    return _text(ctx.payload.get("reason"))


@register_condition(Condition.REQUESTED_CHANGES)
def _requested_changes(ctx):
    changes = ctx.payload.get("requested_changes")
    return isinstance(changes, (list, tuple)) and any(_text(c) for c in changes)


@register_condition(Condition.CUSTOMER_CONTACT_INFO)
def _customer_contact_info(ctx):
    return _text(ctx.inspection.get("customer_phone")) or _text(ctx.inspection.get("customer_email"))


@register_condition(Condition.CUSTOMER_VIEWED)
@register_condition(Condition.CUSTOMER_VIEWED_REPORT)
def _customer_viewed(ctx):
    return ctx.inspection.get("customer_viewed_at") is not None


@register_condition(Condition.NO_CRITICAL_ITEMS_AND_AUTO_APPROVE_ENABLED)
def _no_critical_and_auto_approve(ctx):
    return ctx.business_rules.auto_approve_enabled and not ctx.critical_items


@register_condition(Condition.INSPECTION_DURATION_EXCEEDED)
def _inspection_duration_exceeded(ctx):
    elapsed = ctx.minutes_since(ctx.inspection.get("started_at"))
    return elapsed is not None and elapsed >= ctx.business_rules.max_inspection_duration_minutes


@register_condition(Condition.INSPECTION_IN_PROGRESS_OVER_LIMIT)
def _in_progress_over_limit(ctx):
    if ctx.inspection.get("status") != InspectionState.IN_PROGRESS.value:
        return False
    elapsed = ctx.minutes_since(ctx.inspection.get("state_entered_at"))
    return elapsed is not None and elapsed >= ctx.business_rules.max_in_progress_hours * 60


@register_condition(Condition.AUTO_NOTIFY_ENABLED)
def _auto_notify_enabled(ctx):
    return ctx.business_rules.auto_notify_customer


@register_condition(Condition.AUTO_COMPLETE_AFTER_DAYS)
def _auto_complete_after_days(ctx):
    return ctx.business_rules.auto_transition_on_complete


@register_condition(Condition.STATE_TRANSITION_TO_PENDING_REVIEW)
def _to_pending_review(ctx):
    return ctx.to_state == InspectionState.PENDING_REVIEW


@register_condition(Condition.CONDITION_IS_NEEDS_IMMEDIATE)
def _item_is_critical(ctx):
    return ctx.item is not None and ctx.item.get("condition") == CRITICAL


@register_condition(Condition.HAS_COST_ESTIMATE)
def _item_has_cost_estimate(ctx):
    return ctx.item is not None and ctx.item.get("cost_estimate") is not None


@register_condition(Condition.HAS_MEASUREMENTS)
def _item_has_measurements(ctx):
    return ctx.item is not None and ctx.item.get("measurement_value") is not None


@register_condition(Condition.HAS_ODOMETER_READING)
def _has_odometer_reading(ctx):
    return ctx.inspection.get("odometer_reading") is not None


# ═══════════════════════════════════════════════════════════════════════════
#  Validation checks
# ═══════════════════════════════════════════════════════════════════════════

@register_check(ValidationLogic.CHECK_MANDATORY_CATEGORIES_EXIST)
def _check_mandatory_categories(ctx, rule):
    required = rule.params.get("categories") or ctx.business_rules.mandatory_categories
    present = {(i.get("category") or "").strip().lower() for i in ctx.items}
    missing = [c for c in required if c.strip().lower() not in present]
    if missing:
        return {"missing_categories": ", ".join(missing)}
    return None


@register_check(ValidationLogic.CHECK_MINIMUM_ITEM_COUNT)
def _check_minimum_item_count(ctx, rule):
    minimum = rule.params.get("min_items", ctx.business_rules.min_items_required)
    if len(ctx.items) < minimum:
        return {"min_items": minimum, "item_count": len(ctx.items)}
    return None


@register_check(ValidationLogic.CHECK_ALL_ITEMS_HAVE_CONDITION)
def _check_all_items_have_condition(ctx, rule):
    if not ctx.business_rules.require_all_items_assessed:
        return None
    unassessed = [i for i in ctx.items if not i.get("condition")]
    if unassessed:
        return {"unassessed_count": len(unassessed)}
    return None


def _documentation_gaps(item: dict, br: BusinessRules) -> list[str]:
    gaps = []
    if (item.get("photo_count") or 0) < br.min_photos_per_critical_item:
        gaps.append("photos")
    if not _text(item.get("notes")):
        gaps.append("notes")
    if br.require_voice_notes_for_critical and not item.get("voice_note_count"):
        gaps.append("voice_notes")
    return gaps


@register_check(ValidationLogic.CHECK_CRITICAL_ITEM_DOCUMENTATION)
def _check_critical_item_documentation(ctx, rule):
    if ctx.item is None:
        return None
    gaps = _documentation_gaps(ctx.item, ctx.business_rules)
    if gaps:
        return {"component": ctx.item.get("component"), "missing": ", ".join(gaps)}
    return None


@register_check(ValidationLogic.CHECK_COST_ESTIMATE_RANGE)
def _check_cost_estimate_range(ctx, rule):
    if ctx.item is None or ctx.item.get("cost_estimate") is None:
        return None
    cost = float(ctx.item["cost_estimate"])
    low = rule.params.get("min", ctx.business_rules.min_cost_estimate)
    high = rule.params.get("max", ctx.business_rules.max_cost_estimate)
    if cost < low or cost > high:
        return {"cost_estimate": cost, "component": ctx.item.get("component"), "min": low, "max": high}
    return None


@register_check(ValidationLogic.VALIDATE_MEASUREMENT_RANGES)
def _check_measurement_range(ctx, rule):
    if ctx.item is None or ctx.item.get("measurement_value") is None:
        return None
    value = float(ctx.item["measurement_value"])
    low = ctx.item.get("measurement_min")
    high = ctx.item.get("measurement_max")
    if (low is not None and value < low) or (high is not None and value > high):
        return {"measurement_value": value, "component": ctx.item.get("component")}
    return None


@register_check(ValidationLogic.CHECK_ODOMETER_PROGRESSION)
def _check_odometer_progression(ctx, rule):
    current = ctx.inspection.get("odometer_reading")
    previous = ctx.inspection.get("previous_odometer_reading")
    if current is None or previous is None:
        return None
    max_jump = rule.params.get("max_jump", ctx.business_rules.max_odometer_jump)
    if current < previous or current - previous > max_jump:
        return {"odometer_reading": current, "previous_odometer_reading": previous}
    return None


@register_check(ValidationLogic.CHECK_VEHICLE_AVAILABLE)
def _check_vehicle_available(ctx, rule):
    if ctx.inspection.get("vehicle_available") is False:
        return {"inspection_id": ctx.inspection.get("id")}
    return None


@register_check(ValidationLogic.CHECK_NO_BLOCKING_CRITICAL_ITEMS)
def _check_no_blocking_critical_items(ctx, rule):
    br = ctx.business_rules
    blocking = []
    for item in ctx.critical_items:
        gaps = _documentation_gaps(item, br)
        if br.require_cost_estimates and item.get("cost_estimate") is None:
            gaps.append("cost_estimate")
        if gaps:
            blocking.append(item.get("component") or f"item {item.get('id')}")
    if blocking:
        return {"blocking_count": len(blocking), "components": ", ".join(blocking)}
    return None


@register_check(ValidationLogic.CHECK_NOT_SELF_APPROVAL)
def _check_not_self_approval(ctx, rule):
    if ctx.business_rules.allow_self_approval or ctx.workflow is None or ctx.principal is None:
        return None
    user_id = ctx.principal.user_id
    if user_id is not None and ctx.workflow.get("submitted_by") == user_id:
        return {"user_id": user_id}
    return None


@register_check(ValidationLogic.CHECK_CUSTOMER_PHONE_PRESENT)
def _check_customer_phone_present(ctx, rule):
    if not _text(ctx.inspection.get("customer_phone")):
        return {"customer_email": ctx.inspection.get("customer_email")}
    return None
