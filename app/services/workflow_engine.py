"""
Inspection Workflow — Transition Engine

Moves an inspection along a guarded edge of its shop's lifecycle graph:

    1. load a snapshot, resolve the shop's effective configuration
    2. find the transition rule for (current state, target)  → InvalidTransition
    3. authorize the principal's role                         → Forbidden
    4. evaluate required conditions                           → PreconditionFailed
    5. run validation (errors block, warnings are returned)   → ValidationFailed
    6. in one transaction: re-read the inspection, compare state + version
       with the snapshot (→ ConcurrentModification), repeat 2–5 on the fresh
       row, run pre-actions, write the new state with a version-guarded
       UPDATE, open/close the review record, append history, commit
    7. after commit, signal post-actions (notifications, registered hooks);
       failures there are logged and never undo the transition

Usage:
    engine = WorkflowEngine(WorkflowStore(), WorkflowConfigService(cache))
    result = engine.attempt_transition(
        inspection_id, "pending_review",
        AuthorizationContext(user_id=7, role=Role.MECHANIC, tenant_id=1),
    )
    if not result.ok:
        print(result.error.code)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    AlreadyPending,
    ConcurrentModification,
    Forbidden,
    InvalidTransition,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
    ValidationFailed,
    WorkflowError,
)
from app.models.inspection import Inspection
from app.models.workflow import ApprovalWorkflow
from app.services.notification import WorkflowNotifier, events_for_action
from app.services.workflow_conditions import (
    CRITICAL,
    AuthorizationContext,
    TransitionContext,
    as_utc,
    evaluate_condition,
)
from app.services.workflow_config import WorkflowConfigService
from app.services.workflow_rules import (
    REVIEW_OUTCOMES,
    REVIEWER_ROLES,
    URGENCY_TO_PRIORITY,
    Action,
    EscalationRule,
    InspectionState,
    Priority,
    Severity,
    TransitionRule,
    WorkflowConfig,
    WorkflowStatus,
)
from app.services.workflow_store import InspectionSnapshot, WorkflowStore
from app.services.workflow_validation import ValidationViolation, evaluate_transition

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Result & hook payloads
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class TransitionResult:
    ok: bool
    inspection: dict | None = None
    workflow: dict | None = None
    warnings: list[ValidationViolation] = field(default_factory=list)
    error: WorkflowError | NotFoundError | None = None
    history_entry: dict | None = None

    def to_dict(self) -> dict:
        d = {
            "ok": self.ok,
            "inspection": self.inspection,
            "workflow": self.workflow,
            "warnings": [w.to_dict() for w in self.warnings],
            "history_entry": self.history_entry,
        }
        if self.error is not None:
            d["error"] = (
                self.error.to_dict() if isinstance(self.error, WorkflowError)
                else {"code": "not_found", "message": str(self.error)}
            )
        return d


@dataclass
class ActionContext:
    """Handed to pre-action hooks inside the transaction."""
    action: Action
    rule: TransitionRule
    inspection: Inspection
    ctx: TransitionContext
    config: WorkflowConfig
    now: datetime
    details: dict[str, Any]


@dataclass(frozen=True)
class PostActionEvent:
    """Handed to post-action hooks after commit."""
    action: Action
    rule: TransitionRule
    ctx: TransitionContext
    config: WorkflowConfig
    history_entry: dict


PreHook = Callable[[ActionContext], None]
PostHook = Callable[[PostActionEvent], None]


# ═════════════════════════════════════════════════════════════════════════════
# Built-in pre-actions
# ═════════════════════════════════════════════════════════════════════════════

def compute_urgency(items) -> str:
    conditions = [i.get("condition") for i in items]
    if CRITICAL in conditions:
        return "critical"
    attention = conditions.count("needs_attention")
    if attention >= 3:
        return "high"
    if attention:
        return "medium"
    return "low"


def _start_timer(ac: ActionContext) -> None:
    if ac.inspection.started_at is None:
        ac.inspection.started_at = ac.now


def _calculate_urgency(ac: ActionContext) -> None:
    if ac.config.business_rules.auto_calculate_urgency:
        ac.inspection.urgency_level = compute_urgency(ac.ctx.items)
        ac.details["urgency_level"] = ac.inspection.urgency_level


def _generate_summary(ac: ActionContext) -> None:
    by_condition: dict[str, int] = defaultdict(int)
    for item in ac.ctx.items:
        by_condition[item.get("condition") or "unassessed"] += 1
    ac.inspection.summary = {
        "item_count": len(ac.ctx.items),
        "by_condition": dict(by_condition),
        "critical_components": [i.get("component") for i in ac.ctx.critical_items],
        "estimated_total": round(sum(i.get("cost_estimate") or 0 for i in ac.ctx.items), 2),
    }


def _log_rejection(ac: ActionContext) -> None:
    ac.inspection.rejection_reason = ac.ctx.payload.get("reason")
    ac.details["rejection_reason"] = ac.inspection.rejection_reason


def _clear_rejection(ac: ActionContext) -> None:
    ac.inspection.rejection_reason = None


def _record_completion(ac: ActionContext) -> None:
    ac.inspection.completed_at = ac.now


_BUILTIN_PRE_ACTIONS: dict[Action, PreHook] = {
    Action.START_TIMER: _start_timer,
    Action.CALCULATE_URGENCY: _calculate_urgency,
    Action.GENERATE_SUMMARY: _generate_summary,
    Action.LOG_REJECTION: _log_rejection,
    Action.CLEAR_REJECTION: _clear_rejection,
    Action.RECORD_COMPLETION: _record_completion,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Engine
# ═════════════════════════════════════════════════════════════════════════════

class WorkflowEngine:
    def __init__(
        self,
        store: WorkflowStore,
        config_service: WorkflowConfigService,
        notifier: WorkflowNotifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.config_service = config_service
        self.notifier = notifier or WorkflowNotifier(users_with_role=self._user_ids_with_role)
        self.clock = clock or _utcnow
        self._pre_hooks: dict[Action, list[PreHook]] = defaultdict(list)
        self._post_hooks: dict[Action, list[PostHook]] = defaultdict(list)
        for action, fn in _BUILTIN_PRE_ACTIONS.items():
            self._pre_hooks[action].append(fn)

    def _user_ids_with_role(self, tenant_id, role):
        return [u.id for u in self.store.active_users_with_role(tenant_id, role.value)]

    # ── Hooks ────────────────────────────────────────────────────────────

    def register_pre_action(self, action: Action, fn: PreHook) -> PreHook:
        """Run *fn* inside the transaction whenever a transition lists *action*.

        An exception from *fn* rolls the transition back.
        """
        self._pre_hooks[Action(action)].append(fn)
        return fn

    def register_post_action(self, action: Action, fn: PostHook) -> PostHook:
        """Run *fn* after commit whenever a transition lists *action*. Failures are logged."""
        self._post_hooks[Action(action)].append(fn)
        return fn

    # ── Context ──────────────────────────────────────────────────────────

    def build_context(
        self,
        snapshot: InspectionSnapshot,
        config: WorkflowConfig,
        principal: AuthorizationContext | None = None,
        to_state: InspectionState | None = None,
        payload: dict | None = None,
    ) -> TransitionContext:
        return TransitionContext(
            tenant_id=snapshot.tenant_id,
            inspection=snapshot.inspection,
            items=snapshot.items,
            business_rules=config.business_rules,
            principal=principal,
            workflow=snapshot.workflow,
            payload=payload or {},
            from_state=InspectionState(snapshot.status),
            to_state=to_state,
            now=self.clock(),
        )

    def _load(self, inspection_id: int, principal: AuthorizationContext) -> InspectionSnapshot:
        snapshot = self.store.load_inspection(inspection_id)
        # Cross-tenant access looks exactly like a missing record.
        if snapshot is None or snapshot.tenant_id != principal.tenant_id:
            raise NotFoundError(resource="Inspection", resource_id=inspection_id)
        return snapshot

    def _check(
        self,
        snapshot: InspectionSnapshot,
        to_state: InspectionState,
        principal: AuthorizationContext,
        payload: dict,
        config: WorkflowConfig,
    ) -> tuple[TransitionRule, TransitionContext, list[ValidationViolation]]:
        """Steps 2–5. Returns the rule, the context and advisory findings."""
        rule = config.transition_for(snapshot.status, to_state)
        if rule is None:
            raise InvalidTransition(snapshot.status, to_state.value)
        if principal.role not in rule.allowed_roles:
            raise Forbidden(principal.role.value, snapshot.status, to_state.value)

        ctx = self.build_context(snapshot, config, principal, to_state, payload)
        for condition in rule.required_conditions:
            if not evaluate_condition(condition, ctx):
                raise PreconditionFailed(condition.value)

        outcome = evaluate_transition(rule, ctx, config)
        if outcome.errors:
            raise ValidationFailed(outcome.errors)

        warnings = list(outcome.advisories)
        for condition in rule.optional_conditions:
            if not evaluate_condition(condition, ctx):
                warnings.append(ValidationViolation(
                    rule_name=condition.value,
                    severity=Severity.WARNING,
                    message=f"Recommended condition '{condition.value}' is not met",
                ))
        return rule, ctx, warnings

    # ── Transitions ──────────────────────────────────────────────────────

    def attempt_transition(
        self,
        inspection_id: int,
        to_state,
        principal: AuthorizationContext,
        payload: dict | None = None,
    ) -> TransitionResult:
        """Try to move the inspection to *to_state*. Workflow errors come back in the result.

        Storage errors other than a lost version race propagate after rollback.
        """
        try:
            return self._transition(inspection_id, to_state, principal, payload or {})
        except (WorkflowError, NotFoundError) as exc:
            logger.info(
                "Transition of inspection %s to %s refused: %s", inspection_id, to_state, exc,
                extra={"tenant_id": principal.tenant_id, "inspection_id": inspection_id,
                       "event_type": getattr(exc, "code", "not_found")},
            )
            return TransitionResult(ok=False, error=exc)

    def _transition(self, inspection_id, to_state, principal, payload) -> TransitionResult:
        snapshot = self._load(inspection_id, principal)
        try:
            to_state = InspectionState(to_state)
        except ValueError:
            raise InvalidTransition(snapshot.status, str(to_state))
        config = self.config_service.resolve(principal.tenant_id)
        self._check(snapshot, to_state, principal, payload, config)

        now = self.clock()
        try:
            row = self.store.lock_inspection(inspection_id)
            if row is None or row.status != snapshot.status or row.version != snapshot.version:
                raise ConcurrentModification(inspection_id)

            fresh = self.store.snapshot_of(row)
            rule, ctx, warnings = self._check(fresh, to_state, principal, payload, config)

            details: dict[str, Any] = {}
            if principal.is_system:
                details["auto"] = True
                if payload.get("trigger"):
                    details["trigger"] = payload["trigger"]
            for action in rule.pre_actions:
                for hook in self._pre_hooks.get(action, ()):
                    hook(ActionContext(action, rule, row, ctx, config, now, details))

            workflow = self._apply_review_effects(row, rule, principal, payload, now)

            from_state = row.status
            row.status = to_state.value
            row.state_entered_at = now
            self.store.flush()   # version-guarded UPDATE

            entry = self.store.append_history(
                tenant_id=row.tenant_id,
                inspection_id=row.id,
                workflow_id=workflow.id if workflow else None,
                actor_id=principal.user_id,
                action=rule.audit_action,
                from_state=from_state,
                to_state=to_state.value,
                comments=payload.get("comments") or payload.get("reason"),
                details=details,
                created_at=now,
            )
            self.store.commit()
        except StaleDataError:
            self.store.rollback()
            raise ConcurrentModification(inspection_id)
        except IntegrityError:
            self.store.rollback()
            if to_state == InspectionState.PENDING_REVIEW:
                raise AlreadyPending(inspection_id)
            raise
        except Exception:
            self.store.rollback()
            raise

        after = self.store.load_inspection(inspection_id)
        result = TransitionResult(
            ok=True,
            inspection=after.inspection,
            workflow=after.workflow,
            warnings=warnings,
            history_entry=entry.to_dict(),
        )
        logger.info(
            "Inspection %s: %s -> %s (%s)", inspection_id, from_state, to_state.value, rule.audit_action,
            extra={"tenant_id": principal.tenant_id, "inspection_id": inspection_id,
                   "workflow_id": result.history_entry["workflow_id"], "event_type": rule.audit_action},
        )
        post_ctx = self.build_context(after, config, principal, to_state, payload)
        self._signal_post_actions(rule, post_ctx, config, result.history_entry)
        return result

    def _apply_review_effects(
        self,
        row: Inspection,
        rule: TransitionRule,
        principal: AuthorizationContext,
        payload: dict,
        now: datetime,
    ) -> ApprovalWorkflow | None:
        """Open or close the review record. Returns the workflow the history entry belongs to."""
        if rule.to_state == InspectionState.PENDING_REVIEW:
            if self.store.pending_workflow(row.id, for_update=True) is not None:
                raise AlreadyPending(row.id)
            priority = payload.get("priority") or URGENCY_TO_PRIORITY.get(row.urgency_level, Priority.NORMAL)
            assignee = payload.get("assigned_to")
            if assignee is None:
                reviewer = self.store.first_active_user(
                    row.tenant_id, REVIEWER_ROLES, exclude_user_id=principal.user_id,
                )
                assignee = reviewer.id if reviewer else None
            workflow = ApprovalWorkflow(
                tenant_id=row.tenant_id,
                inspection_id=row.id,
                submitted_by=principal.user_id,
                submitted_at=now,
                status=WorkflowStatus.PENDING.value,
                priority=Priority(priority).value,
                assigned_to=assignee,
                requested_changes=[],
            )
            self.store.add(workflow)
            self.store.flush()
            return workflow

        if rule.from_state == InspectionState.PENDING_REVIEW and rule.to_state in REVIEW_OUTCOMES:
            workflow = self.store.pending_workflow(row.id, for_update=True)
            if workflow is None:
                return self.store.latest_workflow(row.id)
            workflow.status = REVIEW_OUTCOMES[rule.to_state].value
            workflow.manager_comments = payload.get("comments")
            if rule.to_state == InspectionState.APPROVED:
                workflow.approved_by = principal.user_id
                workflow.approved_at = now
            elif rule.to_state == InspectionState.REJECTED:
                workflow.rejected_at = now
                workflow.rejection_reason = payload.get("reason")
            else:
                workflow.requested_changes = list(payload.get("requested_changes") or [])
            return workflow

        return self.store.latest_workflow(row.id)

    def _signal_post_actions(self, rule, ctx, config, history_entry) -> None:
        for action in rule.post_actions:
            for event in events_for_action(action, ctx):
                try:
                    self.notifier.notify(event, ctx, config)
                except Exception:
                    logger.warning("Notification %s failed after %s", event, rule.name, exc_info=True,
                                   extra={"tenant_id": ctx.tenant_id, "event_type": event,
                                          "inspection_id": ctx.inspection.get("id")})
            hooks = self._post_hooks.get(action, ())
            if not hooks and not events_for_action(action, ctx):
                logger.debug("No handler registered for post-action %s", action.value)
            for hook in hooks:
                try:
                    hook(PostActionEvent(action, rule, ctx, config, history_entry))
                except Exception:
                    logger.warning("Post-action %s failed after %s", action.value, rule.name, exc_info=True,
                                   extra={"tenant_id": ctx.tenant_id, "event_type": action.value,
                                          "inspection_id": ctx.inspection.get("id")})

    # ── Review record operations ─────────────────────────────────────────

    def escalate(self, workflow_id: int, rule: EscalationRule, now: datetime | None = None) -> dict | None:
        """Hand an overdue pending review to the rule's target role.

        Returns the ``escalated`` history entry, or None when the guard lost
        (already escalated, or no longer pending).

        Raises:
            ValidationError: the shop has no active user with the target role.
        """
        now = now or self.clock()
        workflow = self.store.get_workflow(workflow_id)
        if workflow is None or workflow.status != WorkflowStatus.PENDING.value or workflow.escalated_at:
            return None

        target = self.store.first_active_user(workflow.tenant_id, [rule.escalate_to_role])
        if target is None:
            raise ValidationError(
                f"No active {rule.escalate_to_role.value} to escalate to",
                details={"tenant_id": workflow.tenant_id, "workflow_id": workflow_id},
            )

        previous_priority = workflow.priority
        try:
            if not self.store.claim_escalation(workflow_id, target.id, now):
                self.store.rollback()
                return None
            inspection = self.store.lock_inspection(workflow.inspection_id)
            entry = self.store.append_history(
                tenant_id=workflow.tenant_id,
                inspection_id=workflow.inspection_id,
                workflow_id=workflow_id,
                actor_id=None,
                action="escalated",
                from_state=inspection.status,
                to_state=inspection.status,
                comments=(
                    f"Escalated to {rule.escalate_to_role.value} after "
                    f"{rule.threshold_minutes} minutes without review"
                ),
                details={
                    "escalated_to": target.id,
                    "escalate_to_role": rule.escalate_to_role.value,
                    "previous_priority": previous_priority,
                    "threshold_minutes": rule.threshold_minutes,
                },
                created_at=now,
            )
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise

        entry_dict = entry.to_dict()
        logger.info(
            "Workflow %s escalated to user %s (%s)", workflow_id, target.id, rule.escalate_to_role.value,
            extra={"tenant_id": entry_dict["tenant_id"], "workflow_id": workflow_id,
                   "inspection_id": entry_dict["inspection_id"], "event_type": "escalated"},
        )
        try:
            snapshot = self.store.load_inspection(entry_dict["inspection_id"])
            config = self.config_service.resolve(snapshot.tenant_id)
            self.notifier.notify(
                "review_escalated", self.build_context(snapshot, config), config,
                extra={"escalated_to": target.id, "notify_immediately": rule.notify_immediately},
            )
        except Exception:
            logger.warning("Escalation notification failed for workflow %s", workflow_id, exc_info=True,
                           extra={"workflow_id": workflow_id, "event_type": "review_escalated"})
        return entry_dict

    def start_review(self, workflow_id: int, principal: AuthorizationContext) -> dict:
        """A manager claims a pending review; suppresses auto-approve while fresh."""
        workflow = self.store.get_workflow(workflow_id)
        if workflow is None or workflow.tenant_id != principal.tenant_id:
            raise NotFoundError(resource="ApprovalWorkflow", resource_id=workflow_id)
        if workflow.status != WorkflowStatus.PENDING.value:
            raise InvalidTransition(workflow.status, "review_started")

        config = self.config_service.resolve(principal.tenant_id)
        approve = config.transition_for(InspectionState.PENDING_REVIEW, InspectionState.APPROVED)
        if approve is None or principal.role not in approve.allowed_roles or principal.is_system:
            raise Forbidden(principal.role.value, "pending_review", "review_started")

        now = self.clock()
        try:
            workflow.review_started_at = now
            workflow.review_started_by = principal.user_id
            self.store.append_history(
                tenant_id=workflow.tenant_id,
                inspection_id=workflow.inspection_id,
                workflow_id=workflow.id,
                actor_id=principal.user_id,
                action="review_started",
                from_state=InspectionState.PENDING_REVIEW.value,
                to_state=InspectionState.PENDING_REVIEW.value,
                details={},
                created_at=now,
            )
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        return workflow.to_dict()

    def review_in_progress(self, workflow: dict | None, config: WorkflowConfig, now: datetime) -> bool:
        """True while a manual review claim is younger than the lock timeout."""
        if not workflow or workflow.get("status") != WorkflowStatus.PENDING.value:
            return False
        started = workflow.get("review_started_at")
        if not started:
            return False
        started_at = as_utc(started)
        return now - started_at < timedelta(minutes=config.business_rules.lock_timeout_minutes)

    def flag_for_review(self, inspection_id: int, reason: str, now: datetime | None = None) -> bool:
        """Mark an inspection as needing a manager's attention without moving it."""
        now = now or self.clock()
        try:
            row = self.store.lock_inspection(inspection_id)
            if row is None:
                raise NotFoundError(resource="Inspection", resource_id=inspection_id)
            if row.flagged_for_review_at is not None:
                self.store.rollback()
                return False
            row.flagged_for_review_at = now
            self.store.flush()
            latest = self.store.latest_workflow(row.id)
            self.store.append_history(
                tenant_id=row.tenant_id,
                inspection_id=row.id,
                workflow_id=latest.id if latest else None,
                actor_id=None,
                action="flagged_for_review",
                from_state=row.status,
                to_state=row.status,
                comments=reason,
                details={"auto": True},
                created_at=now,
            )
            self.store.commit()
        except StaleDataError:
            self.store.rollback()
            raise ConcurrentModification(inspection_id)
        except Exception:
            self.store.rollback()
            raise
        return True

    # ── Queries ──────────────────────────────────────────────────────────

    def get_available_transitions(self, inspection_id: int, principal: AuthorizationContext) -> list[dict]:
        """Edges the principal may take from the current state, with unmet required conditions."""
        snapshot = self._load(inspection_id, principal)
        config = self.config_service.resolve(principal.tenant_id)
        available = []
        for rule in config.transitions_from(snapshot.status):
            if principal.role not in rule.allowed_roles:
                continue
            ctx = self.build_context(snapshot, config, principal, rule.to_state)
            missing = [c.value for c in rule.required_conditions if not evaluate_condition(c, ctx)]
            available.append({
                "name": rule.name,
                "to_state": rule.to_state.value,
                "ready": not missing,
                "missing_conditions": missing,
            })
        return available

    def get_history(self, inspection_id: int, principal: AuthorizationContext | None = None) -> list[dict]:
        """Chronological history of an inspection."""
        if principal is not None:
            self._load(inspection_id, principal)
        return [e.to_dict() for e in self.store.history_for(inspection_id)]
