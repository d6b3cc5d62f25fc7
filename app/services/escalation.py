"""
Escalation Scheduler — periodic sweep over time-based workflow rules.

One sweep does three passes per active shop:

    1. escalation   pending reviews older than their priority's threshold are
                    handed to the target role (once; the conditional UPDATE in
                    the store is the guard)
    2. timeouts     inspections sitting in a state: warnings at each
                    ``notify_before_minutes`` offset, then the escalation
                    notification and the auto action once the timeout passes
    3. auto-triggers transition rules whose trigger condition holds after the
                    configured delay fire through the engine as the system

Every record is its own unit of work. Timeout warnings, timeout actions and
auto-triggers are recorded in ``workflow_timeout_firings`` so each fires once
per entry into a state. A failing record is reported and never aborts the
sweep. A record that has not started within the per-record timeout is
cancelled and reported as skipped (retried next tick); one that is still
running cannot be interrupted, so it is reported as timed out and the sweep
returns without waiting for it.

Usage:
    from app.services.escalation import EscalationService
    report = EscalationService.from_app(app, engine).run_escalation_sweep()
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from flask import current_app

from app.core.exceptions import ConcurrentModification
from app.services.workflow_conditions import AuthorizationContext, as_utc, evaluate_condition
from app.services.workflow_engine import WorkflowEngine
from app.services.workflow_rules import (
    AutoAction,
    EscalationAction,
    EscalationRule,
    InspectionState,
    TimeoutRule,
    TransitionRule,
    WorkflowConfig,
)

logger = logging.getLogger(__name__)


# Outcome tokens a unit of work returns.
ESCALATED = "escalated"
AUTO_ACTION = "auto_action"
WARNING_SENT = "warning_sent"
NOTIFIED = "notified"
SUPPRESSED = "suppressed"
RETRY = "retry"
NOOP = "noop"

ESCALATION_EVENTS = {
    EscalationAction.NOTIFY_MANAGER: "inspection_overdue",
    EscalationAction.ESCALATE_TO_ADMIN: "review_overdue",
}

AUTO_ACTION_TARGETS = {
    AutoAction.AUTO_APPROVE_IF_NO_CRITICAL: InspectionState.APPROVED,
    AutoAction.SEND_TO_CUSTOMER: InspectionState.SENT_TO_CUSTOMER,
    AutoAction.COMPLETE: InspectionState.COMPLETED,
}


@dataclass
class SweepReport:
    escalated: list[dict] = field(default_factory=list)
    auto_actions: int = 0
    warnings_sent: int = 0
    notifications: int = 0
    suppressed: int = 0
    skipped: int = 0
    timed_out: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    def record(self, outcomes: list) -> None:
        """Tally unit outcomes: a token, or a ``(token, detail)`` pair."""
        for outcome in outcomes:
            detail = None
            if isinstance(outcome, tuple):
                outcome, detail = outcome
            if outcome == ESCALATED:
                self.escalated.append(detail or {})
            elif outcome == AUTO_ACTION:
                self.auto_actions += 1
            elif outcome == WARNING_SENT:
                self.warnings_sent += 1
            elif outcome == NOTIFIED:
                self.notifications += 1
            elif outcome == SUPPRESSED:
                self.suppressed += 1
            elif outcome == RETRY:
                self.skipped += 1

    def to_dict(self) -> dict:
        return {
            "escalated": self.escalated,
            "auto_actions": self.auto_actions,
            "warnings_sent": self.warnings_sent,
            "notifications": self.notifications,
            "suppressed": self.suppressed,
            "skipped": self.skipped,
            "timed_out": self.timed_out,
            "errors": self.errors,
        }


@dataclass
class WorkUnit:
    kind: str
    key: dict
    fn: Callable[[], list[str]]


class EscalationService:
    """Runs the escalation sweep over every active shop."""

    def __init__(
        self,
        engine: WorkflowEngine,
        *,
        max_workers: int = 1,
        per_record_timeout: float = 30.0,
        app=None,
    ):
        self.engine = engine
        self.store = engine.store
        self.config_service = engine.config_service
        self.max_workers = max(1, int(max_workers))
        self.per_record_timeout = per_record_timeout
        self.app = app

    @classmethod
    def from_app(cls, app, engine: WorkflowEngine) -> "EscalationService":
        return cls(
            engine,
            max_workers=app.config.get("ESCALATION_SWEEP_WORKERS", 1),
            per_record_timeout=app.config.get("ESCALATION_RECORD_TIMEOUT_SECONDS", 30),
            app=app,
        )

    # ── Sweep ────────────────────────────────────────────────────────────

    def run_escalation_sweep(self, now: datetime | None = None) -> SweepReport:
        now = as_utc(now or self.engine.clock())
        report = SweepReport()
        units: list[WorkUnit] = []

        for tenant_id in self.store.active_tenant_ids():
            try:
                config = self.config_service.resolve(tenant_id)
                units.extend(self._escalation_units(tenant_id, config, now))
                units.extend(self._timeout_units(tenant_id, config, now))
                units.extend(self._trigger_units(tenant_id, config, now))
            except Exception as exc:
                logger.warning("Sweep planning failed for tenant %s", tenant_id, exc_info=True,
                               extra={"tenant_id": tenant_id, "event_type": "escalation_sweep"})
                report.errors.append({"kind": "tenant", "tenant_id": tenant_id, "error": str(exc)})

        self._run_units(units, report)
        logger.info(
            "Escalation sweep: %d escalated, %d auto actions, %d warnings, %d skipped, %d timed out, %d errors",
            len(report.escalated), report.auto_actions, report.warnings_sent, report.skipped,
            len(report.timed_out), len(report.errors),
            extra={"event_type": "escalation_sweep"},
        )
        return report

    def _run_one(self, unit: WorkUnit) -> list[str]:
        if self.app is None:
            return unit.fn()
        with self.app.app_context():
            return unit.fn()

    def _run_units(self, units: list[WorkUnit], report: SweepReport) -> None:
        if not units:
            return

        if self.max_workers == 1:
            for unit in units:
                try:
                    report.record(unit.fn())
                except Exception as exc:
                    self._record_error(report, unit, exc)
            return

        if self.app is None:
            self.app = current_app._get_current_object()
        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="escalation")
        try:
            futures = [(unit, pool.submit(self._run_one, unit)) for unit in units]
            for unit, future in futures:
                try:
                    report.record(future.result(timeout=self.per_record_timeout))
                except FuturesTimeout:
                    self._record_timeout(report, unit, future)
                except Exception as exc:
                    self._record_error(report, unit, exc)
        finally:
            # A running unit cannot be interrupted; it finishes in its own app
            # context while the sweep returns.
            pool.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _record_timeout(report: SweepReport, unit: WorkUnit, future) -> None:
        if future.cancel():
            # Never started: nothing committed, the next tick picks it up.
            report.skipped += 1
            logger.warning("Sweep unit %s did not start in time; retrying next tick", unit.kind,
                           extra={"event_type": "escalation_sweep", **unit.key})
            return
        report.timed_out.append({"kind": unit.kind, **unit.key})
        logger.warning("Sweep unit %s still running past the per-record timeout; outcome unknown",
                       unit.kind, extra={"event_type": "escalation_sweep", **unit.key})

    @staticmethod
    def _record_error(report: SweepReport, unit: WorkUnit, exc: Exception) -> None:
        logger.warning("Sweep unit %s failed: %s", unit.kind, exc, exc_info=True,
                       extra={"event_type": "escalation_sweep", **unit.key})
        report.errors.append({"kind": unit.kind, **unit.key, "error": str(exc)})

    # ── Pass 1: escalation ───────────────────────────────────────────────

    def _escalation_units(self, tenant_id: int, config: WorkflowConfig, now: datetime) -> list[WorkUnit]:
        units = []
        for rule in config.escalation_rules:
            cutoff = now - timedelta(minutes=rule.threshold_minutes)
            for workflow_id in self.store.find_overdue(tenant_id, rule.priority.value, cutoff):
                units.append(WorkUnit(
                    kind="escalation",
                    key={"tenant_id": tenant_id, "workflow_id": workflow_id},
                    fn=self._escalate_fn(workflow_id, rule, now),
                ))
        return units

    def _escalate_fn(self, workflow_id: int, rule: EscalationRule, now: datetime):
        def run() -> list:
            entry = self.engine.escalate(workflow_id, rule, now)
            if entry is None:
                return [NOOP]
            meta = entry["metadata"]
            return [(ESCALATED, {
                "workflow_id": workflow_id,
                "inspection_id": entry["inspection_id"],
                "escalated_to": meta.get("escalated_to"),
                "escalate_to_role": meta.get("escalate_to_role"),
                "previous_priority": meta.get("previous_priority"),
            })]
        return run

    # ── Pass 2: timeouts ─────────────────────────────────────────────────

    def _timeout_units(self, tenant_id: int, config: WorkflowConfig, now: datetime) -> list[WorkUnit]:
        units = []
        for rule in config.timeout_rules:
            timeout_cutoff = now - timedelta(minutes=rule.timeout_minutes)
            for offset in rule.notify_before_minutes:
                warn_cutoff = now - timedelta(minutes=rule.timeout_minutes - offset)
                for inspection_id in self.store.find_in_state_since(
                    tenant_id, rule.state.value, warn_cutoff, entered_after=timeout_cutoff,
                ):
                    units.append(WorkUnit(
                        kind="timeout_warning",
                        key={"tenant_id": tenant_id, "inspection_id": inspection_id},
                        fn=self._warning_fn(inspection_id, rule, offset, config, now),
                    ))
            for inspection_id in self.store.find_in_state_since(tenant_id, rule.state.value, timeout_cutoff):
                units.append(WorkUnit(
                    kind="timeout",
                    key={"tenant_id": tenant_id, "inspection_id": inspection_id},
                    fn=self._timeout_fn(inspection_id, rule, config, now),
                ))
        return units

    def _fresh(self, inspection_id: int, state: InspectionState):
        snapshot = self.store.load_inspection(inspection_id)
        if snapshot is None or snapshot.status != state.value:
            return None
        return snapshot

    def _warning_fn(self, inspection_id: int, rule: TimeoutRule, offset: int, config, now):
        def run() -> list[str]:
            snapshot = self._fresh(inspection_id, rule.state)
            if snapshot is None:
                return [NOOP]
            notifier = self.engine.notifier
            prepared = notifier.prepare(
                "timeout_warning", self.engine.build_context(snapshot, config), config,
                extra={"minutes_remaining": offset, "timeout_minutes": rule.timeout_minutes},
            )
            if not self.store.record_firing(
                snapshot.tenant_id, inspection_id, rule.state.value,
                as_utc(snapshot.inspection["state_entered_at"]), f"warning:{offset}", now,
            ):
                return [NOOP]
            notifier.send(prepared)
            return [WARNING_SENT]
        return run

    def _timeout_fn(self, inspection_id: int, rule: TimeoutRule, config, now):
        def run() -> list[str]:
            snapshot = self._fresh(inspection_id, rule.state)
            if snapshot is None:
                return [NOOP]
            entered_at = as_utc(snapshot.inspection["state_entered_at"])
            outcomes = []

            event = ESCALATION_EVENTS.get(rule.escalation_action)
            if event and not self.store.has_fired(inspection_id, rule.state.value, entered_at, "escalation_action"):
                # Resolve rules and recipients before the firing is recorded;
                # a failure here leaves nothing recorded and retries next tick.
                notifier = self.engine.notifier
                prepared = notifier.prepare(
                    event, self.engine.build_context(snapshot, config), config,
                    extra={"timeout_minutes": rule.timeout_minutes},
                )
                if self.store.record_firing(
                    snapshot.tenant_id, inspection_id, rule.state.value, entered_at, "escalation_action", now,
                ):
                    notifier.send(prepared)
                    outcomes.append(NOTIFIED)

            if rule.auto_action is not None:
                outcomes.append(self._auto_action(snapshot, entered_at, rule, config, now))
            return outcomes or [NOOP]
        return run

    def _auto_action(self, snapshot, entered_at, rule: TimeoutRule, config: WorkflowConfig, now) -> str:
        state = rule.state.value
        if self.store.has_fired(snapshot.id, state, entered_at, "auto_action"):
            return NOOP

        if rule.auto_action == AutoAction.FLAG_FOR_REVIEW:
            self.engine.flag_for_review(
                snapshot.id, f"In {state} for more than {rule.timeout_minutes} minutes", now,
            )
            self.store.record_firing(snapshot.tenant_id, snapshot.id, state, entered_at, "auto_action", now)
            return AUTO_ACTION

        if rule.auto_action == AutoAction.AUTO_APPROVE_IF_NO_CRITICAL:
            if self.engine.review_in_progress(snapshot.workflow, config, now):
                # Not recorded: retried once the review claim lapses.
                return SUPPRESSED
            ctx = self.engine.build_context(snapshot, config)
            if ctx.critical_items:
                self.store.record_firing(snapshot.tenant_id, snapshot.id, state, entered_at, "auto_action", now)
                return NOOP

        target = AUTO_ACTION_TARGETS[rule.auto_action]
        return self._fire(
            snapshot, entered_at, target, "auto_action",
            {"comments": f"Automatic {rule.auto_action.value} after {rule.timeout_minutes} minutes",
             "trigger": rule.auto_action.value},
            now,
        )

    def _fire(self, snapshot, entered_at, target: InspectionState, kind: str, payload: dict, now) -> str:
        """Run a system transition; record the firing unless the race was lost."""
        principal = AuthorizationContext.system(snapshot.tenant_id)
        result = self.engine.attempt_transition(snapshot.id, target, principal, payload)
        if not result.ok and isinstance(result.error, ConcurrentModification):
            return RETRY
        self.store.record_firing(snapshot.tenant_id, snapshot.id, snapshot.status, entered_at, kind, now)
        if not result.ok:
            raise result.error
        return AUTO_ACTION

    # ── Pass 3: auto-triggers ────────────────────────────────────────────

    def _trigger_units(self, tenant_id: int, config: WorkflowConfig, now: datetime) -> list[WorkUnit]:
        units = []
        for rule in config.transitions:
            for trigger in rule.auto_triggers:
                if trigger.requires_confirmation:
                    continue
                cutoff = now - timedelta(minutes=trigger.delay_minutes)
                for inspection_id in self.store.find_in_state_since(tenant_id, rule.from_state.value, cutoff):
                    units.append(WorkUnit(
                        kind="auto_trigger",
                        key={"tenant_id": tenant_id, "inspection_id": inspection_id},
                        fn=self._trigger_fn(inspection_id, rule, trigger.condition, config, now),
                    ))
        return units

    def _trigger_fn(self, inspection_id: int, rule: TransitionRule, condition, config, now):
        def run() -> list[str]:
            snapshot = self._fresh(inspection_id, rule.from_state)
            if snapshot is None:
                return [NOOP]
            ctx = self.engine.build_context(snapshot, config, to_state=rule.to_state)
            if not evaluate_condition(condition, ctx):
                return [NOOP]
            if rule.to_state == InspectionState.APPROVED and self.engine.review_in_progress(
                snapshot.workflow, config, now,
            ):
                return [SUPPRESSED]
            entered_at = as_utc(snapshot.inspection["state_entered_at"])
            kind = f"trigger:{rule.name}:{condition.value}"
            if self.store.has_fired(inspection_id, rule.from_state.value, entered_at, kind):
                return [NOOP]
            return [self._fire(
                snapshot, entered_at, rule.to_state, kind,
                {"comments": f"Auto-triggered by {condition.value}", "trigger": condition.value},
                now,
            )]
        return run
