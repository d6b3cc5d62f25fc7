"""
Tests: escalation sweep — review escalation, timeout warnings and actions,
delayed auto-triggers, idempotence, and failure isolation.

Covers:
    - Urgent review escalates to the owner after 2h, exactly once
    - A shop without an escalation target reports an error; other shops proceed
    - A tenant whose config cannot be resolved is reported and skipped
    - Timeout warnings fire once per offset per state entry
    - In-progress timeout: overdue notification + flag for review, once
    - Approved timeout auto-sends; auto_notify trigger sends earlier
    - Auto-approve is suppressed while a manual review claim is fresh
    - Critical items are never auto-approved at the pending-review timeout
    - Worker pool: the sweep never waits on a hung record; queued records
      that never started are retried, failing records reported
"""

import threading
import time

import pytest

from app.models import db as _db
from app.models.inspection import Inspection
from app.models.workflow import ApprovalWorkflow, TimeoutFiring
from app.services.escalation import (
    AUTO_ACTION,
    ESCALATED,
    NOOP,
    EscalationService,
    SweepReport,
    WorkUnit,
)


def _submit(engine, shop, inspection_id, user=None):
    result = engine.attempt_transition(
        inspection_id, "pending_review", shop.principal(user or shop.mechanic),
    )
    assert result.ok, result.error
    return result.workflow["id"]


def _reload(model, pk):
    _db.session.expire_all()
    return _db.session.get(model, pk)


def _actions(engine, inspection_id):
    return [h["action"] for h in engine.get_history(inspection_id)]


# ═════════════════════════════════════════════════════════════════════════════
# 1. Review escalation
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_urgent_review_escalates_to_owner_once(
    engine, escalation_service, shop, make_inspection, dispatcher, clock,
):
    insp = make_inspection(critical=True)
    workflow_id = _submit(engine, shop, insp.id)

    clock.advance(minutes=119)
    early = escalation_service.run_escalation_sweep()
    assert early.escalated == []

    clock.advance(minutes=2)
    report = escalation_service.run_escalation_sweep()
    assert report.escalated == [{
        "workflow_id": workflow_id,
        "inspection_id": insp.id,
        "escalated_to": shop.owner.id,
        "escalate_to_role": "owner",
        "previous_priority": "urgent",
    }]
    assert report.errors == []

    wf = _reload(ApprovalWorkflow, workflow_id)
    assert wf.status == "pending"
    assert wf.priority == "urgent"
    assert wf.escalated_to == shop.owner.id
    assert wf.assigned_to == shop.owner.id
    assert wf.escalated_at is not None

    entry = engine.get_history(insp.id)[-1]
    assert entry["action"] == "escalated"
    assert entry["actor_id"] is None
    assert entry["from_state"] == entry["to_state"] == "pending_review"
    assert entry["metadata"]["escalated_to"] == shop.owner.id
    assert entry["metadata"]["threshold_minutes"] == 120

    sent = dispatcher.for_event("review_escalated")
    assert len(sent) == 1
    assert sent[0]["recipients"] == [{"type": "user", "id": shop.owner.id}]
    assert sent[0]["context"]["notify_immediately"] is True

    clock.advance(minutes=30)
    again = escalation_service.run_escalation_sweep()
    assert again.escalated == []
    assert _actions(engine, insp.id).count("escalated") == 1


@pytest.mark.unit
def test_normal_priority_escalates_to_senior_manager(engine, escalation_service, shop, make_inspection, clock):
    items = [
        {"category": "Brakes", "component": "Front pads", "condition": "needs_attention"},
        {"category": "Brakes", "component": "Rear pads", "condition": "good"},
        {"category": "Tires", "component": "Front left tread", "condition": "good"},
        {"category": "Tires", "component": "Rear right tread", "condition": "good"},
        {"category": "Lights", "component": "Headlights", "condition": "good"},
    ]
    insp = make_inspection(items=items)
    workflow_id = _submit(engine, shop, insp.id)
    assert _reload(ApprovalWorkflow, workflow_id).priority == "normal"

    clock.advance(hours=24, minutes=1)
    report = escalation_service.run_escalation_sweep()
    assert len(report.escalated) == 1
    wf = _reload(ApprovalWorkflow, workflow_id)
    assert wf.escalated_to == shop.senior_manager.id
    assert wf.priority == "urgent"

    approved = engine.attempt_transition(insp.id, "approved", shop.principal(shop.senior_manager))
    assert approved.ok, approved.error


@pytest.mark.unit
def test_escalated_owner_can_close_the_review(engine, escalation_service, shop, make_inspection, clock):
    insp = make_inspection(critical=True)
    _submit(engine, shop, insp.id)

    clock.advance(hours=2, minutes=1)
    escalation_service.run_escalation_sweep()

    owner = shop.principal(shop.owner)
    assert [t["name"] for t in engine.get_available_transitions(insp.id, owner)] == [
        "approve", "reject", "request_changes",
    ]
    rejected = engine.attempt_transition(insp.id, "rejected", owner, {"reason": "Brake lines need a recheck"})
    assert rejected.ok, rejected.error
    assert _reload(Inspection, insp.id).status == "rejected"


@pytest.mark.unit
def test_missing_escalation_target_does_not_stop_other_shops(
    engine, escalation_service, shop, other_shop, make_inspection, clock,
):
    shop.owner.status = "inactive"
    _db.session.commit()

    ours = make_inspection(critical=True)
    our_workflow = _submit(engine, shop, ours.id)
    theirs = make_inspection(
        critical=True, tenant_id=other_shop.id, technician_id=other_shop.mechanic.id,
    )
    their_workflow = _submit(engine, other_shop, theirs.id)

    clock.advance(minutes=121)
    report = escalation_service.run_escalation_sweep()

    assert len(report.escalated) == 1
    assert len(report.errors) == 1
    error = report.errors[0]
    assert error["kind"] == "escalation"
    assert error["tenant_id"] == shop.id
    assert error["workflow_id"] == our_workflow
    assert "No active owner" in error["error"]

    assert _reload(ApprovalWorkflow, our_workflow).escalated_at is None
    assert _reload(ApprovalWorkflow, their_workflow).escalated_to == other_shop.owner.id


@pytest.mark.unit
def test_unresolvable_tenant_is_reported(
    engine, escalation_service, config_service, shop, other_shop, make_inspection, clock, monkeypatch,
):
    theirs = make_inspection(
        critical=True, tenant_id=other_shop.id, technician_id=other_shop.mechanic.id,
    )
    _submit(engine, other_shop, theirs.id)
    clock.advance(minutes=121)

    real_resolve = config_service.resolve
    broken_tenant = shop.id

    def resolve(tenant_id):
        if tenant_id == broken_tenant:
            raise RuntimeError("override rows unreadable")
        return real_resolve(tenant_id)

    monkeypatch.setattr(config_service, "resolve", resolve)
    report = escalation_service.run_escalation_sweep()

    assert report.errors == [
        {"kind": "tenant", "tenant_id": broken_tenant, "error": "override rows unreadable"},
    ]
    assert len(report.escalated) == 1


# ═════════════════════════════════════════════════════════════════════════════
# 2. Timeouts
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_timeout_warnings_fire_once_per_offset(escalation_service, shop, make_inspection, dispatcher, clock):
    insp = make_inspection(entered_at=clock.now)

    clock.advance(minutes=190)
    report = escalation_service.run_escalation_sweep()
    assert report.warnings_sent == 1
    warning = dispatcher.for_event("timeout_warning")[0]
    assert warning["context"]["minutes_remaining"] == 60
    assert warning["context"]["inspection_id"] == insp.id
    assert warning["recipients"] == [{"type": "user", "id": shop.mechanic.id}]

    assert escalation_service.run_escalation_sweep().warnings_sent == 0

    clock.advance(minutes=40)
    later = escalation_service.run_escalation_sweep()
    assert later.warnings_sent == 1
    assert [w["context"]["minutes_remaining"] for w in dispatcher.for_event("timeout_warning")] == [60, 15]
    kinds = sorted(f.kind for f in TimeoutFiring.query.filter_by(inspection_id=insp.id))
    assert kinds == ["warning:15", "warning:60"]


@pytest.mark.unit
def test_in_progress_timeout_notifies_and_flags_once(
    engine, escalation_service, shop, make_inspection, dispatcher, clock,
):
    insp = make_inspection(entered_at=clock.now)

    clock.advance(minutes=241)
    report = escalation_service.run_escalation_sweep()
    assert report.notifications == 1
    assert report.auto_actions == 1
    assert report.warnings_sent == 0

    overdue = dispatcher.for_event("inspection_overdue")
    assert len(overdue) == 1
    assert overdue[0]["recipients"] == [
        {"type": "user", "id": shop.mechanic.id},
        {"type": "user", "id": shop.manager.id},
    ]
    row = _reload(Inspection, insp.id)
    assert row.status == "in_progress"
    assert row.flagged_for_review_at is not None
    assert "flagged_for_review" in _actions(engine, insp.id)

    clock.advance(minutes=10)
    again = escalation_service.run_escalation_sweep()
    assert (again.notifications, again.auto_actions) == (0, 0)
    assert len(dispatcher.for_event("inspection_overdue")) == 1


@pytest.mark.unit
def test_failed_notification_setup_is_retried_not_lost(
    engine, escalation_service, shop, make_inspection, dispatcher, clock, monkeypatch,
):
    insp = make_inspection(entered_at=clock.now)
    real_prepare = engine.notifier.prepare
    calls = []

    def prepare(event, *args, **kwargs):
        calls.append(event)
        if event == "inspection_overdue" and calls.count(event) == 1:
            raise RuntimeError("recipient lookup failed")
        return real_prepare(event, *args, **kwargs)

    monkeypatch.setattr(engine.notifier, "prepare", prepare)

    clock.advance(minutes=241)
    first = escalation_service.run_escalation_sweep()
    assert [e["error"] for e in first.errors] == ["recipient lookup failed"]
    assert dispatcher.for_event("inspection_overdue") == []
    assert TimeoutFiring.query.filter_by(inspection_id=insp.id, kind="escalation_action").count() == 0

    clock.advance(minutes=5)
    second = escalation_service.run_escalation_sweep()
    assert second.errors == []
    assert second.notifications == 1
    assert len(dispatcher.for_event("inspection_overdue")) == 1
    assert TimeoutFiring.query.filter_by(inspection_id=insp.id, kind="escalation_action").count() == 1


@pytest.mark.unit
def test_approved_inspection_auto_sends_after_timeout(
    engine, escalation_service, config_service, shop, make_inspection, dispatcher, clock,
):
    config_service.save_override(shop.id, {"business_rules": {"auto_notify_customer": False}})
    insp = make_inspection(status="approved", entered_at=clock.now)

    clock.advance(minutes=30)
    assert escalation_service.run_escalation_sweep().auto_actions == 0
    assert _reload(Inspection, insp.id).status == "approved"

    clock.advance(minutes=31)
    report = escalation_service.run_escalation_sweep()
    assert report.auto_actions == 1
    assert report.errors == []
    assert _reload(Inspection, insp.id).status == "sent_to_customer"

    entry = engine.get_history(insp.id)[-1]
    assert entry["action"] == "sent_to_customer"
    assert entry["actor_id"] is None
    assert entry["metadata"] == {"auto": True, "trigger": "send_to_customer"}
    assert dispatcher.for_event("inspection_sent_to_customer")


@pytest.mark.unit
def test_auto_notify_trigger_sends_after_delay(engine, escalation_service, shop, make_inspection, clock):
    insp = make_inspection(status="approved", entered_at=clock.now)

    clock.advance(minutes=9)
    assert escalation_service.run_escalation_sweep().auto_actions == 0

    clock.advance(minutes=2)
    report = escalation_service.run_escalation_sweep()
    assert report.auto_actions == 1
    assert _reload(Inspection, insp.id).status == "sent_to_customer"
    assert engine.get_history(insp.id)[-1]["metadata"]["trigger"] == "auto_notify_enabled"

    # Already sent; the approved-state timeout finds nothing left to do.
    clock.advance(minutes=60)
    assert escalation_service.run_escalation_sweep().auto_actions == 0


@pytest.mark.unit
def test_viewed_report_completes_inspection(engine, escalation_service, shop, make_inspection, clock):
    viewed = make_inspection(status="sent_to_customer", entered_at=clock.now, customer_viewed_at=clock.now)
    unseen = make_inspection(status="sent_to_customer", entered_at=clock.now)

    clock.advance(minutes=1)
    report = escalation_service.run_escalation_sweep()
    assert report.auto_actions == 1
    assert _reload(Inspection, viewed.id).status == "completed"
    assert _reload(Inspection, viewed.id).completed_at is not None
    assert _reload(Inspection, unseen.id).status == "sent_to_customer"


# ═════════════════════════════════════════════════════════════════════════════
# 3. Auto-approve
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_fresh_review_claim_suppresses_auto_approve(
    engine, escalation_service, config_service, shop, make_inspection, clock,
):
    config_service.save_override(shop.id, {"business_rules": {"auto_approve_enabled": True}})
    insp = make_inspection()
    workflow_id = _submit(engine, shop, insp.id)

    clock.advance(minutes=20)
    engine.start_review(workflow_id, shop.principal(shop.manager))

    clock.advance(minutes=11)
    report = escalation_service.run_escalation_sweep()
    assert report.suppressed == 1
    assert report.auto_actions == 0
    assert _reload(Inspection, insp.id).status == "pending_review"

    # Claim is older than lock_timeout_minutes (15) now.
    clock.advance(minutes=9)
    report = escalation_service.run_escalation_sweep()
    assert report.auto_actions == 1
    assert _reload(Inspection, insp.id).status == "approved"

    wf = _reload(ApprovalWorkflow, workflow_id)
    assert wf.status == "approved"
    assert wf.approved_by is None
    entry = engine.get_history(insp.id)[-1]
    assert entry["action"] == "approved"
    assert entry["metadata"] == {"auto": True, "trigger": "no_critical_items_and_auto_approve_enabled"}


@pytest.mark.unit
def test_auto_approve_disabled_by_default(engine, escalation_service, shop, make_inspection, clock):
    insp = make_inspection()
    _submit(engine, shop, insp.id)

    clock.advance(minutes=45)
    report = escalation_service.run_escalation_sweep()
    assert report.auto_actions == 0
    assert _reload(Inspection, insp.id).status == "pending_review"


@pytest.mark.unit
def test_critical_review_is_never_auto_approved(
    engine, escalation_service, config_service, shop, make_inspection, dispatcher, clock,
):
    config_service.save_override(shop.id, {"business_rules": {"auto_approve_enabled": True}})
    insp = make_inspection(critical=True)
    _submit(engine, shop, insp.id)

    clock.advance(hours=24, minutes=1)
    report = escalation_service.run_escalation_sweep()

    assert len(report.escalated) == 1
    assert report.notifications == 1
    assert report.auto_actions == 0
    assert _reload(Inspection, insp.id).status == "pending_review"
    overdue = dispatcher.for_event("review_overdue")[0]
    assert overdue["recipients"] == [{"type": "user", "id": shop.admin.id}]
    assert TimeoutFiring.query.filter_by(inspection_id=insp.id, kind="auto_action").count() == 1


# ═════════════════════════════════════════════════════════════════════════════
# 4. Worker pool
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_worker_pool_does_not_wait_for_hung_units(app, engine):
    service = EscalationService(engine, max_workers=2, per_record_timeout=0.1, app=app)
    release = threading.Event()

    def hung():
        release.wait(5)
        return [ESCALATED]

    def failing():
        raise RuntimeError("row locked by another sweep")

    units = [
        WorkUnit(kind="escalation", key={"tenant_id": 1, "workflow_id": 10}, fn=hung),
        WorkUnit(kind="timeout", key={"tenant_id": 1, "inspection_id": 11}, fn=failing),
        WorkUnit(kind="auto_trigger", key={"tenant_id": 1, "inspection_id": 12}, fn=lambda: [AUTO_ACTION]),
    ]
    report = SweepReport()
    started = time.monotonic()
    try:
        service._run_units(units, report)
        elapsed = time.monotonic() - started
    finally:
        release.set()

    assert elapsed < 1.0
    assert report.timed_out == [{"kind": "escalation", "tenant_id": 1, "workflow_id": 10}]
    assert report.skipped == 0
    assert report.escalated == []
    assert report.auto_actions == 1
    assert report.errors == [
        {"kind": "timeout", "tenant_id": 1, "inspection_id": 11, "error": "row locked by another sweep"},
    ]


@pytest.mark.unit
def test_worker_pool_cancels_units_that_never_started(app, engine):
    service = EscalationService(engine, max_workers=2, per_record_timeout=0.1, app=app)
    release = threading.Event()
    ran = []

    def hung():
        release.wait(5)
        return [NOOP]

    def queued():
        ran.append(True)
        return [AUTO_ACTION]

    units = [
        WorkUnit(kind="escalation", key={"tenant_id": 1, "workflow_id": 20}, fn=hung),
        WorkUnit(kind="escalation", key={"tenant_id": 1, "workflow_id": 21}, fn=hung),
        WorkUnit(kind="auto_trigger", key={"tenant_id": 1, "inspection_id": 22}, fn=queued),
    ]
    report = SweepReport()
    try:
        service._run_units(units, report)
    finally:
        release.set()

    assert [t["workflow_id"] for t in report.timed_out] == [20, 21]
    assert report.skipped == 1
    assert report.auto_actions == 0
    time.sleep(0.2)
    assert ran == []


@pytest.mark.unit
def test_sweep_report_to_dict():
    report = SweepReport()
    report.record([(ESCALATED, {"workflow_id": 5}), AUTO_ACTION, "warning_sent", "retry", "noop"])
    assert report.to_dict() == {
        "escalated": [{"workflow_id": 5}],
        "auto_actions": 1,
        "warnings_sent": 1,
        "notifications": 0,
        "suppressed": 0,
        "skipped": 1,
        "timed_out": [],
        "errors": [],
    }
