"""
Tests: transition engine — guarded edges, review record lifecycle,
concurrency, post-action isolation, storage failure rollback, tenant
isolation, and the append-only history trail.

Covers:
    - Full lifecycle draft → completed with history and notifications
    - Role gating for every default edge
    - Unknown / missing edges, failed required conditions
    - Blocking validation vs advisory warnings
    - Rejection needs a reason; resume clears it; resubmission opens a new review
    - At most one pending review per inspection (engine and database)
    - Concurrent approvals: exactly one wins, the other is told to retry
    - Two attempts planned from one snapshot version: exactly one commits
    - Version-guarded UPDATE turns a lost race into ConcurrentModification
    - Failing notifications / post hooks never undo a committed transition
    - Failing pre hooks / storage errors roll everything back
    - Cross-shop access looks like a missing record
    - History rows cannot be updated or deleted
"""

from collections import defaultdict

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError

from app.core.exceptions import ConcurrentModification, Forbidden, NotFoundError
from app.models import db as _db
from app.models.audit import ImmutableRecordError
from app.models.inspection import Inspection
from app.models.workflow import ApprovalHistory, ApprovalWorkflow
from app.services.workflow_rules import DEFAULT_TRANSITIONS, Action, Role


_ROLE_USER = {
    Role.MECHANIC: "mechanic",
    Role.SHOP_MANAGER: "manager",
    Role.SENIOR_MANAGER: "senior_manager",
    Role.OWNER: "owner",
    Role.ADMIN: "admin",
}


def _principal(shop, role):
    if role == Role.SYSTEM:
        return shop.system
    return shop.principal(getattr(shop, _ROLE_USER[role]))


def _submit(engine, shop, inspection_id, user=None):
    result = engine.attempt_transition(
        inspection_id, "pending_review", shop.principal(user or shop.mechanic),
    )
    assert result.ok, result.error
    return result


def _reload(inspection_id):
    _db.session.expire_all()
    return _db.session.get(Inspection, inspection_id)


# ═════════════════════════════════════════════════════════════════════════════
# 1. Happy path
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_full_lifecycle(engine, shop, make_inspection, dispatcher, clock):
    insp = make_inspection(status="draft")
    mechanic = shop.principal(shop.mechanic)
    manager = shop.principal(shop.manager)

    started = engine.attempt_transition(insp.id, "in_progress", mechanic)
    assert started.ok
    assert started.history_entry["action"] == "started"
    assert started.inspection["started_at"] is not None
    assert started.workflow is None
    assert len(dispatcher.for_event("inspection_assigned")) == 1

    clock.advance(minutes=45)
    submitted = engine.attempt_transition(insp.id, "pending_review", mechanic)
    assert submitted.ok
    assert submitted.history_entry["action"] == "submitted"
    assert submitted.workflow["status"] == "pending"
    assert submitted.workflow["submitted_by"] == shop.mechanic.id
    assert submitted.workflow["assigned_to"] == shop.manager.id
    assert submitted.workflow["priority"] == "low"
    assert submitted.inspection["urgency_level"] == "low"
    assert submitted.inspection["summary"]["item_count"] == 5
    assert [w.rule_name for w in submitted.warnings] == ["has_voice_notes"]

    clock.advance(minutes=20)
    approved = engine.attempt_transition(insp.id, "approved", manager, {"comments": "Looks good"})
    assert approved.ok
    assert approved.workflow["status"] == "approved"
    assert approved.workflow["approved_by"] == shop.manager.id
    assert approved.workflow["manager_comments"] == "Looks good"
    assert approved.history_entry["comments"] == "Looks good"
    tech_note = dispatcher.for_event("inspection_approved")
    assert tech_note[0]["recipients"] == [{"type": "user", "id": shop.mechanic.id}]

    clock.advance(minutes=5)
    sent = engine.attempt_transition(insp.id, "sent_to_customer", manager)
    assert sent.ok
    customer = dispatcher.for_event("inspection_sent_to_customer")[0]
    assert customer["recipients"][0]["type"] == "customer"
    assert customer["channels"] == ["sms"]

    clock.advance(days=1)
    completed = engine.attempt_transition(insp.id, "completed", manager)
    assert completed.ok
    assert completed.inspection["completed_at"] is not None
    assert [w.rule_name for w in completed.warnings] == ["customer_viewed"]

    history = engine.get_history(insp.id, manager)
    assert [h["action"] for h in history] == [
        "started", "submitted", "approved", "sent_to_customer", "completed",
    ]
    assert [(h["from_state"], h["to_state"]) for h in history][2] == ("pending_review", "approved")
    assert all(h["workflow_id"] == submitted.workflow["id"] for h in history[1:])
    assert history[0]["workflow_id"] is None


@pytest.mark.unit
def test_critical_items_raise_priority_and_alert_managers(engine, shop, make_inspection, dispatcher):
    insp = make_inspection(critical=True)
    result = _submit(engine, shop, insp.id)

    assert result.inspection["urgency_level"] == "critical"
    assert result.workflow["priority"] == "urgent"
    assert "critical_items_found" in dispatcher.events()
    review = dispatcher.for_event("inspection_submitted_for_review")[0]
    assert review["recipients"] == [{"type": "user", "id": shop.manager.id}]
    assert review["template"] == "inspection_ready_for_review"


@pytest.mark.unit
def test_submit_payload_overrides_priority_and_reviewer(engine, shop, make_inspection):
    insp = make_inspection()
    result = engine.attempt_transition(
        insp.id, "pending_review", shop.principal(shop.mechanic),
        {"priority": "high", "assigned_to": shop.senior_manager.id},
    )
    assert result.workflow["priority"] == "high"
    assert result.workflow["assigned_to"] == shop.senior_manager.id


# ═════════════════════════════════════════════════════════════════════════════
# 2. Guards
# ═════════════════════════════════════════════════════════════════════════════


_GATED = [
    (rule.from_state.value, rule.to_state.value, role)
    for rule in DEFAULT_TRANSITIONS
    for role in Role
    if role not in rule.allowed_roles
]


@pytest.mark.unit
@pytest.mark.parametrize(
    "from_state,to_state,role", _GATED,
    ids=[f"{f}-{t}-{r.value}" for f, t, r in _GATED],
)
def test_role_outside_allowed_roles_is_forbidden(engine, shop, make_inspection, from_state, to_state, role):
    insp = make_inspection(status=from_state)
    result = engine.attempt_transition(
        insp.id, to_state, _principal(shop, role),
        {"reason": "x", "requested_changes": ["x"], "comments": "x"},
    )
    assert not result.ok
    assert isinstance(result.error, Forbidden)
    assert result.to_dict()["error"]["code"] == "forbidden"
    assert _reload(insp.id).status == from_state


@pytest.mark.unit
def test_missing_edge_is_invalid_transition(engine, shop, make_inspection):
    insp = make_inspection(status="draft")
    result = engine.attempt_transition(insp.id, "approved", shop.principal(shop.admin))
    assert result.error.code == "invalid_transition"
    assert result.error.to_dict()["from_state"] == "draft"

    unknown = engine.attempt_transition(insp.id, "archived", shop.principal(shop.admin))
    assert unknown.error.code == "invalid_transition"


@pytest.mark.unit
def test_missing_inspection_is_not_found(engine, shop):
    result = engine.attempt_transition(9999, "in_progress", shop.principal(shop.mechanic))
    assert isinstance(result.error, NotFoundError)


@pytest.mark.unit
def test_unassessed_item_fails_required_condition(engine, shop, make_inspection):
    items = [
        {"category": "Brakes", "component": "Front pads", "condition": "good"},
        {"category": "Brakes", "component": "Rear pads", "condition": "good"},
        {"category": "Tires", "component": "Front left tread", "condition": "good"},
        {"category": "Tires", "component": "Rear right tread", "condition": "good"},
        {"category": "Lights", "component": "Brake lights", "condition": None},
    ]
    insp = make_inspection(items=items)
    result = engine.attempt_transition(insp.id, "pending_review", shop.principal(shop.mechanic))
    assert result.error.code == "precondition_failed"
    assert result.error.condition == "all_items_assessed"


@pytest.mark.unit
def test_blocking_validation_keeps_state(engine, shop, make_inspection):
    items = [
        {"category": "Brakes", "component": "Front pads", "condition": "good"},
        {"category": "Tires", "component": "Front left tread", "condition": "good"},
        {"category": "Tires", "component": "Rear right tread", "condition": "fair"},
    ]
    insp = make_inspection(items=items)
    result = engine.attempt_transition(insp.id, "pending_review", shop.principal(shop.mechanic))

    assert result.error.code == "validation_failed"
    violations = {v.rule_name: v for v in result.error.violations}
    assert set(violations) == {"mandatory_categories_present", "min_items_required"}
    assert violations["mandatory_categories_present"].message == \
        "Missing mandatory inspection categories: Lights"
    assert violations["min_items_required"].message == "Inspection must have at least 5 items"
    assert _reload(insp.id).status == "in_progress"
    assert ApprovalWorkflow.query.count() == 0
    assert ApprovalHistory.query.count() == 0


@pytest.mark.unit
def test_advisory_warnings_do_not_block(engine, shop, make_inspection):
    items = [
        {"category": "Brakes", "component": "Front pads", "condition": "good", "cost_estimate": 9000},
        {"category": "Brakes", "component": "Rear pads", "condition": "good"},
        {"category": "Tires", "component": "Front left tread", "condition": "good",
         "measurement_value": 1.0, "measurement_min": 2.0, "measurement_max": 10.0},
        {"category": "Tires", "component": "Rear right tread", "condition": "good"},
        {"category": "Lights", "component": "Headlights", "condition": "good"},
    ]
    insp = make_inspection(items=items)
    result = _submit(engine, shop, insp.id)

    names = [w.rule_name for w in result.warnings]
    assert "cost_estimate_reasonable" in names
    assert "measurement_values_realistic" in names
    assert "has_photos" in names
    cost = next(w for w in result.warnings if w.rule_name == "cost_estimate_reasonable")
    assert cost.item_id is not None
    assert cost.message == "Cost estimate 9000.0 seems unusually high/low for Front pads"


@pytest.mark.unit
def test_unavailable_vehicle_cannot_start(engine, shop, make_inspection):
    insp = make_inspection(status="draft", vehicle_available=False)
    result = engine.attempt_transition(insp.id, "in_progress", shop.principal(shop.mechanic))
    assert result.error.code == "validation_failed"
    assert [v.rule_name for v in result.error.violations] == ["vehicle_available"]


@pytest.mark.unit
def test_undocumented_critical_item_blocks_approval(engine, shop, make_inspection):
    items = [
        {"category": "Brakes", "component": "Front pads", "condition": "good"},
        {"category": "Brakes", "component": "Brake lines", "condition": "needs_immediate"},
        {"category": "Tires", "component": "Front left tread", "condition": "good"},
        {"category": "Tires", "component": "Rear right tread", "condition": "good"},
        {"category": "Lights", "component": "Headlights", "condition": "good"},
    ]
    insp = make_inspection(items=items)
    submitted = _submit(engine, shop, insp.id)
    assert "critical_items_documented" in [w.rule_name for w in submitted.warnings]

    result = engine.attempt_transition(insp.id, "approved", shop.principal(shop.manager))
    assert result.error.code == "validation_failed"
    assert [v.rule_name for v in result.error.violations] == ["no_blocking_critical_items"]
    assert result.error.violations[0].details == {"blocking_count": 1, "components": "Brake lines"}


@pytest.mark.unit
def test_submitter_cannot_approve_own_inspection(engine, shop, make_inspection):
    insp = make_inspection()
    _submit(engine, shop, insp.id, user=shop.admin)
    result = engine.attempt_transition(insp.id, "approved", shop.principal(shop.admin))
    assert result.error.code == "validation_failed"
    assert [v.rule_name for v in result.error.violations] == ["no_self_approval"]

    allowed = engine.attempt_transition(insp.id, "approved", shop.principal(shop.manager))
    assert allowed.ok


# ═════════════════════════════════════════════════════════════════════════════
# 3. Review outcomes
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_rejection_requires_reason(engine, shop, make_inspection, dispatcher):
    insp = make_inspection()
    first = _submit(engine, shop, insp.id)
    manager = shop.principal(shop.manager)

    missing = engine.attempt_transition(insp.id, "rejected", manager, {"reason": "   "})
    assert missing.error.code == "precondition_failed"
    assert missing.error.condition == "rejection_reason"

    rejected = engine.attempt_transition(insp.id, "rejected", manager, {"reason": "Photos are blurry"})
    assert rejected.ok
    assert rejected.workflow["status"] == "rejected"
    assert rejected.workflow["rejection_reason"] == "Photos are blurry"
    assert rejected.inspection["rejection_reason"] == "Photos are blurry"
    assert rejected.history_entry["comments"] == "Photos are blurry"
    assert rejected.history_entry["metadata"]["rejection_reason"] == "Photos are blurry"
    assert dispatcher.for_event("inspection_rejected")

    resumed = engine.attempt_transition(insp.id, "in_progress", shop.principal(shop.mechanic))
    assert resumed.history_entry["action"] == "resumed"
    assert resumed.inspection["rejection_reason"] is None

    second = _submit(engine, shop, insp.id)
    assert second.workflow["id"] != first.workflow["id"]
    statuses = sorted(w.status for w in ApprovalWorkflow.query.filter_by(inspection_id=insp.id))
    assert statuses == ["pending", "rejected"]


@pytest.mark.unit
def test_request_changes_records_list(engine, shop, make_inspection):
    insp = make_inspection()
    _submit(engine, shop, insp.id)
    manager = shop.principal(shop.manager)

    empty = engine.attempt_transition(insp.id, "changes_requested", manager, {"requested_changes": [""]})
    assert empty.error.condition == "requested_changes"

    result = engine.attempt_transition(
        insp.id, "changes_requested", manager,
        {"requested_changes": ["Re-measure rear tread", "Add headlight photo"]},
    )
    assert result.ok
    assert result.workflow["status"] == "changes_requested"
    assert result.workflow["requested_changes"] == ["Re-measure rear tread", "Add headlight photo"]
    assert result.history_entry["action"] == "changes_requested"


@pytest.mark.unit
def test_available_transitions_report_missing_conditions(engine, shop, make_inspection):
    insp = make_inspection()
    _submit(engine, shop, insp.id)

    assert engine.get_available_transitions(insp.id, shop.principal(shop.mechanic)) == []
    available = {
        t["name"]: t for t in engine.get_available_transitions(insp.id, shop.principal(shop.manager))
    }
    assert set(available) == {"approve", "reject", "request_changes"}
    assert available["approve"]["ready"] is True
    assert available["reject"]["missing_conditions"] == ["rejection_reason"]
    assert available["request_changes"]["ready"] is False


@pytest.mark.unit
def test_start_review_claims_pending_workflow(engine, shop, make_inspection):
    insp = make_inspection()
    workflow_id = _submit(engine, shop, insp.id).workflow["id"]

    with pytest.raises(Forbidden):
        engine.start_review(workflow_id, shop.principal(shop.mechanic))
    with pytest.raises(Forbidden):
        engine.start_review(workflow_id, shop.system)

    claimed = engine.start_review(workflow_id, shop.principal(shop.manager))
    assert claimed["review_started_by"] == shop.manager.id
    assert engine.get_history(insp.id)[-1]["action"] == "review_started"


@pytest.mark.unit
def test_flag_for_review_is_once_per_inspection(engine, shop, make_inspection):
    insp = make_inspection()
    assert engine.flag_for_review(insp.id, "Taking too long") is True
    assert engine.flag_for_review(insp.id, "Taking too long") is False

    row = _reload(insp.id)
    assert row.flagged_for_review_at is not None
    assert row.status == "in_progress"
    flagged = [h for h in engine.get_history(insp.id) if h["action"] == "flagged_for_review"]
    assert len(flagged) == 1
    assert flagged[0]["actor_id"] is None


# ═════════════════════════════════════════════════════════════════════════════
# 4. Single pending review & concurrency
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_second_pending_review_is_refused(engine, shop, make_inspection):
    insp = make_inspection()
    _db.session.add(ApprovalWorkflow(
        tenant_id=shop.id, inspection_id=insp.id, submitted_by=shop.mechanic.id,
        status="pending", priority="normal",
    ))
    _db.session.commit()

    result = engine.attempt_transition(insp.id, "pending_review", shop.principal(shop.mechanic))
    assert result.error.code == "already_pending"
    assert _reload(insp.id).status == "in_progress"
    assert ApprovalWorkflow.query.filter_by(inspection_id=insp.id).count() == 1


@pytest.mark.unit
def test_database_enforces_one_pending_review(engine, shop, make_inspection):
    insp = make_inspection()
    _submit(engine, shop, insp.id)
    _db.session.add(ApprovalWorkflow(
        tenant_id=shop.id, inspection_id=insp.id, submitted_by=shop.admin.id,
        status="pending", priority="normal",
    ))
    with pytest.raises(IntegrityError):
        _db.session.flush()
    _db.session.rollback()


@pytest.mark.unit
def test_concurrent_approvals_exactly_one_wins(engine, shop, make_inspection, monkeypatch):
    insp = make_inspection()
    _submit(engine, shop, insp.id)
    real_lock = engine.store.lock_inspection
    competitor = {}

    def lock_after_competitor(inspection_id):
        # The competing approval slips in between snapshot and lock.
        if "started" not in competitor:
            competitor["started"] = True
            competitor["result"] = engine.attempt_transition(
                inspection_id, "approved", shop.principal(shop.admin), {"comments": "first"},
            )
        return real_lock(inspection_id)

    monkeypatch.setattr(engine.store, "lock_inspection", lock_after_competitor)
    loser = engine.attempt_transition(insp.id, "approved", shop.principal(shop.manager), {"comments": "second"})

    assert competitor["result"].ok
    assert not loser.ok
    assert isinstance(loser.error, ConcurrentModification)
    assert loser.error.retryable is True

    approvals = [h for h in engine.get_history(insp.id) if h["action"] == "approved"]
    assert len(approvals) == 1
    assert approvals[0]["actor_id"] == shop.admin.id
    workflow = ApprovalWorkflow.query.filter_by(inspection_id=insp.id).one()
    assert workflow.approved_by == shop.admin.id


@pytest.mark.unit
def test_attempts_planned_from_one_snapshot_exactly_one_wins(engine, shop, make_inspection, monkeypatch):
    insp = make_inspection()
    _submit(engine, shop, insp.id)
    shared = engine.store.load_inspection(insp.id)
    # Both reviewers read the inspection before either writes.
    monkeypatch.setattr(engine, "_load", lambda inspection_id, principal: shared)

    first = engine.attempt_transition(insp.id, "approved", shop.principal(shop.admin), {"comments": "ok"})
    second = engine.attempt_transition(
        insp.id, "changes_requested", shop.principal(shop.manager),
        {"requested_changes": ["Retake the tread photos"]},
    )

    assert first.ok, first.error
    assert not second.ok
    assert isinstance(second.error, ConcurrentModification)
    assert _reload(insp.id).status == "approved"
    assert [h["action"] for h in engine.get_history(insp.id)].count("changes_requested") == 0
    workflow = ApprovalWorkflow.query.filter_by(inspection_id=insp.id).one()
    assert workflow.status == "approved"


@pytest.mark.unit
def test_version_guard_detects_lost_update(engine, shop, make_inspection, monkeypatch):
    insp = make_inspection()
    real_flush = engine.store.flush
    bumped = []

    def flush_after_foreign_write():
        if not bumped:
            bumped.append(True)
            _db.session.execute(
                update(Inspection)
                .where(Inspection.id == insp.id)
                .values(version=Inspection.version + 1)
                .execution_options(synchronize_session=False)
            )
        real_flush()

    monkeypatch.setattr(engine.store, "flush", flush_after_foreign_write)
    result = engine.attempt_transition(insp.id, "pending_review", shop.principal(shop.mechanic))

    assert isinstance(result.error, ConcurrentModification)
    row = _reload(insp.id)
    assert row.status == "in_progress"
    assert ApprovalHistory.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# 5. Side-effect isolation & rollback
# ═════════════════════════════════════════════════════════════════════════════


class _ExplodingDispatcher:
    def dispatch(self, event, recipients, channels, template, context):
        raise RuntimeError("SMS gateway down")


@pytest.mark.unit
def test_post_action_failures_do_not_undo_transition(engine, shop, make_inspection, monkeypatch):
    insp = make_inspection()
    _submit(engine, shop, insp.id)
    monkeypatch.setattr(engine.notifier, "dispatcher", _ExplodingDispatcher())
    monkeypatch.setattr(engine, "_post_hooks", defaultdict(list))
    seen = []

    def broken_report(event):
        raise RuntimeError("report renderer unavailable")

    engine.register_post_action(Action.PREPARE_CUSTOMER_REPORT, broken_report)
    engine.register_post_action(Action.NOTIFY_TECHNICIAN, seen.append)

    result = engine.attempt_transition(insp.id, "approved", shop.principal(shop.manager))

    assert result.ok
    assert _reload(insp.id).status == "approved"
    assert len(seen) == 1
    assert seen[0].history_entry["action"] == "approved"
    assert seen[0].rule.name == "approve"


@pytest.mark.unit
def test_pre_action_failure_rolls_back(engine, shop, make_inspection, monkeypatch):
    insp = make_inspection()
    _submit(engine, shop, insp.id)
    monkeypatch.setattr(
        engine, "_pre_hooks", defaultdict(list, {k: list(v) for k, v in engine._pre_hooks.items()}),
    )

    def final_check(ac):
        raise ValueError("final validation service rejected the report")

    engine.register_pre_action(Action.FINAL_VALIDATION, final_check)
    with pytest.raises(ValueError):
        engine.attempt_transition(insp.id, "approved", shop.principal(shop.manager))

    assert _reload(insp.id).status == "pending_review"
    assert ApprovalWorkflow.query.filter_by(inspection_id=insp.id).one().status == "pending"


@pytest.mark.unit
def test_storage_failure_rolls_back_everything(engine, shop, make_inspection, monkeypatch):
    insp = make_inspection()

    def broken_append(**fields):
        raise OperationalError("INSERT INTO approval_history", {}, Exception("disk I/O error"))

    monkeypatch.setattr(engine.store, "append_history", broken_append)
    with pytest.raises(OperationalError):
        engine.attempt_transition(insp.id, "pending_review", shop.principal(shop.mechanic))

    row = _reload(insp.id)
    assert row.status == "in_progress"
    assert row.version == 1
    assert row.urgency_level == "low"
    assert ApprovalWorkflow.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# 6. Tenant isolation & history immutability
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_other_shop_sees_not_found(engine, shop, other_shop, make_inspection):
    insp = make_inspection()
    intruder = other_shop.principal(other_shop.manager)

    result = engine.attempt_transition(insp.id, "pending_review", intruder)
    assert isinstance(result.error, NotFoundError)
    assert result.to_dict()["error"]["code"] == "not_found"
    with pytest.raises(NotFoundError):
        engine.get_history(insp.id, intruder)
    with pytest.raises(NotFoundError):
        engine.get_available_transitions(insp.id, intruder)
    assert _reload(insp.id).status == "in_progress"


@pytest.mark.unit
def test_history_rows_are_append_only(engine, shop, make_inspection):
    insp = make_inspection()
    _submit(engine, shop, insp.id)
    entry = ApprovalHistory.query.filter_by(inspection_id=insp.id).one()

    entry.comments = "rewritten"
    with pytest.raises(ImmutableRecordError):
        _db.session.flush()
    _db.session.rollback()

    entry = ApprovalHistory.query.filter_by(inspection_id=insp.id).one()
    _db.session.delete(entry)
    with pytest.raises(ImmutableRecordError):
        _db.session.flush()
    _db.session.rollback()
    assert ApprovalHistory.query.filter_by(inspection_id=insp.id).count() == 1


@pytest.mark.unit
def test_module_entry_points_use_app_services(app, shop, make_inspection):
    from app.services import workflow

    insp = make_inspection()
    manager = shop.principal(shop.manager)

    assert workflow.resolve_config(shop.id) is not None
    result = workflow.attempt_transition(insp.id, "pending_review", shop.principal(shop.mechanic))
    assert result.ok
    assert [t["name"] for t in workflow.get_available_transitions(insp.id, manager)] == [
        "approve", "reject", "request_changes",
    ]
    claimed = workflow.start_review(result.workflow["id"], manager)
    assert claimed["review_started_by"] == shop.manager.id
    assert [h["action"] for h in workflow.get_history(insp.id, manager)] == ["submitted", "review_started"]
    assert workflow.run_escalation_sweep().errors == []
