"""
Tests: manager approval queue, review statistics and bulk approval.
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.models import db as _db
from app.models.audit import AuditLog
from app.models.inspection import Inspection
from app.models.workflow import ApprovalWorkflow
from app.services import approval_service


T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def _workflow(shop, inspection, *, priority="normal", submitted_at=T0, status="pending", **fields):
    wf = ApprovalWorkflow(
        tenant_id=shop.id,
        inspection_id=inspection.id,
        submitted_by=shop.mechanic.id,
        submitted_at=submitted_at,
        status=status,
        priority=priority,
        **fields,
    )
    _db.session.add(wf)
    _db.session.commit()
    return wf


@pytest.fixture()
def review(shop, make_inspection):
    """Factory: an inspection in pending_review plus its workflow row."""
    def factory(**kwargs):
        insp = make_inspection(status="pending_review")
        return _workflow(shop, insp, **kwargs)
    return factory


# ═════════════════════════════════════════════════════════════════════════════
# 1. Queue
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_pending_queue_is_urgent_first_then_oldest(shop, review):
    low = review(priority="low", submitted_at=T0 - timedelta(hours=5))
    normal_new = review(priority="normal", submitted_at=T0)
    urgent = review(priority="urgent", submitted_at=T0 + timedelta(hours=1))
    normal_old = review(priority="normal", submitted_at=T0 - timedelta(hours=2))
    review(priority="high", status="approved")

    queue = approval_service.get_pending_approvals(shop.id)
    assert [w["id"] for w in queue] == [urgent.id, normal_old.id, normal_new.id, low.id]
    details = queue[0]["inspection_details"]
    assert details["reference_number"].startswith("INS-")
    assert details["assigned_technician_id"] == shop.mechanic.id


@pytest.mark.unit
def test_pending_queue_filters_by_manager_and_limit(shop, review):
    mine = review(assigned_to=shop.manager.id)
    review(assigned_to=shop.senior_manager.id)
    review(assigned_to=shop.manager.id, priority="urgent")

    queue = approval_service.get_pending_approvals(shop.id, manager_id=shop.manager.id)
    assert len(queue) == 2
    assert all(w["assigned_to"] == shop.manager.id for w in queue)

    first = approval_service.get_pending_approvals(shop.id, manager_id=shop.manager.id, limit=1)
    assert len(first) == 1
    assert first[0]["id"] != mine.id


@pytest.mark.unit
def test_pending_queue_is_per_shop(shop, other_shop, review):
    review()
    assert approval_service.get_pending_approvals(other_shop.id) == []


# ═════════════════════════════════════════════════════════════════════════════
# 2. Statistics
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_approval_stats(shop, review):
    review(status="approved", approved_at=T0 + timedelta(minutes=30))
    review(status="approved", approved_at=T0 + timedelta(minutes=90))
    review(status="rejected", rejected_at=T0 + timedelta(minutes=10))
    review(status="pending", escalated_at=T0 + timedelta(hours=2), priority="urgent")
    review(status="approved", submitted_at=T0 - timedelta(days=3), approved_at=T0 - timedelta(days=2))

    stats = approval_service.get_approval_stats(shop.id, T0 - timedelta(hours=1), T0 + timedelta(days=1))
    assert stats == {
        "total_pending": 1,
        "total_approved": 2,
        "total_rejected": 1,
        "average_approval_time": 60,
        "approval_rate": 66.67,
        "escalation_rate": 25.0,
    }


@pytest.mark.unit
def test_approval_stats_empty_range(shop):
    stats = approval_service.get_approval_stats(shop.id, T0, T0 + timedelta(days=1))
    assert stats["average_approval_time"] == 0
    assert stats["approval_rate"] == 0.0
    assert stats["escalation_rate"] == 0.0


@pytest.mark.unit
def test_count_pending_by_priority(shop, review):
    review(priority="urgent")
    review(priority="urgent")
    review(priority="low")
    review(priority="high", status="rejected")
    assert approval_service.count_pending_by_priority(shop.id) == {"urgent": 2, "low": 1}


# ═════════════════════════════════════════════════════════════════════════════
# 3. Bulk approval
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_bulk_approve_reports_each_failure(app, engine, shop, make_inspection):
    ready = []
    for _ in range(2):
        insp = make_inspection()
        assert engine.attempt_transition(insp.id, "pending_review", shop.principal(shop.mechanic)).ok
        ready.append(insp.id)
    still_open = make_inspection().id

    outcome = approval_service.bulk_approve(
        ready + [still_open, 9999], shop.principal(shop.manager), comments="Batch sign-off",
    )

    assert outcome["success"] == ready
    assert outcome["errors"] == [
        {"inspection_id": still_open, "code": "invalid_transition",
         "message": outcome["errors"][0]["message"]},
        {"inspection_id": 9999, "code": "not_found", "message": outcome["errors"][1]["message"]},
    ]

    _db.session.expire_all()
    for inspection_id in ready:
        assert _db.session.get(Inspection, inspection_id).status == "approved"
        assert engine.get_history(inspection_id)[-1]["comments"] == "Batch sign-off"
    assert _db.session.get(Inspection, still_open).status == "in_progress"

    audit = AuditLog.query.filter_by(action="approval_workflow.bulk_approve").one()
    assert audit.tenant_id == shop.id
    assert audit.actor_user_id == shop.manager.id


@pytest.mark.unit
def test_bulk_approve_by_mechanic_approves_nothing(engine, shop, make_inspection):
    insp = make_inspection()
    assert engine.attempt_transition(insp.id, "pending_review", shop.principal(shop.mechanic)).ok

    outcome = approval_service.bulk_approve([insp.id], shop.principal(shop.mechanic))
    assert outcome["success"] == []
    assert outcome["errors"][0]["code"] == "forbidden"
    assert AuditLog.query.filter_by(action="approval_workflow.bulk_approve").count() == 0
