"""
Approval queue, statistics and bulk approval for managers.

Reads go straight to the approval tables; every state change goes through
the transition engine so bulk approval obeys the same role gating,
validation and single-pending rules as a single approval.
"""

from __future__ import annotations

import logging
from datetime import datetime

from flask import current_app
from sqlalchemy import case, func, select

from app.models import db
from app.models.audit import write_audit
from app.models.inspection import Inspection
from app.models.workflow import ApprovalWorkflow
from app.services.workflow_conditions import AuthorizationContext, as_utc
from app.services.workflow_rules import InspectionState, WorkflowStatus

logger = logging.getLogger(__name__)

_PRIORITY_RANK = case(
    (ApprovalWorkflow.priority == "urgent", 1),
    (ApprovalWorkflow.priority == "high", 2),
    (ApprovalWorkflow.priority == "normal", 3),
    (ApprovalWorkflow.priority == "low", 4),
    else_=5,
)


def _engine():
    return current_app.extensions["workflow_engine"]


# ── Queue ──────────────────────────────────────────────────────────────────────


def get_pending_approvals(tenant_id: int, manager_id: int | None = None, limit: int = 50) -> list[dict]:
    """Pending reviews, most urgent first, oldest submission first within a priority.

    Args:
        tenant_id:  Shop scope.
        manager_id: Only reviews assigned to this manager when given.
        limit:      Maximum rows returned.
    """
    stmt = (
        select(ApprovalWorkflow, Inspection.reference_number, Inspection.urgency_level,
               Inspection.assigned_technician_id)
        .join(Inspection, ApprovalWorkflow.inspection_id == Inspection.id)
        .where(
            ApprovalWorkflow.tenant_id == tenant_id,
            ApprovalWorkflow.status == WorkflowStatus.PENDING.value,
        )
        .order_by(_PRIORITY_RANK, ApprovalWorkflow.submitted_at.asc(), ApprovalWorkflow.id)
        .limit(limit)
    )
    if manager_id is not None:
        stmt = stmt.where(ApprovalWorkflow.assigned_to == manager_id)

    results = []
    for workflow, reference_number, urgency_level, technician_id in db.session.execute(stmt).all():
        d = workflow.to_dict()
        d["inspection_details"] = {
            "reference_number": reference_number,
            "urgency_level": urgency_level,
            "assigned_technician_id": technician_id,
        }
        results.append(d)
    return results


# ── Statistics ─────────────────────────────────────────────────────────────────


def get_approval_stats(tenant_id: int, start: datetime, end: datetime) -> dict:
    """Review throughput for reviews submitted between *start* and *end* (inclusive).

    Returns:
        {
            "total_pending": int, "total_approved": int, "total_rejected": int,
            "average_approval_time": int,   # minutes, approved reviews only
            "approval_rate": float,         # approved / (approved + rejected), %
            "escalation_rate": float,       # escalated / all, %
        }
    """
    rows = db.session.execute(
        select(
            ApprovalWorkflow.status,
            ApprovalWorkflow.submitted_at,
            ApprovalWorkflow.approved_at,
            ApprovalWorkflow.escalated_at,
        ).where(
            ApprovalWorkflow.tenant_id == tenant_id,
            ApprovalWorkflow.submitted_at >= start,
            ApprovalWorkflow.submitted_at <= end,
        )
    ).all()

    counts = {"pending": 0, "approved": 0, "rejected": 0}
    escalated = 0
    approval_minutes = []
    for status, submitted_at, approved_at, escalated_at in rows:
        if status in counts:
            counts[status] += 1
        if escalated_at is not None:
            escalated += 1
        if approved_at is not None and submitted_at is not None:
            approval_minutes.append((as_utc(approved_at) - as_utc(submitted_at)).total_seconds() / 60)

    decided = counts["approved"] + counts["rejected"]
    return {
        "total_pending": counts["pending"],
        "total_approved": counts["approved"],
        "total_rejected": counts["rejected"],
        "average_approval_time": round(sum(approval_minutes) / len(approval_minutes)) if approval_minutes else 0,
        "approval_rate": round(counts["approved"] / decided * 100, 2) if decided else 0.0,
        "escalation_rate": round(escalated / len(rows) * 100, 2) if rows else 0.0,
    }


def count_pending_by_priority(tenant_id: int) -> dict[str, int]:
    """Pending review counts keyed by priority, for queue badges."""
    rows = db.session.execute(
        select(ApprovalWorkflow.priority, func.count(ApprovalWorkflow.id))
        .where(
            ApprovalWorkflow.tenant_id == tenant_id,
            ApprovalWorkflow.status == WorkflowStatus.PENDING.value,
        )
        .group_by(ApprovalWorkflow.priority)
    ).all()
    return {priority: cnt for priority, cnt in rows}


# ── Bulk approval ──────────────────────────────────────────────────────────────


def bulk_approve(
    inspection_ids: list[int],
    principal: AuthorizationContext,
    comments: str | None = None,
    engine=None,
) -> dict:
    """Approve each inspection independently; one failure never stops the rest.

    Returns:
        {"success": [inspection_id, ...],
         "errors": [{"inspection_id": ..., "code": ..., "message": ...}, ...]}
    """
    engine = engine or _engine()
    success: list[int] = []
    errors: list[dict] = []

    for inspection_id in inspection_ids:
        try:
            result = engine.attempt_transition(
                inspection_id, InspectionState.APPROVED, principal, {"comments": comments},
            )
        except Exception as exc:
            logger.warning("Bulk approve failed for inspection %s", inspection_id, exc_info=True,
                           extra={"tenant_id": principal.tenant_id, "inspection_id": inspection_id})
            errors.append({"inspection_id": inspection_id, "code": "storage_error", "message": str(exc)})
            continue
        if result.ok:
            success.append(inspection_id)
        else:
            errors.append({
                "inspection_id": inspection_id,
                "code": getattr(result.error, "code", "not_found"),
                "message": str(result.error),
            })

    if success:
        write_audit(
            "approval_workflow.bulk_approve",
            "bulk",
            tenant_id=principal.tenant_id,
            actor_user_id=principal.user_id,
            changes={"approved": success, "failed": [e["inspection_id"] for e in errors]},
        )
        db.session.commit()

    logger.info(
        "Bulk approval: %d of %d approved", len(success), len(inspection_ids),
        extra={"tenant_id": principal.tenant_id, "event_type": "bulk_approve"},
    )
    return {"success": success, "errors": errors}
