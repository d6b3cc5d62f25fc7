"""
Inspection Workflow — Persistence

SQLAlchemy implementation of the storage the transition engine and the
escalation sweep need. All reads used for decisions inside a transaction go
through ``lock_inspection`` (``SELECT … FOR UPDATE`` where the database
supports it, always refreshing the identity map), and the inspection row is
written with a version-guarded UPDATE (``version_id_col`` on the model).

The store never commits on its own except in ``record_firing``; the engine
owns the unit of work via ``commit`` / ``rollback``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from app.models import db
from app.models.auth import Tenant, User
from app.models.inspection import Inspection, InspectionItem
from app.models.workflow import ApprovalHistory, ApprovalWorkflow, TimeoutFiring
from app.services.workflow_conditions import as_utc
from app.services.workflow_rules import WorkflowStatus

logger = logging.getLogger(__name__)

_PENDING = WorkflowStatus.PENDING.value


@dataclass(frozen=True)
class InspectionSnapshot:
    """Plain-data view of an inspection, its items and its review record."""
    inspection: dict
    items: tuple[dict, ...]
    workflow: dict | None

    @property
    def id(self) -> int:
        return self.inspection["id"]

    @property
    def tenant_id(self) -> int:
        return self.inspection["tenant_id"]

    @property
    def status(self) -> str:
        return self.inspection["status"]

    @property
    def version(self) -> int:
        return self.inspection["version"]


def entered_key(value: datetime) -> str:
    """Stable idempotency key for a state-entry timestamp."""
    return as_utc(value).replace(microsecond=0).isoformat()


class WorkflowStore:
    """Storage operations over the Flask-SQLAlchemy session."""

    # ── Unit of work ─────────────────────────────────────────────────────

    def commit(self) -> None:
        db.session.commit()

    def rollback(self) -> None:
        db.session.rollback()

    def flush(self) -> None:
        db.session.flush()

    def add(self, obj) -> None:
        db.session.add(obj)

    # ── Inspections ──────────────────────────────────────────────────────

    def _items(self, inspection_id: int) -> tuple[dict, ...]:
        rows = db.session.execute(
            select(InspectionItem)
            .where(InspectionItem.inspection_id == inspection_id)
            .order_by(InspectionItem.id)
            .execution_options(populate_existing=True)
        ).scalars().all()
        return tuple(r.to_dict() for r in rows)

    def snapshot_of(self, inspection: Inspection) -> InspectionSnapshot:
        workflow = self.pending_workflow(inspection.id) or self.latest_workflow(inspection.id)
        return InspectionSnapshot(
            inspection=inspection.to_dict(),
            items=self._items(inspection.id),
            workflow=workflow.to_dict() if workflow else None,
        )

    def load_inspection(self, inspection_id: int) -> InspectionSnapshot | None:
        row = db.session.execute(
            select(Inspection)
            .where(Inspection.id == inspection_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            return None
        return self.snapshot_of(row)

    def lock_inspection(self, inspection_id: int) -> Inspection | None:
        return db.session.execute(
            select(Inspection)
            .where(Inspection.id == inspection_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def find_in_state_since(
        self, tenant_id: int, state: str, entered_before: datetime,
        entered_after: datetime | None = None,
    ) -> list[int]:
        """Ids of inspections in *state* whose state_entered_at is at or before *entered_before*."""
        stmt = (
            select(Inspection.id)
            .where(
                Inspection.tenant_id == tenant_id,
                Inspection.status == state,
                Inspection.state_entered_at <= entered_before,
            )
            .order_by(Inspection.state_entered_at, Inspection.id)
        )
        if entered_after is not None:
            stmt = stmt.where(Inspection.state_entered_at > entered_after)
        return list(db.session.execute(stmt).scalars().all())

    # ── Approval workflows ───────────────────────────────────────────────

    def get_workflow(self, workflow_id: int) -> ApprovalWorkflow | None:
        return db.session.execute(
            select(ApprovalWorkflow)
            .where(ApprovalWorkflow.id == workflow_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def pending_workflow(self, inspection_id: int, for_update: bool = False) -> ApprovalWorkflow | None:
        stmt = (
            select(ApprovalWorkflow)
            .where(
                ApprovalWorkflow.inspection_id == inspection_id,
                ApprovalWorkflow.status == _PENDING,
            )
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return db.session.execute(stmt).scalars().first()

    def latest_workflow(self, inspection_id: int) -> ApprovalWorkflow | None:
        return db.session.execute(
            select(ApprovalWorkflow)
            .where(ApprovalWorkflow.inspection_id == inspection_id)
            .order_by(ApprovalWorkflow.submitted_at.desc(), ApprovalWorkflow.id.desc())
        ).scalars().first()

    def find_overdue(self, tenant_id: int, priority: str, submitted_before: datetime) -> list[int]:
        """Pending, never-escalated workflows of *priority* submitted at or before the cutoff."""
        return list(db.session.execute(
            select(ApprovalWorkflow.id)
            .where(
                ApprovalWorkflow.tenant_id == tenant_id,
                ApprovalWorkflow.status == _PENDING,
                ApprovalWorkflow.priority == priority,
                ApprovalWorkflow.escalated_at.is_(None),
                ApprovalWorkflow.submitted_at <= submitted_before,
            )
            .order_by(ApprovalWorkflow.submitted_at, ApprovalWorkflow.id)
        ).scalars().all())

    def claim_escalation(self, workflow_id: int, target_user_id: int, now: datetime) -> bool:
        """Conditional UPDATE; False when another sweep escalated (or closed) it first."""
        result = db.session.execute(
            update(ApprovalWorkflow)
            .where(
                ApprovalWorkflow.id == workflow_id,
                ApprovalWorkflow.status == _PENDING,
                ApprovalWorkflow.escalated_at.is_(None),
            )
            .values(
                escalated_at=now,
                escalated_to=target_user_id,
                assigned_to=target_user_id,
                priority="urgent",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ── History ──────────────────────────────────────────────────────────

    def append_history(self, **fields) -> ApprovalHistory:
        entry = ApprovalHistory(**fields)
        db.session.add(entry)
        db.session.flush()
        return entry

    def history_for(self, inspection_id: int) -> list[ApprovalHistory]:
        return list(db.session.execute(
            select(ApprovalHistory)
            .where(ApprovalHistory.inspection_id == inspection_id)
            .order_by(ApprovalHistory.created_at, ApprovalHistory.id)
        ).scalars().all())

    # ── Timeout firings ──────────────────────────────────────────────────

    def has_fired(self, inspection_id: int, state: str, state_entered_at: datetime, kind: str) -> bool:
        return db.session.execute(
            select(TimeoutFiring.id).where(
                TimeoutFiring.inspection_id == inspection_id,
                TimeoutFiring.state == state,
                TimeoutFiring.state_entered_key == entered_key(state_entered_at),
                TimeoutFiring.kind == kind,
            )
        ).first() is not None

    def record_firing(
        self, tenant_id: int, inspection_id: int, state: str,
        state_entered_at: datetime, kind: str, now: datetime | None = None,
    ) -> bool:
        """Insert and commit a firing row. False means it had already fired."""
        firing = TimeoutFiring(
            tenant_id=tenant_id,
            inspection_id=inspection_id,
            state=state,
            state_entered_key=entered_key(state_entered_at),
            kind=kind,
        )
        if now is not None:
            firing.fired_at = now
        try:
            db.session.add(firing)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return False
        return True

    # ── Users & tenants ──────────────────────────────────────────────────

    def active_tenant_ids(self) -> list[int]:
        return list(db.session.execute(
            select(Tenant.id).where(Tenant.is_active.is_(True)).order_by(Tenant.id)
        ).scalars().all())

    def active_users_with_role(self, tenant_id: int, role: str) -> list[User]:
        return list(db.session.execute(
            select(User)
            .where(User.tenant_id == tenant_id, User.role == role, User.status == "active")
            .order_by(User.id)
        ).scalars().all())

    def first_active_user(self, tenant_id: int, roles, exclude_user_id: int | None = None) -> User | None:
        """First active user holding the earliest role in *roles* that has anyone."""
        for role in roles:
            for user in self.active_users_with_role(tenant_id, getattr(role, "value", role)):
                if user.id != exclude_user_id:
                    return user
        return None
