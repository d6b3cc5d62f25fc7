"""
Inspection Workflow Platform
Inspection domain models.

Models:
    - Inspection: the subject of the workflow (one vehicle inspection)
    - InspectionItem: one inspected component with its assessed condition

Inspections are never hard-deleted; ``status`` only moves through the
transition engine (app.services.workflow_engine).
"""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel


INSPECTION_STATUSES = {
    "draft", "in_progress", "pending_review", "approved",
    "rejected", "changes_requested", "sent_to_customer", "completed",
}
URGENCY_LEVELS = {"low", "medium", "high", "critical"}
ITEM_CONDITIONS = {"good", "fair", "needs_attention", "needs_immediate"}


def _utcnow():
    return datetime.now(timezone.utc)


class Inspection(TenantModel):
    __tablename__ = "inspections"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "reference_number", name="uq_inspection_tenant_ref"),
        db.Index("ix_inspections_tenant_status_entered", "tenant_id", "status", "state_entered_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    reference_number = db.Column(db.String(50), nullable=False)
    status = db.Column(db.String(30), nullable=False, default="draft",
                       comment="draft | in_progress | pending_review | approved | rejected | "
                               "changes_requested | sent_to_customer | completed")
    urgency_level = db.Column(db.String(20), nullable=False, default="low",
                              comment="low | medium | high | critical")

    assigned_technician_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    # Customer & vehicle
    customer_name = db.Column(db.String(200))
    customer_phone = db.Column(db.String(40))
    customer_email = db.Column(db.String(200))
    vehicle_description = db.Column(db.String(200))
    odometer_reading = db.Column(db.Integer)
    previous_odometer_reading = db.Column(db.Integer)
    vehicle_available = db.Column(db.Boolean, nullable=False, default=True)

    # Lifecycle bookkeeping
    started_at = db.Column(db.DateTime(timezone=True))
    completed_at = db.Column(db.DateTime(timezone=True))
    customer_viewed_at = db.Column(db.DateTime(timezone=True))
    flagged_for_review_at = db.Column(db.DateTime(timezone=True))
    rejection_reason = db.Column(db.Text)
    summary = db.Column(db.JSON, default=dict)
    state_entered_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    # Optimistic concurrency: every UPDATE is guarded by the version it read.
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    items = db.relationship(
        "InspectionItem", back_populates="inspection",
        order_by="InspectionItem.id", lazy="selectin",
    )

    def to_dict(self, include_items=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "reference_number": self.reference_number,
            "status": self.status,
            "urgency_level": self.urgency_level,
            "assigned_technician_id": self.assigned_technician_id,
            "created_by": self.created_by,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "customer_email": self.customer_email,
            "vehicle_description": self.vehicle_description,
            "odometer_reading": self.odometer_reading,
            "previous_odometer_reading": self.previous_odometer_reading,
            "vehicle_available": self.vehicle_available,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "customer_viewed_at": self.customer_viewed_at.isoformat() if self.customer_viewed_at else None,
            "flagged_for_review_at": (
                self.flagged_for_review_at.isoformat() if self.flagged_for_review_at else None
            ),
            "rejection_reason": self.rejection_reason,
            "summary": self.summary or {},
            "state_entered_at": self.state_entered_at.isoformat() if self.state_entered_at else None,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.items]
        return d

    def __repr__(self):
        return f"<Inspection {self.id}: {self.reference_number} [{self.status}] v{self.version}>"


class InspectionItem(db.Model):
    __tablename__ = "inspection_items"

    id = db.Column(db.Integer, primary_key=True)
    inspection_id = db.Column(
        db.Integer, db.ForeignKey("inspections.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    category = db.Column(db.String(60), nullable=False)
    component = db.Column(db.String(120), nullable=False)
    condition = db.Column(db.String(30), nullable=True,
                          comment="good | fair | needs_attention | needs_immediate; NULL = unassessed")
    notes = db.Column(db.Text)
    photo_count = db.Column(db.Integer, nullable=False, default=0)
    voice_note_count = db.Column(db.Integer, nullable=False, default=0)
    cost_estimate = db.Column(db.Float)
    measurement_value = db.Column(db.Float)
    measurement_min = db.Column(db.Float)
    measurement_max = db.Column(db.Float)
    measurement_unit = db.Column(db.String(20))
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    inspection = db.relationship("Inspection", back_populates="items")

    def to_dict(self):
        return {
            "id": self.id,
            "inspection_id": self.inspection_id,
            "category": self.category,
            "component": self.component,
            "condition": self.condition,
            "notes": self.notes,
            "photo_count": self.photo_count or 0,
            "voice_note_count": self.voice_note_count or 0,
            "cost_estimate": self.cost_estimate,
            "measurement_value": self.measurement_value,
            "measurement_min": self.measurement_min,
            "measurement_max": self.measurement_max,
            "measurement_unit": self.measurement_unit,
        }

    def __repr__(self):
        return f"<InspectionItem {self.id}: {self.category}/{self.component} [{self.condition}]>"
