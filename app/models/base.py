"""
TenantModel — abstract base for shop-scoped workflow tables.

Every row that belongs to a shop (inspections, reviews, history, config
overrides, timeout firings) carries an indexed ``tenant_id``; deleting the
shop removes them.
"""

from app.models import db


class TenantModel(db.Model):
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
