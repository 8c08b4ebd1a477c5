"""
TenantModel — Abstract base class for firm-scoped models.

Every engagement-level table inherits from TenantModel instead of db.Model
directly. This adds:
  - tenant_id FK column with index
  - created_at / updated_at timestamps
"""

from datetime import datetime, timezone

from auditflow.models import db


def utcnow():
    return datetime.now(timezone.utc)


def iso(value):
    """Serialise an optional datetime for to_dict()."""
    return value.isoformat() if value else None


class TenantModel(db.Model):
    """Abstract base for tenant-scoped tables."""
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
