"""
Firm and user models.

Identity is delegated to the upstream provider. These rows carry only what
the acceptance workflow needs: the firm (tenant) scope, a display name that
audit events snapshot, and the firm role that gates partner decisions.
"""

from auditflow.models import db
from auditflow.models.base import iso, utcnow

FIRM_ROLES = frozenset({"partner", "manager", "senior", "staff", "admin"})


class Tenant(db.Model):
    """An audit firm. Every engagement and user belongs to exactly one."""

    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    users = db.relationship("User", back_populates="tenant", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "is_active": self.is_active,
            "created_at": iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<Tenant {self.slug}>"


class User(db.Model):
    """A firm member who can be staffed on engagements and act on them."""

    __tablename__ = "users"
    __table_args__ = (
        # Email is unique per firm, not globally
        db.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        db.Index("ix_users_tenant_id", "tenant_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    email = db.Column(db.String(200), nullable=False)
    full_name = db.Column(db.String(200))
    firm_role = db.Column(
        db.String(20),
        nullable=False,
        default="staff",
        comment="partner | manager | senior | staff | admin",
    )
    status = db.Column(db.String(20), default="active", comment="active | inactive")
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    tenant = db.relationship("Tenant", back_populates="users")

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def display_name(self) -> str:
        return self.full_name or self.email

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "full_name": self.full_name,
            "firm_role": self.firm_role,
            "status": self.status,
            "created_at": iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.firm_role})>"
