"""
Engagement domain models.

Models:
    - Engagement: one client engagement (audit, review, ...) of a firm.
    - EngagementTeamMember: a firm user staffed on the engagement. Every
      team member must certify independence before acceptance.
"""

from auditflow.models import db
from auditflow.models.base import TenantModel, iso


class Engagement(TenantModel):
    __tablename__ = "engagements"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    client_name = db.Column(db.String(255), nullable=False)
    engagement_type = db.Column(
        db.String(50),
        nullable=False,
        default="audit_financial_statements",
        comment="audit_financial_statements | review_financial_statements | compilation_financial_statements | ...",
    )
    period_end = db.Column(db.Date, nullable=True)
    status = db.Column(
        db.String(30),
        nullable=False,
        default="pending_acceptance",
        comment="pending_acceptance | accepted",
    )
    independence_confirmed = db.Column(db.Boolean, nullable=False, default=False)
    client_accepted = db.Column(db.Boolean, nullable=False, default=False)
    engagement_letter_signed = db.Column(db.Boolean, nullable=False, default=False)

    team_members = db.relationship(
        "EngagementTeamMember",
        back_populates="engagement",
        cascade="all, delete-orphan",
        order_by="EngagementTeamMember.id",
    )

    def to_dict(self, include_team=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "client_name": self.client_name,
            "engagement_type": self.engagement_type,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "status": self.status,
            "independence_confirmed": self.independence_confirmed,
            "client_accepted": self.client_accepted,
            "engagement_letter_signed": self.engagement_letter_signed,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if include_team:
            d["team"] = [m.to_dict() for m in self.team_members]
        return d

    def __repr__(self) -> str:
        return f"<Engagement #{self.id} {self.name!r} {self.status}>"


class EngagementTeamMember(TenantModel):
    __tablename__ = "engagement_team_members"

    id = db.Column(db.Integer, primary_key=True)
    engagement_id = db.Column(
        db.Integer,
        db.ForeignKey("engagements.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    engagement_role = db.Column(
        db.String(30),
        nullable=False,
        default="staff",
        comment="engagement_partner | manager | senior | staff | eqcr",
    )

    __table_args__ = (
        db.UniqueConstraint("engagement_id", "user_id", name="uq_team_engagement_user"),
    )

    engagement = db.relationship("Engagement", back_populates="team_members")
    user = db.relationship("User")

    def to_dict(self):
        return {
            "id": self.id,
            "engagement_id": self.engagement_id,
            "user_id": self.user_id,
            "full_name": self.user.full_name if self.user else None,
            "engagement_role": self.engagement_role,
        }
