"""
Engagement Acceptance models — independence, client risk, engagement letter,
workflow markers and the acceptance audit trail.

Models:
    - AcceptanceWorkflow: per-engagement stage completion markers and the
      partner-approval decision. Created by the first stage-record write.
    - IndependenceDeclaration: one per team member per engagement.
    - ClientRiskAssessment: one per engagement, three rated sections.
    - EngagementLetter: versioned letter, draft → pending_client → signed.
    - AcceptanceEvent: append-only log of every acceptance state change.

Concurrency:
    Every mutable table carries ``row_version`` mapped as SQLAlchemy's
    ``version_id_col``. A flush against a row somebody else updated raises
    StaleDataError, which the service layer turns into a 409 ConflictError.
"""

from auditflow.models import db
from auditflow.models.base import TenantModel, iso, utcnow

# ── Constants ─────────────────────────────────────────────────────────────────

STAGES = ("independence_check", "risk_assessment", "engagement_letter", "partner_approval")

RECOMMENDATIONS = frozenset({"accept", "accept_with_conditions", "decline"})

# Forward-only letter lifecycle
LETTER_TRANSITIONS = {
    "draft": "pending_client",
    "pending_client": "signed",
}

EVENT_TYPES = frozenset({
    "declaration_saved",
    "declaration_certified",
    "risk_assessment_saved",
    "risk_assessment_submitted",
    "partner_decision",
    "letter_saved",
    "letter_sent",
    "letter_signed",
    "stage_completed",
    "acceptance_completed",
})


# ═════════════════════════════════════════════════════════════════════════════
# Workflow
# ═════════════════════════════════════════════════════════════════════════════


class AcceptanceWorkflow(TenantModel):
    """
    Completion markers for the four acceptance stages of one engagement.

    Business rules:
    - Marker timestamps are written once and never cleared, so a stage that
      was complete stays complete.
    - completed_at is set only by the explicit complete-acceptance action
      and is terminal.
    """

    __tablename__ = "acceptance_workflows"

    id = db.Column(db.Integer, primary_key=True)
    engagement_id = db.Column(
        db.Integer,
        db.ForeignKey("engagements.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    independence_confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    risk_assessment_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    letter_signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    partner_approval_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    requires_partner_approval = db.Column(db.Boolean, nullable=False, default=False)
    partner_approval_status = db.Column(
        db.String(20),
        nullable=False,
        default="not_required",
        comment="not_required | pending | approved | rejected",
    )
    partner_approval_notes = db.Column(db.Text, nullable=True)
    partner_approved_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    active_stage = db.Column(db.String(30), nullable=False, default="independence_check")
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    row_version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": row_version}

    _MARKER_COLUMNS = {
        "independence_check": "independence_confirmed_at",
        "risk_assessment": "risk_assessment_completed_at",
        "engagement_letter": "letter_signed_at",
        "partner_approval": "partner_approval_completed_at",
    }

    def marker(self, stage):
        return getattr(self, self._MARKER_COLUMNS[stage])

    def set_marker(self, stage, when=None):
        """Write the completion marker for ``stage``. Returns False if already set."""
        column = self._MARKER_COLUMNS[stage]
        if getattr(self, column) is not None:
            return False
        setattr(self, column, when or utcnow())
        return True

    @property
    def markers(self) -> dict:
        return {stage: self.marker(stage) is not None for stage in STAGES}

    @property
    def is_accepted(self) -> bool:
        return self.completed_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "engagement_id": self.engagement_id,
            "independence_confirmed_at": iso(self.independence_confirmed_at),
            "risk_assessment_completed_at": iso(self.risk_assessment_completed_at),
            "letter_signed_at": iso(self.letter_signed_at),
            "partner_approval_completed_at": iso(self.partner_approval_completed_at),
            "requires_partner_approval": self.requires_partner_approval,
            "partner_approval_status": self.partner_approval_status,
            "partner_approval_notes": self.partner_approval_notes,
            "partner_approved_by": self.partner_approved_by,
            "active_stage": self.active_stage,
            "is_accepted": self.is_accepted,
            "completed_at": iso(self.completed_at),
            "completed_by": self.completed_by,
            "version": self.row_version,
        }

    def __repr__(self) -> str:
        return f"<AcceptanceWorkflow engagement={self.engagement_id} accepted={self.is_accepted}>"


# ═════════════════════════════════════════════════════════════════════════════
# Stage 1: Independence
# ═════════════════════════════════════════════════════════════════════════════


class IndependenceDeclaration(TenantModel):
    """Independence declaration of one team member for one engagement.

    threats and overall_assessment are derived from the relationship lists
    on every save; stored values are never trusted.
    """

    __tablename__ = "independence_declarations"

    id = db.Column(db.Integer, primary_key=True)
    engagement_id = db.Column(
        db.Integer,
        db.ForeignKey("engagements.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    team_member_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    team_member_name_snapshot = db.Column(db.String(255), nullable=True)

    has_financial_interest = db.Column(db.Boolean, nullable=False, default=False)
    financial_relationships = db.Column(db.JSON, nullable=False, default=list)
    has_personal_relationship = db.Column(db.Boolean, nullable=False, default=False)
    personal_relationships = db.Column(db.JSON, nullable=False, default=list)
    has_service_conflict = db.Column(db.Boolean, nullable=False, default=False)
    service_conflicts = db.Column(db.JSON, nullable=False, default=list)
    has_fee_arrangement_issue = db.Column(db.Boolean, nullable=False, default=False)
    fee_arrangement_description = db.Column(db.Text, nullable=True)
    has_other_threat = db.Column(db.Boolean, nullable=False, default=False)
    other_threats = db.Column(db.Text, nullable=True)

    threats = db.Column(db.JSON, nullable=False, default=list)
    overall_assessment = db.Column(
        db.String(20),
        nullable=False,
        default="none",
        comment="none | low | moderate | high | unacceptable",
    )
    safeguards_applied = db.Column(db.JSON, nullable=False, default=list)

    is_certified = db.Column(db.Boolean, nullable=False, default=False)
    certified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    certification_statement = db.Column(db.Text, nullable=True)

    row_version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": row_version}

    __table_args__ = (
        db.UniqueConstraint("engagement_id", "team_member_id", name="uq_declaration_member"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "engagement_id": self.engagement_id,
            "team_member_id": self.team_member_id,
            "team_member_name": self.team_member_name_snapshot,
            "has_financial_interest": self.has_financial_interest,
            "financial_relationships": self.financial_relationships or [],
            "has_personal_relationship": self.has_personal_relationship,
            "personal_relationships": self.personal_relationships or [],
            "has_service_conflict": self.has_service_conflict,
            "service_conflicts": self.service_conflicts or [],
            "has_fee_arrangement_issue": self.has_fee_arrangement_issue,
            "fee_arrangement_description": self.fee_arrangement_description,
            "has_other_threat": self.has_other_threat,
            "other_threats": self.other_threats,
            "threats": self.threats or [],
            "overall_assessment": self.overall_assessment,
            "safeguards_applied": self.safeguards_applied or [],
            "is_certified": self.is_certified,
            "certified_at": iso(self.certified_at),
            "certification_statement": self.certification_statement,
            "version": self.row_version,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


# ═════════════════════════════════════════════════════════════════════════════
# Stage 2: Client risk assessment
# ═════════════════════════════════════════════════════════════════════════════


class ClientRiskAssessment(TenantModel):
    __tablename__ = "client_risk_assessments"

    id = db.Column(db.Integer, primary_key=True)
    engagement_id = db.Column(
        db.Integer,
        db.ForeignKey("engagements.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    # Sections hold categorical fields plus a recomputed overall_assessment
    management_integrity = db.Column(db.JSON, nullable=False, default=dict)
    financial_stability = db.Column(db.JSON, nullable=False, default=dict)
    engagement_risk = db.Column(db.JSON, nullable=False, default=dict)

    overall_risk_rating = db.Column(db.String(20), nullable=False, default="low")
    acceptance_recommendation = db.Column(
        db.String(30),
        nullable=True,
        comment="accept | accept_with_conditions | decline",
    )
    conditions = db.Column(db.JSON, nullable=False, default=list)
    decline_reason = db.Column(db.Text, nullable=True)

    status = db.Column(
        db.String(20),
        nullable=False,
        default="draft",
        comment="draft | submitted | approved | rejected",
    )
    prepared_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    prepared_at = db.Column(db.DateTime(timezone=True), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    partner_approval_required = db.Column(db.Boolean, nullable=False, default=False)
    partner_approved_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    partner_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    partner_approval_notes = db.Column(db.Text, nullable=True)

    row_version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": row_version}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "engagement_id": self.engagement_id,
            "management_integrity": self.management_integrity or {},
            "financial_stability": self.financial_stability or {},
            "engagement_risk": self.engagement_risk or {},
            "overall_risk_rating": self.overall_risk_rating,
            "acceptance_recommendation": self.acceptance_recommendation,
            "conditions": self.conditions or [],
            "decline_reason": self.decline_reason,
            "status": self.status,
            "prepared_by": self.prepared_by,
            "prepared_at": iso(self.prepared_at),
            "submitted_at": iso(self.submitted_at),
            "partner_approval_required": self.partner_approval_required,
            "partner_approved_by": self.partner_approved_by,
            "partner_approved_at": iso(self.partner_approved_at),
            "partner_approval_notes": self.partner_approval_notes,
            "version": self.row_version,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


# ═════════════════════════════════════════════════════════════════════════════
# Stage 3: Engagement letter
# ═════════════════════════════════════════════════════════════════════════════


class EngagementLetter(TenantModel):
    __tablename__ = "engagement_letters"

    id = db.Column(db.Integer, primary_key=True)
    engagement_id = db.Column(
        db.Integer,
        db.ForeignKey("engagements.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    scope = db.Column(db.JSON, nullable=False, default=dict)
    responsibilities = db.Column(db.JSON, nullable=False, default=dict)
    terms = db.Column(db.JSON, nullable=False, default=dict)
    additional_services = db.Column(db.JSON, nullable=False, default=list)
    special_considerations = db.Column(db.JSON, nullable=False, default=list)

    version = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(
        db.String(20),
        nullable=False,
        default="draft",
        comment="draft | pending_client | signed",
    )
    auditor_signature = db.Column(db.JSON, nullable=True)
    client_signature = db.Column(db.JSON, nullable=True)
    generated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    signed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    row_version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": row_version}

    __table_args__ = (
        db.UniqueConstraint("engagement_id", "version", name="uq_letter_engagement_version"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "engagement_id": self.engagement_id,
            "scope": self.scope or {},
            "responsibilities": self.responsibilities or {},
            "terms": self.terms or {},
            "additional_services": self.additional_services or [],
            "special_considerations": self.special_considerations or [],
            "version": self.version,
            "status": self.status,
            "auditor_signature": self.auditor_signature,
            "client_signature": self.client_signature,
            "generated_at": iso(self.generated_at),
            "sent_at": iso(self.sent_at),
            "signed_at": iso(self.signed_at),
            "row_version": self.row_version,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


# ═════════════════════════════════════════════════════════════════════════════
# Audit trail
# ═════════════════════════════════════════════════════════════════════════════


class AcceptanceEvent(db.Model):
    """
    Immutable record of one acceptance state change.

    Records are never updated or deleted. actor_name_snapshot is captured at
    write time so the trail stays readable if the user row is removed.
    """

    __tablename__ = "acceptance_events"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    engagement_id = db.Column(
        db.Integer,
        db.ForeignKey("engagements.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type = db.Column(db.String(40), nullable=False)
    stage = db.Column(db.String(30), nullable=True)
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor_name_snapshot = db.Column(db.String(255), nullable=True)
    detail = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        db.Index("ix_acceptance_events_engagement", "engagement_id", "id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "engagement_id": self.engagement_id,
            "event_type": self.event_type,
            "stage": self.stage,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name_snapshot,
            "detail": self.detail or {},
            "created_at": iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<AcceptanceEvent #{self.id} {self.event_type} engagement={self.engagement_id}>"
