"""Engagement acceptance — firms, engagements, stage records, audit trail.

Revision ID: a1c3e5f7b901
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

import sqlalchemy as sa
from alembic import op

revision = "a1c3e5f7b901"
down_revision = None
branch_labels = None
depends_on = None


def _tenant_columns():
    return [
        sa.Column("tenant_id", sa.Integer,
                  sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    ]


def _engagement_fk(**kw):
    return sa.Column("engagement_id", sa.Integer,
                     sa.ForeignKey("engagements.id", ondelete="CASCADE"), nullable=False, **kw)


def _user_fk(name, ondelete="SET NULL", nullable=True):
    return sa.Column(name, sa.Integer,
                     sa.ForeignKey("users.id", ondelete=ondelete), nullable=nullable)


def upgrade():
    # ── Firms & users ────────────────────────────────────────────────
    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("tenant_id", sa.Integer,
                  sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("email", sa.String(200), nullable=False),
        sa.Column("full_name", sa.String(200), nullable=True),
        sa.Column("firm_role", sa.String(20), nullable=False, server_default="staff"),
        sa.Column("status", sa.String(20), server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
    )
    op.create_index("ix_users_tenant_id", "users", ["tenant_id"])

    # ── Engagements ──────────────────────────────────────────────────
    op.create_table(
        "engagements",
        sa.Column("id", sa.Integer, primary_key=True),
        *_tenant_columns(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("client_name", sa.String(255), nullable=False),
        sa.Column("engagement_type", sa.String(50), nullable=False,
                  server_default="audit_financial_statements"),
        sa.Column("period_end", sa.Date, nullable=True),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending_acceptance"),
        sa.Column("independence_confirmed", sa.Boolean, nullable=False, server_default=sa.text("0")),
        sa.Column("client_accepted", sa.Boolean, nullable=False, server_default=sa.text("0")),
        sa.Column("engagement_letter_signed", sa.Boolean, nullable=False, server_default=sa.text("0")),
    )
    op.create_index("ix_engagements_tenant_id", "engagements", ["tenant_id"])

    op.create_table(
        "engagement_team_members",
        sa.Column("id", sa.Integer, primary_key=True),
        *_tenant_columns(),
        _engagement_fk(),
        _user_fk("user_id", ondelete="CASCADE", nullable=False),
        sa.Column("engagement_role", sa.String(30), nullable=False, server_default="staff"),
        sa.UniqueConstraint("engagement_id", "user_id", name="uq_team_engagement_user"),
    )
    op.create_index("ix_engagement_team_members_tenant_id", "engagement_team_members", ["tenant_id"])
    op.create_index("ix_engagement_team_members_engagement_id", "engagement_team_members", ["engagement_id"])

    # ── Workflow ─────────────────────────────────────────────────────
    op.create_table(
        "acceptance_workflows",
        sa.Column("id", sa.Integer, primary_key=True),
        *_tenant_columns(),
        _engagement_fk(unique=True),
        sa.Column("independence_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("risk_assessment_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("letter_signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("partner_approval_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("requires_partner_approval", sa.Boolean, nullable=False, server_default=sa.text("0")),
        sa.Column("partner_approval_status", sa.String(20), nullable=False, server_default="not_required"),
        sa.Column("partner_approval_notes", sa.Text, nullable=True),
        _user_fk("partner_approved_by"),
        sa.Column("active_stage", sa.String(30), nullable=False, server_default="independence_check"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _user_fk("completed_by"),
        sa.Column("row_version", sa.Integer, nullable=False),
    )
    op.create_index("ix_acceptance_workflows_tenant_id", "acceptance_workflows", ["tenant_id"])

    # ── Stage 1: independence ───────────────────────────────────────
    op.create_table(
        "independence_declarations",
        sa.Column("id", sa.Integer, primary_key=True),
        *_tenant_columns(),
        _engagement_fk(),
        _user_fk("team_member_id", ondelete="CASCADE", nullable=False),
        sa.Column("team_member_name_snapshot", sa.String(255), nullable=True),
        sa.Column("has_financial_interest", sa.Boolean, nullable=False, server_default=sa.text("0")),
        sa.Column("financial_relationships", sa.JSON, nullable=False),
        sa.Column("has_personal_relationship", sa.Boolean, nullable=False, server_default=sa.text("0")),
        sa.Column("personal_relationships", sa.JSON, nullable=False),
        sa.Column("has_service_conflict", sa.Boolean, nullable=False, server_default=sa.text("0")),
        sa.Column("service_conflicts", sa.JSON, nullable=False),
        sa.Column("has_fee_arrangement_issue", sa.Boolean, nullable=False, server_default=sa.text("0")),
        sa.Column("fee_arrangement_description", sa.Text, nullable=True),
        sa.Column("has_other_threat", sa.Boolean, nullable=False, server_default=sa.text("0")),
        sa.Column("other_threats", sa.Text, nullable=True),
        sa.Column("threats", sa.JSON, nullable=False),
        sa.Column("overall_assessment", sa.String(20), nullable=False, server_default="none"),
        sa.Column("safeguards_applied", sa.JSON, nullable=False),
        sa.Column("is_certified", sa.Boolean, nullable=False, server_default=sa.text("0")),
        sa.Column("certified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("certification_statement", sa.Text, nullable=True),
        sa.Column("row_version", sa.Integer, nullable=False),
        sa.UniqueConstraint("engagement_id", "team_member_id", name="uq_declaration_member"),
    )
    op.create_index("ix_independence_declarations_tenant_id", "independence_declarations", ["tenant_id"])
    op.create_index("ix_independence_declarations_engagement_id", "independence_declarations", ["engagement_id"])

    # ── Stage 2: client risk ────────────────────────────────────────
    op.create_table(
        "client_risk_assessments",
        sa.Column("id", sa.Integer, primary_key=True),
        *_tenant_columns(),
        _engagement_fk(unique=True),
        sa.Column("management_integrity", sa.JSON, nullable=False),
        sa.Column("financial_stability", sa.JSON, nullable=False),
        sa.Column("engagement_risk", sa.JSON, nullable=False),
        sa.Column("overall_risk_rating", sa.String(20), nullable=False, server_default="low"),
        sa.Column("acceptance_recommendation", sa.String(30), nullable=True),
        sa.Column("conditions", sa.JSON, nullable=False),
        sa.Column("decline_reason", sa.Text, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        _user_fk("prepared_by"),
        sa.Column("prepared_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("partner_approval_required", sa.Boolean, nullable=False, server_default=sa.text("0")),
        _user_fk("partner_approved_by"),
        sa.Column("partner_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("partner_approval_notes", sa.Text, nullable=True),
        sa.Column("row_version", sa.Integer, nullable=False),
    )
    op.create_index("ix_client_risk_assessments_tenant_id", "client_risk_assessments", ["tenant_id"])

    # ── Stage 3: engagement letter ──────────────────────────────────
    op.create_table(
        "engagement_letters",
        sa.Column("id", sa.Integer, primary_key=True),
        *_tenant_columns(),
        _engagement_fk(),
        sa.Column("scope", sa.JSON, nullable=False),
        sa.Column("responsibilities", sa.JSON, nullable=False),
        sa.Column("terms", sa.JSON, nullable=False),
        sa.Column("additional_services", sa.JSON, nullable=False),
        sa.Column("special_considerations", sa.JSON, nullable=False),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("auditor_signature", sa.JSON, nullable=True),
        sa.Column("client_signature", sa.JSON, nullable=True),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer, nullable=False),
        sa.UniqueConstraint("engagement_id", "version", name="uq_letter_engagement_version"),
    )
    op.create_index("ix_engagement_letters_tenant_id", "engagement_letters", ["tenant_id"])
    op.create_index("ix_engagement_letters_engagement_id", "engagement_letters", ["engagement_id"])

    # ── Audit trail ──────────────────────────────────────────────────
    op.create_table(
        "acceptance_events",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("tenant_id", sa.Integer,
                  sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        _engagement_fk(),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("stage", sa.String(30), nullable=True),
        _user_fk("actor_id"),
        sa.Column("actor_name_snapshot", sa.String(255), nullable=True),
        sa.Column("detail", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    )
    op.create_index("ix_acceptance_events_tenant_id", "acceptance_events", ["tenant_id"])
    op.create_index("ix_acceptance_events_engagement", "acceptance_events", ["engagement_id", "id"])


def downgrade():
    op.drop_index("ix_acceptance_events_engagement", table_name="acceptance_events")
    op.drop_index("ix_acceptance_events_tenant_id", table_name="acceptance_events")
    op.drop_table("acceptance_events")
    op.drop_index("ix_engagement_letters_engagement_id", table_name="engagement_letters")
    op.drop_index("ix_engagement_letters_tenant_id", table_name="engagement_letters")
    op.drop_table("engagement_letters")
    op.drop_index("ix_client_risk_assessments_tenant_id", table_name="client_risk_assessments")
    op.drop_table("client_risk_assessments")
    op.drop_index("ix_independence_declarations_engagement_id", table_name="independence_declarations")
    op.drop_index("ix_independence_declarations_tenant_id", table_name="independence_declarations")
    op.drop_table("independence_declarations")
    op.drop_index("ix_acceptance_workflows_tenant_id", table_name="acceptance_workflows")
    op.drop_table("acceptance_workflows")
    op.drop_index("ix_engagement_team_members_engagement_id", table_name="engagement_team_members")
    op.drop_index("ix_engagement_team_members_tenant_id", table_name="engagement_team_members")
    op.drop_table("engagement_team_members")
    op.drop_index("ix_engagements_tenant_id", table_name="engagements")
    op.drop_table("engagements")
    op.drop_index("ix_users_tenant_id", table_name="users")
    op.drop_table("users")
    op.drop_table("tenants")
