"""
Engagement Acceptance Service — orchestrates the four-stage workflow.

    independence_check → risk_assessment → engagement_letter → partner_approval

Owns every side effect of the workflow: stage record writes, completion
markers, the final acceptance and the audit trail. Stage status itself is
computed by the pure calculator in stage_status.py from a snapshot built
here.

Design decisions:
    - The workflow row is created implicitly by the first write; reads
      project an unsaved default row instead.
    - Completion is monotonic. Actions that complete a stage (certify,
      submit risk assessment, client signature, partner decision) are gated
      on the earlier stages, certified declarations and submitted risk
      assessments are locked, and the team roster freezes once independence
      is confirmed.
    - Stage 4 counts as required until the submitted risk assessment says
      otherwise; the requirement is frozen at submission.
    - complete_stage() is an idempotent marker write: a second call is a
      no-op with no audit event.
    - complete_acceptance() is terminal. Afterwards every stage record is
      read-only (ensure_open()).
    - Optimistic concurrency: callers may pass expected_version; the row's
      version_id_col also catches concurrent flushes (→ ConflictError).
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import select

from auditflow.core.exceptions import (
    ConflictError,
    InvariantViolationError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from auditflow.models import db
from auditflow.models.acceptance import (
    EVENT_TYPES,
    STAGES,
    AcceptanceEvent,
    AcceptanceWorkflow,
    ClientRiskAssessment,
    EngagementLetter,
    IndependenceDeclaration,
)
from auditflow.models.auth import User
from auditflow.models.base import utcnow
from auditflow.models.engagement import Engagement
from auditflow.services import independence as independence_rules
from auditflow.services import letter_rules, risk_rating
from auditflow.services.helpers.scoped_queries import get_scoped, get_scoped_or_none
from auditflow.services.stage_status import (
    STAGE_LABELS,
    AcceptanceSnapshot,
    acceptance_blockers,
    calculate_stage_status,
    completion_blockers,
)
from auditflow.utils.helpers import commit_or_raise, write_guard

logger = logging.getLogger(__name__)

DEFAULT_CERTIFICATION_STATEMENT = (
    "I certify that I have no known independence impairments that would "
    "preclude me from serving on this engagement."
)


# ── Private helpers ────────────────────────────────────────────────────────────


def _config(key: str, default):
    return current_app.config.get(key, default)


def _engagement(tenant_id: int, engagement_id: int) -> Engagement:
    return get_scoped(Engagement, engagement_id, tenant_id=tenant_id)


def _actor(tenant_id: int, actor_id: int | None) -> User:
    if not actor_id:
        raise PermissionDeniedError("An acting user is required for this operation")
    actor = get_scoped_or_none(User, int(actor_id), tenant_id=tenant_id)
    if actor is None:
        raise PermissionDeniedError(f"User {actor_id} is not a member of this firm")
    return actor


def _require_partner(actor: User) -> None:
    partner_roles = set(_config("PARTNER_ROLES", ("partner", "admin")))
    if actor.firm_role not in partner_roles:
        raise PermissionDeniedError(
            f"Only {' or '.join(sorted(partner_roles))} users may record partner decisions"
        )


def _check_version(obj, expected_version, resource: str) -> None:
    if expected_version is None:
        return
    try:
        expected = int(expected_version)
    except (TypeError, ValueError):
        raise ValidationError("expected_version must be an integer") from None
    if expected != obj.row_version:
        raise ConflictError(resource, "version", str(expected))


def _text(field: str, value) -> str:
    """Stripped free-text input; None counts as empty."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be text", details={field: "must be text"})
    return value.strip()


def _member_id(raw, default: int) -> int:
    if raw in (None, ""):
        return default
    if isinstance(raw, bool):
        raise ValidationError("team_member_id must be an integer", details={"team_member_id": raw})
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError("team_member_id must be an integer", details={"team_member_id": raw}) from None


def _find_workflow(engagement_id: int) -> AcceptanceWorkflow | None:
    return db.session.execute(
        select(AcceptanceWorkflow).where(AcceptanceWorkflow.engagement_id == engagement_id)
    ).scalar_one_or_none()


def _blank_workflow(tenant_id: int, engagement_id: int) -> AcceptanceWorkflow:
    """Unsaved workflow with defaults, used to project reads before any write."""
    return AcceptanceWorkflow(
        tenant_id=tenant_id,
        engagement_id=engagement_id,
        requires_partner_approval=False,
        partner_approval_status="not_required",
        active_stage=STAGES[0],
    )


def _workflow_for_write(tenant_id: int, engagement_id: int) -> AcceptanceWorkflow:
    workflow = _find_workflow(engagement_id)
    if workflow is None:
        workflow = _blank_workflow(tenant_id, engagement_id)
        db.session.add(workflow)
        db.session.flush()
        logger.info(
            "Acceptance workflow created",
            extra={"tenant_id": tenant_id, "engagement_id": engagement_id},
        )
    return workflow


def _record_event(
    tenant_id: int,
    engagement_id: int,
    event_type: str,
    actor: User | None,
    stage: str | None = None,
    detail: dict | None = None,
) -> None:
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown acceptance event type {event_type!r}")
    db.session.add(AcceptanceEvent(
        tenant_id=tenant_id,
        engagement_id=engagement_id,
        event_type=event_type,
        stage=stage,
        actor_id=actor.id if actor else None,
        actor_name_snapshot=actor.display_name if actor else None,
        detail=detail or {},
    ))


def _declarations(engagement_id: int) -> list[IndependenceDeclaration]:
    return db.session.execute(
        select(IndependenceDeclaration)
        .where(IndependenceDeclaration.engagement_id == engagement_id)
        .order_by(IndependenceDeclaration.created_at.asc(), IndependenceDeclaration.id.asc())
    ).scalars().all()


def _risk_assessment(engagement_id: int) -> ClientRiskAssessment | None:
    return db.session.execute(
        select(ClientRiskAssessment).where(ClientRiskAssessment.engagement_id == engagement_id)
    ).scalar_one_or_none()


def _current_letter(engagement_id: int) -> EngagementLetter | None:
    return db.session.execute(
        select(EngagementLetter)
        .where(EngagementLetter.engagement_id == engagement_id)
        .order_by(EngagementLetter.version.desc())
        .limit(1)
    ).scalar_one_or_none()


def _team(engagement: Engagement) -> list[dict]:
    return [
        {"user_id": m.user_id, "full_name": m.user.display_name if m.user else None}
        for m in engagement.team_members
    ]


def _build_snapshot(engagement: Engagement, workflow: AcceptanceWorkflow) -> AcceptanceSnapshot:
    assessment = _risk_assessment(engagement.id)
    letter = _current_letter(engagement.id)
    declarations = [d.to_dict() for d in _declarations(engagement.id)]

    # Undetermined until the risk assessment is submitted
    submitted = assessment is not None and assessment.status != "draft"
    partner_required = workflow.requires_partner_approval if submitted else True
    partner_status = workflow.partner_approval_status if submitted else "pending"

    return AcceptanceSnapshot(
        markers=workflow.markers,
        independence=independence_rules.assess_team_independence(declarations, _team(engagement)),
        risk_assessment=assessment.to_dict() if assessment else None,
        letter=letter.to_dict() if letter else None,
        partner_approval_required=partner_required,
        partner_approval_status=partner_status,
    )


def _require_earlier_complete(engagement: Engagement, workflow: AcceptanceWorkflow, stage: str) -> None:
    snapshot = _build_snapshot(engagement, workflow)
    status = calculate_stage_status(snapshot)
    blockers = [
        f"{STAGE_LABELS[s.stage]} must be completed first"
        for s in status.stages[: STAGES.index(stage)]
        if s.required and not s.complete
    ]
    if blockers:
        raise ValidationError(
            f"{STAGE_LABELS[stage]} cannot be completed yet",
            details={"stage": stage, "blockers": blockers},
        )


def ensure_open(tenant_id: int, engagement_id: int) -> None:
    """Refuse stage-record changes once acceptance has been completed."""
    workflow = _find_workflow(engagement_id)
    if workflow is not None and workflow.is_accepted:
        raise InvariantViolationError(
            "Engagement acceptance is complete; acceptance records are read-only",
            details={"engagement_id": engagement_id},
        )


def ensure_roster_open(tenant_id: int, engagement_id: int) -> None:
    """Refuse team changes once independence is confirmed for the current team."""
    ensure_open(tenant_id, engagement_id)
    engagement = _engagement(tenant_id, engagement_id)
    workflow = _find_workflow(engagement_id) or _blank_workflow(tenant_id, engagement_id)
    status = calculate_stage_status(_build_snapshot(engagement, workflow))
    if status["independence_check"].complete:
        raise InvariantViolationError(
            "Independence has been confirmed for the current team; the roster is locked",
            details={"engagement_id": engagement_id},
        )


# ═════════════════════════════════════════════════════════════════════════
# Workflow projection & orchestration
# ═════════════════════════════════════════════════════════════════════════


def get_workflow(tenant_id: int, engagement_id: int) -> dict:
    """Return the workflow projection: markers, stage status, progress, blockers."""
    engagement = _engagement(tenant_id, engagement_id)
    workflow = _find_workflow(engagement_id) or _blank_workflow(tenant_id, engagement_id)
    snapshot = _build_snapshot(engagement, workflow)
    status = calculate_stage_status(snapshot)
    blockers = acceptance_blockers(snapshot, status)
    return {
        "engagement": engagement.to_dict(),
        "workflow": workflow.to_dict(),
        "stage_status": status.to_dict(),
        "independence": snapshot.independence,
        "partner_approval_required": snapshot.partner_approval_required,
        "can_complete": {"can_complete": not blockers and not workflow.is_accepted, "blockers": blockers},
        "is_accepted": workflow.is_accepted,
    }


@write_guard("AcceptanceWorkflow")
def set_active_stage(tenant_id: int, engagement_id: int, stage: str, actor_id: int | None = None) -> dict:
    """Select the stage shown to the user; locked future stages are refused."""
    if stage not in STAGES:
        raise ValidationError(f"Unknown stage '{stage}'", details={"valid_stages": list(STAGES)})
    engagement = _engagement(tenant_id, engagement_id)
    _actor(tenant_id, actor_id)
    workflow = _workflow_for_write(tenant_id, engagement_id)
    status = calculate_stage_status(_build_snapshot(engagement, workflow))
    if not status.can_activate(stage):
        raise InvariantViolationError(
            f"{STAGE_LABELS[stage]} is locked until the earlier stages are complete",
            details={"stage": stage, "current_stage": status.current_stage},
        )
    workflow.active_stage = stage
    commit_or_raise("AcceptanceWorkflow")
    return get_workflow(tenant_id, engagement_id)


@write_guard("AcceptanceWorkflow")
def complete_stage(tenant_id: int, engagement_id: int, stage: str, actor_id: int | None = None) -> dict:
    """Write the completion marker for ``stage`` (idempotent).

    Raises:
        ValidationError: with details["blockers"] when earlier stages are
            incomplete or the stage's own predicate does not hold.
    """
    if stage not in STAGES:
        raise ValidationError(f"Unknown stage '{stage}'", details={"valid_stages": list(STAGES)})
    engagement = _engagement(tenant_id, engagement_id)
    actor = _actor(tenant_id, actor_id)

    existing = _find_workflow(engagement_id)
    if existing is not None and existing.marker(stage) is not None:
        logger.debug(
            "Stage already complete, nothing to do",
            extra={"tenant_id": tenant_id, "engagement_id": engagement_id, "stage": stage},
        )
        return get_workflow(tenant_id, engagement_id)

    workflow = existing or _workflow_for_write(tenant_id, engagement_id)
    snapshot = _build_snapshot(engagement, workflow)
    status = calculate_stage_status(snapshot)
    blockers = completion_blockers(snapshot, status, stage)
    if blockers:
        raise ValidationError(
            f"{STAGE_LABELS[stage]} cannot be completed",
            details={"stage": stage, "blockers": blockers},
        )

    workflow.set_marker(stage)
    if stage == "independence_check":
        engagement.independence_confirmed = True
    next_status = calculate_stage_status(_build_snapshot(engagement, workflow))
    if next_status.current_stage:
        workflow.active_stage = next_status.current_stage
    _record_event(tenant_id, engagement_id, "stage_completed", actor, stage=stage)
    commit_or_raise("AcceptanceWorkflow")

    logger.info(
        "Acceptance stage completed",
        extra={"tenant_id": tenant_id, "engagement_id": engagement_id, "stage": stage},
    )
    return get_workflow(tenant_id, engagement_id)


def acceptance_blocker_list(tenant_id: int, engagement_id: int) -> list[str]:
    """Human-readable blockers preventing final acceptance (empty = can complete)."""
    return get_workflow(tenant_id, engagement_id)["can_complete"]["blockers"]


@write_guard("AcceptanceWorkflow")
def complete_acceptance(tenant_id: int, engagement_id: int, actor_id: int | None = None) -> dict:
    """Accept the engagement. Terminal; only allowed with no blockers.

    Raises:
        InvariantViolationError: acceptance was already completed.
        ValidationError: details["blockers"] lists every unmet precondition.
    """
    engagement = _engagement(tenant_id, engagement_id)
    actor = _actor(tenant_id, actor_id)
    ensure_open(tenant_id, engagement_id)

    workflow = _workflow_for_write(tenant_id, engagement_id)
    snapshot = _build_snapshot(engagement, workflow)
    status = calculate_stage_status(snapshot)
    blockers = acceptance_blockers(snapshot, status)
    if blockers:
        raise ValidationError(
            "Engagement acceptance cannot be completed",
            details={"blockers": blockers},
        )

    now = utcnow()
    for state in status.stages:
        if state.complete:
            workflow.set_marker(state.stage, now)
    workflow.completed_at = now
    workflow.completed_by = actor.id

    engagement.status = "accepted"
    engagement.independence_confirmed = True
    engagement.client_accepted = True
    engagement.engagement_letter_signed = True

    _record_event(
        tenant_id, engagement_id, "acceptance_completed", actor,
        detail={"partner_approval_required": snapshot.partner_approval_required},
    )
    commit_or_raise("AcceptanceWorkflow")

    logger.info(
        "Engagement accepted",
        extra={"tenant_id": tenant_id, "engagement_id": engagement_id, "user_id": actor.id},
    )
    return get_workflow(tenant_id, engagement_id)


def list_events(tenant_id: int, engagement_id: int) -> list[dict]:
    """Full acceptance audit trail, oldest first."""
    _engagement(tenant_id, engagement_id)
    events = db.session.execute(
        select(AcceptanceEvent)
        .where(
            AcceptanceEvent.tenant_id == tenant_id,
            AcceptanceEvent.engagement_id == engagement_id,
        )
        .order_by(AcceptanceEvent.id.asc())
    ).scalars().all()
    return [e.to_dict() for e in events]


# ═════════════════════════════════════════════════════════════════════════
# Stage 1: Independence declarations
# ═════════════════════════════════════════════════════════════════════════

_DECLARATION_FIELDS = (
    "has_financial_interest",
    "financial_relationships",
    "has_personal_relationship",
    "personal_relationships",
    "has_service_conflict",
    "service_conflicts",
    "has_fee_arrangement_issue",
    "fee_arrangement_description",
    "has_other_threat",
    "other_threats",
    "safeguards_applied",
)

_DECLARATION_BOOL_FIELDS = frozenset(f for f in _DECLARATION_FIELDS if f.startswith("has_"))
_DECLARATION_LIST_FIELDS = frozenset({
    "financial_relationships", "personal_relationships", "service_conflicts", "safeguards_applied",
})


def list_declarations(tenant_id: int, engagement_id: int) -> dict:
    """All declarations of the engagement plus the team-level assessment."""
    engagement = _engagement(tenant_id, engagement_id)
    declarations = [d.to_dict() for d in _declarations(engagement_id)]
    return {
        "items": declarations,
        "total": len(declarations),
        "overall_independence": independence_rules.assess_team_independence(
            declarations, _team(engagement)
        ),
    }


@write_guard("IndependenceDeclaration")
def save_declaration(tenant_id: int, engagement_id: int, actor_id: int | None, data: dict) -> dict:
    """Create or update the acting team member's declaration.

    threats / overall_assessment in the payload are ignored and recomputed.
    """
    engagement = _engagement(tenant_id, engagement_id)
    actor = _actor(tenant_id, actor_id)
    ensure_open(tenant_id, engagement_id)

    member_id = _member_id(data.get("team_member_id"), actor.id)
    if member_id != actor.id:
        raise PermissionDeniedError("Team members may only save their own independence declaration")
    if not any(m.user_id == member_id for m in engagement.team_members):
        raise ValidationError(
            "Declarant is not on the engagement team",
            details={"team_member_id": member_id},
        )

    payload = {}
    for field in _DECLARATION_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field in _DECLARATION_BOOL_FIELDS:
            value = bool(value)
        elif field in _DECLARATION_LIST_FIELDS:
            value = value or []
        payload[field] = value

    declaration = db.session.execute(
        select(IndependenceDeclaration).where(
            IndependenceDeclaration.engagement_id == engagement_id,
            IndependenceDeclaration.team_member_id == member_id,
        )
    ).scalar_one_or_none()

    if declaration is not None:
        _check_version(declaration, data.get("expected_version"), "IndependenceDeclaration")
        if declaration.is_certified:
            raise InvariantViolationError(
                "A certified independence declaration cannot be changed",
                details={"declaration_id": declaration.id},
            )
        merged = {**declaration.to_dict(), **payload}
    else:
        merged = dict(payload)

    errors = independence_rules.validate_declaration(merged)
    if errors:
        raise ValidationError(errors[0]["message"], details={"errors": errors})

    assessment = independence_rules.assess_threats(merged)

    if declaration is None:
        declaration = IndependenceDeclaration(
            tenant_id=tenant_id,
            engagement_id=engagement_id,
            team_member_id=member_id,
        )
        db.session.add(declaration)
    for field, value in payload.items():
        setattr(declaration, field, value)
    declaration.team_member_name_snapshot = actor.display_name
    declaration.threats = [t.to_dict() for t in assessment.threats]
    declaration.overall_assessment = assessment.overall_assessment.value

    _workflow_for_write(tenant_id, engagement_id)
    db.session.flush()
    _record_event(
        tenant_id, engagement_id, "declaration_saved", actor,
        stage="independence_check",
        detail={"declaration_id": declaration.id, "overall_assessment": declaration.overall_assessment},
    )
    commit_or_raise("IndependenceDeclaration", data.get("expected_version"))

    logger.info(
        "Independence declaration saved",
        extra={"tenant_id": tenant_id, "engagement_id": engagement_id, "user_id": member_id},
    )
    return declaration.to_dict()


@write_guard("IndependenceDeclaration")
def certify_declaration(tenant_id: int, engagement_id: int, declaration_id: int, actor_id: int | None) -> dict:
    """Certify a declaration. Idempotent for an already certified declaration.

    Raises:
        InvariantViolationError: with details["blockers"] when the declaration
            has unacceptable threats, unresolved problems, or (raw_flags
            policy) any declared relationship.
    """
    _engagement(tenant_id, engagement_id)
    actor = _actor(tenant_id, actor_id)
    ensure_open(tenant_id, engagement_id)
    declaration = get_scoped(
        IndependenceDeclaration, declaration_id, tenant_id=tenant_id, engagement_id=engagement_id
    )
    if declaration.team_member_id != actor.id:
        raise PermissionDeniedError("Only the declarant may certify an independence declaration")
    if declaration.is_certified:
        return declaration.to_dict()

    policy = _config("INDEPENDENCE_CERTIFICATION_POLICY", "raw_flags")
    blockers = independence_rules.certification_blockers(declaration.to_dict(), policy)
    if blockers:
        raise InvariantViolationError(
            "Independence cannot be certified",
            details={"declaration_id": declaration.id, "policy": policy, "blockers": blockers},
        )

    declaration.is_certified = True
    declaration.certified_at = utcnow()
    declaration.certification_statement = _config(
        "CERTIFICATION_STATEMENT", DEFAULT_CERTIFICATION_STATEMENT
    )
    _record_event(
        tenant_id, engagement_id, "declaration_certified", actor,
        stage="independence_check", detail={"declaration_id": declaration.id},
    )
    commit_or_raise("IndependenceDeclaration")

    logger.info(
        "Independence certified",
        extra={"tenant_id": tenant_id, "engagement_id": engagement_id, "user_id": actor.id},
    )
    return declaration.to_dict()


# ═════════════════════════════════════════════════════════════════════════
# Stage 2: Client risk assessment
# ═════════════════════════════════════════════════════════════════════════


def get_risk_assessment(tenant_id: int, engagement_id: int) -> dict | None:
    _engagement(tenant_id, engagement_id)
    assessment = _risk_assessment(engagement_id)
    if assessment is None:
        return None
    result = assessment.to_dict()
    result["completeness"] = risk_rating.rating_completeness(result)
    return result


@write_guard("ClientRiskAssessment")
def save_risk_assessment(tenant_id: int, engagement_id: int, actor_id: int | None, data: dict) -> dict:
    """Create or update the draft risk assessment.

    Section overall assessments, the overall rating and the partner-approval
    flag are always recomputed from the submitted ratings.
    """
    _engagement(tenant_id, engagement_id)
    actor = _actor(tenant_id, actor_id)
    ensure_open(tenant_id, engagement_id)

    assessment = _risk_assessment(engagement_id)
    if assessment is not None:
        _check_version(assessment, data.get("expected_version"), "ClientRiskAssessment")
        if assessment.status != "draft":
            raise InvariantViolationError(
                f"Risk assessment is {assessment.status} and can no longer be edited",
                details={"status": assessment.status},
            )

    errors = risk_rating.validate_risk_assessment(data)
    if errors:
        raise ValidationError(errors[0]["message"], details={"errors": errors})

    computed = risk_rating.recompute_sections({
        section: data.get(section) or {} for section in risk_rating.SECTIONS
    })
    conditions = risk_rating.normalise_conditions(data.get("conditions"))
    recommendation = data["acceptance_recommendation"]

    if assessment is None:
        assessment = ClientRiskAssessment(
            tenant_id=tenant_id,
            engagement_id=engagement_id,
            prepared_by=actor.id,
            prepared_at=utcnow(),
        )
        db.session.add(assessment)

    for section in risk_rating.SECTIONS:
        setattr(assessment, section, computed[section])
    assessment.overall_risk_rating = computed["overall_risk_rating"]
    assessment.acceptance_recommendation = recommendation
    assessment.conditions = conditions if recommendation == "accept_with_conditions" else []
    assessment.decline_reason = None
    if recommendation == "decline":
        assessment.decline_reason = _text("decline_reason", data.get("decline_reason"))
    assessment.partner_approval_required = risk_rating.partner_approval_required(computed)

    _workflow_for_write(tenant_id, engagement_id)
    db.session.flush()
    _record_event(
        tenant_id, engagement_id, "risk_assessment_saved", actor,
        stage="risk_assessment",
        detail={
            "overall_risk_rating": assessment.overall_risk_rating,
            "acceptance_recommendation": recommendation,
        },
    )
    commit_or_raise("ClientRiskAssessment", data.get("expected_version"))

    logger.info(
        "Risk assessment saved",
        extra={"tenant_id": tenant_id, "engagement_id": engagement_id, "user_id": actor.id},
    )
    return get_risk_assessment(tenant_id, engagement_id)


@write_guard("ClientRiskAssessment")
def submit_risk_assessment_for_review(tenant_id: int, engagement_id: int, actor_id: int | None) -> dict:
    """Submit the draft. Freezes it and decides whether partner approval is required."""
    engagement = _engagement(tenant_id, engagement_id)
    actor = _actor(tenant_id, actor_id)
    ensure_open(tenant_id, engagement_id)

    assessment = _risk_assessment(engagement_id)
    if assessment is None:
        raise NotFoundError(resource="ClientRiskAssessment", resource_id=None)
    if assessment.status != "draft":
        raise InvariantViolationError(
            f"Risk assessment has already been {assessment.status}",
            details={"status": assessment.status},
        )

    workflow = _workflow_for_write(tenant_id, engagement_id)
    _require_earlier_complete(engagement, workflow, "risk_assessment")

    assessment.status = "submitted"
    assessment.submitted_at = utcnow()
    workflow.requires_partner_approval = assessment.partner_approval_required
    workflow.partner_approval_status = "pending" if assessment.partner_approval_required else "not_required"

    _record_event(
        tenant_id, engagement_id, "risk_assessment_submitted", actor,
        stage="risk_assessment",
        detail={"partner_approval_required": assessment.partner_approval_required},
    )
    commit_or_raise("ClientRiskAssessment")

    logger.info(
        "Risk assessment submitted for review",
        extra={"tenant_id": tenant_id, "engagement_id": engagement_id, "stage": "risk_assessment"},
    )
    return get_risk_assessment(tenant_id, engagement_id)


@write_guard("AcceptanceWorkflow")
def approve_as_partner(
    tenant_id: int,
    engagement_id: int,
    actor_id: int | None,
    approved: bool,
    notes: str | None = None,
) -> dict:
    """Record the partner's decision on a high-risk engagement.

    Approval writes the partner_approval marker and is final. A rejection
    blocks acceptance and may later be replaced by an approval.
    """
    engagement = _engagement(tenant_id, engagement_id)
    actor = _actor(tenant_id, actor_id)
    _require_partner(actor)
    ensure_open(tenant_id, engagement_id)

    workflow = _workflow_for_write(tenant_id, engagement_id)
    assessment = _risk_assessment(engagement_id)
    if assessment is None or assessment.status == "draft" or not workflow.requires_partner_approval:
        raise InvariantViolationError(
            "Partner approval is not required for this engagement",
            details={"partner_approval_status": workflow.partner_approval_status},
        )
    if workflow.partner_approval_status == "approved":
        raise InvariantViolationError("Partner approval has already been recorded")
    notes = _text("notes", notes)
    if not approved and not notes:
        raise ValidationError("Notes are required when rejecting an engagement", details={"notes": "required"})

    _require_earlier_complete(engagement, workflow, "partner_approval")

    now = utcnow()
    decision = "approved" if approved else "rejected"
    workflow.partner_approval_status = decision
    workflow.partner_approval_notes = notes or None
    workflow.partner_approved_by = actor.id
    assessment.status = decision
    assessment.partner_approved_by = actor.id
    assessment.partner_approved_at = now
    assessment.partner_approval_notes = workflow.partner_approval_notes
    if approved:
        workflow.set_marker("partner_approval", now)

    _record_event(
        tenant_id, engagement_id, "partner_decision", actor,
        stage="partner_approval", detail={"decision": decision},
    )
    commit_or_raise("AcceptanceWorkflow")

    logger.info(
        "Partner decision recorded",
        extra={"tenant_id": tenant_id, "engagement_id": engagement_id, "stage": "partner_approval"},
    )
    return get_workflow(tenant_id, engagement_id)


# ═════════════════════════════════════════════════════════════════════════
# Stage 3: Engagement letter
# ═════════════════════════════════════════════════════════════════════════

_LETTER_FIELDS = ("scope", "responsibilities", "terms", "additional_services", "special_considerations")


def get_engagement_letter(tenant_id: int, engagement_id: int) -> dict | None:
    _engagement(tenant_id, engagement_id)
    letter = _current_letter(engagement_id)
    return letter.to_dict() if letter else None


@write_guard("EngagementLetter")
def save_engagement_letter(tenant_id: int, engagement_id: int, actor_id: int | None, data: dict) -> dict:
    """Create the draft letter (version 1) or update the current draft."""
    _engagement(tenant_id, engagement_id)
    actor = _actor(tenant_id, actor_id)
    ensure_open(tenant_id, engagement_id)

    letter = _current_letter(engagement_id)
    if letter is not None:
        _check_version(letter, data.get("expected_version"), "EngagementLetter")
        if letter.status != "draft":
            raise InvariantViolationError(
                f"Engagement letter is {letter.status}; only drafts can be edited",
                details={"status": letter.status},
            )

    errors = letter_rules.validate_engagement_letter(data)
    if errors:
        raise ValidationError(errors[0]["message"], details={"errors": errors})

    if letter is None:
        letter = EngagementLetter(
            tenant_id=tenant_id,
            engagement_id=engagement_id,
            version=1,
            status="draft",
            generated_at=utcnow(),
        )
        db.session.add(letter)
    for field in _LETTER_FIELDS:
        if field in data:
            setattr(letter, field, data[field] or ({} if field in ("scope", "responsibilities", "terms") else []))

    _workflow_for_write(tenant_id, engagement_id)
    db.session.flush()
    _record_event(
        tenant_id, engagement_id, "letter_saved", actor,
        stage="engagement_letter", detail={"letter_id": letter.id, "version": letter.version},
    )
    commit_or_raise("EngagementLetter", data.get("expected_version"))
    return letter.to_dict()


@write_guard("EngagementLetter")
def send_letter_to_client(tenant_id: int, engagement_id: int, actor_id: int | None, title: str | None = None) -> dict:
    """Sign as auditor and move the draft to pending_client."""
    _engagement(tenant_id, engagement_id)
    actor = _actor(tenant_id, actor_id)
    ensure_open(tenant_id, engagement_id)

    letter = _current_letter(engagement_id)
    if letter is None:
        raise NotFoundError(resource="EngagementLetter")
    letter_rules.ensure_transition(letter.status, "pending_client")

    now = utcnow()
    letter.status = "pending_client"
    letter.auditor_signature = {
        "signed_by": actor.id,
        "signed_by_name": actor.display_name,
        "signed_at": now.isoformat(),
        "title": _text("title", title) or "Engagement Partner",
    }
    letter.sent_at = now

    _record_event(
        tenant_id, engagement_id, "letter_sent", actor,
        stage="engagement_letter", detail={"letter_id": letter.id},
    )
    commit_or_raise("EngagementLetter")

    logger.info(
        "Engagement letter sent to client",
        extra={"tenant_id": tenant_id, "engagement_id": engagement_id, "stage": "engagement_letter"},
    )
    return letter.to_dict()


@write_guard("EngagementLetter")
def record_client_signature(
    tenant_id: int,
    engagement_id: int,
    actor_id: int | None,
    signed_by: str,
    title: str,
    organization: str,
) -> dict:
    """Record the client's countersignature; the letter becomes signed."""
    engagement = _engagement(tenant_id, engagement_id)
    actor = _actor(tenant_id, actor_id)
    ensure_open(tenant_id, engagement_id)

    signed_by = _text("signed_by", signed_by)
    title = _text("title", title)
    organization = _text("organization", organization)
    missing = {
        name: "required"
        for name, value in (("signed_by", signed_by), ("title", title), ("organization", organization))
        if not value
    }
    if missing:
        raise ValidationError("Client signature details are incomplete", details=missing)

    letter = _current_letter(engagement_id)
    if letter is None:
        raise NotFoundError(resource="EngagementLetter")
    letter_rules.ensure_transition(letter.status, "signed")

    workflow = _workflow_for_write(tenant_id, engagement_id)
    _require_earlier_complete(engagement, workflow, "engagement_letter")

    now = utcnow()
    letter.status = "signed"
    letter.client_signature = {
        "signed_by": signed_by,
        "signed_at": now.isoformat(),
        "title": title,
        "organization": organization,
    }
    letter.signed_at = now

    _record_event(
        tenant_id, engagement_id, "letter_signed", actor,
        stage="engagement_letter", detail={"letter_id": letter.id},
    )
    commit_or_raise("EngagementLetter")

    logger.info(
        "Client signature recorded",
        extra={"tenant_id": tenant_id, "engagement_id": engagement_id, "stage": "engagement_letter"},
    )
    return letter.to_dict()
