"""
Engagement Acceptance Blueprint — the four-stage acceptance workflow.

All routes are scoped under /api/v1/engagements/<eid>/acceptance so every
request is engagement- and tenant-scoped.

Endpoints:
    GET    .../acceptance                          workflow projection
    PUT    .../acceptance/active-stage             {stage}
    POST   .../acceptance/stages/<stage>/complete  idempotent stage marker
    POST   .../acceptance/complete                 final acceptance (terminal)
    GET    .../acceptance/events                   audit trail

    GET    .../acceptance/independence             declarations + team result
    POST   .../acceptance/independence             save own declaration
    POST   .../acceptance/independence/<id>/certify

    GET    .../acceptance/risk-assessment
    PUT    .../acceptance/risk-assessment          save draft
    POST   .../acceptance/risk-assessment/submit
    POST   .../acceptance/partner-approval         {approved, notes}

    GET    .../acceptance/letter
    PUT    .../acceptance/letter                   save draft
    POST   .../acceptance/letter/send              {title?}
    POST   .../acceptance/letter/client-signature  {signed_by, title, organization}

Layer contract:
    - Blueprint: parse input, resolve tenant / acting user, call service.
    - NO db.session calls here. All writes are owned by acceptance_service.
    - Business guards (stage gating, partner role, locks) live in the service.
"""

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify

from auditflow.services import acceptance_service
from auditflow.utils.errors import E, api_error, register_error_handlers
from auditflow.utils.helpers import json_body

logger = logging.getLogger(__name__)

acceptance_bp = Blueprint(
    "acceptance_bp",
    __name__,
    url_prefix="/api/v1/engagements/<int:engagement_id>/acceptance",
)
register_error_handlers(acceptance_bp)


def _tenant_required() -> tuple[int | None, tuple | None]:
    tenant_id = g.get("tenant_id")
    if tenant_id is None:
        return None, api_error(E.VALIDATION_REQUIRED, "X-Tenant-Id or X-User-Id header is required")
    return tenant_id, None


# ═════════════════════════════════════════════════════════════════════════
# Workflow
# ═════════════════════════════════════════════════════════════════════════


@acceptance_bp.route("", methods=["GET"])
def get_workflow(engagement_id):
    tenant_id, err = _tenant_required()
    if err:
        return err
    return jsonify(acceptance_service.get_workflow(tenant_id, engagement_id)), 200


@acceptance_bp.route("/active-stage", methods=["PUT"])
def set_active_stage(engagement_id):
    tenant_id, err = _tenant_required()
    if err:
        return err
    stage = json_body().get("stage")
    if not stage:
        return api_error(E.VALIDATION_REQUIRED, "stage is required")
    result = acceptance_service.set_active_stage(tenant_id, engagement_id, stage, g.user_id)
    return jsonify(result), 200


@acceptance_bp.route("/stages/<stage>/complete", methods=["POST"])
def complete_stage(engagement_id, stage):
    tenant_id, err = _tenant_required()
    if err:
        return err
    result = acceptance_service.complete_stage(tenant_id, engagement_id, stage, g.user_id)
    return jsonify(result), 200


@acceptance_bp.route("/complete", methods=["POST"])
def complete_acceptance(engagement_id):
    """Accept the engagement. 422 with details.blockers while anything is unmet."""
    tenant_id, err = _tenant_required()
    if err:
        return err
    result = acceptance_service.complete_acceptance(tenant_id, engagement_id, g.user_id)
    return jsonify(result), 200


@acceptance_bp.route("/events", methods=["GET"])
def list_events(engagement_id):
    tenant_id, err = _tenant_required()
    if err:
        return err
    items = acceptance_service.list_events(tenant_id, engagement_id)
    return jsonify({"items": items, "total": len(items)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Independence
# ═════════════════════════════════════════════════════════════════════════


@acceptance_bp.route("/independence", methods=["GET"])
def list_declarations(engagement_id):
    tenant_id, err = _tenant_required()
    if err:
        return err
    return jsonify(acceptance_service.list_declarations(tenant_id, engagement_id)), 200


@acceptance_bp.route("/independence", methods=["POST"])
def save_declaration(engagement_id):
    """Body: relationship flags and lists, safeguards_applied?, expected_version?"""
    tenant_id, err = _tenant_required()
    if err:
        return err
    result = acceptance_service.save_declaration(tenant_id, engagement_id, g.user_id, json_body())
    return jsonify(result), 200


@acceptance_bp.route("/independence/<int:declaration_id>/certify", methods=["POST"])
def certify_declaration(engagement_id, declaration_id):
    tenant_id, err = _tenant_required()
    if err:
        return err
    result = acceptance_service.certify_declaration(tenant_id, engagement_id, declaration_id, g.user_id)
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# Risk assessment & partner approval
# ═════════════════════════════════════════════════════════════════════════


@acceptance_bp.route("/risk-assessment", methods=["GET"])
def get_risk_assessment(engagement_id):
    tenant_id, err = _tenant_required()
    if err:
        return err
    return jsonify({"risk_assessment": acceptance_service.get_risk_assessment(tenant_id, engagement_id)}), 200


@acceptance_bp.route("/risk-assessment", methods=["PUT"])
def save_risk_assessment(engagement_id):
    """Body: three rated sections, acceptance_recommendation, conditions?,
    decline_reason?, expected_version?"""
    tenant_id, err = _tenant_required()
    if err:
        return err
    result = acceptance_service.save_risk_assessment(tenant_id, engagement_id, g.user_id, json_body())
    return jsonify(result), 200


@acceptance_bp.route("/risk-assessment/submit", methods=["POST"])
def submit_risk_assessment(engagement_id):
    tenant_id, err = _tenant_required()
    if err:
        return err
    result = acceptance_service.submit_risk_assessment_for_review(tenant_id, engagement_id, g.user_id)
    return jsonify(result), 200


@acceptance_bp.route("/partner-approval", methods=["POST"])
def partner_approval(engagement_id):
    """Body: {approved: bool, notes?}. Partner / admin firm role only."""
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = json_body()
    approved = data.get("approved")
    if not isinstance(approved, bool):
        return api_error(E.VALIDATION_REQUIRED, "approved must be true or false")
    result = acceptance_service.approve_as_partner(
        tenant_id, engagement_id, g.user_id, approved, data.get("notes"),
    )
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# Engagement letter
# ═════════════════════════════════════════════════════════════════════════


@acceptance_bp.route("/letter", methods=["GET"])
def get_letter(engagement_id):
    tenant_id, err = _tenant_required()
    if err:
        return err
    return jsonify({"letter": acceptance_service.get_engagement_letter(tenant_id, engagement_id)}), 200


@acceptance_bp.route("/letter", methods=["PUT"])
def save_letter(engagement_id):
    """Body: scope, responsibilities, terms, additional_services?,
    special_considerations?, expected_version?"""
    tenant_id, err = _tenant_required()
    if err:
        return err
    result = acceptance_service.save_engagement_letter(tenant_id, engagement_id, g.user_id, json_body())
    return jsonify(result), 200


@acceptance_bp.route("/letter/send", methods=["POST"])
def send_letter(engagement_id):
    tenant_id, err = _tenant_required()
    if err:
        return err
    result = acceptance_service.send_letter_to_client(
        tenant_id, engagement_id, g.user_id, json_body().get("title"),
    )
    return jsonify(result), 200


@acceptance_bp.route("/letter/client-signature", methods=["POST"])
def client_signature(engagement_id):
    tenant_id, err = _tenant_required()
    if err:
        return err
    data = json_body()
    result = acceptance_service.record_client_signature(
        tenant_id,
        engagement_id,
        g.user_id,
        data.get("signed_by") or "",
        data.get("title") or "",
        data.get("organization") or "",
    )
    return jsonify(result), 200
