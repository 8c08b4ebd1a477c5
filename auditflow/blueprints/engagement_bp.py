"""
Engagement Blueprint — firm users, engagements and team staffing.

Endpoints:
    POST   /api/v1/users                         create a firm user
    POST   /api/v1/engagements                   create an engagement (+ team)
    GET    /api/v1/engagements/<eid>             engagement with team
    GET    /api/v1/engagements/<eid>/team        team roster
    POST   /api/v1/engagements/<eid>/team        staff a user on the engagement

Tenant comes from X-Tenant-Id or the acting user (X-User-Id), resolved by
the tenant context middleware. Service layer owns all writes.
"""

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify

from auditflow.services import engagement_service
from auditflow.utils.errors import E, api_error, register_error_handlers
from auditflow.utils.helpers import json_body

logger = logging.getLogger(__name__)

engagement_bp = Blueprint("engagement_bp", __name__, url_prefix="/api/v1")
register_error_handlers(engagement_bp)


def _tenant_required() -> tuple[int | None, tuple | None]:
    tenant_id = g.get("tenant_id")
    if tenant_id is None:
        return None, api_error(E.VALIDATION_REQUIRED, "X-Tenant-Id or X-User-Id header is required")
    return tenant_id, None


@engagement_bp.route("/users", methods=["POST"])
def create_user():
    """Body: {email, full_name?, firm_role?} → 201 user."""
    tenant_id, err = _tenant_required()
    if err:
        return err
    return jsonify(engagement_service.create_user(tenant_id, json_body())), 201


@engagement_bp.route("/engagements", methods=["POST"])
def create_engagement():
    """Body: {name, client_name, engagement_type?, period_end?, team?} → 201."""
    tenant_id, err = _tenant_required()
    if err:
        return err
    return jsonify(engagement_service.create_engagement(tenant_id, json_body())), 201


@engagement_bp.route("/engagements/<int:engagement_id>", methods=["GET"])
def get_engagement(engagement_id):
    tenant_id, err = _tenant_required()
    if err:
        return err
    engagement = engagement_service.get_engagement(tenant_id, engagement_id)
    return jsonify(engagement.to_dict(include_team=True)), 200


@engagement_bp.route("/engagements/<int:engagement_id>/team", methods=["GET"])
def list_team(engagement_id):
    tenant_id, err = _tenant_required()
    if err:
        return err
    items = engagement_service.list_team(tenant_id, engagement_id)
    return jsonify({"items": items, "total": len(items)}), 200


@engagement_bp.route("/engagements/<int:engagement_id>/team", methods=["POST"])
def add_team_member(engagement_id):
    """Body: {user_id, engagement_role?} → 201 team member."""
    tenant_id, err = _tenant_required()
    if err:
        return err
    member = engagement_service.add_team_member(tenant_id, engagement_id, json_body())
    return jsonify(member), 201
