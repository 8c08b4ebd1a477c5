"""
Tenant Context Middleware — resolves the acting user and firm per request.

Identity is established upstream (SSO proxy / API gateway); this service
receives it as headers:

    X-User-Id    acting user (required for every mutation)
    X-Tenant-Id  firm scope; defaults to the acting user's firm

Resolved values land on ``g.user_id`` / ``g.tenant_id`` / ``g.current_user``.
A user id that does not exist, or a tenant id that disagrees with the user's
firm, is rejected with 403 before any route runs.

Chain order:
  timing.py  →  tenant_context.py  →  route handler
"""

import logging

from flask import g, jsonify, request

from auditflow.models import db
from auditflow.models.auth import Tenant, User

logger = logging.getLogger(__name__)

# Paths that skip tenant context
TENANT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def _int_header(name):
    raw = request.headers.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        return False


def init_tenant_context(app):
    """Register tenant context middleware as a before_request hook."""

    @app.before_request
    def _tenant_context():
        g.tenant_id = None
        g.user_id = None
        g.current_user = None

        if not request.path.startswith("/api/v1/"):
            return None
        for prefix in TENANT_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None

        user_id = _int_header("X-User-Id")
        tenant_id = _int_header("X-Tenant-Id")
        if user_id is False or tenant_id is False:
            return jsonify({"error": "X-User-Id and X-Tenant-Id must be integers"}), 400

        if user_id is not None:
            user = db.session.get(User, user_id)
            if user is None or not user.is_active:
                logger.warning("Unknown or inactive user %s", user_id)
                return jsonify({"error": "Unknown user"}), 403
            if tenant_id is not None and tenant_id != user.tenant_id:
                logger.warning(
                    "Tenant header does not match user's firm",
                    extra={"tenant_id": tenant_id, "user_id": user_id},
                )
                return jsonify({"error": "User does not belong to this firm"}), 403
            g.current_user = user
            g.user_id = user.id
            tenant_id = user.tenant_id

        if tenant_id is not None:
            tenant = db.session.get(Tenant, tenant_id)
            if tenant is None or not tenant.is_active:
                return jsonify({"error": "Tenant not found"}), 403
            g.tenant_id = tenant.id
        return None

