"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — 200 while the process is up (load balancer)
    GET /api/v1/health/live   — database round trip, acceptance schema
                                presence, rate-limit backend
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from auditflow.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")

# Tables the workflow cannot run without; missing ones mean `flask db upgrade` was skipped
REQUIRED_TABLES = (
    "engagements",
    "engagement_team_members",
    "acceptance_workflows",
    "independence_declarations",
    "client_risk_assessments",
    "engagement_letters",
    "acceptance_events",
)


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


def _database_check() -> dict:
    started = time.perf_counter()
    db.session.execute(db.text("SELECT 1"))
    latency = round((time.perf_counter() - started) * 1000, 1)
    missing = sorted(set(REQUIRED_TABLES) - set(inspect(db.engine).get_table_names()))
    if missing:
        return {"status": "error", "latency_ms": latency, "missing_tables": missing}
    return {"status": "ok", "latency_ms": latency}


@health_bp.route("/live", methods=["GET"])
def live():
    """Dependency status. 503 when the database is unreachable or unmigrated."""
    checks = {}
    try:
        checks["database"] = _database_check()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Health check: database unreachable: %s", exc)
        checks["database"] = {"status": "error", "detail": str(exc)}

    storage = current_app.config.get("REDIS_URL", "memory://")
    checks["rate_limit_storage"] = {"backend": "redis" if storage.startswith("redis") else "memory"}
    checks["workflow"] = {
        "certification_policy": current_app.config.get("INDEPENDENCE_CERTIFICATION_POLICY"),
        "partner_roles": list(current_app.config.get("PARTNER_ROLES", ())),
    }

    healthy = checks["database"]["status"] == "ok"
    return jsonify({"status": "healthy" if healthy else "degraded", "checks": checks}), (200 if healthy else 503)
