"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter instance
is created in auditflow/__init__.py with no default limits; this module
applies granular limits per route category, keyed by firm when known.

Usage:
    from auditflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def tenant_rate_limit_key():
    """Rate limit key: tenant_id if resolved, else remote IP."""
    tenant_id = getattr(g, "tenant_id", None)
    if tenant_id:
        return f"tenant:{tenant_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits:
        - Acceptance workflow: 60/minute (stage writes, signatures, decisions)
        - Engagement admin:    200/minute
        - Health check:        exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("acceptance_bp")
    if bp:
        limiter.limit(WRITE_LIMIT, key_func=tenant_rate_limit_key)(bp)

    bp = app.blueprints.get("engagement_bp")
    if bp:
        limiter.limit(READ_LIMIT, key_func=tenant_rate_limit_key)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured (acceptance %s, engagements %s)",
        WRITE_LIMIT, READ_LIMIT,
    )
