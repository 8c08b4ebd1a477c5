"""
Request timing middleware.

Every response gets X-Request-ID (echoed from the caller when supplied) and
X-Request-Duration-Ms. Acceptance API calls are logged with the engagement
they touched; slow calls and server errors are raised to WARNING / ERROR.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

SLOW_THRESHOLD_MS = 1000

_UNLOGGED_PREFIXES = ("/api/v1/health/", "/static/")


def _log_level(status: int, duration_ms: float) -> int:
    if status >= 500:
        return logging.ERROR
    if duration_ms > SLOW_THRESHOLD_MS:
        return logging.WARNING
    return logging.DEBUG


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish_timer(response):
        started = g.get("request_start")
        if started is None:
            return response

        elapsed = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.get("request_id", "")
        response.headers["X-Request-Duration-Ms"] = f"{elapsed:.1f}"

        if request.path.startswith(_UNLOGGED_PREFIXES):
            return response

        logger.log(
            _log_level(response.status_code, elapsed),
            "%s %s -> %d",
            request.method, request.path, response.status_code,
            extra={
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": elapsed,
                "remote_addr": request.remote_addr,
                "engagement_id": (request.view_args or {}).get("engagement_id"),
            },
        )
        return response
