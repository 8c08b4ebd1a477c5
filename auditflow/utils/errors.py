"""Standardised API error responses.

Usage
-----
    from auditflow.utils.errors import api_error, E, register_error_handlers

    return api_error(E.VALIDATION_REQUIRED, "tenant is required")
    register_error_handlers(acceptance_bp)   # domain exceptions → JSON
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from auditflow.core.exceptions import (
    ConflictError,
    InvalidInputError,
    InvariantViolationError,
    NotFoundError,
    PermissionDeniedError,
    PersistenceError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants."""

    # Malformed input – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    INVALID_INPUT = "ERR_INVALID_INPUT"

    # Business-rule validation / stage blockers – HTTP 422
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_VERSION = "ERR_CONFLICT_VERSION"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 5xx
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.INVALID_INPUT: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_VERSION: 409,
    E.CONFLICT_STATE: 409,
    E.FORBIDDEN: 403,
    E.DATABASE: 503,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, blockers).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(bp) -> None:
    """Map the domain exception hierarchy to JSON responses on ``bp``."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, f"{error.resource} not found")

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        code = E.CONFLICT_VERSION if error.field == "version" else E.CONFLICT_DUPLICATE
        return api_error(code, str(error))

    @bp.errorhandler(InvariantViolationError)
    def _handle_invariant(error: InvariantViolationError):
        return api_error(E.CONFLICT_STATE, str(error), details=error.details)

    @bp.errorhandler(PermissionDeniedError)
    def _handle_forbidden(error: PermissionDeniedError):
        return api_error(E.FORBIDDEN, str(error))

    @bp.errorhandler(InvalidInputError)
    def _handle_invalid_input(error: InvalidInputError):
        return api_error(E.INVALID_INPUT, str(error))

    @bp.errorhandler(PersistenceError)
    def _handle_persistence(error: PersistenceError):
        return api_error(E.DATABASE, str(error))

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
