"""Shared utility functions used by services and blueprints.

parse_date:        returns None on empty input, raises ValueError on bad input
percent:           completed / total as an integer percentage, half-up rounding
json_body:         request JSON as a dict, empty dict when absent or not an object
commit_or_raise:   commit, translating SQLAlchemy failures to domain errors
write_guard:       the same translation around a whole service mutation
"""
import functools
import logging
import math
from datetime import date, datetime

from flask import request
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from auditflow.core.exceptions import ConflictError, PersistenceError
from auditflow.models import db

logger = logging.getLogger(__name__)


def parse_date(value):
    """Parse a date string to a date object.

    Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format)

    Returns None for empty input, raises ValueError for anything unparseable.
    """
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError) as exc:
        raise ValueError("Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY.") from exc


def percent(completed: int, total: int) -> int:
    """Integer percentage with half-up rounding (0 when total is 0)."""
    if total <= 0:
        return 0
    return int(math.floor(completed * 100 / total + 0.5))


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


# ── Database write helpers ───────────────────────────────────────────────────

def _raise_translated(exc: SQLAlchemyError, resource: str, expected_version=None):
    """Roll back and re-raise a SQLAlchemy failure as a domain exception.

    StaleDataError   → ConflictError (row changed under us, optimistic lock)
    IntegrityError   → ConflictError (duplicate / constraint violation)
    other DB errors  → PersistenceError
    """
    db.session.rollback()
    if isinstance(exc, StaleDataError):
        logger.warning("Concurrent update detected on %s", resource)
        raise ConflictError(resource, "version", expected_version) from None
    if isinstance(exc, IntegrityError):
        logger.warning("Integrity error on write of %s: %s", resource, exc.orig)
        raise ConflictError(resource, "key", str(exc.orig)[:120]) from exc
    logger.exception("Database error on write of %s", resource)
    raise PersistenceError(f"Could not save {resource}") from exc


def commit_or_raise(resource: str, expected_version=None):
    """Commit the current session. The session is rolled back before raising."""
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        _raise_translated(exc, resource, expected_version)


def write_guard(resource: str):
    """
    Decorator for service mutations.

    Flushes happen before the final commit (explicit flush() calls and query
    autoflush), so a stale row or a constraint hit can surface anywhere in
    the function body. Those are translated the same way commit_or_raise
    translates them.
    """
    def decorator(f):
        @functools.wraps(f)
        def guarded(*args, **kwargs):
            try:
                return f(*args, **kwargs)
            except SQLAlchemyError as exc:
                _raise_translated(exc, resource)
        return guarded
    return decorator
