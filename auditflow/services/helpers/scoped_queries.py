"""
Tenant-scoped query helpers.

Every get-by-id in the service layer goes through these helpers instead of
db.session.get(Model, pk). Direct .get() calls bypass firm isolation.

Usage:
    engagement = get_scoped(Engagement, engagement_id, tenant_id=tenant_id)
    decl = get_scoped(IndependenceDeclaration, decl_id,
                      tenant_id=tenant_id, engagement_id=engagement_id)
    letter = get_scoped_or_none(EngagementLetter, letter_id, tenant_id=tenant_id)

Scope field resolution:
    Each keyword argument maps directly to a column name on the model.
    If the model lacks that column a ValueError is raised, so a typo can
    never silently turn into an unscoped lookup.
"""

import logging

from sqlalchemy import select

from auditflow.core.exceptions import NotFoundError
from auditflow.models import db

logger = logging.getLogger(__name__)


def get_scoped(
    model,
    pk: int,
    *,
    tenant_id: int | None = None,
    engagement_id: int | None = None,
):
    """Fetch a single entity by PK with mandatory scope filter.

    Cross-tenant access is indistinguishable from a missing record: both
    raise NotFoundError → HTTP 404.

    Raises:
        ValueError: If no scope is provided, or a provided scope names a
                    column the model does not have.
        NotFoundError: If the entity does not exist OR is outside the scope.
    """
    provided_scopes = {
        field: value
        for field, value in (("tenant_id", tenant_id), ("engagement_id", engagement_id))
        if value is not None
    }
    if not provided_scopes:
        raise ValueError(
            f"{model.__name__} id={pk} requires at least one scope filter "
            "(tenant_id or engagement_id). Unscoped lookups are forbidden."
        )

    missing_fields = sorted(f for f in provided_scopes if not hasattr(model, f))
    if missing_fields:
        raise ValueError(
            f"{model.__name__} has no scope column(s) {missing_fields}; "
            "refusing to perform a partially scoped lookup."
        )

    stmt = select(model).where(model.id == pk)
    for field, value in provided_scopes.items():
        stmt = stmt.where(getattr(model, field) == value)

    result = db.session.execute(stmt).scalar_one_or_none()
    if result is None:
        logger.debug("get_scoped: %s id=%s not found in scope %s", model.__name__, pk, provided_scopes)
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return result


def get_scoped_or_none(model, pk: int, *, tenant_id: int | None = None, engagement_id: int | None = None):
    """Same as get_scoped but returns None instead of raising NotFoundError."""
    try:
        return get_scoped(model, pk, tenant_id=tenant_id, engagement_id=engagement_id)
    except NotFoundError:
        return None
