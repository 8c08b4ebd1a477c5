"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register one handler per type and
get consistent HTTP status codes everywhere.

Usage:
    from auditflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Engagement", resource_id=42)
    raise ValidationError("Stage cannot be completed", details={"blockers": [...]})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-tenant access attempts,
    so a lookup in another firm's data is indistinguishable from a miss.

    Args:
        resource: Human-readable model/entity name (e.g. "Engagement").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional — the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Stage and acceptance preconditions put every unmet condition in
    ``details["blockers"]`` so callers can show them all at once.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional structured breakdown (field errors, blockers).
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised on a duplicate or on a concurrent update of the same record.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field that conflicted (unique key or ``version``).
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        if field == "version" and value is None:
            msg = f"{resource} was modified concurrently"
        elif field == "version":
            msg = f"{resource} was modified concurrently (expected version {value})"
        else:
            msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class InvariantViolationError(Exception):
    """Raised when a mutation would break a workflow invariant.

    Examples: certifying a blocked declaration, completing acceptance twice,
    editing stage records after acceptance, moving a letter backwards.
    The UI prevents these by disabling controls; the service still refuses.

    Maps to HTTP 409.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class PermissionDeniedError(Exception):
    """Raised when the acting user's firm role may not perform an action.

    Maps to HTTP 403.
    """


class PersistenceError(Exception):
    """Raised when the database rejects a read or write.

    The session is rolled back before this is raised. No automatic retry.

    Maps to HTTP 503.
    """


class InvalidInputError(ValueError):
    """Raised for malformed categorical input (unknown rating, empty list).

    Maps to HTTP 400.
    """
