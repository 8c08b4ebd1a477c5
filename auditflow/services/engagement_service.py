"""
Engagement Service — firm users, engagements and team rosters.

The acceptance workflow reads the team roster to decide whose independence
declarations are required; this module owns creating that data.
All functions are tenant-scoped and own their commits.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from auditflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from auditflow.models import db
from auditflow.models.auth import FIRM_ROLES, Tenant, User
from auditflow.models.engagement import Engagement, EngagementTeamMember
from auditflow.services.helpers.scoped_queries import get_scoped
from auditflow.services.letter_rules import ENGAGEMENT_TYPES
from auditflow.utils.helpers import commit_or_raise, parse_date, write_guard

logger = logging.getLogger(__name__)

ENGAGEMENT_ROLES = frozenset({"engagement_partner", "manager", "senior", "staff", "eqcr"})


def get_tenant(tenant_id: int) -> Tenant:
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None or not tenant.is_active:
        raise NotFoundError(resource="Tenant", resource_id=tenant_id)
    return tenant


def get_user(tenant_id: int, user_id: int) -> User:
    return get_scoped(User, user_id, tenant_id=tenant_id)


@write_guard("User")
def create_user(tenant_id: int, data: dict) -> dict:
    """Register a firm user with a firm role (partner, manager, ...)."""
    get_tenant(tenant_id)
    email = (data.get("email") or "").strip().lower()
    if not email or "@" not in email:
        raise ValidationError("A valid email is required", details={"email": "invalid"})
    firm_role = (data.get("firm_role") or "staff").strip()
    if firm_role not in FIRM_ROLES:
        raise ValidationError(
            f"Invalid firm_role '{firm_role}'",
            details={"firm_role": f"Must be one of: {', '.join(sorted(FIRM_ROLES))}"},
        )

    existing = db.session.execute(
        select(User).where(User.tenant_id == tenant_id, User.email == email)
    ).scalar_one_or_none()
    if existing is not None:
        raise ConflictError("User", "email", email)

    user = User(
        tenant_id=tenant_id,
        email=email,
        full_name=(data.get("full_name") or "").strip() or email,
        firm_role=firm_role,
    )
    db.session.add(user)
    commit_or_raise("User")
    logger.info("User created", extra={"tenant_id": tenant_id, "user_id": user.id})
    return user.to_dict()


@write_guard("Engagement")
def create_engagement(tenant_id: int, data: dict) -> dict:
    """Create an engagement pending acceptance, optionally with its team.

    Body fields: name, client_name, engagement_type?, period_end?,
    team?: [{"user_id", "engagement_role"}]
    """
    get_tenant(tenant_id)
    errors = {}
    name = (data.get("name") or "").strip()
    client_name = (data.get("client_name") or "").strip()
    if not name:
        errors["name"] = "Engagement name is required"
    if not client_name:
        errors["client_name"] = "Client name is required"
    engagement_type = data.get("engagement_type") or "audit_financial_statements"
    if engagement_type not in ENGAGEMENT_TYPES:
        errors["engagement_type"] = f"Unknown engagement type '{engagement_type}'"
    try:
        period_end = parse_date(data.get("period_end"))
    except ValueError as exc:
        errors["period_end"] = str(exc)
        period_end = None
    if errors:
        raise ValidationError("Invalid engagement", details=errors)

    engagement = Engagement(
        tenant_id=tenant_id,
        name=name,
        client_name=client_name,
        engagement_type=engagement_type,
        period_end=period_end,
    )
    db.session.add(engagement)
    db.session.flush()

    for member in data.get("team") or []:
        _add_member(tenant_id, engagement, member)

    commit_or_raise("Engagement")
    logger.info(
        "Engagement created",
        extra={"tenant_id": tenant_id, "engagement_id": engagement.id},
    )
    return engagement.to_dict(include_team=True)


def get_engagement(tenant_id: int, engagement_id: int) -> Engagement:
    return get_scoped(Engagement, engagement_id, tenant_id=tenant_id)


def _add_member(tenant_id: int, engagement: Engagement, data: dict) -> EngagementTeamMember:
    user_id = data.get("user_id")
    if not user_id:
        raise ValidationError("user_id is required", details={"user_id": "required"})
    role = data.get("engagement_role") or "staff"
    if role not in ENGAGEMENT_ROLES:
        raise ValidationError(
            f"Invalid engagement_role '{role}'",
            details={"engagement_role": f"Must be one of: {', '.join(sorted(ENGAGEMENT_ROLES))}"},
        )
    user = get_user(tenant_id, user_id)
    if any(m.user_id == user.id for m in engagement.team_members):
        raise ConflictError("EngagementTeamMember", "user_id", str(user.id))

    member = EngagementTeamMember(
        tenant_id=tenant_id,
        engagement=engagement,
        user=user,
        engagement_role=role,
    )
    db.session.add(member)
    return member


@write_guard("EngagementTeamMember")
def add_team_member(tenant_id: int, engagement_id: int, data: dict) -> dict:
    """Staff a firm user on the engagement.

    Refused once independence has been confirmed for the current team.
    """
    from auditflow.services import acceptance_service

    engagement = get_engagement(tenant_id, engagement_id)
    acceptance_service.ensure_roster_open(tenant_id, engagement_id)
    member = _add_member(tenant_id, engagement, data)
    commit_or_raise("EngagementTeamMember")
    logger.info(
        "Team member added",
        extra={"tenant_id": tenant_id, "engagement_id": engagement_id, "user_id": member.user_id},
    )
    return member.to_dict()


def list_team(tenant_id: int, engagement_id: int) -> list[dict]:
    engagement = get_engagement(tenant_id, engagement_id)
    return [m.to_dict() for m in engagement.team_members]
