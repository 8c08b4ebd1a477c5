"""
Client Risk Rating — section aggregation and partner-approval rules.

Every categorical risk factor is rated low / moderate / high / unacceptable
(ordinal scores 0–3). Sections and the overall rating are reduced with one
worst-case-dominant rule:

    any unacceptable                 -> unacceptable
    any high, or mean score >= 1.5   -> high
    mean score >= 0.5                -> moderate
    otherwise                        -> low

The thresholds decide which engagements are flagged as higher risk, so they
are fixed here and nowhere else.

Usage:
    from auditflow.services.risk_rating import aggregate_risk, recompute_sections
    aggregate_risk(["low", "low", "high"])      # RiskCategory.HIGH
    payload = recompute_sections(form_payload)  # section overall_assessment refreshed
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable

from auditflow.core.exceptions import InvalidInputError
from auditflow.models.acceptance import RECOMMENDATIONS
from auditflow.utils.helpers import percent

logger = logging.getLogger(__name__)


class RiskCategory(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    UNACCEPTABLE = "unacceptable"

    @property
    def score(self) -> int:
        return RISK_ORDER.index(self)


RISK_ORDER = (
    RiskCategory.LOW,
    RiskCategory.MODERATE,
    RiskCategory.HIGH,
    RiskCategory.UNACCEPTABLE,
)

PROFITABILITY_TRENDS = frozenset({"improving", "stable", "declining"})

# Rated fields per section. prior_audit_experience is informational only.
SECTION_FIELDS: dict[str, tuple[str, ...]] = {
    "management_integrity": (
        "reputation_in_market",
        "regulatory_history",
        "litigation_history",
        "related_party_complexity",
        "ownership_structure",
    ),
    "financial_stability": (
        "liquidity_position",
        "debt_levels",
    ),
    "engagement_risk": (
        "industry_complexity",
        "operational_complexity",
        "accounting_complexity",
        "it_environment_complexity",
        "fraud_risk",
        "regulatory_risk",
        "public_interest_risk",
    ),
}

SECTIONS = tuple(SECTION_FIELDS)

# Fields counted by the form's completeness indicator (15 in total)
_COMPLETENESS_FIELDS = (
    *(("management_integrity", f) for f in SECTION_FIELDS["management_integrity"]),
    ("financial_stability", "liquidity_position"),
    ("financial_stability", "debt_levels"),
    ("financial_stability", "profitability_trend"),
    *(("engagement_risk", f) for f in SECTION_FIELDS["engagement_risk"]),
)


def to_category(value) -> RiskCategory:
    """Coerce a string (or RiskCategory) to RiskCategory.

    Raises:
        InvalidInputError: for anything outside the four categories.
    """
    if isinstance(value, RiskCategory):
        return value
    try:
        return RiskCategory(str(value).strip().lower())
    except ValueError:
        raise InvalidInputError(
            f"Invalid risk category {value!r}. "
            f"Must be one of: {', '.join(c.value for c in RISK_ORDER)}"
        ) from None


def aggregate_risk(ratings: Iterable) -> RiskCategory:
    """Reduce categorical ratings to one category (worst case, mean tiebreak).

    Raises:
        InvalidInputError: on an empty list or an unknown category. An empty
            section has no meaningful rating and is never defaulted to low.
    """
    scores = [to_category(r).score for r in ratings]
    if not scores:
        raise InvalidInputError("At least one risk rating is required to aggregate")

    count = len(scores)
    total = sum(scores)

    if max(scores) == 3:
        return RiskCategory.UNACCEPTABLE
    # mean >= 1.5 and mean >= 0.5, compared in integers
    if max(scores) == 2 or 2 * total >= 3 * count:
        return RiskCategory.HIGH
    if 2 * total >= count:
        return RiskCategory.MODERATE
    return RiskCategory.LOW


def section_ratings(section: str, payload: dict | None) -> list[RiskCategory]:
    """Return the constituent ratings of one section.

    Missing fields are skipped. Going-concern indicators add an implicit
    ``high`` to the financial stability section.
    """
    if section not in SECTION_FIELDS:
        raise InvalidInputError(f"Unknown risk section {section!r}")
    data = payload or {}
    ratings = [to_category(data[f]) for f in SECTION_FIELDS[section] if data.get(f)]
    if section == "financial_stability" and data.get("going_concern_indicators"):
        ratings.append(RiskCategory.HIGH)
    return ratings


def recompute_sections(payload: dict) -> dict:
    """Return a copy of ``payload`` with every aggregate recomputed.

    Each section's ``overall_assessment`` is derived from its constituents;
    whatever value was submitted or previously stored is discarded. The
    top-level ``overall_risk_rating`` is the same rule over the sections.
    """
    result = dict(payload)
    section_levels = []
    for section in SECTIONS:
        data = dict(result.get(section) or {})
        data.pop("overall_assessment", None)
        level = aggregate_risk(section_ratings(section, data))
        data["overall_assessment"] = level.value
        result[section] = data
        section_levels.append(level)
    result["overall_risk_rating"] = aggregate_risk(section_levels).value
    return result


def partner_approval_required(assessment: dict) -> bool:
    """Return True when the engagement needs partner sign-off before acceptance.

    Triggers: high/unacceptable overall rating, high/unacceptable management
    integrity, going-concern indicators, high public-interest risk, or any
    recorded management red flag.
    """
    elevated = {RiskCategory.HIGH.value, RiskCategory.UNACCEPTABLE.value}
    management = assessment.get("management_integrity") or {}
    financial = assessment.get("financial_stability") or {}
    engagement = assessment.get("engagement_risk") or {}

    if assessment.get("overall_risk_rating") in elevated:
        return True
    if management.get("overall_assessment") in elevated:
        return True
    if financial.get("going_concern_indicators"):
        return True
    if engagement.get("public_interest_risk") == RiskCategory.HIGH.value:
        return True
    if management.get("red_flags"):
        return True
    return False


def rating_completeness(payload: dict) -> int:
    """Percentage of the 15 required rating fields that have a value."""
    filled = sum(
        1 for section, field in _COMPLETENESS_FIELDS
        if (payload.get(section) or {}).get(field)
    )
    return percent(filled, len(_COMPLETENESS_FIELDS))


def _section(payload: dict, name: str) -> dict:
    value = payload.get(name)
    return value if isinstance(value, dict) else {}


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def validate_risk_assessment(payload: dict) -> list[dict]:
    """Business-rule validation of a risk assessment payload.

    Returns:
        List of {"field", "message"} dicts, empty when valid.
    """
    errors: list[dict] = []

    for section in SECTIONS:
        data = payload.get(section)
        if not isinstance(data, dict) or not data:
            errors.append({"field": section, "message": f"{section.replace('_', ' ').capitalize()} assessment is required"})
            continue
        for field in SECTION_FIELDS[section]:
            value = data.get(field)
            if not value:
                errors.append({"field": f"{section}.{field}", "message": "Rating is required"})
                continue
            try:
                to_category(value)
            except InvalidInputError as exc:
                errors.append({"field": f"{section}.{field}", "message": str(exc)})

    financial = _section(payload, "financial_stability")
    trend = financial.get("profitability_trend")
    if trend and (not isinstance(trend, str) or trend not in PROFITABILITY_TRENDS):
        errors.append({
            "field": "financial_stability.profitability_trend",
            "message": f"Must be one of: {', '.join(sorted(PROFITABILITY_TRENDS))}",
        })
    if financial.get("going_concern_indicators") and not _text(financial.get("going_concern_description")):
        errors.append({
            "field": "financial_stability.going_concern_description",
            "message": "Going concern indicators require description",
        })

    engagement = _section(payload, "engagement_risk")
    if engagement.get("specialist_required") and not engagement.get("specialist_types"):
        errors.append({
            "field": "engagement_risk.specialist_types",
            "message": "Please specify the types of specialists required",
        })

    for field, value in (
        ("financial_stability.going_concern_description", financial.get("going_concern_description")),
        ("decline_reason", payload.get("decline_reason")),
    ):
        if value is not None and not isinstance(value, str):
            errors.append({"field": field, "message": "Must be text"})

    recommendation = payload.get("acceptance_recommendation")
    if not recommendation:
        errors.append({"field": "acceptance_recommendation", "message": "Acceptance recommendation is required"})
    elif not isinstance(recommendation, str) or recommendation not in RECOMMENDATIONS:
        errors.append({
            "field": "acceptance_recommendation",
            "message": "Must be one of: accept, accept_with_conditions, decline",
        })
    elif recommendation == "decline" and not _text(payload.get("decline_reason")):
        errors.append({"field": "decline_reason", "message": "Decline reason is required when recommending to decline"})
    elif recommendation == "accept_with_conditions" and not normalise_conditions(payload.get("conditions")):
        errors.append({"field": "conditions", "message": "Conditions are required when recommending conditional acceptance"})

    return errors


def normalise_conditions(raw) -> list[str]:
    """Accept a list or newline-separated text; drop blank entries."""
    if not raw:
        return []
    if isinstance(raw, str):
        raw = raw.split("\n")
    return [str(c).strip() for c in raw if str(c).strip()]
