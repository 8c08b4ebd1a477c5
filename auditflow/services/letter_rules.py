"""
Engagement Letter rules — content validation and the forward-only lifecycle.

    draft ──send──▶ pending_client ──client signs──▶ signed

Content may only change while the letter is a draft.
"""

from __future__ import annotations

from auditflow.core.exceptions import InvariantViolationError
from auditflow.models.acceptance import LETTER_TRANSITIONS
from auditflow.utils.helpers import parse_date

ENGAGEMENT_TYPES = frozenset({
    "audit_financial_statements",
    "review_financial_statements",
    "compilation_financial_statements",
    "agreed_upon_procedures",
    "attestation_examination",
    "attestation_review",
    "internal_control_audit",
    "compliance_audit",
    "benefit_plan_audit",
    "government_audit",
})

FEE_STRUCTURES = frozenset({"fixed", "hourly", "contingent", "combination"})


def _date_error(errors, field, value, label):
    if not value:
        errors.append({"field": field, "message": f"{label} is required"})
        return
    try:
        parse_date(value)
    except ValueError as exc:
        errors.append({"field": field, "message": str(exc)})


def validate_engagement_letter(letter: dict) -> list[dict]:
    """Validate scope, responsibilities and terms of a letter payload.

    Returns:
        List of {"field", "message"} dicts, empty when valid.
    """
    errors: list[dict] = []

    scope = letter.get("scope")
    if not isinstance(scope, dict) or not scope:
        errors.append({"field": "scope", "message": "Engagement scope is required"})
    else:
        engagement_type = scope.get("engagement_type")
        if not engagement_type:
            errors.append({"field": "scope.engagement_type", "message": "Engagement type is required"})
        elif engagement_type not in ENGAGEMENT_TYPES:
            errors.append({"field": "scope.engagement_type", "message": f"Unknown engagement type '{engagement_type}'"})
        if not scope.get("financial_statements"):
            errors.append({
                "field": "scope.financial_statements",
                "message": "Financial statements covered must be specified",
            })
        period = scope.get("period_covered")
        if not isinstance(period, dict):
            errors.append({"field": "scope.period_covered", "message": "Period covered is required"})
        else:
            _date_error(errors, "scope.period_covered.start_date", period.get("start_date"), "Period start date")
            _date_error(errors, "scope.period_covered.end_date", period.get("end_date"), "Period end date")
        if not scope.get("applicable_framework"):
            errors.append({
                "field": "scope.applicable_framework",
                "message": "Applicable financial reporting framework is required",
            })

    responsibilities = letter.get("responsibilities")
    if not isinstance(responsibilities, dict) or not responsibilities:
        errors.append({"field": "responsibilities", "message": "Responsibility allocation is required"})
    else:
        if not responsibilities.get("management_responsibilities"):
            errors.append({
                "field": "responsibilities.management_responsibilities",
                "message": "Management responsibilities must be specified",
            })
        if not responsibilities.get("auditor_responsibilities"):
            errors.append({
                "field": "responsibilities.auditor_responsibilities",
                "message": "Auditor responsibilities must be specified",
            })

    terms = letter.get("terms")
    if not isinstance(terms, dict) or not terms:
        errors.append({"field": "terms", "message": "Engagement terms are required"})
    else:
        fee_structure = terms.get("fee_structure")
        if not fee_structure:
            errors.append({"field": "terms.fee_structure", "message": "Fee structure is required"})
        elif fee_structure not in FEE_STRUCTURES:
            errors.append({"field": "terms.fee_structure", "message": f"Unknown fee structure '{fee_structure}'"})
        if not terms.get("engagement_partner"):
            errors.append({"field": "terms.engagement_partner", "message": "Engagement partner is required"})
        _date_error(errors, "terms.planned_start_date", terms.get("planned_start_date"), "Planned start date")
        _date_error(errors, "terms.expected_completion_date", terms.get("expected_completion_date"), "Expected completion date")
        if fee_structure == "fixed":
            fee = terms.get("estimated_fee")
            if not isinstance(fee, (int, float)) or isinstance(fee, bool) or fee <= 0:
                errors.append({
                    "field": "terms.estimated_fee",
                    "message": "Estimated fee is required for fixed fee engagements",
                })

    return errors


def ensure_transition(current: str, target: str) -> None:
    """Raise unless ``current → target`` is the next forward step."""
    if LETTER_TRANSITIONS.get(current) != target:
        raise InvariantViolationError(
            f"Engagement letter cannot move from '{current}' to '{target}'",
            details={"status": current, "allowed_next": LETTER_TRANSITIONS.get(current)},
        )
