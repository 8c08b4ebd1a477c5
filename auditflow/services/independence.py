"""
Independence Threat Assessment — declarations, threats, certification gate.

Threat rules (applied on every save, stored threats are never trusted):
    self_interest / high      any financial relationship flagged is_problem
    familiarity   / moderate  any personal relationship flagged is_problem
    self_review   / moderate  has_service_conflict is set

Overall assessment is the most severe emitted threat level; ``none`` when no
threat was emitted; ``low`` when threats exist but none reaches moderate.
The ``low`` branch is unreachable with the rules above and exists so that
new low-severity rules aggregate correctly.

Certification gate policies (INDEPENDENCE_CERTIFICATION_POLICY):
    raw_flags   any has-X flag blocks certification (historical behaviour)
    assessment  only the derived assessment and unresolved problems block
Both policies block an ``unacceptable`` assessment and any problem
relationship without a resolution.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class ThreatLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    UNACCEPTABLE = "unacceptable"

    @property
    def rank(self) -> int:
        return THREAT_LEVEL_ORDER.index(self)


THREAT_LEVEL_ORDER = (
    ThreatLevel.NONE,
    ThreatLevel.LOW,
    ThreatLevel.MODERATE,
    ThreatLevel.HIGH,
    ThreatLevel.UNACCEPTABLE,
)


class ThreatType(str, Enum):
    SELF_INTEREST = "self_interest"
    SELF_REVIEW = "self_review"
    ADVOCACY = "advocacy"
    FAMILIARITY = "familiarity"
    INTIMIDATION = "intimidation"


THREAT_TYPE_LABELS = {
    ThreatType.SELF_INTEREST: "Self-Interest Threat",
    ThreatType.SELF_REVIEW: "Self-Review Threat",
    ThreatType.ADVOCACY: "Advocacy Threat",
    ThreatType.FAMILIARITY: "Familiarity Threat",
    ThreatType.INTIMIDATION: "Intimidation Threat",
}

CERTIFICATION_POLICIES = frozenset({"raw_flags", "assessment"})

# Raw declaration flags and the wording used when one blocks certification
DECLARATION_FLAGS = {
    "has_financial_interest": "Financial interest declared",
    "has_personal_relationship": "Personal relationship declared",
    "has_service_conflict": "Service conflict declared",
    "has_fee_arrangement_issue": "Fee arrangement issue declared",
    "has_other_threat": "Other threat declared",
}

# Flag → detail list that must be non-empty when the flag is set
_FLAG_DETAILS = {
    "has_financial_interest": ("financial_relationships", "Please provide details of financial relationships"),
    "has_personal_relationship": ("personal_relationships", "Please provide details of personal relationships"),
    "has_service_conflict": ("service_conflicts", "Please provide details of service conflicts"),
}


@dataclass
class Threat:
    """Single identified independence threat."""
    type: ThreatType
    description: str
    level: ThreatLevel

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "label": THREAT_TYPE_LABELS[self.type],
            "description": self.description,
            "level": self.level.value,
        }


@dataclass
class ThreatAssessment:
    """Threats derived from one declaration and their overall level."""
    threats: list[Threat] = field(default_factory=list)

    @property
    def overall_assessment(self) -> ThreatLevel:
        return overall_threat_level(t.level for t in self.threats)

    def to_dict(self) -> dict:
        return {
            "threats": [t.to_dict() for t in self.threats],
            "overall_assessment": self.overall_assessment.value,
        }


def _has_problem(entries) -> bool:
    return any(bool((e or {}).get("is_problem")) for e in entries or [])


def overall_threat_level(levels) -> ThreatLevel:
    levels = [ThreatLevel(lv) for lv in levels]
    if not levels:
        return ThreatLevel.NONE
    worst = max(levels, key=lambda lv: lv.rank)
    if worst.rank >= ThreatLevel.MODERATE.rank:
        return worst
    return ThreatLevel.LOW


def assess_threats(declaration: dict) -> ThreatAssessment:
    """Derive threats and the overall assessment from a declaration payload."""
    threats: list[Threat] = []

    if _has_problem(declaration.get("financial_relationships")):
        threats.append(Threat(
            type=ThreatType.SELF_INTEREST,
            description="Financial relationships that may impair independence",
            level=ThreatLevel.HIGH,
        ))

    if _has_problem(declaration.get("personal_relationships")):
        threats.append(Threat(
            type=ThreatType.FAMILIARITY,
            description="Personal relationships with client personnel",
            level=ThreatLevel.MODERATE,
        ))

    if declaration.get("has_service_conflict"):
        threats.append(Threat(
            type=ThreatType.SELF_REVIEW,
            description="Services that may create self-review threat",
            level=ThreatLevel.MODERATE,
        ))

    return ThreatAssessment(threats=threats)


def validate_declaration(declaration: dict) -> list[dict]:
    """Field-level validation of a declaration payload.

    Returns:
        List of {"field", "message"} dicts, empty when valid.
    """
    errors: list[dict] = []
    for flag, (details_field, message) in _FLAG_DETAILS.items():
        if declaration.get(flag) and not declaration.get(details_field):
            errors.append({"field": details_field, "message": message})
    for details_field in ("financial_relationships", "personal_relationships", "service_conflicts"):
        entries = declaration.get(details_field)
        if entries is None:
            continue
        if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
            errors.append({"field": details_field, "message": "Must be a list of objects"})
    return errors


def unresolved_problems(declaration: dict) -> list[str]:
    """Descriptions of problem relationships that have no resolution."""
    issues = []
    for details_field, label in (
        ("financial_relationships", "financial"),
        ("personal_relationships", "personal"),
        ("service_conflicts", "service"),
    ):
        for entry in declaration.get(details_field) or []:
            if entry.get("is_problem") and not str(entry.get("resolution") or "").strip():
                issues.append(f"Unresolved {label} relationship - {entry.get('description') or 'no description'}")
    return issues


def certification_blockers(declaration: dict, policy: str = "raw_flags") -> list[str]:
    """Return the reasons a declaration cannot be certified (empty list = allowed)."""
    if policy not in CERTIFICATION_POLICIES:
        raise ValueError(f"Unknown certification policy {policy!r}")

    blockers: list[str] = []
    if declaration.get("overall_assessment") == ThreatLevel.UNACCEPTABLE.value:
        blockers.append("Cannot certify independence with unacceptable threat levels")

    blockers.extend(unresolved_problems(declaration))

    if policy == "raw_flags":
        blockers.extend(
            label for flag, label in DECLARATION_FLAGS.items() if declaration.get(flag)
        )
    return blockers


def assess_team_independence(declarations: list[dict], team: list[dict]) -> dict:
    """Aggregate independence across the engagement team.

    Args:
        declarations: serialised IndependenceDeclaration dicts.
        team: [{"user_id", "full_name"}] for every team member.

    Returns:
        {"is_independent", "overall_level", "issues"}. Independent only when
        the team is non-empty, every member has a certified declaration and
        no declaration is assessed unacceptable.
    """
    issues: list[str] = []
    by_member = {d["team_member_id"]: d for d in declarations}
    highest = ThreatLevel.NONE

    if not team:
        issues.append("No team members are assigned to the engagement")

    for member in team:
        name = member.get("full_name") or f"User {member['user_id']}"
        decl = by_member.get(member["user_id"])
        if decl is None:
            issues.append(f"{name} has not submitted an independence declaration")
            continue
        if not decl.get("is_certified"):
            issues.append(f"{name} has not certified independence")

        level = ThreatLevel(decl.get("overall_assessment") or "none")
        if level.rank > highest.rank:
            highest = level

        for threat in decl.get("threats") or []:
            if threat.get("level") in (ThreatLevel.HIGH.value, ThreatLevel.UNACCEPTABLE.value):
                issues.append(f"{name}: {threat.get('description')} ({threat.get('level')} threat)")
        for problem in unresolved_problems(decl):
            issues.append(f"{name}: {problem}")

    team_ids = {m["user_id"] for m in team}
    all_certified = bool(team) and all(
        by_member.get(uid, {}).get("is_certified") for uid in team_ids
    )
    return {
        "is_independent": all_certified and highest != ThreatLevel.UNACCEPTABLE,
        "overall_level": highest.value,
        "issues": issues,
    }
