"""
Acceptance Stage Status — pure calculator over already-fetched state.

Stages (strictly ordered):
    independence_check → risk_assessment → engagement_letter → partner_approval

Rules:
    complete   own predicate holds, or a completion marker was written earlier
               (markers are never cleared, so completion is monotonic)
    current    every earlier stage complete and this one not complete
    required   always for stages 1–3; stage 4 only when the risk assessment
               calls for partner approval
    is_complete  s1 ∧ s2 ∧ s3 ∧ (s4 ∨ ¬required4)
    progress     completed required stages / required stages, half-up percent

Usage:
    snapshot = AcceptanceSnapshot(markers=..., independence=..., ...)
    status = calculate_stage_status(snapshot)
    status.current_stage, status.progress, acceptance_blockers(snapshot, status)
"""

from __future__ import annotations

from dataclasses import dataclass, field

from auditflow.models.acceptance import STAGES
from auditflow.utils.helpers import percent

STAGE_LABELS = {
    "independence_check": "Independence",
    "risk_assessment": "Risk Assessment",
    "engagement_letter": "Engagement Letter",
    "partner_approval": "Partner Approval",
}

STAGE_DESCRIPTIONS = {
    "independence_check": "Team independence declarations",
    "risk_assessment": "Client acceptance risk assessment",
    "engagement_letter": "Prepare and sign engagement letter",
    "partner_approval": "Partner review and approval",
}


@dataclass
class AcceptanceSnapshot:
    """Everything the calculator needs, fetched by the service layer.

    Attributes:
        markers: stage → True when a completion marker has been written.
        independence: result of assess_team_independence().
        risk_assessment: serialised ClientRiskAssessment or None.
        letter: serialised current EngagementLetter or None.
        partner_approval_required: stage 4 required flag.
        partner_approval_status: not_required | pending | approved | rejected.
    """
    markers: dict = field(default_factory=dict)
    independence: dict | None = None
    risk_assessment: dict | None = None
    letter: dict | None = None
    partner_approval_required: bool = False
    partner_approval_status: str = "not_required"


@dataclass
class StageState:
    stage: str
    complete: bool
    current: bool
    required: bool

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "label": STAGE_LABELS[self.stage],
            "description": STAGE_DESCRIPTIONS[self.stage],
            "complete": self.complete,
            "current": self.current,
            "required": self.required,
        }


@dataclass
class StageStatus:
    stages: list[StageState]

    def __getitem__(self, stage: str) -> StageState:
        for state in self.stages:
            if state.stage == stage:
                return state
        raise KeyError(stage)

    @property
    def active_index(self) -> int | None:
        """Index of the current stage, None when nothing is left to do."""
        for index, state in enumerate(self.stages):
            if state.current:
                return index
        return None

    @property
    def current_stage(self) -> str | None:
        index = self.active_index
        return None if index is None else self.stages[index].stage

    @property
    def is_complete(self) -> bool:
        return all(s.complete for s in self.stages if s.required)

    @property
    def total_required(self) -> int:
        return sum(1 for s in self.stages if s.required)

    @property
    def completed_required(self) -> int:
        return sum(1 for s in self.stages if s.required and s.complete)

    @property
    def progress(self) -> int:
        return percent(self.completed_required, self.total_required)

    def can_activate(self, stage: str) -> bool:
        state = self[stage]
        return state.complete or state.current

    def to_dict(self) -> dict:
        return {
            "stages": {s.stage: s.to_dict() for s in self.stages},
            "order": list(STAGES),
            "current_stage": self.current_stage,
            "active_index": self.active_index,
            "is_complete": self.is_complete,
            "progress": self.progress,
            "total_required_stages": self.total_required,
        }


# ── Stage predicates ─────────────────────────────────────────────────────────


def risk_assessment_blockers(assessment: dict | None) -> list[str]:
    """Why the risk assessment stage predicate does not hold (empty = holds)."""
    if not assessment:
        return ["Client risk assessment has not been started"]
    recommendation = assessment.get("acceptance_recommendation")
    if not recommendation:
        return ["Acceptance recommendation has not been recorded"]
    if recommendation == "accept_with_conditions" and not assessment.get("conditions"):
        return ["Conditions are required for conditional acceptance"]
    if recommendation == "decline" and not (assessment.get("decline_reason") or "").strip():
        return ["A decline reason is required"]
    # Payloads without a status are treated as recorded
    if assessment.get("status", "submitted") == "draft":
        return ["Client risk assessment has not been submitted for review"]
    return []


def letter_blockers(letter: dict | None) -> list[str]:
    if not letter:
        return ["Engagement letter has not been created"]
    if letter.get("status") != "signed":
        return ["Engagement letter has not been signed by the client"]
    return []


def partner_approval_blockers(snapshot: AcceptanceSnapshot) -> list[str]:
    if not snapshot.partner_approval_required:
        return []
    if snapshot.partner_approval_status == "approved":
        return []
    if snapshot.partner_approval_status == "rejected":
        return ["Partner has rejected the engagement"]
    return ["Partner approval is pending"]


def independence_blockers(snapshot: AcceptanceSnapshot) -> list[str]:
    independence = snapshot.independence or {}
    if independence.get("is_independent"):
        return []
    return list(independence.get("issues") or []) or ["Team independence has not been confirmed"]


def stage_predicate_blockers(snapshot: AcceptanceSnapshot, stage: str) -> list[str]:
    """Why ``stage``'s own completion predicate does not hold."""
    if stage == "independence_check":
        return independence_blockers(snapshot)
    if stage == "risk_assessment":
        return risk_assessment_blockers(snapshot.risk_assessment)
    if stage == "engagement_letter":
        return letter_blockers(snapshot.letter)
    if stage == "partner_approval":
        return partner_approval_blockers(snapshot)
    raise KeyError(stage)


# ── Calculator ───────────────────────────────────────────────────────────────


def calculate_stage_status(snapshot: AcceptanceSnapshot) -> StageStatus:
    """Compute {complete, current, required} for every stage."""
    states: list[StageState] = []
    earlier_complete = True
    for stage in STAGES:
        required = snapshot.partner_approval_required if stage == "partner_approval" else True
        complete = bool(snapshot.markers.get(stage)) or not stage_predicate_blockers(snapshot, stage)
        current = earlier_complete and not complete
        states.append(StageState(stage=stage, complete=complete, current=current, required=required))
        earlier_complete = earlier_complete and complete
    return StageStatus(stages=states)


def completion_blockers(snapshot: AcceptanceSnapshot, status: StageStatus, stage: str) -> list[str]:
    """Blockers for completing one stage: earlier stages first, then its predicate."""
    blockers = [
        f"{STAGE_LABELS[s.stage]} must be completed first"
        for s in status.stages[: STAGES.index(stage)]
        if s.required and not s.complete
    ]
    if not snapshot.markers.get(stage):
        blockers.extend(stage_predicate_blockers(snapshot, stage))
    return blockers


def acceptance_blockers(snapshot: AcceptanceSnapshot, status: StageStatus) -> list[str]:
    """One human-readable blocker per unmet precondition of final acceptance."""
    blockers: list[str] = []
    if not status["independence_check"].complete:
        blockers.append("Team independence must be confirmed")
    if not status["risk_assessment"].complete:
        blockers.append("Client risk assessment must be completed")
    elif (snapshot.risk_assessment or {}).get("acceptance_recommendation") == "decline":
        blockers.append("Client risk assessment recommends declining the engagement")
    if not status["engagement_letter"].complete:
        blockers.append("Engagement letter must be signed")
    if status["partner_approval"].required and not status["partner_approval"].complete:
        blockers.extend(partner_approval_blockers(snapshot))
    return blockers
