"""
Tests for auditflow/services/stage_status.py — the pure stage calculator.
"""

import pytest

from auditflow.models.acceptance import STAGES
from auditflow.services.stage_status import (
    AcceptanceSnapshot,
    acceptance_blockers,
    calculate_stage_status,
    completion_blockers,
)

INDEPENDENT = {"is_independent": True, "overall_level": "none", "issues": []}
NOT_INDEPENDENT = {"is_independent": False, "overall_level": "none", "issues": ["Ana has not certified independence"]}
ACCEPTED_RISK = {"acceptance_recommendation": "accept", "conditions": [], "status": "submitted"}
SIGNED_LETTER = {"status": "signed"}


def _snapshot(**kwargs):
    defaults = {
        "markers": {},
        "independence": NOT_INDEPENDENT,
        "risk_assessment": None,
        "letter": None,
        "partner_approval_required": True,
        "partner_approval_status": "pending",
    }
    defaults.update(kwargs)
    return AcceptanceSnapshot(**defaults)


def _through_letter(**kwargs):
    return _snapshot(
        independence=INDEPENDENT,
        risk_assessment=ACCEPTED_RISK,
        letter=SIGNED_LETTER,
        **kwargs,
    )


class TestFreshWorkflow:
    def test_independence_is_current_and_later_stages_locked(self):
        status = calculate_stage_status(_snapshot())
        assert status.current_stage == "independence_check"
        assert status.active_index == 0
        for stage in STAGES[1:]:
            assert status[stage].current is False
            assert status.can_activate(stage) is False
        assert status.can_activate("independence_check") is True
        assert status.progress == 0

    def test_at_most_one_stage_is_current(self):
        status = calculate_stage_status(_snapshot(independence=INDEPENDENT))
        assert sum(1 for s in status.stages if s.current) == 1
        assert status.current_stage == "risk_assessment"


class TestPredicates:
    def test_conditional_acceptance_without_conditions_is_incomplete(self):
        risk = {"acceptance_recommendation": "accept_with_conditions", "conditions": []}
        status = calculate_stage_status(_snapshot(independence=INDEPENDENT, risk_assessment=risk))
        assert status["risk_assessment"].complete is False

    def test_decline_with_reason_completes_the_stage(self):
        risk = {"acceptance_recommendation": "decline", "decline_reason": "Integrity concerns"}
        status = calculate_stage_status(_snapshot(independence=INDEPENDENT, risk_assessment=risk))
        assert status["risk_assessment"].complete is True

    def test_draft_risk_assessment_is_not_recorded(self):
        risk = {**ACCEPTED_RISK, "status": "draft"}
        snapshot = _snapshot(independence=INDEPENDENT, risk_assessment=risk)
        status = calculate_stage_status(snapshot)
        assert status["risk_assessment"].complete is False
        assert completion_blockers(snapshot, status, "risk_assessment") == [
            "Client risk assessment has not been submitted for review"
        ]

    def test_letter_pending_client_is_incomplete(self):
        status = calculate_stage_status(_snapshot(
            independence=INDEPENDENT, risk_assessment=ACCEPTED_RISK, letter={"status": "pending_client"},
        ))
        assert status["engagement_letter"].complete is False
        assert status.current_stage == "engagement_letter"


class TestPartnerApprovalRequirement:
    def test_not_required_stage_completes_after_three_stages(self):
        status = calculate_stage_status(_through_letter(
            partner_approval_required=False, partner_approval_status="not_required",
        ))
        assert status["partner_approval"].required is False
        assert status["partner_approval"].complete is True
        assert status.is_complete is True
        assert status.active_index is None
        assert status.total_required == 3
        assert status.progress == 100

    def test_required_and_pending_blocks_completion(self):
        status = calculate_stage_status(_through_letter())
        assert status["partner_approval"].current is True
        assert status.is_complete is False
        assert status.total_required == 4
        assert status.progress == 75

    def test_approved_completes_the_workflow(self):
        status = calculate_stage_status(_through_letter(partner_approval_status="approved"))
        assert status.is_complete is True

    @pytest.mark.parametrize("required, expected", [(False, 67), (True, 50)])
    def test_progress_denominator_follows_requirement(self, required, expected):
        # Two stages done: 2/3 rounds half-up to 67, 2/4 is 50
        status = calculate_stage_status(_snapshot(
            independence=INDEPENDENT,
            risk_assessment=ACCEPTED_RISK,
            partner_approval_required=required,
            partner_approval_status="pending" if required else "not_required",
        ))
        assert status.progress == expected


class TestMonotonicity:
    def test_marker_keeps_stage_complete_when_predicate_fails(self):
        status = calculate_stage_status(_snapshot(markers={"independence_check": True}))
        assert status["independence_check"].complete is True
        assert status.current_stage == "risk_assessment"

    def test_marked_stage_has_no_predicate_blockers(self):
        snapshot = _snapshot(markers={"independence_check": True})
        status = calculate_stage_status(snapshot)
        assert completion_blockers(snapshot, status, "independence_check") == []


class TestCompletionBlockers:
    def test_earlier_stage_reported_first(self):
        snapshot = _snapshot()
        status = calculate_stage_status(snapshot)
        blockers = completion_blockers(snapshot, status, "risk_assessment")
        assert blockers[0] == "Independence must be completed first"
        assert "Client risk assessment has not been started" in blockers

    def test_independence_issues_are_passed_through(self):
        snapshot = _snapshot()
        status = calculate_stage_status(snapshot)
        assert completion_blockers(snapshot, status, "independence_check") == [
            "Ana has not certified independence"
        ]


class TestAcceptanceBlockers:
    def test_fresh_workflow_lists_every_precondition(self):
        snapshot = _snapshot()
        blockers = acceptance_blockers(snapshot, calculate_stage_status(snapshot))
        assert blockers == [
            "Team independence must be confirmed",
            "Client risk assessment must be completed",
            "Engagement letter must be signed",
            "Partner approval is pending",
        ]

    def test_decline_recommendation_blocks_acceptance(self):
        snapshot = _snapshot(
            independence=INDEPENDENT,
            risk_assessment={"acceptance_recommendation": "decline", "decline_reason": "No"},
            letter=SIGNED_LETTER,
            partner_approval_required=False,
            partner_approval_status="not_required",
        )
        assert acceptance_blockers(snapshot, calculate_stage_status(snapshot)) == [
            "Client risk assessment recommends declining the engagement"
        ]

    def test_partner_rejection_is_reported(self):
        snapshot = _through_letter(partner_approval_status="rejected")
        assert acceptance_blockers(snapshot, calculate_stage_status(snapshot)) == [
            "Partner has rejected the engagement"
        ]

    def test_nothing_blocks_a_finished_workflow(self):
        snapshot = _through_letter(partner_approval_status="approved")
        assert acceptance_blockers(snapshot, calculate_stage_status(snapshot)) == []
