"""
Tests for auditflow/services/independence.py — threat rules and the
certification gate. Pure functions, no database.
"""

import pytest

from auditflow.services.independence import (
    ThreatLevel,
    assess_team_independence,
    assess_threats,
    certification_blockers,
    overall_threat_level,
    unresolved_problems,
    validate_declaration,
)

SHARES = {"description": "Shares in client", "is_problem": True, "resolution": ""}
SPOUSE = {"description": "Spouse is client CFO", "is_problem": True, "resolution": "Rotated off"}


class TestAssessThreats:
    def test_no_flags_no_threats(self):
        result = assess_threats({})
        assert result.threats == []
        assert result.overall_assessment == ThreatLevel.NONE

    def test_problem_financial_relationship_is_high_self_interest(self):
        result = assess_threats({"has_financial_interest": True, "financial_relationships": [SHARES]})
        assert len(result.threats) == 1
        threat = result.threats[0]
        assert threat.type.value == "self_interest"
        assert threat.level == ThreatLevel.HIGH
        assert result.overall_assessment == ThreatLevel.HIGH

    def test_non_problem_relationship_emits_nothing(self):
        benign = {"description": "Mutual fund", "is_problem": False}
        assert assess_threats({"financial_relationships": [benign]}).threats == []

    def test_personal_relationship_is_moderate_familiarity(self):
        result = assess_threats({"personal_relationships": [SPOUSE]})
        assert [t.type.value for t in result.threats] == ["familiarity"]
        assert result.overall_assessment == ThreatLevel.MODERATE

    def test_service_conflict_flag_is_self_review(self):
        result = assess_threats({"has_service_conflict": True})
        assert [t.type.value for t in result.threats] == ["self_review"]

    def test_overall_is_most_severe_threat(self):
        result = assess_threats({
            "financial_relationships": [SHARES],
            "personal_relationships": [SPOUSE],
            "has_service_conflict": True,
        })
        assert len(result.threats) == 3
        assert result.overall_assessment == ThreatLevel.HIGH

    def test_to_dict_carries_labels(self):
        data = assess_threats({"financial_relationships": [SHARES]}).to_dict()
        assert data["overall_assessment"] == "high"
        assert data["threats"][0]["label"] == "Self-Interest Threat"


class TestOverallThreatLevel:
    def test_empty_is_none(self):
        assert overall_threat_level([]) == ThreatLevel.NONE

    def test_only_low_threats_give_low(self):
        assert overall_threat_level(["low", "low"]) == ThreatLevel.LOW

    def test_unacceptable_wins(self):
        assert overall_threat_level(["moderate", "unacceptable", "high"]) == ThreatLevel.UNACCEPTABLE


class TestValidateDeclaration:
    def test_flag_without_details(self):
        errors = validate_declaration({"has_financial_interest": True})
        assert errors == [{
            "field": "financial_relationships",
            "message": "Please provide details of financial relationships",
        }]

    def test_details_must_be_objects(self):
        errors = validate_declaration({"personal_relationships": ["not an object"]})
        assert errors[0]["field"] == "personal_relationships"

    def test_clean_declaration_is_valid(self):
        assert validate_declaration({}) == []


class TestCertificationBlockers:
    def test_clean_declaration_can_be_certified(self):
        assert certification_blockers({"overall_assessment": "none"}) == []

    def test_raw_flags_policy_blocks_any_declared_relationship(self):
        declaration = {"has_fee_arrangement_issue": True, "overall_assessment": "none"}
        assert certification_blockers(declaration, "raw_flags") == ["Fee arrangement issue declared"]

    def test_assessment_policy_ignores_resolved_flags(self):
        declaration = {
            "has_personal_relationship": True,
            "personal_relationships": [SPOUSE],
            "overall_assessment": "moderate",
        }
        assert certification_blockers(declaration, "assessment") == []

    def test_both_policies_block_unacceptable(self):
        for policy in ("raw_flags", "assessment"):
            blockers = certification_blockers({"overall_assessment": "unacceptable"}, policy)
            assert "Cannot certify independence with unacceptable threat levels" in blockers

    def test_both_policies_block_unresolved_problems(self):
        declaration = {"financial_relationships": [SHARES], "overall_assessment": "high"}
        assert certification_blockers(declaration, "assessment") == [
            "Unresolved financial relationship - Shares in client"
        ]

    def test_unknown_policy_raises(self):
        with pytest.raises(ValueError):
            certification_blockers({}, "lenient")

    def test_unresolved_problems_skips_resolved_entries(self):
        assert unresolved_problems({"personal_relationships": [SPOUSE]}) == []


class TestAssessTeamIndependence:
    TEAM = [{"user_id": 1, "full_name": "Ana"}, {"user_id": 2, "full_name": "Ben"}]

    @staticmethod
    def _decl(member_id, certified=True, assessment="none", threats=None):
        return {
            "team_member_id": member_id,
            "is_certified": certified,
            "overall_assessment": assessment,
            "threats": threats or [],
        }

    def test_all_certified_is_independent(self):
        result = assess_team_independence([self._decl(1), self._decl(2)], self.TEAM)
        assert result == {"is_independent": True, "overall_level": "none", "issues": []}

    def test_missing_declaration_is_reported(self):
        result = assess_team_independence([self._decl(1)], self.TEAM)
        assert result["is_independent"] is False
        assert result["issues"] == ["Ben has not submitted an independence declaration"]

    def test_uncertified_declaration_is_reported(self):
        result = assess_team_independence([self._decl(1), self._decl(2, certified=False)], self.TEAM)
        assert result["is_independent"] is False
        assert "Ben has not certified independence" in result["issues"]

    def test_empty_team_is_never_independent(self):
        result = assess_team_independence([], [])
        assert result["is_independent"] is False

    def test_high_threat_is_listed_and_level_tracked(self):
        threat = {"description": "Financial relationships that may impair independence", "level": "high"}
        result = assess_team_independence(
            [self._decl(1, assessment="high", threats=[threat]), self._decl(2)], self.TEAM,
        )
        assert result["overall_level"] == "high"
        assert any(issue.startswith("Ana:") for issue in result["issues"])

    def test_unacceptable_blocks_even_when_certified(self):
        result = assess_team_independence(
            [self._decl(1, assessment="unacceptable"), self._decl(2)], self.TEAM,
        )
        assert result["is_independent"] is False
