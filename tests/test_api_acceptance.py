"""
Tests: Engagement acceptance HTTP API.

Exercises the acceptance blueprint end to end through the Flask test client:
request parsing, tenant / acting-user resolution from headers, and the
mapping of domain errors onto status codes and error codes.

Setup strategy:
    Users and the engagement come from conftest. Every request carries the
    acting user in X-User-Id; the tenant is resolved from that user.
"""

import pytest
import sqlalchemy as sa
from sqlalchemy.orm import Session

from auditflow.models import db as _db
from auditflow.models.acceptance import IndependenceDeclaration
from auditflow.models.auth import Tenant, User


# ── Helpers ──────────────────────────────────────────────────────────────────


def _url(engagement_id: int, path: str = "") -> str:
    return f"/api/v1/engagements/{engagement_id}/acceptance{path}"


def _confirm_independence(client, eid, hdrs):
    res = client.post(_url(eid, "/independence"), json={}, headers=hdrs)
    assert res.status_code == 200
    res = client.post(_url(eid, f"/independence/{res.get_json()['id']}/certify"), headers=hdrs)
    assert res.status_code == 200


def _submit_risk(client, eid, hdrs, payload):
    assert client.put(_url(eid, "/risk-assessment"), json=payload, headers=hdrs).status_code == 200
    res = client.post(_url(eid, "/risk-assessment/submit"), headers=hdrs)
    assert res.status_code == 200
    return res.get_json()


def _sign_letter(client, eid, hdrs, payload):
    assert client.put(_url(eid, "/letter"), json=payload, headers=hdrs).status_code == 200
    assert client.post(_url(eid, "/letter/send"), json={}, headers=hdrs).status_code == 200
    res = client.post(
        _url(eid, "/letter/client-signature"),
        json={"signed_by": "Chris Client", "title": "CFO", "organization": "Northwind Traders"},
        headers=hdrs,
    )
    assert res.status_code == 200
    return res.get_json()


# ── Workflow projection ──────────────────────────────────────────────────────


def test_get_workflow_of_fresh_engagement(client, engagement, manager, headers):
    res = client.get(_url(engagement["id"]), headers=headers(manager))

    assert res.status_code == 200
    body = res.get_json()
    assert body["stage_status"]["current_stage"] == "independence_check"
    assert body["partner_approval_required"] is True
    assert body["can_complete"]["can_complete"] is False
    assert len(body["can_complete"]["blockers"]) == 4


def test_request_without_identity_headers_is_400(client, engagement):
    res = client.get(_url(engagement["id"]))
    assert res.status_code == 400
    assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"


def test_unknown_user_header_is_403(client, engagement):
    res = client.get(_url(engagement["id"]), headers={"X-User-Id": "9999"})
    assert res.status_code == 403


def test_non_integer_user_header_is_400(client, engagement):
    res = client.get(_url(engagement["id"]), headers={"X-User-Id": "abc"})
    assert res.status_code == 400


def test_unknown_engagement_is_404(client, manager, headers):
    res = client.get(_url(9999), headers=headers(manager))
    assert res.status_code == 404
    assert res.get_json()["code"] == "ERR_NOT_FOUND"


def test_other_firm_gets_404(client, engagement):
    other = Tenant(name="Other Firm", slug="other-firm")
    _db.session.add(other)
    _db.session.flush()
    outsider = User(tenant_id=other.id, email="eve@other.test", full_name="Eve", firm_role="partner")
    _db.session.add(outsider)
    _db.session.commit()

    res = client.get(_url(engagement["id"]), headers={"X-User-Id": str(outsider.id)})
    assert res.status_code == 404


def test_mismatched_tenant_header_is_403(client, engagement, manager):
    other = Tenant(name="Other Firm", slug="other-firm")
    _db.session.add(other)
    _db.session.commit()

    res = client.get(
        _url(engagement["id"]),
        headers={"X-User-Id": str(manager.id), "X-Tenant-Id": str(other.id)},
    )
    assert res.status_code == 403


# ── Stage operations ─────────────────────────────────────────────────────────


def test_complete_stage_with_blockers_is_422(client, engagement, manager, headers):
    res = client.post(_url(engagement["id"], "/stages/independence_check/complete"), headers=headers(manager))

    assert res.status_code == 422
    body = res.get_json()
    assert body["code"] == "ERR_VALIDATION_RULE"
    assert body["details"]["blockers"] == ["Morgan Manager has not submitted an independence declaration"]


def test_complete_stage_after_certification(client, engagement, manager, headers):
    eid, hdrs = engagement["id"], headers(manager)
    _confirm_independence(client, eid, hdrs)

    res = client.post(_url(eid, "/stages/independence_check/complete"), headers=hdrs)
    assert res.status_code == 200
    assert res.get_json()["workflow"]["independence_confirmed_at"] is not None


def test_activating_locked_stage_is_409(client, engagement, manager, headers):
    res = client.put(
        _url(engagement["id"], "/active-stage"),
        json={"stage": "partner_approval"},
        headers=headers(manager),
    )
    assert res.status_code == 409
    assert res.get_json()["code"] == "ERR_CONFLICT_STATE"


def test_active_stage_requires_stage(client, engagement, manager, headers):
    res = client.put(_url(engagement["id"], "/active-stage"), json={}, headers=headers(manager))
    assert res.status_code == 400


# ── Independence ─────────────────────────────────────────────────────────────


def test_list_declarations_reports_team_result(client, engagement, manager, headers):
    eid, hdrs = engagement["id"], headers(manager)
    _confirm_independence(client, eid, hdrs)

    res = client.get(_url(eid, "/independence"), headers=hdrs)
    assert res.status_code == 200
    body = res.get_json()
    assert body["total"] == 1
    assert body["items"][0]["team_member_name"] == "Morgan Manager"
    assert body["overall_independence"]["is_independent"] is True


def test_certifying_with_declared_flag_is_409(client, engagement, manager, headers):
    eid, hdrs = engagement["id"], headers(manager)
    saved = client.post(
        _url(eid, "/independence"),
        json={"has_other_threat": True, "other_threats": "Former employee of the client"},
        headers=hdrs,
    ).get_json()

    res = client.post(_url(eid, f"/independence/{saved['id']}/certify"), headers=hdrs)
    assert res.status_code == 409
    assert res.get_json()["details"]["blockers"]


def test_stale_declaration_version_is_409(client, engagement, manager, headers):
    eid, hdrs = engagement["id"], headers(manager)
    client.post(_url(eid, "/independence"), json={}, headers=hdrs)

    res = client.post(_url(eid, "/independence"), json={"expected_version": 5}, headers=hdrs)
    assert res.status_code == 409
    assert res.get_json()["code"] == "ERR_CONFLICT_VERSION"


def test_non_json_body_is_415(client, engagement, manager, headers):
    res = client.post(
        _url(engagement["id"], "/independence"),
        data="not json",
        content_type="text/plain",
        headers=headers(manager),
    )
    assert res.status_code == 415


# ── Risk assessment & partner approval ───────────────────────────────────────


def test_get_risk_assessment_before_save_is_null(client, engagement, manager, headers):
    res = client.get(_url(engagement["id"], "/risk-assessment"), headers=headers(manager))
    assert res.status_code == 200
    assert res.get_json() == {"risk_assessment": None}


def test_invalid_risk_assessment_is_422(client, engagement, manager, headers, risk_payload):
    payload = risk_payload(recommendation="decline")
    res = client.put(_url(engagement["id"], "/risk-assessment"), json=payload, headers=headers(manager))

    assert res.status_code == 422
    assert res.get_json()["details"]["errors"][0]["field"] == "decline_reason"


def test_saved_risk_assessment_is_recomputed(client, engagement, manager, headers, risk_payload):
    payload = risk_payload("moderate", overall_risk_rating="low")
    res = client.put(_url(engagement["id"], "/risk-assessment"), json=payload, headers=headers(manager))

    assert res.status_code == 200
    body = res.get_json()
    assert body["overall_risk_rating"] == "moderate"
    assert body["status"] == "draft"
    assert body["completeness"] == 100


def test_partner_approval_requires_boolean(client, engagement, partner, headers):
    res = client.post(
        _url(engagement["id"], "/partner-approval"),
        json={"approved": "yes"},
        headers=headers(partner),
    )
    assert res.status_code == 400


def test_partner_approval_by_manager_is_403(
    client, engagement, manager, headers, risk_payload, letter_payload,
):
    eid, hdrs = engagement["id"], headers(manager)
    _confirm_independence(client, eid, hdrs)
    _submit_risk(client, eid, hdrs, risk_payload("high"))
    _sign_letter(client, eid, hdrs, letter_payload())

    res = client.post(_url(eid, "/partner-approval"), json={"approved": True}, headers=hdrs)
    assert res.status_code == 403
    assert res.get_json()["code"] == "ERR_FORBIDDEN"


# ── Engagement letter ────────────────────────────────────────────────────────


def test_letter_lifecycle(client, engagement, manager, headers, risk_payload, letter_payload):
    eid, hdrs = engagement["id"], headers(manager)
    _confirm_independence(client, eid, hdrs)
    _submit_risk(client, eid, hdrs, risk_payload())
    signed = _sign_letter(client, eid, hdrs, letter_payload())

    assert signed["status"] == "signed"
    assert signed["client_signature"]["organization"] == "Northwind Traders"
    res = client.get(_url(eid, "/letter"), headers=hdrs)
    assert res.get_json()["letter"]["version"] == 1


def test_signing_before_earlier_stages_is_422(client, engagement, manager, headers, letter_payload):
    eid, hdrs = engagement["id"], headers(manager)
    client.put(_url(eid, "/letter"), json=letter_payload(), headers=hdrs)
    client.post(_url(eid, "/letter/send"), json={}, headers=hdrs)

    res = client.post(
        _url(eid, "/letter/client-signature"),
        json={"signed_by": "Chris Client", "title": "CFO", "organization": "Northwind"},
        headers=hdrs,
    )
    assert res.status_code == 422
    assert res.get_json()["details"]["blockers"] == [
        "Independence must be completed first",
        "Risk Assessment must be completed first",
    ]


def test_signing_before_sending_is_409(client, engagement, manager, headers, letter_payload):
    eid, hdrs = engagement["id"], headers(manager)
    client.put(_url(eid, "/letter"), json=letter_payload(), headers=hdrs)

    res = client.post(
        _url(eid, "/letter/client-signature"),
        json={"signed_by": "Chris Client", "title": "CFO", "organization": "Northwind"},
        headers=hdrs,
    )
    assert res.status_code == 409


def test_send_without_letter_is_404(client, engagement, manager, headers):
    res = client.post(_url(engagement["id"], "/letter/send"), json={}, headers=headers(manager))
    assert res.status_code == 404


# ── Final acceptance ─────────────────────────────────────────────────────────


def test_complete_acceptance_with_blockers_is_422(client, engagement, manager, headers):
    res = client.post(_url(engagement["id"], "/complete"), headers=headers(manager))

    assert res.status_code == 422
    assert "Team independence must be confirmed" in res.get_json()["details"]["blockers"]


def test_high_risk_engagement_through_the_api(
    client, engagement, manager, partner, headers, risk_payload, letter_payload,
):
    eid, hdrs = engagement["id"], headers(manager)
    _confirm_independence(client, eid, hdrs)
    risk = _submit_risk(client, eid, hdrs, risk_payload("high"))
    assert risk["partner_approval_required"] is True
    _sign_letter(client, eid, hdrs, letter_payload())

    res = client.post(
        _url(eid, "/partner-approval"),
        json={"approved": True, "notes": "Risk file reviewed"},
        headers=headers(partner),
    )
    assert res.status_code == 200
    assert res.get_json()["can_complete"]["can_complete"] is True

    res = client.post(_url(eid, "/complete"), headers=headers(partner))
    assert res.status_code == 200
    body = res.get_json()
    assert body["is_accepted"] is True
    assert body["engagement"]["status"] == "accepted"

    res = client.post(_url(eid, "/complete"), headers=headers(partner))
    assert res.status_code == 409

    events = client.get(_url(eid, "/events"), headers=hdrs).get_json()
    assert events["items"][-1]["event_type"] == "acceptance_completed"
    assert events["items"][-1]["actor_name"] == "Pat Partner"


@pytest.mark.parametrize("path, method", [
    ("/independence", "post"),
    ("/risk-assessment", "put"),
    ("/letter", "put"),
])
def test_records_are_read_only_after_acceptance(
    client, engagement, manager, headers, risk_payload, letter_payload, path, method,
):
    eid, hdrs = engagement["id"], headers(manager)
    _confirm_independence(client, eid, hdrs)
    _submit_risk(client, eid, hdrs, risk_payload())
    _sign_letter(client, eid, hdrs, letter_payload())
    assert client.post(_url(eid, "/complete"), headers=hdrs).status_code == 200

    res = getattr(client, method)(_url(eid, path), json={}, headers=hdrs)
    assert res.status_code == 409


# ── Malformed input and concurrent writes ────────────────────────────────────


def test_non_numeric_team_member_id_is_422(client, engagement, manager, headers):
    res = client.post(
        _url(engagement["id"], "/independence"),
        json={"team_member_id": "abc"},
        headers=headers(manager),
    )
    assert res.status_code == 422
    body = res.get_json()
    assert body["code"] == "ERR_VALIDATION_RULE"
    assert body["details"] == {"team_member_id": "abc"}


def test_non_text_decline_reason_is_422(client, engagement, manager, headers, risk_payload):
    res = client.put(
        _url(engagement["id"], "/risk-assessment"),
        json=risk_payload(recommendation="decline", decline_reason=5),
        headers=headers(manager),
    )
    assert res.status_code == 422
    fields = [e["field"] for e in res.get_json()["details"]["errors"]]
    assert "decline_reason" in fields


def test_non_text_decline_reason_is_rejected_for_accept_too(client, engagement, manager, headers, risk_payload):
    res = client.put(
        _url(engagement["id"], "/risk-assessment"),
        json=risk_payload(decline_reason=["not", "text"]),
        headers=headers(manager),
    )
    assert res.status_code == 422


def test_non_text_partner_notes_is_422(
    client, engagement, manager, partner, headers, risk_payload, letter_payload,
):
    eid, hdrs = engagement["id"], headers(manager)
    _confirm_independence(client, eid, hdrs)
    _submit_risk(client, eid, hdrs, risk_payload("high"))
    _sign_letter(client, eid, hdrs, letter_payload())

    res = client.post(
        _url(eid, "/partner-approval"),
        json={"approved": False, "notes": {"reason": "pending"}},
        headers=headers(partner),
    )
    assert res.status_code == 422


def test_row_changed_during_request_is_409(client, engagement, manager, headers):
    eid, hdrs = engagement["id"], headers(manager)
    saved = client.post(_url(eid, "/independence"), json={}, headers=hdrs).get_json()
    bumped = []

    def _bump_row_version(session, flush_context, instances):
        if bumped or not any(isinstance(o, IndependenceDeclaration) for o in session.dirty):
            return
        bumped.append(True)
        session.connection().execute(
            sa.text("UPDATE independence_declarations SET row_version = row_version + 1 WHERE id = :id"),
            {"id": saved["id"]},
        )

    sa.event.listen(Session, "before_flush", _bump_row_version)
    try:
        res = client.post(
            _url(eid, "/independence"),
            json={"safeguards_applied": ["Second partner review"]},
            headers=hdrs,
        )
    finally:
        sa.event.remove(Session, "before_flush", _bump_row_version)

    assert bumped
    assert res.status_code == 409
    assert res.get_json()["code"] == "ERR_CONFLICT_VERSION"
