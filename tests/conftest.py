"""
Shared pytest fixtures for the engagement acceptance test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - default_tenant: Pre-created Tenant entity
    - partner / manager / staff_user: firm users of the default tenant
    - engagement: engagement staffed with the manager as sole team member
    - risk_payload / letter_payload: builders for valid stage payloads
    - headers: builder for X-User-Id request headers
"""

import pytest

from auditflow import create_app
from auditflow.models import db as _db
from auditflow.models.auth import Tenant, User


def _ensure_default_tenant():
    """Create the default tenant for tests if it doesn't exist. Returns its id."""
    t = Tenant.query.filter_by(slug="test-default").first()
    if not t:
        t = Tenant(name="Test Default", slug="test-default")
        _db.session.add(t)
        _db.session.commit()
    return t.id


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        _ensure_default_tenant()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def default_tenant():
    """Return the auto-created default test tenant."""
    return Tenant.query.filter_by(slug="test-default").first()


# ── Firm users ───────────────────────────────────────────────────────────


def _make_user(tenant_id, email, full_name, firm_role):
    user = User(tenant_id=tenant_id, email=email, full_name=full_name, firm_role=firm_role)
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def partner(default_tenant):
    return _make_user(default_tenant.id, "pat@firm.test", "Pat Partner", "partner")


@pytest.fixture()
def manager(default_tenant):
    return _make_user(default_tenant.id, "morgan@firm.test", "Morgan Manager", "manager")


@pytest.fixture()
def staff_user(default_tenant):
    return _make_user(default_tenant.id, "sam@firm.test", "Sam Staff", "staff")


@pytest.fixture()
def engagement(default_tenant, manager):
    """Engagement pending acceptance with the manager as sole team member."""
    from auditflow.services import engagement_service

    return engagement_service.create_engagement(default_tenant.id, {
        "name": "FY2026 Statutory Audit",
        "client_name": "Northwind Traders",
        "engagement_type": "audit_financial_statements",
        "period_end": "2026-12-31",
        "team": [{"user_id": manager.id, "engagement_role": "manager"}],
    })


@pytest.fixture()
def headers():
    """Build request headers acting as ``user``."""
    def _headers(user):
        return {"X-User-Id": str(user.id)}
    return _headers


# ── Stage payload builders ───────────────────────────────────────────────


@pytest.fixture()
def risk_payload():
    """Build a complete risk assessment payload.

    Every rated field uses ``level``; keyword overrides replace top-level keys.
    """
    def _payload(level="low", recommendation="accept", **overrides):
        payload = {
            "management_integrity": {
                "reputation_in_market": level,
                "regulatory_history": level,
                "litigation_history": level,
                "related_party_complexity": level,
                "ownership_structure": level,
                "red_flags": [],
            },
            "financial_stability": {
                "liquidity_position": level,
                "debt_levels": level,
                "profitability_trend": "stable",
                "going_concern_indicators": False,
            },
            "engagement_risk": {
                "industry_complexity": level,
                "operational_complexity": level,
                "accounting_complexity": level,
                "it_environment_complexity": level,
                "fraud_risk": level,
                "regulatory_risk": level,
                "public_interest_risk": level,
                "specialist_required": False,
            },
            "acceptance_recommendation": recommendation,
        }
        payload.update(overrides)
        return payload
    return _payload


@pytest.fixture()
def letter_payload():
    """Build a valid engagement letter payload."""
    def _payload(**overrides):
        payload = {
            "scope": {
                "engagement_type": "audit_financial_statements",
                "financial_statements": ["balance_sheet", "income_statement", "cash_flows"],
                "period_covered": {"start_date": "2026-01-01", "end_date": "2026-12-31"},
                "applicable_framework": "IFRS",
            },
            "responsibilities": {
                "management_responsibilities": ["Preparation of the financial statements"],
                "auditor_responsibilities": ["Express an opinion on the financial statements"],
            },
            "terms": {
                "fee_structure": "fixed",
                "estimated_fee": 85000,
                "engagement_partner": "Pat Partner",
                "planned_start_date": "2027-01-15",
                "expected_completion_date": "2027-03-31",
            },
        }
        payload.update(overrides)
        return payload
    return _payload
