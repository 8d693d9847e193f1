"""
Shared pytest fixtures for the procurement plan test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate, catalogs seeded (autouse)
    - client: Flask test client (function-scoped)
    - make_plan: factory for plans at an arbitrary status (bypasses the engine)
    - plan: a draft plan owned by AGENCY_ID
    - actor_headers: factory for X-Actor-* request headers
    - item_payload: factory for a valid item body
    - xlsx_bytes: factory turning a grid into .xlsx bytes
"""

import io
from datetime import date

import pytest
from openpyxl import Workbook

from app import create_app
from app.models import db as _db
from app.models.procurement import ProcurementPlan
from app.services.reference_catalog import seed_reference_data

AGENCY_ID = "AG-001"
OTHER_AGENCY_ID = "AG-002"
FY = "FY2026"


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
    """Per-test: open app context, seed catalogs, rollback and recreate tables after."""
    with app.app_context():
        seed_reference_data()
        _db.session.commit()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def make_plan():
    """Create and commit a ProcurementPlan at any status (no history written)."""

    def _make(status="draft", agency_id=AGENCY_ID, financial_year_id=FY, **kwargs):
        plan = ProcurementPlan(
            agency_id=agency_id,
            financial_year_id=financial_year_id,
            plan_name=kwargs.pop("plan_name", f"{agency_id} {financial_year_id} plan"),
            period_start=kwargs.pop("period_start", date(2026, 1, 1)),
            period_end=kwargs.pop("period_end", date(2026, 12, 31)),
            status=status,
            created_by="fixture",
            **kwargs,
        )
        _db.session.add(plan)
        _db.session.commit()
        return plan

    return _make


@pytest.fixture()
def plan(make_plan):
    return make_plan()


@pytest.fixture()
def actor_headers():
    """``actor_headers("agency_user")`` → X-Actor-* headers for the test client."""

    def _headers(role, agency_id=AGENCY_ID, actor_id="user-1"):
        headers = {"X-Actor-Id": actor_id, "X-Actor-Role": role}
        if agency_id:
            headers["X-Actor-Agency-Id"] = agency_id
        return headers

    return _headers


@pytest.fixture()
def item_payload():
    """A valid item body; keyword overrides replace individual fields."""

    def _payload(**overrides):
        data = {
            "title": "Office laptops",
            "description": "Laptops for regional offices",
            "unspsc_code": "43211503",
            "procurement_method": "NCB",
            "contract_type": "SUP",
            "unit_of_measure": "EA",
            "quantity": 10,
            "estimated_unit_cost": 500,
            "estimated_contract_start": "2026-03-01",
            "estimated_contract_end": "2026-06-30",
            "q1_budget": 0,
            "q2_budget": 5000,
            "q3_budget": 0,
            "q4_budget": 0,
            "location_scope": "national",
        }
        data.update(overrides)
        return data

    return _payload


@pytest.fixture()
def xlsx_bytes():
    """Serialise a list of rows (header first) into an .xlsx workbook."""

    def _build(rows):
        wb = Workbook()
        ws = wb.active
        for row in rows:
            ws.append(list(row))
        buf = io.BytesIO()
        wb.save(buf)
        return buf.getvalue()

    return _build
