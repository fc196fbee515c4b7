"""
Shared pytest fixtures for the School Budget Workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - directory: schools, departments, users, accounts, catalog and the
      standard four-stage template bound to school 7
    - submit: posts a budget for the requester and returns the JSON body
"""

from types import SimpleNamespace

import pytest

from budgetflow import create_app
from budgetflow.models import db as _db
from budgetflow.services import template_service

STANDARD_STAGES = [
    {"stage": "logistics", "sort_order": 10, "owner_department_id": 2},
    {"stage": "cost", "sort_order": 20, "owner_department_id": 3},
    {"stage": "request_control_edit_confirm", "sort_order": 30, "owner_department_id": 4,
     "allow_revise": True},
    {"stage": "coordinator", "sort_order": 40, "owner_department_id": 5},
]


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


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
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Reference data ───────────────────────────────────────────────────────


@pytest.fixture()
def directory():
    """Reference rows every workflow test needs.

    Departments: 2 logistics, 3 purchasing, 4 request control,
    5 coordination, 6 needs assessment.
    """
    from budgetflow.models.directory import (
        CatalogItem,
        Department,
        ItemType,
        School,
        SubAccount,
        User,
    )

    _db.session.add_all([
        School(id=7, school_name="Ankara Science High School"),
        School(id=8, school_name="Izmir Primary School"),
        Department(id=2, department_name="Logistics"),
        Department(id=3, department_name="Purchasing"),
        Department(id=4, department_name="Request Control"),
        Department(id=5, department_name="Coordination"),
        Department(id=6, department_name="Needs Assessment"),
        SubAccount(id=4, name="Stationery"),
        SubAccount(id=5, name="Laboratory"),
        ItemType(id=1, name="Goods"),
        ItemType(id=9, name="Services"),
    ])
    _db.session.flush()
    _db.session.add_all([
        CatalogItem(id=100, name="A4 paper", type_id=1, unit="pack"),
        CatalogItem(id=101, name="Cleaning service", type_id=9, unit="month"),
        User(id=10, name="Requester", email="requester@budget.test", role="user", school_id=7),
        User(id=11, name="Logistics Officer", email="logistics@budget.test", department_id=2),
        User(id=12, name="Purchasing Officer", email="purchasing@budget.test", department_id=3),
        User(id=13, name="Principal", email="principal@budget.test", role="principal",
             school_id=7, department_id=4),
        User(id=14, name="Coordinator", email="coordinator@budget.test", role="coordinator",
             department_id=5),
        User(id=15, name="Admin", email="admin-user@budget.test", role="admin"),
        User(id=16, name="Moderator", email="moderator@budget.test", role="moderator",
             school_id=7, budget_mod=True),
        User(id=17, name="Needs Officer", email="needs@budget.test", department_id=6),
        User(id=18, name="Other Requester", email="other@budget.test", school_id=8),
    ])
    _db.session.commit()

    tpl = template_service.create_template({"name": "Standard", "stages": STANDARD_STAGES})
    binding = template_service.create_binding({"template_id": tpl.id, "school_id": 7})
    return SimpleNamespace(
        template_id=tpl.id,
        binding_id=binding.id,
        school_id=7,
        other_school_id=8,
        account_id=4,
        lab_account_id=5,
        goods_item=100,
        service_item=101,
        requester=10,
        logistics=11,
        purchasing=12,
        principal=13,
        coordinator=14,
        admin=15,
        moderator=16,
        needs=17,
        other_requester=18,
    )


@pytest.fixture()
def submit(client, directory):
    """Submit a budget as the requester; returns the created budget JSON."""

    def _submit(items=None, period="02-2025", user_id=None, **extra):
        body = {
            "school_id": directory.school_id,
            "period": period,
            "title": "Spring term",
            "items": items or [
                {"account_id": 4, "item_id": 100, "name": "A4 paper", "quantity": 2, "cost": 10},
            ],
        }
        body.update(extra)
        res = client.post(
            "/api/v1/budgets", json=body,
            headers={"X-User-Id": str(user_id or directory.requester)},
        )
        assert res.status_code == 201, res.get_json()
        return res.get_json()

    return _submit
