"""
Budget submission, resubmission and read views.

Tests cover:
  - Submit: steps materialized, baseline captured, audit events written
  - Payload validation (period, quantity, cost, period_months, items)
  - Duplicate "new" budget per (school, period) → 409 with existing_id
  - Submission mail to principals and budget moderators
  - Editor payload grouping, route view, events, stage counts
  - Auth: missing caller → 401, JWT bearer accepted
"""

import pytest

from budgetflow.models import db
from budgetflow.models.budget import Budget, BudgetItem, BudgetItemBaseline
from budgetflow.models.scheduling import EmailLog
from budgetflow.models.workflow import BudgetItemEvent, Step


def _h(user_id):
    return {"X-User-Id": str(user_id)}


def _item(**overrides):
    row = {"account_id": 4, "item_id": 100, "name": "A4 paper", "quantity": 2, "cost": 10}
    row.update(overrides)
    return row


# ═════════════════════════════════════════════════════════════════════════
# SUBMIT
# ═════════════════════════════════════════════════════════════════════════

class TestSubmit:
    def test_submit_creates_budget_and_items(self, client, directory):
        res = client.post("/api/v1/budgets", json={
            "school_id": 7, "period": "02-2025", "title": "Spring term",
            "items": [_item(), _item(name="Stapler", item_id=None, quantity=1, cost=4.5)],
        }, headers=_h(directory.requester))
        assert res.status_code == 201
        data = res.get_json()
        assert data["budget_status"] == "submitted"
        assert data["request_type"] == "new"
        assert data["submitted_role"] == "user"
        assert len(data["items"]) == 2
        assert data["items"][0]["item_name"] == "A4 PAPER"

    def test_item_names_use_turkish_uppercase(self, submit):
        budget = submit(items=[_item(name="kağıt bilgi")])
        assert budget["items"][0]["item_name"] == "KAĞIT BİLGİ"

    def test_steps_materialized_with_logistics_current(self, submit, directory):
        budget = submit()
        item_id = budget["items"][0]["id"]
        steps = Step.query.filter_by(budget_item_id=item_id).order_by(Step.sort_order).all()
        assert [s.step_name for s in steps] == [
            "logistics", "cost", "request_control_edit_confirm", "coordinator",
        ]
        assert [s.is_current for s in steps] == [True, False, False, False]
        assert all(s.template_id == directory.template_id for s in steps)
        assert steps[2].can_revise is True
        assert steps[0].can_revise is False

    def test_baseline_captured(self, submit):
        budget = submit(items=[_item(), _item(name="Toner", quantity=1, cost=50)])
        rows = BudgetItemBaseline.query.filter_by(budget_id=budget["id"]).all()
        assert len(rows) == 2
        assert sorted(r.item_name for r in rows) == ["A4 PAPER", "TONER"]

    def test_submission_events(self, submit):
        budget = submit(items=[_item(), _item(name="Toner")])
        events = BudgetItemEvent.query.filter_by(budget_id=budget["id"]).all()
        system = [(e.action, e.item_id is None) for e in events if e.stage == "system"]
        assert ("created", True) in system
        assert ("status_change", True) in system
        assert sum(1 for action, budget_level in system if action == "created" and not budget_level) == 2
        change = next(e for e in events if e.action == "status_change")
        assert change.old_value is None
        assert change.new_value == "submitted"

    def test_submission_mails_principal_and_moderator(self, submit):
        submit()
        recipients = {e.recipient for e in EmailLog.query.filter_by(category="submitted")}
        assert recipients == {"principal@budget.test", "moderator@budget.test"}
        budget = Budget.query.first()
        assert budget.notified_principal_submitted is True

    def test_submission_dispatches_logistics(self, submit):
        submit()
        logs = EmailLog.query.filter_by(category="stage_ready").all()
        assert [log.recipient for log in logs] == ["logistics@budget.test"]
        assert all(s.notified_at is not None
                   for s in Step.query.filter_by(step_name="logistics", is_current=True))

    def test_school_defaults_to_caller_school(self, client, directory):
        res = client.post("/api/v1/budgets", json={
            "period": "03-2025", "items": [_item()],
        }, headers=_h(directory.requester))
        assert res.status_code == 201
        assert res.get_json()["school_id"] == 7

    def test_no_template_leaves_items_unrouted(self, client, directory):
        res = client.post("/api/v1/budgets", json={
            "school_id": 8, "period": "02-2025", "items": [_item()],
        }, headers=_h(directory.other_requester))
        assert res.status_code == 201
        item_id = res.get_json()["items"][0]["id"]
        assert Step.query.filter_by(budget_item_id=item_id).count() == 0


# ═════════════════════════════════════════════════════════════════════════
# VALIDATION
# ═════════════════════════════════════════════════════════════════════════

class TestSubmitValidation:
    def _post(self, client, directory, **body):
        payload = {"school_id": 7, "period": "02-2025", "items": [_item()]}
        payload.update(body)
        return client.post("/api/v1/budgets", json=payload, headers=_h(directory.requester))

    def test_invalid_period(self, client, directory):
        res = self._post(client, directory, period="13-2025")
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_period_format(self, client, directory):
        assert self._post(client, directory, period="2025-02").status_code == 400

    def test_empty_items(self, client, directory):
        assert self._post(client, directory, items=[]).status_code == 400

    def test_zero_quantity_rejected(self, client, directory):
        res = self._post(client, directory, items=[_item(quantity=0)])
        assert res.status_code == 400
        assert "quantity" in res.get_json()["error"]

    def test_zero_cost_accepted(self, client, directory):
        res = self._post(client, directory, items=[_item(cost=0)])
        assert res.status_code == 201
        assert res.get_json()["items"][0]["cost"] == 0

    def test_negative_cost_rejected(self, client, directory):
        assert self._post(client, directory, items=[_item(cost=-1)]).status_code == 400

    @pytest.mark.parametrize("field, value", [
        ("quantity", "nan"),
        ("quantity", "inf"),
        ("quantity", "1e400"),
        ("cost", "inf"),
        ("cost", "NaN"),
        ("cost", "-inf"),
    ])
    def test_non_finite_numbers_rejected(self, client, directory, field, value):
        res = self._post(client, directory, items=[_item(**{field: value})])
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"
        assert BudgetItem.query.count() == 0

    def test_period_months_bounds(self, client, directory):
        assert self._post(client, directory, items=[_item(period_months=0)]).status_code == 400
        assert self._post(client, directory, items=[_item(period_months=13)]).status_code == 400
        res = self._post(client, directory, items=[_item(period_months=6)])
        assert res.status_code == 201
        assert res.get_json()["items"][0]["period_months"] == 6

    def test_missing_account(self, client, directory):
        assert self._post(client, directory, items=[_item(account_id=None)]).status_code == 400

    def test_decimal_comma_quantity(self, client, directory):
        res = self._post(client, directory, items=[_item(quantity="2,5")])
        assert res.status_code == 201
        assert res.get_json()["items"][0]["quantity"] == 2.5

    def test_unknown_request_type(self, client, directory):
        assert self._post(client, directory, request_type="urgent").status_code == 400

    def test_unknown_school(self, client, directory):
        assert self._post(client, directory, school_id=999).status_code == 404

    def test_validation_writes_nothing(self, client, directory):
        self._post(client, directory, items=[_item(), _item(quantity=-3)])
        assert Budget.query.count() == 0
        assert BudgetItem.query.count() == 0


class TestDuplicate:
    def test_second_new_budget_conflicts(self, client, submit, directory):
        first = submit()
        res = client.post("/api/v1/budgets", json={
            "school_id": 7, "period": "02-2025", "items": [_item()],
        }, headers=_h(directory.requester))
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_CONFLICT_DUPLICATE"
        assert body["existing_id"] == first["id"]

    def test_additional_request_allowed(self, client, submit, directory):
        submit()
        res = client.post("/api/v1/budgets", json={
            "school_id": 7, "period": "02-2025", "request_type": "additional", "items": [_item()],
        }, headers=_h(directory.requester))
        assert res.status_code == 201
        assert res.get_json()["request_type"] == "additional"

    def test_other_period_allowed(self, submit):
        submit(period="02-2025")
        assert submit(period="03-2025")["period"] == "03-2025"


# ═════════════════════════════════════════════════════════════════════════
# READS
# ═════════════════════════════════════════════════════════════════════════

class TestReads:
    def test_get_budget(self, client, submit, directory):
        budget = submit()
        res = client.get(f"/api/v1/budgets/{budget['id']}", headers=_h(directory.requester))
        assert res.status_code == 200
        assert res.get_json()["items"][0]["account_id"] == 4

    def test_get_budget_not_found(self, client, directory):
        res = client.get("/api/v1/budgets/999", headers=_h(directory.requester))
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_list_filters(self, client, submit, directory):
        submit(period="02-2025")
        submit(period="03-2025")
        res = client.get("/api/v1/budgets?school_id=7&status=submitted", headers=_h(directory.admin))
        assert len(res.get_json()) == 2
        res = client.get("/api/v1/budgets?mine=true", headers=_h(directory.admin))
        assert res.get_json() == []
        res = client.get("/api/v1/budgets?mine=1", headers=_h(directory.requester))
        assert len(res.get_json()) == 2

    def test_editor_payload_groups_by_account_and_notes(self, client, submit, directory):
        budget = submit(items=[
            _item(notes="Lab"),
            _item(name="Toner", notes="Lab"),
            _item(name="Pens", notes="Office"),
            _item(name="Beakers", account_id=5),
        ])
        res = client.get(f"/api/v1/budgets/{budget['id']}/editor-payload",
                         headers=_h(directory.principal))
        rows = res.get_json()["rows"]
        assert [(r["account_id"], r["notes"], len(r["subitems"])) for r in rows] == [
            (4, "Lab", 2), (4, "Office", 1), (5, None, 1),
        ]
        assert rows[0]["subitems"][0]["catalog_item_id"] == 100

    def test_route_view(self, client, submit, directory):
        budget = submit()
        item_id = budget["items"][0]["id"]
        res = client.get(f"/api/v1/budgets/{budget['id']}/route?item_id={item_id}",
                         headers=_h(directory.requester))
        assert res.status_code == 200
        route = res.get_json()["items"][0]["route"]
        assert route[0]["step_name"] == "submitted"
        assert route[0]["status"] == "done"
        assert route[1]["step_name"] == "logistics"
        assert route[1]["status"] == "current"
        assert [r["status"] for r in route[2:]] == ["upcoming"] * 3

    def test_route_view_foreign_item(self, client, submit, directory):
        budget = submit()
        res = client.get(f"/api/v1/budgets/{budget['id']}/route?item_id=9999",
                         headers=_h(directory.requester))
        assert res.status_code == 400

    def test_events_endpoint(self, client, submit, directory):
        budget = submit()
        res = client.get(f"/api/v1/budgets/{budget['id']}/events", headers=_h(directory.requester))
        actions = [e["action"] for e in res.get_json()]
        assert actions.count("created") == 2
        assert "status_change" in actions

    def test_stage_counts(self, client, submit, directory):
        submit(period="02-2025")
        submit(period="03-2025")
        res = client.get("/api/v1/stages/counts", headers=_h(directory.logistics))
        counts = res.get_json()
        assert counts["logistics"] == 2
        assert counts["cost"] == 0
        res = client.get("/api/v1/stages/counts", headers=_h(directory.purchasing))
        assert res.get_json()["logistics"] == 0


# ═════════════════════════════════════════════════════════════════════════
# AUTH
# ═════════════════════════════════════════════════════════════════════════

class TestAuth:
    def test_missing_caller(self, client, directory):
        res = client.get("/api/v1/budgets")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHORIZED"

    def test_unknown_user(self, client, directory):
        assert client.get("/api/v1/budgets", headers=_h(9999)).status_code == 401

    def test_inactive_user(self, client, directory):
        from budgetflow.models.directory import User
        user = db.session.get(User, directory.requester)
        user.is_active = False
        db.session.commit()
        assert client.get("/api/v1/budgets", headers=_h(directory.requester)).status_code == 401

    def test_bearer_token(self, client, directory):
        from budgetflow.models.directory import User
        from budgetflow.services.jwt_service import generate_access_token
        token = generate_access_token(db.session.get(User, directory.requester))
        res = client.get("/api/v1/budgets", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 200

    def test_invalid_bearer_token(self, client, directory):
        res = client.get("/api/v1/budgets", headers={"Authorization": "Bearer not-a-token"})
        assert res.status_code == 401

    def test_expired_bearer_token(self, client, directory):
        from budgetflow.models.directory import User
        from budgetflow.services.jwt_service import generate_access_token
        token = generate_access_token(db.session.get(User, directory.requester), expires_in=-60)
        res = client.get("/api/v1/budgets", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401

    def test_health_needs_no_caller(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_request_id_is_echoed(self, client, directory):
        res = client.get("/api/v1/budgets", headers={**_h(directory.requester), "X-Request-ID": "abc123"})
        assert res.headers["X-Request-ID"] == "abc123"
        res = client.get("/api/v1/budgets", headers=_h(directory.requester))
        assert len(res.headers["X-Request-ID"]) == 12
