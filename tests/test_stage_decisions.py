"""
Department stage decisions (logistics / needed / cost) and step pointer rules.

Tests cover:
  - Logistics: derived storage status, clamping, in-stock skips cost steps
  - Needed: not-needed items leave the workflow, note-only rows
  - Cost: purchase cost recorded, pointer advances
  - Foreign owner / wrong stage rows are skipped, not rejected
  - Type-based skipping, all stages skipped → workflow_done at submission
  - Decision snapshots and audit events
  - Revise rewinds to the previous step, or to the virtual submitted position
"""

import pytest

from budgetflow.models import db
from budgetflow.models.budget import BudgetItem
from budgetflow.models.workflow import BudgetItemEvent, BudgetItemStepState, Step
from budgetflow.services import decision_engine, template_service


def _h(user_id):
    return {"X-User-Id": str(user_id)}


def _steps(item_id):
    db.session.expire_all()
    return {s.step_name: s for s in Step.query.filter_by(budget_item_id=item_id)}


def _current(item_id):
    return [name for name, s in _steps(item_id).items() if s.is_current]


@pytest.fixture()
def budget(submit):
    return submit(items=[
        {"account_id": 4, "item_id": 100, "name": "A4 paper", "quantity": 10, "cost": 3},
        {"account_id": 4, "item_id": 100, "name": "Toner", "quantity": 2, "cost": 40},
    ])


@pytest.fixture()
def needs_template(directory):
    """needed → coordinator, bound to school 7 / Laboratory."""
    tpl = template_service.create_template({"name": "Needs first", "stages": [
        {"stage": "needed", "sort_order": 10, "owner_department_id": 6},
        {"stage": "coordinator", "sort_order": 20, "owner_department_id": 5},
    ]})
    template_service.create_binding({"template_id": tpl.id, "school_id": 7, "sub_account_id": 5})
    return tpl.id


# ═════════════════════════════════════════════════════════════════════════
# LOGISTICS
# ═════════════════════════════════════════════════════════════════════════

class TestLogistics:
    def test_out_of_stock_advances_to_cost(self, client, budget, directory):
        a, b = (i["id"] for i in budget["items"])
        res = client.post("/api/v1/stages/logistics", json={"items": [
            {"id": a, "provided_qty": 0}, {"id": b, "status": "out_of_stock"},
        ]}, headers=_h(directory.logistics))
        assert res.status_code == 200
        data = res.get_json()
        assert data == {"updated": 2, "skipped": 0, "budgets": [budget["id"]]}
        assert _current(a) == ["cost"]
        assert _current(b) == ["cost"]
        assert _steps(a)["logistics"].step_status == "confirmed"

    def test_partial_stock_derived_and_clamped(self, client, budget, directory):
        a = budget["items"][0]["id"]
        client.post("/api/v1/stages/logistics", json={"items": [{"id": a, "provided_qty": 4}]},
                    headers=_h(directory.logistics))
        item = db.session.get(BudgetItem, a)
        assert item.storage_status == "in_partial"
        assert item.storage_provided_qty == 4
        assert _current(a) == ["cost"]

    def test_provided_qty_clamped_to_quantity(self, client, budget, directory):
        a = budget["items"][0]["id"]
        client.post("/api/v1/stages/logistics", json={"items": [{"id": a, "provided_qty": 50}]},
                    headers=_h(directory.logistics))
        db.session.expire_all()
        item = db.session.get(BudgetItem, a)
        assert item.storage_provided_qty == 10
        assert item.storage_status == "in_stock"

    def test_in_stock_skips_cost(self, client, budget, directory):
        a = budget["items"][0]["id"]
        client.post("/api/v1/stages/logistics", json={"items": [{"id": a, "status": "in_stock"}]},
                    headers=_h(directory.logistics))
        steps = _steps(a)
        assert steps["cost"].step_status == "skipped"
        assert steps["cost"].is_skipped is True
        assert steps["request_control_edit_confirm"].is_current is True
        assert db.session.get(BudgetItem, a).storage_provided_qty == 10

    def test_foreign_department_skipped(self, client, budget, directory):
        a = budget["items"][0]["id"]
        res = client.post("/api/v1/stages/logistics", json={"items": [{"id": a, "provided_qty": 0}]},
                          headers=_h(directory.purchasing))
        assert res.get_json()["updated"] == 0
        assert res.get_json()["skipped"] == 1
        assert _current(a) == ["logistics"]

    def test_unknown_item_skipped(self, client, budget, directory):
        res = client.post("/api/v1/stages/logistics", json={"items": [{"id": 9999, "provided_qty": 0}]},
                          headers=_h(directory.logistics))
        assert res.get_json()["skipped"] == 1

    def test_invalid_status_rejected(self, client, budget, directory):
        a = budget["items"][0]["id"]
        res = client.post("/api/v1/stages/logistics", json={"items": [{"id": a, "status": "lost"}]},
                          headers=_h(directory.logistics))
        assert res.status_code == 400

    def test_missing_decision_rejected(self, client, budget, directory):
        a = budget["items"][0]["id"]
        res = client.post("/api/v1/stages/logistics", json={"items": [{"id": a}]},
                          headers=_h(directory.logistics))
        assert res.status_code == 400

    def test_decision_snapshot_and_event(self, client, budget, directory):
        a = budget["items"][0]["id"]
        client.post("/api/v1/stages/logistics", json={"items": [{"id": a, "provided_qty": 0}]},
                    headers=_h(directory.logistics))
        state = BudgetItemStepState.query.filter_by(item_id=a, stage="logistics").one()
        assert state.decision == "out_of_stock"
        assert state.actor_user_id == directory.logistics
        assert state.actor_department_id == 2
        event = BudgetItemEvent.query.filter_by(item_id=a, action="storage_update").one()
        assert event.new_value == "out_of_stock"

    def test_repeat_decision_is_skipped(self, client, budget, directory):
        a = budget["items"][0]["id"]
        body = {"items": [{"id": a, "provided_qty": 0}]}
        client.post("/api/v1/stages/logistics", json=body, headers=_h(directory.logistics))
        res = client.post("/api/v1/stages/logistics", json=body, headers=_h(directory.logistics))
        assert res.get_json()["skipped"] == 1
        assert BudgetItemStepState.query.filter_by(item_id=a).count() == 1


# ═════════════════════════════════════════════════════════════════════════
# COST
# ═════════════════════════════════════════════════════════════════════════

class TestCost:
    def _to_cost(self, client, budget, directory):
        client.post("/api/v1/stages/logistics", json={"items": [
            {"id": i["id"], "provided_qty": 0} for i in budget["items"]
        ]}, headers=_h(directory.logistics))

    def test_cost_recorded_and_advanced(self, client, budget, directory):
        self._to_cost(client, budget, directory)
        a = budget["items"][0]["id"]
        res = client.post("/api/v1/stages/cost", json={"items": [
            {"id": a, "purchase_cost": "2,75", "purchasing_note": "supplier B"},
        ]}, headers=_h(directory.purchasing))
        assert res.get_json()["updated"] == 1
        item = db.session.get(BudgetItem, a)
        assert item.purchase_cost == 2.75
        assert item.purchasing_note == "supplier B"
        assert _current(a) == ["request_control_edit_confirm"]

    def test_cost_required(self, client, budget, directory):
        self._to_cost(client, budget, directory)
        a = budget["items"][0]["id"]
        res = client.post("/api/v1/stages/cost", json={"items": [{"id": a}]},
                          headers=_h(directory.purchasing))
        assert res.status_code == 400

    def test_negative_cost_rejected(self, client, budget, directory):
        self._to_cost(client, budget, directory)
        a = budget["items"][0]["id"]
        res = client.post("/api/v1/stages/cost", json={"items": [{"id": a, "purchase_cost": -1}]},
                          headers=_h(directory.purchasing))
        assert res.status_code == 400

    def test_cost_before_logistics_is_skipped(self, client, budget, directory):
        a = budget["items"][0]["id"]
        res = client.post("/api/v1/stages/cost", json={"items": [{"id": a, "purchase_cost": 1}]},
                          headers=_h(directory.purchasing))
        assert res.get_json()["skipped"] == 1


# ═════════════════════════════════════════════════════════════════════════
# NEEDED
# ═════════════════════════════════════════════════════════════════════════

class TestNeeded:
    def _lab_budget(self, submit):
        return submit(items=[
            {"account_id": 5, "name": "Beakers", "quantity": 20, "cost": 2},
            {"account_id": 5, "name": "Burner", "quantity": 1, "cost": 90},
        ])

    def test_lab_items_use_specific_template(self, submit, needs_template):
        budget = self._lab_budget(submit)
        a = budget["items"][0]["id"]
        assert _current(a) == ["needed"]
        assert all(s.template_id == needs_template for s in _steps(a).values())

    def test_not_needed_leaves_workflow(self, client, submit, needs_template, directory):
        budget = self._lab_budget(submit)
        a, b = (i["id"] for i in budget["items"])
        res = client.post("/api/v1/stages/needed", json={"items": [
            {"id": a, "needed_status": False}, {"id": b, "needed_status": "yes"},
        ]}, headers=_h(directory.needs))
        assert res.get_json()["updated"] == 2

        item_a = db.session.get(BudgetItem, a)
        assert item_a.workflow_done is True
        assert item_a.needed_status == 0
        assert _steps(a)["coordinator"].step_status == "skipped"
        assert _current(a) == []
        assert _current(b) == ["coordinator"]

    def test_note_only_row_keeps_pointer(self, client, submit, needs_template, directory):
        budget = self._lab_budget(submit)
        a = budget["items"][0]["id"]
        res = client.post("/api/v1/stages/needed", json={"items": [
            {"id": a, "note": "check the inventory first"},
        ]}, headers=_h(directory.needs))
        assert res.get_json()["updated"] == 1
        item = db.session.get(BudgetItem, a)
        assert item.needed_note == "check the inventory first"
        assert item.needed_status is None
        assert _current(a) == ["needed"]

    def test_invalid_needed_status(self, client, submit, needs_template, directory):
        budget = self._lab_budget(submit)
        a = budget["items"][0]["id"]
        res = client.post("/api/v1/stages/needed", json={"items": [
            {"id": a, "needed_status": "maybe"},
        ]}, headers=_h(directory.needs))
        assert res.status_code == 400


# ═════════════════════════════════════════════════════════════════════════
# TYPE-BASED SKIPPING
# ═════════════════════════════════════════════════════════════════════════

class TestTypeSkip:
    def test_skipped_stage_never_current(self, client, directory):
        template_service.replace_stages(directory.template_id, [
            {"stage": "logistics", "sort_order": 10, "owner_department_id": 2, "skip_type_ids": [9]},
            {"stage": "cost", "sort_order": 20, "owner_department_id": 3},
            {"stage": "request_control_edit_confirm", "sort_order": 30, "owner_department_id": 4},
            {"stage": "coordinator", "sort_order": 40, "owner_department_id": 5},
        ])
        res = client.post("/api/v1/budgets", json={"school_id": 7, "period": "02-2025", "items": [
            {"account_id": 4, "item_id": 101, "name": "Cleaning", "quantity": 1, "cost": 500},
            {"account_id": 4, "item_id": 100, "name": "Paper", "quantity": 1, "cost": 5},
        ]}, headers=_h(directory.requester))
        service_item, goods_item = (i["id"] for i in res.get_json()["items"])

        steps = _steps(service_item)
        assert steps["logistics"].is_skipped is True
        assert steps["logistics"].step_status == "skipped"
        assert _current(service_item) == ["cost"]
        assert _current(goods_item) == ["logistics"]

    def test_all_stages_skipped_marks_item_done(self, client, directory):
        template_service.replace_stages(directory.template_id, [
            {"stage": "logistics", "sort_order": 10, "owner_department_id": 2, "skip_type_ids": [9]},
            {"stage": "coordinator", "sort_order": 20, "owner_department_id": 5, "skip_type_ids": "[9]"},
        ])
        res = client.post("/api/v1/budgets", json={"school_id": 7, "period": "02-2025", "items": [
            {"account_id": 4, "item_id": 101, "name": "Cleaning", "quantity": 1, "cost": 500},
        ]}, headers=_h(directory.requester))
        item_id = res.get_json()["items"][0]["id"]
        item = db.session.get(BudgetItem, item_id)
        assert item.workflow_done is True
        assert _current(item_id) == []
        assert all(s.step_status == "skipped" for s in _steps(item_id).values())


# ═════════════════════════════════════════════════════════════════════════
# REVISE
# ═════════════════════════════════════════════════════════════════════════

class TestReviseStep:
    def test_revise_at_first_stage_leaves_no_current_step(self, budget):
        item_id = budget["items"][0]["id"]
        item = db.session.get(BudgetItem, item_id)
        first = _steps(item_id)["logistics"]

        assert decision_engine.revise_step(item, first, reason="Wrong account") is None
        db.session.commit()

        steps = _steps(item_id)
        assert _current(item_id) == []
        assert steps["logistics"].step_status == "revision_requested"
        assert all(s.step_status == "pending" for name, s in steps.items() if name != "logistics")
        event = BudgetItemEvent.query.filter_by(item_id=item_id, action="revision_requested").one()
        assert (event.old_value, event.new_value) == ("logistics", "submitted")

    def test_revise_later_stage_reactivates_previous(self, client, budget, directory):
        item_id = budget["items"][0]["id"]
        client.post("/api/v1/stages/logistics", json={"items": [
            {"id": item_id, "status": "out_of_stock"},
        ]}, headers=_h(directory.logistics))
        item = db.session.get(BudgetItem, item_id)
        cost = _steps(item_id)["cost"]
        assert cost.is_current is True

        prev = decision_engine.revise_step(item, cost, reason="Check stock again")
        db.session.commit()
        assert prev.step_name == "logistics"
        assert _current(item_id) == ["logistics"]
