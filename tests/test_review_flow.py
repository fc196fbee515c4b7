"""
Request control (principal) and coordinator stages, end to end.

Tests cover:
  - Happy path: logistics → cost → principal confirm → coordinator → workflow_complete
  - Principal edits: update / insert / prune within a combo, baseline diff
  - Principal revise: pointer rewinds, budget → revision_requested, resubmission
  - Moderator confirm → approved_by_finance
  - Coordinator: approved vs adjusted, readiness, idempotence, no downgrade
  - Completion mail sent once; both completion rules agree
  - Totals as JSON / CSV / XLSX
"""

import io

import pytest
from openpyxl import load_workbook

from budgetflow.models import db
from budgetflow.models.budget import Budget, BudgetItem, BudgetItemBaseline
from budgetflow.models.scheduling import EmailLog
from budgetflow.models.workflow import BudgetItemEvent, Step
from budgetflow.services import budget_status


def _h(user_id):
    return {"X-User-Id": str(user_id)}


def _current(item_id):
    db.session.expire_all()
    return [s.step_name for s in Step.query.filter_by(budget_item_id=item_id, is_current=True)]


def _rows(client, budget_id, user_id):
    res = client.get(f"/api/v1/budgets/{budget_id}/editor-payload", headers=_h(user_id))
    return res.get_json()["rows"]


@pytest.fixture()
def budget(submit):
    return submit(items=[
        {"account_id": 4, "item_id": 100, "name": "A4 paper", "quantity": 2, "cost": 10},
        {"account_id": 4, "item_id": 100, "name": "Toner", "quantity": 1, "cost": 50},
    ])


@pytest.fixture()
def at_principal(client, budget, directory):
    """Both items past logistics and cost, waiting at request control."""
    ids = [i["id"] for i in budget["items"]]
    client.post("/api/v1/stages/logistics", json={"items": [
        {"id": i, "provided_qty": 0} for i in ids
    ]}, headers=_h(directory.logistics))
    client.post("/api/v1/stages/cost", json={"items": [
        {"id": i, "purchase_cost": 9} for i in ids
    ]}, headers=_h(directory.purchasing))
    return budget


@pytest.fixture()
def at_coordinator(client, at_principal, directory):
    bid = at_principal["id"]
    res = client.post(f"/api/v1/budgets/{bid}/principal/confirm",
                      json={"rows": _rows(client, bid, directory.principal)},
                      headers=_h(directory.principal))
    assert res.status_code == 200, res.get_json()
    return at_principal


@pytest.fixture()
def completed(client, at_coordinator, directory):
    a, b = (i["id"] for i in at_coordinator["items"])
    res = client.post("/api/v1/stages/coordinator", json={"items": [
        {"id": a, "decision": "approved"},
        {"id": b, "decision": "approved", "unit_price": 45},
    ]}, headers=_h(directory.coordinator))
    assert res.status_code == 200
    return at_coordinator


# ═════════════════════════════════════════════════════════════════════════
# REQUEST CONTROL
# ═════════════════════════════════════════════════════════════════════════

class TestPrincipalConfirm:
    def test_confirm_moves_items_to_coordinator(self, client, at_principal, directory):
        bid = at_principal["id"]
        res = client.post(f"/api/v1/budgets/{bid}/principal/confirm",
                          json={"rows": _rows(client, bid, directory.principal)},
                          headers=_h(directory.principal))
        data = res.get_json()
        assert res.status_code == 200
        assert data["updated"] == 2
        assert data["status"] == "in_review"
        for item in at_principal["items"]:
            assert _current(item["id"]) == ["coordinator"]

    def test_confirm_mails_requester(self, client, at_coordinator):
        logs = EmailLog.query.filter_by(category="status").all()
        assert [log.recipient for log in logs] == ["requester@budget.test"]

    def test_moderator_confirm_approves_by_finance(self, client, at_principal, directory):
        bid = at_principal["id"]
        res = client.post(f"/api/v1/budgets/{bid}/principal/confirm",
                          json={"rows": _rows(client, bid, directory.moderator)},
                          headers=_h(directory.moderator))
        assert res.status_code == 200
        assert res.get_json()["status"] == "approved_by_finance"

    def test_confirm_without_step_is_rejected(self, client, at_principal, directory):
        bid = at_principal["id"]
        rows = _rows(client, bid, directory.coordinator)
        rows[0]["subitems"][0]["quantity"] = 99
        res = client.post(f"/api/v1/budgets/{bid}/principal/confirm", json={"rows": rows},
                          headers=_h(directory.coordinator))
        assert res.status_code == 422
        db.session.expire_all()
        assert db.session.get(BudgetItem, at_principal["items"][0]["id"]).quantity == 2
        assert db.session.get(Budget, bid).budget_status == "submitted"

    def test_confirm_before_request_control_is_rejected(self, client, budget, directory):
        bid = budget["id"]
        res = client.post(f"/api/v1/budgets/{bid}/principal/confirm",
                          json={"rows": _rows(client, bid, directory.principal)},
                          headers=_h(directory.principal))
        assert res.status_code == 422

    def test_rows_required(self, client, at_principal, directory):
        res = client.post(f"/api/v1/budgets/{at_principal['id']}/principal/confirm", json={},
                          headers=_h(directory.principal))
        assert res.status_code == 400

    def test_edits_update_insert_and_prune(self, client, at_principal, directory):
        bid = at_principal["id"]
        a, b = (i["id"] for i in at_principal["items"])
        rows = _rows(client, bid, directory.principal)
        subitems = rows[0]["subitems"]
        subitems[0]["quantity"] = 5
        rows[0]["subitems"] = [
            subitems[0],
            {"name": "Stapler", "quantity": 1, "cost": 4},
        ]
        res = client.post(f"/api/v1/budgets/{bid}/principal/confirm", json={"rows": rows},
                          headers=_h(directory.principal))
        data = res.get_json()
        assert data["edited"] == [a]
        assert data["deleted"] == [b]
        assert len(data["inserted"]) == 1
        new_id = data["inserted"][0]

        assert db.session.get(BudgetItem, b) is None
        assert Step.query.filter_by(budget_item_id=b).count() == 0
        assert _current(new_id) == ["coordinator"]
        steps = Step.query.filter_by(budget_item_id=new_id).order_by(Step.sort_order).all()
        assert [s.step_status for s in steps[:3]] == ["confirmed"] * 3

        changes = client.get(f"/api/v1/budgets/{bid}/changes", headers=_h(directory.requester)).get_json()
        assert changes["counts"] == {"added": 1, "removed": 1, "moved": 0, "edited": 1, "unchanged": 0}
        assert changes["edited"][0]["changes"]["quantity"] == {"from": 2, "to": 5}
        assert changes["removed"][0]["item_name"] == "TONER"

    def test_move_to_other_account_rebinds_steps(self, client, at_principal, directory):
        bid = at_principal["id"]
        a = at_principal["items"][0]["id"]
        rows = _rows(client, bid, directory.principal)
        moved = rows[0]["subitems"].pop(0)
        rows.append({"account_id": 5, "notes": None, "subitems": [moved]})
        res = client.post(f"/api/v1/budgets/{bid}/principal/confirm", json={"rows": rows},
                          headers=_h(directory.principal))
        assert res.status_code == 200
        assert db.session.get(BudgetItem, a).sub_account_id == 5
        assert {s.sub_account_id for s in Step.query.filter_by(budget_item_id=a)} == {5}
        changes = client.get(f"/api/v1/budgets/{bid}/changes", headers=_h(directory.requester)).get_json()
        assert changes["moved"] == [{"item_id": a, "item_name": "A4 PAPER", "from": 4, "to": 5}]


class TestPrincipalRevise:
    def test_revise_rewinds_to_previous_stage(self, client, at_principal, directory):
        bid = at_principal["id"]
        res = client.post(f"/api/v1/budgets/{bid}/principal/revise", json={
            "rows": _rows(client, bid, directory.principal), "reason": "Quantities too high",
        }, headers=_h(directory.principal))
        assert res.status_code == 200
        assert res.get_json()["status"] == "revision_requested"

        for item in at_principal["items"]:
            assert _current(item["id"]) == ["cost"]
            step = Step.query.filter_by(budget_item_id=item["id"],
                                        step_name="request_control_edit_confirm").one()
            assert step.step_status == "revision_requested"
            cost = Step.query.filter_by(budget_item_id=item["id"], step_name="cost").one()
            assert cost.step_status == "pending"

        # notified_at was reset, so purchasing is mailed a second time
        mails = EmailLog.query.filter_by(category="stage_ready", recipient="purchasing@budget.test")
        assert mails.count() == 2

        events = BudgetItemEvent.query.filter_by(budget_id=bid, action="revision_requested").all()
        assert len(events) == 2
        assert events[0].note == "Quantities too high"
        assert events[0].new_value == "cost"

    def test_revise_before_request_control_keeps_edits(self, client, budget, directory):
        bid = budget["id"]
        a = budget["items"][0]["id"]
        rows = _rows(client, bid, directory.principal)
        sub = next(s for r in rows for s in r["subitems"] if s["budget_item_id"] == a)
        sub["quantity"] = 5
        res = client.post(f"/api/v1/budgets/{bid}/principal/revise", json={
            "rows": rows, "reason": "Order more paper",
        }, headers=_h(directory.principal))
        assert res.status_code == 200
        data = res.get_json()
        assert data["updated"] == 0
        assert data["status"] == "revision_requested"

        db.session.expire_all()
        assert db.session.get(BudgetItem, a).quantity == 5
        assert db.session.get(Budget, bid).budget_status == "revision_requested"
        # pointers untouched
        assert _current(a) == ["logistics"]
        change = BudgetItemEvent.query.filter_by(budget_id=bid, action="status_change",
                                                 new_value="revision_requested").one()
        assert change.note == "Order more paper"

    def test_revise_requires_reason(self, client, at_principal, directory):
        bid = at_principal["id"]
        res = client.post(f"/api/v1/budgets/{bid}/principal/revise", json={
            "rows": _rows(client, bid, directory.principal),
        }, headers=_h(directory.principal))
        assert res.status_code == 400

    def test_revise_mails_requester_and_principal(self, client, at_principal, directory):
        bid = at_principal["id"]
        client.post(f"/api/v1/budgets/{bid}/principal/revise", json={
            "rows": _rows(client, bid, directory.principal), "reason": "Too much",
        }, headers=_h(directory.principal))
        recipients = {log.recipient for log in EmailLog.query.filter_by(category="status")}
        assert recipients == {"requester@budget.test", "principal@budget.test"}

    def test_revise_shows_on_route(self, client, at_principal, directory):
        bid = at_principal["id"]
        client.post(f"/api/v1/budgets/{bid}/principal/revise", json={
            "rows": _rows(client, bid, directory.principal), "reason": "Too much",
        }, headers=_h(directory.principal))
        route = client.get(f"/api/v1/budgets/{bid}/route", headers=_h(directory.requester)).get_json()
        assert route["budget_revision_requested"] is True
        statuses = {r["step_name"]: r["status"] for r in route["items"][0]["route"]}
        assert statuses["cost"] == "current"


class TestResubmit:
    def _revise(self, client, budget, directory):
        bid = budget["id"]
        client.post(f"/api/v1/budgets/{bid}/principal/revise", json={
            "rows": _rows(client, bid, directory.principal), "reason": "Too much",
        }, headers=_h(directory.principal))

    def test_resubmit_restarts_workflow(self, client, at_principal, directory):
        self._revise(client, at_principal, directory)
        bid = at_principal["id"]
        a, b = (i["id"] for i in at_principal["items"])
        events_before = BudgetItemEvent.query.filter_by(budget_id=bid).count()

        res = client.put(f"/api/v1/budgets/{bid}", json={"items": [
            {"id": a, "account_id": 4, "item_id": 100, "name": "A4 paper", "quantity": 1, "cost": 10},
            {"id": b, "account_id": 4, "item_id": 100, "name": "Toner", "quantity": 1, "cost": 50},
        ]}, headers=_h(directory.requester))
        assert res.status_code == 200
        assert res.get_json()["budget_status"] == "submitted"

        assert _current(a) == ["logistics"]
        assert Step.query.filter_by(budget_item_id=a).count() == 4
        item = db.session.get(BudgetItem, a)
        assert item.storage_status is None
        assert item.purchase_cost is None
        baseline = BudgetItemBaseline.query.filter_by(budget_id=bid, item_id=a).one()
        assert baseline.quantity == 1
        assert BudgetItemEvent.query.filter_by(budget_id=bid).count() > events_before

    def test_resubmit_by_other_user_forbidden(self, client, at_principal, directory):
        self._revise(client, at_principal, directory)
        res = client.put(f"/api/v1/budgets/{at_principal['id']}", json={"items": [
            {"account_id": 4, "name": "Paper", "quantity": 1, "cost": 1},
        ]}, headers=_h(directory.logistics))
        assert res.status_code == 403

    def test_resubmit_in_review_rejected(self, client, at_coordinator, directory):
        res = client.put(f"/api/v1/budgets/{at_coordinator['id']}", json={"items": [
            {"account_id": 4, "name": "Paper", "quantity": 1, "cost": 1},
        ]}, headers=_h(directory.requester))
        assert res.status_code == 422
        assert res.get_json()["details"]["budget_status"] == "in_review"

    def test_resubmit_drops_missing_items(self, client, at_principal, directory):
        self._revise(client, at_principal, directory)
        bid = at_principal["id"]
        a, b = (i["id"] for i in at_principal["items"])
        client.put(f"/api/v1/budgets/{bid}", json={"items": [
            {"id": a, "account_id": 4, "item_id": 100, "name": "A4 paper", "quantity": 2, "cost": 10},
        ]}, headers=_h(directory.requester))
        assert db.session.get(BudgetItem, b) is None
        assert BudgetItemEvent.query.filter_by(budget_id=bid, action="item_deleted").count() == 1


# ═════════════════════════════════════════════════════════════════════════
# COORDINATOR
# ═════════════════════════════════════════════════════════════════════════

class TestCoordinator:
    def test_approved_and_adjusted(self, client, completed):
        a, b = (i["id"] for i in completed["items"])
        item_a = db.session.get(BudgetItem, a)
        item_b = db.session.get(BudgetItem, b)
        assert item_a.final_purchase_status == "approved"
        assert item_a.final_quantity == 2
        assert item_a.final_purchase_cost == 10
        assert item_b.final_purchase_status == "adjusted"
        assert item_b.final_purchase_cost == 45
        assert item_b.final_purchase_status_display == "Approved (adjusted)"

    def test_budget_completes(self, client, completed):
        budget = db.session.get(Budget, completed["id"])
        assert budget.budget_status == "workflow_complete"
        assert budget.closed_at is not None
        statuses = [e.new_value for e in BudgetItemEvent.query.filter_by(
            budget_id=budget.id, action="status_change").order_by(BudgetItemEvent.id)]
        assert statuses == ["submitted", "in_review", "review_been_completed", "workflow_complete"]

    def test_completion_mail_sent_once(self, client, completed, directory):
        logs = EmailLog.query.filter_by(category="complete").all()
        assert sorted(log.recipient for log in logs) == ["principal@budget.test", "requester@budget.test"]
        assert db.session.get(Budget, completed["id"]).notified_complete_at is not None

        a = completed["items"][0]["id"]
        res = client.post("/api/v1/stages/coordinator", json={"items": [
            {"id": a, "decision": "rejected"},
        ]}, headers=_h(directory.coordinator))
        assert res.get_json()["updated"] == 1
        assert EmailLog.query.filter_by(category="complete").count() == 2

    def test_repeat_decision_is_noop(self, client, completed, directory):
        a = completed["items"][0]["id"]
        before = BudgetItemEvent.query.filter_by(item_id=a, action="final_decision").count()
        res = client.post("/api/v1/stages/coordinator", json={"items": [
            {"id": a, "decision": "approved"},
        ]}, headers=_h(directory.coordinator))
        assert res.get_json()["updated"] == 0
        assert res.get_json()["skipped"] == 1
        assert BudgetItemEvent.query.filter_by(item_id=a, action="final_decision").count() == before

    def test_reject_after_complete_keeps_status(self, client, completed, directory):
        a = completed["items"][0]["id"]
        client.post("/api/v1/stages/coordinator", json={"items": [{"id": a, "decision": "rejected"}]},
                    headers=_h(directory.coordinator))
        item = db.session.get(BudgetItem, a)
        assert item.final_purchase_status == "rejected"
        assert item.final_purchase_cost is None
        assert item.final_quantity is None
        assert db.session.get(Budget, completed["id"]).budget_status == "workflow_complete"

    def test_not_ready_items_skipped(self, client, budget, directory):
        a = budget["items"][0]["id"]
        res = client.post("/api/v1/stages/coordinator", json={"items": [
            {"id": a, "decision": "approved"},
        ]}, headers=_h(directory.coordinator))
        assert res.get_json()["skipped"] == 1
        assert db.session.get(BudgetItem, a).final_purchase_status is None

    def test_foreign_user_skipped(self, client, at_coordinator, directory):
        a = at_coordinator["items"][0]["id"]
        res = client.post("/api/v1/stages/coordinator", json={"items": [
            {"id": a, "decision": "approved"},
        ]}, headers=_h(directory.logistics))
        assert res.get_json()["skipped"] == 1

    def test_invalid_decision(self, client, at_coordinator, directory):
        a = at_coordinator["items"][0]["id"]
        res = client.post("/api/v1/stages/coordinator", json={"items": [
            {"id": a, "decision": "maybe"},
        ]}, headers=_h(directory.coordinator))
        assert res.status_code == 400

    def test_negative_price_rejected(self, client, at_coordinator, directory):
        a = at_coordinator["items"][0]["id"]
        res = client.post("/api/v1/stages/coordinator", json={"items": [
            {"id": a, "decision": "approved", "unit_price": -5},
        ]}, headers=_h(directory.coordinator))
        assert res.status_code == 400

    def test_partial_decisions_keep_review_open(self, client, at_coordinator, directory):
        a = at_coordinator["items"][0]["id"]
        client.post("/api/v1/stages/coordinator", json={"items": [{"id": a, "decision": "approved"}]},
                    headers=_h(directory.coordinator))
        assert db.session.get(Budget, at_coordinator["id"]).budget_status == "in_review"


class TestCompletionRules:
    def test_rules_agree_before_completion(self, at_coordinator):
        bid = at_coordinator["id"]
        counters = budget_status.counters(bid)
        assert counters["wf_not_done"] == 2
        assert budget_status.all_items_final_or_excluded(bid) is False

    def test_rules_agree_after_completion(self, completed):
        bid = completed["id"]
        counters = budget_status.counters(bid)
        assert counters["wf_not_done"] + counters["coord_pending"] == 0
        assert counters["coord_done"] == 2
        assert budget_status.all_items_final_or_excluded(bid) is True

    def test_status_never_downgrades(self, completed):
        budget = db.session.get(Budget, completed["id"])
        assert budget_status.set_status(budget, "in_review") is False
        assert budget.budget_status == "workflow_complete"

    def test_skipped_upstream_events_written_once(self, completed):
        bid = completed["id"]
        skipped = BudgetItemEvent.query.filter_by(budget_id=bid, action="skipped").all()
        assert {e.stage for e in skipped} == {"needed"}
        assert len(skipped) == 2
        budget_status.ensure_skipped_upstream_events(bid)
        assert BudgetItemEvent.query.filter_by(budget_id=bid, action="skipped").count() == 2


# ═════════════════════════════════════════════════════════════════════════
# TOTALS
# ═════════════════════════════════════════════════════════════════════════

class TestTotals:
    def test_json_totals(self, client, completed, directory):
        res = client.get("/api/v1/schools/7/budget-totals", headers=_h(directory.requester))
        data = res.get_json()
        assert data["rows"][0]["total"] == 65
        assert data["rows"][0]["items_counted"] == 2
        assert data["grand_total"] == 65

    def test_rejected_items_excluded(self, client, completed, directory):
        a = completed["items"][0]["id"]
        client.post("/api/v1/stages/coordinator", json={"items": [{"id": a, "decision": "rejected"}]},
                    headers=_h(directory.coordinator))
        data = client.get("/api/v1/schools/7/budget-totals", headers=_h(directory.requester)).get_json()
        assert data["grand_total"] == 45

    def test_csv_totals(self, client, completed, directory):
        res = client.get("/api/v1/schools/7/budget-totals?format=csv", headers=_h(directory.requester))
        assert res.status_code == 200
        assert res.mimetype == "text/csv"
        lines = res.get_data(as_text=True).strip().splitlines()
        assert lines[0] == "Budget,Period,Title,Request type,Status,Items,Total"
        assert lines[1].endswith(",2,65.0")

    def test_xlsx_totals(self, client, completed, directory):
        res = client.get("/api/v1/schools/7/budget-totals?format=xlsx", headers=_h(directory.requester))
        assert res.status_code == 200
        wb = load_workbook(io.BytesIO(res.data))
        ws = wb.active
        assert ws.title == "Budget Totals"
        assert ws["A1"].value == "Budget totals: Ankara Science High School"
        assert ws["A4"].value == "Budget"
        assert ws["G5"].value == 65

    def test_unknown_school(self, client, directory):
        res = client.get("/api/v1/schools/999/budget-totals", headers=_h(directory.requester))
        assert res.status_code == 404
