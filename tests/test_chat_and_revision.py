"""
Per-item chat and post-review item revision.

Tests cover:
  - Thread get-or-create, derived participants
  - Posting: first-message mail, nonce de-duplication, broadcaster fan-out
  - Unread counts and read receipts
  - Item revision: reviewer sends back, requester answers, coordinator re-decides
  - Item removal and its effect on completion and totals
"""

import pytest

from budgetflow.models import db
from budgetflow.models.budget import Budget, BudgetItem, RevisionAnswer
from budgetflow.models.scheduling import EmailLog
from budgetflow.models.workflow import BudgetItemEvent, Step
from budgetflow.services.chat_broadcaster import broadcaster


def _h(user_id):
    return {"X-User-Id": str(user_id)}


@pytest.fixture()
def item(submit):
    return submit()["items"][0]


@pytest.fixture()
def thread(client, item, directory):
    res = client.post("/api/v1/chat/threads", json={"item_id": item["id"], "stage": "logistics"},
                      headers=_h(directory.requester))
    assert res.status_code == 200
    return res.get_json()


# ═════════════════════════════════════════════════════════════════════════
# CHAT
# ═════════════════════════════════════════════════════════════════════════

class TestThreads:
    def test_participants(self, thread, directory):
        assert [p["id"] for p in thread["participants"]] == [directory.requester, directory.logistics]
        assert thread["messages"] == []
        assert thread["thread"]["stage"] == "logistics"

    def test_get_or_create_is_stable(self, client, thread, item, directory):
        res = client.post("/api/v1/chat/threads", json={"item_id": item["id"], "stage": "logistics"},
                          headers=_h(directory.logistics))
        assert res.get_json()["thread"]["id"] == thread["thread"]["id"]

    def test_other_stage_other_thread(self, client, thread, item, directory):
        res = client.post("/api/v1/chat/threads", json={"item_id": item["id"], "stage": "cost"},
                          headers=_h(directory.requester))
        assert res.get_json()["thread"]["id"] != thread["thread"]["id"]

    @pytest.mark.parametrize("body, status", [
        ({"stage": "logistics"}, 400),
        ({"item_id": 1}, 400),
        ({"item_id": 999, "stage": "logistics"}, 404),
    ])
    def test_validation(self, client, directory, item, body, status):
        res = client.post("/api/v1/chat/threads", json=body, headers=_h(directory.requester))
        assert res.status_code == status


class TestMessages:
    def _post(self, client, thread, user_id, body="Is there paper in storage?", **extra):
        tid = thread["thread"]["id"]
        return client.post(f"/api/v1/chat/threads/{tid}/messages",
                           json={"body": body, **extra}, headers=_h(user_id))

    def test_first_message_mails_participants(self, client, thread, directory):
        res = self._post(client, thread, directory.requester)
        assert res.status_code == 201
        data = res.get_json()
        assert data["first_message"] is True
        assert data["duplicate"] is False
        mails = EmailLog.query.filter_by(category="chat").all()
        assert [m.recipient for m in mails] == ["logistics@budget.test"]
        assert "Is there paper in storage?" in mails[0].message

    def test_second_message_does_not_mail(self, client, thread, directory):
        self._post(client, thread, directory.requester)
        res = self._post(client, thread, directory.requester, body="Any news?")
        assert res.get_json()["first_message"] is False
        assert EmailLog.query.filter_by(category="chat").count() == 1

    def test_reply_mails_requester(self, client, thread, directory):
        self._post(client, thread, directory.requester)
        res = self._post(client, thread, directory.logistics, body="Checking now")
        assert res.get_json()["first_message"] is True
        recipients = sorted(m.recipient for m in EmailLog.query.filter_by(category="chat"))
        assert recipients == ["logistics@budget.test", "requester@budget.test"]

    def test_nonce_dedupes(self, client, thread, directory):
        first = self._post(client, thread, directory.requester, client_nonce="n-1")
        again = self._post(client, thread, directory.requester, client_nonce="n-1")
        assert again.status_code == 200
        assert again.get_json()["duplicate"] is True
        assert again.get_json()["message"]["id"] == first.get_json()["message"]["id"]

    def test_body_required(self, client, thread, directory):
        res = self._post(client, thread, directory.requester, body="   ")
        assert res.status_code == 400

    def test_unknown_thread(self, client, directory):
        res = client.post("/api/v1/chat/threads/999/messages", json={"body": "x"},
                          headers=_h(directory.requester))
        assert res.status_code == 404

    def test_broadcast_to_subscribers(self, client, thread, directory):
        tid = thread["thread"]["id"]
        q = broadcaster.subscribe(tid)
        try:
            assert broadcaster.subscriber_count(tid) == 1
            self._post(client, thread, directory.requester)
            event = q.get_nowait()
            assert event["type"] == "message"
            assert event["threadId"] == tid
            assert event["message"]["body"] == "Is there paper in storage?"
        finally:
            broadcaster.unsubscribe(tid, q)
        assert broadcaster.subscriber_count(tid) == 0

    def test_paging(self, client, thread, directory):
        for n in range(3):
            self._post(client, thread, directory.requester, body=f"m{n}")
        tid = thread["thread"]["id"]
        res = client.get(f"/api/v1/chat/threads/{tid}/messages?limit=2", headers=_h(directory.logistics))
        page = res.get_json()
        assert [m["body"] for m in page] == ["m1", "m2"]
        res = client.get(f"/api/v1/chat/threads/{tid}/messages?before_id={page[0]['id']}",
                         headers=_h(directory.logistics))
        assert [m["body"] for m in res.get_json()] == ["m0"]


class TestUnreads:
    def test_unread_counts_and_receipt(self, client, thread, directory):
        tid = thread["thread"]["id"]
        client.post(f"/api/v1/chat/threads/{tid}/messages", json={"body": "hello"},
                    headers=_h(directory.requester))
        client.post(f"/api/v1/chat/threads/{tid}/messages", json={"body": "hello again"},
                    headers=_h(directory.requester))

        data = client.get("/api/v1/chat/unreads", headers=_h(directory.logistics)).get_json()
        assert data["total_unread"] == 2
        assert data["threads"][0]["thread_id"] == tid

        # own messages are never unread
        mine = client.get("/api/v1/chat/unreads", headers=_h(directory.requester)).get_json()
        assert mine["total_unread"] == 0

        receipt = client.post(f"/api/v1/chat/threads/{tid}/read", json={},
                              headers=_h(directory.logistics)).get_json()
        assert receipt["last_read_message_id"] == data["threads"][0]["last_message_id"]
        data = client.get("/api/v1/chat/unreads", headers=_h(directory.logistics)).get_json()
        assert data["total_unread"] == 0

    def test_receipt_never_moves_back(self, client, thread, directory):
        tid = thread["thread"]["id"]
        client.post(f"/api/v1/chat/threads/{tid}/messages", json={"body": "a"}, headers=_h(directory.requester))
        client.post(f"/api/v1/chat/threads/{tid}/read", json={}, headers=_h(directory.logistics))
        receipt = client.post(f"/api/v1/chat/threads/{tid}/read", json={"last_message_id": 0},
                              headers=_h(directory.logistics)).get_json()
        assert receipt["last_read_message_id"] > 0

    def test_outsider_sees_nothing(self, client, thread, directory):
        tid = thread["thread"]["id"]
        client.post(f"/api/v1/chat/threads/{tid}/messages", json={"body": "a"}, headers=_h(directory.requester))
        data = client.get("/api/v1/chat/unreads", headers=_h(directory.purchasing)).get_json()
        assert data == {"threads": [], "total_unread": 0}


# ═════════════════════════════════════════════════════════════════════════
# ITEM REVISION
# ═════════════════════════════════════════════════════════════════════════

@pytest.fixture()
def at_coordinator(client, submit, directory):
    budget = submit(items=[
        {"account_id": 4, "item_id": 100, "name": "A4 paper", "quantity": 2, "cost": 10},
        {"account_id": 4, "item_id": 100, "name": "Toner", "quantity": 1, "cost": 50},
    ])
    ids = [i["id"] for i in budget["items"]]
    client.post("/api/v1/stages/logistics", json={"items": [{"id": i, "provided_qty": 0} for i in ids]},
                headers=_h(directory.logistics))
    client.post("/api/v1/stages/cost", json={"items": [{"id": i, "purchase_cost": 9} for i in ids]},
                headers=_h(directory.purchasing))
    rows = client.get(f"/api/v1/budgets/{budget['id']}/editor-payload",
                      headers=_h(directory.principal)).get_json()["rows"]
    client.post(f"/api/v1/budgets/{budget['id']}/principal/confirm", json={"rows": rows},
                headers=_h(directory.principal))
    return budget


@pytest.fixture()
def completed(client, at_coordinator, directory):
    a, b = (i["id"] for i in at_coordinator["items"])
    client.post("/api/v1/stages/coordinator", json={"items": [
        {"id": a, "decision": "approved"},
        {"id": b, "decision": "approved", "unit_price": 45},
    ]}, headers=_h(directory.coordinator))
    assert db.session.get(Budget, at_coordinator["id"]).budget_status == "workflow_complete"
    return at_coordinator


def _totals(client, directory):
    return client.get("/api/v1/schools/7/budget-totals", headers=_h(directory.requester)).get_json()


class TestItemRevision:
    def _revise(self, client, item_id, user_id, reason="Price looks wrong"):
        return client.post(f"/api/v1/items/{item_id}/revise", json={"reason": reason}, headers=_h(user_id))

    def test_revise_answer_redecide(self, client, completed, directory):
        a = completed["items"][0]["id"]
        res = self._revise(client, a, directory.coordinator)
        assert res.status_code == 200
        assert res.get_json()["final_purchase_status"] == "revised"
        assert res.get_json()["revision_state"] == "pending"
        assert _totals(client, directory)["grand_total"] == 45

        res = client.post(f"/api/v1/items/{a}/revision-answer",
                          json={"comment": "We need three packs", "quantity": 3},
                          headers=_h(directory.requester))
        assert res.status_code == 200
        assert res.get_json()["revision_state"] == "answered"
        assert res.get_json()["quantity"] == 3
        answer = RevisionAnswer.query.filter_by(item_id=a).one()
        assert answer.comment == "We need three packs"

        listed = client.get("/api/v1/items/revised", headers=_h(directory.requester)).get_json()
        assert [r["id"] for r in listed] == [a]

        res = client.post("/api/v1/stages/coordinator", json={"items": [{"id": a, "decision": "approved"}]},
                          headers=_h(directory.coordinator))
        assert res.get_json()["updated"] == 1
        item = db.session.get(BudgetItem, a)
        assert item.final_purchase_status == "approved"
        assert item.final_quantity == 3
        assert _totals(client, directory)["grand_total"] == 75

    def test_revision_mails(self, client, completed, directory):
        a = completed["items"][0]["id"]
        self._revise(client, a, directory.coordinator)
        client.post(f"/api/v1/items/{a}/revision-answer", json={"comment": "ok"},
                    headers=_h(directory.requester))
        recipients = sorted(m.recipient for m in EmailLog.query.filter_by(category="revision"))
        assert recipients == ["principal@budget.test", "principal@budget.test", "requester@budget.test"]

    def test_events(self, client, completed, directory):
        a = completed["items"][0]["id"]
        self._revise(client, a, directory.coordinator, reason="Check price")
        client.post(f"/api/v1/items/{a}/revision-answer", json={"comment": "ok", "cost": 8},
                    headers=_h(directory.principal))
        actions = [e.action for e in BudgetItemEvent.query.filter_by(item_id=a, stage="revision")
                   .order_by(BudgetItemEvent.id)]
        assert actions == ["revise", "answer"]

    def test_requester_cannot_revise(self, client, completed, directory):
        res = self._revise(client, completed["items"][0]["id"], directory.requester)
        assert res.status_code == 403

    def test_reason_required(self, client, completed, directory):
        res = self._revise(client, completed["items"][0]["id"], directory.coordinator, reason="")
        assert res.status_code == 400

    def test_answer_without_pending_revision(self, client, completed, directory):
        res = client.post(f"/api/v1/items/{completed['items'][0]['id']}/revision-answer",
                          json={"comment": "hi"}, headers=_h(directory.requester))
        assert res.status_code == 422

    def test_answer_by_outsider(self, client, completed, directory):
        a = completed["items"][0]["id"]
        self._revise(client, a, directory.coordinator)
        res = client.post(f"/api/v1/items/{a}/revision-answer", json={"comment": "hi"},
                          headers=_h(directory.other_requester))
        assert res.status_code == 403

    @pytest.mark.parametrize("body", [
        {},
        {"comment": "x", "quantity": -1},
        {"comment": "x", "quantity": 0},
        {"comment": "x", "quantity": "nan"},
        {"comment": "x", "cost": "abc"},
        {"comment": "x", "cost": "inf"},
    ])
    def test_answer_validation(self, client, completed, directory, body):
        a = completed["items"][0]["id"]
        self._revise(client, a, directory.coordinator)
        res = client.post(f"/api/v1/items/{a}/revision-answer", json=body, headers=_h(directory.requester))
        assert res.status_code == 400
        assert db.session.get(BudgetItem, a).revision_state == "pending"

    def test_zero_quantity_answer_keeps_item_quantity(self, client, completed, directory):
        a = completed["items"][0]["id"]
        self._revise(client, a, directory.coordinator)
        res = client.post(f"/api/v1/items/{a}/revision-answer",
                          json={"comment": "fewer please", "quantity": 0},
                          headers=_h(directory.requester))
        assert res.status_code == 400
        assert "quantity" in res.get_json()["error"]
        db.session.expire_all()
        assert db.session.get(BudgetItem, a).quantity == 2


class TestRemoveItem:
    def test_remove_completes_budget(self, client, at_coordinator, directory):
        a, b = (i["id"] for i in at_coordinator["items"])
        client.post("/api/v1/stages/coordinator", json={"items": [{"id": a, "decision": "approved"}]},
                    headers=_h(directory.coordinator))
        res = client.post(f"/api/v1/items/{b}/remove", headers=_h(directory.requester))
        assert res.status_code == 200
        assert res.get_json()["final_purchase_status"] == "removed"

        assert Step.query.filter_by(budget_item_id=b, is_current=True).count() == 0
        budget = db.session.get(Budget, at_coordinator["id"])
        assert budget.budget_status == "workflow_complete"
        assert EmailLog.query.filter_by(category="complete").count() == 2
        assert _totals(client, directory)["grand_total"] == 20

    def test_remove_is_idempotent(self, client, completed, directory):
        b = completed["items"][1]["id"]
        client.post(f"/api/v1/items/{b}/remove", headers=_h(directory.coordinator))
        client.post(f"/api/v1/items/{b}/remove", headers=_h(directory.coordinator))
        assert BudgetItemEvent.query.filter_by(item_id=b, action="delete_removed").count() == 1

    def test_removed_item_hidden_from_editor(self, client, at_coordinator, directory):
        b = at_coordinator["items"][1]["id"]
        client.post(f"/api/v1/items/{b}/remove", headers=_h(directory.requester))
        rows = client.get(f"/api/v1/budgets/{at_coordinator['id']}/editor-payload",
                          headers=_h(directory.principal)).get_json()["rows"]
        assert [s["budget_item_id"] for s in rows[0]["subitems"]] == [at_coordinator["items"][0]["id"]]

    def test_outsider_cannot_remove(self, client, completed, directory):
        res = client.post(f"/api/v1/items/{completed['items'][0]['id']}/remove",
                          headers=_h(directory.logistics))
        assert res.status_code == 403

    def test_removed_item_cannot_be_revised(self, client, completed, directory):
        b = completed["items"][1]["id"]
        client.post(f"/api/v1/items/{b}/remove", headers=_h(directory.coordinator))
        res = client.post(f"/api/v1/items/{b}/revise", json={"reason": "x"}, headers=_h(directory.coordinator))
        assert res.status_code == 422
