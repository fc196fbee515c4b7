"""
Stage-ready dispatcher and the mail service.

Tests cover:
  - Dispatch claims steps once; a second pass sends nothing
  - Combo readiness waits for every item of a (budget, sub-account)
  - In-stock items do not hold back the cost stage
  - Payload shapes (item id list, budgetIds)
  - Fallback: in_review budget without current steps → review_been_completed + admin mail
  - EmailService retries transient SMTP failures and logs every attempt
  - EmailLog rows only carry known modes and statuses
  - Template rendering and recipient de-duplication
  - CLI dispatch command
"""

import smtplib

import pytest

from budgetflow.core.exceptions import TransientBackendError
from budgetflow.models import db
from budgetflow.models.budget import Budget
from budgetflow.models.directory import User
from budgetflow.models.scheduling import EmailLog
from budgetflow.models.workflow import Step
from budgetflow.services import email_service, notification_service
from budgetflow.services.email_service import EmailService
from budgetflow.services.stage_dispatcher import dispatch_stage_ready, normalize_payload


def _h(user_id):
    return {"X-User-Id": str(user_id)}


def _mails(recipient, category="stage_ready"):
    db.session.expire_all()
    return EmailLog.query.filter_by(category=category, recipient=recipient).all()


@pytest.fixture()
def budget(submit):
    return submit(items=[
        {"account_id": 4, "item_id": 100, "name": "A4 paper", "quantity": 10, "cost": 3},
        {"account_id": 4, "item_id": 100, "name": "Toner", "quantity": 2, "cost": 40},
    ])


# ═════════════════════════════════════════════════════════════════════════
# DISPATCHER
# ═════════════════════════════════════════════════════════════════════════

class TestDispatch:
    def test_submission_notifies_first_stage_once(self, client, budget, directory):
        assert len(_mails("logistics@budget.test")) == 1
        steps = Step.query.filter_by(budget_id=budget["id"], is_current=True).all()
        assert all(s.notified_at is not None for s in steps)

        res = client.post("/api/v1/workflow/dispatch", json={"budgetIds": [budget["id"]]},
                          headers=_h(directory.admin))
        data = res.get_json()
        assert data["budgets"] == [budget["id"]]
        assert (data["groups"], data["emails"], data["claimed_steps"]) == (0, 0, 0)
        assert len(_mails("logistics@budget.test")) == 1

    def test_waits_for_whole_combo(self, client, budget, directory):
        a, b = (i["id"] for i in budget["items"])
        client.post("/api/v1/stages/logistics", json={"items": [{"id": a, "provided_qty": 0}]},
                    headers=_h(directory.logistics))
        assert _mails("purchasing@budget.test") == []

        client.post("/api/v1/stages/logistics", json={"items": [{"id": b, "provided_qty": 0}]},
                    headers=_h(directory.logistics))
        mails = _mails("purchasing@budget.test")
        assert len(mails) == 1
        assert "A4 PAPER" in mails[0].message
        assert "TONER" in mails[0].message

    def test_in_stock_item_does_not_block(self, client, budget, directory):
        a, b = (i["id"] for i in budget["items"])
        client.post("/api/v1/stages/logistics", json={"items": [
            {"id": a, "provided_qty": 0},
            {"id": b, "provided_qty": 2},
        ]}, headers=_h(directory.logistics))
        mails = _mails("purchasing@budget.test")
        assert len(mails) == 1
        assert "TONER" not in mails[0].message

    def test_items_of_other_account_are_separate_combos(self, client, submit, directory):
        budget = submit(items=[
            {"account_id": 4, "name": "Paper", "quantity": 1, "cost": 1},
            {"account_id": 5, "name": "Beaker", "quantity": 1, "cost": 1},
        ])
        paper = budget["items"][0]["id"]
        client.post("/api/v1/stages/logistics", json={"items": [{"id": paper, "provided_qty": 0}]},
                    headers=_h(directory.logistics))
        assert len(_mails("purchasing@budget.test")) == 1

    def test_claim_resets_after_revision(self, budget):
        steps = Step.query.filter_by(budget_id=budget["id"], is_current=True).all()
        for s in steps:
            s.notified_at = None
        db.session.commit()
        result = dispatch_stage_ready([s.budget_item_id for s in steps])
        assert result["claimed_steps"] == 2
        assert result["emails"] == 1
        assert result["groups"] == 1

    def test_non_admin_cannot_dispatch(self, client, budget, directory):
        res = client.post("/api/v1/workflow/dispatch", json={"budgetIds": [budget["id"]]},
                          headers=_h(directory.logistics))
        assert res.status_code == 403

    def test_empty_payload(self, client, directory):
        res = client.post("/api/v1/workflow/dispatch", json={}, headers=_h(directory.admin))
        assert res.get_json() == {"budgets": [], "groups": 0, "emails": 0,
                                  "claimed_steps": 0, "fallback": []}


class TestNormalizePayload:
    def test_item_list(self, budget):
        ids = [i["id"] for i in budget["items"]]
        assert normalize_payload(ids) == ({budget["id"]}, None)

    def test_dict_with_source_stage(self, budget):
        assert normalize_payload({"budgetIds": [budget["id"], "x"], "source_stage": " Needed "}) == (
            {budget["id"]}, "needed",
        )

    def test_single_budget_id(self):
        assert normalize_payload("12") == ({12}, None)
        assert normalize_payload(None) == (set(), None)


class TestFallback:
    def test_stalled_review_is_settled(self, budget, directory):
        row = db.session.get(Budget, budget["id"])
        row.budget_status = "in_review"
        for s in Step.query.filter_by(budget_id=row.id, is_current=True):
            s.is_current = False
        db.session.commit()

        result = dispatch_stage_ready({"budgetIds": [row.id]})
        assert result["fallback"] == [row.id]
        db.session.expire_all()
        assert db.session.get(Budget, row.id).budget_status == "review_been_completed"
        assert len(_mails("admin-user@budget.test")) == 1

    def test_budget_with_current_steps_untouched(self, budget):
        row = db.session.get(Budget, budget["id"])
        row.budget_status = "in_review"
        db.session.commit()
        result = dispatch_stage_ready({"budgetIds": [row.id]})
        assert result["fallback"] == []
        assert db.session.get(Budget, row.id).budget_status == "in_review"


class TestDispatchCli:
    def test_cli_dispatch(self, app, budget):
        for s in Step.query.filter_by(budget_id=budget["id"], is_current=True):
            s.notified_at = None
        db.session.commit()

        runner = app.test_cli_runner()
        result = runner.invoke(args=["dispatch-stage-ready", str(budget["id"])])
        assert result.exit_code == 0, result.output
        assert len(_mails("logistics@budget.test")) == 2


# ═════════════════════════════════════════════════════════════════════════
# EMAIL SERVICE
# ═════════════════════════════════════════════════════════════════════════

class TestEmailRetries:
    @pytest.fixture(autouse=True)
    def smtp_mode(self, monkeypatch):
        monkeypatch.setattr(EmailService, "mode", staticmethod(lambda: "smtp"))

    def _send(self):
        return EmailService.send(to_email="someone@budget.test", subject="Hello",
                                 html_body="<p>Hi</p>", category="test")

    def test_transient_failures_are_retried(self, monkeypatch):
        calls = []

        def flaky(**kwargs):
            calls.append(kwargs["to_email"])
            if len(calls) < 3:
                raise TransientBackendError("4.3.2 Concurrent connections limit exceeded", 432)

        monkeypatch.setattr(EmailService, "_deliver", staticmethod(flaky))
        log = self._send()
        assert log.status == "success"
        assert log.attempt == 3
        rows = EmailLog.query.filter_by(category="test").order_by(EmailLog.id).all()
        assert [(r.status, r.attempt) for r in rows] == [("failure", 1), ("failure", 2), ("success", 3)]
        assert all(r.mode == "smtp" for r in rows)

    def test_gives_up_after_max_attempts(self, monkeypatch):
        def always(**kwargs):
            raise TransientBackendError("432 try later", 432)

        monkeypatch.setattr(EmailService, "_deliver", staticmethod(always))
        log = self._send()
        assert log.status == "failure"
        assert log.attempt == 3
        assert EmailLog.query.filter_by(category="test").count() == 3

    def test_permanent_failure_not_retried(self, monkeypatch):
        def reject(**kwargs):
            raise smtplib.SMTPDataError(550, b"Mailbox unavailable")

        monkeypatch.setattr(EmailService, "_deliver", staticmethod(reject))
        log = self._send()
        assert log.status == "failure"
        assert log.attempt == 1
        assert "Mailbox unavailable" in log.error_message
        assert EmailLog.query.filter_by(category="test").count() == 1


class TestEmailHelpers:
    @pytest.mark.parametrize("exc, expected", [
        (smtplib.SMTPDataError(432, b"try again"), True),
        (smtplib.SMTPSenderRefused(421, b"Too many concurrent SMTP connections; limit exceeded", "x"), True),
        (smtplib.SMTPDataError(550, b"rejected"), False),
        (OSError("connection reset"), False),
    ])
    def test_is_transient(self, exc, expected):
        assert email_service.is_transient(exc) is expected

    def test_log_only_mode_without_server(self, app):
        assert EmailService.mode() == "log_only"
        log = EmailService.send(to_email="x@budget.test", subject="S", html_body="B", category="test")
        assert (log.status, log.mode, log.attempt) == ("success", "log_only", 1)

    @pytest.mark.parametrize("mode, status", [("sendgrid", "success"), ("smtp", "sent")])
    def test_log_rejects_unknown_mode_or_status(self, app, mode, status):
        with pytest.raises(ValueError):
            EmailService._log(to_email="x@budget.test", subject="S", html_body="B",
                              status=status, attempt=1, mode=mode, category="test")
        assert EmailLog.query.filter_by(category="test").count() == 0

    def test_render_known_template(self):
        subject, html = email_service.render("stage_ready", {
            "stage_label": "Cost", "count": 3, "department": "Purchasing",
            "content": "<p>rows</p>", "link_url": "https://budget.test/x",
        })
        assert "Cost" in subject
        assert "<p>rows</p>" in html
        assert 'href="https://budget.test/x"' in html

    def test_render_unknown_template(self):
        assert email_service.render("nope", {}) is None

    def test_send_to_dedupes_by_email(self, directory):
        principal = db.session.get(User, directory.principal)
        sent = notification_service.send_to([principal, principal, None], "item_revised",
                                            {"item_name": "X"}, category="test")
        assert sent == 1
        assert EmailLog.query.filter_by(category="test").count() == 1
