"""
School Budget Workflow
Lifecycle notifications.

Every mailer here runs after the business transaction committed (see
``run_after_commit``) and never raises into the caller. Per-budget named
locks (``budget_<kind>_email_<id>``) keep two workers from mailing the same
event; a worker that cannot take the lock exits without sending.

Mailers:
    notify_budget_submitted    principals + budget moderators of the school
    notify_status_change       in_review / revision_requested / approved_by_finance
    notify_workflow_complete   principals + requester, per-item finals table
    notify_item_revised        the school principal + requester
    notify_revision_answered   answering user's moderator + principals
    notify_chat_first_message  thread participants except the sender
"""

from __future__ import annotations

import html
import logging
import threading
import time
from collections import OrderedDict

from flask import current_app

from budgetflow.core.exceptions import LockTimeoutError
from budgetflow.models import db
from budgetflow.models.budget import Budget, BudgetItem, RevisionAnswer
from budgetflow.models.chat import ChatMessage, ChatThread
from budgetflow.models.directory import User
from budgetflow.services import recipients
from budgetflow.services.email_service import EmailService
from budgetflow.services.lock_service import named_lock
from budgetflow.utils.helpers import utcnow

logger = logging.getLogger(__name__)

STAGE_LABELS = {
    "logistics": "Logistics",
    "needed": "Needed",
    "cost": "Cost",
    "request_control_edit_confirm": "Request Control",
    "coordinator": "Coordinator",
}


def stage_label(stage: str) -> str:
    return STAGE_LABELS.get(stage, (stage or "").replace("_", " ").title())


# ═══════════════════════════════════════════════════════════════════════════
#  After-commit execution
# ═══════════════════════════════════════════════════════════════════════════


def _run_safely(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except Exception:
        logger.exception("After-commit task %s failed", getattr(fn, "__name__", fn))
        db.session.rollback()
        return None


def run_after_commit(fn, *args, **kwargs):
    """Run ``fn`` outside the request transaction.

    Inline when ``NOTIFY_SYNC`` is set (tests, CLI), otherwise on a daemon
    thread with its own app context and session.
    """
    app = current_app._get_current_object()
    if app.config.get("NOTIFY_SYNC"):
        return _run_safely(fn, *args, **kwargs)

    def _worker():
        with app.app_context():
            try:
                _run_safely(fn, *args, **kwargs)
            finally:
                db.session.remove()

    thread = threading.Thread(target=_worker, daemon=True,
                              name=f"notify-{getattr(fn, '__name__', 'task')}")
    thread.start()
    return thread


# ═══════════════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════════════


def _lock_timeout() -> float:
    return float(current_app.config.get("LOCK_TIMEOUT_SECONDS", 10))


def deep_link(key: str, suffix=None) -> str | None:
    base = current_app.config.get(key) or ""
    if not base:
        return None
    if suffix is None:
        return base
    return f"{base.rstrip('/')}/{suffix}"


def escape_text(value) -> str:
    return html.escape("" if value is None else str(value))


def fmt_number(value) -> str:
    if value is None:
        return "-"
    value = float(value)
    return f"{value:,.0f}" if value.is_integer() else f"{value:,.2f}"


def _budget_context(budget: Budget) -> dict:
    return {
        "budget_id": budget.id,
        "school": escape_text(budget.school.school_name if budget.school else budget.school_id),
        "period": escape_text(budget.period),
        "title": escape_text(budget.title),
        "requester": escape_text(budget.requester.name if budget.requester else ""),
    }


def send_to(users, template: str, context: dict, category: str) -> int:
    """Mail every unique address in ``users``. Returns the number of successes."""
    pause = float(current_app.config.get("EMAIL_RECIPIENT_PAUSE_SECONDS", 0) or 0)
    sent = 0
    for i, user in enumerate(recipients.unique_by_email(users)):
        if i and pause:
            time.sleep(pause)
        ctx = dict(context, recipient_name=escape_text(user.name))
        log = EmailService.send_from_template(
            to_email=user.email, template_name=template, context=ctx, category=category,
        )
        if log is not None and log.status == "success":
            sent += 1
    return sent


def _items_table(items) -> str:
    rows = "".join(
        f"<tr><td style='padding:6px'>{escape_text(i.item_name)}</td>"
        f"<td style='padding:6px;text-align:right'>{fmt_number(i.quantity)}</td>"
        f"<td style='padding:6px;text-align:right'>{fmt_number(i.cost)}</td></tr>"
        for i in items
    )
    return (
        "<table style='width:100%;border-collapse:collapse'>"
        "<tr style='background:#e2e8f0'><th style='padding:6px;text-align:left'>Item</th>"
        "<th style='padding:6px;text-align:right'>Qty</th>"
        "<th style='padding:6px;text-align:right'>Unit cost</th></tr>"
        f"{rows}</table>"
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Budget lifecycle
# ═══════════════════════════════════════════════════════════════════════════


def notify_budget_submitted(budget_id: int, resubmitted: bool = False) -> int:
    kind = "resubmitted" if resubmitted else "submitted"
    try:
        with named_lock(f"budget_{kind}_email_{budget_id}", timeout=_lock_timeout()):
            budget = db.session.get(Budget, budget_id)
            if budget is None:
                return 0
            if not resubmitted and budget.notified_principal_submitted:
                return 0
            users = (recipients.principals_of_school(budget.school_id)
                     + recipients.budget_moderators(budget.school_id))
            items = [i for i in budget.items if not i.is_removed]
            ctx = _budget_context(budget)
            ctx["content"] = (
                f"<p>{ctx['requester']} submitted <strong>{len(items)}</strong> item(s) "
                f"for {ctx['school']}, period {ctx['period']}.</p>{_items_table(items)}"
            )
            ctx["link_url"] = deep_link("APP_PRINCIPAL_CONTROL_URL", budget.id)
            ctx["link_label"] = "Review the request"
            sent = send_to(users, f"budget_{kind}", ctx, category=kind)
            budget.notified_principal_submitted = True
            db.session.commit()
            return sent
    except LockTimeoutError:
        logger.info("Submission mail already handled elsewhere", extra={"budget_id": budget_id})
        return 0


def notify_status_change(budget_id: int, status: str, reason: str | None = None) -> int:
    if status == "workflow_complete":
        return notify_workflow_complete(budget_id)
    if status not in ("in_review", "revision_requested", "approved_by_finance"):
        return 0
    try:
        with named_lock(f"budget_{status}_email_{budget_id}", timeout=_lock_timeout()):
            budget = db.session.get(Budget, budget_id)
            if budget is None or budget.budget_status != status:
                return 0
            ctx = _budget_context(budget)
            if status == "in_review":
                users = [budget.requester]
                ctx["content"] = "<p>Your budget request was confirmed by the principal and is now in review.</p>"
                ctx["link_url"] = deep_link("APP_BUDGET_URL_PREFIX", budget.id)
            elif status == "revision_requested":
                users = [budget.requester] + recipients.principals_of_school(budget.school_id)
                ctx["content"] = (
                    "<p>A revision was requested for this budget.</p>"
                    f"<p><strong>Reason:</strong> {escape_text(reason) or '-'}</p>"
                )
                ctx["link_url"] = deep_link("APP_BUDGET_URL_PREFIX", budget.id)
            else:
                users = (recipients.principals_of_school(budget.school_id)
                         + recipients.accountants(budget.school_id))
                ctx["content"] = "<p>The budget request was approved by finance.</p>"
                ctx["link_url"] = deep_link("APP_PRINCIPAL_TO_APPROVE_URL", budget.id)
            return send_to(users, f"status_{status}", ctx, category="status")
    except LockTimeoutError:
        logger.info("Status mail already handled elsewhere", extra={"budget_id": budget_id})
        return 0


def _finals_content(budget: Budget) -> str:
    by_account: OrderedDict = OrderedDict()
    for item in budget.items:
        by_account.setdefault(item.sub_account_id, []).append(item)

    blocks = []
    for account_id, items in by_account.items():
        account = items[0].sub_account
        name = account.name if account is not None else account_id
        rows = "".join(
            f"<tr><td style='padding:6px'>{escape_text(i.item_name)}</td>"
            f"<td style='padding:6px'>{escape_text(i.final_purchase_status_display or i.final_purchase_status or '-')}</td>"
            f"<td style='padding:6px;text-align:right'>{fmt_number(i.final_quantity)}</td>"
            f"<td style='padding:6px;text-align:right'>{fmt_number(i.final_purchase_cost)}</td>"
            f"<td style='padding:6px'>{escape_text(i.purchasing_note or '')}</td></tr>"
            for i in items
        )
        notes = sorted({i.notes for i in items if i.notes})
        note_html = f"<p style='color:#64748b'>Notes: {escape_text('; '.join(notes))}</p>" if notes else ""
        blocks.append(
            f"<h4 style='margin:16px 0 4px'>{escape_text(name)}</h4>{note_html}"
            "<table style='width:100%;border-collapse:collapse'>"
            "<tr style='background:#e2e8f0'><th style='padding:6px;text-align:left'>Item</th>"
            "<th style='padding:6px;text-align:left'>Decision</th>"
            "<th style='padding:6px;text-align:right'>Final qty</th>"
            "<th style='padding:6px;text-align:right'>Final unit price</th>"
            "<th style='padding:6px;text-align:left'>Note</th></tr>"
            f"{rows}</table>"
        )
    return "".join(blocks)


def notify_workflow_complete(budget_id: int) -> int:
    """Completion mail, sent at most once per budget (``notified_complete_at``)."""
    try:
        with named_lock(f"budget_complete_email_{budget_id}", timeout=_lock_timeout()):
            budget = db.session.get(Budget, budget_id)
            if budget is None or budget.budget_status != "workflow_complete":
                return 0
            if budget.notified_complete_at is not None:
                return 0
            budget.notified_complete_at = utcnow()
            db.session.commit()

            users = recipients.principals_of_school(budget.school_id) + [budget.requester]
            ctx = _budget_context(budget)
            ctx["content"] = "<p>The review of this budget is complete.</p>" + _finals_content(budget)
            ctx["link_url"] = deep_link("APP_BUDGET_URL_PREFIX", budget.id)
            sent = send_to(users, "workflow_complete", ctx, category="complete")
            logger.info("Completion mail sent to %d recipient(s)", sent,
                        extra={"budget_id": budget_id, "event_type": "workflow_complete"})
            return sent
    except LockTimeoutError:
        logger.info("Completion mail already handled elsewhere", extra={"budget_id": budget_id})
        return 0


# ═══════════════════════════════════════════════════════════════════════════
#  Item revision
# ═══════════════════════════════════════════════════════════════════════════


def _item_context(item: BudgetItem) -> dict:
    ctx = _budget_context(item.budget)
    ctx.update({
        "item_id": item.id,
        "item_name": escape_text(item.item_name),
        "quantity": fmt_number(item.quantity),
        "cost": fmt_number(item.cost),
    })
    return ctx


def notify_item_revised(item_id: int) -> int:
    item = db.session.get(BudgetItem, item_id)
    if item is None:
        return 0
    budget = item.budget
    principals = recipients.principals_of_school(budget.school_id)[:1]
    ctx = _item_context(item)
    ctx["content"] = (
        f"<p><strong>{ctx['item_name']}</strong> ({ctx['quantity']} x {ctx['cost']}) "
        "was sent back for revision.</p>"
        f"<p><strong>Reason:</strong> {escape_text(item.revise_reason)}</p>"
    )
    ctx["link_url"] = deep_link("APP_REVISED_ITEMS_URL")
    return send_to(principals + [budget.requester], "item_revised", ctx, category="revision")


def notify_revision_answered(item_id: int, answered_by: int) -> int:
    item = db.session.get(BudgetItem, item_id)
    if item is None:
        return 0
    user = db.session.get(User, answered_by)
    moderator = db.session.get(User, user.moderator_id) if user and user.moderator_id else None
    users = [moderator] + recipients.principals_of_school(item.budget.school_id)
    answer = db.session.get(RevisionAnswer, item.answer_id) if item.answer_id else None
    ctx = _item_context(item)
    ctx["content"] = (
        f"<p>{escape_text(user.name if user else '')} answered the revision of "
        f"<strong>{ctx['item_name']}</strong>.</p>"
        f"<p>{escape_text(answer.comment if answer else '')}</p>"
    )
    ctx["link_url"] = deep_link("APP_REVISED_ITEMS_URL")
    return send_to(users, "revision_answered", ctx, category="revision")


# ═══════════════════════════════════════════════════════════════════════════
#  Chat
# ═══════════════════════════════════════════════════════════════════════════


def notify_chat_first_message(thread_id: int, message_id: int, sender_id: int,
                              participant_ids) -> int:
    thread = db.session.get(ChatThread, thread_id)
    message = db.session.get(ChatMessage, message_id)
    if thread is None or message is None:
        return 0
    item = db.session.get(BudgetItem, thread.item_id)
    sender = db.session.get(User, sender_id)
    ids = [pid for pid in participant_ids if pid != sender_id]
    users = User.query.filter(User.id.in_(ids)).order_by(User.id).all() if ids else []
    users = [u for u in users if u.is_active]

    ctx = _item_context(item) if item is not None else {"item_name": "", "content": ""}
    ctx["stage_label"] = escape_text(stage_label(thread.stage))
    ctx["content"] = (
        f"<p><strong>{escape_text(sender.name if sender else '')}</strong> wrote:</p>"
        f"<blockquote style='border-left:3px solid #cbd5e1;margin:0;padding-left:12px'>"
        f"{escape_text(message.body)}</blockquote>"
    )
    ctx["link_url"] = deep_link("APP_BUDGET_URL_PREFIX", thread.budget_id)
    return send_to(users, "chat_first_message", ctx, category="chat")
