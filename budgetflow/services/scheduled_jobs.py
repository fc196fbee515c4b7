"""
School Budget Workflow
Scheduled Jobs.

Jobs:
    - daily_task_digest: per-user summary of pending steps + admin aggregate
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any

from budgetflow.core.exceptions import LockTimeoutError
from budgetflow.models import db
from budgetflow.models.budget import Budget, BudgetItem
from budgetflow.models.directory import User
from budgetflow.models.workflow import STEP_PENDING, Step
from budgetflow.services.email_service import EmailService
from budgetflow.services.lock_service import named_lock
from budgetflow.services.notification_service import (
    deep_link,
    escape_text,
    send_to,
    stage_label,
)
from budgetflow.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


def _pending_steps() -> list[Step]:
    return (
        Step.query
        .join(BudgetItem, BudgetItem.id == Step.budget_item_id)
        .filter(Step.is_current.is_(True), Step.step_status == STEP_PENDING)
        .filter(BudgetItem.removed_in_item_revision.is_(False))
        .order_by(Step.budget_id, Step.sort_order, Step.id)
        .all()
    )


def _summary_table(counts: dict) -> str:
    rows = "".join(
        f"<tr><td style='padding:6px'>{escape_text(school)}</td>"
        f"<td style='padding:6px'>{escape_text(period)}</td>"
        f"<td style='padding:6px'>{escape_text(stage_label(stage))}</td>"
        f"<td style='padding:6px;text-align:right'>{n}</td></tr>"
        for (school, period, stage), n in sorted(counts.items())
    )
    return (
        "<table style='width:100%;border-collapse:collapse'>"
        "<tr style='background:#e2e8f0'><th style='padding:6px;text-align:left'>School</th>"
        "<th style='padding:6px;text-align:left'>Period</th>"
        "<th style='padding:6px;text-align:left'>Stage</th>"
        "<th style='padding:6px;text-align:right'>Items</th></tr>"
        f"{rows}</table>"
    )


@register_job("daily_task_digest")
def daily_task_digest(app) -> dict[str, Any]:
    """Mail every stage owner a summary of the items waiting for them."""
    results = {"users_notified": 0, "pending_steps": 0, "admin_notified": False, "skipped": False}
    try:
        with named_lock("send_task_notifications_lock", timeout=1):
            steps = _pending_steps()
            results["pending_steps"] = len(steps)
            if not steps:
                return results

            budgets = {b.id: b for b in Budget.query.filter(
                Budget.id.in_({s.budget_id for s in steps})).all()}
            by_user: dict = defaultdict(lambda: defaultdict(int))
            overall: dict = defaultdict(int)
            dept_steps: dict = defaultdict(list)
            for s in steps:
                b = budgets.get(s.budget_id)
                key = (b.school.school_name if b and b.school else str(s.budget_id),
                       b.period if b else "", s.step_name)
                overall[key] += 1
                if s.owner_type == "user":
                    by_user[s.assigned_user_id or s.owner_of_step][key] += 1
                else:
                    dept_steps[s.owner_of_step].append(key)

            if dept_steps:
                users = (
                    User.query
                    .filter(User.department_id.in_(list(dept_steps)),
                            User.is_active.is_(True), User.is_verified.is_(True))
                    .all()
                )
                for u in users:
                    for key in dept_steps[u.department_id]:
                        by_user[u.id][key] += 1

            for user_id, counts in by_user.items():
                user = db.session.get(User, user_id)
                if user is None or not user.is_active or not user.is_verified:
                    continue
                ctx = {
                    "count": sum(counts.values()),
                    "content": "<p>These items are waiting at your stage:</p>" + _summary_table(counts),
                    "link_url": deep_link("APP_BASE_URL"),
                }
                results["users_notified"] += send_to([user], "task_digest", ctx, category="digest")

            admin_email = app.config.get("ADMIN_EMAIL")
            if admin_email:
                log = EmailService.send_from_template(
                    to_email=admin_email,
                    template_name="admin_digest",
                    context={"count": len(steps), "content": _summary_table(overall)},
                    category="digest",
                )
                results["admin_notified"] = bool(log and log.status == "success")
    except LockTimeoutError:
        logger.info("Digest already running in another worker", extra={"job_name": "daily_task_digest"})
        results["skipped"] = True
    return results
