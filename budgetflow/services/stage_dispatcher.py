"""
School Budget Workflow
Stage-ready dispatcher.

Sends at most one "items at your stage" mail per (owner, stage, budget,
sub-account) once the whole combo has reached the stage.

Input (all normalised):
    [item_id, ...]                         legacy list of changed items
    budget_id                              a single budget
    {"budgetIds": [...], "itemIds": [...], "source_stage": "needed"}

A combo is ready at stage S when at least one item is currently at S and
no other live, non-excluded item of the combo still has S ahead of it.
Steps are claimed through ``notified_at IS NULL`` before anything is sent,
so a step is mailed at most once.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict

from flask import current_app
from sqlalchemy import update

from budgetflow.models import db
from budgetflow.models.budget import Budget, BudgetItem
from budgetflow.models.directory import Department, User
from budgetflow.models.workflow import (
    STAGE_LOGISTICS,
    STAGE_NEEDED,
    STEP_CONFIRMED,
    STEP_SKIPPED,
    Step,
)
from budgetflow.services import budget_status, recipients
from budgetflow.services.notification_service import (
    deep_link,
    escape_text,
    fmt_number,
    notify_workflow_complete,
    send_to,
    stage_label,
)
from budgetflow.utils.helpers import normalize_bool, to_int, utcnow

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Input normalisation
# ═══════════════════════════════════════════════════════════════════════════


def _as_id_list(value) -> list[int]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple, set)):
        value = [value]
    return [v for v in (to_int(x) for x in value) if v]


def _budgets_of_items(item_ids) -> set[int]:
    if not item_ids:
        return set()
    rows = db.session.query(BudgetItem.budget_id).filter(BudgetItem.id.in_(item_ids)).distinct()
    return {r[0] for r in rows}


def normalize_payload(payload) -> tuple[set[int], str | None]:
    """Return ``(budget_ids, source_stage)`` for any accepted input shape."""
    if isinstance(payload, (list, tuple, set)):
        return _budgets_of_items(_as_id_list(payload)), None
    if isinstance(payload, dict):
        budget_ids = set(_as_id_list(
            payload.get("budgetIds", payload.get("budget_ids", payload.get("budgetId")))
        ))
        budget_ids |= _budgets_of_items(_as_id_list(payload.get("itemIds", payload.get("item_ids"))))
        source = payload.get("source_stage") or payload.get("sourceStage")
        return budget_ids, (str(source).strip().lower() if source else None)
    single = to_int(payload)
    return ({single} if single else set()), None


# ═══════════════════════════════════════════════════════════════════════════
#  Readiness
# ═══════════════════════════════════════════════════════════════════════════


def excluded_at_stage(item: BudgetItem, stage: str, source_stage: str | None) -> bool:
    """Extended exclusion: items that never need to reach ``stage``."""
    if item.is_removed:
        return True
    if stage == STAGE_LOGISTICS:
        return False
    storage = (item.storage_status or "").strip().lower().replace(" ", "_")
    if storage in ("in_stock", "instock"):
        return True
    if source_stage == STAGE_NEEDED and normalize_bool(item.needed_status) is False:
        return True
    return False


def combo_ready(budget_id: int, sub_account_id: int, stage: str, source_stage=None) -> tuple[bool, int, int]:
    """Return ``(ready, current, total)`` for one (budget, sub-account, stage)."""
    items = BudgetItem.query.filter_by(budget_id=budget_id, sub_account_id=sub_account_id).all()
    total = current = 0
    for item in items:
        if item.is_removed:
            continue
        steps = [s for s in item.steps if s.step_name == stage and not s.is_skipped
                 and s.step_status != STEP_SKIPPED]
        if not steps:
            continue
        at_stage = any(s.is_current for s in steps)
        if at_stage:
            current += 1
            total += 1
            continue
        if excluded_at_stage(item, stage, source_stage):
            continue
        if all(s.step_status == STEP_CONFIRMED for s in steps):
            continue
        total += 1
    return current > 0 and current == total, current, total


def _claim(steps) -> list[Step]:
    """Set ``notified_at`` on steps still unclaimed; return the ones this call won."""
    now = utcnow()
    won = []
    for step in steps:
        result = db.session.execute(
            update(Step)
            .where(Step.id == step.id, Step.notified_at.is_(None))
            .values(notified_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            won.append(step)
    db.session.commit()
    return won


# ═══════════════════════════════════════════════════════════════════════════
#  Fallback
# ═══════════════════════════════════════════════════════════════════════════


def _fallback(budget_ids) -> list[int]:
    """in_review budgets with no current step → review_been_completed + admin mail."""
    settled = []
    for budget_id in sorted(budget_ids):
        budget = db.session.get(Budget, budget_id)
        if budget is None or budget_status.has_current_steps(budget_id):
            continue
        if budget_status.settle_review(budget):
            budget_status.recompute(budget)
            settled.append(budget_id)
    if not settled:
        return []
    db.session.commit()

    budgets = [db.session.get(Budget, b) for b in settled]
    rows = "".join(
        f"<li>{escape_text(b.school.school_name if b.school else b.school_id)} · {escape_text(b.period)}"
        f" · #{b.id}</li>"
        for b in budgets
    )
    ctx = {
        "count": len(budgets),
        "content": f"<p>The following budgets passed every stage and await central approval:</p><ul>{rows}</ul>",
        "link_url": deep_link("APP_PRINCIPAL_TO_APPROVE_URL"),
    }
    send_to(recipients.admin_notify_users(), "awaiting_approval", ctx, category="stage_ready")
    for b in budgets:
        if b.budget_status == "workflow_complete":
            notify_workflow_complete(b.id)
    return settled


# ═══════════════════════════════════════════════════════════════════════════
#  Dispatch
# ═══════════════════════════════════════════════════════════════════════════


def _owner_name(owner_type: str, owner_id) -> str:
    if owner_type == "user":
        user = db.session.get(User, owner_id) if owner_id else None
        return user.name if user else ""
    dept = db.session.get(Department, owner_id) if owner_id else None
    return dept.department_name if dept else ""


def _group_content(stage: str, combos) -> str:
    blocks = []
    for (budget_id, _acc), steps in combos:
        budget = db.session.get(Budget, budget_id)
        items = [db.session.get(BudgetItem, s.budget_item_id) for s in steps]
        account = items[0].sub_account if items and items[0] else None
        rows = "".join(
            f"<tr><td style='padding:6px'>{escape_text(i.item_name)}</td>"
            f"<td style='padding:6px;text-align:right'>{fmt_number(i.quantity)}</td>"
            f"<td style='padding:6px;text-align:right'>{fmt_number(i.cost)}</td></tr>"
            for i in items if i is not None
        )
        blocks.append(
            f"<h4 style='margin:16px 0 4px'>"
            f"{escape_text(budget.school.school_name if budget and budget.school else budget_id)}"
            f" · {escape_text(budget.period if budget else '')}"
            f" · {escape_text(account.name if account else '')}</h4>"
            "<table style='width:100%;border-collapse:collapse'>"
            "<tr style='background:#e2e8f0'><th style='padding:6px;text-align:left'>Item</th>"
            "<th style='padding:6px;text-align:right'>Qty</th>"
            "<th style='padding:6px;text-align:right'>Unit cost</th></tr>"
            f"{rows}</table>"
        )
    return "".join(blocks)


def dispatch_stage_ready(payload) -> dict:
    """Mail stage owners whose (budget, sub-account) combos became ready."""
    cfg = current_app.config
    budget_ids, source_stage = normalize_payload(payload)
    result = {"budgets": sorted(budget_ids), "groups": 0, "emails": 0,
              "claimed_steps": 0, "fallback": []}
    if not budget_ids:
        return result

    result["fallback"] = _fallback(budget_ids)

    current = (
        Step.query
        .filter(Step.budget_id.in_(budget_ids), Step.is_current.is_(True))
        .order_by(Step.budget_id, Step.sub_account_id, Step.sort_order, Step.id)
        .all()
    )
    groups: dict = defaultdict(lambda: defaultdict(list))
    for step in current:
        owner = step.assigned_user_id if step.owner_type == "user" else step.owner_of_step
        groups[(step.owner_type, owner, step.step_name)][(step.budget_id, step.sub_account_id)].append(step)

    dry_run = bool(cfg.get("EMAIL_DEBUG_DRYRUN"))
    pause = float(cfg.get("EMAIL_GROUP_PAUSE_SECONDS", 0) or 0)
    sent_groups = 0
    for (owner_type, owner, stage), combos in sorted(groups.items(), key=lambda kv: str(kv[0])):
        ready = []
        for combo, steps in sorted(combos.items()):
            ok, at_stage, total = combo_ready(combo[0], combo[1], stage, source_stage)
            if not ok:
                logger.debug("Combo not ready (%d/%d)", at_stage, total,
                             extra={"budget_id": combo[0], "stage": stage})
                continue
            pending = [s for s in steps if s.notified_at is None]
            if not pending:
                continue
            won = pending if dry_run else _claim(pending)
            if won:
                ready.append((combo, won))
        if not ready:
            continue

        if sent_groups and pause:
            time.sleep(pause)
        sent_groups += 1

        count = sum(len(s) for _, s in ready)
        users = recipients.step_recipients(owner_type, owner, owner if owner_type == "user" else None)
        ctx = {
            "stage_label": stage_label(stage),
            "count": count,
            "department": escape_text(_owner_name(owner_type, owner)),
            "content": _group_content(stage, ready),
            "link_url": deep_link("APP_BASE_URL", f"stages/{stage}"),
            "link_label": "Open your stage inbox",
        }
        sent = send_to(users, "stage_ready", ctx, category="stage_ready")
        result["groups"] += 1
        result["emails"] += sent
        result["claimed_steps"] += 0 if dry_run else count
        logger.info("Stage-ready mail for %d item(s) to %d recipient(s)", count, sent,
                    extra={"stage": stage, "event_type": "stage_ready"})
    return result
