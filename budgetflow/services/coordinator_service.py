"""
School Budget Workflow
Coordinator (final) decisions.

    decision ∈ {approved, adjusted, rejected}

An ``approved`` decision whose price or quantity differs from the requested
numbers is stored as ``adjusted``. ``rejected`` clears both finals.
Repeating the stored decision is a no-op and writes no event.
"""

from __future__ import annotations

import logging

from budgetflow.core.exceptions import BadRequestError, ReadinessViolation
from budgetflow.models import db
from budgetflow.models.budget import DECIDED_FINAL_STATUSES, Budget, BudgetItem
from budgetflow.models.workflow import STAGE_COORDINATOR
from budgetflow.services import audit_service, budget_status
from budgetflow.services.decision_engine import (
    confirm_step,
    current_step,
    lock_budget,
    owns_step,
    queue_completion_mails,
    queue_dispatch,
)
from budgetflow.utils.helpers import to_int, to_number, utcnow

logger = logging.getLogger(__name__)

REVIEWER_ROLES = {"coordinator", "admin", "hq_admin", "moderator"}
EPSILON = 1e-9

STATUS_DISPLAY = {
    "approved": "Approved",
    "adjusted": "Approved (adjusted)",
    "rejected": "Rejected",
}


def _differs(a, b) -> bool:
    if a is None or b is None:
        return (a is None) != (b is None)
    return abs(float(a) - float(b)) > EPSILON


def _parse(rows) -> list[dict]:
    if isinstance(rows, dict):
        rows = [rows]
    if not isinstance(rows, list) or not rows:
        raise BadRequestError("items array required")
    out = []
    for i, row in enumerate(rows):
        if not isinstance(row, dict):
            raise BadRequestError(f"items[{i}] must be an object")
        item_id = to_int(row.get("id", row.get("item_id")))
        if not item_id:
            raise BadRequestError(f"items[{i}]: id is required")
        decision = str(row.get("decision") or row.get("final_purchase_status") or "").strip().lower()
        if decision not in DECIDED_FINAL_STATUSES:
            raise BadRequestError(f"items[{i}]: decision must be approved, adjusted or rejected")
        raw_price = row.get("unit_price", row.get("final_purchase_cost"))
        price = to_number(raw_price)
        if raw_price not in (None, "") and (price is None or price < 0):
            raise BadRequestError(f"items[{i}]: unit price must be >= 0")
        raw_qty = row.get("final_quantity")
        qty = to_number(raw_qty)
        if raw_qty not in (None, "") and (qty is None or qty < 0):
            raise BadRequestError(f"items[{i}]: final_quantity must be >= 0")
        out.append({"id": item_id, "decision": decision, "price": price, "qty": qty})
    return out


def _check_ready(item: BudgetItem, user):
    """Return the coordinator step to confirm (or None) or raise ReadinessViolation."""
    step = current_step(item.id)
    if item.workflow_done and step is None:
        if user.role not in REVIEWER_ROLES:
            raise ReadinessViolation(item.id, "caller is not a reviewer")
        return None
    if step is None or step.step_name != STAGE_COORDINATOR:
        raise ReadinessViolation(item.id)
    if not (owns_step(step, user) or user.role in REVIEWER_ROLES):
        raise ReadinessViolation(item.id, "caller does not own the coordinator step")
    return step


def _target(row: dict, item: BudgetItem) -> tuple:
    if row["decision"] == "rejected":
        return "rejected", None, None
    base_cost = float(item.cost or 0)
    base_qty = float(item.quantity or 0)
    cost = row["price"] if row["price"] is not None else base_cost
    qty = row["qty"] if row["qty"] is not None else base_qty
    status = row["decision"]
    if status == "approved" and (_differs(cost, base_cost) or _differs(qty, base_qty)):
        status = "adjusted"
    return status, cost, qty


def coordinator_decide(user, rows) -> dict:
    parsed = _parse(rows)
    updated, skipped = 0, 0
    budgets: set = set()
    last_item = None
    now = utcnow()

    for row in parsed:
        item = db.session.get(BudgetItem, row["id"])
        if item is None or item.is_removed:
            skipped += 1
            continue
        lock_budget(item.budget_id)
        try:
            step = _check_ready(item, user)
        except ReadinessViolation as exc:
            logger.info("Coordinator decision skipped: %s", exc.reason,
                        extra={"budget_id": item.budget_id, "item_id": item.id,
                               "stage": STAGE_COORDINATOR})
            skipped += 1
            continue

        to_status, to_cost, to_qty = _target(row, item)
        same = (
            item.final_purchase_status == to_status
            and not _differs(item.final_purchase_cost, to_cost)
            and not _differs(item.final_quantity, to_qty)
        )
        if same and step is None:
            skipped += 1
            continue

        from_status = item.final_purchase_status
        from_cost = item.final_purchase_cost
        from_qty = item.final_quantity
        item.final_purchase_status = to_status
        item.final_purchase_cost = to_cost
        item.final_quantity = to_qty
        item.final_purchase_status_display = STATUS_DISPLAY[to_status]
        item.coordinator_reviewed_by = user.id
        item.coordinator_reviewed_at = now
        if step is not None:
            confirm_step(item, step, actor=user, decision=to_status, numeric_value=to_cost)

        audit_service.record_event(
            budget_id=item.budget_id, item_id=item.id, stage=STAGE_COORDINATOR,
            action="final_decision", old_value=from_status, new_value=to_status,
            value_json={
                "from_status": from_status, "from_cost": from_cost, "from_qty": from_qty,
                "to_status": to_status, "to_cost": to_cost, "to_qty": to_qty,
                "baseline_cost": item.cost, "baseline_qty": item.quantity,
            },
            actor=user,
        )
        updated += 1
        budgets.add(item.budget_id)
        last_item = item

    for budget_id in budgets:
        budget = db.session.get(Budget, budget_id)
        budget_status.settle_review(budget, actor=user)
        budget_status.recompute(budget, actor=user)
    db.session.commit()

    queue_dispatch(budgets)
    queue_completion_mails(budgets)
    return {
        "updated": updated,
        "skipped": skipped,
        "budgetsUpdated": sorted(budgets),
        "updatedItem": last_item.to_dict() if last_item is not None else None,
    }
