"""
Decision engine — step pointer primitives and the logistics / needed / cost
stage operations.

Every item holds at most one ``is_current`` step. Confirming a step marks it
``confirmed``, forward-marks later type-skipped steps as ``skipped`` and
moves the pointer to the next non-skipped step; with nothing left the item
becomes ``workflow_done``. Revising rewinds the pointer to the previous
non-skipped step (or to the virtual "submitted" step when there is none).

Stage operations run in one transaction per call. Per-item guard failures
(wrong stage, foreign owner) are logged and counted as skipped; the batch
still commits the items it could decide on. After commit the stage-ready
dispatcher is queued for the affected budgets.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from budgetflow.core.exceptions import BadRequestError, NotFoundError
from budgetflow.models import db
from budgetflow.models.budget import STORAGE_STATUSES, Budget, BudgetItem
from budgetflow.models.workflow import (
    STAGE_COST,
    STAGE_LOGISTICS,
    STAGE_NEEDED,
    STEP_CONFIRMED,
    STEP_PENDING,
    STEP_REVISION_REQUESTED,
    STEP_SKIPPED,
    BudgetItemStepState,
    Step,
)
from budgetflow.services import audit_service, budget_status
from budgetflow.services.notification_service import run_after_commit
from budgetflow.utils.helpers import clean_text, normalize_bool, to_int, to_number, utcnow

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
# Step pointer primitives
# ═════════════════════════════════════════════════════════════════════════


def ordered_steps(item_id: int) -> list[Step]:
    return (
        Step.query.filter_by(budget_item_id=item_id)
        .order_by(Step.sort_order, Step.id)
        .all()
    )


def current_step(item_id: int) -> Step | None:
    return (
        Step.query.filter_by(budget_item_id=item_id, is_current=True)
        .order_by(Step.sort_order, Step.id)
        .first()
    )


def owns_step(step: Step, user) -> bool:
    """True when the step belongs to the user or to the user's department."""
    if step is None or user is None:
        return False
    if step.owner_type == "user":
        return step.assigned_user_id == user.id or step.owner_of_step == user.id
    return step.owner_of_step is not None and step.owner_of_step == user.department_id


def lock_budget(budget_id: int) -> Budget:
    """SELECT … FOR UPDATE on the budget row; serialises work per budget."""
    budget = db.session.execute(
        select(Budget).where(Budget.id == budget_id).with_for_update()
    ).scalar_one_or_none()
    if budget is None:
        raise NotFoundError("Budget", budget_id)
    return budget


def record_state(item: BudgetItem, step: Step, decision: str, actor=None,
                 provided_qty=None, numeric_value=None) -> BudgetItemStepState:
    state = BudgetItemStepState(
        budget_id=item.budget_id,
        item_id=item.id,
        template_step_id=step.stage_id,
        stage=step.step_name,
        decision=decision,
        provided_qty=provided_qty,
        numeric_value=numeric_value,
        actor_user_id=actor.id if actor else None,
        actor_department_id=actor.department_id if actor else None,
    )
    db.session.add(state)
    return state


def _activate(step: Step) -> None:
    step.is_current = True
    step.step_status = STEP_PENDING
    step.notified_at = None


def advance_from(item: BudgetItem, step: Step, *, skip_when=None) -> Step | None:
    """Move the item's pointer past ``step``.

    Later ``is_skipped`` steps (and those matching ``skip_when``) are marked
    skipped; the first remaining step becomes current. Returns it, or None
    after flagging the item ``workflow_done``.
    """
    nxt = None
    for s in ordered_steps(item.id):
        if (s.sort_order, s.id) <= (step.sort_order, step.id):
            continue
        s.is_current = False
        if s.is_skipped:
            s.step_status = STEP_SKIPPED
            continue
        if skip_when is not None and skip_when(s):
            s.step_status = STEP_SKIPPED
            s.is_skipped = True
            continue
        if nxt is None:
            nxt = s
    if nxt is not None:
        _activate(nxt)
        item.workflow_done = False
    else:
        item.workflow_done = True
    db.session.flush()
    return nxt


def confirm_step(item: BudgetItem, step: Step, *, actor=None, decision: str = "confirmed",
                 provided_qty=None, numeric_value=None, skip_when=None) -> Step | None:
    step.step_status = STEP_CONFIRMED
    step.is_current = False
    record_state(item, step, decision, actor, provided_qty=provided_qty, numeric_value=numeric_value)
    return advance_from(item, step, skip_when=skip_when)


def finish_item(item: BudgetItem, step: Step, *, actor=None, decision: str) -> None:
    """Confirm ``step`` and skip everything after it (item leaves the workflow)."""
    confirm_step(item, step, actor=actor, decision=decision, skip_when=lambda s: True)


def revise_step(item: BudgetItem, step: Step, *, actor=None, reason: str | None = None) -> Step | None:
    """Send the item back one step. Returns the re-activated step or None."""
    step.step_status = STEP_REVISION_REQUESTED
    step.is_current = False
    record_state(item, step, STEP_REVISION_REQUESTED, actor)

    prev = None
    for s in ordered_steps(item.id):
        if (s.sort_order, s.id) >= (step.sort_order, step.id):
            break
        if not s.is_skipped:
            prev = s
    if prev is not None:
        _activate(prev)
    item.workflow_done = False

    audit_service.record_event(
        budget_id=item.budget_id,
        item_id=item.id,
        stage=step.step_name,
        action="revision_requested",
        old_value=step.step_name,
        new_value=prev.step_name if prev else "submitted",
        note=reason,
        actor=actor,
    )
    db.session.flush()
    return prev


# ═════════════════════════════════════════════════════════════════════════
# Stage operations
# ═════════════════════════════════════════════════════════════════════════


def _rows(items) -> list[dict]:
    if isinstance(items, dict):
        items = [items]
    if not isinstance(items, list) or not items:
        raise BadRequestError("items array required")
    out = []
    for row in items:
        if not isinstance(row, dict):
            raise BadRequestError("each item must be an object")
        item_id = to_int(row.get("id") if "id" in row else row.get("item_id"))
        if not item_id:
            raise BadRequestError("item id is required")
        out.append({**row, "id": item_id})
    return out


def _load_at_stage(row_id: int, stage: str, user) -> tuple[BudgetItem | None, Step | None]:
    """Item + its current step when that step is ``stage`` and owned by the user."""
    item = db.session.get(BudgetItem, row_id)
    if item is None:
        logger.info("Decision skipped: item %s not found", row_id, extra={"stage": stage})
        return None, None
    lock_budget(item.budget_id)
    step = current_step(item.id)
    if step is None or step.step_name != stage:
        logger.info("Decision skipped: item not at stage",
                    extra={"budget_id": item.budget_id, "item_id": item.id, "stage": stage})
        return item, None
    if not owns_step(step, user):
        logger.info("Decision skipped: caller does not own the step",
                    extra={"budget_id": item.budget_id, "item_id": item.id, "stage": stage})
        return item, None
    return item, step


def _result(updated: int, skipped: int, budgets: set) -> dict:
    return {"updated": updated, "skipped": skipped, "budgets": sorted(budgets)}


def queue_dispatch(budget_ids, source_stage=None) -> None:
    if not budget_ids:
        return
    from budgetflow.services.stage_dispatcher import dispatch_stage_ready

    payload = {"budgetIds": sorted(budget_ids)}
    if source_stage:
        payload["source_stage"] = source_stage
    run_after_commit(dispatch_stage_ready, payload)


def derive_storage_status(provided_qty: float, quantity: float) -> str:
    if provided_qty <= 0:
        return "out_of_stock"
    if provided_qty >= quantity:
        return "in_stock"
    return "in_partial"


def apply_logistics(user, items) -> dict:
    """Record storage availability and advance logistics steps.

    Row: ``{id, provided_qty?, status?}``. ``provided_qty`` is clamped to
    ``[0, quantity]``; the status is derived from it unless given. Items in
    stock skip every remaining cost step.
    """
    rows = _rows(items)
    for row in rows:
        status = row.get("status") or row.get("storage_status")
        if status is not None:
            status = str(status).strip().lower().replace(" ", "_")
            if status not in STORAGE_STATUSES:
                raise BadRequestError(f"invalid storage status: {status}")
            row["status"] = status
        if row.get("provided_qty") is not None and to_number(row["provided_qty"]) is None:
            raise BadRequestError("provided_qty must be a number")
        if status is None and row.get("provided_qty") is None:
            raise BadRequestError("provided_qty or status is required")

    updated, skipped, budgets = 0, 0, set()
    now = utcnow()
    for row in rows:
        item, step = _load_at_stage(row["id"], STAGE_LOGISTICS, user)
        if step is None:
            skipped += 1
            continue

        qty = float(item.quantity or 0)
        provided = to_number(row.get("provided_qty"))
        status = row.get("status")
        if provided is not None:
            provided = min(max(provided, 0.0), qty)
            status = status or derive_storage_status(provided, qty)
        elif status == "in_stock":
            provided = qty
        elif status == "out_of_stock":
            provided = 0.0

        old = item.storage_status
        item.storage_status = status
        item.storage_provided_qty = provided
        item.storage_reviewed_by = user.id
        item.storage_reviewed_at = now
        audit_service.record_event(
            budget_id=item.budget_id, item_id=item.id, stage=STAGE_LOGISTICS,
            action="storage_update", old_value=old, new_value=status,
            value_json={"provided_qty": provided, "quantity": qty}, actor=user,
        )

        skip_cost = (lambda s: s.step_name == STAGE_COST) if status == "in_stock" else None
        confirm_step(item, step, actor=user, decision=status, provided_qty=provided,
                     skip_when=skip_cost)
        updated += 1
        budgets.add(item.budget_id)

    for budget_id in budgets:
        budget_status.settle_review(db.session.get(Budget, budget_id), actor=user)
    db.session.commit()
    queue_dispatch(budgets)
    return _result(updated, skipped, budgets)


def apply_needed(user, items) -> dict:
    """Record the needed decision; not-needed items leave the workflow.

    Row: ``{id, needed_status?, note?}``. A row with only a note is stored as
    a note and does not move the pointer.
    """
    rows = _rows(items)
    for row in rows:
        raw = row.get("needed_status", row.get("decision"))
        decision = normalize_bool(raw)
        if raw not in (None, "") and decision is None:
            raise BadRequestError(f"invalid needed_status: {raw}")
        row["decision"] = decision
        row["note"] = clean_text(row.get("note"))
        if decision is None and row["note"] is None:
            raise BadRequestError("needed_status or note is required")

    updated, skipped, budgets = 0, 0, set()
    now = utcnow()
    for row in rows:
        item, step = _load_at_stage(row["id"], STAGE_NEEDED, user)
        if step is None:
            skipped += 1
            continue

        if row["note"] is not None:
            item.needed_note = row["note"]
            item.needed_noted_by = user.id
            item.needed_noted_at = now

        decision = row["decision"]
        if decision is None:
            audit_service.record_event(
                budget_id=item.budget_id, item_id=item.id, stage=STAGE_NEEDED,
                action="note", note=row["note"], actor=user,
            )
            updated += 1
            budgets.add(item.budget_id)
            continue

        old = item.needed_status
        item.needed_status = 1 if decision else 0
        item.needed_reviewed_by = user.id
        item.needed_reviewed_at = now
        audit_service.record_event(
            budget_id=item.budget_id, item_id=item.id, stage=STAGE_NEEDED,
            action="needed_update", old_value=old, new_value=item.needed_status,
            note=row["note"], actor=user,
        )
        if decision:
            confirm_step(item, step, actor=user, decision="needed", numeric_value=1)
        else:
            finish_item(item, step, actor=user, decision="not_needed")
        updated += 1
        budgets.add(item.budget_id)

    for budget_id in budgets:
        budget = db.session.get(Budget, budget_id)
        budget_status.settle_review(budget, actor=user)
        budget_status.recompute(budget, actor=user)
    db.session.commit()
    queue_dispatch(budgets, source_stage=STAGE_NEEDED)
    queue_completion_mails(budgets)
    return _result(updated, skipped, budgets)


def apply_cost(user, items) -> dict:
    """Record the purchasing cost and advance cost steps.

    Row: ``{id, purchase_cost, purchasing_note?}``.
    """
    rows = _rows(items)
    for row in rows:
        cost = to_number(row.get("purchase_cost"))
        if cost is None:
            raise BadRequestError("purchase_cost is required")
        if cost < 0:
            raise BadRequestError("purchase_cost must be >= 0")
        row["purchase_cost"] = cost

    updated, skipped, budgets = 0, 0, set()
    now = utcnow()
    for row in rows:
        item, step = _load_at_stage(row["id"], STAGE_COST, user)
        if step is None:
            skipped += 1
            continue

        old = item.purchase_cost
        item.purchase_cost = row["purchase_cost"]
        if "purchasing_note" in row:
            item.purchasing_note = clean_text(row.get("purchasing_note"))
        item.purchasing_reviewed_by = user.id
        item.purchasing_reviewed_at = now
        audit_service.record_event(
            budget_id=item.budget_id, item_id=item.id, stage=STAGE_COST,
            action="cost_update", old_value=old, new_value=item.purchase_cost,
            note=item.purchasing_note, actor=user,
        )
        confirm_step(item, step, actor=user, numeric_value=item.purchase_cost)
        updated += 1
        budgets.add(item.budget_id)

    for budget_id in budgets:
        budget_status.settle_review(db.session.get(Budget, budget_id), actor=user)
    db.session.commit()
    queue_dispatch(budgets)
    return _result(updated, skipped, budgets)


def queue_completion_mails(budget_ids) -> None:
    from budgetflow.services import notification_service

    for budget_id in budget_ids:
        budget = db.session.get(Budget, budget_id)
        if budget is not None and budget.budget_status == "workflow_complete":
            run_after_commit(notification_service.notify_workflow_complete, budget_id)
