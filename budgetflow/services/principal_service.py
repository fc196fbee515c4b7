"""
School Budget Workflow
Request-control (principal) stage.

The principal edits the authoritative rows of a budget, grouped by
(sub-account, notes), and then confirms or revises the items sitting at the
request-control stage.

Row shape::

    {"account_id": 4, "notes": "Lab",
     "subitems": [{"budget_item_id": 12, "catalog_item_id": 3, "name": "…",
                   "quantity": 2, "cost": 10.5, "unit": "pcs",
                   "itemdescription": "…", "period_months": 12}]}

Within every touched (sub-account, notes) combo existing rows are updated,
rows without an id are inserted and rows missing from the payload are
deleted together with their steps and step states.
"""

from __future__ import annotations

import logging

from budgetflow.core.exceptions import BadRequestError, ValidationError
from budgetflow.models import db
from budgetflow.models.budget import BudgetItem
from budgetflow.models.workflow import STAGE_REQUEST_CONTROL, Step
from budgetflow.services import audit_service, budget_status
from budgetflow.services.decision_engine import (
    confirm_step,
    lock_budget,
    owns_step,
    queue_completion_mails,
    queue_dispatch,
    revise_step,
)
from budgetflow.services.notification_service import notify_status_change, run_after_commit
from budgetflow.services.step_materializer import ensure_steps_for_items
from budgetflow.utils.helpers import canonical_item_name, clean_text, to_int, to_number

logger = logging.getLogger(__name__)

_EDITABLE = ("item_name", "itemdescription", "quantity", "cost", "unit", "period_months", "item_id")


# ═════════════════════════════════════════════════════════════════════════
# Payload parsing
# ═════════════════════════════════════════════════════════════════════════


def parse_subitem(raw: dict, *, where: str, item_id_is_row: bool = False) -> dict:
    """Validate one item row (shared with budget submission).

    In editor rows ``item_id`` names the budget item; in submissions it
    names the catalog item.
    """
    if not isinstance(raw, dict):
        raise BadRequestError(f"{where}: item must be an object")
    name = canonical_item_name(raw.get("name") or raw.get("item_name"))
    if not name:
        raise BadRequestError(f"{where}: name is required")
    qty = to_number(raw.get("quantity"))
    if qty is None or qty <= 0:
        raise BadRequestError(f"{where}: quantity must be > 0")
    cost = to_number(raw.get("cost"))
    if cost is None or cost < 0:
        raise BadRequestError(f"{where}: cost must be >= 0")
    months = raw.get("period_months")
    months = 12 if months in (None, "") else to_int(months)
    if months is None or not 1 <= months <= 12:
        raise BadRequestError(f"{where}: period_months must be between 1 and 12")
    return {
        "id": to_int(raw.get("budget_item_id") or raw.get("id")
                     or (raw.get("item_id") if item_id_is_row else None)),
        "item_id": to_int(raw.get("catalog_item_id") if item_id_is_row or "catalog_item_id" in raw
                          else raw.get("item_id")),
        "item_name": name,
        "itemdescription": clean_text(raw.get("itemdescription")),
        "quantity": qty,
        "cost": cost,
        "unit": clean_text(raw.get("unit")),
        "period_months": months,
    }


def parse_rows(rows) -> list[dict]:
    if not isinstance(rows, list) or not rows:
        raise BadRequestError("rows array required")
    out = []
    for i, row in enumerate(rows):
        if not isinstance(row, dict):
            raise BadRequestError(f"rows[{i}] must be an object")
        account_id = to_int(row.get("account_id", row.get("sub_account_id")))
        if not account_id:
            raise BadRequestError(f"rows[{i}]: account_id is required")
        subitems = row.get("subitems")
        if not isinstance(subitems, list):
            raise BadRequestError(f"rows[{i}]: subitems array required")
        out.append({
            "account_id": account_id,
            "notes": clean_text(row.get("notes")),
            "subitems": [parse_subitem(s, where=f"rows[{i}].subitems[{j}]", item_id_is_row=True)
                         for j, s in enumerate(subitems)],
        })
    return out


def _combo(sub_account_id, notes) -> tuple:
    return (sub_account_id, (notes or "").strip())


# ═════════════════════════════════════════════════════════════════════════
# Upsert + prune
# ═════════════════════════════════════════════════════════════════════════


def upsert_and_prune(budget, rows: list[dict], actor=None) -> dict:
    """Apply the editor rows to ``budget``. Returns touched / inserted / moved / deleted ids."""
    items = {i.id: i for i in BudgetItem.query.filter_by(budget_id=budget.id).all()}
    combos = {_combo(r["account_id"], r["notes"]) for r in rows}
    seen, inserted, moved, updated = set(), [], [], []

    for row in rows:
        for sub in row["subitems"]:
            if sub["id"] is not None:
                item = items.get(sub["id"])
                if item is None:
                    raise BadRequestError(f"item {sub['id']} does not belong to budget {budget.id}")
                seen.add(item.id)
                diff = {}
                for field in _EDITABLE:
                    if getattr(item, field) != sub[field]:
                        diff[field] = {"from": getattr(item, field), "to": sub[field]}
                        setattr(item, field, sub[field])
                if item.notes != row["notes"]:
                    diff["notes"] = {"from": item.notes, "to": row["notes"]}
                    item.notes = row["notes"]
                if item.sub_account_id != row["account_id"]:
                    diff["sub_account_id"] = {"from": item.sub_account_id, "to": row["account_id"]}
                    item.sub_account_id = row["account_id"]
                    moved.append(item.id)
                if diff:
                    updated.append(item.id)
                    audit_service.record_event(
                        budget_id=budget.id, item_id=item.id, stage=STAGE_REQUEST_CONTROL,
                        action="item_update", value_json=diff, actor=actor,
                    )
                continue

            item = BudgetItem(
                budget_id=budget.id,
                sub_account_id=row["account_id"],
                notes=row["notes"],
                **{k: sub[k] for k in _EDITABLE},
            )
            db.session.add(item)
            db.session.flush()
            seen.add(item.id)
            inserted.append(item.id)
            audit_service.record_event(
                budget_id=budget.id, item_id=item.id, stage=STAGE_REQUEST_CONTROL,
                action="created", new_value=item.item_name, actor=actor,
            )

    deleted = []
    for item in list(items.values()):
        if item.id in seen or _combo(item.sub_account_id, item.notes) not in combos:
            continue
        audit_service.record_event(
            budget_id=budget.id, stage=STAGE_REQUEST_CONTROL, action="item_deleted",
            old_value=item.item_name,
            value_json={"item_id": item.id, "sub_account_id": item.sub_account_id},
            actor=actor,
        )
        deleted.append(item.id)
        db.session.delete(item)
    db.session.flush()

    if inserted:
        ensure_steps_for_items(budget.id, inserted, align_to_stage_name=STAGE_REQUEST_CONTROL)
    if moved:
        ensure_steps_for_items(budget.id, moved, recreate_on_account_change=True)

    return {"touched": sorted(seen), "inserted": inserted, "moved": moved,
            "updated": updated, "deleted": deleted}


def _candidate_steps(budget, user, item_ids) -> list[Step]:
    if not item_ids:
        return []
    current = (
        Step.query
        .filter(Step.budget_item_id.in_(item_ids),
                Step.step_name == STAGE_REQUEST_CONTROL,
                Step.is_current.is_(True))
        .order_by(Step.budget_item_id)
        .all()
    )
    owned = [s for s in current if owns_step(s, user)]
    if owned:
        return owned
    if (user.is_principal or user.is_moderator) and user.school_id == budget.school_id:
        return current
    return []


# ═════════════════════════════════════════════════════════════════════════
# Confirm / Revise
# ═════════════════════════════════════════════════════════════════════════


def _revise_without_steps(user, budget, changes, reason) -> dict:
    """Keep the editor changes and flag the budget even though no pointer moves.

    Happens when the principal sends a budget back before its items reached
    request control (or after another principal already acted on them).
    """
    prev = budget.budget_status
    budget_status.set_status(budget, "revision_requested", actor=user, force=True, note=reason)
    new_status = budget.budget_status
    db.session.commit()
    logger.info("Request control revise without current steps",
                extra={"budget_id": budget.id, "stage": STAGE_REQUEST_CONTROL})

    if new_status != prev:
        run_after_commit(notify_status_change, budget.id, new_status, reason)
    return {
        "updated": 0,
        "skipped": len(changes["touched"]),
        "budgets": [budget.id],
        "status": new_status,
        "inserted": changes["inserted"],
        "deleted": changes["deleted"],
        "edited": changes["updated"],
        "note": "No current request-control steps for this budget",
    }


def _apply(user, budget_id: int, rows, *, revise: bool, reason: str | None = None) -> dict:
    parsed = parse_rows(rows)
    budget = lock_budget(budget_id)
    changes = upsert_and_prune(budget, parsed, actor=user)

    steps = _candidate_steps(budget, user, changes["touched"])
    if revise:
        steps = [s for s in steps if s.can_revise]
    if not steps and revise:
        return _revise_without_steps(user, budget, changes, reason)
    if not steps:
        db.session.rollback()
        raise ValidationError(
            "No request-control step available for this user",
            details={"budget_id": budget_id},
        )

    for step in steps:
        item = db.session.get(BudgetItem, step.budget_item_id)
        if revise:
            revise_step(item, step, actor=user, reason=reason)
        else:
            confirm_step(item, step, actor=user)

    prev = budget.budget_status
    if revise:
        budget_status.set_status(budget, "revision_requested", actor=user, force=True, note=reason)
    else:
        target = "approved_by_finance" if user.is_moderator else "in_review"
        budget_status.set_status(budget, target, actor=user)
        budget_status.settle_review(budget, actor=user)
        budget_status.recompute(budget, actor=user)

    new_status = budget.budget_status
    db.session.commit()
    logger.info("Request control %s on %d item(s)", "revise" if revise else "confirm", len(steps),
                extra={"budget_id": budget_id, "stage": STAGE_REQUEST_CONTROL})

    if new_status != prev:
        run_after_commit(notify_status_change, budget_id, new_status, reason)
    queue_dispatch([budget_id])
    queue_completion_mails([budget_id])

    touched = set(changes["touched"])
    return {
        "updated": len(steps),
        "skipped": len(touched) - len(steps),
        "budgets": [budget_id],
        "status": new_status,
        "inserted": changes["inserted"],
        "deleted": changes["deleted"],
        "edited": changes["updated"],
    }


def principal_confirm(user, budget_id: int, rows) -> dict:
    return _apply(user, budget_id, rows, revise=False)


def principal_revise(user, budget_id: int, rows, reason) -> dict:
    reason = clean_text(reason)
    if not reason:
        raise BadRequestError("reason is required")
    return _apply(user, budget_id, rows, revise=True, reason=reason)
