"""
School Budget Workflow
Budget status machine.

Statuses are rank-ordered and only move upwards; the revise path and the
resubmission reset are the two callers allowed to pass ``force=True``.

    draft(0) < submitted(10) < in_review(20) < review_been_completed(30)
        < approved_by_finance(40) < revision_requested(50) < workflow_complete(60)
"""

from __future__ import annotations

import logging

from budgetflow.models import db
from budgetflow.models.budget import DECIDED_FINAL_STATUSES, Budget, BudgetItem
from budgetflow.models.workflow import (
    STAGE_COST,
    STAGE_NEEDED,
    BudgetItemEvent,
    Step,
)
from budgetflow.services import audit_service
from budgetflow.utils.helpers import normalize_bool, utcnow

logger = logging.getLogger(__name__)

STATUS_RANK = {
    "draft": 0,
    "submitted": 10,
    "in_review": 20,
    "review_been_completed": 30,
    "approved_by_finance": 40,
    "revision_requested": 50,
    "workflow_complete": 60,
}

_ALIASES = {"submited": "submitted"}

# Stages that are reported as "skipped" when absent from an item's chain.
UPSTREAM_STAGES = (STAGE_NEEDED, STAGE_COST)


def normalize_status(status) -> str | None:
    if status is None:
        return None
    s = str(status).strip().lower()
    return _ALIASES.get(s, s)


def rank(status) -> int:
    return STATUS_RANK.get(normalize_status(status), -1)


def excluded(item: BudgetItem) -> bool:
    """In stock, or reviewed as not needed: done for recomputation."""
    storage = (item.storage_status or "").strip().lower().replace(" ", "_")
    if storage in ("in_stock", "instock"):
        return True
    return normalize_bool(item.needed_status) is False and item.needed_reviewed_by is not None


def set_status(budget: Budget, new_status: str, *, actor=None, force: bool = False,
               counters: dict | None = None, note: str | None = None) -> bool:
    """Move ``budget`` to ``new_status``. Returns True when it changed.

    Without ``force`` a transition to an equal or lower rank is ignored.
    """
    new_status = normalize_status(new_status)
    if new_status not in STATUS_RANK:
        raise ValueError(f"unknown budget status: {new_status}")
    prev = normalize_status(budget.budget_status)
    if prev == new_status:
        return False
    if not force and rank(new_status) <= rank(prev):
        logger.debug("Status downgrade ignored %s -> %s", prev, new_status,
                     extra={"budget_id": budget.id})
        return False

    budget.budget_status = new_status
    if new_status == "workflow_complete" and budget.closed_at is None:
        budget.closed_at = utcnow()

    value = {"from": prev, "to": new_status}
    if counters:
        value.update(counters)
    audit_service.record_event(
        budget_id=budget.id,
        stage="system",
        action="status_change",
        old_value=prev,
        new_value=new_status,
        note=note,
        value_json=value,
        actor=actor,
    )
    logger.info("Budget status %s -> %s", prev, new_status,
                extra={"budget_id": budget.id, "event_type": "status_change"})
    return True


def _live_items(budget_id: int) -> list[BudgetItem]:
    items = BudgetItem.query.filter_by(budget_id=budget_id).order_by(BudgetItem.id).all()
    return [i for i in items if not i.is_removed]


def ensure_skipped_upstream_events(budget_id: int, actor=None) -> int:
    """Write one ``skipped`` event per item for upstream stages it never visits.

    A stage counts as absent when the item has no step for it or that step
    is type-skipped. Existing (item, stage) skip records are not repeated.
    """
    written = 0
    for item in _live_items(budget_id):
        steps = Step.query.filter_by(budget_item_id=item.id).all()
        if not steps:
            continue
        active = {s.step_name for s in steps if not s.is_skipped}
        for stage in UPSTREAM_STAGES:
            if stage in active:
                continue
            already = (
                BudgetItemEvent.query
                .filter_by(budget_id=budget_id, item_id=item.id, stage=stage)
                .filter(BudgetItemEvent.new_value == "skipped")
                .first()
            )
            if already is not None:
                continue
            audit_service.record_skipped(
                budget_id=budget_id, item_id=item.id, stage=stage,
                reason="not_in_route", actor=actor,
            )
            written += 1
    if written:
        db.session.flush()
    return written


def counters(budget_id: int) -> dict:
    wf_not_done = coord_needed = coord_done = 0
    for item in _live_items(budget_id):
        if excluded(item):
            continue
        if not item.workflow_done:
            wf_not_done += 1
            continue
        coord_needed += 1
        if item.final_purchase_status in DECIDED_FINAL_STATUSES:
            coord_done += 1
    return {
        "wf_not_done": wf_not_done,
        "coord_needed": coord_needed,
        "coord_done": coord_done,
        "coord_pending": coord_needed - coord_done,
    }


def recompute(budget: Budget, actor=None) -> str:
    """Coordinator recomputation; promotes to ``workflow_complete`` when done."""
    if budget is None:
        return None
    ensure_skipped_upstream_events(budget.id, actor=actor)
    db.session.flush()
    c = counters(budget.id)
    prev = normalize_status(budget.budget_status)
    if rank(prev) >= STATUS_RANK["review_been_completed"] and c["wf_not_done"] + c["coord_pending"] == 0:
        set_status(budget, "workflow_complete", actor=actor, counters=c)
    return budget.budget_status


def all_items_final_or_excluded(budget_id: int) -> bool:
    """Alternative completion rule: every item decided, removed or excluded."""
    items = BudgetItem.query.filter_by(budget_id=budget_id).all()
    if not items:
        return False
    for item in items:
        if item.is_removed or excluded(item):
            continue
        if item.final_purchase_status not in DECIDED_FINAL_STATUSES:
            return False
    return True


def has_current_steps(budget_id: int) -> bool:
    return (
        db.session.query(Step.id)
        .filter(Step.budget_id == budget_id, Step.is_current.is_(True))
        .first()
        is not None
    )


def settle_review(budget: Budget, actor=None) -> bool:
    """``in_review`` with nothing left at any stage → ``review_been_completed``."""
    if budget is None or normalize_status(budget.budget_status) != "in_review":
        return False
    db.session.flush()
    if has_current_steps(budget.id):
        return False
    return set_status(budget, "review_been_completed", actor=actor,
                      note="No current steps remain")
