"""
Audit event writer.

``budget_item_events`` is append-only: this module only ever inserts.
Actions outside ``EVENT_ACTIONS`` are written as a ``note`` event carrying
``fallback: true`` and the requested action in ``value_json`` so that
bookkeeping never fails a business transaction.
"""

from __future__ import annotations

import json
import logging

from budgetflow.models import db
from budgetflow.models import workflow as wf
from budgetflow.models.workflow import BudgetItemEvent

logger = logging.getLogger(__name__)


def _as_text(value):
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)
    return str(value)


def _actor_ids(actor):
    if actor is None:
        return None, None
    return actor.id, actor.department_id


def record_event(
    *,
    budget_id: int,
    stage: str,
    action: str,
    item_id: int | None = None,
    old_value=None,
    new_value=None,
    note: str | None = None,
    value_json: dict | None = None,
    actor=None,
) -> BudgetItemEvent:
    """Append one audit event to the session (flushed by the caller's commit)."""
    payload = dict(value_json) if value_json else None
    if action not in wf.EVENT_ACTIONS:
        logger.info("Audit action %r unsupported, writing note fallback", action,
                    extra={"budget_id": budget_id, "item_id": item_id, "stage": stage})
        payload = dict(payload or {})
        payload.update({"fallback": True, "action": action})
        if action == "skipped":
            new_value = new_value or "skipped"
        action = "note"

    user_id, dept_id = _actor_ids(actor)
    event = BudgetItemEvent(
        budget_id=budget_id,
        item_id=item_id,
        stage=stage,
        action=action,
        old_value=_as_text(old_value),
        new_value=_as_text(new_value),
        note=note,
        value_json=payload,
        actor_user_id=user_id,
        actor_department_id=dept_id,
    )
    db.session.add(event)
    return event


def record_skipped(*, budget_id: int, item_id: int, stage: str, reason: str, actor=None):
    """Record that an upstream stage was never executed for an item."""
    return record_event(
        budget_id=budget_id,
        item_id=item_id,
        stage=stage,
        action="skipped",
        new_value="skipped",
        note="Stage not executed for this item",
        value_json={"stage": stage, "reason": reason},
        actor=actor,
    )


def events_for_budget(budget_id: int, item_id: int | None = None) -> list[BudgetItemEvent]:
    q = BudgetItemEvent.query.filter_by(budget_id=budget_id)
    if item_id is not None:
        q = q.filter_by(item_id=item_id)
    return q.order_by(BudgetItemEvent.created_at, BudgetItemEvent.id).all()
