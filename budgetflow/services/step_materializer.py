"""
Step materializer.

Keeps ``steps`` rows consistent with the chain resolved for each item.

    ensure_steps_for_items(budget_id, item_ids,
                           align_to_stage_name=None,
                           recreate_on_account_change=False)

* no steps yet        → insert the whole chain, pick the current step
* template changed    → recreate (when asked) or upsert missing stages
* same template       → refresh skip flags only (idempotent)

Refresh rule (terminal decisions are never resurrected):

    should_skip                          → is_skipped=True,  status=skipped
    was skipped and status == skipped    → is_skipped=False, status=pending
    otherwise                            → unchanged
"""

from __future__ import annotations

import logging
from collections import Counter

from budgetflow.core.exceptions import NoTemplateError
from budgetflow.models import db
from budgetflow.models.budget import Budget, BudgetItem
from budgetflow.models.workflow import (
    STEP_CONFIRMED,
    STEP_PENDING,
    STEP_SKIPPED,
    Step,
)
from budgetflow.services import workflow_resolver
from budgetflow.services.decision_engine import advance_from, ordered_steps

logger = logging.getLogger(__name__)


def _new_step(item: BudgetItem, stage) -> Step:
    return Step(
        budget_id=item.budget_id,
        sub_account_id=item.sub_account_id,
        budget_item_id=item.id,
        template_id=stage.template_id,
        stage_id=stage.template_step_id,
        step_name=stage.stage,
        sort_order=stage.sort_order,
        step_status=STEP_SKIPPED if stage.should_skip else STEP_PENDING,
        owner_of_step=stage.owner_of_step,
        owner_type=stage.owner_type,
        assigned_user_id=stage.assigned_user_id,
        can_revise=stage.allow_revise,
        is_current=False,
        is_skipped=stage.should_skip,
    )


def _insert_chain(item: BudgetItem, template_id: int, chain, anchor: str | None) -> str:
    """Insert every stage of ``chain`` and place the pointer.

    The anchor (or the first non-skipped stage) becomes current. Non-skipped
    stages before the anchor are recorded as confirmed.
    """
    steps = [_new_step(item, stage) for stage in chain]
    db.session.add_all(steps)

    active = [s for s in steps if not s.is_skipped]
    current = None
    if anchor:
        current = next((s for s in active if s.step_name == anchor), None)
    if current is None and active:
        current = active[0]

    if current is None:
        item.workflow_done = True
    else:
        for s in active:
            if s is current:
                break
            s.step_status = STEP_CONFIRMED
        current.is_current = True
        current.step_status = STEP_PENDING
        item.workflow_done = False

    item.route_template_id = template_id
    db.session.flush()
    return current.step_name if current is not None else None


def _refresh(item: BudgetItem, template_id: int, chain) -> dict:
    """Upsert missing stages by stage id and apply the refresh rule."""
    by_stage_id = {s.stage_id: s for s in ordered_steps(item.id) if s.stage_id is not None}
    inserted = changed = 0
    moved_off = None

    for stage in chain:
        step = by_stage_id.get(stage.template_step_id)
        if step is None:
            db.session.add(_new_step(item, stage))
            inserted += 1
            continue
        if stage.should_skip:
            if not step.is_skipped or step.step_status != STEP_SKIPPED:
                step.is_skipped = True
                step.step_status = STEP_SKIPPED
                changed += 1
                if step.is_current:
                    moved_off = step
        elif step.is_skipped and step.step_status == STEP_SKIPPED:
            step.is_skipped = False
            step.step_status = STEP_PENDING
            changed += 1

    db.session.flush()
    if moved_off is not None:
        # A current step may not stay current once skipped.
        moved_off.is_current = False
        advance_from(item, moved_off)

    item.route_template_id = template_id
    return {"inserted": inserted, "refreshed": changed}


def _installed_template_ids(steps) -> set:
    return {s.template_id for s in steps}


def installed_template_id(item_id: int) -> int | None:
    """Most frequently referenced template among an item's steps."""
    counts = Counter(s.template_id for s in Step.query.filter_by(budget_item_id=item_id).all())
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def ensure_steps_for_items(budget_id: int, item_ids, *, align_to_stage_name: str | None = None,
                           recreate_on_account_change: bool = False) -> list[dict]:
    """Materialize or refresh steps for ``item_ids`` of ``budget_id``.

    Returns one summary dict per item. Items without a resolvable template
    are logged and reported with ``action='no_template'``.
    """
    budget = db.session.get(Budget, budget_id)
    if budget is None or not item_ids:
        return []

    summary = []
    items = (
        BudgetItem.query
        .filter(BudgetItem.budget_id == budget_id, BudgetItem.id.in_(list(item_ids)))
        .order_by(BudgetItem.id)
        .all()
    )
    for item in items:
        existing = ordered_steps(item.id)
        for s in existing:
            if s.sub_account_id != item.sub_account_id:
                s.sub_account_id = item.sub_account_id

        try:
            template_id, chain = workflow_resolver.resolve_chain(
                budget.school_id, item.sub_account_id, item.type_id
            )
        except NoTemplateError:
            logger.warning("No workflow template for item; steps not materialized",
                           extra={"budget_id": budget_id, "item_id": item.id})
            summary.append({"item_id": item.id, "action": "no_template"})
            continue

        if not existing:
            current = _insert_chain(item, template_id, chain, align_to_stage_name)
            summary.append({"item_id": item.id, "action": "created",
                            "template_id": template_id, "current": current})
            continue

        if template_id not in _installed_template_ids(existing) and recreate_on_account_change:
            previous = next((s.step_name for s in existing if s.is_current), None)
            for s in existing:
                db.session.delete(s)
            db.session.flush()
            current = _insert_chain(item, template_id, chain, previous or align_to_stage_name)
            summary.append({"item_id": item.id, "action": "recreated",
                            "template_id": template_id, "current": current})
            logger.info("Steps recreated for template %s", template_id,
                        extra={"budget_id": budget_id, "item_id": item.id})
            continue

        counts = _refresh(item, template_id, chain)
        summary.append({"item_id": item.id, "action": "refreshed",
                        "template_id": template_id, **counts})

    db.session.flush()
    return summary
