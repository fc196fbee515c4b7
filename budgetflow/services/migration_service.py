"""
School Budget Workflow
Template migration for in-flight budgets.

For every item the installed template (the one most of its steps point at)
is replaced by the target template. Old and new stages are paired by
(stage kind, index within that kind); the latest decision recorded on an
old stage is copied onto its partner unless the partner already has one.
The item's steps are then rebuilt for the new chain.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from budgetflow.core.exceptions import NoTemplateError
from budgetflow.models import db
from budgetflow.models.budget import BudgetItem
from budgetflow.models.workflow import (
    STEP_CONFIRMED,
    STEP_PENDING,
    STEP_SKIPPED,
    BudgetItemStepState,
    Step,
)
from budgetflow.services import audit_service, budget_status, workflow_resolver
from budgetflow.services.decision_engine import lock_budget
from budgetflow.services.step_materializer import installed_template_id

logger = logging.getLogger(__name__)


def _indexed(entries, stage_of) -> dict:
    """{(stage, index_within_stage): entry} preserving chain order."""
    seen = defaultdict(int)
    out = {}
    for e in entries:
        stage = stage_of(e)
        out[(stage, seen[stage])] = e
        seen[stage] += 1
    return out


def _latest_state(item_id: int, template_step_id: int | None):
    if template_step_id is None:
        return None
    return (
        BudgetItemStepState.query
        .filter_by(item_id=item_id, template_step_id=template_step_id)
        .order_by(BudgetItemStepState.created_at.desc(), BudgetItemStepState.id.desc())
        .first()
    )


def _has_state(item_id: int, template_step_id: int) -> bool:
    return _latest_state(item_id, template_step_id) is not None


def _plan_item(budget, item: BudgetItem, to_template_id):
    from_id = installed_template_id(item.id)
    target = to_template_id
    if target is None:
        try:
            target = workflow_resolver.resolve_template_id(budget.school_id, item.sub_account_id)
        except NoTemplateError:
            target = None
    plan = {"item_id": item.id, "from": from_id, "to": target, "migrated": 0, "mapping": []}
    if from_id is None or target is None:
        plan["status"] = "skipped"
        plan["reason"] = "no_template"
        return plan, None, None
    if from_id == target:
        plan["status"] = "skipped"
        plan["reason"] = "same_template"
        return plan, None, None

    old_steps = (
        Step.query.filter_by(budget_item_id=item.id, template_id=from_id)
        .order_by(Step.sort_order, Step.id).all()
    )
    new_chain = workflow_resolver.load_chain(target, item.type_id)
    old_map = _indexed(old_steps, lambda s: s.step_name)
    new_map = _indexed(new_chain, lambda c: c.stage)

    copies = []
    for key, old in old_map.items():
        new = new_map.get(key)
        if new is None:
            continue
        state = _latest_state(item.id, old.stage_id)
        copy = state is not None and not _has_state(item.id, new.template_step_id)
        plan["mapping"].append({
            "stage": key[0],
            "index": key[1],
            "from_step_id": old.stage_id,
            "to_step_id": new.template_step_id,
            "copied": copy,
        })
        if copy:
            copies.append((state, new))
    plan["migrated"] = len(copies)
    plan["status"] = "planned"
    return plan, copies, new_chain


def _rebuild_steps(item: BudgetItem, chain) -> bool:
    """Replace the item's steps with ``chain``; returns the new workflow_done."""
    for s in Step.query.filter_by(budget_item_id=item.id).all():
        db.session.delete(s)
    db.session.flush()

    decided = {c.template_step_id for c in chain if _has_state(item.id, c.template_step_id)}
    done = all(c.template_step_id in decided for c in chain if not c.should_skip)
    current_set = False
    for c in chain:
        if c.should_skip:
            status = STEP_SKIPPED
        elif c.template_step_id in decided:
            status = STEP_CONFIRMED
        else:
            status = STEP_PENDING
        is_current = status == STEP_PENDING and not current_set and not done
        current_set = current_set or is_current
        db.session.add(Step(
            budget_id=item.budget_id,
            sub_account_id=item.sub_account_id,
            budget_item_id=item.id,
            template_id=c.template_id,
            stage_id=c.template_step_id,
            step_name=c.stage,
            sort_order=c.sort_order,
            step_status=status,
            owner_of_step=c.owner_of_step,
            owner_type=c.owner_type,
            assigned_user_id=c.assigned_user_id,
            can_revise=c.allow_revise,
            is_current=is_current,
            is_skipped=c.should_skip,
        ))
    return done


def migrate_budget(budget_id: int, to_template_id: int | None = None, *,
                   dry_run: bool = False, actor=None) -> dict:
    """Move every item of a budget onto ``to_template_id`` (or its resolved template).

    With ``dry_run`` nothing is written and the per-item plan is returned.
    """
    budget = lock_budget(budget_id)
    items = (
        BudgetItem.query.filter_by(budget_id=budget_id)
        .order_by(BudgetItem.id).all()
    )

    results = []
    for item in items:
        if item.is_removed:
            results.append({"item_id": item.id, "status": "skipped", "reason": "removed",
                            "from": None, "to": None, "migrated": 0, "mapping": []})
            continue
        plan, copies, chain = _plan_item(budget, item, to_template_id)
        results.append(plan)
        if dry_run or chain is None:
            continue

        for state, new in copies:
            db.session.add(BudgetItemStepState(
                budget_id=budget_id,
                item_id=item.id,
                template_step_id=new.template_step_id,
                stage=state.stage,
                decision=state.decision,
                provided_qty=state.provided_qty,
                numeric_value=state.numeric_value,
                actor_user_id=actor.id if actor else None,
                actor_department_id=actor.department_id if actor else None,
            ))
        db.session.flush()

        item.workflow_done = _rebuild_steps(item, chain)
        item.route_template_id = plan["to"]
        audit_service.record_event(
            budget_id=budget_id, item_id=item.id, stage="system", action="status_change",
            old_value=f"template:{plan['from']}",
            new_value=f"migrated_to_template:{plan['to']}",
            value_json={"migrated": plan["migrated"], "workflow_done": item.workflow_done},
            actor=actor,
        )
        plan["status"] = "migrated"
        plan["workflow_done"] = item.workflow_done

    if dry_run:
        db.session.rollback()
    else:
        budget_status.settle_review(budget, actor=actor)
        budget_status.recompute(budget, actor=actor)
        db.session.commit()
        logger.info("Budget migrated", extra={"budget_id": budget_id})

    return {
        "budget_id": budget_id,
        "dry_run": dry_run,
        "items": results,
        "migrated_items": sum(1 for r in results if r["status"] in ("migrated", "planned")),
    }
