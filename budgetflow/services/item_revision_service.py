"""
School Budget Workflow
Item-level revision after the coordinator review.

A reviewer sends one item back to the requester with a reason; the
requester (or a principal/moderator of the same school) answers with a
comment and optionally a new quantity and unit cost; the coordinator then
decides again. An item can also be withdrawn from the budget entirely.
"""

from __future__ import annotations

import logging

from budgetflow.core.exceptions import BadRequestError, ForbiddenError, ValidationError
from budgetflow.models import db
from budgetflow.models.budget import Budget, BudgetItem, RevisionAnswer
from budgetflow.models.workflow import Step
from budgetflow.services import audit_service, budget_status
from budgetflow.services.coordinator_service import REVIEWER_ROLES
from budgetflow.services.decision_engine import lock_budget, queue_completion_mails
from budgetflow.services.notification_service import (
    notify_item_revised,
    notify_revision_answered,
    run_after_commit,
)
from budgetflow.utils.helpers import clean_text, get_or_raise, to_number, utcnow

logger = logging.getLogger(__name__)

STAGE_REVISION = "revision"


def _load(item_id: int) -> BudgetItem:
    item = get_or_raise(BudgetItem, item_id, "BudgetItem")
    lock_budget(item.budget_id)
    return item


def revise_item(user, item_id: int, reason) -> BudgetItem:
    reason = clean_text(reason)
    if not reason:
        raise BadRequestError("reason is required")
    if user.role not in REVIEWER_ROLES:
        raise ForbiddenError("Only reviewers can send items back for revision")
    item = _load(item_id)
    if item.is_removed:
        raise ValidationError("Removed items cannot be revised", details={"item_id": item.id})

    previous = item.final_purchase_status
    item.item_revised = True
    item.revise_reason = reason
    item.revised_at = utcnow()
    item.final_purchase_status = "revised"
    item.final_purchase_status_display = "Sent back for revision"
    item.revision_state = "pending"
    audit_service.record_event(
        budget_id=item.budget_id, item_id=item.id, stage=STAGE_REVISION, action="revise",
        old_value=previous, new_value="revised", note=reason, actor=user,
    )
    db.session.commit()
    logger.info("Item sent back for revision", extra={"budget_id": item.budget_id, "item_id": item.id})
    run_after_commit(notify_item_revised, item.id)
    return item


def _may_answer(user, budget: Budget) -> bool:
    if budget.user_id == user.id:
        return True
    return (user.is_principal or user.is_moderator) and user.school_id == budget.school_id


def answer_revision(user, item_id: int, data: dict) -> BudgetItem:
    item = _load(item_id)
    if item.revision_state != "pending":
        raise ValidationError("Item has no pending revision", details={"item_id": item.id})
    if not _may_answer(user, item.budget):
        raise ForbiddenError("Only the requester or the school principal can answer")
    comment = clean_text(data.get("comment"))
    if not comment:
        raise BadRequestError("comment is required")

    values = {}
    for field in ("quantity", "cost"):
        raw = data.get(field)
        if raw in (None, ""):
            continue
        number = to_number(raw)
        if field == "quantity" and (number is None or number <= 0):
            raise BadRequestError("quantity must be a number > 0")
        if number is None or number < 0:
            raise BadRequestError(f"{field} must be a number >= 0")
        values[field] = number

    answer = RevisionAnswer(
        budget_id=item.budget_id,
        item_id=item.id,
        user_id=user.id,
        comment=comment,
        quantity=values.get("quantity"),
        cost=values.get("cost"),
    )
    db.session.add(answer)
    db.session.flush()

    before = {"quantity": item.quantity, "cost": item.cost}
    for field, number in values.items():
        setattr(item, field, number)
    item.answer_id = answer.id
    item.revised_answered_at = utcnow()
    item.item_revised = False
    item.revision_state = "answered"
    audit_service.record_event(
        budget_id=item.budget_id, item_id=item.id, stage=STAGE_REVISION, action="answer",
        note=comment,
        value_json={"from": before, "to": values, "answer_id": answer.id},
        actor=user,
    )
    db.session.commit()
    run_after_commit(notify_revision_answered, item.id, user.id)
    return item


def remove_item(user, item_id: int) -> BudgetItem:
    item = _load(item_id)
    budget = item.budget
    if user.role not in REVIEWER_ROLES and budget.user_id != user.id:
        raise ForbiddenError("Not allowed to remove this item")
    if item.is_removed:
        return item

    previous = item.final_purchase_status
    item.removed_in_item_revision = True
    item.final_purchase_status = "removed"
    item.final_purchase_status_display = "Removed"
    item.revision_state = "none"
    item.item_revised = False
    for step in Step.query.filter_by(budget_item_id=item.id, is_current=True):
        step.is_current = False
    audit_service.record_event(
        budget_id=item.budget_id, item_id=item.id, stage=STAGE_REVISION, action="delete_removed",
        old_value=previous, new_value="removed", actor=user,
    )
    budget_status.settle_review(budget, actor=user)
    budget_status.recompute(budget, actor=user)
    db.session.commit()
    queue_completion_mails([budget.id])
    return item


def list_revised(school_id=None) -> list[dict]:
    q = (
        BudgetItem.query.join(Budget, Budget.id == BudgetItem.budget_id)
        .filter(BudgetItem.revision_state.in_(("pending", "answered")))
    )
    if school_id:
        q = q.filter(Budget.school_id == school_id)
    out = []
    for item in q.order_by(BudgetItem.revised_at.desc(), BudgetItem.id).all():
        row = item.to_dict()
        row.update({
            "school_id": item.budget.school_id,
            "period": item.budget.period,
            "budget_status": item.budget.budget_status,
        })
        out.append(row)
    return out
