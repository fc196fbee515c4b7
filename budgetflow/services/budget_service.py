"""
School Budget Workflow
Budget submission, resubmission and read models.

    submit_budget     POST   /budgets
    resubmit_budget   PUT    /budgets/<id>
    editor_payload    rows grouped by (sub-account, notes)
    budget_changes    diff of the current items against the submission baseline
    route_view        per-item route with the virtual "submitted" step
    stage_counts      budgets waiting at each stage for the caller
    budget_totals     Σ final quantity × final unit price per budget
"""

from __future__ import annotations

import logging
from collections import OrderedDict

from sqlalchemy.exc import IntegrityError

from budgetflow.core.exceptions import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    ValidationError,
)
from budgetflow.models import db
from budgetflow.models.budget import (
    REQUEST_TYPES,
    Budget,
    BudgetItem,
    BudgetItemBaseline,
)
from budgetflow.models.directory import School
from budgetflow.models.workflow import (
    STAGE_KINDS,
    STEP_CONFIRMED,
    STEP_SKIPPED,
    BudgetItemStepState,
    Step,
)
from budgetflow.services import audit_service, budget_status, draft_service
from budgetflow.services.decision_engine import lock_budget, queue_dispatch
from budgetflow.services.notification_service import (
    notify_budget_submitted,
    run_after_commit,
    stage_label,
)
from budgetflow.services.principal_service import parse_subitem
from budgetflow.services.step_materializer import ensure_steps_for_items
from budgetflow.utils.helpers import clean_text, get_or_raise, is_valid_period, to_int

logger = logging.getLogger(__name__)

RESUBMITTABLE = {"revision_requested", "submitted", "draft"}
ADMIN_ROLES = {"admin", "hq_admin"}

_SCRATCH_FIELDS = (
    "storage_status", "storage_provided_qty", "storage_reviewed_by", "storage_reviewed_at",
    "needed_status", "needed_reviewed_by", "needed_reviewed_at",
    "needed_note", "needed_noted_by", "needed_noted_at",
    "purchase_cost", "purchasing_note", "purchasing_reviewed_by", "purchasing_reviewed_at",
    "final_purchase_cost", "final_quantity", "final_purchase_status",
    "final_purchase_status_display", "coordinator_reviewed_by", "coordinator_reviewed_at",
    "route_template_id", "revise_reason", "revised_at", "answer_id", "revised_answered_at",
)

_DIFF_FIELDS = ("item_name", "itemdescription", "notes", "quantity", "cost", "period_months")


# ═════════════════════════════════════════════════════════════════════════
# Payload parsing
# ═════════════════════════════════════════════════════════════════════════


def _parse_items(raw_items) -> list[dict]:
    if not isinstance(raw_items, list) or not raw_items:
        raise BadRequestError("items array required")
    out = []
    for i, raw in enumerate(raw_items):
        where = f"items[{i}]"
        row = parse_subitem(raw, where=where)
        account_id = to_int(raw.get("account_id", raw.get("sub_account_id")))
        if not account_id:
            raise BadRequestError(f"{where}: account_id is required")
        row["sub_account_id"] = account_id
        row["notes"] = clean_text(raw.get("notes"))
        out.append(row)
    return out


def _new_item(budget_id: int, row: dict) -> BudgetItem:
    return BudgetItem(
        budget_id=budget_id,
        sub_account_id=row["sub_account_id"],
        item_id=row["item_id"],
        item_name=row["item_name"],
        itemdescription=row["itemdescription"],
        notes=row["notes"],
        quantity=row["quantity"],
        cost=row["cost"],
        unit=row["unit"],
        period_months=row["period_months"],
    )


def _capture_baseline(budget: Budget) -> int:
    BudgetItemBaseline.query.filter_by(budget_id=budget.id).delete(synchronize_session=False)
    count = 0
    for item in BudgetItem.query.filter_by(budget_id=budget.id).order_by(BudgetItem.id):
        db.session.add(BudgetItemBaseline(
            budget_id=budget.id,
            item_id=item.id,
            sub_account_id=item.sub_account_id,
            item_name=item.item_name,
            itemdescription=item.itemdescription,
            notes=item.notes,
            quantity=item.quantity,
            cost=item.cost,
            period_months=item.period_months,
        ))
        count += 1
    return count


def _materialize(budget: Budget, actor) -> None:
    ids = [i.id for i in BudgetItem.query.filter_by(budget_id=budget.id)]
    ensure_steps_for_items(budget.id, ids)
    if any(i.workflow_done for i in BudgetItem.query.filter_by(budget_id=budget.id)):
        budget_status.recompute(budget, actor=actor)


# ═════════════════════════════════════════════════════════════════════════
# Submit / resubmit
# ═════════════════════════════════════════════════════════════════════════


def submit_budget(user, data: dict) -> Budget:
    school_id = to_int(data.get("school_id")) or user.school_id
    if not school_id:
        raise BadRequestError("school_id is required")
    school = get_or_raise(School, school_id, "School")

    period = (data.get("period") or "").strip()
    if not is_valid_period(period):
        raise BadRequestError("period must be MM-YYYY", details={"period": period})
    request_type = (data.get("request_type") or "new").strip().lower()
    if request_type not in REQUEST_TYPES:
        raise BadRequestError(f"request_type must be one of {sorted(REQUEST_TYPES)}")
    rows = _parse_items(data.get("items"))
    draft_id = to_int(data.get("draft_id") or data.get("submission_draft_id"))

    if request_type == "new":
        existing = Budget.query.filter_by(school_id=school_id, period=period, request_type="new").first()
        if existing is not None:
            raise ConflictError("Budget", "school_id+period", f"{school_id}/{period}",
                                existing_id=existing.id)

    budget = Budget(
        user_id=user.id,
        school_id=school_id,
        period=period,
        title=clean_text(data.get("title")) or school.school_name,
        description=clean_text(data.get("description")),
        budget_status="submitted",
        request_type=request_type,
        submitted_role=user.role,
        submission_draft_id=draft_id,
    )
    db.session.add(budget)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        existing = Budget.query.filter_by(school_id=school_id, period=period, request_type="new").first()
        raise ConflictError("Budget", "school_id+period", f"{school_id}/{period}",
                            existing_id=existing.id if existing else None)

    if draft_id is not None:
        draft_service.close_for_submission(user, draft_id, budget.id)
    items = [_new_item(budget.id, row) for row in rows]
    db.session.add_all(items)
    db.session.flush()
    _capture_baseline(budget)

    audit_service.record_event(
        budget_id=budget.id, stage="system", action="created",
        new_value=budget.title,
        note="Budget submitted (baseline captured)",
        value_json={"school_id": school_id, "period": period, "title": budget.title,
                    "items_count": len(items), "draft_id": draft_id},
        actor=user,
    )
    audit_service.record_event(
        budget_id=budget.id, stage="system", action="status_change",
        old_value=None, new_value="submitted",
        value_json={"from": None, "to": "submitted"}, actor=user,
    )
    for item in items:
        audit_service.record_event(
            budget_id=budget.id, item_id=item.id, stage="system", action="created",
            new_value=item.item_name,
            value_json={"quantity": item.quantity, "cost": item.cost,
                        "sub_account_id": item.sub_account_id},
            actor=user,
        )

    _materialize(budget, user)
    db.session.commit()
    logger.info("Budget submitted with %d item(s)", len(items),
                extra={"budget_id": budget.id, "event_type": "submitted"})

    run_after_commit(notify_budget_submitted, budget.id)
    queue_dispatch([budget.id])
    return budget


def _reset_item(item: BudgetItem) -> None:
    for field in _SCRATCH_FIELDS:
        setattr(item, field, None)
    item.workflow_done = False
    item.revision_state = "none"
    item.item_revised = False
    item.removed_in_item_revision = False


def resubmit_budget(user, budget_id: int, data: dict) -> Budget:
    """Replace the items of a budget sent back for revision and restart its workflow."""
    budget = lock_budget(budget_id)
    if budget.user_id != user.id and user.role not in ADMIN_ROLES:
        raise ForbiddenError("Only the requester can resubmit this budget")
    status = budget_status.normalize_status(budget.budget_status)
    if status not in RESUBMITTABLE:
        raise ValidationError(
            f"Budget in status '{status}' cannot be resubmitted",
            details={"budget_status": status},
        )
    rows = _parse_items(data.get("items"))

    Step.query.filter_by(budget_id=budget.id).delete(synchronize_session=False)
    BudgetItemStepState.query.filter_by(budget_id=budget.id).delete(synchronize_session=False)
    db.session.expire_all()
    budget = db.session.get(Budget, budget_id)

    current = {i.id: i for i in BudgetItem.query.filter_by(budget_id=budget.id)}
    kept, inserted = set(), []
    for row in rows:
        item = current.get(row["id"]) if row["id"] else None
        if item is None:
            item = _new_item(budget.id, row)
            db.session.add(item)
            db.session.flush()
            inserted.append(item.id)
            audit_service.record_event(
                budget_id=budget.id, item_id=item.id, stage="system", action="created",
                new_value=item.item_name, actor=user,
            )
        else:
            diff = {}
            for field in ("sub_account_id", "item_id") + _DIFF_FIELDS + ("unit",):
                if getattr(item, field) != row[field]:
                    diff[field] = {"from": getattr(item, field), "to": row[field]}
                    setattr(item, field, row[field])
            _reset_item(item)
            if diff:
                audit_service.record_event(
                    budget_id=budget.id, item_id=item.id, stage="system",
                    action="item_update", value_json=diff, actor=user,
                )
        kept.add(item.id)

    for item_id, item in current.items():
        if item_id in kept:
            continue
        audit_service.record_event(
            budget_id=budget.id, stage="system", action="item_deleted",
            old_value=item.item_name, value_json={"item_id": item_id}, actor=user,
        )
        db.session.delete(item)
    db.session.flush()

    if "title" in data:
        budget.title = clean_text(data.get("title")) or budget.title
    if "description" in data:
        budget.description = clean_text(data.get("description"))
    budget_status.set_status(budget, "submitted", actor=user, force=True,
                             note="Budget resubmitted after revision")
    budget.closed_at = None
    budget.notified_complete_at = None
    _capture_baseline(budget)

    _materialize(budget, user)
    db.session.commit()
    logger.info("Budget resubmitted", extra={"budget_id": budget.id, "event_type": "resubmitted"})

    run_after_commit(notify_budget_submitted, budget.id, True)
    queue_dispatch([budget.id])
    return budget


# ═════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════


def get_budget(budget_id: int) -> Budget:
    return get_or_raise(Budget, budget_id, "Budget")


def list_budgets(school_id=None, status=None, user_id=None) -> list[Budget]:
    q = Budget.query
    if school_id:
        q = q.filter(Budget.school_id == school_id)
    if status:
        q = q.filter(Budget.budget_status == budget_status.normalize_status(status))
    if user_id:
        q = q.filter(Budget.user_id == user_id)
    return q.order_by(Budget.created_at.desc(), Budget.id.desc()).all()


def editor_payload(budget_id: int) -> dict:
    """Rows grouped by (account_id, notes), the shape the principal editor posts back."""
    budget = get_budget(budget_id)
    groups: OrderedDict = OrderedDict()
    for item in budget.items:
        if item.is_removed:
            continue
        key = (item.sub_account_id, item.notes or "")
        if key not in groups:
            groups[key] = {
                "account_id": item.sub_account_id,
                "account_name": item.sub_account.name if item.sub_account else None,
                "notes": item.notes,
                "subitems": [],
            }
        groups[key]["subitems"].append({
            "budget_item_id": item.id,
            "catalog_item_id": item.item_id,
            "name": item.item_name,
            "itemdescription": item.itemdescription,
            "quantity": item.quantity,
            "cost": item.cost,
            "unit": item.unit,
            "period_months": item.period_months,
            "final_purchase_status": item.final_purchase_status,
        })
    return {"budget": budget.to_dict(), "rows": list(groups.values())}


def budget_changes(budget_id: int) -> dict:
    budget = get_budget(budget_id)
    baseline = {b.item_id: b for b in BudgetItemBaseline.query.filter_by(budget_id=budget.id)}
    current = {i.id: i for i in budget.items}

    added, removed, moved, edited, unchanged = [], [], [], [], []
    for item_id, item in current.items():
        base = baseline.get(item_id)
        if base is None:
            added.append(item.to_dict())
            continue
        if item.is_removed:
            removed.append(base.to_dict())
            continue
        changes = {
            f: {"from": getattr(base, f), "to": getattr(item, f)}
            for f in _DIFF_FIELDS
            if getattr(base, f) != getattr(item, f)
        }
        if base.sub_account_id != item.sub_account_id:
            moved.append({"item_id": item_id, "item_name": item.item_name,
                          "from": base.sub_account_id, "to": item.sub_account_id})
        if changes:
            edited.append({"item_id": item_id, "item_name": item.item_name, "changes": changes})
        elif base.sub_account_id == item.sub_account_id:
            unchanged.append(item_id)
    for item_id, base in baseline.items():
        if item_id not in current:
            removed.append(base.to_dict())

    return {
        "budget_id": budget.id,
        "added": added,
        "removed": removed,
        "moved": moved,
        "edited": edited,
        "unchanged": unchanged,
        "counts": {
            "added": len(added), "removed": len(removed), "moved": len(moved),
            "edited": len(edited), "unchanged": len(unchanged),
        },
    }


def _step_view_status(step: Step) -> str:
    if step.is_skipped or step.step_status == STEP_SKIPPED:
        return "skipped"
    if step.is_current:
        return "current"
    if step.step_status == STEP_CONFIRMED:
        return "done"
    return "upcoming"


def _item_route(budget: Budget, item: BudgetItem) -> dict:
    steps = Step.query.filter_by(budget_item_id=item.id).order_by(Step.sort_order, Step.id).all()
    revision = budget.budget_status == "revision_requested"
    on_submitted = revision and not item.workflow_done and not any(s.is_current for s in steps)
    route = [{
        "step_id": None,
        "step_name": "submitted",
        "label": "Submitted",
        "sort_order": -1,
        "status": "revised" if on_submitted else "done",
        "is_current": on_submitted,
    }]
    for s in steps:
        route.append({
            "step_id": s.id,
            "step_name": s.step_name,
            "label": stage_label(s.step_name),
            "sort_order": s.sort_order,
            "status": _step_view_status(s),
            "is_current": bool(s.is_current),
            "owner_type": s.owner_type,
            "owner_of_step": s.owner_of_step,
            "step_status": s.step_status,
            "notified_at": s.notified_at.isoformat() if s.notified_at else None,
        })
    return {
        "item_id": item.id,
        "item_name": item.item_name,
        "workflow_done": item.workflow_done,
        "final_purchase_status": item.final_purchase_status,
        "hq_decision_awaiting": bool(item.workflow_done and not item.final_purchase_status),
        "route": route,
    }


def route_view(budget_id: int, item_id: int | None = None) -> dict:
    budget = get_budget(budget_id)
    items = [i for i in budget.items if item_id is None or i.id == item_id]
    if item_id is not None and not items:
        raise BadRequestError(f"item {item_id} does not belong to budget {budget_id}")
    return {
        "budget_id": budget.id,
        "budget_status": budget.budget_status,
        "budget_revision_requested": budget.budget_status == "revision_requested",
        "items": [_item_route(budget, i) for i in items],
    }


def stage_counts(user) -> dict:
    """Distinct budgets per stage with a current, unconfirmed step owned by ``user``."""
    q = (
        db.session.query(Step.step_name, db.func.count(db.distinct(Step.budget_id)))
        .filter(Step.is_current.is_(True), Step.step_status != STEP_CONFIRMED)
        .filter(
            db.or_(
                db.and_(Step.owner_type == "user", Step.assigned_user_id == user.id),
                db.and_(Step.owner_type != "user", Step.owner_of_step == user.department_id),
            )
        )
        .group_by(Step.step_name)
    )
    counts = {stage: 0 for stage in STAGE_KINDS}
    for stage, n in q.all():
        counts[stage] = n
    return counts


def budget_totals(school_id: int) -> list[dict]:
    get_or_raise(School, school_id, "School")
    rows = []
    for budget in list_budgets(school_id=school_id):
        total = 0.0
        counted = 0
        for item in budget.items:
            if item.is_removed or item.final_purchase_status in (None, "rejected", "removed", "revised"):
                continue
            total += float(item.final_quantity or 0) * float(item.final_purchase_cost or 0)
            counted += 1
        rows.append({
            "budget_id": budget.id,
            "period": budget.period,
            "title": budget.title,
            "request_type": budget.request_type,
            "budget_status": budget.budget_status,
            "items_counted": counted,
            "total": round(total, 2),
        })
    return rows
