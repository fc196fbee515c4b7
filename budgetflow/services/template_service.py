"""
Workflow template store.

Templates, their ordered stage lists and the bindings that select them.

Stage replace keeps stage identities stable: incoming stages are matched to
existing rows by ``sort_order``; matches are updated in place only when
their contents differ, new orders are inserted and missing ones deleted.
Steps reference stage ids, so in-flight items keep pointing at the same
rows across an edit.
"""

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import OperationalError

from budgetflow.core.exceptions import BadRequestError, ConflictError, NotFoundError
from budgetflow.models import db
from budgetflow.models.workflow import (
    OWNER_TYPES,
    STAGE_KINDS,
    STAGE_REQUEST_CONTROL,
    Step,
    WorkflowBinding,
    WorkflowTemplate,
    WorkflowTemplateStage,
)
from budgetflow.services.workflow_resolver import normalize_skip_ids
from budgetflow.utils.helpers import to_int

logger = logging.getLogger(__name__)

BULK_BIND_MAX_ATTEMPTS = 3
BULK_BIND_BACKOFF_BASE = 0.05


# ═════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════


def list_templates() -> list[dict]:
    rows = WorkflowTemplate.query.order_by(WorkflowTemplate.id).all()
    return [t.to_dict() for t in rows]


def get_template(template_id: int) -> WorkflowTemplate:
    tpl = db.session.get(WorkflowTemplate, template_id)
    if tpl is None:
        raise NotFoundError("WorkflowTemplate", template_id)
    return tpl


def create_template(data: dict) -> WorkflowTemplate:
    name = (data.get("name") or "").strip()
    if not name:
        raise BadRequestError("name is required")
    if WorkflowTemplate.query.filter_by(name=name).first():
        raise ConflictError("WorkflowTemplate", "name", name)
    tpl = WorkflowTemplate(name=name, is_active=bool(data.get("is_active", True)))
    db.session.add(tpl)
    db.session.flush()
    if data.get("stages"):
        replace_stages(tpl.id, data["stages"], commit=False)
    db.session.commit()
    logger.info("Workflow template created id=%s name=%s", tpl.id, name)
    return tpl


def update_template(template_id: int, data: dict) -> WorkflowTemplate:
    tpl = get_template(template_id)
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise BadRequestError("name cannot be empty")
        clash = WorkflowTemplate.query.filter(
            WorkflowTemplate.name == name, WorkflowTemplate.id != tpl.id
        ).first()
        if clash:
            raise ConflictError("WorkflowTemplate", "name", name)
        tpl.name = name
    if "is_active" in data:
        tpl.is_active = bool(data["is_active"])
    db.session.commit()
    return tpl


def delete_template(template_id: int) -> None:
    tpl = get_template(template_id)
    in_use = Step.query.filter_by(template_id=tpl.id).first()
    if in_use:
        raise ConflictError("WorkflowTemplate", "in_use_by_steps", str(tpl.id))
    db.session.delete(tpl)
    db.session.commit()
    logger.info("Workflow template deleted id=%s", template_id)


# ═════════════════════════════════════════════════════════════════════════
# Stages
# ═════════════════════════════════════════════════════════════════════════


def _validate_stages(stages) -> list[dict]:
    if not isinstance(stages, list) or not stages:
        raise BadRequestError("stages array required")

    cleaned = []
    seen_orders = set()
    for s in stages:
        if not isinstance(s, dict):
            raise BadRequestError("each stage must be an object")
        stage = s.get("stage")
        if stage not in STAGE_KINDS:
            raise BadRequestError(f"invalid stage: {stage}")
        order = s.get("sort_order")
        if isinstance(order, bool) or not isinstance(order, int):
            raise BadRequestError(f"sort_order missing for {stage}")
        if order in seen_orders:
            raise BadRequestError(f"duplicate sort_order: {order}")
        seen_orders.add(order)

        owner_type = s.get("owner_type") or "department"
        if owner_type not in OWNER_TYPES:
            raise BadRequestError(f"invalid owner_type for {stage}: {owner_type}")
        dept_id = to_int(s.get("owner_department_id"))
        user_id = to_int(s.get("assigned_user_id"))
        if owner_type == "department" and not dept_id:
            raise BadRequestError(f"owner_department_id missing for {stage}")
        if owner_type == "user" and not user_id:
            raise BadRequestError(f"assigned_user_id missing for {stage}")

        cleaned.append({
            "stage": stage,
            "sort_order": order,
            "owner_department_id": dept_id,
            "owner_type": owner_type,
            "assigned_user_id": user_id if owner_type == "user" else None,
            "allow_revise": bool(stage == STAGE_REQUEST_CONTROL and s.get("allow_revise")),
            "skip_type_ids": normalize_skip_ids(s.get("skip_type_ids")),
        })
    return cleaned


def _stage_differs(row: WorkflowTemplateStage, s: dict) -> bool:
    return (
        row.stage != s["stage"]
        or row.owner_department_id != s["owner_department_id"]
        or (row.owner_type or "department") != s["owner_type"]
        or row.assigned_user_id != s["assigned_user_id"]
        or bool(row.allow_revise) != s["allow_revise"]
        or normalize_skip_ids(row.skip_type_ids) != s["skip_type_ids"]
    )


def replace_stages(template_id: int, stages, *, commit: bool = True) -> dict:
    """Replace the ordered stage list of a template.

    Returns ``{template_id, inserted, updated, deleted, stages}``.
    """
    tpl = get_template(template_id)
    incoming = _validate_stages(stages)

    existing = {
        r.sort_order: r
        for r in WorkflowTemplateStage.query.filter_by(template_id=tpl.id).all()
    }
    by_order = {s["sort_order"]: s for s in incoming}
    counts = {"inserted": 0, "updated": 0, "deleted": 0}

    for order, row in existing.items():
        if order in by_order:
            continue
        db.session.delete(row)
        counts["deleted"] += 1
    db.session.flush()

    for order, s in by_order.items():
        row = existing.get(order)
        if row is None:
            db.session.add(WorkflowTemplateStage(template_id=tpl.id, **s))
            counts["inserted"] += 1
        elif _stage_differs(row, s):
            for key, value in s.items():
                setattr(row, key, value)
            counts["updated"] += 1

    db.session.flush()
    if commit:
        db.session.commit()
    db.session.refresh(tpl)
    logger.info("Template %s stages replaced: %s", tpl.id, counts)
    return {"template_id": tpl.id, **counts, "stages": [s.to_dict() for s in tpl.stages]}


# ═════════════════════════════════════════════════════════════════════════
# Bindings
# ═════════════════════════════════════════════════════════════════════════


def list_bindings() -> list[dict]:
    rows = WorkflowBinding.query.order_by(WorkflowBinding.id.desc()).all()
    return [b.to_dict() for b in rows]


def _account_id(data: dict):
    if "sub_account_id" in data:
        return to_int(data.get("sub_account_id"))
    return to_int(data.get("account_id"))


def create_binding(data: dict) -> WorkflowBinding:
    template_id = to_int(data.get("template_id"))
    if not template_id:
        raise BadRequestError("template_id is required")
    get_template(template_id)
    school_id = to_int(data.get("school_id"))
    sub_account_id = _account_id(data)
    priority = to_int(data.get("priority"))
    priority = 100 if priority is None else priority

    clash = WorkflowBinding.query.filter_by(
        template_id=template_id, school_id=school_id, sub_account_id=sub_account_id
    ).first()
    if clash:
        raise ConflictError("WorkflowBinding", "template_id/school_id/account_id",
                            f"{template_id}/{school_id}/{sub_account_id}", existing_id=clash.id)

    binding = WorkflowBinding(
        template_id=template_id,
        school_id=school_id,
        sub_account_id=sub_account_id,
        priority=priority,
    )
    db.session.add(binding)
    db.session.commit()
    return binding


def delete_binding(binding_id: int) -> None:
    binding = db.session.get(WorkflowBinding, binding_id)
    if binding is None:
        raise NotFoundError("WorkflowBinding", binding_id)
    db.session.delete(binding)
    db.session.commit()


def _begin_read_committed() -> None:
    """Run the next transaction at READ COMMITTED where the backend supports it."""
    if db.engine.dialect.name not in ("postgresql", "mysql"):
        return
    db.session.commit()
    db.session.connection(execution_options={"isolation_level": "READ COMMITTED"})


def bulk_bind(data: dict) -> dict:
    """Bind many schools to one template.

    ``mode='add'`` upserts one binding per school; ``mode='replace'``
    additionally removes this template's bindings for the same sub-account
    whose school is not in the list. Schools are processed in ascending id
    order so concurrent calls lock rows in the same order.
    """
    template_id = to_int(data.get("template_id"))
    if not template_id:
        raise BadRequestError("template_id is required")
    raw_schools = data.get("school_ids")
    if not isinstance(raw_schools, list) or not raw_schools:
        raise BadRequestError("school_ids must be a non-empty array")
    schools = sorted({s for s in (to_int(v) for v in raw_schools) if s is not None})
    if not schools:
        raise BadRequestError("school_ids must contain integers")
    mode = data.get("mode") or "add"
    if mode not in ("add", "replace"):
        raise BadRequestError(f"invalid mode: {mode}")
    sub_account_id = _account_id(data)
    priority = to_int(data.get("priority"))
    priority = 100 if priority is None else priority

    get_template(template_id)

    for attempt in range(1, BULK_BIND_MAX_ATTEMPTS + 1):
        try:
            _begin_read_committed()
            removed = 0
            if mode == "replace":
                removed = (
                    WorkflowBinding.query
                    .filter(WorkflowBinding.template_id == template_id)
                    .filter(WorkflowBinding.sub_account_id.is_(None) if sub_account_id is None
                            else WorkflowBinding.sub_account_id == sub_account_id)
                    .filter(WorkflowBinding.school_id.isnot(None))
                    .filter(WorkflowBinding.school_id.notin_(schools))
                    .delete(synchronize_session=False)
                )

            for school_id in schools:
                row = (
                    WorkflowBinding.query
                    .filter_by(template_id=template_id, school_id=school_id,
                               sub_account_id=sub_account_id)
                    .with_for_update()
                    .first()
                )
                if row is None:
                    db.session.add(WorkflowBinding(
                        template_id=template_id,
                        school_id=school_id,
                        sub_account_id=sub_account_id,
                        priority=priority,
                    ))
                else:
                    row.priority = priority
            db.session.commit()
            logger.info("Bulk bind template=%s schools=%d mode=%s attempt=%d",
                        template_id, len(schools), mode, attempt)
            return {
                "message": "bulk bindings saved",
                "template_id": template_id,
                "account_id": sub_account_id,
                "priority": priority,
                "mode": mode,
                "upserted": len(schools),
                "removed": removed,
            }
        except OperationalError as exc:
            db.session.rollback()
            if attempt >= BULK_BIND_MAX_ATTEMPTS:
                logger.error("Bulk bind failed after %d attempts: %s", attempt, exc)
                raise ConflictError("WorkflowBinding", "lock", "bulk bind could not acquire locks") from exc
            backoff = BULK_BIND_BACKOFF_BASE * 2 ** (attempt - 1)
            logger.warning("Bulk bind lock conflict (attempt %d), retrying in %.2fs", attempt, backoff)
            time.sleep(backoff)
    return {}
