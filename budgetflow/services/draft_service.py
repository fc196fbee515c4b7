"""
School Budget Workflow
Budget drafts: the requester's unsubmitted editor state.

    save_current_draft   upsert the caller's single active draft
    create_draft         close the active draft (if any) and start a new one
    update_draft         overwrite an open draft by id
    close_draft          close without submitting
    close_for_submission close the draft a submission was built from
    list_drafts          caller's drafts, or every draft for admins

Draft content is opaque to the workflow; only ``rows[].subitems[]`` is read
to compute the list summary.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from budgetflow.core.exceptions import (
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from budgetflow.models import db
from budgetflow.models.budget import REQUEST_TYPES, BudgetDraft
from budgetflow.utils.helpers import is_valid_period, to_int, utcnow

logger = logging.getLogger(__name__)

DRAFT_FILTERS = {"active", "closed", "all"}
LIST_LIMIT = 200
LIST_LIMIT_MAX = 1000
ADMIN_ROLES = {"admin", "hq_admin"}


def _payload(data: dict) -> dict:
    payload = data.get("data")
    if not isinstance(payload, dict):
        raise BadRequestError('Body must include a "data" object')
    return payload


def _meta(data: dict, payload: dict) -> dict:
    """Draft metadata from the body, falling back to the editor payload."""
    school_id = data.get("school_id", payload.get("school_id"))
    period = data.get("period", payload.get("period"))
    request_type = data.get("request_type", payload.get("request_type", payload.get("requestType")))

    period = (period or "").strip() or None
    if period is not None and not is_valid_period(period):
        raise BadRequestError("period must be MM-YYYY", details={"period": period})
    request_type = (request_type or "").strip().lower() or None
    if request_type is not None and request_type not in REQUEST_TYPES:
        raise BadRequestError(f"request_type must be one of {sorted(REQUEST_TYPES)}")
    return {"school_id": to_int(school_id), "period": period, "request_type": request_type}


def _lock(draft_id: int) -> BudgetDraft:
    draft = db.session.execute(
        select(BudgetDraft).where(BudgetDraft.id == draft_id).with_for_update()
    ).scalar_one_or_none()
    if draft is None:
        raise NotFoundError("BudgetDraft", draft_id)
    return draft


def _owned(user, draft_id: int) -> BudgetDraft:
    draft = _lock(draft_id)
    if draft.user_id != user.id:
        raise ForbiddenError("Draft belongs to another user")
    return draft


def _active_for(user_id: int) -> BudgetDraft | None:
    return db.session.execute(
        select(BudgetDraft)
        .where(BudgetDraft.user_id == user_id, BudgetDraft.active.is_(True))
        .with_for_update()
    ).scalar_one_or_none()


def _close(draft: BudgetDraft, user, budget_id=None) -> None:
    draft.active = False
    draft.closed_at = utcnow()
    draft.closed_by = user.id
    if budget_id is not None:
        draft.budget_id_submitted = budget_id


# ═════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════


def current_draft(user) -> BudgetDraft:
    draft = BudgetDraft.query.filter_by(user_id=user.id, active=True).first()
    if draft is None:
        raise NotFoundError("BudgetDraft")
    return draft


def get_draft(user, draft_id: int) -> BudgetDraft:
    draft = db.session.get(BudgetDraft, draft_id)
    if draft is None:
        raise NotFoundError("BudgetDraft", draft_id)
    if draft.user_id != user.id and user.role not in ADMIN_ROLES:
        raise ForbiddenError("Draft belongs to another user")
    return draft


def list_drafts(status="active", user_id=None, school_id=None, period=None,
                limit=None) -> list[BudgetDraft]:
    """Drafts newest-first. ``status`` is active, closed or all."""
    status = (status or "active").strip().lower()
    if status not in DRAFT_FILTERS:
        raise BadRequestError(f"status must be one of {sorted(DRAFT_FILTERS)}")
    limit = to_int(limit) or LIST_LIMIT
    limit = max(1, min(limit, LIST_LIMIT_MAX))

    q = BudgetDraft.query
    if status == "active":
        q = q.filter(BudgetDraft.active.is_(True))
    elif status == "closed":
        q = q.filter(BudgetDraft.active.is_(False))
    if user_id:
        q = q.filter(BudgetDraft.user_id == user_id)
    if school_id:
        q = q.filter(BudgetDraft.school_id == school_id)
    if period:
        q = q.filter(BudgetDraft.period == period)
    return q.order_by(BudgetDraft.updated_at.desc(), BudgetDraft.id.desc()).limit(limit).all()


# ═════════════════════════════════════════════════════════════════════════
# Writes
# ═════════════════════════════════════════════════════════════════════════


def save_current_draft(user, data: dict) -> tuple[BudgetDraft, bool]:
    """Upsert the caller's active draft; returns ``(draft, created)``."""
    payload = _payload(data)
    meta = _meta(data, payload)
    draft = _active_for(user.id)
    created = draft is None
    if created:
        draft = BudgetDraft(user_id=user.id, active=True)
        db.session.add(draft)
    draft.data = payload
    for field, value in meta.items():
        setattr(draft, field, value)
    db.session.commit()
    logger.info("Draft %s", "created" if created else "saved",
                extra={"draft_id": draft.id, "user_id": user.id})
    return draft, created


def create_draft(user, data: dict) -> BudgetDraft:
    payload = _payload(data)
    meta = _meta(data, payload)
    previous = _active_for(user.id)
    if previous is not None:
        _close(previous, user)
        db.session.flush()
    draft = BudgetDraft(user_id=user.id, active=True, data=payload, **meta)
    db.session.add(draft)
    db.session.commit()
    logger.info("Draft created", extra={"draft_id": draft.id, "user_id": user.id,
                                        "replaced_draft_id": previous.id if previous else None})
    return draft


def update_draft(user, draft_id: int, data: dict) -> BudgetDraft:
    payload = _payload(data)
    meta = _meta(data, payload)
    draft = _owned(user, draft_id)
    if not draft.active:
        raise BadRequestError("Draft is closed", details={"draft_id": draft.id})
    draft.data = payload
    for field, value in meta.items():
        setattr(draft, field, value)
    db.session.commit()
    return draft


def close_draft(user, draft_id: int) -> BudgetDraft:
    draft = _owned(user, draft_id)
    if not draft.active:
        raise BadRequestError("Draft is already closed", details={"draft_id": draft.id})
    _close(draft, user)
    db.session.commit()
    logger.info("Draft closed", extra={"draft_id": draft.id, "user_id": user.id})
    return draft


def close_for_submission(user, draft_id: int, budget_id: int) -> BudgetDraft:
    """Close ``draft_id`` inside the submitting transaction. Does not commit."""
    draft = _owned(user, draft_id)
    if not draft.active:
        raise ValidationError("Draft was already closed", details={"draft_id": draft.id})
    _close(draft, user, budget_id=budget_id)
    return draft
