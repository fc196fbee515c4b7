"""
Recipient resolution for workflow mail.

Principals are resolved strictly within the budget's school; a budget
without a school has no principals.
"""

from __future__ import annotations

from flask import current_app

from budgetflow.models import db
from budgetflow.models.directory import User


def _active(q):
    return q.filter(User.is_active.is_(True), User.email.isnot(None), User.email != "")


def unique_by_email(users) -> list[User]:
    seen, out = set(), []
    for u in users:
        if u is None or not u.email:
            continue
        key = u.email.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(u)
    return out


def principals_of_school(school_id) -> list[User]:
    if not school_id:
        return []
    return _active(User.query.filter_by(role="principal", school_id=school_id)).order_by(User.id).all()


def budget_moderators(school_id) -> list[User]:
    if not school_id:
        return []
    return _active(User.query.filter_by(budget_mod=True, school_id=school_id)).order_by(User.id).all()


def accountants(school_id) -> list[User]:
    q = _active(User.query.filter_by(role="accountant"))
    q = q.filter((User.school_id == school_id) | User.school_id.is_(None))
    return q.order_by(User.id).all()


def department_users(department_id) -> list[User]:
    if not department_id:
        return []
    q = _active(User.query.filter_by(department_id=department_id)).filter(User.is_verified.is_(True))
    return q.order_by(User.id).all()


def admin_notify_users() -> list[User]:
    roles = current_app.config.get("ADMIN_NOTIFY_ROLES") or []
    if not roles:
        return []
    q = _active(User.query.filter(User.role.in_(roles))).filter(User.is_verified.is_(True))
    return q.order_by(User.id).all()


def step_recipients(owner_type: str, owner_of_step, assigned_user_id=None) -> list[User]:
    """Assigned user for user-owned steps, else the owning department."""
    if owner_type == "user":
        user = db.session.get(User, assigned_user_id or owner_of_step)
        return unique_by_email([user]) if user is not None and user.is_active else []
    return department_users(owner_of_step)
