"""
School Budget Workflow
Per-item chat.

One thread per (budget item, stage). Participants are derived, not stored:
the requester, the caller, every active user of a department owning a
current step of the item, and the assigned users of user-owned current
steps. The first message of each sender in a thread mails the other
participants once, guarded by ``chat_first_message_notifs``.
"""

from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from budgetflow.core.exceptions import BadRequestError
from budgetflow.models import db
from budgetflow.models.budget import BudgetItem
from budgetflow.models.chat import (
    ChatFirstMessageNotif,
    ChatMessage,
    ChatReadReceipt,
    ChatThread,
)
from budgetflow.models.directory import User
from budgetflow.models.workflow import Step
from budgetflow.services.chat_broadcaster import broadcaster
from budgetflow.services.notification_service import notify_chat_first_message, run_after_commit
from budgetflow.utils.helpers import clean_text, get_or_raise, utcnow

logger = logging.getLogger(__name__)

DEFAULT_PAGE = 50
MAX_PAGE = 200


def participant_ids(thread: ChatThread, caller_id: int | None = None) -> list[int]:
    ids: list[int] = []

    def _add(uid):
        if uid and uid not in ids:
            ids.append(uid)

    item = db.session.get(BudgetItem, thread.item_id)
    if item is not None and item.budget is not None:
        _add(item.budget.user_id)
    _add(caller_id)

    steps = Step.query.filter_by(budget_item_id=thread.item_id, is_current=True).all()
    dept_ids = {s.owner_of_step for s in steps if s.owner_type != "user" and s.owner_of_step}
    for s in steps:
        if s.owner_type == "user":
            _add(s.assigned_user_id or s.owner_of_step)
        elif s.assigned_user_id:
            _add(s.assigned_user_id)
    if dept_ids:
        users = (
            User.query
            .filter(User.department_id.in_(dept_ids), User.is_active.is_(True))
            .order_by(User.id)
            .all()
        )
        for u in users:
            _add(u.id)
    return ids


def _latest(thread_id: int, limit: int, before_id: int | None = None) -> list[ChatMessage]:
    q = ChatMessage.query.filter(ChatMessage.thread_id == thread_id, ChatMessage.deleted_at.is_(None))
    if before_id:
        q = q.filter(ChatMessage.id < before_id)
    rows = q.order_by(ChatMessage.id.desc()).limit(limit).all()
    return list(reversed(rows))


def ensure_thread(user, item_id: int, stage: str, limit: int = DEFAULT_PAGE) -> dict:
    """Get or create the (item, stage) thread."""
    stage = clean_text(stage)
    if not stage:
        raise BadRequestError("stage is required")
    item = get_or_raise(BudgetItem, item_id, "BudgetItem")

    thread = ChatThread.query.filter_by(item_id=item.id, stage=stage).first()
    if thread is None:
        thread = ChatThread(
            item_id=item.id,
            budget_id=item.budget_id,
            sub_account_id=item.sub_account_id,
            stage=stage,
            created_by=user.id,
        )
        db.session.add(thread)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            thread = ChatThread.query.filter_by(item_id=item.id, stage=stage).first()
            if thread is None:
                raise
            logger.info("Chat thread created concurrently; reusing %s", thread.id,
                        extra={"item_id": item.id, "stage": stage})

    participants = participant_ids(thread, user.id)
    users = User.query.filter(User.id.in_(participants)).all() if participants else []
    return {
        "thread": thread.to_dict(),
        "messages": [m.to_dict() for m in _latest(thread.id, limit)],
        "participants": [{"id": u.id, "name": u.name} for u in sorted(users, key=lambda u: u.id)],
    }


def list_messages(thread_id: int, before_id: int | None = None, limit: int | None = None) -> list[dict]:
    get_or_raise(ChatThread, thread_id, "ChatThread")
    limit = max(1, min(int(limit or DEFAULT_PAGE), MAX_PAGE))
    return [m.to_dict() for m in _latest(thread_id, limit, before_id)]


def _upsert_receipt(thread_id: int, user_id: int, message_id: int) -> ChatReadReceipt:
    receipt = ChatReadReceipt.query.filter_by(thread_id=thread_id, user_id=user_id).first()
    if receipt is None:
        receipt = ChatReadReceipt(thread_id=thread_id, user_id=user_id, last_read_message_id=0)
        db.session.add(receipt)
    if message_id > (receipt.last_read_message_id or 0):
        receipt.last_read_message_id = message_id
    receipt.last_read_at = utcnow()
    return receipt


def _claim_first_message(thread_id: int, sender_id: int, message_id: int) -> bool:
    if ChatFirstMessageNotif.query.filter_by(thread_id=thread_id, sender_id=sender_id).first():
        return False
    try:
        with db.session.begin_nested():
            db.session.add(ChatFirstMessageNotif(
                thread_id=thread_id, sender_id=sender_id, message_id=message_id,
            ))
    except IntegrityError:
        return False
    return True


def post_message(user, thread_id: int, body, attachments=None, client_nonce=None) -> dict:
    thread = get_or_raise(ChatThread, thread_id, "ChatThread")
    text = (body or "").strip() if isinstance(body, str) else ""
    if not text and not attachments:
        raise BadRequestError("body is required")
    nonce = clean_text(client_nonce)

    if nonce:
        existing = ChatMessage.query.filter_by(
            thread_id=thread.id, sender_id=user.id, client_nonce=nonce,
        ).first()
        if existing is not None:
            return {"message": existing.to_dict(), "duplicate": True, "first_message": False}

    message = ChatMessage(
        thread_id=thread.id,
        sender_id=user.id,
        body=text,
        attachments=attachments or None,
        client_nonce=nonce,
    )
    db.session.add(message)
    db.session.flush()

    thread.last_message_at = message.created_at or utcnow()
    thread.last_message_by = user.id
    _upsert_receipt(thread.id, user.id, message.id)
    first = _claim_first_message(thread.id, user.id, message.id)
    db.session.commit()

    payload = message.to_dict()
    broadcaster.publish(thread.id, {"type": "message", "threadId": thread.id, "message": payload})
    if first:
        run_after_commit(notify_chat_first_message, thread.id, message.id, user.id,
                         participant_ids(thread, user.id))
    return {"message": payload, "duplicate": False, "first_message": first}


def mark_read(user, thread_id: int, last_message_id=None) -> dict:
    thread = get_or_raise(ChatThread, thread_id, "ChatThread")
    if last_message_id is None:
        last_message_id = (
            db.session.query(func.max(ChatMessage.id))
            .filter(ChatMessage.thread_id == thread.id)
            .scalar()
        ) or 0
    receipt = _upsert_receipt(thread.id, user.id, int(last_message_id))
    db.session.commit()
    return receipt.to_dict()


def _visible_threads(user, budget_id=None, item_id=None) -> list[ChatThread]:
    q = ChatThread.query
    if budget_id:
        q = q.filter(ChatThread.budget_id == budget_id)
    if item_id:
        q = q.filter(ChatThread.item_id == item_id)
    touched = {
        r[0] for r in db.session.query(ChatReadReceipt.thread_id)
        .filter(ChatReadReceipt.user_id == user.id)
    }
    out = []
    for thread in q.order_by(ChatThread.id).all():
        if thread.id in touched or thread.created_by == user.id or user.id in participant_ids(thread):
            out.append(thread)
    return out


def unreads(user, budget_id=None, item_id=None) -> dict:
    threads = _visible_threads(user, budget_id, item_id)
    rows = []
    total = 0
    for thread in threads:
        receipt = ChatReadReceipt.query.filter_by(thread_id=thread.id, user_id=user.id).first()
        last_read = receipt.last_read_message_id if receipt else 0
        unread = (
            ChatMessage.query
            .filter(ChatMessage.thread_id == thread.id,
                    ChatMessage.id > last_read,
                    ChatMessage.deleted_at.is_(None),
                    (ChatMessage.sender_id != user.id) | ChatMessage.sender_id.is_(None))
            .count()
        )
        last_id = (
            db.session.query(func.max(ChatMessage.id))
            .filter(ChatMessage.thread_id == thread.id)
            .scalar()
        )
        total += unread
        rows.append({
            "thread_id": thread.id,
            "item_id": thread.item_id,
            "budget_id": thread.budget_id,
            "stage": thread.stage,
            "unread_count": unread,
            "last_message_id": last_id,
            "last_message_at": thread.last_message_at.isoformat() if thread.last_message_at else None,
            "last_read_message_id": last_read,
        })
    return {"threads": rows, "total_unread": total}
