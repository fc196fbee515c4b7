"""
School Budget Workflow
Per-item chat models.

Models:
    - ChatThread: one thread per (budget item, stage)
    - ChatMessage: append-only messages
    - ChatReadReceipt: last read message per (thread, user)
    - ChatFirstMessageNotif: guard row; one first-message email per (thread, sender)
"""

from datetime import datetime, timezone

from budgetflow.models import db


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class ChatThread(db.Model):
    __tablename__ = "chat_threads"
    __table_args__ = (
        db.UniqueConstraint("item_id", "stage", name="uq_chat_thread_item_stage"),
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey("budget_items.id", ondelete="CASCADE"),
                        nullable=False)
    budget_id = db.Column(db.Integer, db.ForeignKey("budgets.id", ondelete="CASCADE"),
                          nullable=False, index=True)
    sub_account_id = db.Column(db.Integer, nullable=True)
    stage = db.Column(db.String(60), nullable=False)
    created_by = db.Column(db.Integer, nullable=True)
    last_message_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_message_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "item_id": self.item_id,
            "budget_id": self.budget_id,
            "sub_account_id": self.sub_account_id,
            "stage": self.stage,
            "created_by": self.created_by,
            "last_message_at": _iso(self.last_message_at),
            "last_message_by": self.last_message_by,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ChatThread {self.id} item={self.item_id} {self.stage}>"


class ChatMessage(db.Model):
    __tablename__ = "chat_messages"
    __table_args__ = (
        db.Index("ix_chat_message_thread", "thread_id", "id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    thread_id = db.Column(db.Integer, db.ForeignKey("chat_threads.id", ondelete="CASCADE"),
                          nullable=False)
    sender_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                          nullable=True)
    body = db.Column(db.Text, nullable=False, default="")
    attachments = db.Column(db.JSON, nullable=True, comment="Opaque references, passed through")
    client_nonce = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    edited_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    sender = db.relationship("User", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "sender_id": self.sender_id,
            "sender_name": self.sender.name if self.sender else None,
            "body": self.body,
            "attachments": self.attachments,
            "client_nonce": self.client_nonce,
            "created_at": _iso(self.created_at),
            "edited_at": _iso(self.edited_at),
        }

    def __repr__(self):
        return f"<ChatMessage {self.id} thread={self.thread_id} by={self.sender_id}>"


class ChatReadReceipt(db.Model):
    __tablename__ = "chat_read_receipts"
    __table_args__ = (
        db.UniqueConstraint("thread_id", "user_id", name="uq_chat_receipt_thread_user"),
    )

    id = db.Column(db.Integer, primary_key=True)
    thread_id = db.Column(db.Integer, db.ForeignKey("chat_threads.id", ondelete="CASCADE"),
                          nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    last_read_message_id = db.Column(db.Integer, nullable=False, default=0)
    last_read_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "thread_id": self.thread_id,
            "user_id": self.user_id,
            "last_read_message_id": self.last_read_message_id,
            "last_read_at": _iso(self.last_read_at),
        }


class ChatFirstMessageNotif(db.Model):
    __tablename__ = "chat_first_message_notifs"
    __table_args__ = (
        db.UniqueConstraint("thread_id", "sender_id", name="uq_chat_first_msg_thread_sender"),
    )

    id = db.Column(db.Integer, primary_key=True)
    thread_id = db.Column(db.Integer, db.ForeignKey("chat_threads.id", ondelete="CASCADE"),
                          nullable=False)
    sender_id = db.Column(db.Integer, nullable=False)
    message_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
