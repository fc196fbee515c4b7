"""
Chat Blueprint — per-item, per-stage discussion threads.

Routes:
  POST   /chat/threads                          – get or create (item_id, stage)
  GET    /chat/threads/<tid>/messages           – page (?before_id&limit)
  POST   /chat/threads/<tid>/messages           – post (client_nonce dedupes)
  POST   /chat/threads/<tid>/read               – advance my read receipt
  GET    /chat/unreads                          – unread counts (?budget_id&item_id)
  GET    /chat/threads/<tid>/stream             – server-sent events for new messages
"""

import json
import queue

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from budgetflow.blueprints import register_error_handlers
from budgetflow.core.exceptions import BadRequestError
from budgetflow.middleware.auth_context import current_user
from budgetflow.models.chat import ChatThread
from budgetflow.services import chat_service
from budgetflow.services.chat_broadcaster import broadcaster
from budgetflow.utils.helpers import get_or_raise, to_int

chat_bp = Blueprint("chat_bp", __name__, url_prefix="/api/v1")
register_error_handlers(chat_bp)


@chat_bp.route("/chat/threads", methods=["POST"])
def ensure_thread():
    """Body: { item_id, stage, limit? }"""
    user = current_user()
    data = request.get_json(silent=True) or {}
    item_id = to_int(data.get("item_id"))
    if not item_id:
        raise BadRequestError("item_id is required")
    result = chat_service.ensure_thread(
        user, item_id, data.get("stage"),
        limit=to_int(data.get("limit")) or chat_service.DEFAULT_PAGE,
    )
    return jsonify(result)


@chat_bp.route("/chat/threads/<int:tid>/messages", methods=["GET"])
def list_messages(tid):
    current_user()
    messages = chat_service.list_messages(
        tid,
        before_id=to_int(request.args.get("before_id")),
        limit=to_int(request.args.get("limit")),
    )
    return jsonify(messages)


@chat_bp.route("/chat/threads/<int:tid>/messages", methods=["POST"])
def post_message(tid):
    """Body: { body, attachments?, client_nonce? }"""
    user = current_user()
    data = request.get_json(silent=True) or {}
    result = chat_service.post_message(
        user, tid, data.get("body"),
        attachments=data.get("attachments"),
        client_nonce=data.get("client_nonce"),
    )
    return jsonify(result), (200 if result["duplicate"] else 201)


@chat_bp.route("/chat/threads/<int:tid>/read", methods=["POST"])
def mark_read(tid):
    user = current_user()
    data = request.get_json(silent=True) or {}
    return jsonify(chat_service.mark_read(user, tid, to_int(data.get("last_message_id"))))


@chat_bp.route("/chat/unreads", methods=["GET"])
def unreads():
    user = current_user()
    return jsonify(chat_service.unreads(
        user,
        budget_id=to_int(request.args.get("budget_id")),
        item_id=to_int(request.args.get("item_id")),
    ))


@chat_bp.route("/chat/threads/<int:tid>/stream", methods=["GET"])
def stream(tid):
    """Server-sent events: one ``data:`` frame per new message, comment keepalives otherwise."""
    current_user()
    get_or_raise(ChatThread, tid, "ChatThread")
    keepalive = float(current_app.config.get("CHAT_STREAM_KEEPALIVE_SECONDS", 15))
    q = broadcaster.subscribe(tid)

    def _events():
        try:
            yield ": connected\n\n"
            while True:
                try:
                    event = q.get(timeout=keepalive)
                except queue.Empty:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event, default=str)}\n\n"
        finally:
            broadcaster.unsubscribe(tid, q)

    return Response(
        stream_with_context(_events()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
