"""
Item Revision Blueprint — send one item back, answer it, or withdraw it.

Routes:
  POST   /items/<iid>/revise                   – reviewer sends item back (reason)
  POST   /items/<iid>/revision-answer          – requester answers (comment, quantity?, cost?)
  POST   /items/<iid>/remove                   – withdraw the item from the budget
  GET    /items/revised                        – items with a pending or answered revision
"""

from flask import Blueprint, jsonify, request

from budgetflow.blueprints import register_error_handlers
from budgetflow.middleware.auth_context import current_user
from budgetflow.services import item_revision_service
from budgetflow.utils.helpers import to_int

item_revision_bp = Blueprint("item_revision_bp", __name__, url_prefix="/api/v1")
register_error_handlers(item_revision_bp)


@item_revision_bp.route("/items/<int:iid>/revise", methods=["POST"])
def revise_item(iid):
    user = current_user()
    data = request.get_json(silent=True) or {}
    item = item_revision_service.revise_item(user, iid, data.get("reason"))
    return jsonify(item.to_dict())


@item_revision_bp.route("/items/<int:iid>/revision-answer", methods=["POST"])
def answer_revision(iid):
    user = current_user()
    data = request.get_json(silent=True) or {}
    item = item_revision_service.answer_revision(user, iid, data)
    return jsonify(item.to_dict())


@item_revision_bp.route("/items/<int:iid>/remove", methods=["POST"])
def remove_item(iid):
    user = current_user()
    item = item_revision_service.remove_item(user, iid)
    return jsonify(item.to_dict())


@item_revision_bp.route("/items/revised", methods=["GET"])
def list_revised():
    user = current_user()
    school_id = to_int(request.args.get("school_id"))
    if school_id is None and user.role not in item_revision_service.REVIEWER_ROLES:
        school_id = user.school_id
    return jsonify(item_revision_service.list_revised(school_id))
