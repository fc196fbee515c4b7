"""
Draft Blueprint — requester drafts and the admin draft browser.

Routes:
  GET    /budget-drafts                         – caller's drafts (?status=active|closed|all)
  POST   /budget-drafts                         – save the active draft (201 when created)
  POST   /budget-drafts/new                     – start a fresh draft
  GET    /budget-drafts/current                 – caller's active draft
  GET    /budget-drafts/<did>                   – one draft with its data
  PUT    /budget-drafts/<did>                   – overwrite an open draft
  PUT    /budget-drafts/<did>/close             – close without submitting
  GET    /admin/budget-drafts                   – all drafts (?status&school_id&user_id&period&limit)
  GET    /admin/budget-drafts/<did>             – any draft with its data
"""

from flask import Blueprint, jsonify, request

from budgetflow.blueprints import register_error_handlers
from budgetflow.core.exceptions import ForbiddenError
from budgetflow.middleware.auth_context import current_user
from budgetflow.services import draft_service
from budgetflow.utils.helpers import to_int

draft_bp = Blueprint("draft_bp", __name__, url_prefix="/api/v1")
register_error_handlers(draft_bp)


def _require_admin():
    user = current_user()
    if user.role not in draft_service.ADMIN_ROLES:
        raise ForbiddenError("Admin role required")
    return user


# ═════════════════════════════════════════════════════════════════════════════
# REQUESTER
# ═════════════════════════════════════════════════════════════════════════════

@draft_bp.route("/budget-drafts", methods=["GET"])
def list_drafts():
    user = current_user()
    drafts = draft_service.list_drafts(status=request.args.get("status"), user_id=user.id)
    return jsonify([d.to_dict(include_data=False) for d in drafts])


@draft_bp.route("/budget-drafts", methods=["POST"])
def save_draft():
    """Body: { data: {rows: [...]}, school_id?, period?, request_type? }"""
    user = current_user()
    data = request.get_json(silent=True) or {}
    draft, created = draft_service.save_current_draft(user, data)
    return jsonify(draft.to_dict()), 201 if created else 200


@draft_bp.route("/budget-drafts/new", methods=["POST"])
def new_draft():
    user = current_user()
    data = request.get_json(silent=True) or {}
    draft = draft_service.create_draft(user, data)
    return jsonify(draft.to_dict()), 201


@draft_bp.route("/budget-drafts/current", methods=["GET"])
def current_draft():
    user = current_user()
    return jsonify(draft_service.current_draft(user).to_dict())


@draft_bp.route("/budget-drafts/<int:did>", methods=["GET"])
def get_draft(did):
    user = current_user()
    return jsonify(draft_service.get_draft(user, did).to_dict())


@draft_bp.route("/budget-drafts/<int:did>", methods=["PUT"])
def update_draft(did):
    user = current_user()
    data = request.get_json(silent=True) or {}
    return jsonify(draft_service.update_draft(user, did, data).to_dict())


@draft_bp.route("/budget-drafts/<int:did>/close", methods=["PUT"])
def close_draft(did):
    user = current_user()
    return jsonify(draft_service.close_draft(user, did).to_dict(include_data=False))


# ═════════════════════════════════════════════════════════════════════════════
# ADMIN
# ═════════════════════════════════════════════════════════════════════════════

@draft_bp.route("/admin/budget-drafts", methods=["GET"])
def admin_list_drafts():
    _require_admin()
    drafts = draft_service.list_drafts(
        status=request.args.get("status"),
        user_id=to_int(request.args.get("user_id")),
        school_id=to_int(request.args.get("school_id")),
        period=request.args.get("period"),
        limit=request.args.get("limit"),
    )
    return jsonify([d.to_dict(include_data=False) for d in drafts])


@draft_bp.route("/admin/budget-drafts/<int:did>", methods=["GET"])
def admin_get_draft(did):
    user = _require_admin()
    return jsonify(draft_service.get_draft(user, did).to_dict())
