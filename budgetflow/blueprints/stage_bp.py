"""
Stage Blueprint — department decisions along the item route.

Routes:
  POST   /stages/logistics                     – storage availability
  POST   /stages/needed                        – needed / not needed
  POST   /stages/cost                          – purchase cost
  POST   /budgets/<bid>/principal/confirm      – request control confirm (with edits)
  POST   /budgets/<bid>/principal/revise       – request control revise (reason required)
  POST   /stages/coordinator                   – final approve / adjust / reject
  GET    /stages/counts                        – budgets waiting at each stage for me

Every batch endpoint answers ``{updated, skipped, ...}``. Rows that are not
at the caller's stage are skipped, not rejected.
"""

from flask import Blueprint, jsonify, request

from budgetflow.blueprints import register_error_handlers
from budgetflow.middleware.auth_context import current_user
from budgetflow.services import (
    budget_service,
    coordinator_service,
    decision_engine,
    principal_service,
)

stage_bp = Blueprint("stage_bp", __name__, url_prefix="/api/v1")
register_error_handlers(stage_bp)


def _items(data):
    return data.get("items", data.get("rows"))


def _batch_response(result):
    result = dict(result)
    result["budgets"] = sorted(result.get("budgets") or [])
    return jsonify(result)


# ═════════════════════════════════════════════════════════════════════════════
# DEPARTMENT STAGES
# ═════════════════════════════════════════════════════════════════════════════

@stage_bp.route("/stages/logistics", methods=["POST"])
def logistics():
    """Body: { items: [{id, provided_qty?, status?}] }"""
    user = current_user()
    data = request.get_json(silent=True) or {}
    return _batch_response(decision_engine.apply_logistics(user, _items(data)))


@stage_bp.route("/stages/needed", methods=["POST"])
def needed():
    """Body: { items: [{id, needed: true|false, note?}] }"""
    user = current_user()
    data = request.get_json(silent=True) or {}
    return _batch_response(decision_engine.apply_needed(user, _items(data)))


@stage_bp.route("/stages/cost", methods=["POST"])
def cost():
    """Body: { items: [{id, purchase_cost, note?}] }"""
    user = current_user()
    data = request.get_json(silent=True) or {}
    return _batch_response(decision_engine.apply_cost(user, _items(data)))


# ═════════════════════════════════════════════════════════════════════════════
# REQUEST CONTROL (principal / moderator)
# ═════════════════════════════════════════════════════════════════════════════

@stage_bp.route("/budgets/<int:bid>/principal/confirm", methods=["POST"])
def principal_confirm(bid):
    """Body: { rows: [{account_id, notes, subitems: [{id?, name, quantity, cost, ...}]}] }"""
    user = current_user()
    data = request.get_json(silent=True) or {}
    return _batch_response(principal_service.principal_confirm(user, bid, data.get("rows")))


@stage_bp.route("/budgets/<int:bid>/principal/revise", methods=["POST"])
def principal_revise(bid):
    user = current_user()
    data = request.get_json(silent=True) or {}
    result = principal_service.principal_revise(user, bid, data.get("rows"), data.get("reason"))
    return _batch_response(result)


# ═════════════════════════════════════════════════════════════════════════════
# COORDINATOR
# ═════════════════════════════════════════════════════════════════════════════

@stage_bp.route("/stages/coordinator", methods=["POST"])
def coordinator():
    """Body: { items: [{id, decision, unit_price?, final_quantity?}] }"""
    user = current_user()
    data = request.get_json(silent=True) or {}
    result = coordinator_service.coordinator_decide(user, _items(data))
    return jsonify(result)


@stage_bp.route("/stages/counts", methods=["GET"])
def stage_counts():
    user = current_user()
    return jsonify(budget_service.stage_counts(user))
