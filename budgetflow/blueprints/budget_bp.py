"""
Budget Blueprint — submission, resubmission and read views.

Routes:
  POST   /budgets                              – submit a new budget
  GET    /budgets                              – list (school_id, status, mine)
  GET    /budgets/<bid>                        – budget with items
  PUT    /budgets/<bid>                        – resubmit after revision
  GET    /budgets/<bid>/editor-payload         – rows grouped for the editor
  GET    /budgets/<bid>/changes                – diff against the submission baseline
  GET    /budgets/<bid>/route                  – per-item route (?item_id=)
  GET    /budgets/<bid>/events                 – audit events (?item_id=)
  GET    /schools/<sid>/budget-totals          – totals (?format=json|csv|xlsx)
"""

from flask import Blueprint, Response, jsonify, request, send_file

from budgetflow.blueprints import register_error_handlers
from budgetflow.middleware.auth_context import current_user
from budgetflow.models.directory import School
from budgetflow.services import audit_service, budget_service, export_service
from budgetflow.utils.helpers import get_or_raise, normalize_bool, to_int

budget_bp = Blueprint("budget_bp", __name__, url_prefix="/api/v1")
register_error_handlers(budget_bp)


# ═════════════════════════════════════════════════════════════════════════════
# SUBMIT / RESUBMIT
# ═════════════════════════════════════════════════════════════════════════════

@budget_bp.route("/budgets", methods=["POST"])
def submit_budget():
    """Submit a budget.

    Body: { school_id, period, title, request_type, items: [{account_id, name, quantity, cost, ...}] }
    """
    user = current_user()
    data = request.get_json(silent=True) or {}
    budget = budget_service.submit_budget(user, data)
    return jsonify(budget.to_dict(include_items=True)), 201


@budget_bp.route("/budgets/<int:bid>", methods=["PUT"])
def resubmit_budget(bid):
    user = current_user()
    data = request.get_json(silent=True) or {}
    budget = budget_service.resubmit_budget(user, bid, data)
    return jsonify(budget.to_dict(include_items=True))


# ═════════════════════════════════════════════════════════════════════════════
# READS
# ═════════════════════════════════════════════════════════════════════════════

@budget_bp.route("/budgets", methods=["GET"])
def list_budgets():
    user = current_user()
    user_id = user.id if normalize_bool(request.args.get("mine")) else None
    budgets = budget_service.list_budgets(
        school_id=to_int(request.args.get("school_id")),
        status=request.args.get("status"),
        user_id=user_id,
    )
    return jsonify([b.to_dict() for b in budgets])


@budget_bp.route("/budgets/<int:bid>", methods=["GET"])
def get_budget(bid):
    current_user()
    return jsonify(budget_service.get_budget(bid).to_dict(include_items=True))


@budget_bp.route("/budgets/<int:bid>/editor-payload", methods=["GET"])
def editor_payload(bid):
    current_user()
    return jsonify(budget_service.editor_payload(bid))


@budget_bp.route("/budgets/<int:bid>/changes", methods=["GET"])
def budget_changes(bid):
    current_user()
    return jsonify(budget_service.budget_changes(bid))


@budget_bp.route("/budgets/<int:bid>/route", methods=["GET"])
def route_view(bid):
    current_user()
    return jsonify(budget_service.route_view(bid, to_int(request.args.get("item_id"))))


@budget_bp.route("/budgets/<int:bid>/events", methods=["GET"])
def budget_events(bid):
    current_user()
    budget_service.get_budget(bid)
    events = audit_service.events_for_budget(bid, to_int(request.args.get("item_id")))
    return jsonify([e.to_dict() for e in events])


# ═════════════════════════════════════════════════════════════════════════════
# TOTALS / EXPORT
# ═════════════════════════════════════════════════════════════════════════════

@budget_bp.route("/schools/<int:sid>/budget-totals", methods=["GET"])
def budget_totals(sid):
    current_user()
    rows = budget_service.budget_totals(sid)
    fmt = (request.args.get("format") or "json").lower()

    if fmt == "csv":
        return Response(
            export_service.totals_csv(rows),
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename=budget_totals_{sid}.csv"},
        )
    if fmt == "xlsx":
        school = get_or_raise(School, sid, "School")
        return send_file(
            export_service.totals_xlsx(school.school_name, rows),
            mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            as_attachment=True,
            download_name=f"budget_totals_{sid}.xlsx",
        )
    return jsonify({"school_id": sid, "rows": rows,
                    "grand_total": round(sum(r["total"] for r in rows), 2)})
