"""
Workflow Admin Blueprint — templates, bindings, migration, dispatch and jobs.

Routes:
  GET    /workflow/templates                    – list templates
  POST   /workflow/templates                    – create template
  GET    /workflow/templates/<tid>              – template with stages
  PUT    /workflow/templates/<tid>              – rename / toggle
  DELETE /workflow/templates/<tid>              – delete template
  PUT    /workflow/templates/<tid>/stages       – replace the ordered stage list
  GET    /workflow/bindings                     – list bindings
  POST   /workflow/bindings                     – create binding
  DELETE /workflow/bindings/<bid>               – delete binding
  POST   /workflow/bindings/bulk                – bind many schools (add | replace)
  GET    /workflow/resolve                      – resolved chain (?school_id&sub_account_id&type_id)
  POST   /workflow/migrate/budget/<bid>         – move a budget onto another template
  POST   /workflow/dispatch                     – stage-ready notification pass
  GET    /admin/jobs                            – scheduled jobs
  POST   /admin/jobs/<name>/run                 – run a job now
  PUT    /admin/jobs/<name>                     – enable / disable (or pause) a job
"""

from flask import Blueprint, jsonify, request

from budgetflow.blueprints import register_error_handlers
from budgetflow.core.exceptions import BadRequestError, ForbiddenError, NotFoundError
from budgetflow.middleware.auth_context import current_user
from budgetflow.models.scheduling import JOB_STATUSES
from budgetflow.services import migration_service, template_service
from budgetflow.services.scheduler_service import SchedulerService
from budgetflow.services.stage_dispatcher import dispatch_stage_ready
from budgetflow.services.workflow_resolver import resolve_chain
from budgetflow.utils.helpers import normalize_bool, to_int

workflow_admin_bp = Blueprint("workflow_admin_bp", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_admin_bp)

ADMIN_ROLES = {"admin", "hq_admin"}


def _require_admin():
    user = current_user()
    if user.role not in ADMIN_ROLES:
        raise ForbiddenError("Admin role required")
    return user


# ═════════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ═════════════════════════════════════════════════════════════════════════════

@workflow_admin_bp.route("/workflow/templates", methods=["GET"])
def list_templates():
    _require_admin()
    return jsonify(template_service.list_templates())


@workflow_admin_bp.route("/workflow/templates", methods=["POST"])
def create_template():
    """Body: { name, is_active?, stages?: [...] }"""
    _require_admin()
    data = request.get_json(silent=True) or {}
    tpl = template_service.create_template(data)
    return jsonify(tpl.to_dict(include_stages=True)), 201


@workflow_admin_bp.route("/workflow/templates/<int:tid>", methods=["GET"])
def get_template(tid):
    _require_admin()
    return jsonify(template_service.get_template(tid).to_dict(include_stages=True))


@workflow_admin_bp.route("/workflow/templates/<int:tid>", methods=["PUT"])
def update_template(tid):
    _require_admin()
    data = request.get_json(silent=True) or {}
    tpl = template_service.update_template(tid, data)
    return jsonify(tpl.to_dict(include_stages=True))


@workflow_admin_bp.route("/workflow/templates/<int:tid>", methods=["DELETE"])
def delete_template(tid):
    _require_admin()
    template_service.delete_template(tid)
    return jsonify({"message": "Template deleted"}), 200


@workflow_admin_bp.route("/workflow/templates/<int:tid>/stages", methods=["PUT"])
def replace_stages(tid):
    """Body: { stages: [{stage, sort_order, owner_department_id, owner_type?, assigned_user_id?, allow_revise?, skip_type_ids?}] }"""
    _require_admin()
    data = request.get_json(silent=True) or {}
    stages = data.get("stages") if isinstance(data, dict) else None
    return jsonify(template_service.replace_stages(tid, stages))


# ═════════════════════════════════════════════════════════════════════════════
# BINDINGS
# ═════════════════════════════════════════════════════════════════════════════

@workflow_admin_bp.route("/workflow/bindings", methods=["GET"])
def list_bindings():
    _require_admin()
    return jsonify(template_service.list_bindings())


@workflow_admin_bp.route("/workflow/bindings", methods=["POST"])
def create_binding():
    """Body: { template_id, school_id?, sub_account_id?, priority? }"""
    _require_admin()
    data = request.get_json(silent=True) or {}
    binding = template_service.create_binding(data)
    return jsonify(binding.to_dict()), 201


@workflow_admin_bp.route("/workflow/bindings/<int:bid>", methods=["DELETE"])
def delete_binding(bid):
    _require_admin()
    template_service.delete_binding(bid)
    return jsonify({"message": "Binding deleted"}), 200


@workflow_admin_bp.route("/workflow/bindings/bulk", methods=["POST"])
def bulk_bind():
    """Body: { template_id, school_ids: [...], sub_account_id?, priority?, mode: add|replace }"""
    _require_admin()
    data = request.get_json(silent=True) or {}
    return jsonify(template_service.bulk_bind(data))


@workflow_admin_bp.route("/workflow/resolve", methods=["GET"])
def resolve():
    current_user()
    school_id = to_int(request.args.get("school_id"))
    sub_account_id = to_int(request.args.get("sub_account_id", request.args.get("account_id")))
    if not school_id:
        raise BadRequestError("school_id is required")
    template_id, chain = resolve_chain(
        school_id, sub_account_id, to_int(request.args.get("type_id"))
    )
    return jsonify({
        "school_id": school_id,
        "sub_account_id": sub_account_id,
        "template_id": template_id,
        "stages": [c.to_dict() for c in chain],
    })


# ═════════════════════════════════════════════════════════════════════════════
# MIGRATION / DISPATCH
# ═════════════════════════════════════════════════════════════════════════════

@workflow_admin_bp.route("/workflow/migrate/budget/<int:bid>", methods=["POST"])
def migrate_budget(bid):
    """Body: { to_template_id?, dry_run? }"""
    user = _require_admin()
    data = request.get_json(silent=True) or {}
    result = migration_service.migrate_budget(
        bid,
        to_int(data.get("to_template_id")),
        dry_run=bool(normalize_bool(data.get("dry_run", request.args.get("dry_run")))),
        actor=user,
    )
    return jsonify(result)


@workflow_admin_bp.route("/workflow/dispatch", methods=["POST"])
def dispatch():
    """Body: { budgetIds?, itemIds?, source_stage? } or a bare array of item ids."""
    _require_admin()
    payload = request.get_json(silent=True)
    if payload is None:
        payload = {}
    return jsonify(dispatch_stage_ready(payload))


# ═════════════════════════════════════════════════════════════════════════════
# SCHEDULED JOBS
# ═════════════════════════════════════════════════════════════════════════════

@workflow_admin_bp.route("/admin/jobs", methods=["GET"])
def list_jobs():
    _require_admin()
    return jsonify(SchedulerService.list_jobs())


@workflow_admin_bp.route("/admin/jobs/<string:name>/run", methods=["POST"])
def run_job(name):
    _require_admin()
    return jsonify(SchedulerService.run_job(name))


@workflow_admin_bp.route("/admin/jobs/<string:name>", methods=["PUT"])
def toggle_job(name):
    """Body: { enabled: bool } or { status: "active" | "paused" }"""
    _require_admin()
    data = request.get_json(silent=True) or {}
    if "status" in data:
        status = data["status"]
        if not isinstance(status, str) or status not in JOB_STATUSES:
            raise BadRequestError(f"status must be one of {sorted(JOB_STATUSES)}")
        enabled = status == "active"
    else:
        enabled = normalize_bool(data.get("enabled"))
    if enabled is None:
        raise BadRequestError("enabled must be true or false")
    job = SchedulerService.toggle_job(name, enabled)
    if job is None:
        raise NotFoundError("ScheduledJob", name)
    return jsonify(job)
