"""
School Budget Workflow
Flask Application Factory.

Usage:
    from budgetflow import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import atexit
import importlib
import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from budgetflow.config import config
from budgetflow.middleware.auth_context import init_auth_context
from budgetflow.middleware.logging_config import configure_logging, init_request_logging
from budgetflow.models import db

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to APP_ENV, or "development" if unset.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    cfg = config[config_name]
    app.config.from_object(cfg() if config_name == "production" else cfg)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request log + caller resolution (JWT / X-User-Id) ─────────────────
    init_request_logging(app)
    init_auth_context(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from budgetflow.models import directory as _directory_models    # noqa: F401
    from budgetflow.models import budget as _budget_models          # noqa: F401
    from budgetflow.models import workflow as _workflow_models      # noqa: F401
    from budgetflow.models import chat as _chat_models              # noqa: F401
    from budgetflow.models import scheduling as _scheduling_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if config_name != "production":
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from budgetflow.blueprints.budget_bp import budget_bp
    from budgetflow.blueprints.stage_bp import stage_bp
    from budgetflow.blueprints.workflow_admin_bp import workflow_admin_bp
    from budgetflow.blueprints.chat_bp import chat_bp
    from budgetflow.blueprints.item_revision_bp import item_revision_bp
    from budgetflow.blueprints.draft_bp import draft_bp

    app.register_blueprint(budget_bp)
    app.register_blueprint(stage_bp)
    app.register_blueprint(workflow_admin_bp)
    app.register_blueprint(chat_bp)
    app.register_blueprint(item_revision_bp)
    app.register_blueprint(draft_bp)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    limiter.limit("120/minute")(chat_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("dispatch-stage-ready")
    @click.argument("budget_ids", nargs=-1, type=int)
    @click.option("--source-stage", default=None, help="Stage that just completed.")
    def dispatch_stage_ready_cmd(budget_ids, source_stage):
        """Send stage-ready notifications for the given budgets."""
        from budgetflow.services.stage_dispatcher import dispatch_stage_ready
        result = dispatch_stage_ready({"budgetIds": list(budget_ids), "source_stage": source_stage})
        logger.info("Dispatch finished: %s", result)

    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run one scheduled job now."""
        from budgetflow.services.scheduler_service import SchedulerService
        result = SchedulerService.run_job(job_name)
        logger.info("Job %s: %s", job_name, result.get("status"))

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "School Budget Workflow"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── SMTP connection teardown ─────────────────────────────────────────
    from budgetflow.services import email_service
    atexit.register(email_service.shutdown)

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("budgetflow.services.scheduled_jobs")
    from budgetflow.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)

    return app
