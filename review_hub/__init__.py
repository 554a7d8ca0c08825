"""
ACC Review Hub
Flask Application Factory.

Usage:
    from review_hub import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_migrate import Migrate

from review_hub.config import config
from review_hub.middleware.logging_config import configure_logging
from review_hub.models import db

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


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to the APP_ENV env var, or "development".

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    cfg = config[config_name]
    app.config.from_object(cfg() if config_name == "production" else cfg)
    os.makedirs(app.instance_path, exist_ok=True)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from review_hub.models import audit as _audit_models            # noqa: F401
    from review_hub.models import project as _project_models        # noqa: F401
    from review_hub.models import records as _record_models         # noqa: F401
    from review_hub.models import scheduling as _scheduling_models  # noqa: F401
    from review_hub.models import sync as _sync_models              # noqa: F401

    with app.app_context():
        db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from review_hub.blueprints.records_bp import records_bp
    from review_hub.blueprints.sync_bp import sync_bp

    app.register_blueprint(records_bp)
    app.register_blueprint(sync_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("sync-all")
    def sync_all_cmd():
        """Sync every active, sync-enabled project with ACC once."""
        from review_hub.services.sync_service import sync_all_projects
        summary = sync_all_projects(trigger="MANUAL")
        logger.info("sync-all finished: %d projects, %d failed",
                    summary["projects"], summary["failed"])

    @app.cli.command("run-job")
    def run_job_cmd():
        """Run the scheduled job named by the JOB_NAME env var."""
        from review_hub.services.scheduler_service import SchedulerService
        result = SchedulerService.run_job(os.getenv("JOB_NAME", "acc_sync"))
        logger.info("Job %s finished with status %s", result["job_name"], result["status"])

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "ACC Review Hub"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("review_hub.services.scheduled_jobs")
    from review_hub.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)
    SchedulerService.ensure_jobs_registered()

    return app
