"""
BrandForge Stage Engine
Flask Application Factory.

Usage:
    from brandforge import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from brandforge.ai.prompt_registry import PromptRegistry
from brandforge.ai.providers import ProviderRegistry
from brandforge.config import config
from brandforge.middleware.logging_config import configure_logging
from brandforge.models import db

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event


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
    default_limits=[],                     # no global limit, applied per route
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
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

    # ── AI collaborators (constructed once per app) ──────────────────────
    app.extensions["ai_providers"] = ProviderRegistry(app.config)
    app.extensions["prompt_registry"] = PromptRegistry(app.config.get("PROMPTS_DIR"))

    # ── Import all models so create_all / Alembic see them ───────────────
    from brandforge.models import job as _job_models                  # noqa: F401
    from brandforge.models import organization as _organization_models  # noqa: F401
    from brandforge.models import output as _output_models            # noqa: F401
    from brandforge.models import project as _project_models          # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        if config_name == "development":
            os.makedirs(app.instance_path, exist_ok=True)
        db.create_all()
        app.logger.debug("db.create_all() completed")

    # ── Job handlers (importing the orchestrator registers them) ─────────
    import importlib
    importlib.import_module("brandforge.services.stage_service")

    # ── Blueprints ───────────────────────────────────────────────────────
    from brandforge.blueprints.health_bp import health_bp
    from brandforge.blueprints.job_bp import job_bp
    from brandforge.blueprints.project_bp import project_bp
    from brandforge.blueprints.stage_bp import stage_bp
    from brandforge.blueprints.usage_bp import usage_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(project_bp)
    app.register_blueprint(stage_bp)
    app.register_blueprint(job_bp)
    app.register_blueprint(usage_bp)

    limiter.exempt(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("run-worker")
    def run_worker_cmd():
        """Poll the job queue until interrupted (WORKER_* settings)."""
        from brandforge.services.job_queue import run_worker
        run_worker(app)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        if request.path.startswith("/api/"):
            return {"error": "Not found", "path": request.path}, 404
        return e

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        if request.path.startswith("/api/"):
            return {"error": "Internal server error"}, 500
        return e

    logger.info("BrandForge app created: env=%s provider=%s mode=%s",
                config_name, app.config.get("AI_PROVIDER"), app.config.get("JOB_EXECUTION_MODE"))
    return app
