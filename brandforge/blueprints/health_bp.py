"""
Health check blueprint.

Endpoints:
    GET /api/v1/health        : simple 200 for load balancers
    GET /api/v1/health/live   : database, redis, provider and queue status
"""

import logging
import time

import redis as redis_lib
from flask import Blueprint, current_app, jsonify

from brandforge.models import db
from brandforge.models.job import Job

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("", methods=["GET"])
def ready():
    """Simple readiness check, always 200 if the app is running."""
    return jsonify({"status": "ok", "app": "BrandForge Stage Engine"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    # ── Queue depth ──────────────────────────────────────────────────
    if overall:
        checks["queue"] = {
            "queued": Job.query.filter_by(status="QUEUED").count(),
            "processing": Job.query.filter_by(status="PROCESSING").count(),
        }

    # ── Redis (rate-limit storage) ───────────────────────────────────
    redis_url = current_app.config.get("REDIS_URL", "")
    if redis_url and redis_url.startswith("redis") and not current_app.testing:
        try:
            t0 = time.perf_counter()
            r = redis_lib.from_url(redis_url, socket_timeout=2)
            r.ping()
            redis_ms = (time.perf_counter() - t0) * 1000
            checks["redis"] = {"status": "ok", "latency_ms": round(redis_ms, 1)}
        except redis_lib.RedisError as exc:
            # Redis is optional, don't fail overall health
            checks["redis"] = {"status": "error", "detail": str(exc)}
    else:
        checks["redis"] = {"status": "skipped", "detail": "no REDIS_URL configured"}

    # ── AI providers ─────────────────────────────────────────────────
    checks["providers"] = current_app.extensions["ai_providers"].status()
    checks["app"] = {
        "name": "BrandForge Stage Engine",
        "debug": current_app.debug,
        "testing": current_app.testing,
        "executionMode": current_app.config.get("JOB_EXECUTION_MODE"),
    }

    status_code = 200 if overall else 503
    return jsonify({"status": "ok" if overall else "degraded", "checks": checks}), status_code
