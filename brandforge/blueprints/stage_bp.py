"""
Stage blueprint: runs, outputs, approvals, manual edits and sticky config.

Endpoints:
    POST    /api/v1/projects/<id>/stages/<stage_key>/run
    GET     /api/v1/projects/<id>/stages/<stage_key>/output?version=N
    POST    /api/v1/projects/<id>/stages/<stage_key>/versions
    POST    /api/v1/projects/<id>/stages/<stage_key>/approve
    GET|PUT /api/v1/projects/<id>/stages/<stage_key>/config

``stage_key`` accepts either the stage key (``naming``) or the display
key (``A2``).
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from brandforge.blueprints import json_body, register_error_handlers, request_org_id, request_user_id
from brandforge.core.exceptions import ValidationError
from brandforge.services import stage_service

logger = logging.getLogger(__name__)

stage_bp = Blueprint("stage", __name__, url_prefix="/api/v1/projects/<int:project_id>/stages")
register_error_handlers(stage_bp)

# ── Rate limiting ─────────────────────────────────────────────────────────
from brandforge import limiter  # noqa: E402


def _run_limit() -> str:
    return current_app.config.get("RUN_STAGE_RATE_LIMIT", "30 per minute")


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _as_float(value, field: str):
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", details={field: value})


@stage_bp.route("/<stage_key>/run", methods=["POST"])
@limiter.limit(_run_limit)
def run_stage(project_id, stage_key):
    """
    Request a stage run.

    202 when the job was queued, 200 when an active job was returned
    (idempotent) or the job already ran inline.
    """
    data = json_body()
    result = stage_service.run_stage(
        request_org_id(),
        project_id,
        stage_key,
        user_id=request_user_id(),
        regenerate=_as_bool(data.get("regenerate", False)),
        seed_text=data.get("seedText"),
        preset=data.get("preset"),
        provider=data.get("provider"),
        model=data.get("model"),
        temperature=_as_float(data.get("temperature"), "temperature"),
        custom_instructions=data.get("customInstructions"),
        override_dependencies=_as_bool(data.get("overrideDependencies", False)),
    )
    status = 202 if (result["status"] == "QUEUED" and not result["idempotent"]) else 200
    return jsonify(result), status


@stage_bp.route("/<stage_key>/output", methods=["GET"])
def get_output(project_id, stage_key):
    version = request.args.get("version", type=int)
    return jsonify(stage_service.get_output(request_org_id(), project_id, stage_key, version))


@stage_bp.route("/<stage_key>/versions", methods=["POST"])
def save_manual_version(project_id, stage_key):
    data = json_body()
    version = stage_service.save_manual_version(
        request_org_id(),
        project_id,
        stage_key,
        data.get("content"),
        base_version_id=data.get("baseVersionId"),
        user_id=request_user_id(),
    )
    return jsonify(version), 201


@stage_bp.route("/<stage_key>/approve", methods=["POST"])
def approve_version(project_id, stage_key):
    data = json_body()
    result = stage_service.approve_version(
        request_org_id(),
        project_id,
        stage_key,
        version_id=data.get("versionId"),
        user_id=request_user_id(),
    )
    return jsonify(result)


@stage_bp.route("/<stage_key>/config", methods=["GET"])
def get_stage_config(project_id, stage_key):
    return jsonify(stage_service.get_stage_config(request_org_id(), project_id, stage_key))


@stage_bp.route("/<stage_key>/config", methods=["PUT"])
def put_stage_config(project_id, stage_key):
    result = stage_service.put_stage_config(request_org_id(), project_id, stage_key, json_body())
    return jsonify(result)
