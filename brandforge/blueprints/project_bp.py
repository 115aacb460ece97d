"""
Project blueprint.

Endpoints:
    POST /api/v1/projects                                  create project + stages
    GET  /api/v1/projects/<id>                             project with stages
    POST /api/v1/projects/<id>/business-plan/generate      queue business plan (202)
"""

import logging

from flask import Blueprint, jsonify

from brandforge.blueprints import json_body, register_error_handlers, request_org_id, request_user_id
from brandforge.services import stage_service

logger = logging.getLogger(__name__)

project_bp = Blueprint("project", __name__, url_prefix="/api/v1")
register_error_handlers(project_bp)


@project_bp.route("/projects", methods=["POST"])
def create_project():
    """Create a project; ``modules`` defaults to ["brand"]."""
    org_id = request_org_id()
    data = json_body()
    project = stage_service.create_project(
        org_id,
        data.get("name"),
        data.get("modules"),
        description=data.get("description"),
        language=data.get("language", "en"),
        created_by=request_user_id(),
    )
    return jsonify(project.to_dict(include_stages=True)), 201


@project_bp.route("/projects/<int:project_id>", methods=["GET"])
def get_project(project_id):
    project = stage_service.get_project(request_org_id(), project_id)
    return jsonify(project.to_dict(include_stages=True))


@project_bp.route("/projects/<int:project_id>/business-plan/generate", methods=["POST"])
def generate_business_plan(project_id):
    data = json_body()
    result = stage_service.generate_business_plan(
        request_org_id(),
        project_id,
        user_id=request_user_id(),
        preset=data.get("preset"),
        provider=data.get("provider"),
        model=data.get("model"),
    )
    status = 202 if result["status"] == "QUEUED" else 200
    return jsonify(result), status
