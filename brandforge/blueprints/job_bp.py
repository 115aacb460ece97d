"""
Job blueprint: status polling and administrative overrides.

Endpoints:
    GET  /api/v1/jobs?status=&project_id=&limit=
    GET  /api/v1/jobs/<id>
    POST /api/v1/jobs/<id>/fail      mark a stuck job FAILED
    POST /api/v1/jobs/<id>/retry     requeue a FAILED job
"""

import logging

from flask import Blueprint, jsonify, request

from brandforge.blueprints import json_body, register_error_handlers, request_org_id
from brandforge.services import job_queue

logger = logging.getLogger(__name__)

job_bp = Blueprint("job", __name__, url_prefix="/api/v1/jobs")
register_error_handlers(job_bp)


@job_bp.route("", methods=["GET"])
def list_jobs():
    limit = min(request.args.get("limit", 50, type=int) or 50, 200)
    jobs = job_queue.list_jobs(
        request_org_id(),
        status=request.args.get("status"),
        project_id=request.args.get("project_id", type=int),
        limit=limit,
    )
    return jsonify({"items": jobs, "total": len(jobs)})


@job_bp.route("/<int:job_id>", methods=["GET"])
def get_job_status(job_id):
    return jsonify(job_queue.get_job_status(request_org_id(), job_id))


@job_bp.route("/<int:job_id>/fail", methods=["POST"])
def fail_job(job_id):
    job = job_queue.fail_job(request_org_id(), job_id, json_body().get("reason"))
    return jsonify(job_queue.job_status_payload(job))


@job_bp.route("/<int:job_id>/retry", methods=["POST"])
def retry_job(job_id):
    job = job_queue.retry_job(request_org_id(), job_id)
    return jsonify(job_queue.job_status_payload(job))
