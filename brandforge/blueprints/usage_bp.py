"""
Usage & model catalog blueprint.

Endpoints:
    GET  /api/v1/usage               ledger projection for the org
    GET  /api/v1/usage/records       recent per-call usage rows
    POST /api/v1/usage/bonus         add purchased bonus tokens
    GET  /api/v1/models              model catalog with provider readiness
    GET  /api/v1/providers/status    credential check per provider
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from brandforge.ai.model_resolver import ResolverSettings, list_models
from brandforge.blueprints import json_body, register_error_handlers, request_org_id
from brandforge.core.exceptions import ValidationError
from brandforge.models import db
from brandforge.services.stage_service import ledger

logger = logging.getLogger(__name__)

usage_bp = Blueprint("usage", __name__, url_prefix="/api/v1")
register_error_handlers(usage_bp)


@usage_bp.route("/usage", methods=["GET"])
def get_usage():
    return jsonify(ledger.usage_summary(request_org_id()))


@usage_bp.route("/usage/records", methods=["GET"])
def list_usage_records():
    limit = min(request.args.get("limit", 50, type=int) or 50, 500)
    records = ledger.list_usage(request_org_id(), limit=limit)
    return jsonify({"items": records, "total": len(records)})


@usage_bp.route("/usage/bonus", methods=["POST"])
def add_bonus_tokens():
    org_id = request_org_id()
    amount = json_body().get("amount")
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise ValidationError("amount must be a positive integer", details={"amount": amount})
    bonus = ledger.add_bonus_tokens(org_id, amount)
    db.session.commit()
    return jsonify({"bonus": bonus, "usage": ledger.usage_summary(org_id)})


@usage_bp.route("/models", methods=["GET"])
def get_models():
    providers = current_app.extensions["ai_providers"]
    models = list_models(
        ResolverSettings.from_config(current_app.config),
        ready_providers=providers.ready_providers(),
    )
    return jsonify({"items": models, "total": len(models)})


@usage_bp.route("/providers/status", methods=["GET"])
def providers_status():
    return jsonify({"providers": current_app.extensions["ai_providers"].status()})
