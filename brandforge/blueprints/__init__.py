"""
BrandForge Stage Engine
Blueprint registry and shared request helpers.

org_id / user_id are resolved from the X-Org-Id / X-User-Id headers,
falling back to query string or JSON body fields.
Service layer owns all business logic and commits.
"""

import logging

from flask import abort, request
from werkzeug.exceptions import HTTPException

from brandforge.core.exceptions import (
    BudgetExceededError,
    ConflictError,
    NotFoundError,
    ProviderNotConfiguredError,
    RateLimitError,
    StageLockedError,
    ValidationError,
)
from brandforge.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── Tenant helpers ────────────────────────────────────────────────────────────


def request_org_id() -> int:
    """Extract org_id from header, query string or JSON body; 400 when missing."""
    raw = request.headers.get("X-Org-Id") or request.args.get("org_id")
    if not raw:
        data = request.get_json(silent=True) or {}
        raw = data.get("org_id") if isinstance(data, dict) else None
    try:
        org_id = int(raw) if raw is not None and raw != "" else None
    except (TypeError, ValueError):
        org_id = None
    if not org_id:
        abort(400, description="org_id is required (X-Org-Id header)")
    return org_id


def request_user_id() -> str | None:
    uid = request.headers.get("X-User-Id") or request.args.get("user_id")
    if uid:
        return uid
    data = request.get_json(silent=True) or {}
    return data.get("user_id") if isinstance(data, dict) else None


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


# ── Error handlers ────────────────────────────────────────────────────────────


def register_error_handlers(bp):
    """Map engine exceptions to standard JSON error responses on a blueprint."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, f"{error.resource} not found")

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_STATE, str(error))

    @bp.errorhandler(ProviderNotConfiguredError)
    def _handle_provider(error: ProviderNotConfiguredError):
        return api_error(E.PROVIDER_NOT_CONFIGURED, error.user_message,
                         details={"provider": error.provider})

    @bp.errorhandler(BudgetExceededError)
    def _handle_budget(error: BudgetExceededError):
        return api_error(E.TOKEN_LIMIT_REACHED, str(error), details=error.to_payload())

    @bp.errorhandler(StageLockedError)
    def _handle_locked(error: StageLockedError):
        return api_error(E.STAGE_LOCKED, str(error))

    @bp.errorhandler(RateLimitError)
    def _handle_rate_limit(error: RateLimitError):
        return api_error(E.RATE_LIMITED, str(error), details={
            "limit": error.limit, "windowMinutes": error.window_minutes,
        })

    @bp.errorhandler(HTTPException)
    def _handle_http(error: HTTPException):
        return {"error": error.description, "code": error.name}, error.code

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")

    return bp
