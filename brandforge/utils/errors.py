"""Standardised API error responses.

Usage
-----
    from brandforge.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Stage not found")
    return api_error(E.TOKEN_LIMIT_REACHED, "Token budget exceeded", details=payload)
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_ prefix for standard application errors
     • bare upper-case codes for engine errors the UI branches on
    """

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"

    # Engine
    PROVIDER_NOT_CONFIGURED = "PROVIDER_NOT_CONFIGURED"
    TOKEN_LIMIT_REACHED = "TOKEN_LIMIT_REACHED"
    STAGE_LOCKED = "STAGE_LOCKED"
    RATE_LIMITED = "RATE_LIMITED"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.INTERNAL: 500,
    E.PROVIDER_NOT_CONFIGURED: 503,
    E.TOKEN_LIMIT_REACHED: 402,
    E.STAGE_LOCKED: 409,
    E.RATE_LIMITED: 429,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (budget remediation hints, field errors).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
