"""
Engine-wide exception hierarchy.

Services raise these types; blueprints register handlers against them
once and get consistent HTTP status codes everywhere.

Errors raised before a Job exists (tenancy, budget, locks, provider
configuration) are returned synchronously to the caller. Errors raised
while a Job executes are written to the Job row by the queue and never
escape the worker.

Usage:
    from brandforge.core.exceptions import NotFoundError, BudgetExceededError

    raise NotFoundError(resource="Project", resource_id=42, org_id=7)
    raise ValidationError("preset must be one of fast, balanced, quality")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Security note: Used for BOTH genuinely missing records AND cross-tenant
    access attempts. A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable model/entity name (e.g. "Project", "Stage").
        resource_id: The key that was looked up. Included in logs, not in HTTP response.
        org_id: Optional organization scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        org_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.org_id = org_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if org_id is not None:
            msg += f" (org={org_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation conflicts with the current state of a record.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field whose current value blocks the operation.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} conflicts with the requested operation"
        super().__init__(msg)


class ProviderNotConfiguredError(Exception):
    """Raised by a provider whose credentials are missing.

    Providers raise it before any network call. The orchestrator turns it
    into an actionable message instead of the raw provider error.
    """

    code = "PROVIDER_NOT_CONFIGURED"

    def __init__(self, provider: str, message: str | None = None) -> None:
        self.provider = provider
        super().__init__(message or f"{provider} API key not configured")

    @property
    def user_message(self) -> str:
        return (
            f"AI provider {self.provider} is not configured: add credentials "
            f"or enable mock mode (AI_PROVIDER=mock)."
        )


class BudgetExceededError(Exception):
    """Raised when an organization cannot afford the estimated run.

    Maps to HTTP 402. No Job is created.

    Args:
        check: The ledger's budget check dict (remaining, plan, reset date...).
    """

    code = "TOKEN_LIMIT_REACHED"

    def __init__(self, check: dict) -> None:
        self.check = check
        super().__init__(check.get("reason") or "Token budget exceeded")

    def to_payload(self) -> dict:
        return {
            "plan": self.check.get("plan"),
            "canPurchaseMore": self.check.get("canPurchaseMore", False),
            "suggestUpgrade": self.check.get("suggestUpgrade", False),
            "remainingTokens": self.check.get("remaining", 0),
            "estimatedTokens": self.check.get("estimatedTokens", 0),
            "resetDate": self.check.get("resetDate"),
        }


class StageLockedError(Exception):
    """Raised when a coarse advisory lock is held by another run.

    Maps to HTTP 409 with a "locked, try later" message.
    """

    code = "STAGE_LOCKED"

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"{resource} is locked by another run, try again later")


class RateLimitError(Exception):
    """Raised when a guarded operation exceeds its per-window allowance. HTTP 429."""

    code = "RATE_LIMITED"

    def __init__(self, limit: int, window_minutes: int) -> None:
        self.limit = limit
        self.window_minutes = window_minutes
        super().__init__(
            f"Rate limit reached: at most {limit} runs per {window_minutes} minutes"
        )


class OutputParseError(Exception):
    """Raised when AI output fails JSON parsing or schema validation.

    Retryable: the queue records it on the Job and requeues while
    attempts remain.
    """

    def __init__(self, message: str, raw: str | None = None) -> None:
        self.raw = raw
        super().__init__(message)
