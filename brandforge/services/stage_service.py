"""
BrandForge Stage Engine
Stage Run Orchestrator.

Coordinates one stage run end to end:

    run_stage()                       ← caller (HTTP, CLI)
        1. tenant check (project → org), stage lookup by key or display key
        2. idempotency: an active job for (project, stage) is returned as is
        3. soft dependency gating (advisory metadata only)
        4. config merge: call overrides → sticky stage config → global defaults
        5. provider readiness + budget precheck (no job on failure)
        6. job with the resolved run_config snapshot
        7. inline execution or hand-off to the queue

    execute_stage_job()               ← job queue handler
        prompt → provider → parse/validate → usage → new version → stage status

    approve_version()                 ← approval + cascading invalidation, one commit
    save_manual_version()             ← MANUAL versions, no AI call

Errors raised before a job exists propagate to the caller; errors during
execution are recorded on the job by the queue.
"""

import logging
import time
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import or_

from brandforge.ai.model_resolver import (
    PROVIDERS,
    EffectiveConfig,
    ResolverSettings,
    normalize_provider,
    resolve_effective_config,
)
from brandforge.ai.presets import PRESET_LEVELS
from brandforge.core.exceptions import (
    BudgetExceededError,
    ConflictError,
    NotFoundError,
    OutputParseError,
    ProviderNotConfiguredError,
    RateLimitError,
    StageLockedError,
    ValidationError,
)
from brandforge.models import db
from brandforge.models.job import JOB_ACTIVE_STATUSES, STAGE_JOB_TYPES, Job
from brandforge.models.organization import Organization
from brandforge.models.project import (
    PROJECT_MODULES,
    STAGE_DONE_STATUSES,
    Project,
    Stage,
)
from brandforge.services import job_queue, output_store
from brandforge.services.advisory_lock import advisory_lock
from brandforge.services.budget_ledger import TokenBudgetLedger
from brandforge.services.stage_catalog import (
    catalog_for_modules,
    downstream_stages,
    find_definition,
    missing_dependencies,
)

logger = logging.getLogger(__name__)

ledger = TokenBudgetLedger()

BUSINESS_PLAN_STAGE = "venture_business_plan"


# ── App-scoped collaborators ─────────────────────────────────────────────────

def _providers():
    return current_app.extensions["ai_providers"]


def _prompts():
    return current_app.extensions["prompt_registry"]


def _resolver_settings() -> ResolverSettings:
    return ResolverSettings.from_config(current_app.config)


def _inline_worker_id() -> str:
    return f"inline-{current_app.config['WORKER_INSTANCE_ID']}"


# ═══════════════════════════════════════════════════════════════════════════
#  Projects & Stages
# ═══════════════════════════════════════════════════════════════════════════

def create_project(org_id: int, name: str, modules=None, *, description: str | None = None,
                   language: str = "en", created_by: str | None = None) -> Project:
    """Create a project and bootstrap its stages from the catalog in one commit."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})

    modules = list(modules or ["brand"])
    unknown = [m for m in modules if m not in PROJECT_MODULES]
    if unknown:
        raise ValidationError(
            f"Unknown module(s): {', '.join(unknown)}",
            details={"modules": f"allowed: {', '.join(PROJECT_MODULES)}"},
        )

    if not db.session.get(Organization, org_id):
        raise NotFoundError(resource="Organization", resource_id=org_id)

    project = Project(
        org_id=org_id,
        name=name,
        description=description,
        language=language or "en",
        module_venture="venture" in modules,
        module_brand="brand" in modules,
        module_strategy="strategy" in modules,
        created_by=created_by,
    )
    db.session.add(project)
    db.session.flush()

    for definition in catalog_for_modules(modules):
        db.session.add(Stage(
            project_id=project.id,
            stage_key=definition["stage_key"],
            display_key=definition["display_key"],
            name=definition["name"],
            module=definition["module"],
            order=definition["order"],
            status="NOT_STARTED",
        ))
    db.session.commit()
    logger.info("Project created with %d stage(s)", len(project.stages),
                extra={"org_id": org_id, "project_id": project.id})
    return project


def get_project(org_id: int, project_id: int) -> Project:
    """Project scoped to the calling org; other orgs' projects are 'not found'."""
    project = Project.query_for_org(org_id).filter_by(id=project_id).first()
    if not project:
        raise NotFoundError(resource="Project", resource_id=project_id, org_id=org_id)
    return project


def get_stage(project: Project, stage_key: str, create: bool = False) -> Stage:
    """
    Stage of a project by stage key or display key.

    With ``create=True`` a known stage key without a row is created from
    the catalog (ad-hoc stages are always created this way).
    """
    stage = Stage.query.filter(
        Stage.project_id == project.id,
        or_(Stage.stage_key == stage_key, Stage.display_key == stage_key),
    ).first()
    if stage:
        return stage

    definition = find_definition(stage_key) if create else None
    if not definition:
        raise NotFoundError(resource="Stage", resource_id=stage_key)

    max_order = db.session.query(db.func.max(Stage.order)).filter(
        Stage.project_id == project.id
    ).scalar() or 0
    stage = Stage(
        project_id=project.id,
        stage_key=definition["stage_key"],
        display_key=definition["display_key"],
        name=definition["name"],
        module=definition["module"],
        order=max_order + 1,
        status="NOT_STARTED",
    )
    db.session.add(stage)
    db.session.flush()
    logger.info("Stage created on first run", extra={"project_id": project.id,
                                                     "stage_key": stage.stage_key})
    return stage


def _active_stage_job(org_id: int, project_id: int, stage_key: str) -> Job | None:
    return (
        Job.query_for_org(org_id)
        .filter(
            Job.project_id == project_id,
            Job.stage_key == stage_key,
            Job.type.in_(STAGE_JOB_TYPES),
            Job.status.in_(JOB_ACTIVE_STATUSES),
        )
        .order_by(Job.created_at.desc(), Job.id.desc())
        .first()
    )


def _completed_stage_keys(project: Project) -> list[str]:
    rows = db.session.query(Stage.stage_key).filter(
        Stage.project_id == project.id,
        Stage.status.in_(sorted(STAGE_DONE_STATUSES)),
    ).all()
    return [key for (key,) in rows]


# ═══════════════════════════════════════════════════════════════════════════
#  Config resolution
# ═══════════════════════════════════════════════════════════════════════════

def resolve_stage_config(stage: Stage, *, preset=None, provider=None, model=None,
                         temperature=None, custom_instructions=None,
                         seed_text=None) -> EffectiveConfig:
    """
    Merge call overrides over the stage's sticky config over global defaults.

    A sticky model is only carried over when it was chosen for the
    provider that ends up being used.
    """
    settings = _resolver_settings()
    sticky = stage.config or {}

    requested_provider = provider or sticky.get("provider")
    requested_model = model
    if not requested_model and sticky.get("model"):
        sticky_provider = normalize_provider(sticky.get("provider"), settings.default_provider)
        if normalize_provider(requested_provider, settings.default_provider) == sticky_provider:
            requested_model = sticky["model"]

    effective = resolve_effective_config(
        stage.stage_key,
        preset=preset or sticky.get("preset"),
        provider=requested_provider,
        model=requested_model,
        temperature=temperature,
        custom_instructions=custom_instructions,
        seed_text=seed_text,
        settings=settings,
    )

    log_extra = {"stage_key": stage.stage_key, "project_id": stage.project_id,
                 "provider": effective.provider, "model": effective.model}
    logger.info("Resolved config: preset=%s provider=%s model=%s max_tokens=%d",
                effective.preset, effective.provider, effective.model,
                effective.max_output_tokens, extra=log_extra)
    if effective.fallback_warning:
        logger.warning("Model fallback: %s", effective.fallback_warning, extra=log_extra)
    return effective


def _ensure_provider_ready(provider_type: str) -> None:
    status = _providers().get(provider_type).check_status()
    if not status["ready"]:
        raise ProviderNotConfiguredError(provider_type, status.get("error"))


def _ensure_budget(org_id: int, effective: EffectiveConfig) -> dict:
    check = ledger.check_budget(org_id, effective.estimated_tokens)
    if not check["allowed"]:
        logger.info("Run rejected: %s", check["reason"],
                    extra={"org_id": org_id, "stage_key": effective.stage_key})
        raise BudgetExceededError(check)
    return check


# ═══════════════════════════════════════════════════════════════════════════
#  Run protocol
# ═══════════════════════════════════════════════════════════════════════════

def run_stage(org_id: int, project_id: int, stage_key: str, *, user_id: str | None = None,
              regenerate: bool = False, seed_text: str | None = None, preset: str | None = None,
              provider: str | None = None, model: str | None = None,
              temperature: float | None = None, custom_instructions: str | None = None,
              override_dependencies: bool = False) -> dict:
    """
    Request a run (or regeneration) of one stage.

    Returns:
        {"success", "jobId", "status", "idempotent", "model", "provider", "preset",
         "stageKey", "stageId", "missingDependencies", "fallbackWarning", "error"?}

    Raises:
        NotFoundError: project/stage not visible to the org.
        ProviderNotConfiguredError: resolved provider has no credentials.
        BudgetExceededError: estimate does not fit; no job is created.
    """
    project = get_project(org_id, project_id)
    stage = get_stage(project, stage_key, create=True)

    active = _active_stage_job(org_id, project.id, stage.stage_key)
    if active:
        logger.info("Run request joined active job", extra={
            "job_id": active.id, "org_id": org_id, "stage_key": stage.stage_key})
        snapshot = active.run_config or {}
        return {
            "success": True,
            "jobId": active.id,
            "status": active.status,
            "idempotent": True,
            "model": snapshot.get("model"),
            "provider": snapshot.get("provider"),
            "preset": snapshot.get("preset"),
            "stageKey": stage.stage_key,
            "stageId": stage.id,
            "missingDependencies": [],
            "fallbackWarning": snapshot.get("fallbackWarning"),
        }

    missing = missing_dependencies(stage.stage_key, _completed_stage_keys(project))
    if missing and not override_dependencies:
        logger.info("Running with missing prerequisites: %s", ", ".join(missing),
                    extra={"project_id": project.id, "stage_key": stage.stage_key})

    effective = resolve_stage_config(
        stage, preset=preset, provider=provider, model=model, temperature=temperature,
        custom_instructions=custom_instructions, seed_text=seed_text,
    )
    _ensure_provider_ready(effective.provider)
    _ensure_budget(org_id, effective)

    is_regenerate = bool(regenerate) or stage.status in STAGE_DONE_STATUSES
    job = job_queue.enqueue(
        org_id,
        "REGENERATE_OUTPUT" if is_regenerate else "GENERATE_OUTPUT",
        project_id=project.id,
        stage_key=stage.stage_key,
        module=stage.module,
        payload={
            "stageId": stage.id,
            "stageKey": stage.stage_key,
            "projectName": project.name,
            "userId": user_id,
            "regenerate": bool(regenerate),
        },
        run_config=effective.to_dict(),
        created_by=user_id,
        max_attempts=current_app.config.get("JOB_MAX_ATTEMPTS"),
    )
    db.session.commit()

    if current_app.config.get("JOB_EXECUTION_MODE") == "inline":
        job = job_queue.process_immediately(job.id, _inline_worker_id())

    response = {
        "success": job.status != "FAILED",
        "jobId": job.id,
        "status": job.status,
        "idempotent": False,
        "model": effective.model,
        "provider": effective.provider,
        "preset": effective.preset,
        "stageKey": stage.stage_key,
        "stageId": stage.id,
        "missingDependencies": [] if override_dependencies else missing,
        "fallbackWarning": effective.fallback_warning,
    }
    if job.status == "FAILED":
        response["error"] = job.error
    return response


@job_queue.register_job_handler("GENERATE_OUTPUT", "REGENERATE_OUTPUT", "BUSINESS_PLAN_GENERATE")
def execute_stage_job(job: Job) -> dict:
    """
    Execute a claimed stage job: prompt → provider → parse → usage → version.

    Raises OutputParseError on invalid output (retryable) and lets
    provider errors propagate to the queue.
    """
    payload = job.payload or {}
    stage = db.session.get(Stage, payload.get("stageId"))
    if not stage or stage.project_id != job.project_id:
        raise NotFoundError(resource="Stage", resource_id=payload.get("stageId"))
    project = db.session.get(Project, stage.project_id)
    if not project or project.org_id != job.org_id:
        raise NotFoundError(resource="Project", resource_id=stage.project_id, org_id=job.org_id)

    effective = EffectiveConfig.from_dict(job.run_config)
    if effective is None:
        logger.warning("Job has no usable run_config; resolving again", extra={"job_id": job.id})
        effective = resolve_stage_config(stage)

    prompt = _prompts().get(stage.stage_key)
    output = output_store.ensure_output(project.id, stage.id, stage.stage_key, stage.name)
    previous = output_store.latest_version(output.id)
    is_regenerate = stage.status in STAGE_DONE_STATUSES

    messages = prompt.build_messages({
        "stage_key": stage.stage_key,
        "stage_name": stage.name,
        "project_name": project.name,
        "is_regenerate": is_regenerate,
        "previous_content": previous.content if (is_regenerate and previous) else None,
        "preset_config": effective.preset_config,
        "seed_text": effective.seed_text,
        "custom_instructions": effective.custom_instructions,
    })

    provider = _providers().get(effective.provider)
    start = time.monotonic()
    response = provider.complete(
        messages,
        model=effective.model,
        temperature=effective.temperature,
        max_tokens=effective.max_output_tokens,
    )
    latency_ms = int((time.monotonic() - start) * 1000)
    logger.info("Provider responded", extra={
        "job_id": job.id, "provider": provider.type, "model": response.get("model"),
        "duration_ms": latency_ms})

    parsed = prompt.parse_output(response.get("content") or "")
    if not parsed["ok"]:
        raise OutputParseError(parsed["error"], raw=parsed.get("raw"))

    usage = response.get("usage") or {}
    tokens_in = usage.get("prompt_tokens", 0)
    tokens_out = usage.get("completion_tokens", 0)
    ledger.record_usage(
        job.org_id, tokens_in, tokens_out,
        project_id=project.id, stage_key=stage.stage_key, job_id=job.id,
        provider=provider.type, model=response.get("model") or effective.model,
    )

    version = output_store.append_version(
        output,
        parsed["data"],
        provider=provider.type,
        model=response.get("model") or effective.model,
        prompt_set_version=prompt.prompt_set_version,
        generation_params={
            "latencyMs": latency_ms,
            "tokensIn": tokens_in,
            "tokensOut": tokens_out,
            "totalTokens": usage.get("total_tokens", tokens_in + tokens_out),
            "preset": effective.preset,
            "requestedModel": effective.model,
            "temperature": effective.temperature,
            "maxOutputTokens": effective.max_output_tokens,
            "fallbackWarning": effective.fallback_warning,
            "finishReason": response.get("finish_reason"),
            "validated": True,
        },
        job_id=job.id,
        created_by=payload.get("userId"),
    )

    stage.status = "REGENERATED" if is_regenerate else "GENERATED"
    db.session.flush()

    return {
        "outputId": output.id,
        "versionId": version.id,
        "versionNumber": version.version,
        "stageKey": stage.stage_key,
        "stageStatus": stage.status,
        "provider": provider.type,
        "model": version.model,
        "latencyMs": latency_ms,
        "totalTokens": version.generation_params.get("totalTokens"),
        "validated": True,
    }


# ═══════════════════════════════════════════════════════════════════════════
#  Business plan generation (advisory lock + rate limit)
# ═══════════════════════════════════════════════════════════════════════════

def generate_business_plan(org_id: int, project_id: int, *, user_id: str | None = None,
                           preset: str | None = None, provider: str | None = None,
                           model: str | None = None) -> dict:
    """
    Queue a business-plan generation for a project.

    Serialized per (org, project) by an advisory lock; at most
    BUSINESS_PLAN_GENERATE_LIMIT finished runs per window.
    """
    project = get_project(org_id, project_id)
    stage = get_stage(project, BUSINESS_PLAN_STAGE, create=True)

    limit = current_app.config["BUSINESS_PLAN_GENERATE_LIMIT"]
    window = current_app.config["BUSINESS_PLAN_GENERATE_WINDOW_MINUTES"]
    lock_name = f"business-plan:{org_id}:{project.id}"

    with advisory_lock(lock_name, owner=user_id or "system"):
        if _active_stage_job(org_id, project.id, stage.stage_key):
            raise StageLockedError(resource=f"Business plan for project {project.id}")

        window_start = datetime.now(timezone.utc) - timedelta(minutes=window)
        recent = Job.query_for_org(org_id).filter(
            Job.project_id == project.id,
            Job.type == "BUSINESS_PLAN_GENERATE",
            Job.status.in_(("DONE", "FAILED")),
            Job.created_at >= window_start,
        ).count()
        if recent >= limit:
            raise RateLimitError(limit=limit, window_minutes=window)

        effective = resolve_stage_config(stage, preset=preset, provider=provider, model=model)
        _ensure_provider_ready(effective.provider)
        _ensure_budget(org_id, effective)

        job = job_queue.enqueue(
            org_id,
            "BUSINESS_PLAN_GENERATE",
            project_id=project.id,
            stage_key=stage.stage_key,
            module=stage.module,
            payload={
                "stageId": stage.id,
                "stageKey": stage.stage_key,
                "projectName": project.name,
                "userId": user_id,
                "requestedBy": user_id,
            },
            run_config=effective.to_dict(),
            created_by=user_id,
            max_attempts=current_app.config.get("JOB_MAX_ATTEMPTS"),
        )
    db.session.commit()

    if current_app.config.get("JOB_EXECUTION_MODE") == "inline":
        job = job_queue.process_immediately(job.id, _inline_worker_id())

    return {
        "success": job.status != "FAILED",
        "jobId": job.id,
        "status": job.status,
        "model": effective.model,
        "stageKey": stage.stage_key,
    }


# ═══════════════════════════════════════════════════════════════════════════
#  Outputs, approval & manual versions
# ═══════════════════════════════════════════════════════════════════════════

def _version_payload(version) -> dict | None:
    if version is None:
        return None
    d = version.to_dict()
    d["runInfo"] = version.generation_params or {}
    return d


def get_output(org_id: int, project_id: int, stage_key: str, version: int | None = None) -> dict:
    """
    Version history read.

    Returns:
        {"stage", "output", "versions" (10 newest first), "latestVersion",
         "currentVersion" (pinned or latest), "approvedVersion", "runInfo"}
    """
    project = get_project(org_id, project_id)
    stage = get_stage(project, stage_key)
    output = output_store.find_output(project.id, stage.id)

    if not output:
        if version is not None:
            raise NotFoundError(resource="OutputVersion", resource_id=version)
        return {
            "stage": stage.to_dict(),
            "output": None,
            "versions": [],
            "latestVersion": None,
            "currentVersion": None,
            "approvedVersion": None,
            "runInfo": None,
        }

    latest = output_store.latest_version(output.id)
    current = output_store.get_version(output.id, version) if version is not None else latest
    return {
        "stage": stage.to_dict(),
        "output": output.to_dict(),
        "versions": [_version_payload(v) for v in output_store.recent_versions(output.id)],
        "latestVersion": latest.version if latest else None,
        "currentVersion": _version_payload(current),
        "approvedVersion": _version_payload(output_store.approved_version(output)),
        "runInfo": (current.generation_params or {}) if current else None,
    }


def invalidate_downstream(project: Project, stage_key: str) -> list[str]:
    """
    Reset every direct and transitive dependent of a stage to NOT_STARTED.

    Flushes only; the caller commits together with the approval.
    """
    targets = set(downstream_stages(stage_key))
    if not targets:
        return []
    reset = []
    dependents = Stage.query.filter(
        Stage.project_id == project.id,
        Stage.stage_key.in_(sorted(targets)),
        Stage.status != "NOT_STARTED",
    ).order_by(Stage.order).all()
    for stage in dependents:
        stage.status = "NOT_STARTED"
        reset.append(stage.stage_key)
    db.session.flush()
    if reset:
        logger.info("Invalidated downstream stages: %s", ", ".join(reset),
                    extra={"project_id": project.id, "stage_key": stage_key})
    return reset


def approve_version(org_id: int, project_id: int, stage_key: str,
                    version_id: int | None = None, user_id: str | None = None) -> dict:
    """
    Approve a version (latest by default) and mark the stage APPROVED.

    When the approved content changes, downstream stages are invalidated
    in the same commit.
    """
    project = get_project(org_id, project_id)
    stage = get_stage(project, stage_key)
    output = output_store.find_output(project.id, stage.id)
    if not output:
        raise ConflictError(resource="Stage", field="output", value=stage.stage_key)

    if version_id is not None:
        version = output_store.get_version_by_id(output.id, version_id)
    else:
        version = output_store.latest_version(output.id)
        if version is None:
            raise ConflictError(resource="Stage", field="output", value=stage.stage_key)

    changed = output.approved_version_id != version.id
    output_store.mark_approved(output, version)
    stage.status = "APPROVED"

    invalidated = invalidate_downstream(project, stage.stage_key) if changed else []
    db.session.commit()
    logger.info("Approved version %d", version.version,
                extra={"project_id": project.id, "stage_key": stage.stage_key})
    return {
        "stage": stage.to_dict(),
        "version": _version_payload(version),
        "invalidatedStages": invalidated,
        "approvedBy": user_id,
    }


def save_manual_version(org_id: int, project_id: int, stage_key: str, content,
                        base_version_id: int | None = None, user_id: str | None = None) -> dict:
    """
    Append a human-edited version (type MANUAL) without calling a provider.

    Refused while a job for the stage is in flight so version numbers
    stay serialized.
    """
    if content is None or content == "" or content == {}:
        raise ValidationError("content is required", details={"content": "required"})
    if isinstance(content, str):
        content = {"raw": content}
    if not isinstance(content, dict):
        raise ValidationError("content must be an object or a string")

    project = get_project(org_id, project_id)
    stage = get_stage(project, stage_key)

    active = _active_stage_job(org_id, project.id, stage.stage_key)
    if active:
        raise ConflictError(resource="Stage", field="activeJob", value=str(active.id))

    output = output_store.ensure_output(project.id, stage.id, stage.stage_key, stage.name)
    base_version = None
    if base_version_id is not None:
        base_version = output_store.get_version_by_id(output.id, base_version_id)

    version = output_store.append_version(
        output,
        content,
        provider="MANUAL",
        model="human",
        version_type="MANUAL",
        prompt_set_version="manual",
        generation_params={
            "latencyMs": 0,
            "tokensIn": 0,
            "tokensOut": 0,
            "totalTokens": 0,
            "preset": "manual",
            "validated": True,
            "edited": True,
            "editedFromVersion": base_version.version if base_version else None,
        },
        created_by=user_id,
    )
    if stage.status == "NOT_STARTED":
        stage.status = "GENERATED"
    db.session.commit()
    return _version_payload(version)


# ═══════════════════════════════════════════════════════════════════════════
#  Sticky stage config
# ═══════════════════════════════════════════════════════════════════════════

STAGE_CONFIG_KEYS = ("provider", "model", "preset")


def get_stage_config(org_id: int, project_id: int, stage_key: str) -> dict:
    project = get_project(org_id, project_id)
    stage = get_stage(project, stage_key)
    config = stage.config or {}
    return {
        "stageKey": stage.stage_key,
        "provider": config.get("provider"),
        "model": config.get("model"),
        "preset": config.get("preset"),
        "effective": resolve_stage_config(stage).to_dict(),
    }


def put_stage_config(org_id: int, project_id: int, stage_key: str, data: dict) -> dict:
    """Replace the sticky {provider, model, preset}; null or missing values clear a key."""
    data = data or {}
    preset = data.get("preset")
    if preset is not None and preset not in PRESET_LEVELS:
        raise ValidationError(
            f"preset must be one of {', '.join(PRESET_LEVELS)}", details={"preset": preset},
        )
    provider = data.get("provider")
    if provider is not None:
        provider = str(provider).strip().upper()
        if provider not in PROVIDERS:
            raise ValidationError(
                f"provider must be one of {', '.join(PROVIDERS)}", details={"provider": provider},
            )
    model = data.get("model")
    if model is not None and not isinstance(model, str):
        raise ValidationError("model must be a string")

    project = get_project(org_id, project_id)
    stage = get_stage(project, stage_key)
    config = {"provider": provider, "model": model or None, "preset": preset}
    stage.config = {k: v for k, v in config.items() if v is not None}
    db.session.commit()
    logger.info("Stage config updated", extra={"project_id": project.id,
                                               "stage_key": stage.stage_key})
    return get_stage_config(org_id, project_id, stage.stage_key)
