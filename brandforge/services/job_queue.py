"""
BrandForge Stage Engine
Job Queue Service.

Durable, polling-based queue on the ``jobs`` table. No broker: workers
contend for rows and the only concurrency guard is the claim, an atomic
conditional update

    UPDATE jobs SET status='PROCESSING', locked_at=now, locked_by=:worker
     WHERE id=:id AND status='QUEUED' AND locked_at IS NULL

A worker owns a job only when that update affected exactly one row.
Only the owner may later write DONE or FAILED.

Architecture:
    - register_job_handler: decorator mapping job types to handler functions
    - claim / claim_next: atomic claim, FIFO by creation time
    - process_job: runs the handler, then completes or fails the attempt
    - process_batch / run_worker: the poll loop used by the standalone worker
    - process_immediately: the same state machine without polling
    - fail_job / retry_job: administrative overrides

Failure semantics:
    attempts += 1 on every failed attempt; while attempts < max_attempts
    the job goes back to QUEUED with the lock cleared and the error kept,
    otherwise it is finalized FAILED.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

from brandforge.core.exceptions import (
    ConflictError,
    NotFoundError,
    OutputParseError,
    ProviderNotConfiguredError,
    ValidationError,
)
from brandforge.models import db
from brandforge.models.job import DEFAULT_MAX_ATTEMPTS, JOB_STATUSES, JOB_TYPES, Job

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000
ADMIN_FAIL_MESSAGE = "Manually marked as failed by admin"


# ═══════════════════════════════════════════════════════════════════════════
#  Handler Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_handlers: dict[str, Callable] = {}


def register_job_handler(*job_types: str):
    """Decorator to register the handler for one or more job types.

    The handler receives the claimed Job and returns a JSON-able result
    dict. Raising marks the attempt as failed.

    Usage:
        @register_job_handler("GENERATE_OUTPUT", "REGENERATE_OUTPUT")
        def execute_stage_job(job):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        for job_type in job_types:
            _job_handlers[job_type] = fn
        return fn
    return decorator


def get_registered_handlers() -> dict[str, Callable]:
    """Return all registered job handlers."""
    return dict(_job_handlers)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _truncate(message: str) -> str:
    message = message or "Unknown error"
    return message if len(message) <= MAX_ERROR_LENGTH else message[:MAX_ERROR_LENGTH]


# ═══════════════════════════════════════════════════════════════════════════
#  Enqueue & Claim
# ═══════════════════════════════════════════════════════════════════════════

def enqueue(org_id: int, job_type: str, *, project_id: int | None = None,
            stage_key: str | None = None, module: str | None = None,
            payload: dict | None = None, run_config: dict | None = None,
            created_by: str | None = None, max_attempts: int | None = None) -> Job:
    """Persist a QUEUED job. The caller commits."""
    if job_type not in JOB_TYPES:
        raise ValidationError(f"Unknown job type: {job_type}")
    job = Job(
        org_id=org_id,
        type=job_type,
        project_id=project_id,
        stage_key=stage_key,
        module=module,
        payload=payload or {},
        run_config=run_config,
        status="QUEUED",
        progress=0,
        attempts=0,
        max_attempts=max_attempts or DEFAULT_MAX_ATTEMPTS,
        created_by=created_by,
    )
    db.session.add(job)
    db.session.flush()
    logger.info("Enqueued %s job", job_type,
                extra={"job_id": job.id, "org_id": org_id, "stage_key": stage_key})
    return job


def claim(job_id: int, worker_id: str) -> bool:
    """
    Atomically move one QUEUED, unlocked job to PROCESSING.

    Returns:
        True when this worker's update affected exactly one row.
    """
    now = _now()
    rows = Job.query.filter(
        Job.id == job_id,
        Job.status == "QUEUED",
        Job.locked_at.is_(None),
    ).update(
        {"status": "PROCESSING", "locked_at": now, "locked_by": worker_id, "started_at": now},
        synchronize_session=False,
    )
    db.session.commit()
    if rows == 1:
        logger.info("Claimed job", extra={"job_id": job_id, "worker_id": worker_id})
    return rows == 1


def _queued_candidate_ids(limit: int) -> list[int]:
    """Ids of the oldest QUEUED, unlocked jobs, FIFO."""
    rows = (
        db.session.query(Job.id)
        .filter(Job.status == "QUEUED", Job.locked_at.is_(None))
        .order_by(Job.created_at.asc(), Job.id.asc())
        .limit(limit)
        .all()
    )
    return [job_id for (job_id,) in rows]


def claim_next(worker_id: str, scan_limit: int = 10) -> Job | None:
    """Claim the oldest QUEUED, unlocked job; None when the queue is empty."""
    for job_id in _queued_candidate_ids(scan_limit):
        if claim(job_id, worker_id):
            return db.session.get(Job, job_id, populate_existing=True)
        # Someone else got it; try the next one
    return None


# ═══════════════════════════════════════════════════════════════════════════
#  Completion
# ═══════════════════════════════════════════════════════════════════════════

def complete_job(job: Job, worker_id: str, result: dict | None) -> bool:
    """Write DONE + result. Only the lock owner's write takes effect."""
    rows = Job.query.filter_by(id=job.id, status="PROCESSING", locked_by=worker_id).update(
        {
            "status": "DONE",
            "progress": 100,
            "result": result or {},
            "error": None,
            "completed_at": _now(),
            "locked_at": None,
            "locked_by": None,
        },
        synchronize_session=False,
    )
    if rows != 1:
        # Lost ownership: drop everything the handler flushed
        db.session.rollback()
        db.session.refresh(job)
        logger.warning("Job completion ignored: worker no longer owns it",
                       extra={"job_id": job.id, "worker_id": worker_id})
        return False
    db.session.commit()
    db.session.refresh(job)
    return True


def fail_attempt(job: Job, worker_id: str, error: str, terminal: bool = False) -> str:
    """
    Record a failed attempt.

    Returns:
        The job's new status: QUEUED when requeued, FAILED when final.
    """
    attempts = (job.attempts or 0) + 1
    requeue = not terminal and attempts < (job.max_attempts or DEFAULT_MAX_ATTEMPTS)
    values = {
        "attempts": attempts,
        "error": _truncate(error),
        "locked_at": None,
        "locked_by": None,
    }
    if requeue:
        values.update({"status": "QUEUED", "started_at": None})
    else:
        values.update({"status": "FAILED", "completed_at": _now()})

    rows = Job.query.filter_by(id=job.id, status="PROCESSING", locked_by=worker_id).update(
        values, synchronize_session=False,
    )
    if rows != 1:
        db.session.rollback()
        db.session.refresh(job)
        logger.warning("Job failure ignored: worker no longer owns it",
                       extra={"job_id": job.id, "worker_id": worker_id})
        return job.status
    db.session.commit()
    db.session.refresh(job)

    if requeue:
        logger.warning("Job attempt %d/%d failed, requeued: %s",
                       attempts, job.max_attempts, error,
                       extra={"job_id": job.id, "worker_id": worker_id})
    else:
        logger.error("Job failed permanently after %d attempt(s): %s", attempts, error,
                     extra={"job_id": job.id, "worker_id": worker_id})
    return job.status


# ═══════════════════════════════════════════════════════════════════════════
#  Execution
# ═══════════════════════════════════════════════════════════════════════════

def process_job(job: Job, worker_id: str) -> Job:
    """
    Run the handler for a job this worker has claimed.

    Handler errors never escape: the session is rolled back and the
    attempt is recorded on the job row.
    """
    handler = _job_handlers.get(job.type)
    if handler is None:
        fail_attempt(job, worker_id, f"No handler registered for job type {job.type}", terminal=True)
        return job

    start = time.monotonic()
    try:
        result = handler(job)
    except ProviderNotConfiguredError as exc:
        db.session.rollback()
        fail_attempt(job, worker_id, exc.user_message, terminal=True)
        return job
    except OutputParseError as exc:
        db.session.rollback()
        fail_attempt(job, worker_id, f"Output validation failed: {exc}")
        return job
    except Exception as exc:
        db.session.rollback()
        logger.exception("Job handler raised", extra={"job_id": job.id, "worker_id": worker_id})
        fail_attempt(job, worker_id, str(exc) or exc.__class__.__name__)
        return job

    duration_ms = int((time.monotonic() - start) * 1000)
    if complete_job(job, worker_id, result):
        logger.info("Job done", extra={"job_id": job.id, "worker_id": worker_id,
                                       "duration_ms": duration_ms})
    return job


def process_immediately(job_id: int, worker_id: str) -> Job:
    """
    Claim and run one job synchronously, skipping the poll.

    Same state machine as the worker: when the claim is lost the job is
    returned untouched.
    """
    job = db.session.get(Job, job_id)
    if not job:
        raise NotFoundError(resource="Job", resource_id=job_id)
    if not claim(job_id, worker_id):
        db.session.refresh(job)
        return job
    job = db.session.get(Job, job_id, populate_existing=True)
    return process_job(job, worker_id)


def process_batch(worker_id: str, batch_size: int = 5) -> int:
    """
    Claim and run up to ``batch_size`` jobs. Returns how many ran.

    Candidates are selected once per batch, so a job requeued by a failed
    attempt waits for the next poll instead of being retried in the same
    batch.
    """
    processed = 0
    for job_id in _queued_candidate_ids(batch_size):
        if not claim(job_id, worker_id):
            continue
        job = db.session.get(Job, job_id, populate_existing=True)
        process_job(job, worker_id)
        processed += 1
    return processed


def reclaim_stale(timeout_seconds: int) -> int:
    """
    Requeue PROCESSING jobs whose lock is older than ``timeout_seconds``.

    A reclaimed attempt counts as failed. Returns the number reclaimed.
    """
    if not timeout_seconds or timeout_seconds <= 0:
        return 0
    cutoff = _now() - timedelta(seconds=timeout_seconds)
    stale = Job.query.filter(Job.status == "PROCESSING", Job.locked_at < cutoff).all()

    reclaimed = 0
    for job in stale:
        attempts = (job.attempts or 0) + 1
        requeue = attempts < (job.max_attempts or DEFAULT_MAX_ATTEMPTS)
        values = {
            "attempts": attempts,
            "error": f"Lock expired after {timeout_seconds}s (worker {job.locked_by})",
            "locked_at": None,
            "locked_by": None,
        }
        if requeue:
            values.update({"status": "QUEUED", "started_at": None})
        else:
            values.update({"status": "FAILED", "completed_at": _now()})
        rows = Job.query.filter_by(
            id=job.id, status="PROCESSING", locked_by=job.locked_by, attempts=job.attempts,
        ).update(values, synchronize_session=False)
        reclaimed += rows
        if rows:
            logger.warning("Reclaimed stale job from %s", job.locked_by, extra={"job_id": job.id})
    db.session.commit()
    return reclaimed


def run_worker(app, worker_id: str | None = None, poll_interval_ms: int | None = None,
               batch_size: int | None = None, max_iterations: int | None = None,
               sleep: Callable[[float], None] = time.sleep) -> int:
    """
    Poll the queue until stopped.

    Each iteration runs inside a fresh app context. A failing iteration
    is logged and the loop continues. ``max_iterations`` bounds the loop
    (tests, one-shot runs). Returns the total number of jobs processed.
    """
    worker_id = worker_id or app.config["WORKER_INSTANCE_ID"]
    interval = (poll_interval_ms or app.config["WORKER_POLL_INTERVAL_MS"]) / 1000.0
    batch_size = batch_size or app.config["WORKER_BATCH_SIZE"]
    stale_seconds = app.config.get("JOB_STALE_LOCK_SECONDS", 0)

    logger.info("Worker started: poll=%sms batch=%d", int(interval * 1000), batch_size,
                extra={"worker_id": worker_id})

    total = 0
    iteration = 0
    while max_iterations is None or iteration < max_iterations:
        iteration += 1
        processed = 0
        try:
            with app.app_context():
                if stale_seconds:
                    reclaim_stale(stale_seconds)
                processed = process_batch(worker_id, batch_size)
        except Exception:
            logger.exception("Worker iteration failed", extra={"worker_id": worker_id})
        total += processed
        if processed == 0:
            sleep(interval)

    logger.info("Worker stopped after %d iteration(s)", iteration, extra={"worker_id": worker_id})
    return total


# ═══════════════════════════════════════════════════════════════════════════
#  Queries & Admin Overrides
# ═══════════════════════════════════════════════════════════════════════════

def get_job(org_id: int, job_id: int) -> Job:
    job = Job.query_for_org(org_id).filter_by(id=job_id).first()
    if not job:
        raise NotFoundError(resource="Job", resource_id=job_id, org_id=org_id)
    return job


def job_status_payload(job: Job) -> dict:
    return {
        "jobId": job.id,
        "type": job.type,
        "status": job.status,
        "progress": job.progress,
        "attempts": job.attempts,
        "maxAttempts": job.max_attempts,
        "stageKey": job.stage_key,
        "projectId": job.project_id,
        "result": job.result,
        "error": job.error,
        "createdAt": job.created_at.isoformat() if job.created_at else None,
        "startedAt": job.started_at.isoformat() if job.started_at else None,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    }


def get_job_status(org_id: int, job_id: int) -> dict:
    """Read-only poll target."""
    return job_status_payload(get_job(org_id, job_id))


def list_jobs(org_id: int, status: str | None = None, project_id: int | None = None,
              limit: int = 50) -> list[dict]:
    if status and status not in JOB_STATUSES:
        raise ValidationError(f"Invalid job status: {status}")
    q = Job.query_for_org(org_id)
    if status:
        q = q.filter_by(status=status)
    if project_id is not None:
        q = q.filter_by(project_id=project_id)
    jobs = q.order_by(Job.created_at.desc(), Job.id.desc()).limit(limit).all()
    return [j.to_dict() for j in jobs]


def wait_for_job(org_id: int, job_id: int, interval: float = 1.0, max_attempts: int = 30,
                 sleep: Callable[[float], None] = time.sleep) -> dict:
    """
    Poll a job until it reaches DONE/FAILED or the attempt cap.

    Never mutates the job. On the cap the last observed status is
    returned with ``timedOut: True``.
    """
    status = None
    for attempt in range(max_attempts):
        db.session.expire_all()
        status = get_job_status(org_id, job_id)
        if status["status"] in ("DONE", "FAILED"):
            return {**status, "timedOut": False}
        if attempt < max_attempts - 1:
            sleep(interval)
    if status is None:
        status = get_job_status(org_id, job_id)
    return {**status, "timedOut": True}


def fail_job(org_id: int, job_id: int, reason: str | None = None) -> Job:
    """Administrative override: mark a non-DONE job FAILED, unblocking new runs."""
    job = get_job(org_id, job_id)
    if job.status == "DONE":
        raise ConflictError(resource="Job", field="status", value=job.status)
    job.status = "FAILED"
    job.error = _truncate(reason or ADMIN_FAIL_MESSAGE)
    job.completed_at = _now()
    job.locked_at = None
    job.locked_by = None
    db.session.commit()
    logger.warning("Job manually failed", extra={"job_id": job.id, "org_id": org_id})
    return job


def retry_job(org_id: int, job_id: int) -> Job:
    """Administrative override: requeue a FAILED job with a fresh attempt budget."""
    job = get_job(org_id, job_id)
    if job.status != "FAILED":
        raise ConflictError(resource="Job", field="status", value=job.status)
    job.status = "QUEUED"
    job.attempts = 0
    job.error = None
    job.progress = 0
    job.locked_at = None
    job.locked_by = None
    job.started_at = None
    job.completed_at = None
    db.session.commit()
    logger.info("Job requeued by admin", extra={"job_id": job.id, "org_id": org_id})
    return job
