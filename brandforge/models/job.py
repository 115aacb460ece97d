"""
Job queue models.

Models:
    - Job: one unit of asynchronous work, claimed by a worker through an
      atomic conditional update on (status, locked_at)
    - AdvisoryLock: named lock row used where the database has no native
      advisory locks (SQLite); PostgreSQL uses the session-level
      pg_try_advisory_lock / pg_advisory_unlock pair

Job status machine:
    QUEUED → PROCESSING → DONE | FAILED
    PROCESSING → QUEUED          (retry while attempts < max_attempts)
    FAILED → QUEUED              (admin retry)
"""

from datetime import datetime, timezone

from brandforge.models import db
from brandforge.models.base import OrgScopedModel


# ── Constants ────────────────────────────────────────────────────────────────

JOB_STATUSES = {"QUEUED", "PROCESSING", "DONE", "FAILED"}
JOB_ACTIVE_STATUSES = ("QUEUED", "PROCESSING")

JOB_TYPES = {
    "GENERATE_OUTPUT",
    "REGENERATE_OUTPUT",
    "BUSINESS_PLAN_GENERATE",
}

# Job types that produce a stage output version
STAGE_JOB_TYPES = ("GENERATE_OUTPUT", "REGENERATE_OUTPUT", "BUSINESS_PLAN_GENERATE")

DEFAULT_MAX_ATTEMPTS = 3


# ═══════════════════════════════════════════════════════════════
# 1. JOBS
# ═══════════════════════════════════════════════════════════════
class Job(OrgScopedModel):
    __tablename__ = "jobs"

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(40), nullable=False, index=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True
    )
    stage_key = db.Column(db.String(60), nullable=True)
    module = db.Column(db.String(10), nullable=True)

    # Opaque per-type input and the resolved config snapshot
    payload = db.Column(db.JSON, nullable=False, default=dict)
    run_config = db.Column(db.JSON, nullable=True)

    status = db.Column(db.String(20), nullable=False, default="QUEUED")
    progress = db.Column(db.Integer, default=0)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    max_attempts = db.Column(db.Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS)

    # Claim fields
    locked_at = db.Column(db.DateTime, nullable=True)
    locked_by = db.Column(db.String(120), nullable=True)

    result = db.Column(db.JSON, nullable=True)
    error = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(100), nullable=True)

    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc), index=True)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('QUEUED','PROCESSING','DONE','FAILED')",
            name="ck_job_status",
        ),
        db.Index("ix_jobs_status_created", "status", "created_at"),
        db.Index("ix_jobs_project_stage_status", "project_id", "stage_key", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in JOB_ACTIVE_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "org_id": self.org_id,
            "type": self.type,
            "project_id": self.project_id,
            "stage_key": self.stage_key,
            "module": self.module,
            "payload": self.payload or {},
            "run_config": self.run_config,
            "status": self.status,
            "progress": self.progress,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "locked_at": self.locked_at.isoformat() if self.locked_at else None,
            "locked_by": self.locked_by,
            "result": self.result,
            "error": self.error,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f"<Job id={self.id} type={self.type} status={self.status}>"


# ═══════════════════════════════════════════════════════════════
# 2. ADVISORY LOCKS (portable fallback)
# ═══════════════════════════════════════════════════════════════
class AdvisoryLock(db.Model):
    __tablename__ = "advisory_locks"

    name = db.Column(db.String(200), primary_key=True)
    owner = db.Column(db.String(120), nullable=True)
    acquired_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f"<AdvisoryLock {self.name} owner={self.owner}>"
