"""
Output versioning models.

Models:
    - Output: one logical artifact slot per (project, stage)
    - OutputVersion: append-only version history for an Output

Invariants:
    - (output_id, version) is unique; versions start at 1 and grow by 1
    - content, version, provider and model of a version never change
    - the approved version is the one Output.approved_version_id points to
"""

from datetime import datetime, timezone

from brandforge.models import db


# ── Constants ────────────────────────────────────────────────────────────────

VERSION_STATUSES = {"GENERATED", "APPROVED", "SUPERSEDED"}
VERSION_TYPES = {"GENERATED", "MANUAL"}


# ═══════════════════════════════════════════════════════════════
# 1. OUTPUTS
# ═══════════════════════════════════════════════════════════════
class Output(db.Model):
    __tablename__ = "outputs"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    stage_id = db.Column(
        db.Integer, db.ForeignKey("stages.id", ondelete="CASCADE"), nullable=False
    )
    output_key = db.Column(db.String(80), nullable=False)
    name = db.Column(db.String(200), nullable=True)
    # Points at the last explicitly approved OutputVersion.id
    approved_version_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    versions = db.relationship(
        "OutputVersion",
        back_populates="output",
        foreign_keys="OutputVersion.output_id",
        order_by="OutputVersion.version.desc()",
        lazy="dynamic",
    )

    __table_args__ = (
        db.UniqueConstraint("project_id", "stage_id", "output_key", name="uq_output_slot"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "stage_id": self.stage_id,
            "output_key": self.output_key,
            "name": self.name,
            "approved_version_id": self.approved_version_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ═══════════════════════════════════════════════════════════════
# 2. OUTPUT VERSIONS
# ═══════════════════════════════════════════════════════════════
class OutputVersion(db.Model):
    __tablename__ = "output_versions"

    id = db.Column(db.Integer, primary_key=True)
    output_id = db.Column(
        db.Integer, db.ForeignKey("outputs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version = db.Column(db.Integer, nullable=False)
    content = db.Column(db.JSON, nullable=False)
    provider = db.Column(db.String(20), nullable=True)
    model = db.Column(db.String(80), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="GENERATED")
    type = db.Column(db.String(20), nullable=False, default="GENERATED")
    prompt_set_version = db.Column(db.String(80), nullable=True)
    # latencyMs, tokensIn, tokensOut, preset, fallbackWarning, edited...
    generation_params = db.Column(db.JSON, nullable=True)
    job_id = db.Column(db.Integer, db.ForeignKey("jobs.id", ondelete="SET NULL"), nullable=True)
    created_by = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    output = db.relationship("Output", back_populates="versions", foreign_keys=[output_id])

    __table_args__ = (
        db.UniqueConstraint("output_id", "version", name="uq_output_version"),
        db.CheckConstraint("version >= 1", name="ck_output_version_positive"),
        db.CheckConstraint("type IN ('GENERATED','MANUAL')", name="ck_output_version_type"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "output_id": self.output_id,
            "version": self.version,
            "content": self.content,
            "provider": self.provider,
            "model": self.model,
            "status": self.status,
            "type": self.type,
            "prompt_set_version": self.prompt_set_version,
            "generation_params": self.generation_params or {},
            "job_id": self.job_id,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<OutputVersion output={self.output_id} v{self.version} {self.type}>"
