"""
Project & Stage models.

A Project belongs to one Organization and owns an ordered list of
Stages created at bootstrap. Stages are never hard-deleted; their
status is the only lifecycle they have.

Stage status machine:
    NOT_STARTED → GENERATED → APPROVED | REGENERATED
    REGENERATED → APPROVED | REGENERATED
    APPROVED    → REGENERATED
    any         → NOT_STARTED   (cascading invalidation)
    BLOCKED is entered only when a caller enforces upstream gating.
"""

from datetime import datetime, timezone

from brandforge.models import db
from brandforge.models.base import OrgScopedModel


# ── Constants ────────────────────────────────────────────────────────────────

STAGE_STATUSES = {"NOT_STARTED", "GENERATED", "REGENERATED", "APPROVED", "BLOCKED"}

# Statuses that count as "has content" for gating
STAGE_DONE_STATUSES = {"GENERATED", "REGENERATED", "APPROVED"}

PROJECT_MODULES = ("venture", "brand", "strategy")


# ═══════════════════════════════════════════════════════════════
# 1. PROJECTS
# ═══════════════════════════════════════════════════════════════
class Project(OrgScopedModel):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    language = db.Column(db.String(10), default="en")
    module_venture = db.Column(db.Boolean, default=False)
    module_brand = db.Column(db.Boolean, default=False)
    module_strategy = db.Column(db.Boolean, default=False)
    created_by = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    stages = db.relationship(
        "Stage",
        back_populates="project",
        order_by="Stage.order",
        lazy="select",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_stages: bool = False):
        d = {
            "id": self.id,
            "org_id": self.org_id,
            "name": self.name,
            "description": self.description,
            "language": self.language,
            "modules": [
                m for m, on in (
                    ("venture", self.module_venture),
                    ("brand", self.module_brand),
                    ("strategy", self.module_strategy),
                ) if on
            ],
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_stages:
            d["stages"] = [s.to_dict() for s in self.stages]
        return d

    def __repr__(self):
        return f"<Project id={self.id} name={self.name!r}>"


# ═══════════════════════════════════════════════════════════════
# 2. STAGES
# ═══════════════════════════════════════════════════════════════
class Stage(db.Model):
    __tablename__ = "stages"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    stage_key = db.Column(db.String(60), nullable=False)
    display_key = db.Column(db.String(10), nullable=True)
    name = db.Column(db.String(200), nullable=False)
    module = db.Column(db.String(10), nullable=False)
    order = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="NOT_STARTED")
    # Sticky {provider, model, preset} override
    config = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    project = db.relationship("Project", back_populates="stages")

    __table_args__ = (
        db.UniqueConstraint("project_id", "stage_key", name="uq_stage_project_key"),
        db.CheckConstraint(
            "status IN ('NOT_STARTED','GENERATED','REGENERATED','APPROVED','BLOCKED')",
            name="ck_stage_status",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "stage_key": self.stage_key,
            "display_key": self.display_key,
            "name": self.name,
            "module": self.module,
            "order": self.order,
            "status": self.status,
            "config": self.config or {},
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Stage id={self.id} key={self.stage_key} status={self.status}>"
