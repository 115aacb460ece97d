"""
BrandForge Stage Engine
Output Versioning Store.

Append-only version history per (project, stage) output slot.
Version numbers start at 1 and grow by exactly 1; existing versions are
never edited or deleted. "Current" is the highest version unless a
version is pinned for viewing; "approved" is whichever version was last
explicitly approved.

New versions for the same stage must be serialized by the caller (the
orchestrator allows one in-flight job per project/stage).
"""

import logging

from sqlalchemy import func

from brandforge.core.exceptions import NotFoundError
from brandforge.models import db
from brandforge.models.output import Output, OutputVersion

logger = logging.getLogger(__name__)

RECENT_VERSIONS_LIMIT = 10


def output_key_for(stage_key: str) -> str:
    return f"{stage_key}_output"


def find_output(project_id: int, stage_id: int) -> Output | None:
    return Output.query.filter_by(project_id=project_id, stage_id=stage_id).first()


def ensure_output(project_id: int, stage_id: int, stage_key: str, stage_name: str) -> Output:
    """Return the stage's output slot, creating it on first use."""
    output = find_output(project_id, stage_id)
    if output:
        return output
    output = Output(
        project_id=project_id,
        stage_id=stage_id,
        output_key=output_key_for(stage_key),
        name=f"{stage_name} output",
    )
    db.session.add(output)
    db.session.flush()
    return output


def next_version_number(output_id: int) -> int:
    current = db.session.query(func.max(OutputVersion.version)).filter(
        OutputVersion.output_id == output_id
    ).scalar()
    return (current or 0) + 1


def append_version(output: Output, content: dict, *, provider: str | None, model: str | None,
                   version_type: str = "GENERATED", prompt_set_version: str | None = None,
                   generation_params: dict | None = None, job_id: int | None = None,
                   created_by: str | None = None) -> OutputVersion:
    """Append version max+1 to an output. Never touches earlier versions."""
    version = OutputVersion(
        output_id=output.id,
        version=next_version_number(output.id),
        content=content,
        provider=provider,
        model=model,
        status="GENERATED",
        type=version_type,
        prompt_set_version=prompt_set_version,
        generation_params=generation_params or {},
        job_id=job_id,
        created_by=created_by,
    )
    db.session.add(version)
    db.session.flush()
    logger.info("Output %s: created version %d (%s)", output.id, version.version, version_type)
    return version


def latest_version(output_id: int) -> OutputVersion | None:
    return (
        OutputVersion.query.filter_by(output_id=output_id)
        .order_by(OutputVersion.version.desc())
        .first()
    )


def get_version(output_id: int, version: int) -> OutputVersion:
    row = OutputVersion.query.filter_by(output_id=output_id, version=version).first()
    if not row:
        raise NotFoundError(resource="OutputVersion", resource_id=version)
    return row


def get_version_by_id(output_id: int, version_id: int) -> OutputVersion:
    row = OutputVersion.query.filter_by(output_id=output_id, id=version_id).first()
    if not row:
        raise NotFoundError(resource="OutputVersion", resource_id=version_id)
    return row


def recent_versions(output_id: int, limit: int = RECENT_VERSIONS_LIMIT) -> list[OutputVersion]:
    return (
        OutputVersion.query.filter_by(output_id=output_id)
        .order_by(OutputVersion.version.desc())
        .limit(limit)
        .all()
    )


def mark_approved(output: Output, version: OutputVersion) -> OutputVersion:
    """Point the output's approved pointer at a version and flag it APPROVED."""
    version.status = "APPROVED"
    output.approved_version_id = version.id
    db.session.flush()
    return version


def approved_version(output: Output) -> OutputVersion | None:
    if not output.approved_version_id:
        return None
    return db.session.get(OutputVersion, output.approved_version_id)
