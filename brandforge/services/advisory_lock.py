"""
Named advisory locks.

A second, coarser mutual-exclusion layer on top of the job claim, used
to serialize high-value operations (one business-plan generation per
project at a time).

    - PostgreSQL: pg_try_advisory_lock / pg_advisory_unlock on a hash of
      the lock name
    - other databases: a conditional update on an ``advisory_locks`` row;
      a lock whose ``expires_at`` has passed may be taken over

Usage:
    with advisory_lock(f"bp:{org_id}:{project_id}", owner=user_id):
        ...  # raises StageLockedError when another holder has it
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, text
from sqlalchemy.exc import IntegrityError

from brandforge.core.exceptions import StageLockedError
from brandforge.models import db
from brandforge.models.job import AdvisoryLock

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 300


def _is_postgres() -> bool:
    return db.engine.dialect.name == "postgresql"


def try_acquire(name: str, owner: str, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS) -> bool:
    """Try to take a named lock without waiting. Returns True when acquired."""
    if _is_postgres():
        return bool(db.session.execute(
            text("SELECT pg_try_advisory_lock(hashtext(:name))"), {"name": name}
        ).scalar())

    now = datetime.now(timezone.utc)
    expires = now + timedelta(seconds=ttl_seconds)

    if db.session.get(AdvisoryLock, name) is None:
        try:
            with db.session.begin_nested():
                db.session.add(AdvisoryLock(name=name, owner=owner, acquired_at=now, expires_at=expires))
            return True
        except IntegrityError:
            # Another holder inserted the row first
            logger.debug("Advisory lock %s created concurrently", name)

    rows = AdvisoryLock.query.filter(
        AdvisoryLock.name == name,
        or_(AdvisoryLock.owner.is_(None), AdvisoryLock.expires_at < now),
    ).update(
        {"owner": owner, "acquired_at": now, "expires_at": expires},
        synchronize_session=False,
    )
    return rows == 1


def release(name: str, owner: str) -> None:
    if _is_postgres():
        db.session.execute(text("SELECT pg_advisory_unlock(hashtext(:name))"), {"name": name})
        return
    AdvisoryLock.query.filter_by(name=name, owner=owner).update(
        {"owner": None, "acquired_at": None, "expires_at": None},
        synchronize_session=False,
    )


@contextmanager
def advisory_lock(name: str, owner: str, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS):
    """Hold a named lock for the duration of the block, or raise StageLockedError."""
    if not try_acquire(name, owner, ttl_seconds):
        logger.info("Advisory lock %s is held by another run", name)
        raise StageLockedError(resource=name)
    try:
        yield
    finally:
        release(name, owner)
