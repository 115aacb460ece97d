"""
BrandForge Stage Engine
Tests: named advisory locks (row-based implementation used on SQLite).
"""

from datetime import datetime, timedelta, timezone

import pytest

from brandforge.core.exceptions import StageLockedError
from brandforge.models import db
from brandforge.models.job import AdvisoryLock
from brandforge.services.advisory_lock import advisory_lock, release, try_acquire


LOCK = "business-plan:1:1"


class TestTryAcquire:
    """Non-blocking acquisition."""

    def test_first_caller_wins(self):
        assert try_acquire(LOCK, "alice") is True
        assert try_acquire(LOCK, "bob") is False
        assert db.session.get(AdvisoryLock, LOCK).owner == "alice"

    def test_release_frees_the_lock(self):
        try_acquire(LOCK, "alice")
        release(LOCK, "alice")
        assert try_acquire(LOCK, "bob") is True

    def test_release_by_non_owner_is_noop(self):
        try_acquire(LOCK, "alice")
        release(LOCK, "bob")
        assert try_acquire(LOCK, "carol") is False

    def test_expired_lock_can_be_taken_over(self):
        try_acquire(LOCK, "alice")
        AdvisoryLock.query.filter_by(name=LOCK).update(
            {"expires_at": datetime.now(timezone.utc) - timedelta(seconds=5)},
        )
        db.session.flush()
        assert try_acquire(LOCK, "bob") is True
        db.session.expire_all()
        assert db.session.get(AdvisoryLock, LOCK).owner == "bob"

    def test_independent_names(self):
        assert try_acquire("a", "alice") is True
        assert try_acquire("b", "bob") is True


class TestContextManager:
    """``with advisory_lock(...)``."""

    def test_held_for_block_then_released(self):
        with advisory_lock(LOCK, owner="alice"):
            assert try_acquire(LOCK, "bob") is False
        db.session.expire_all()
        assert db.session.get(AdvisoryLock, LOCK).owner is None

    def test_contended_raises(self):
        try_acquire(LOCK, "alice")
        with pytest.raises(StageLockedError) as exc:
            with advisory_lock(LOCK, owner="bob"):
                pytest.fail("block must not run")
        assert exc.value.code == "STAGE_LOCKED"
        assert LOCK in str(exc.value)

    def test_released_when_block_raises(self):
        with pytest.raises(RuntimeError):
            with advisory_lock(LOCK, owner="alice"):
                raise RuntimeError("boom")
        assert try_acquire(LOCK, "bob") is True
