from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from escrowpay.db import get_sessionmaker
from escrowpay.models.scheduler_lock import SchedulerLock
from escrowpay.services.scheduler_lock import (
    LOCK_NAME,
    describe_scheduler_lock,
    refresh_scheduler_lock,
    release_scheduler_lock,
    try_acquire_scheduler_lock,
)


def test_scheduler_lock_is_reentrant_for_owner():
    assert try_acquire_scheduler_lock() is True
    assert try_acquire_scheduler_lock() is True

    release_scheduler_lock()
    assert describe_scheduler_lock()["present"] is False


def test_lock_cannot_be_taken_if_not_expired(monkeypatch):
    monkeypatch.setattr("escrowpay.services.scheduler_lock._owner_id", lambda: "node-A")
    assert try_acquire_scheduler_lock(ttl_seconds=300)

    monkeypatch.setattr("escrowpay.services.scheduler_lock._owner_id", lambda: "node-B")
    assert try_acquire_scheduler_lock(ttl_seconds=300) is False
    assert refresh_scheduler_lock() is False

    release_scheduler_lock()
    assert describe_scheduler_lock()["owner"] == "node-A"


def test_lock_can_be_reacquired_after_expiry(monkeypatch):
    monkeypatch.setattr("escrowpay.services.scheduler_lock._owner_id", lambda: "node-A")
    assert try_acquire_scheduler_lock(ttl_seconds=60)

    session = get_sessionmaker()()
    with session.begin():
        lock = session.execute(select(SchedulerLock).where(SchedulerLock.name == LOCK_NAME)).scalar_one()
        lock.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    session.close()

    monkeypatch.setattr("escrowpay.services.scheduler_lock._owner_id", lambda: "node-B")
    assert try_acquire_scheduler_lock(ttl_seconds=300)
    assert describe_scheduler_lock()["status"] == "owned_by_self"

    release_scheduler_lock()


def test_describe_scheduler_lock_contains_expiry(monkeypatch):
    monkeypatch.setattr("escrowpay.services.scheduler_lock._owner_id", lambda: "node-A")
    assert try_acquire_scheduler_lock(ttl_seconds=60)
    assert refresh_scheduler_lock(ttl_seconds=120) is True

    info = describe_scheduler_lock()
    assert info.get("present") is True
    assert "age_seconds" in info
    assert 60 < info["expires_in_seconds"] <= 120
    assert info["stale"] is False

    release_scheduler_lock()
