"""DB-backed lease so only one runner executes the escrow sweeps."""
from __future__ import annotations

import os
import socket
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from escrowpay import db
from escrowpay.models.scheduler_lock import SchedulerLock
from escrowpay.utils.time import ensure_utc, utcnow

LOCK_NAME = "escrow-sweeps"
LOCK_TTL_SECONDS = 300


def _session(db_session: Session | None = None) -> tuple[Session, bool]:
    if db_session is not None:
        return db_session, False
    return db.get_sessionmaker()(), True


def _owner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"[:64]


def try_acquire_scheduler_lock(
    name: str = LOCK_NAME,
    *,
    ttl_seconds: int = LOCK_TTL_SECONDS,
    db_session: Session | None = None,
) -> bool:
    """Take the lease when it is free, expired, or already ours."""

    session, should_close = _session(db_session)
    owner = _owner_id()
    now = utcnow()
    expires = now + timedelta(seconds=ttl_seconds)

    try:
        with session.begin():
            lock = session.execute(
                select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
            ).scalar_one_or_none()

            if lock is None:
                # a concurrent insert surfaces as IntegrityError on commit
                session.add(SchedulerLock(name=name, owner=owner, acquired_at=now, expires_at=expires))
                return True

            expires_at = ensure_utc(lock.expires_at)
            if expires_at is None or expires_at <= now or lock.owner == owner:
                if lock.owner != owner:
                    lock.owner = owner
                    lock.acquired_at = now
                lock.expires_at = expires
                return True
            return False
    except IntegrityError:
        session.rollback()
        return False
    finally:
        if should_close:
            session.close()


def refresh_scheduler_lock(
    name: str = LOCK_NAME, *, ttl_seconds: int = LOCK_TTL_SECONDS, db_session: Session | None = None
) -> bool:
    """Extend the lease when this runner holds it."""

    session, should_close = _session(db_session)
    owner = _owner_id()
    try:
        with session.begin():
            lock = session.execute(
                select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
            ).scalar_one_or_none()
            if lock is None or lock.owner != owner:
                return False
            lock.expires_at = utcnow() + timedelta(seconds=ttl_seconds)
            return True
    finally:
        if should_close:
            session.close()


def release_scheduler_lock(name: str = LOCK_NAME, *, db_session: Session | None = None) -> None:
    """Drop the lease if held by this runner."""

    session, should_close = _session(db_session)
    owner = _owner_id()
    try:
        context_manager = session.begin_nested() if session.in_transaction() else session.begin()
        with context_manager:
            lock = session.execute(
                select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
            ).scalar_one_or_none()
            if lock and lock.owner == owner:
                session.delete(lock)
    finally:
        if should_close:
            session.close()


def describe_scheduler_lock(name: str = LOCK_NAME, *, db_session: Session | None = None) -> dict[str, object]:
    """Return a lightweight description of the current lease for the health endpoint."""

    session, should_close = _session(db_session)
    try:
        lock = session.execute(select(SchedulerLock).where(SchedulerLock.name == name)).scalar_one_or_none()
        if lock is None:
            return {"status": "none", "owner": None, "present": False}

        now = utcnow()
        acquired_at = ensure_utc(lock.acquired_at)
        expires_at = ensure_utc(lock.expires_at)
        expires_in = (expires_at - now).total_seconds() if expires_at else None
        return {
            "status": "owned_by_self" if lock.owner == _owner_id() else "owned_by_other",
            "owner": lock.owner,
            "present": True,
            "age_seconds": (now - acquired_at).total_seconds() if acquired_at else None,
            "expires_in_seconds": expires_in,
            "stale": expires_in is not None and expires_in < -60,
        }
    finally:
        if should_close:
            session.close()


__all__ = [
    "LOCK_NAME",
    "describe_scheduler_lock",
    "refresh_scheduler_lock",
    "release_scheduler_lock",
    "try_acquire_scheduler_lock",
]
