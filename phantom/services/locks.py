"""
Distributed Lock Manager — TTL-bound leases in the shared ``cron_locks`` table.

acquire() is a single conditional upsert:

    INSERT INTO cron_locks (job_name, holder_id, created_at) VALUES (...)
    ON CONFLICT (job_name) DO UPDATE SET holder_id = ..., created_at = ...
    WHERE cron_locks.created_at < :ttl_threshold
    RETURNING holder_id

A row comes back only when the lease was free or stale, so two replicas can
never both believe they hold it. release() deletes only the caller's own lease.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Optional

from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from phantom.database import async_session_factory, utcnow
from phantom.models.cron_lock import CronLock

logger = logging.getLogger("phantom.locks")

DEFAULT_TTL = timedelta(minutes=30)


def new_holder_id() -> str:
    """Opaque token unique to one acquisition attempt."""
    return uuid.uuid4().hex


def _upsert_for(dialect_name: str):
    if dialect_name == "postgresql":
        return pg_insert
    if dialect_name == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Lock manager has no conditional upsert for dialect {dialect_name!r}")


async def acquire(
    job_name: str,
    holder_id: str,
    ttl: timedelta = DEFAULT_TTL,
    now: Optional[datetime] = None,
) -> bool:
    """Take the lease for ``job_name`` if it is free or older than ``ttl``."""
    now = now or utcnow()
    threshold = now - ttl

    async with async_session_factory() as db:
        insert = _upsert_for(db.bind.dialect.name)
        stmt = insert(CronLock).values(job_name=job_name, holder_id=holder_id, created_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[CronLock.job_name],
            set_={"holder_id": holder_id, "created_at": now},
            where=CronLock.created_at < threshold,
        ).returning(CronLock.holder_id)

        result = await db.execute(stmt)
        row = result.first()
        await db.commit()

    acquired = row is not None and row[0] == holder_id
    if acquired:
        logger.debug("🔒 Lock %s acquired by %s", job_name, holder_id)
    return acquired


async def release(job_name: str, holder_id: str) -> bool:
    """Drop the lease, but only if ``holder_id`` still owns it."""
    async with async_session_factory() as db:
        result = await db.execute(
            delete(CronLock).where(
                CronLock.job_name == job_name,
                CronLock.holder_id == holder_id,
            )
        )
        await db.commit()

    released = (result.rowcount or 0) > 0
    if not released:
        logger.warning("Lock %s not released — no longer held by %s", job_name, holder_id)
    return released


async def get_lock(job_name: str) -> Optional[CronLock]:
    async with async_session_factory() as db:
        return await db.get(CronLock, job_name)


@asynccontextmanager
async def held_lock(job_name: str, ttl: timedelta = DEFAULT_TTL) -> AsyncIterator[Optional[str]]:
    """
    ``async with held_lock("ghost_hunter") as holder:`` — holder is None when
    another replica owns a live lease. The lease is always released on exit.
    """
    holder_id = new_holder_id()
    acquired = await acquire(job_name, holder_id, ttl)
    try:
        yield holder_id if acquired else None
    finally:
        if acquired:
            await release(job_name, holder_id)
