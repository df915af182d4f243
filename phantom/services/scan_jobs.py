"""
Async Job Tracker — persisted ScanJob state machine + the worker that drives it.

    pending ──claim──► processing ──► completed
                                 └──► failed

A POST /audits request only creates the row; the ScanJobWorker claims it with
a conditional UPDATE (exactly one claimer wins) and runs the Ghost Hunter.
Clients poll GET /scan-jobs/{id} until the job is terminal.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError as DBIntegrityError

from phantom.config import settings
from phantom.database import async_session_factory, utcnow
from phantom.models.merchant import Merchant
from phantom.models.scan_job import (
    ACTIVE_JOB_STATUSES,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_PROCESSING,
    ScanJob,
)

logger = logging.getLogger("phantom.scan_jobs")

CLAIM_PROGRESS = 5
MAX_RUNNING_PROGRESS = 99


class UnknownMerchantError(LookupError):
    """Audit requested for a merchant that was never connected."""


# ─── State transitions ─────────────────────────────────────────────────

async def get_active_job(merchant_id: str) -> Optional[ScanJob]:
    async with async_session_factory() as db:
        result = await db.execute(
            select(ScanJob)
            .where(ScanJob.merchant_id == merchant_id, ScanJob.status.in_(ACTIVE_JOB_STATUSES))
            .limit(1)
        )
        return result.scalar_one_or_none()


async def create_scan_job(merchant_id: str, force_sync: bool = False) -> tuple[ScanJob, bool]:
    """
    Queue an audit. Returns (job, created). When the merchant already has a
    pending/processing job, that job is returned with created=False.
    """
    existing = await get_active_job(merchant_id)
    if existing:
        logger.info("Audit for merchant %s already in flight (job #%d)", merchant_id, existing.id)
        return existing, False

    job = ScanJob(merchant_id=merchant_id, status=JOB_PENDING, progress=0, force_sync=force_sync)
    try:
        async with async_session_factory() as db:
            db.add(job)
            await db.commit()
            await db.refresh(job)
    except DBIntegrityError:
        # Lost the race against a concurrent request; partial unique index
        existing = await get_active_job(merchant_id)
        if existing is None:
            raise
        return existing, False

    logger.info("📝 Scan job #%d queued for merchant %s", job.id, merchant_id)
    return job, True


async def get_scan_job(job_id: int) -> Optional[ScanJob]:
    async with async_session_factory() as db:
        return await db.get(ScanJob, job_id)


async def start_audit(merchant_id: str, force_sync: bool = False) -> tuple[ScanJob, bool]:
    """Queue an audit for a known merchant. The worker picks it up asynchronously."""
    async with async_session_factory() as db:
        if await db.get(Merchant, merchant_id) is None:
            raise UnknownMerchantError(merchant_id)
    return await create_scan_job(merchant_id, force_sync=force_sync)


async def get_scan_job_status(job_id: int) -> Optional[dict]:
    job = await get_scan_job(job_id)
    return job.to_dict() if job else None


async def claim_job(job_id: int) -> bool:
    """pending → processing. False if someone else already claimed it."""
    async with async_session_factory() as db:
        result = await db.execute(
            update(ScanJob)
            .where(ScanJob.id == job_id, ScanJob.status == JOB_PENDING)
            .values(status=JOB_PROCESSING, progress=CLAIM_PROGRESS, started_at=utcnow())
        )
        await db.commit()
    return (result.rowcount or 0) == 1


async def claim_next_job() -> Optional[ScanJob]:
    """Claim the oldest pending job, retrying if another worker beats us to one."""
    for _ in range(5):
        async with async_session_factory() as db:
            result = await db.execute(
                select(ScanJob.id)
                .where(ScanJob.status == JOB_PENDING)
                .order_by(ScanJob.created_at, ScanJob.id)
                .limit(1)
            )
            job_id = result.scalar_one_or_none()
        if job_id is None:
            return None
        if await claim_job(job_id):
            return await get_scan_job(job_id)
    return None


async def update_progress(job_id: int, progress: int) -> None:
    """Raise progress; never lowers it and never reports 100 before completion."""
    progress = max(0, min(int(progress), MAX_RUNNING_PROGRESS))
    async with async_session_factory() as db:
        await db.execute(
            update(ScanJob)
            .where(
                ScanJob.id == job_id,
                ScanJob.status == JOB_PROCESSING,
                ScanJob.progress < progress,
            )
            .values(progress=progress)
        )
        await db.commit()


async def complete_job(job_id: int, error: Optional[str] = None) -> bool:
    """processing → completed. ``error`` carries a partial-scan note, if any."""
    async with async_session_factory() as db:
        result = await db.execute(
            update(ScanJob)
            .where(ScanJob.id == job_id, ScanJob.status == JOB_PROCESSING)
            .values(status=JOB_COMPLETED, progress=100, completed_at=utcnow(), error=error)
        )
        await db.commit()
    return (result.rowcount or 0) == 1


async def fail_job(job_id: int, error: str) -> bool:
    """processing → failed, keeping whatever progress was reached."""
    async with async_session_factory() as db:
        result = await db.execute(
            update(ScanJob)
            .where(ScanJob.id == job_id, ScanJob.status == JOB_PROCESSING)
            .values(status=JOB_FAILED, completed_at=utcnow(), error=(error or "Unknown error")[:2000])
        )
        await db.commit()
    return (result.rowcount or 0) == 1


# ─── Worker ────────────────────────────────────────────────────────────

class ScanJobWorker:
    """
    Background poller that claims pending scan jobs and runs them one at a time.

    ``runner`` is ``async fn(job) -> None`` and owns the terminal transition
    (complete_job / fail_job); the worker only guards against a runner that
    crashes without reaching one.
    """

    def __init__(
        self,
        runner: Optional[Callable[[ScanJob], Awaitable[None]]] = None,
        poll_interval: Optional[float] = None,
    ):
        self._runner = runner
        self._poll_interval = poll_interval or settings.scan_job_poll_interval_sec
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stats = {
            "jobs_completed": 0,
            "jobs_failed": 0,
            "last_poll": None,
            "started_at": None,
        }

    @property
    def stats(self) -> dict:
        return {**self._stats, "running": self._running}

    def start(self):
        if self._running:
            logger.warning("Scan job worker already running")
            return
        self._running = True
        self._stats["started_at"] = datetime.now(timezone.utc).isoformat()
        self._task = asyncio.create_task(self._loop())
        logger.info("🚀 Scan job worker started (poll=%ss)", self._poll_interval)

    def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
        logger.info("Scan job worker stopped")

    async def _loop(self):
        while self._running:
            try:
                while await self.run_once():
                    pass
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Scan job worker poll error: %s", e, exc_info=True)
            await asyncio.sleep(self._poll_interval)

    async def run_once(self) -> bool:
        """Claim and run one job. Returns False when the queue is empty."""
        self._stats["last_poll"] = datetime.now(timezone.utc).isoformat()
        job = await claim_next_job()
        if job is None:
            return False

        runner = self._runner or _default_runner
        try:
            await runner(job)
        except Exception as e:
            logger.error("Scan job #%d crashed: %s", job.id, e, exc_info=True)
            await fail_job(job.id, f"Internal error: {e}")

        final = await get_scan_job(job.id)
        if final and final.status == JOB_COMPLETED:
            self._stats["jobs_completed"] += 1
        else:
            if final and final.status == JOB_PROCESSING:
                await fail_job(job.id, "Worker exited without a terminal state")
            self._stats["jobs_failed"] += 1
        return True


async def _default_runner(job: ScanJob) -> None:
    from phantom.services.ghost_hunter import run_scan_job

    await run_scan_job(job)


_worker: Optional[ScanJobWorker] = None


def get_scan_worker() -> ScanJobWorker:
    global _worker
    if _worker is None:
        _worker = ScanJobWorker()
    return _worker
