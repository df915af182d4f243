"""
Sentinel — Lock-guarded periodic jobs.

Every replica may run a Sentinel. Each job tick first takes the job's lease
in ``cron_locks``; a replica that loses the race skips that tick (logged as
``skipped``, not an error). Whatever happens inside the tick, the lease is
released and one System Log entry is written.

Default jobs:
  ghost_hunter   every 12h — audits each merchant
  pulse_engine   every 1h  — dispatches recovery emails
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from phantom.config import settings
from phantom.services import locks
from phantom.services.system_log import LOG_FAILURE, LOG_SKIPPED, LOG_SUCCESS, append_system_log

logger = logging.getLogger("phantom.sentinel")

GHOST_HUNTER_JOB = "ghost_hunter"
PULSE_ENGINE_JOB = "pulse_engine"

INITIAL_DELAY_SEC = 10  # let the API finish booting before the first tick


@dataclass
class SentinelJob:
    name: str
    interval_sec: float
    tick: Callable[[], Awaitable[dict]]


@dataclass
class JobRunResult:
    job_name: str
    status: str
    details: Optional[dict] = None
    error: Optional[str] = None
    elapsed_sec: float = 0.0

    def to_dict(self) -> dict:
        return {
            "job_name": self.job_name,
            "status": self.status,
            "details": self.details or {},
            "error": self.error,
            "elapsed_sec": round(self.elapsed_sec, 2),
        }


async def _ghost_hunter_tick() -> dict:
    from phantom.services.ghost_hunter import run_ghost_hunter_tick

    return await run_ghost_hunter_tick()


async def _pulse_engine_tick() -> dict:
    from phantom.services.pulse_engine import run_pulse_tick

    return (await run_pulse_tick()).to_dict()


def default_jobs() -> list[SentinelJob]:
    return [
        SentinelJob(GHOST_HUNTER_JOB, settings.ghost_hunter_interval_sec, _ghost_hunter_tick),
        SentinelJob(PULSE_ENGINE_JOB, settings.pulse_engine_interval_sec, _pulse_engine_tick),
    ]


class Sentinel:
    """Runs each job on its own interval, one loop per job."""

    def __init__(self, jobs: Optional[list[SentinelJob]] = None, lock_ttl: Optional[timedelta] = None):
        self._jobs = {job.name: job for job in (jobs if jobs is not None else default_jobs())}
        self._lock_ttl = lock_ttl or timedelta(seconds=settings.lock_ttl_sec)
        self._tasks: dict[str, asyncio.Task] = {}
        self._running = False
        self._stats = {
            name: {"runs": 0, "skipped": 0, "failures": 0, "last_result": None}
            for name in self._jobs
        }

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs)

    def status(self) -> dict:
        return {
            "running": self._running,
            "jobs": {
                name: {"interval_sec": job.interval_sec, **self._stats[name]}
                for name, job in self._jobs.items()
            },
        }

    def start(self):
        if self._running:
            logger.warning("Sentinel already running")
            return
        self._running = True
        for name, job in self._jobs.items():
            self._tasks[name] = asyncio.create_task(self._loop(job))
        logger.info(
            "🛰️ Sentinel started: %s",
            ", ".join(f"{j.name}@{j.interval_sec}s" for j in self._jobs.values()),
        )

    def stop(self):
        self._running = False
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()
        logger.info("Sentinel stopped")

    async def _loop(self, job: SentinelJob):
        await asyncio.sleep(INITIAL_DELAY_SEC)
        while self._running:
            try:
                await self.run_job(job.name)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Sentinel loop error in %s: %s", job.name, e, exc_info=True)
            await asyncio.sleep(job.interval_sec)

    async def run_job(self, name: str) -> JobRunResult:
        """One lock-guarded tick. Raises KeyError for an unknown job name."""
        job = self._jobs[name]
        stats = self._stats[name]
        holder_id = locks.new_holder_id()

        if not await locks.acquire(name, holder_id, self._lock_ttl):
            logger.info("⏭️ %s tick skipped — lock held by another replica", name)
            stats["skipped"] += 1
            outcome = JobRunResult(name, LOG_SKIPPED, {"reason": "lock held"})
            await append_system_log(name, LOG_SKIPPED, outcome.details)
            stats["last_result"] = outcome.to_dict()
            return outcome

        started = time.perf_counter()
        try:
            details = await job.tick()
            outcome = JobRunResult(name, LOG_SUCCESS, details, elapsed_sec=time.perf_counter() - started)
            logger.info("✅ %s finished in %.1fs: %s", name, outcome.elapsed_sec, details)
        except Exception as e:
            outcome = JobRunResult(
                name, LOG_FAILURE, error=str(e) or type(e).__name__,
                elapsed_sec=time.perf_counter() - started,
            )
            stats["failures"] += 1
            logger.error("❌ %s failed: %s", name, e, exc_info=True)
        finally:
            await locks.release(name, holder_id)

        stats["runs"] += 1
        stats["last_result"] = {
            **outcome.to_dict(),
            "finished_at": datetime.now(timezone.utc).isoformat(),
        }
        await append_system_log(
            name,
            outcome.status,
            {**(outcome.details or {}), "elapsed_sec": round(outcome.elapsed_sec, 2)},
            outcome.error,
        )
        return outcome


_sentinel: Optional[Sentinel] = None


def get_sentinel() -> Sentinel:
    global _sentinel
    if _sentinel is None:
        _sentinel = Sentinel()
    return _sentinel
