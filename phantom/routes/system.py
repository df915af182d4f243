"""
Phantom Recovery — Sentinel and System Log API routes.
Manual job triggers (lock-guarded like the scheduled ticks) and health.
"""

import logging

from fastapi import APIRouter, HTTPException, Query

from phantom.schemas import JobRunResponse, SystemHealthResponse, SystemLogEntry
from phantom.services.scan_jobs import get_scan_worker
from phantom.services.scheduler import PULSE_ENGINE_JOB, get_sentinel
from phantom.services.system_log import LOG_FAILURE, get_last_runs, get_recent_logs

logger = logging.getLogger(__name__)
system_router = APIRouter(tags=["system"])


# ═══════════════════════════════════════════════════════
#  Manual triggers
# ═══════════════════════════════════════════════════════

@system_router.post("/pulse/run", response_model=JobRunResponse)
async def run_pulse():
    """Run one Pulse Engine tick now. Skipped if another replica holds the lock."""
    outcome = await get_sentinel().run_job(PULSE_ENGINE_JOB)
    return outcome.to_dict()


@system_router.post("/sentinel/{job_name}/run", response_model=JobRunResponse)
async def run_sentinel_job(job_name: str):
    sentinel = get_sentinel()
    if job_name not in sentinel.job_names:
        raise HTTPException(404, f"Unknown job '{job_name}'. Use one of: {', '.join(sentinel.job_names)}")
    logger.info("▶️ Manual run of %s requested", job_name)
    outcome = await sentinel.run_job(job_name)
    return outcome.to_dict()


# ═══════════════════════════════════════════════════════
#  Health & logs
# ═══════════════════════════════════════════════════════

@system_router.get("/system/health", response_model=SystemHealthResponse)
async def system_health():
    sentinel = get_sentinel()
    last_runs = await get_last_runs(sentinel.job_names)
    degraded = any(run and run["status"] == LOG_FAILURE for run in last_runs.values())
    return SystemHealthResponse(
        status="degraded" if degraded else "ok",
        last_runs=last_runs,
        sentinel=sentinel.status(),
        scan_worker=get_scan_worker().stats,
    )


@system_router.get("/system/logs", response_model=list[SystemLogEntry])
async def system_logs(
    job_name: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
):
    entries = await get_recent_logs(job_name=job_name, limit=limit)
    return [SystemLogEntry.model_validate(e) for e in entries]
