"""
System Log — append-only job execution trail + health summary.
"""

import logging
from typing import Optional

from sqlalchemy import select

from phantom.database import async_session_factory
from phantom.models.system_log import SystemLog

logger = logging.getLogger("phantom.system_log")

LOG_SUCCESS = "success"
LOG_FAILURE = "failure"
LOG_SKIPPED = "skipped"


async def append_system_log(
    job_name: str,
    status: str,
    details: Optional[dict] = None,
    error: Optional[str] = None,
) -> SystemLog:
    """Record one job execution. Never updates an existing row."""
    entry = SystemLog(
        job_name=job_name,
        status=status,
        details=details or {},
        error=error[:2000] if error else None,
    )
    async with async_session_factory() as db:
        db.add(entry)
        await db.commit()
    return entry


async def get_recent_logs(job_name: Optional[str] = None, limit: int = 50) -> list[SystemLog]:
    async with async_session_factory() as db:
        stmt = select(SystemLog).order_by(SystemLog.created_at.desc()).limit(limit)
        if job_name:
            stmt = stmt.where(SystemLog.job_name == job_name)
        result = await db.execute(stmt)
        return list(result.scalars().all())


async def get_last_runs(job_names: list[str]) -> dict:
    """Most recent log entry per job name (None if the job never ran)."""
    runs: dict = {}
    async with async_session_factory() as db:
        for name in job_names:
            result = await db.execute(
                select(SystemLog)
                .where(SystemLog.job_name == name)
                .order_by(SystemLog.created_at.desc())
                .limit(1)
            )
            entry = result.scalar_one_or_none()
            runs[name] = entry.to_dict() if entry else None
    return runs
