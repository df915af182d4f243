"""
Phantom Recovery — Distributed lock lease (one row per periodic job).
"""

from sqlalchemy import Column, String

from phantom.database import Base, UtcDateTime, utcnow


class CronLock(Base):
    __tablename__ = "cron_locks"

    job_name = Column(String(100), primary_key=True)
    holder_id = Column(String(64), nullable=False)  # opaque per-attempt token
    created_at = Column(UtcDateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<CronLock {self.job_name} held by {self.holder_id}>"
