"""
Phantom Recovery — Scan job model (async audit request state machine).
"""

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text, text

from phantom.database import Base, UtcDateTime, utcnow

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

ACTIVE_JOB_STATUSES = (JOB_PENDING, JOB_PROCESSING)
TERMINAL_JOB_STATUSES = (JOB_COMPLETED, JOB_FAILED)

_ACTIVE_PREDICATE = text("status IN ('pending', 'processing')")


class ScanJob(Base):
    """One audit request. Clients poll it while the worker advances it."""

    __tablename__ = "scan_jobs"
    __table_args__ = (
        # One in-flight audit per merchant
        Index(
            "uq_scan_jobs_active_merchant",
            "merchant_id",
            unique=True,
            sqlite_where=_ACTIVE_PREDICATE,
            postgresql_where=_ACTIVE_PREDICATE,
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    merchant_id = Column(String(36), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(20), nullable=False, default=JOB_PENDING)
    progress = Column(Integer, nullable=False, default=0)
    error = Column(Text)
    force_sync = Column(Boolean, nullable=False, default=False)  # Deep Harvest

    created_at = Column(UtcDateTime, default=utcnow)
    started_at = Column(UtcDateTime)
    completed_at = Column(UtcDateTime)

    def to_dict(self):
        return {
            "id": self.id,
            "merchant_id": self.merchant_id,
            "status": self.status,
            "progress": self.progress,
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f"<ScanJob #{self.id} {self.status} {self.progress}%>"
