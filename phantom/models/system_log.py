"""
Phantom Recovery — System log model.
Append-only audit trail of Sentinel job executions.
"""

import uuid

from sqlalchemy import JSON, Column, String, Text

from phantom.database import Base, UtcDateTime, utcnow


class SystemLog(Base):
    """Immutable record of one job execution (success, failure, or skipped tick)."""

    __tablename__ = "system_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    job_name = Column(String(100), nullable=False, index=True)  # "ghost_hunter", "pulse_engine", ...
    status = Column(String(20), nullable=False)                 # "success", "failure", "skipped"
    details = Column(JSON, default=dict)                        # summary counters
    error = Column(Text)
    created_at = Column(UtcDateTime, default=utcnow, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "status": self.status,
            "details": self.details or {},
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<SystemLog {self.job_name} — {self.status}>"
