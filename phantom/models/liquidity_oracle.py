"""
Phantom Recovery — Liquidity Oracle model.
One row per paid invoice: the UTC weekday and hour at which the customer paid.
"""

import uuid

from sqlalchemy import Column, ForeignKey, Integer, String

from phantom.database import Base, UtcDateTime, utcnow


class LiquidityOracleEntry(Base):
    """Payment timing sample harvested by the Ghost Hunter."""

    __tablename__ = "liquidity_oracle"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    merchant_id = Column(String(36), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    invoice_id = Column(String(255), nullable=False, unique=True)  # rescans must not double count
    business_category = Column(String(50), nullable=False, default="default")
    day_of_week = Column(Integer, nullable=False)  # Monday=0 ... Sunday=6
    hour_of_day = Column(Integer, nullable=False)  # 0-23 UTC
    recorded_at = Column(UtcDateTime, default=utcnow)

    def __repr__(self):
        return f"<LiquidityOracleEntry {self.invoice_id} d{self.day_of_week} h{self.hour_of_day}>"
