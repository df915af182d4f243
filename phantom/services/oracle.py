"""
Liquidity Oracle — when do this merchant's customers actually pay?

The Ghost Hunter feeds it one sample per paid invoice (UTC weekday + hour of
``paid_at``). The most frequent (weekday, hour) bucket is the merchant's
*golden hour*; the Pulse Engine holds soft-decline recovery emails until the
clock is within ``golden_hour_buffer_hours`` of it on the same weekday.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError as DBIntegrityError

from phantom.config import settings
from phantom.database import async_session_factory
from phantom.models.liquidity_oracle import LiquidityOracleEntry

logger = logging.getLogger("phantom.oracle")

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


@dataclass(frozen=True)
class GoldenHour:
    day_of_week: int  # Monday=0
    hour_of_day: int  # UTC
    frequency: int

    def label(self) -> str:
        return f"{WEEKDAY_NAMES[self.day_of_week]} {self.hour_of_day:02d}:00 UTC"


async def record_payment_timing(
    merchant_id: str,
    invoice_id: str,
    paid_at: datetime,
    business_category: str = "default",
) -> bool:
    """Store one payment timing sample. False when the invoice was already sampled."""
    async with async_session_factory() as db:
        existing = await db.execute(
            select(LiquidityOracleEntry.id).where(LiquidityOracleEntry.invoice_id == invoice_id)
        )
        if existing.first() is not None:
            return False
        db.add(LiquidityOracleEntry(
            merchant_id=merchant_id,
            invoice_id=invoice_id,
            business_category=business_category,
            day_of_week=paid_at.weekday(),
            hour_of_day=paid_at.hour,
        ))
        try:
            await db.commit()
        except DBIntegrityError:
            # Concurrent scan sampled it first
            await db.rollback()
            return False
    logger.debug("📈 Oracle sample %s: %s %02d:00 UTC", invoice_id, paid_at.strftime("%A"), paid_at.hour)
    return True


async def get_golden_hour(merchant_id: str) -> Optional[GoldenHour]:
    """Most frequent payment (weekday, hour) for the merchant, or None without data."""
    count = func.count(LiquidityOracleEntry.id).label("frequency")
    async with async_session_factory() as db:
        result = await db.execute(
            select(LiquidityOracleEntry.day_of_week, LiquidityOracleEntry.hour_of_day, count)
            .where(LiquidityOracleEntry.merchant_id == merchant_id)
            .group_by(LiquidityOracleEntry.day_of_week, LiquidityOracleEntry.hour_of_day)
            .order_by(count.desc(), LiquidityOracleEntry.day_of_week, LiquidityOracleEntry.hour_of_day)
            .limit(1)
        )
        row = result.first()
    if row is None:
        return None
    return GoldenHour(day_of_week=row[0], hour_of_day=row[1], frequency=row[2])


def is_within_golden_hour(golden: Optional[GoldenHour], now: datetime, buffer_hours: Optional[int] = None) -> bool:
    """Same weekday and within the buffer of the golden hour. No golden hour means always open."""
    if golden is None:
        return True
    buffer_hours = settings.golden_hour_buffer_hours if buffer_hours is None else buffer_hours
    return now.weekday() == golden.day_of_week and abs(now.hour - golden.hour_of_day) <= buffer_hours


def next_golden_hour_window(golden: Optional[GoldenHour], now: datetime) -> Optional[datetime]:
    """Start of the next golden hour at or after ``now`` (the current hour counts)."""
    if golden is None:
        return None
    for day_offset in range(8):
        candidate = (now + timedelta(days=day_offset)).replace(
            hour=golden.hour_of_day, minute=0, second=0, microsecond=0
        )
        if candidate.weekday() == golden.day_of_week and candidate >= now.replace(minute=0, second=0, microsecond=0):
            return candidate
    return None
