"""
Tests for the Liquidity Oracle — payment timing samples and the golden hour.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from phantom.models.liquidity_oracle import LiquidityOracleEntry
from phantom.services.merchants import register_merchant
from phantom.services.oracle import (
    GoldenHour,
    get_golden_hour,
    is_within_golden_hour,
    next_golden_hour_window,
    record_payment_timing,
)
from tests.fakes import NOW, TEST_ACCESS_TOKEN

# NOW is Sunday 2026-03-15 12:00 UTC
TUESDAY_2PM = datetime(2026, 3, 10, 14, 30, tzinfo=timezone.utc)


class TestRecordPaymentTiming:
    async def test_stores_weekday_and_hour(self, merchant, verify_db):
        assert await record_payment_timing(merchant.id, "in_paid_1", NOW) is True

        async with verify_db() as vdb:
            entry = (await vdb.execute(select(LiquidityOracleEntry))).scalar_one()
        assert entry.merchant_id == merchant.id
        assert entry.day_of_week == 6
        assert entry.hour_of_day == 12
        assert entry.business_category == "default"

    async def test_same_invoice_counts_once(self, merchant, verify_db):
        assert await record_payment_timing(merchant.id, "in_paid_1", NOW)
        assert await record_payment_timing(merchant.id, "in_paid_1", NOW) is False

        async with verify_db() as vdb:
            rows = (await vdb.execute(select(LiquidityOracleEntry))).scalars().all()
        assert len(rows) == 1


class TestGoldenHour:
    async def test_no_data(self, merchant):
        assert await get_golden_hour(merchant.id) is None

    async def test_most_frequent_bucket_wins(self, merchant):
        await record_payment_timing(merchant.id, "in_a", TUESDAY_2PM)
        await record_payment_timing(merchant.id, "in_b", TUESDAY_2PM + timedelta(weeks=1, minutes=10))
        await record_payment_timing(merchant.id, "in_c", NOW)

        golden = await get_golden_hour(merchant.id)
        assert golden == GoldenHour(day_of_week=1, hour_of_day=14, frequency=2)
        assert golden.label() == "Tuesday 14:00 UTC"

    async def test_scoped_to_merchant(self, merchant, vault):
        other = await register_merchant("acct_other_002", TEST_ACCESS_TOKEN, vault=vault)
        await record_payment_timing(other.id, "in_x", TUESDAY_2PM)
        assert await get_golden_hour(merchant.id) is None


class TestSendWindow:
    def test_no_golden_hour_is_always_open(self):
        assert is_within_golden_hour(None, NOW)

    def test_buffer_on_same_weekday(self):
        golden = GoldenHour(day_of_week=6, hour_of_day=12, frequency=3)
        assert is_within_golden_hour(golden, NOW, buffer_hours=2)
        assert is_within_golden_hour(golden, NOW + timedelta(hours=2), buffer_hours=2)
        assert is_within_golden_hour(golden, NOW - timedelta(hours=2), buffer_hours=2)
        assert not is_within_golden_hour(golden, NOW + timedelta(hours=3), buffer_hours=2)

    def test_other_weekday_is_closed(self):
        golden = GoldenHour(day_of_week=6, hour_of_day=12, frequency=3)
        assert not is_within_golden_hour(golden, NOW + timedelta(days=1), buffer_hours=2)

    def test_buffer_defaults_to_settings(self, fast_settings, monkeypatch):
        golden = GoldenHour(day_of_week=6, hour_of_day=12, frequency=3)
        monkeypatch.setattr(fast_settings, "golden_hour_buffer_hours", 0)
        assert is_within_golden_hour(golden, NOW)
        assert not is_within_golden_hour(golden, NOW + timedelta(hours=1))


class TestNextWindow:
    def test_later_this_week(self):
        golden = GoldenHour(day_of_week=1, hour_of_day=14, frequency=2)
        assert next_golden_hour_window(golden, NOW) == datetime(2026, 3, 17, 14, 0, tzinfo=timezone.utc)

    def test_current_hour_counts(self):
        golden = GoldenHour(day_of_week=6, hour_of_day=12, frequency=2)
        assert next_golden_hour_window(golden, NOW + timedelta(minutes=20)) == NOW

    def test_passed_today_rolls_a_week(self):
        golden = GoldenHour(day_of_week=6, hour_of_day=10, frequency=2)
        assert next_golden_hour_window(golden, NOW) == datetime(2026, 3, 22, 10, 0, tzinfo=timezone.utc)

    def test_none_without_golden_hour(self):
        assert next_golden_hour_window(None, NOW) is None
