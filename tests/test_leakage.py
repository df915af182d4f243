"""
Tests for leakage analytics — categories and rollups.
"""

from datetime import timedelta

from phantom.models.ghost_target import STATUS_IMPENDING, STATUS_RECOVERED
from phantom.services.leakage import (
    BANK_BOTTLENECK,
    HARD_DECLINE,
    UNKNOWN,
    WALLET_FRICTION,
    aggregate_by_category,
    categorize,
    get_leakage_report,
)
from tests.fakes import NOW


class TestCategorize:
    def test_known_codes(self):
        assert categorize("insufficient_funds") is WALLET_FRICTION
        assert categorize("STOLEN_CARD") is HARD_DECLINE
        assert categorize("do_not_honor") is BANK_BOTTLENECK

    def test_unknown(self):
        assert categorize(None) is UNKNOWN
        assert categorize("weird_code") is UNKNOWN

    def test_aggregate(self):
        rows = aggregate_by_category([
            ("insufficient_funds", 3000),
            ("insufficient_funds", 1000),
            ("stolen_card", 1000),
        ])
        assert [r["category"] for r in rows] == ["Wallet Friction", "Security / Hard Decline"]
        assert rows[0]["value"] == 4000
        assert rows[0]["count"] == 2
        assert rows[0]["percentage"] == 80
        assert rows[1]["recoverability"] == 15

    def test_aggregate_empty(self):
        assert aggregate_by_category([]) == []


class TestReport:
    async def test_rollups(self, merchant, ghost_factory):
        await ghost_factory("in_1", 3000, failure_code="insufficient_funds", discovered_at=NOW - timedelta(days=1))
        await ghost_factory("in_2", 2000, failure_code="expired_card", status=STATUS_RECOVERED,
                            discovered_at=NOW - timedelta(days=2))
        await ghost_factory("impending_sub", 5000, status=STATUS_IMPENDING, failure_code="card_expiring",
                            discovered_at=NOW - timedelta(days=1))

        report = await get_leakage_report(merchant.id, now=NOW)

        assert report["lifetime"] == {
            "leaked_cents": 5000,
            "recovered_cents": 2000,
            "ghost_count": 2,
            "recovered_count": 1,
        }
        assert report["impending_leakage_cents"] == 5000
        assert {c["category"] for c in report["categories"]} == {"Wallet Friction", "Expired Access"}

        march = report["monthly_trend"][-1]
        assert march == {"month": "2026-03", "leaked": 5000, "recovered": 2000}
        assert len(report["monthly_trend"]) == 6
        assert len(report["daily_pulse"]) == 30
        yesterday = (NOW - timedelta(days=1)).date().isoformat()
        assert {"date": yesterday, "leaked": 3000, "recovered": 0} in report["daily_pulse"]

    async def test_exclude_purged(self, merchant, ghost_factory):
        await ghost_factory("in_old", 1000, discovered_at=NOW - timedelta(days=100))
        await ghost_factory("in_new", 2000)
        everything = await get_leakage_report(merchant.id, now=NOW)
        live = await get_leakage_report(merchant.id, now=NOW, exclude_purged=True)
        assert everything["lifetime"]["leaked_cents"] == 3000
        assert live["lifetime"]["leaked_cents"] == 2000

    async def test_empty_merchant(self, merchant):
        report = await get_leakage_report(merchant.id, now=NOW)
        assert report["categories"] == []
        assert report["lifetime"]["ghost_count"] == 0
        assert report["default_currency"] == "usd"
