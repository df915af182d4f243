"""
Leakage analytics — where a merchant's failed revenue goes.

Failure codes are bucketed into five categories with a rough recoverability
score; totals are rolled up monthly and daily by discovery time.
"""

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import select

from phantom.database import async_session_factory, utcnow
from phantom.models.ghost_target import STATUS_IMPENDING, STATUS_RECOVERED, GhostTarget
from phantom.models.merchant import Merchant


@dataclass(frozen=True)
class LeakageCategory:
    name: str
    color: str
    recoverability: int  # percent
    codes: frozenset


WALLET_FRICTION = LeakageCategory("Wallet Friction", "#f59e0b", 85, frozenset({"insufficient_funds"}))
EXPIRED_ACCESS = LeakageCategory("Expired Access", "#8b5cf6", 70, frozenset({"expired_card"}))
HARD_DECLINE = LeakageCategory(
    "Security / Hard Decline", "#ef4444", 15,
    frozenset({"stolen_card", "fraudulent", "incorrect_cvc", "card_declined"}),
)
BANK_BOTTLENECK = LeakageCategory(
    "Bank Bottleneck", "#3b82f6", 60,
    frozenset({"generic_decline", "transaction_not_allowed", "processing_error", "do_not_honor"}),
)
UNKNOWN = LeakageCategory("Unknown", "#6b7280", 50, frozenset())

CATEGORIES = (WALLET_FRICTION, EXPIRED_ACCESS, HARD_DECLINE, BANK_BOTTLENECK, UNKNOWN)


def categorize(failure_code: Optional[str]) -> LeakageCategory:
    if not failure_code:
        return UNKNOWN
    code = failure_code.lower()
    for category in CATEGORIES:
        if code in category.codes:
            return category
    return UNKNOWN


def aggregate_by_category(ghosts: Iterable[tuple[Optional[str], int]]) -> list[dict]:
    """(failure_code, amount) pairs → non-empty categories, largest value first."""
    totals = {c.name: {"value": 0, "count": 0} for c in CATEGORIES}
    for failure_code, amount in ghosts:
        bucket = totals[categorize(failure_code).name]
        bucket["value"] += amount
        bucket["count"] += 1

    grand_total = sum(b["value"] for b in totals.values())
    rows = [
        {
            "category": c.name,
            "value": totals[c.name]["value"],
            "count": totals[c.name]["count"],
            "percentage": round(totals[c.name]["value"] / grand_total * 100) if grand_total else 0,
            "color": c.color,
            "recoverability": c.recoverability,
        }
        for c in CATEGORIES
        if totals[c.name]["count"] > 0
    ]
    return sorted(rows, key=lambda r: r["value"], reverse=True)


def _month_keys(now: datetime, months: int) -> list[str]:
    keys = []
    year, month = now.year, now.month
    for _ in range(months):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(keys))


async def get_leakage_report(
    merchant_id: str,
    now: Optional[datetime] = None,
    months: int = 6,
    days: int = 30,
    exclude_purged: bool = False,
) -> dict:
    """
    Lifetime totals, category split, monthly trend and daily pulse.
    ``exclude_purged`` drops ghosts already past their purge date.
    """
    now = now or utcnow()
    async with async_session_factory() as db:
        merchant = await db.get(Merchant, merchant_id)
        stmt = select(
            GhostTarget.failure_code,
            GhostTarget.amount,
            GhostTarget.status,
            GhostTarget.discovered_at,
        ).where(GhostTarget.merchant_id == merchant_id)
        if exclude_purged:
            stmt = stmt.where(GhostTarget.purge_at > now)
        rows = (await db.execute(stmt)).all()

    monthly = OrderedDict((k, {"month": k, "leaked": 0, "recovered": 0}) for k in _month_keys(now, months))
    day_keys = [(now - timedelta(days=i)).date().isoformat() for i in reversed(range(days))]
    daily = OrderedDict((k, {"date": k, "leaked": 0, "recovered": 0}) for k in day_keys)

    lifetime = {"leaked_cents": 0, "recovered_cents": 0, "ghost_count": 0, "recovered_count": 0}
    impending_cents = 0
    failed = []

    for failure_code, amount, status, discovered_at in rows:
        if status == STATUS_IMPENDING:
            impending_cents += amount
            continue
        failed.append((failure_code, amount))
        recovered = status == STATUS_RECOVERED
        lifetime["leaked_cents"] += amount
        lifetime["ghost_count"] += 1
        if recovered:
            lifetime["recovered_cents"] += amount
            lifetime["recovered_count"] += 1

        for bucket in (
            monthly.get(discovered_at.strftime("%Y-%m")),
            daily.get(discovered_at.date().isoformat()),
        ):
            if bucket:
                bucket["leaked"] += amount
                if recovered:
                    bucket["recovered"] += amount

    return {
        "merchant_id": merchant_id,
        "default_currency": merchant.default_currency if merchant else "usd",
        "lifetime": lifetime,
        "impending_leakage_cents": impending_cents,
        "categories": aggregate_by_category(failed),
        "monthly_trend": list(monthly.values()),
        "daily_pulse": list(daily.values()),
    }
