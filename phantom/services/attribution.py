"""
Attribution Resolver — credits a recovered payment to outreach or to chance.

A click on a recovery link opens (or extends) a 24h attribution window on the
ghost. When the billing source later reports the invoice paid, the ghost is
marked recovered as "direct" if that window is still open, else "organic".

Both writes are single conditional UPDATEs, so they cannot clobber the Pulse
Engine's dispatch bookkeeping (disjoint columns) or re-credit a recovery.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, case, func, select, update

from phantom.config import settings
from phantom.database import async_session_factory, utcnow
from phantom.models.ghost_target import STATUS_RECOVERED, GhostTarget
from phantom.models.merchant import Merchant

logger = logging.getLogger("phantom.attribution")

RECOVERY_DIRECT = "direct"
RECOVERY_ORGANIC = "organic"

PAYMENT_SUCCESS_EVENTS = ("invoice.paid", "invoice.payment_succeeded")

HOSTED_INVOICE_URL = "https://invoice.stripe.com/i/{invoice_id}"
FALLBACK_BILLING_URL = "https://billing.stripe.com"


@dataclass
class PaymentResolution:
    invoice_id: str
    matched: bool = False
    recovered: bool = False
    already_recovered: bool = False
    recovery_type: Optional[str] = None
    amount: int = 0
    target_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def attribution_window() -> timedelta:
    return timedelta(hours=settings.attribution_window_hours)


def resolve_recovery_type(attribution_expires_at: Optional[datetime], now: datetime) -> str:
    if attribution_expires_at is not None and attribution_expires_at > now:
        return RECOVERY_DIRECT
    return RECOVERY_ORGANIC


def invoice_redirect_url(target: Optional[GhostTarget]) -> str:
    """Where a strike link lands: the hosted invoice page for real invoices."""
    if target is None or not target.invoice_id or target.invoice_id.startswith("impending_"):
        return FALLBACK_BILLING_URL
    return HOSTED_INVOICE_URL.format(invoice_id=target.invoice_id)


async def on_link_clicked(record_id: str, now: Optional[datetime] = None) -> Optional[GhostTarget]:
    """Open/extend the attribution window. Returns the target, or None if unknown."""
    now = now or utcnow()
    async with async_session_factory() as db:
        result = await db.execute(
            update(GhostTarget)
            .where(GhostTarget.id == record_id)
            .values(
                attribution_expires_at=now + attribution_window(),
                click_count=GhostTarget.click_count + 1,
                last_clicked_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if (result.rowcount or 0) == 0:
            logger.info("Click on unknown strike %s", record_id)
            return None
        target = await db.get(GhostTarget, record_id, populate_existing=True)

    logger.info("🖱️ Strike %s clicked — attribution window open until %s",
                record_id, target.attribution_expires_at.isoformat())
    return target


async def on_payment_confirmed(invoice_id: str, now: Optional[datetime] = None) -> PaymentResolution:
    """
    Mark the ghost for ``invoice_id`` recovered. Unknown invoices are a miss,
    already-recovered ghosts a no-op — neither is an error.
    """
    now = now or utcnow()
    resolution = PaymentResolution(invoice_id=invoice_id)

    window_open = and_(
        GhostTarget.attribution_expires_at.is_not(None),
        GhostTarget.attribution_expires_at > now,
    )

    async with async_session_factory() as db:
        result = await db.execute(
            update(GhostTarget)
            .where(GhostTarget.invoice_id == invoice_id, GhostTarget.status != STATUS_RECOVERED)
            .values(
                status=STATUS_RECOVERED,
                recovered_at=now,
                recovery_type=case((window_open, RECOVERY_DIRECT), else_=RECOVERY_ORGANIC),
            )
            .returning(GhostTarget.id, GhostTarget.merchant_id, GhostTarget.amount, GhostTarget.recovery_type)
            .execution_options(synchronize_session=False)
        )
        row = result.first()

        if row is None:
            await db.commit()
            existing = await db.execute(
                select(GhostTarget.id).where(GhostTarget.invoice_id == invoice_id)
            )
            target_id = existing.scalar_one_or_none()
            if target_id:
                resolution.matched = True
                resolution.already_recovered = True
                resolution.target_id = target_id
            else:
                logger.info("Payment for untracked invoice %s — no ghost to resolve", invoice_id)
            return resolution

        target_id, merchant_id, amount, recovery_type = row
        await db.execute(
            update(Merchant)
            .where(Merchant.id == merchant_id)
            .values(total_recovered_cents=func.coalesce(Merchant.total_recovered_cents, 0) + amount)
        )
        await db.commit()

    resolution.matched = True
    resolution.recovered = True
    resolution.recovery_type = recovery_type
    resolution.amount = amount
    resolution.target_id = target_id
    logger.info("💰 Ghost %s recovered (%s) — %d cents", invoice_id, recovery_type, amount)
    return resolution


async def handle_billing_event(event: dict) -> dict:
    """Webhook ingress: route payment-success events, acknowledge everything else."""
    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type not in PAYMENT_SUCCESS_EVENTS:
        return {"handled": False, "type": event_type}

    invoice_id = obj.get("id")
    if not invoice_id:
        return {"handled": False, "type": event_type, "reason": "missing invoice id"}

    resolution = await on_payment_confirmed(invoice_id)
    return {"handled": True, "type": event_type, **resolution.to_dict()}
