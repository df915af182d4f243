"""
Pulse Engine — Recovery email dispatch.

Each tick selects ghosts that are:
  - still actionable (pending / impending)
  - past the grace period since discovery (the platform's own retry goes first)
  - under the email cap
  - not yet due for purge

and asks the mailer to nudge them. Bookkeeping happens only after the mailer
reports success, in one conditional UPDATE that also flips the ghost to
``exhausted`` on its last allowed email. A ghost recovered mid-tick is left
alone because the UPDATE requires an actionable status.

Timing: for merchants on the ``oracle`` send strategy, soft-decline recovery
emails wait for the merchant's golden hour (see services/oracle.py). Hard
declines and impending-expiry warnings go out immediately. A held ghost is
counted as ``deferred``, not failed, and is picked up by a later tick.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import case, select, update

from phantom.config import settings
from phantom.database import async_session_factory, utcnow
from phantom.models.ghost_target import (
    ACTIONABLE_STATUSES,
    STATUS_EXHAUSTED,
    STATUS_IMPENDING,
    GhostTarget,
)
from phantom.models.merchant import SEND_STRATEGY_ORACLE, Merchant
from phantom.services.ghost_hunter import DECLINE_HARD
from phantom.services.mailer import Mailer, RecoveryMessage, get_mailer
from phantom.services.oracle import GoldenHour, get_golden_hour, is_within_golden_hour, next_golden_hour_window
from phantom.services.vault import IntegrityError, Vault, get_vault

logger = logging.getLogger("phantom.pulse")

EMAIL_CAP = 3  # hard ceiling, mirrored by the ghost_targets CHECK constraint


def grace_period() -> timedelta:
    return timedelta(hours=settings.grace_period_hours)


def max_attempts() -> int:
    return min(settings.max_email_attempts, EMAIL_CAP)


def tracking_url(target_id: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}/api/v1/l/{target_id}"


def is_eligible(target: GhostTarget, now: datetime) -> bool:
    """Python mirror of the SQL selection in get_eligible_targets()."""
    return (
        target.status in ACTIONABLE_STATUSES
        and (target.email_count or 0) < max_attempts()
        and target.discovered_at is not None
        and target.discovered_at <= now - grace_period()
        and (target.purge_at is None or target.purge_at > now)
    )


async def get_eligible_targets(now: Optional[datetime] = None, limit: Optional[int] = None) -> list[GhostTarget]:
    now = now or utcnow()
    async with async_session_factory() as db:
        result = await db.execute(
            select(GhostTarget)
            .where(
                GhostTarget.status.in_(ACTIONABLE_STATUSES),
                GhostTarget.email_count < max_attempts(),
                GhostTarget.discovered_at <= now - grace_period(),
                GhostTarget.purge_at > now,
            )
            .order_by(GhostTarget.discovered_at)
            .limit(limit or settings.pulse_batch_size)
        )
        return list(result.scalars().all())


async def record_dispatch(target_id: str, now: Optional[datetime] = None) -> Optional[tuple[int, str]]:
    """
    Book one sent email. Returns (email_count, status) after the update, or
    None if the ghost stopped being actionable in the meantime.
    """
    now = now or utcnow()
    cap = max_attempts()
    async with async_session_factory() as db:
        result = await db.execute(
            update(GhostTarget)
            .where(
                GhostTarget.id == target_id,
                GhostTarget.status.in_(ACTIONABLE_STATUSES),
                GhostTarget.email_count < cap,
            )
            .values(
                email_count=GhostTarget.email_count + 1,
                last_emailed_at=now,
                status=case(
                    (GhostTarget.email_count + 1 >= cap, STATUS_EXHAUSTED),
                    else_=GhostTarget.status,
                ),
            )
            .returning(GhostTarget.email_count, GhostTarget.status)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        await db.commit()
    return (row[0], row[1]) if row else None


@dataclass
class PulseResult:
    targets_processed: int = 0
    emails_sent: int = 0
    emails_failed: int = 0
    skipped: int = 0
    deferred: int = 0
    exhausted: int = 0
    recovery_emails: int = 0
    protection_emails: int = 0
    dry_run: int = 0
    next_golden_hour: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _uses_golden_hour(target: GhostTarget, merchant: Optional[Merchant], protection: bool) -> bool:
    if protection or target.decline_type == DECLINE_HARD or merchant is None:
        return False
    return (merchant.send_strategy or SEND_STRATEGY_ORACLE) == SEND_STRATEGY_ORACLE


async def _merchant_profiles(merchant_ids: set[str]) -> dict[str, Merchant]:
    if not merchant_ids:
        return {}
    async with async_session_factory() as db:
        result = await db.execute(select(Merchant).where(Merchant.id.in_(merchant_ids)))
        return {m.id: m for m in result.scalars().all()}


async def run_pulse_tick(
    mailer: Optional[Mailer] = None,
    vault: Optional[Vault] = None,
    now: Optional[datetime] = None,
) -> PulseResult:
    """One dispatch pass over all eligible ghosts."""
    mailer = mailer or get_mailer()
    vault = vault or get_vault()
    now = now or utcnow()
    stats = PulseResult()

    targets = await get_eligible_targets(now)
    if not targets:
        logger.info("Pulse: no eligible ghosts")
        return stats

    merchants = await _merchant_profiles({t.merchant_id for t in targets})
    golden_hours: dict[str, Optional[GoldenHour]] = {}
    next_window: Optional[datetime] = None

    for target in targets:
        stats.targets_processed += 1
        merchant = merchants.get(target.merchant_id)
        protection = target.status == STATUS_IMPENDING

        if _uses_golden_hour(target, merchant, protection):
            if target.merchant_id not in golden_hours:
                golden_hours[target.merchant_id] = await get_golden_hour(target.merchant_id)
            golden = golden_hours[target.merchant_id]
            if not is_within_golden_hour(golden, now):
                stats.deferred += 1
                window = next_golden_hour_window(golden, now)
                if window and (next_window is None or window < next_window):
                    next_window = window
                logger.debug("🕰️ Ghost %s held for golden hour %s", target.id, golden.label())
                continue

        if target.pii is None:
            logger.warning("Ghost %s has no PII record — skipping", target.id)
            stats.skipped += 1
            continue

        try:
            email = vault.decrypt(target.pii.email_ciphertext, target.pii.email_iv, target.pii.email_tag)
            name = None
            if target.pii.name_ciphertext:
                name = vault.decrypt(target.pii.name_ciphertext, target.pii.name_iv, target.pii.name_tag)
        except IntegrityError as e:
            logger.error("🔐 PII integrity failure on ghost %s: %s", target.id, e)
            stats.emails_failed += 1
            continue

        message = RecoveryMessage(
            target_id=target.id,
            to_email=email,
            customer_name=name,
            business_name=merchant.business_name if merchant else None,
            support_email=merchant.support_email if merchant else None,
            amount=target.amount,
            currency=target.currency or "usd",
            link_url=tracking_url(target.id),
            strategy=target.recovery_strategy,
            decline_type=target.decline_type,
            attempt=(target.email_count or 0) + 1,
            protection=protection,
        )

        sent = await mailer.send_recovery_email(message)
        if not sent.ok:
            logger.warning("Send failed for ghost %s: %s", target.id, sent.error)
            stats.emails_failed += 1
            continue

        booked = await record_dispatch(target.id, now)
        if booked is None:
            # Recovered or exhausted by someone else while we were sending
            stats.skipped += 1
            continue

        email_count, status = booked
        stats.emails_sent += 1
        stats.dry_run += int(sent.dry_run)
        if protection:
            stats.protection_emails += 1
        else:
            stats.recovery_emails += 1
        if status == STATUS_EXHAUSTED:
            stats.exhausted += 1
            logger.info("🪦 Ghost %s exhausted after %d emails", target.id, email_count)

        if settings.pulse_send_delay_sec:
            await asyncio.sleep(settings.pulse_send_delay_sec)

    if next_window:
        stats.next_golden_hour = next_window.isoformat()
    logger.info(
        "Pulse processed %d ghosts: %d sent, %d failed, %d deferred, %d exhausted",
        stats.targets_processed, stats.emails_sent, stats.emails_failed, stats.deferred, stats.exhausted,
    )
    return stats
