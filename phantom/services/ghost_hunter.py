"""
Ghost Hunter — Merchant invoice audit engine.

Walks a merchant's invoice history through the Billing Source Adapter and
turns every unpaid invoice of a still-subscribed customer into a GhostTarget:

  invoice ──► subscription check ──► risk metadata ──► decline type
          ──► recovery strategy ──► vault(PII) ──► upsert by invoice id

Pacing: records are processed in batches of SCAN_BATCH_SIZE; after each batch
the scan pauses briefly and logs a heartbeat. A rate-limited adapter call is
retried once after a short backoff; a second failure only skips that record.

Failure handling:
  - vault pre-flight fails       → abort before any external call
  - billing source unreachable   → abort (ScanJob → failed), partial ghosts kept
    (network error, 5xx, rejected credential)
  - still rate limited, or a
    later page unreadable        → stop paging, audit "partial", watermark kept
  - one record fails             → skipped, counted in the summary
  - anything unexpected          → ScanJob failed; the Sentinel tick moves on

Paid invoices feed the Liquidity Oracle with their payment time.

After the invoice pass, a proactive pass flags active subscriptions whose
card expires this month or next as ``impending`` ghosts.
"""

import asyncio
import logging
import resource
import sys
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError as DBIntegrityError

from phantom.config import settings
from phantom.database import async_session_factory, utcnow
from phantom.models.ghost_target import (
    STATUS_IMPENDING,
    STATUS_PENDING,
    STATUS_RECOVERED,
    GhostTarget,
    PiiRecord,
)
from phantom.models.merchant import Merchant
from phantom.models.scan_job import ScanJob
from phantom.services.attribution import on_payment_confirmed
from phantom.services.billing import (
    AdapterError,
    BillingSource,
    InvoiceRecord,
    RateLimitError,
    SourceUnreachableError,
    SubscriptionRecord,
    get_billing_source,
)
from phantom.services.merchants import get_merchant, get_merchant_credential, list_merchant_ids
from phantom.services.oracle import record_payment_timing
from phantom.services.scan_jobs import claim_job, complete_job, create_scan_job, fail_job, update_progress
from phantom.services.system_log import LOG_FAILURE, LOG_SUCCESS, append_system_log
from phantom.services.vault import IntegrityError, Vault, VaultError, get_vault, redact_email

logger = logging.getLogger("phantom.hunter")

SCAN_LOG_NAME = "ghost_hunter_scan"

# ─── Decline taxonomy ──────────────────────────────────────────────────
HARD_DECLINE_CODES = frozenset({
    "expired_card", "lost_card", "stolen_card", "incorrect_number",
    "invalid_cvc", "incorrect_cvc", "card_not_supported", "card_declined",
    "pickup_card", "fraudulent",
})
SOFT_DECLINE_CODES = frozenset({
    "insufficient_funds", "card_velocity_exceeded", "try_again_later",
    "processing_error", "reenter_transaction", "do_not_honor", "generic_decline",
})

DECLINE_SOFT = "soft"
DECLINE_HARD = "hard"

UNPAID_INVOICE_STATUSES = ("open", "uncollectible")
PAID_INVOICE_STATUS = "paid"

# ─── Recovery strategies ───────────────────────────────────────────────
STRATEGY_TECHNICAL_BRIDGE = "technical_bridge"
STRATEGY_HIGH_VALUE_MANUAL = "high_value_manual"
STRATEGY_CARD_REFRESH = "card_refresh"
STRATEGY_SMART_RETRY = "smart_retry"

IMPENDING_PREFIX = "impending_"
IMPENDING_FAILURE_CODE = "card_expiring"

WEEKS_PER_MONTH = 4.33
DAYS_PER_MONTH = 30


def classify_decline(code: Optional[str]) -> Optional[str]:
    """hard for permanent card failures, soft for everything else; None without a code."""
    if not code:
        return None
    code = code.lower()
    if code in HARD_DECLINE_CODES:
        return DECLINE_HARD
    if code not in SOFT_DECLINE_CODES:
        logger.debug("Unknown decline code %r — treating as soft", code)
    return DECLINE_SOFT


def determine_recovery_strategy(
    requires_3ds: bool,
    amount: int,
    decline_type: Optional[str],
    high_value_threshold: Optional[int] = None,
) -> str:
    """First match wins: 3DS > high value > hard decline > retry."""
    threshold = settings.high_value_threshold_cents if high_value_threshold is None else high_value_threshold
    if requires_3ds:
        return STRATEGY_TECHNICAL_BRIDGE
    if amount >= threshold:
        return STRATEGY_HIGH_VALUE_MANUAL
    if decline_type == DECLINE_HARD:
        return STRATEGY_CARD_REFRESH
    return STRATEGY_SMART_RETRY


def card_expires_soon(exp_month: Optional[int], exp_year: Optional[int], now: datetime) -> bool:
    """True if the card expires in the current or the following calendar month."""
    if not exp_month or not exp_year:
        return False
    next_month = (now.year + (now.month // 12), now.month % 12 + 1)
    return (exp_year, exp_month) in ((now.year, now.month), next_month)


def monthly_amount(sub: SubscriptionRecord) -> int:
    """Normalise a subscription price to minor units per month."""
    base = sub.unit_amount * max(sub.quantity, 1)
    count = max(sub.interval_count, 1)
    if sub.interval == "year":
        return round(base / (12 * count))
    if sub.interval == "week":
        return round(base * WEEKS_PER_MONTH / count)
    if sub.interval == "day":
        return round(base * DAYS_PER_MONTH / count)
    return round(base / count)


# ─── Telemetry ─────────────────────────────────────────────────────────

def _peak_rss_mb() -> float:
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # bytes on macOS, kilobytes on Linux
    return peak / (1024 * 1024) if sys.platform == "darwin" else peak / 1024


@dataclass
class ScanTelemetry:
    """Counters owned by one scan call and passed down explicitly."""

    started: float = field(default_factory=time.perf_counter)
    records_processed: int = 0
    peak_rss_mb: float = 0.0
    last_encrypt_ms: float = 0.0
    total_upsert_ms: float = 0.0
    upsert_count: int = 0

    @property
    def avg_upsert_ms(self) -> float:
        return self.total_upsert_ms / self.upsert_count if self.upsert_count else 0.0

    @property
    def elapsed_sec(self) -> float:
        return time.perf_counter() - self.started

    def record_upsert(self, elapsed_ms: float) -> None:
        self.total_upsert_ms += elapsed_ms
        self.upsert_count += 1

    def sample_memory(self) -> None:
        self.peak_rss_mb = max(self.peak_rss_mb, _peak_rss_mb())

    def heartbeat(self, merchant_id: str) -> None:
        self.sample_memory()
        logger.info(
            "💓 [%s] processed=%d peak=%.1fMB encrypt=%.2fms avg_upsert=%.2fms",
            merchant_id, self.records_processed, self.peak_rss_mb,
            self.last_encrypt_ms, self.avg_upsert_ms,
        )


@dataclass
class ScanResult:
    merchant_id: str
    total_scanned: int = 0
    ghosts_found: int = 0
    ghosts_created: int = 0
    ghosts_updated: int = 0
    impending_found: int = 0
    recovered_backup: int = 0
    oracle_data_points: int = 0
    skipped_inactive: int = 0
    skipped_no_email: int = 0
    skipped_capacity: int = 0
    records_failed: int = 0
    unpaid_candidates: int = 0
    gross_invoiced_cents: int = 0
    currency: Optional[str] = None
    pagination_complete: bool = True
    errors: list = field(default_factory=list)
    telemetry: ScanTelemetry = field(default_factory=ScanTelemetry)

    def summary(self) -> dict:
        t = self.telemetry
        return {
            "merchant_id": self.merchant_id,
            "scanned": self.total_scanned,
            "ghosts": self.ghosts_found,
            "created": self.ghosts_created,
            "updated": self.ghosts_updated,
            "impending": self.impending_found,
            "recovered_backup": self.recovered_backup,
            "oracle_data_points": self.oracle_data_points,
            "failed_records": self.records_failed,
            "funnel": {
                "total": self.unpaid_candidates,
                "recurring": self.unpaid_candidates - self.skipped_inactive,
                "skipped": self.skipped_inactive + self.skipped_no_email + self.skipped_capacity,
            },
            "elapsed_sec": round(t.elapsed_sec, 2),
            "peak_rss_mb": round(t.peak_rss_mb, 1),
            "avg_upsert_ms": round(t.avg_upsert_ms, 2),
            "errors": list(self.errors),
            "summary": (
                f"Scanned {self.total_scanned} invoices, found {self.ghosts_found} ghosts "
                f"({self.impending_found} impending) in {t.elapsed_sec:.1f}s"
            ),
        }


class ScanAbortedError(Exception):
    """The scan cannot proceed at all (vault broken, merchant gone, source unreadable)."""


@dataclass
class GhostCandidate:
    """Everything needed to upsert one ghost; email/name are plaintext until sealed."""

    invoice_id: str
    amount: int
    currency: str
    customer_id: Optional[str]
    email: str
    name: Optional[str] = None
    status: str = STATUS_PENDING
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    decline_type: Optional[str] = None
    recovery_strategy: str = STRATEGY_SMART_RETRY
    card_brand: Optional[str] = None
    card_funding: Optional[str] = None
    country: Optional[str] = None
    requires_3ds: bool = False
    error_code: Optional[str] = None


# ─── Storage ───────────────────────────────────────────────────────────

def _apply_classification(target: GhostTarget, c: GhostCandidate) -> None:
    target.failure_code = c.failure_code
    target.failure_message = c.failure_message
    target.decline_type = c.decline_type
    target.recovery_strategy = c.recovery_strategy
    target.card_brand = c.card_brand
    target.card_funding = c.card_funding
    target.country = (c.country or "")[:2] or None
    target.requires_3ds = c.requires_3ds
    target.error_code = c.error_code


def _apply_pii(pii: PiiRecord, vault: Vault, c: GhostCandidate) -> None:
    email = vault.encrypt(c.email)
    pii.email_ciphertext, pii.email_iv, pii.email_tag = email.ciphertext, email.iv, email.tag
    if c.name:
        name = vault.encrypt(c.name)
        pii.name_ciphertext, pii.name_iv, pii.name_tag = name.ciphertext, name.iv, name.tag


async def _upsert_once(
    merchant_id: str,
    candidate: GhostCandidate,
    vault: Vault,
    telemetry: ScanTelemetry,
    now: datetime,
) -> tuple[GhostTarget, bool]:
    purge_at = now + timedelta(days=settings.purge_after_days)
    t0 = time.perf_counter()
    async with async_session_factory() as db:
        result = await db.execute(
            select(GhostTarget).where(GhostTarget.invoice_id == candidate.invoice_id)
        )
        target = result.scalar_one_or_none()
        created = target is None

        enc_start = time.perf_counter()
        if created:
            pii = PiiRecord(id=str(uuid.uuid4()), merchant_id=merchant_id)
            _apply_pii(pii, vault, candidate)
            target = GhostTarget(
                id=str(uuid.uuid4()),
                merchant_id=merchant_id,
                pii=pii,
                invoice_id=candidate.invoice_id,
                customer_id=candidate.customer_id,
                amount=candidate.amount,
                currency=candidate.currency,
                status=candidate.status,
                email_count=0,
                click_count=0,
                discovered_at=now,
                purge_at=purge_at,
            )
            db.add(target)
        else:
            if target.pii is None:
                target.pii = PiiRecord(id=str(uuid.uuid4()), merchant_id=target.merchant_id)
            _apply_pii(target.pii, vault, candidate)
            target.purge_at = purge_at
        telemetry.last_encrypt_ms = (time.perf_counter() - enc_start) * 1000
        _apply_classification(target, candidate)

        try:
            await db.commit()
        except DBIntegrityError:
            await db.rollback()
            raise
    telemetry.record_upsert((time.perf_counter() - t0) * 1000)
    return target, created


async def upsert_ghost_target(
    merchant_id: str,
    candidate: GhostCandidate,
    vault: Vault,
    telemetry: Optional[ScanTelemetry] = None,
    now: Optional[datetime] = None,
) -> tuple[GhostTarget, bool]:
    """
    Insert or refresh the ghost keyed by ``candidate.invoice_id``.
    Amount, status and dispatch bookkeeping of an existing ghost are never touched.
    Returns (target, created).
    """
    now = now or utcnow()
    telemetry = telemetry or ScanTelemetry()
    try:
        return await _upsert_once(merchant_id, candidate, vault, telemetry, now)
    except DBIntegrityError:
        # A concurrent scan inserted the same invoice first, take the update path
        logger.info("Invoice %s inserted concurrently — refreshing instead", candidate.invoice_id)
        return await _upsert_once(merchant_id, candidate, vault, telemetry, now)


async def _existing_ghosts(merchant_id: str) -> dict[str, str]:
    async with async_session_factory() as db:
        result = await db.execute(
            select(GhostTarget.invoice_id, GhostTarget.status).where(GhostTarget.merchant_id == merchant_id)
        )
        return {invoice_id: status for invoice_id, status in result.all()}


async def _pending_count(merchant_id: str) -> int:
    async with async_session_factory() as db:
        result = await db.execute(
            select(func.count(GhostTarget.id)).where(
                GhostTarget.merchant_id == merchant_id,
                GhostTarget.status == STATUS_PENDING,
            )
        )
        return result.scalar() or 0


# ─── Adapter pacing ────────────────────────────────────────────────────

async def _with_rate_limit_retry(fn: Callable[..., Awaitable], *args):
    """One bounded backoff on RateLimitError; a second one propagates."""
    try:
        return await fn(*args)
    except RateLimitError:
        logger.warning("⏳ Billing source rate limited — retrying in %.1fs", settings.rate_limit_retry_sec)
        await asyncio.sleep(settings.rate_limit_retry_sec)
        return await fn(*args)


class _Scan:
    """State for one merchant scan."""

    def __init__(
        self,
        merchant: Merchant,
        credential: str,
        source: BillingSource,
        vault: Vault,
        force_sync: bool,
        now: datetime,
    ):
        self.merchant = merchant
        self.credential = credential
        self.source = source
        self.vault = vault
        self.force_sync = force_sync
        self.now = now
        self.result = ScanResult(merchant_id=merchant.id)
        self.known: dict[str, str] = {}
        self.capacity = 0
        self._subscription_cache: dict[str, bool] = {}

    @property
    def telemetry(self) -> ScanTelemetry:
        return self.result.telemetry

    async def tick(self) -> None:
        """Count one processed record; throttle + heartbeat at batch boundaries."""
        self.telemetry.records_processed += 1
        if self.telemetry.records_processed % settings.scan_batch_size == 0:
            self.telemetry.heartbeat(self.merchant.id)
            await asyncio.sleep(settings.scan_throttle_sec)

    async def has_live_subscription(self, customer_id: str) -> bool:
        if customer_id not in self._subscription_cache:
            self._subscription_cache[customer_id] = await _with_rate_limit_retry(
                self.source.has_active_subscription, self.credential, customer_id
            )
        return self._subscription_cache[customer_id]

    async def store(self, candidate: GhostCandidate) -> bool:
        is_new = candidate.invoice_id not in self.known
        if is_new and candidate.status == STATUS_PENDING and self.capacity <= 0:
            self.result.skipped_capacity += 1
            return False
        try:
            _, created = await upsert_ghost_target(
                self.merchant.id, candidate, self.vault, self.telemetry, self.now
            )
        except VaultError as e:
            logger.error("Encrypt failed for %s: %s", candidate.invoice_id, e)
            self.result.records_failed += 1
            return False

        self.known.setdefault(candidate.invoice_id, candidate.status)
        if created:
            self.result.ghosts_created += 1
            if candidate.status == STATUS_PENDING:
                self.capacity -= 1
        else:
            self.result.ghosts_updated += 1
        return True

    # ── Invoice pass ───────────────────────────────────────────────────

    async def process_invoice(self, invoice: InvoiceRecord) -> None:
        result = self.result
        result.total_scanned += 1
        result.gross_invoiced_cents += invoice.amount_due
        result.currency = result.currency or invoice.currency

        if invoice.status == PAID_INVOICE_STATUS:
            await self._backup_recovery(invoice)
            if invoice.paid_at and await record_payment_timing(self.merchant.id, invoice.id, invoice.paid_at):
                result.oracle_data_points += 1
            return
        if invoice.status not in UNPAID_INVOICE_STATUSES or not invoice.customer_id:
            return

        result.unpaid_candidates += 1
        try:
            if not await self.has_live_subscription(invoice.customer_id):
                result.skipped_inactive += 1
                return
            details = None
            if invoice.payment_intent_id:
                details = await _with_rate_limit_retry(
                    self.source.get_payment_details, self.credential, invoice.payment_intent_id
                )
        except SourceUnreachableError:
            raise
        except AdapterError as e:
            logger.warning("Skipping invoice %s: %s", invoice.id, e)
            result.records_failed += 1
            return

        if not invoice.customer_email:
            result.skipped_no_email += 1
            return

        requires_3ds = bool(details and details.requires_3ds)
        decline_code = (details and details.decline_code) or invoice.decline_code or (details and details.error_code)
        decline_type = classify_decline(decline_code)
        candidate = GhostCandidate(
            invoice_id=invoice.id,
            amount=invoice.amount_due,
            currency=invoice.currency,
            customer_id=invoice.customer_id,
            email=invoice.customer_email,
            name=invoice.customer_name,
            failure_code=decline_code,
            failure_message=(details and details.failure_message) or invoice.failure_message,
            decline_type=decline_type,
            recovery_strategy=determine_recovery_strategy(requires_3ds, invoice.amount_due, decline_type),
            card_brand=details.card_brand if details else None,
            card_funding=details.card_funding if details else None,
            country=details.country if details else None,
            requires_3ds=requires_3ds,
            error_code=details.error_code if details else None,
        )
        if await self.store(candidate):
            result.ghosts_found += 1
            logger.debug("👻 Ghost %s (%s) %s", invoice.id, candidate.recovery_strategy,
                         redact_email(candidate.email))

    async def _backup_recovery(self, invoice: InvoiceRecord) -> None:
        """Paid invoice that we still track as unresolved: the webhook was missed."""
        status = self.known.get(invoice.id)
        if status is None or status == STATUS_RECOVERED:
            return
        resolution = await on_payment_confirmed(invoice.id, now=self.now)
        if resolution.recovered:
            self.known[invoice.id] = STATUS_RECOVERED
            self.result.recovered_backup += 1

    # ── Impending pass ─────────────────────────────────────────────────

    async def scan_impending(self) -> None:
        cursor = None
        while True:
            try:
                page = await _with_rate_limit_retry(
                    self.source.list_active_subscriptions, self.credential, cursor
                )
            except SourceUnreachableError:
                raise
            except AdapterError as e:
                self.result.errors.append(f"Impending scan stopped: {e}")
                return

            self.result.records_failed += page.rejected
            for sub in page.records:
                await self.tick()
                if not card_expires_soon(sub.card_exp_month, sub.card_exp_year, self.now):
                    continue
                if not sub.customer_email:
                    self.result.skipped_no_email += 1
                    continue
                amount = monthly_amount(sub)
                candidate = GhostCandidate(
                    invoice_id=f"{IMPENDING_PREFIX}{sub.id}",
                    amount=amount,
                    currency=sub.currency,
                    customer_id=sub.customer_id,
                    email=sub.customer_email,
                    name=sub.customer_name,
                    status=STATUS_IMPENDING,
                    failure_code=IMPENDING_FAILURE_CODE,
                    decline_type=DECLINE_HARD,
                    recovery_strategy=determine_recovery_strategy(False, amount, DECLINE_HARD),
                    card_brand=sub.card_brand,
                    card_funding=sub.card_funding,
                    country=sub.country,
                )
                if await self.store(candidate):
                    self.result.impending_found += 1

            cursor = page.next_cursor
            if not cursor:
                return


def _progress_for_page(pages_done: int) -> int:
    # Page count is unknown up front: approach 90% asymptotically.
    return min(90, 5 + int(85 * (1 - 0.5 ** pages_done)))


# ─── Entry points ──────────────────────────────────────────────────────

async def scan_merchant(
    merchant_id: str,
    *,
    source: Optional[BillingSource] = None,
    vault: Optional[Vault] = None,
    force_sync: bool = False,
    on_progress: Optional[Callable[[int], Awaitable[None]]] = None,
    now: Optional[datetime] = None,
) -> ScanResult:
    """
    Audit one merchant. Raises ScanAbortedError / SourceUnreachableError when
    the scan cannot run at all; everything else ends up in the ScanResult.
    """
    source = source or get_billing_source()
    vault = vault or get_vault()
    now = now or utcnow()

    diagnostic = vault.diagnostic()
    if not diagnostic["ok"]:
        raise ScanAbortedError(f"Vault pre-flight failed: {diagnostic['error']}")

    merchant = await get_merchant(merchant_id)
    if merchant is None:
        raise ScanAbortedError(f"Merchant {merchant_id} not found")
    try:
        credential = get_merchant_credential(merchant, vault)
    except IntegrityError as e:
        raise ScanAbortedError("Merchant credential failed integrity check") from e

    scan = _Scan(merchant, credential, source, vault, force_sync, now)
    scan.telemetry.last_encrypt_ms = diagnostic["encrypt_ms"] or 0.0
    scan.known = await _existing_ghosts(merchant.id)
    tier_limit = merchant.tier_limit or settings.default_tier_limit
    scan.capacity = max(0, tier_limit - await _pending_count(merchant.id))

    created_after = None if force_sync else merchant.last_audit_at
    logger.info(
        "🔎 Scanning merchant %s (%s)",
        merchant.billing_account_id,
        "deep harvest" if created_after is None else f"delta since {created_after.isoformat()}",
    )

    cursor = None
    pages = 0
    while True:
        try:
            page = await _with_rate_limit_retry(scan.source.list_invoices, credential, cursor, created_after)
        except SourceUnreachableError:
            raise
        except RateLimitError as e:
            # Still throttled after the retry: keep what we have, finish the audit
            logger.warning("⏳ Invoice pagination stopped after %d page(s): still rate limited", pages)
            scan.result.errors.append(f"Rate limited after {pages} page(s): {e}")
            scan.result.pagination_complete = False
            break
        except AdapterError as e:
            if pages == 0:
                raise ScanAbortedError(f"Could not read invoices: {e}") from e
            scan.result.errors.append(f"Pagination stopped after {pages} page(s): {e}")
            scan.result.pagination_complete = False
            break

        pages += 1
        scan.result.records_failed += page.rejected
        for invoice in page.records:
            await scan.process_invoice(invoice)
            await scan.tick()

        if on_progress:
            await on_progress(_progress_for_page(pages))
        cursor = page.next_cursor
        if not cursor:
            break

    if on_progress:
        await on_progress(92)
    await scan.scan_impending()

    scan.telemetry.sample_memory()
    await _record_audit(merchant.id, scan.result, delta=created_after is not None, now=now)
    logger.info("✅ %s", scan.result.summary()["summary"])
    return scan.result


async def _record_audit(merchant_id: str, result: ScanResult, delta: bool, now: datetime) -> None:
    async with async_session_factory() as db:
        merchant = await db.get(Merchant, merchant_id)
        if merchant is None:
            return
        merchant.last_audit_status = "partial" if result.errors else "completed"
        if not result.pagination_complete:
            # Unread invoices lie behind the old watermark; the next delta scan must see them
            await db.commit()
            return
        merchant.last_audit_at = now
        if delta:
            merchant.gross_invoiced_cents = (merchant.gross_invoiced_cents or 0) + result.gross_invoiced_cents
            merchant.total_vetted_count = (merchant.total_vetted_count or 0) + result.ghosts_created
        else:
            merchant.gross_invoiced_cents = result.gross_invoiced_cents
            merchant.total_vetted_count = result.ghosts_found + result.impending_found
        if result.currency:
            merchant.default_currency = result.currency
        await db.commit()


async def _mark_audit_failed(merchant_id: str) -> None:
    async with async_session_factory() as db:
        merchant = await db.get(Merchant, merchant_id)
        if merchant:
            merchant.last_audit_status = "failed"
            await db.commit()


async def _fail_scan_job(job: ScanJob, error: str) -> None:
    await fail_job(job.id, error)
    await _mark_audit_failed(job.merchant_id)
    await append_system_log(SCAN_LOG_NAME, LOG_FAILURE, {"merchant_id": job.merchant_id, "job_id": job.id}, error)


async def run_scan_job(
    job: ScanJob,
    source: Optional[BillingSource] = None,
    vault: Optional[Vault] = None,
) -> Optional[ScanResult]:
    """Drive a claimed ScanJob to completed/failed. Returns None when it failed."""

    async def _progress(value: int) -> None:
        await update_progress(job.id, value)

    try:
        result = await scan_merchant(
            job.merchant_id,
            source=source,
            vault=vault,
            force_sync=bool(job.force_sync),
            on_progress=_progress,
        )
    except (ScanAbortedError, SourceUnreachableError, VaultError) as e:
        logger.error("❌ Scan job #%d failed: %s", job.id, e)
        await _fail_scan_job(job, str(e))
        return None
    except Exception as e:
        logger.error("💥 Scan job #%d crashed: %s", job.id, e, exc_info=True)
        await _fail_scan_job(job, f"Internal error: {type(e).__name__}: {e}")
        return None

    await complete_job(job.id, error="; ".join(result.errors) or None)
    await append_system_log(SCAN_LOG_NAME, LOG_SUCCESS, {**result.summary(), "job_id": job.id})
    return result


async def _scan_one_merchant(merchant_id: str, source, vault):
    """None when an audit is already in flight, False when the scan failed."""
    job, created = await create_scan_job(merchant_id)
    if not created or not await claim_job(job.id):
        return None
    result = await run_scan_job(job, source=source, vault=vault)
    return False if result is None else result


async def run_ghost_hunter_tick(source: Optional[BillingSource] = None, vault: Optional[Vault] = None) -> dict:
    """Sentinel entry point: one scan per merchant, skipping audits already in flight."""
    stats = {"merchants": 0, "scanned": 0, "failed": 0, "skipped": 0, "ghosts": 0}
    for merchant_id in await list_merchant_ids():
        stats["merchants"] += 1
        try:
            outcome = await _scan_one_merchant(merchant_id, source, vault)
        except Exception as e:
            logger.error("Ghost Hunter tick failed for merchant %s: %s", merchant_id, e, exc_info=True)
            stats["failed"] += 1
            continue
        if outcome is None:
            stats["skipped"] += 1
        elif outcome is False:
            stats["failed"] += 1
        else:
            stats["scanned"] += 1
            stats["ghosts"] += outcome.ghosts_found + outcome.impending_found
    return stats
