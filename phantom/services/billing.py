"""
Billing Source Adapter — paginated, typed read access to the merchant's ledger.

Raw API payloads are parsed into pydantic DTOs right here at the boundary.
Anything missing a required field raises PayloadError instead of leaking
loosely-typed dicts into the Ghost Hunter.

Error classes (all AdapterError):
  RateLimitError          HTTP 429 — caller sleeps once and retries
  SourceUnreachableError  network failure, 5xx or rejected credential — aborts a scan
  PayloadError            response did not match the DTO

List pages parse record by record: a malformed record is dropped and counted
in the page's ``rejected`` tally, the rest of the page is still returned.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar

import aiohttp
from pydantic import BaseModel, Field, ValidationError

from phantom.config import settings

logger = logging.getLogger("phantom.billing")

T = TypeVar("T")


# ─── Errors ────────────────────────────────────────────────────────────

class AdapterError(Exception):
    """Billing source call failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RateLimitError(AdapterError):
    pass


class SourceUnreachableError(AdapterError):
    pass


class PayloadError(AdapterError):
    pass


# ─── DTOs ──────────────────────────────────────────────────────────────

class InvoiceRecord(BaseModel):
    id: str = Field(..., min_length=1)
    status: str
    amount_due: int = Field(..., ge=0)
    amount_paid: int = 0
    currency: str = "usd"
    created: datetime
    paid_at: Optional[datetime] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    decline_code: Optional[str] = None
    failure_message: Optional[str] = None


class InvoicePage(BaseModel):
    records: list[InvoiceRecord] = []
    next_cursor: Optional[str] = None
    rejected: int = 0


class PaymentDetails(BaseModel):
    """Non-PII risk metadata for one payment attempt."""

    decline_code: Optional[str] = None
    error_code: Optional[str] = None
    failure_message: Optional[str] = None
    card_brand: Optional[str] = None
    card_funding: Optional[str] = None
    country: Optional[str] = None
    requires_3ds: bool = False


class SubscriptionRecord(BaseModel):
    id: str = Field(..., min_length=1)
    status: str
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    currency: str = "usd"
    unit_amount: int = 0          # per billing interval, minor units
    quantity: int = 1
    interval: str = "month"       # day | week | month | year
    interval_count: int = 1
    card_brand: Optional[str] = None
    card_funding: Optional[str] = None
    country: Optional[str] = None
    card_exp_month: Optional[int] = None
    card_exp_year: Optional[int] = None


class SubscriptionPage(BaseModel):
    records: list[SubscriptionRecord] = []
    next_cursor: Optional[str] = None
    rejected: int = 0


# ─── Payload parsing ───────────────────────────────────────────────────

def _ref_id(value) -> Optional[str]:
    """Expanded object or bare id → id."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _ts(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _card_of(payment_method) -> dict:
    if isinstance(payment_method, dict):
        return payment_method.get("card") or {}
    return {}


def parse_invoice(payload: dict) -> InvoiceRecord:
    customer = payload.get("customer")
    customer = customer if isinstance(customer, dict) else {}
    intent = payload.get("payment_intent")
    error = intent.get("last_payment_error") if isinstance(intent, dict) else None
    error = error or {}
    transitions = payload.get("status_transitions") or {}

    try:
        return InvoiceRecord.model_validate({
            "id": payload.get("id"),
            "status": payload.get("status"),
            "amount_due": payload.get("amount_due"),
            "amount_paid": payload.get("amount_paid") or 0,
            "currency": (payload.get("currency") or "usd").lower(),
            "created": _ts(payload.get("created")),
            "paid_at": _ts(transitions.get("paid_at")),
            "customer_id": _ref_id(payload.get("customer")),
            "customer_email": payload.get("customer_email") or customer.get("email"),
            "customer_name": payload.get("customer_name") or customer.get("name"),
            "subscription_id": _ref_id(payload.get("subscription")),
            "payment_intent_id": _ref_id(intent),
            "decline_code": error.get("decline_code") or error.get("code"),
            "failure_message": error.get("message"),
        })
    except (ValidationError, TypeError, ValueError) as e:
        raise PayloadError(f"Invoice payload rejected ({payload.get('id')!r}): {e}") from e


def parse_payment_details(payload: dict) -> PaymentDetails:
    error = payload.get("last_payment_error") or {}
    card = _card_of(error.get("payment_method")) or _card_of(payload.get("payment_method"))
    requires_3ds = (
        payload.get("status") == "requires_action"
        or error.get("code") == "authentication_required"
        or error.get("decline_code") == "authentication_required"
    )
    try:
        return PaymentDetails.model_validate({
            "decline_code": error.get("decline_code"),
            "error_code": error.get("code"),
            "failure_message": error.get("message"),
            "card_brand": card.get("brand"),
            "card_funding": card.get("funding"),
            "country": card.get("country"),
            "requires_3ds": requires_3ds,
        })
    except ValidationError as e:
        raise PayloadError(f"Payment payload rejected: {e}") from e


def parse_subscription(payload: dict) -> SubscriptionRecord:
    customer = payload.get("customer")
    customer = customer if isinstance(customer, dict) else {}
    items = (payload.get("items") or {}).get("data") or [{}]
    item = items[0] or {}
    price = item.get("price") or item.get("plan") or {}
    recurring = price.get("recurring") or {}
    card = _card_of(payload.get("default_payment_method"))

    try:
        return SubscriptionRecord.model_validate({
            "id": payload.get("id"),
            "status": payload.get("status"),
            "customer_id": _ref_id(payload.get("customer")),
            "customer_email": customer.get("email"),
            "customer_name": customer.get("name"),
            "currency": (payload.get("currency") or price.get("currency") or "usd").lower(),
            "unit_amount": price.get("unit_amount") or price.get("amount") or 0,
            "quantity": item.get("quantity") or 1,
            "interval": recurring.get("interval") or price.get("interval") or "month",
            "interval_count": recurring.get("interval_count") or price.get("interval_count") or 1,
            "card_brand": card.get("brand"),
            "card_funding": card.get("funding"),
            "country": card.get("country"),
            "card_exp_month": card.get("exp_month"),
            "card_exp_year": card.get("exp_year"),
        })
    except ValidationError as e:
        raise PayloadError(f"Subscription payload rejected ({payload.get('id')!r}): {e}") from e


def parse_page(items: list, parser: Callable[[dict], T], kind: str) -> tuple[list[T], int]:
    """Parse a list page record by record. Returns (records, rejected count)."""
    records: list[T] = []
    rejected = 0
    for item in items:
        if not isinstance(item, dict):
            rejected += 1
            continue
        try:
            records.append(parser(item))
        except PayloadError as e:
            logger.warning("Dropping malformed %s record: %s", kind, e)
            rejected += 1
    return records, rejected


def _next_cursor(data: dict, items: list) -> Optional[str]:
    # Cursor from the raw page so a malformed last record does not end pagination
    if not data.get("has_more") or not items:
        return None
    last = items[-1]
    return last.get("id") if isinstance(last, dict) else None


# ─── Adapter interface ─────────────────────────────────────────────────

class BillingSource:
    """Read-only view of one billing platform. Credentials are plaintext tokens."""

    async def list_invoices(
        self,
        credential: str,
        cursor: Optional[str] = None,
        created_after: Optional[datetime] = None,
    ) -> InvoicePage:
        raise NotImplementedError

    async def list_active_subscriptions(
        self, credential: str, cursor: Optional[str] = None
    ) -> SubscriptionPage:
        raise NotImplementedError

    async def has_active_subscription(self, credential: str, customer_id: str) -> bool:
        raise NotImplementedError

    async def get_payment_details(self, credential: str, payment_intent_id: str) -> PaymentDetails:
        raise NotImplementedError


class StripeBillingSource(BillingSource):
    """Stripe REST API over aiohttp."""

    def __init__(self, api_base: Optional[str] = None, page_size: Optional[int] = None, timeout: Optional[int] = None):
        self.api_base = (api_base or settings.billing_api_base).rstrip("/")
        self.page_size = page_size or settings.billing_page_size
        self._timeout = aiohttp.ClientTimeout(total=timeout or settings.billing_timeout_sec)

    async def _get(self, credential: str, path: str, params: list[tuple[str, str]]) -> dict:
        headers = {"Authorization": f"Bearer {credential}"}
        url = f"{self.api_base}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(url, params=params, headers=headers) as resp:
                    if resp.status == 429:
                        raise RateLimitError(f"Billing API rate limited on {path}", status=429)
                    if resp.status in (401, 403):
                        raise SourceUnreachableError(
                            f"Billing API rejected credential (HTTP {resp.status})", status=resp.status
                        )
                    if resp.status >= 500:
                        body = await resp.text()
                        raise SourceUnreachableError(
                            f"Billing API unavailable (HTTP {resp.status}): {body[:300]}", status=resp.status
                        )
                    if resp.status >= 400:
                        body = await resp.text()
                        raise AdapterError(f"Billing API HTTP {resp.status}: {body[:300]}", status=resp.status)
                    try:
                        return await resp.json()
                    except (aiohttp.ContentTypeError, ValueError) as e:
                        raise PayloadError(f"Billing API returned non-JSON body on {path}") from e
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise SourceUnreachableError(f"Billing API unreachable: {e}") from e

    async def list_invoices(self, credential, cursor=None, created_after=None) -> InvoicePage:
        params = [
            ("limit", str(self.page_size)),
            ("expand[]", "data.customer"),
            ("expand[]", "data.payment_intent"),
        ]
        if cursor:
            params.append(("starting_after", cursor))
        if created_after:
            params.append(("created[gte]", str(int(created_after.timestamp()))))

        data = await self._get(credential, "/invoices", params)
        items = data.get("data") or []
        records, rejected = parse_page(items, parse_invoice, "invoice")
        return InvoicePage(records=records, next_cursor=_next_cursor(data, items), rejected=rejected)

    async def list_active_subscriptions(self, credential, cursor=None) -> SubscriptionPage:
        params = [
            ("limit", str(self.page_size)),
            ("status", "active"),
            ("expand[]", "data.default_payment_method"),
            ("expand[]", "data.customer"),
        ]
        if cursor:
            params.append(("starting_after", cursor))

        data = await self._get(credential, "/subscriptions", params)
        items = data.get("data") or []
        records, rejected = parse_page(items, parse_subscription, "subscription")
        return SubscriptionPage(records=records, next_cursor=_next_cursor(data, items), rejected=rejected)

    async def has_active_subscription(self, credential, customer_id) -> bool:
        data = await self._get(
            credential,
            "/subscriptions",
            [("customer", customer_id), ("status", "all"), ("limit", "10")],
        )
        return any(sub.get("status") in ("active", "past_due") for sub in data.get("data") or [])

    async def get_payment_details(self, credential, payment_intent_id) -> PaymentDetails:
        data = await self._get(
            credential,
            f"/payment_intents/{payment_intent_id}",
            [("expand[]", "payment_method"), ("expand[]", "last_payment_error.payment_method")],
        )
        return parse_payment_details(data)


_source: Optional[BillingSource] = None


def get_billing_source() -> BillingSource:
    global _source
    if _source is None:
        _source = StripeBillingSource()
    return _source
