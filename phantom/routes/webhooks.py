"""
Phantom Recovery — Inbound billing webhooks and strike-link clicks.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import RedirectResponse

from phantom.schemas import BillingEvent
from phantom.services.attribution import handle_billing_event, invoice_redirect_url, on_link_clicked

logger = logging.getLogger(__name__)
webhook_router = APIRouter(tags=["attribution"])


@webhook_router.post("/webhooks/billing")
async def billing_webhook(event: BillingEvent):
    """Payment-success events resolve ghosts; anything else is acknowledged and ignored."""
    result = await handle_billing_event(event.model_dump())
    if result.get("handled"):
        logger.info("📬 Billing event %s handled for %s", event.type, result.get("invoice_id"))
    return {"received": True, **result}


@webhook_router.get("/l/{strike_id}", include_in_schema=False)
async def strike_link(strike_id: str):
    """Recovery email link: open the attribution window, then bounce to the invoice."""
    target = await on_link_clicked(strike_id)
    return RedirectResponse(url=invoice_redirect_url(target), status_code=302)
