"""
Tests for the Attribution Resolver — click window, direct vs organic, webhooks.
"""

from datetime import timedelta

from phantom.models.ghost_target import STATUS_RECOVERED, GhostTarget
from phantom.models.merchant import Merchant
from phantom.services.attribution import (
    FALLBACK_BILLING_URL,
    RECOVERY_DIRECT,
    RECOVERY_ORGANIC,
    handle_billing_event,
    invoice_redirect_url,
    on_link_clicked,
    on_payment_confirmed,
    resolve_recovery_type,
)
from tests.fakes import NOW


class TestResolveRecoveryType:
    def test_open_window_is_direct(self):
        assert resolve_recovery_type(NOW + timedelta(minutes=1), NOW) == RECOVERY_DIRECT

    def test_expired_window_is_organic(self):
        assert resolve_recovery_type(NOW - timedelta(minutes=1), NOW) == RECOVERY_ORGANIC

    def test_never_clicked_is_organic(self):
        assert resolve_recovery_type(None, NOW) == RECOVERY_ORGANIC


class TestLinkClick:
    async def test_opens_window(self, ghost_factory):
        ghost = await ghost_factory("in_1")
        target = await on_link_clicked(ghost.id, now=NOW)
        assert target.click_count == 1
        assert target.last_clicked_at == NOW
        assert target.attribution_expires_at == NOW + timedelta(hours=24)

    async def test_second_click_extends(self, ghost_factory):
        ghost = await ghost_factory("in_1")
        await on_link_clicked(ghost.id, now=NOW)
        target = await on_link_clicked(ghost.id, now=NOW + timedelta(hours=10))
        assert target.click_count == 2
        assert target.attribution_expires_at == NOW + timedelta(hours=34)

    async def test_unknown_strike(self):
        assert await on_link_clicked("nope", now=NOW) is None

    async def test_click_does_not_touch_dispatch_columns(self, ghost_factory):
        ghost = await ghost_factory("in_1", email_count=2)
        target = await on_link_clicked(ghost.id, now=NOW)
        assert target.email_count == 2


class TestPaymentConfirmed:
    async def test_paid_within_window_is_direct(self, ghost_factory, verify_db, merchant):
        ghost = await ghost_factory("in_1", 2500)
        await on_link_clicked(ghost.id, now=NOW)

        resolution = await on_payment_confirmed("in_1", now=NOW + timedelta(hours=23))
        assert resolution.recovered
        assert resolution.recovery_type == RECOVERY_DIRECT

        async with verify_db() as vdb:
            fresh = await vdb.get(GhostTarget, ghost.id)
            m = await vdb.get(Merchant, merchant.id)
        assert fresh.status == STATUS_RECOVERED
        assert fresh.recovery_type == RECOVERY_DIRECT
        assert fresh.recovered_at == NOW + timedelta(hours=23)
        assert m.total_recovered_cents == 2500

    async def test_paid_after_window_is_organic(self, ghost_factory):
        ghost = await ghost_factory("in_1")
        await on_link_clicked(ghost.id, now=NOW)
        resolution = await on_payment_confirmed("in_1", now=NOW + timedelta(hours=25))
        assert resolution.recovery_type == RECOVERY_ORGANIC

    async def test_never_clicked_is_organic(self, ghost_factory):
        await ghost_factory("in_1")
        resolution = await on_payment_confirmed("in_1", now=NOW)
        assert resolution.recovery_type == RECOVERY_ORGANIC

    async def test_unknown_invoice_is_a_miss(self):
        resolution = await on_payment_confirmed("in_untracked", now=NOW)
        assert not resolution.matched
        assert not resolution.recovered

    async def test_second_confirmation_is_noop(self, ghost_factory, verify_db, merchant):
        await ghost_factory("in_1", 2500)
        await on_payment_confirmed("in_1", now=NOW)
        again = await on_payment_confirmed("in_1", now=NOW + timedelta(hours=1))
        assert again.matched and again.already_recovered and not again.recovered
        async with verify_db() as vdb:
            assert (await vdb.get(Merchant, merchant.id)).total_recovered_cents == 2500

    async def test_exhausted_ghost_can_still_recover(self, ghost_factory):
        await ghost_factory("in_1", status="exhausted", email_count=3)
        resolution = await on_payment_confirmed("in_1", now=NOW)
        assert resolution.recovered


class TestWebhookAndRedirect:
    async def test_invoice_paid_event(self, ghost_factory):
        await ghost_factory("in_1")
        result = await handle_billing_event({"type": "invoice.paid", "data": {"object": {"id": "in_1"}}})
        assert result["handled"] and result["recovered"]

    async def test_other_events_ignored(self):
        result = await handle_billing_event({"type": "customer.created", "data": {"object": {"id": "cus_1"}}})
        assert result == {"handled": False, "type": "customer.created"}

    async def test_missing_invoice_id(self):
        result = await handle_billing_event({"type": "invoice.paid", "data": {}})
        assert result["handled"] is False

    async def test_redirect_urls(self, ghost_factory):
        ghost = await ghost_factory("in_abc")
        assert invoice_redirect_url(ghost) == "https://invoice.stripe.com/i/in_abc"
        impending = await ghost_factory("impending_sub_1")
        assert invoice_redirect_url(impending) == FALLBACK_BILLING_URL
        assert invoice_redirect_url(None) == FALLBACK_BILLING_URL
