"""
Tests for API routes — health, merchants, audits, pulse/sentinel, webhooks, links.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

from sqlalchemy import select

from phantom.database import utcnow
from phantom.models.ghost_target import STATUS_RECOVERED, GhostTarget
from phantom.models.merchant import Merchant
from phantom.services.merchants import get_merchant_credential
from tests.fakes import make_invoice


class TestHealthEndpoint:
    async def test_health(self, client):
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert "version" in data
        assert "timestamp" in data


class TestRootEndpoint:
    async def test_root(self, client):
        resp = await client.get("/")
        assert resp.status_code == 200
        assert "Phantom" in resp.json()["service"]


# ═══════════════════════════════════════════════════════════
# MERCHANTS
# ═══════════════════════════════════════════════════════════

class TestMerchantsAPI:
    async def test_connect_merchant(self, client, verify_db, vault):
        resp = await client.post("/api/v1/merchants", json={
            "billingAccountId": "acct_new",
            "accessToken": "sk_test_abcdefgh",
            "businessName": "Beta Labs",
            "supportEmail": "billing@beta-labs.example.com",
        })
        assert resp.status_code == 201
        data = resp.json()
        assert data["billing_account_id"] == "acct_new"
        assert "access_token" not in data
        assert "token_ciphertext" not in data

        async with verify_db() as vdb:
            merchant = (await vdb.execute(select(Merchant))).scalar_one()
        assert "sk_test" not in merchant.token_ciphertext
        assert get_merchant_credential(merchant, vault) == "sk_test_abcdefgh"
        assert data["send_strategy"] == "oracle"

    async def test_connect_with_immediate_sends(self, client):
        resp = await client.post("/api/v1/merchants", json={
            "billingAccountId": "acct_now",
            "accessToken": "sk_test_abcdefgh",
            "sendStrategy": "immediate",
        })
        assert resp.status_code == 201
        assert resp.json()["send_strategy"] == "immediate"

    async def test_connect_rejects_unknown_send_strategy(self, client):
        resp = await client.post("/api/v1/merchants", json={
            "billingAccountId": "acct_now",
            "accessToken": "sk_test_abcdefgh",
            "sendStrategy": "whenever",
        })
        assert resp.status_code == 422

    async def test_connect_validation(self, client):
        resp = await client.post("/api/v1/merchants", json={
            "billingAccountId": "acct_new",
            "accessToken": "sk_test_abcdefgh",
            "supportEmail": "not-an-email",
        })
        assert resp.status_code == 422

    async def test_get_merchant(self, client, merchant):
        resp = await client.get(f"/api/v1/merchants/{merchant.id}")
        assert resp.status_code == 200
        assert resp.json()["business_name"] == "Acme Cloud"

    async def test_get_merchant_404(self, client):
        resp = await client.get("/api/v1/merchants/missing")
        assert resp.status_code == 404

    async def test_list_ghosts_without_pii(self, client, merchant, ghost_factory):
        await ghost_factory("in_1", 2000)
        await ghost_factory("in_2", 3000, status=STATUS_RECOVERED)

        resp = await client.get(f"/api/v1/merchants/{merchant.id}/ghosts")
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 2
        assert "jane" not in resp.text.lower()

        filtered = await client.get(f"/api/v1/merchants/{merchant.id}/ghosts", params={"status": "recovered"})
        assert [g["invoice_id"] for g in filtered.json()["ghosts"]] == ["in_2"]

    async def test_list_ghosts_bad_status(self, client, merchant):
        resp = await client.get(f"/api/v1/merchants/{merchant.id}/ghosts", params={"status": "zombie"})
        assert resp.status_code == 400

    async def test_leakage(self, client, merchant, ghost_factory):
        await ghost_factory("in_1", 2000, failure_code="insufficient_funds")
        resp = await client.get(f"/api/v1/merchants/{merchant.id}/leakage")
        assert resp.status_code == 200
        assert resp.json()["categories"][0]["category"] == "Wallet Friction"


# ═══════════════════════════════════════════════════════════
# AUDITS
# ═══════════════════════════════════════════════════════════

class TestAuditsAPI:
    async def test_start_audit_returns_202(self, client, merchant):
        resp = await client.post("/api/v1/audits", json={"merchantId": merchant.id})
        assert resp.status_code == 202
        data = resp.json()
        assert data["status"] == "pending"
        assert data["deduplicated"] is False
        assert data["poll_url"] == f"/api/v1/scan-jobs/{data['scan_job_id']}"

    async def test_duplicate_audit_is_deduplicated(self, client, merchant):
        first = (await client.post("/api/v1/audits", json={"merchantId": merchant.id})).json()
        second = (await client.post("/api/v1/audits", json={"merchantId": merchant.id, "forceSync": True})).json()
        assert second["scan_job_id"] == first["scan_job_id"]
        assert second["deduplicated"] is True

    async def test_unknown_merchant(self, client):
        resp = await client.post("/api/v1/audits", json={"merchantId": "ghost-town"})
        assert resp.status_code == 404

    async def test_poll_scan_job(self, client, merchant):
        created = (await client.post("/api/v1/audits", json={"merchantId": merchant.id})).json()
        resp = await client.get(f"/api/v1/scan-jobs/{created['scan_job_id']}")
        assert resp.status_code == 200
        assert resp.json()["progress"] == 0

    async def test_poll_unknown_job(self, client):
        resp = await client.get("/api/v1/scan-jobs/424242")
        assert resp.status_code == 404

    async def test_worker_drives_job_to_completion(self, client, merchant, billing_source):
        from phantom.services.scan_jobs import get_scan_worker

        billing_source.invoices = [make_invoice("in_1")]
        created = (await client.post("/api/v1/audits", json={"merchantId": merchant.id})).json()
        assert await get_scan_worker().run_once()

        job = (await client.get(f"/api/v1/scan-jobs/{created['scan_job_id']}")).json()
        assert job["status"] == "completed"
        assert job["progress"] == 100


# ═══════════════════════════════════════════════════════════
# SENTINEL / SYSTEM
# ═══════════════════════════════════════════════════════════

class TestSystemAPI:
    async def test_run_pulse(self, client, ghost_factory, mailer):
        # the manual trigger runs against the wall clock
        await ghost_factory("in_1", discovered_at=utcnow() - timedelta(hours=5))
        resp = await client.post("/api/v1/pulse/run")
        assert resp.status_code == 200
        data = resp.json()
        assert data["job_name"] == "pulse_engine"
        assert data["status"] == "success"
        assert data["details"]["emails_sent"] == 1
        assert len(mailer.sent) == 1

    async def test_run_unknown_sentinel_job(self, client):
        resp = await client.post("/api/v1/sentinel/nope/run")
        assert resp.status_code == 404

    async def test_run_ghost_hunter_job(self, client, merchant, billing_source):
        billing_source.invoices = [make_invoice("in_1")]
        resp = await client.post("/api/v1/sentinel/ghost_hunter/run")
        assert resp.status_code == 200
        assert resp.json()["details"]["ghosts"] == 1

    async def test_system_health_and_logs(self, client):
        with patch("phantom.services.pulse_engine.get_eligible_targets", new_callable=AsyncMock,
                   side_effect=RuntimeError("db down")):
            await client.post("/api/v1/pulse/run")

        health = (await client.get("/api/v1/system/health")).json()
        assert health["status"] == "degraded"
        assert health["last_runs"]["pulse_engine"]["status"] == "failure"
        assert health["last_runs"]["ghost_hunter"] is None
        assert "running" in health["scan_worker"]

        logs = (await client.get("/api/v1/system/logs", params={"job_name": "pulse_engine"})).json()
        assert len(logs) == 1
        assert logs[0]["error"] == "db down"


# ═══════════════════════════════════════════════════════════
# WEBHOOKS & LINKS
# ═══════════════════════════════════════════════════════════

class TestAttributionAPI:
    async def test_link_click_redirects(self, client, ghost_factory, verify_db):
        ghost = await ghost_factory("in_abc")
        resp = await client.get(f"/api/v1/l/{ghost.id}", follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == "https://invoice.stripe.com/i/in_abc"
        async with verify_db() as vdb:
            fresh = await vdb.get(GhostTarget, ghost.id)
        assert fresh.click_count == 1
        assert fresh.attribution_expires_at is not None

    async def test_unknown_link_still_redirects(self, client):
        resp = await client.get("/api/v1/l/unknown", follow_redirects=False)
        assert resp.status_code == 302

    async def test_click_then_paid_is_direct(self, client, ghost_factory, verify_db):
        ghost = await ghost_factory("in_abc", 3300)
        await client.get(f"/api/v1/l/{ghost.id}", follow_redirects=False)

        resp = await client.post("/api/v1/webhooks/billing", json={
            "id": "evt_1", "type": "invoice.paid", "data": {"object": {"id": "in_abc"}},
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["received"] and body["recovered"]
        assert body["recovery_type"] == "direct"

        async with verify_db() as vdb:
            assert (await vdb.get(GhostTarget, ghost.id)).status == STATUS_RECOVERED

    async def test_webhook_for_untracked_invoice(self, client):
        resp = await client.post("/api/v1/webhooks/billing", json={
            "type": "invoice.paid", "data": {"object": {"id": "in_nobody"}},
        })
        assert resp.status_code == 200
        assert resp.json()["matched"] is False

    async def test_webhook_requires_type(self, client):
        resp = await client.post("/api/v1/webhooks/billing", json={"data": {}})
        assert resp.status_code == 422
