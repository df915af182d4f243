"""
Shared test fixtures — in-memory DB, test vault, fake billing source and mailer,
FastAPI test client.

Usage:
    python -m pytest tests/ -v
"""

import uuid
from datetime import timedelta
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import phantom.models  # noqa: F401  (register tables)
from phantom.config import settings
from phantom.database import Base
from phantom.models.ghost_target import STATUS_PENDING, GhostTarget, PiiRecord
from phantom.services.merchants import register_merchant
from phantom.services.vault import Vault
from tests.fakes import NOW, TEST_ACCESS_TOKEN, TEST_ENCRYPTION_KEY, FakeBillingSource, FakeMailer

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


# ═══════════════════════════════════════════════════════════
# DATABASE FIXTURES
# ═══════════════════════════════════════════════════════════

@pytest_asyncio.fixture()
async def db_engine():
    """In-memory SQLite engine with every table."""
    engine = create_async_engine(
        TEST_DB_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(db_engine):
    """Session factory for patching into service modules."""
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db(session_factory):
    """Async DB session for test setup."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def verify_db(session_factory):
    """Callable giving a fresh session, for reading what services committed.

        async with verify_db() as vdb:
            fresh = await vdb.get(GhostTarget, ghost_id)
    """
    def _open():
        return session_factory()
    return _open


# ═══════════════════════════════════════════════════════════
# PATCH ALL SERVICE MODULES TO USE TEST DB
# ═══════════════════════════════════════════════════════════

SERVICE_MODULES = [
    "phantom.services.attribution",
    "phantom.services.ghost_hunter",
    "phantom.services.leakage",
    "phantom.services.locks",
    "phantom.services.merchants",
    "phantom.services.oracle",
    "phantom.services.pulse_engine",
    "phantom.services.scan_jobs",
    "phantom.services.system_log",
]


@pytest.fixture(autouse=True)
def patch_db_factory(session_factory):
    """Redirect async_session_factory in every service module to the test DB."""
    patchers = [patch(f"{mod}.async_session_factory", session_factory) for mod in SERVICE_MODULES]
    for p in patchers:
        p.start()
    yield session_factory
    for p in patchers:
        p.stop()


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    """No real sleeps, deterministic limits."""
    monkeypatch.setattr(settings, "scan_throttle_sec", 0)
    monkeypatch.setattr(settings, "rate_limit_retry_sec", 0)
    monkeypatch.setattr(settings, "pulse_send_delay_sec", 0)
    monkeypatch.setattr(settings, "scan_batch_size", 50)
    monkeypatch.setattr(settings, "grace_period_hours", 4)
    monkeypatch.setattr(settings, "max_email_attempts", 3)
    monkeypatch.setattr(settings, "attribution_window_hours", 24)
    monkeypatch.setattr(settings, "high_value_threshold_cents", 50000)
    monkeypatch.setattr(settings, "default_tier_limit", 50)
    monkeypatch.setattr(settings, "public_base_url", "https://phantom.test")
    return settings


# ═══════════════════════════════════════════════════════════
# COLLABORATORS (autouse, never touch the network)
# ═══════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def vault():
    test_vault = Vault(TEST_ENCRYPTION_KEY)
    with patch("phantom.services.vault._vault", test_vault):
        yield test_vault


@pytest.fixture(autouse=True)
def billing_source():
    source = FakeBillingSource()
    with patch("phantom.services.billing._source", source):
        yield source


@pytest.fixture(autouse=True)
def mailer():
    fake = FakeMailer()
    with patch("phantom.services.mailer._mailer", fake):
        yield fake


@pytest.fixture(autouse=True)
def fresh_singletons():
    """Each test gets its own Sentinel and scan worker."""
    with patch("phantom.services.scheduler._sentinel", None), \
         patch("phantom.services.scan_jobs._worker", None):
        yield


# ═══════════════════════════════════════════════════════════
# SAMPLE DATA
# ═══════════════════════════════════════════════════════════

@pytest_asyncio.fixture()
async def merchant(vault):
    return await register_merchant(
        "acct_test_001",
        TEST_ACCESS_TOKEN,
        business_name="Acme Cloud",
        support_email="help@acme.example.com",
        vault=vault,
    )


@pytest.fixture()
def ghost_factory(session_factory, vault, merchant):
    """Insert a ghost directly, bypassing the scan. Returns the stored row."""

    async def _make(
        invoice_id: str | None = None,
        amount: int = 2000,
        *,
        email: str = "jane.doe@example.com",
        name: str | None = "Jane Doe",
        discovered_at=None,
        **fields,
    ) -> GhostTarget:
        discovered_at = discovered_at or (NOW - timedelta(hours=5))
        sealed_email = vault.encrypt(email)
        pii = PiiRecord(
            id=str(uuid.uuid4()),
            merchant_id=merchant.id,
            email_ciphertext=sealed_email.ciphertext,
            email_iv=sealed_email.iv,
            email_tag=sealed_email.tag,
        )
        if name:
            sealed_name = vault.encrypt(name)
            pii.name_ciphertext, pii.name_iv, pii.name_tag = sealed_name.ciphertext, sealed_name.iv, sealed_name.tag

        values = {
            "status": STATUS_PENDING,
            "email_count": 0,
            "click_count": 0,
            "recovery_strategy": "smart_retry",
            "decline_type": "soft",
            "currency": "usd",
            "purge_at": discovered_at + timedelta(days=90),
        }
        values.update(fields)
        target = GhostTarget(
            id=str(uuid.uuid4()),
            merchant_id=merchant.id,
            invoice_id=invoice_id or f"in_{uuid.uuid4().hex[:10]}",
            amount=amount,
            discovered_at=discovered_at,
            pii=pii,
            **values,
        )
        async with session_factory() as session:
            session.add(target)
            await session.commit()
        return target

    return _make


# ═══════════════════════════════════════════════════════════
# API CLIENT
# ═══════════════════════════════════════════════════════════

@pytest_asyncio.fixture()
async def client():
    """FastAPI test client. Lifespan is not run, so no background loops start."""
    from phantom.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
