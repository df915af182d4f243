"""
FastAPI Application — entry point.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from phantom.config import settings
from phantom.database import close_db, init_db
from phantom.routes import router
from phantom.routes.system import system_router
from phantom.routes.webhooks import webhook_router
from phantom.services.scan_jobs import get_scan_worker
from phantom.services.scheduler import get_sentinel
from phantom.services.vault import run_security_check

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hook."""
    logger.info("🚀 Starting Phantom Recovery API v%s", VERSION)

    # Refuse to boot with a broken vault: VaultConfigError / VaultSelfTestError propagate
    run_security_check()

    await init_db()
    logger.info("✅ Database ready")

    worker = get_scan_worker()
    worker.start()

    sentinel = get_sentinel()
    if settings.sentinel_enabled:
        sentinel.start()
    else:
        logger.info("ℹ️ Sentinel disabled (SENTINEL_ENABLED=false)")

    yield

    # Shutdown
    sentinel.stop()
    worker.stop()
    await close_db()
    logger.info("👋 Shutdown complete")


app = FastAPI(
    title="Phantom Recovery API",
    description=(
        "Finds customers whose subscription payments failed, nudges them to "
        "fix their card, and attributes the recovered revenue."
    ),
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1")
app.include_router(system_router, prefix="/api/v1")
app.include_router(webhook_router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Phantom Recovery API",
        "version": VERSION,
        "docs": "/docs",
    }
