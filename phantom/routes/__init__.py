"""
API Routes — audits, scan-job polling, merchant ghosts and leakage, health.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from phantom.models.ghost_target import (
    STATUS_EXHAUSTED,
    STATUS_IMPENDING,
    STATUS_PENDING,
    STATUS_RECOVERED,
)
from phantom.schemas import (
    AuditRequest,
    AuditResponse,
    GhostListResponse,
    GhostTargetResponse,
    HealthResponse,
    LeakageReport,
    MerchantConnectRequest,
    MerchantResponse,
    ScanJobResponse,
)
from phantom.services.leakage import get_leakage_report
from phantom.services.merchants import get_ghost_targets_by_merchant, get_merchant, register_merchant
from phantom.services.scan_jobs import UnknownMerchantError, get_scan_job, start_audit

logger = logging.getLogger(__name__)

router = APIRouter()

GHOST_STATUSES = (STATUS_PENDING, STATUS_IMPENDING, STATUS_RECOVERED, STATUS_EXHAUSTED)


# ── Health ──────────────────────────────────────────────

@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health():
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


# ── Audits ──────────────────────────────────────────────

@router.post("/audits", response_model=AuditResponse, status_code=202, tags=["audits"])
async def create_audit(req: AuditRequest):
    """Queue a Ghost Hunter scan. Returns immediately; poll the scan job."""
    try:
        job, created = await start_audit(req.merchant_id, force_sync=req.force_sync)
    except UnknownMerchantError:
        raise HTTPException(404, f"Merchant {req.merchant_id} not found")

    return AuditResponse(
        scan_job_id=job.id,
        status=job.status,
        deduplicated=not created,
        poll_url=f"/api/v1/scan-jobs/{job.id}",
    )


@router.get("/scan-jobs/{job_id}", response_model=ScanJobResponse, tags=["audits"])
async def get_scan_job_status(job_id: int):
    job = await get_scan_job(job_id)
    if not job:
        raise HTTPException(404, f"Scan job {job_id} not found")
    return ScanJobResponse.model_validate(job)


# ── Merchants ───────────────────────────────────────────

@router.post("/merchants", response_model=MerchantResponse, status_code=201, tags=["merchants"])
async def connect_merchant(req: MerchantConnectRequest):
    """Store (or rotate) a merchant's billing credential, sealed by the vault."""
    merchant = await register_merchant(
        req.billing_account_id,
        req.access_token,
        business_name=req.business_name,
        support_email=req.support_email,
        default_currency=req.default_currency.lower(),
        tier_limit=req.tier_limit,
        send_strategy=req.send_strategy,
    )
    return MerchantResponse.model_validate(merchant)


@router.get("/merchants/{merchant_id}", response_model=MerchantResponse, tags=["merchants"])
async def get_merchant_detail(merchant_id: str):
    merchant = await get_merchant(merchant_id)
    if not merchant:
        raise HTTPException(404, f"Merchant {merchant_id} not found")
    return MerchantResponse.model_validate(merchant)


@router.get("/merchants/{merchant_id}/ghosts", response_model=GhostListResponse, tags=["merchants"])
async def list_ghosts(
    merchant_id: str,
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    if status and status not in GHOST_STATUSES:
        raise HTTPException(400, f"Unknown status '{status}'. Use one of: {', '.join(GHOST_STATUSES)}")
    if not await get_merchant(merchant_id):
        raise HTTPException(404, f"Merchant {merchant_id} not found")

    ghosts = await get_ghost_targets_by_merchant(merchant_id, status=status, limit=limit, offset=offset)
    return GhostListResponse(
        merchant_id=merchant_id,
        ghosts=[GhostTargetResponse.model_validate(g) for g in ghosts],
        total=len(ghosts),
    )


@router.get("/merchants/{merchant_id}/leakage", response_model=LeakageReport, tags=["merchants"])
async def merchant_leakage(
    merchant_id: str,
    months: int = Query(6, ge=1, le=24),
    days: int = Query(30, ge=1, le=90),
    exclude_purged: bool = Query(False),
):
    if not await get_merchant(merchant_id):
        raise HTTPException(404, f"Merchant {merchant_id} not found")
    return await get_leakage_report(merchant_id, months=months, days=days, exclude_purged=exclude_purged)
