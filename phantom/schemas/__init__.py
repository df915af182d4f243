"""
Phantom Recovery — Pydantic request/response schemas.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, EmailStr, Field


class ScanJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "1.0.0"
    timestamp: str | None = None
    database: str = "connected"


# ── Audits / scan jobs ─────────────────────────────────────

class AuditRequest(BaseModel):
    merchant_id: str = Field(..., alias="merchantId", min_length=1, max_length=36)
    force_sync: bool = Field(False, alias="forceSync")

    model_config = {"populate_by_name": True}


class AuditResponse(BaseModel):
    scan_job_id: int
    status: ScanJobStatus
    deduplicated: bool = False
    poll_url: str


class ScanJobResponse(BaseModel):
    id: int
    merchant_id: str
    status: ScanJobStatus
    progress: int = 0
    error: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = {"from_attributes": True}


# ── Merchants ──────────────────────────────────────────

class MerchantConnectRequest(BaseModel):
    billing_account_id: str = Field(..., alias="billingAccountId", min_length=3, max_length=255)
    access_token: str = Field(..., alias="accessToken", min_length=8, max_length=500)
    business_name: str | None = Field(None, alias="businessName", max_length=255)
    support_email: EmailStr | None = Field(None, alias="supportEmail")
    default_currency: str = Field("usd", alias="defaultCurrency", min_length=3, max_length=3)
    tier_limit: int | None = Field(None, alias="tierLimit", ge=1, le=100000)
    send_strategy: str | None = Field(None, alias="sendStrategy", pattern="^(oracle|immediate)$")

    model_config = {"populate_by_name": True}


class MerchantResponse(BaseModel):
    id: str
    billing_account_id: str
    business_name: str | None = None
    support_email: str | None = None
    default_currency: str | None = None
    tier_limit: int | None = None
    send_strategy: str | None = None
    last_audit_at: datetime | None = None
    last_audit_status: str | None = None
    gross_invoiced_cents: int | None = 0
    total_vetted_count: int | None = 0
    total_recovered_cents: int | None = 0

    model_config = {"from_attributes": True}


# ── Ghosts / leakage ───────────────────────────────────────

class GhostTargetResponse(BaseModel):
    id: str
    invoice_id: str
    amount: int
    currency: str | None = None
    status: str
    email_count: int = 0
    click_count: int = 0
    decline_type: str | None = None
    recovery_strategy: str | None = None
    recovery_type: str | None = None
    failure_code: str | None = None
    card_brand: str | None = None
    country: str | None = None
    requires_3ds: bool | None = False
    discovered_at: datetime | None = None
    last_emailed_at: datetime | None = None
    recovered_at: datetime | None = None

    model_config = {"from_attributes": True}


class GhostListResponse(BaseModel):
    merchant_id: str
    ghosts: list[GhostTargetResponse]
    total: int


class LeakageCategoryRow(BaseModel):
    category: str
    value: int
    count: int
    percentage: int
    color: str
    recoverability: int


class LeakageReport(BaseModel):
    merchant_id: str
    default_currency: str
    lifetime: dict
    impending_leakage_cents: int
    categories: list[LeakageCategoryRow]
    monthly_trend: list[dict]
    daily_pulse: list[dict]


# ── Sentinel / system ──────────────────────────────────────

class JobRunResponse(BaseModel):
    job_name: str
    status: str
    details: dict = {}
    error: str | None = None
    elapsed_sec: float = 0.0


class SystemHealthResponse(BaseModel):
    status: str
    last_runs: dict
    sentinel: dict
    scan_worker: dict


class SystemLogEntry(BaseModel):
    id: str
    job_name: str
    status: str
    details: dict | None = None
    error: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


# ── Billing webhook ────────────────────────────────────────

class BillingEvent(BaseModel):
    id: str | None = None
    type: str = Field(..., min_length=1)
    data: dict = {}

    model_config = {"extra": "allow"}
