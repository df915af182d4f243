"""
Phantom Recovery — Configuration via environment variables.
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """All settings read from env / .env file."""

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./phantom.db",
        description="Async SQLAlchemy DB URL",
    )

    # Vault: AES-256-GCM key material (first 32 chars are used)
    encryption_key: str = Field(
        default="",
        description="Secret of at least 32 characters used to derive the vault key",
    )

    # Billing source (Stripe-compatible REST API)
    billing_api_base: str = Field(default="https://api.stripe.com/v1")
    billing_page_size: int = Field(default=100, description="Invoices per page")
    billing_timeout_sec: int = Field(default=30)

    # Sentinel: scheduled jobs
    sentinel_enabled: bool = Field(default=True, description="Run Ghost Hunter / Pulse loops in-process")
    lock_ttl_minutes: int = Field(default=30, description="Stale lock steal threshold")
    ghost_hunter_interval_sec: int = Field(default=12 * 3600)
    pulse_engine_interval_sec: int = Field(default=3600)
    scan_job_poll_interval_sec: int = Field(default=5)

    # Ghost Hunter pacing
    scan_batch_size: int = Field(default=50, description="Records per throttle batch / heartbeat")
    scan_throttle_sec: float = Field(default=0.2, description="Pause after each batch")
    rate_limit_retry_sec: float = Field(default=2.0, description="Backoff before the single retry")
    high_value_threshold_cents: int = Field(default=50000)
    default_tier_limit: int = Field(default=50, description="Max pending ghosts per merchant")
    purge_after_days: int = Field(default=90)

    # Pulse Engine
    grace_period_hours: int = Field(default=4)
    max_email_attempts: int = Field(default=3)
    pulse_batch_size: int = Field(default=100, description="Max dispatches per tick")
    pulse_send_delay_sec: float = Field(default=0.5, description="Pause between sends")
    attribution_window_hours: int = Field(default=24)
    golden_hour_buffer_hours: int = Field(default=2, description="Send window around a merchant's golden hour")
    public_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL used to build /api/v1/l/{strike_id} tracking links",
    )

    # Email / SMTP
    smtp_email: str = Field(default="", description="Sender address for recovery emails")
    smtp_app_password: str = Field(default="", description="SMTP password / app password")
    smtp_host: str = Field(default="smtp.gmail.com")
    smtp_port: int = Field(default=587)
    mailer_dry_run: bool = Field(
        default=False,
        description="Log composed emails instead of sending them",
    )

    @property
    def lock_ttl_sec(self) -> int:
        return self.lock_ttl_minutes * 60

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
