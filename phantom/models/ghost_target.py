"""
Phantom Recovery — Ghost targets and their PII vault rows.

A GhostTarget is one failed invoice for one merchant. Customer PII never
lives on the target itself: it sits encrypted in the owned ``pii_vault`` row.
"""

import uuid

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from phantom.database import Base, UtcDateTime, utcnow

# Status values
STATUS_PENDING = "pending"
STATUS_IMPENDING = "impending"
STATUS_RECOVERED = "recovered"
STATUS_EXHAUSTED = "exhausted"

ACTIONABLE_STATUSES = (STATUS_PENDING, STATUS_IMPENDING)


class PiiRecord(Base):
    """Encrypted customer email + name (AES-256-GCM, hex fields)."""

    __tablename__ = "pii_vault"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    merchant_id = Column(String(36), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)

    email_ciphertext = Column(Text, nullable=False)
    email_iv = Column(String(32), nullable=False)
    email_tag = Column(String(32), nullable=False)

    name_ciphertext = Column(Text)
    name_iv = Column(String(32))
    name_tag = Column(String(32))

    created_at = Column(UtcDateTime, default=utcnow)


class GhostTarget(Base):
    """One failed (or about-to-fail) invoice under recovery."""

    __tablename__ = "ghost_targets"
    __table_args__ = (
        CheckConstraint("email_count >= 0 AND email_count <= 3", name="ck_ghost_targets_email_count"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    merchant_id = Column(String(36), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    pii_id = Column(String(36), ForeignKey("pii_vault.id"))

    invoice_id = Column(String(255), nullable=False, unique=True)
    customer_id = Column(String(255))  # billing-source customer reference
    amount = Column(BigInteger, nullable=False)  # minor units, immutable
    currency = Column(String(3), default="usd")

    discovered_at = Column(UtcDateTime, nullable=False, default=utcnow, index=True)
    purge_at = Column(UtcDateTime, nullable=False)

    # Dispatch bookkeeping (Pulse Engine)
    status = Column(String(20), nullable=False, default=STATUS_PENDING, index=True)
    email_count = Column(Integer, nullable=False, default=0)
    last_emailed_at = Column(UtcDateTime)

    # Attribution
    click_count = Column(Integer, nullable=False, default=0)
    last_clicked_at = Column(UtcDateTime)
    attribution_expires_at = Column(UtcDateTime)
    recovered_at = Column(UtcDateTime)
    recovery_type = Column(String(20))  # "direct" | "organic"

    # Classification
    failure_code = Column(String(100))
    failure_message = Column(Text)
    decline_type = Column(String(10))  # "soft" | "hard"
    recovery_strategy = Column(String(30))

    # Non-PII risk metadata
    card_brand = Column(String(30))
    card_funding = Column(String(30))
    country = Column(String(2))
    requires_3ds = Column(Boolean, default=False)
    error_code = Column(String(100))

    merchant = relationship("Merchant", back_populates="ghosts", lazy="raise")
    pii = relationship("PiiRecord", lazy="joined")

    def to_dict(self):
        """Dashboard-safe view — never includes PII."""
        return {
            "id": self.id,
            "merchant_id": self.merchant_id,
            "invoice_id": self.invoice_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "email_count": self.email_count,
            "click_count": self.click_count,
            "decline_type": self.decline_type,
            "recovery_strategy": self.recovery_strategy,
            "recovery_type": self.recovery_type,
            "failure_code": self.failure_code,
            "card_brand": self.card_brand,
            "card_funding": self.card_funding,
            "country": self.country,
            "requires_3ds": bool(self.requires_3ds),
            "discovered_at": self.discovered_at.isoformat() if self.discovered_at else None,
            "purge_at": self.purge_at.isoformat() if self.purge_at else None,
            "last_emailed_at": self.last_emailed_at.isoformat() if self.last_emailed_at else None,
            "last_clicked_at": self.last_clicked_at.isoformat() if self.last_clicked_at else None,
            "attribution_expires_at": (
                self.attribution_expires_at.isoformat() if self.attribution_expires_at else None
            ),
            "recovered_at": self.recovered_at.isoformat() if self.recovered_at else None,
        }

    def __repr__(self):
        return f"<GhostTarget {self.invoice_id} [{self.status}]>"
