"""
Phantom Recovery — Merchant model.
A connected billing account whose invoice history the Ghost Hunter audits.
"""

import uuid

from sqlalchemy import BigInteger, Column, Integer, String, Text
from sqlalchemy.orm import relationship

from phantom.database import Base, UtcDateTime, utcnow

SEND_STRATEGY_ORACLE = "oracle"        # hold soft-decline emails for the golden hour
SEND_STRATEGY_IMMEDIATE = "immediate"  # send as soon as a ghost is eligible


class Merchant(Base):
    """Billing account plus its encrypted access credential and audit counters."""

    __tablename__ = "merchants"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    billing_account_id = Column(String(255), nullable=False, unique=True)  # e.g. acct_1Nv...

    # Access credential: vault ciphertext only (hex)
    token_ciphertext = Column(Text, nullable=False)
    token_iv = Column(String(32), nullable=False)
    token_tag = Column(String(32), nullable=False)

    business_name = Column(String(255))
    support_email = Column(String(255))
    default_currency = Column(String(3), default="usd")
    tier_limit = Column(Integer, default=50)  # max pending ghosts
    send_strategy = Column(String(20), default=SEND_STRATEGY_ORACLE)

    # Audit bookkeeping
    last_audit_at = Column(UtcDateTime)
    last_audit_status = Column(String(20))  # "completed", "partial", "failed"
    gross_invoiced_cents = Column(BigInteger, default=0)
    total_vetted_count = Column(Integer, default=0)
    total_recovered_cents = Column(BigInteger, default=0)

    created_at = Column(UtcDateTime, default=utcnow)

    ghosts = relationship("GhostTarget", back_populates="merchant", lazy="raise")

    def to_dict(self):
        return {
            "id": self.id,
            "billing_account_id": self.billing_account_id,
            "business_name": self.business_name,
            "support_email": self.support_email,
            "default_currency": self.default_currency,
            "tier_limit": self.tier_limit,
            "send_strategy": self.send_strategy or SEND_STRATEGY_ORACLE,
            "last_audit_at": self.last_audit_at.isoformat() if self.last_audit_at else None,
            "last_audit_status": self.last_audit_status,
            "gross_invoiced_cents": self.gross_invoiced_cents or 0,
            "total_vetted_count": self.total_vetted_count or 0,
            "total_recovered_cents": self.total_recovered_cents or 0,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Merchant {self.billing_account_id}>"
