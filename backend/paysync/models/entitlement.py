"""Entitlement model"""
from sqlalchemy import Column, String, DateTime, Integer, BigInteger, Index
from datetime import datetime, timezone
from paysync.models.base import Base

PLAN_FREE = "free"
PLAN_PREMIUM = "premium"


class Entitlement(Base):
    """Per-account plan state.

    Expiries are epoch milliseconds. ``expires_at`` is the canonical field;
    ``legacy_expiry_millis`` holds the nested expiry that older billing writes
    produced and is only read when the canonical field is empty.
    """
    __tablename__ = "entitlements"

    account_id = Column(String(128), primary_key=True, index=True)
    plan = Column(String(50), nullable=False, default=PLAN_FREE)  # 'free', 'premium'
    activated_at = Column(BigInteger, nullable=True)  # first premium activation, write-once
    expires_at = Column(BigInteger, nullable=True)
    legacy_expiry_millis = Column(BigInteger, nullable=True)
    last_payment_ref = Column(String(255), nullable=True)
    last_payment_at = Column(BigInteger, nullable=True)
    last_payment_amount = Column(Integer, nullable=True)
    last_payment_currency = Column(String(10), nullable=True)
    source = Column(String(50), nullable=True)  # provider of the last extension
    product_id = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index("ix_entitlements_plan_expires_at", "plan", "expires_at"),
        Index("ix_entitlements_plan_legacy_expiry", "plan", "legacy_expiry_millis"),
    )

    def effective_expiry(self):
        """Canonical expiry, falling back to the legacy nested one"""
        if self.expires_at is not None:
            return self.expires_at
        return self.legacy_expiry_millis


# Expiry columns the sweep checks, in order. A legacy-only row is matched by
# the second pass because its canonical column is empty.
EXPIRY_FIELDS = ("expires_at", "legacy_expiry_millis")
