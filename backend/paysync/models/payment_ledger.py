"""PaymentLedgerEntry model"""
from sqlalchemy import Column, String, Boolean, Text, DateTime, Integer, BigInteger
from datetime import datetime, timezone
from paysync.models.base import Base

# Ledger statuses
STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_IGNORED = "ignored"          # non-success event kept for audit
STATUS_UNRESOLVED = "unresolved"    # success event with no resolvable account


class PaymentLedgerEntry(Base):
    """One row per payment reference; the idempotency record for entitlement extensions.

    Once ``processed`` is true the row is never modified again.
    """
    __tablename__ = "payment_ledger"

    reference = Column(String(255), primary_key=True, index=True)
    account_id = Column(String(128), nullable=True, index=True)
    provider = Column(String(50), nullable=False)  # 'paystack', 'google_play'
    status = Column(String(50), nullable=False, default=STATUS_PENDING)
    processed = Column(Boolean, default=False, nullable=False)
    amount = Column(Integer, nullable=True)  # minor currency units
    currency = Column(String(10), nullable=True)
    event_type = Column(String(100), nullable=True)
    channel = Column(String(50), nullable=True)  # 'webhook', 'client_confirm', 'play_verify'
    email = Column(String(255), nullable=True)
    extension_days = Column(Integer, nullable=True)
    new_expiry = Column(BigInteger, nullable=True)  # epoch millis written to the entitlement
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
