"""Canonical payment event and reconciliation outcomes"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

# Longest single extension; keeps computed expiries well inside a 64-bit millis column
MAX_EXTENSION_DAYS = 3650
DAYS_PER_MONTH = 30


class Provider(str, Enum):
    PAYSTACK = "paystack"
    GOOGLE_PLAY = "google_play"


class Channel(str, Enum):
    WEBHOOK = "webhook"
    CLIENT_CONFIRM = "client_confirm"
    PLAY_VERIFY = "play_verify"


class PaymentEvent(BaseModel):
    """Provider-independent view of one payment or subscription signal"""
    provider: Provider
    channel: Channel
    event_type: str
    reference: str
    is_success: bool
    raw_status: Optional[str] = None
    account_id: Optional[str] = None
    metadata_account_id: Optional[str] = None
    email: Optional[str] = None
    amount: Optional[int] = None  # minor currency units
    currency: Optional[str] = None
    requested_extension_days: Optional[int] = Field(default=None, le=MAX_EXTENSION_DAYS)
    provider_expiry_ms: Optional[int] = None  # authoritative expiry from the billing service
    product_id: Optional[str] = None


class DropReason(str, Enum):
    INVALID_PAYLOAD = "invalid-payload"
    MISSING_REFERENCE = "missing-reference"
    UNREFERENCED_NON_SUCCESS = "unreferenced-non-success"  # nothing to record, acknowledged as skipped


class NormalizationResult(BaseModel):
    """Either a usable event or the reason nothing can be recorded"""
    event: Optional[PaymentEvent] = None
    drop_reason: Optional[DropReason] = None
    event_type: Optional[str] = None

    @property
    def dropped(self) -> bool:
        return self.event is None


class ReconcileStatus(str, Enum):
    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    IGNORED = "ignored"
    UNRESOLVED = "unresolved"


class ReconcileOutcome(BaseModel):
    """Result of one guarded reconciliation transaction"""
    status: ReconcileStatus
    reference: str
    account_id: Optional[str] = None
    expires_at: Optional[int] = None
    previous_expiry: Optional[int] = None
    activated_at: Optional[int] = None

    @property
    def already_processed(self) -> bool:
        return self.status == ReconcileStatus.ALREADY_PROCESSED
