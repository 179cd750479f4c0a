"""Turns raw provider payloads into canonical PaymentEvent objects.

Nothing here touches the store or the network: each function takes the
provider's already-fetched JSON and returns a NormalizationResult.
"""
import json
import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from paysync.schemas.events import (
    DAYS_PER_MONTH,
    MAX_EXTENSION_DAYS,
    Channel,
    DropReason,
    NormalizationResult,
    PaymentEvent,
    Provider,
)

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION_DAYS = 30

PAYSTACK_SUCCESS_EVENTS = frozenset({
    "charge.success",
    "subscription.create",
    "subscription.enable",
    "invoice.payment_success",
})

PLAY_STATE_ACTIVE = "SUBSCRIPTION_STATE_ACTIVE"
PLAY_STATE_IN_GRACE_PERIOD = "SUBSCRIPTION_STATE_IN_GRACE_PERIOD"
PLAY_STATE_CANCELED = "SUBSCRIPTION_STATE_CANCELED"
PLAY_STATE_EXPIRED = "SUBSCRIPTION_STATE_EXPIRED"

# purchases.products purchaseState: 0 purchased, 1 canceled, 2 pending
PLAY_PRODUCT_PURCHASED = 0

_FRACTION = re.compile(r"\.(\d+)")


def _positive_int(value: Any) -> Optional[int]:
    """Coerce numbers and numeric strings; zero, negatives and junk count as absent"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            value = float(value)
        except ValueError:
            return None
    if not isinstance(value, (int, float)) or (isinstance(value, float) and not math.isfinite(value)):
        return None
    result = int(value)
    return result if result > 0 else None


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_dict(value: Any) -> Dict[str, Any]:
    """Paystack metadata arrives as an object, a JSON-encoded string, or ''"""
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        try:
            decoded = json.loads(value)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def resolve_extension_days(days: Any = None, months: Any = None,
                           default: int = DEFAULT_EXTENSION_DAYS) -> int:
    """Explicit days, else months x 30, else the default; capped at MAX_EXTENSION_DAYS"""
    explicit_days = _positive_int(days)
    if explicit_days:
        return min(explicit_days, MAX_EXTENSION_DAYS)
    explicit_months = _positive_int(months)
    if explicit_months:
        return min(explicit_months * DAYS_PER_MONTH, MAX_EXTENSION_DAYS)
    return min(default, MAX_EXTENSION_DAYS)


def to_epoch_millis(value: Any) -> Optional[int]:
    """Epoch millis from a number, a numeric string, or an RFC 3339 timestamp.

    Google returns RFC 3339 with up to nanosecond precision; the fraction is
    cut to microseconds before parsing.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    text = str(value).strip()
    if not text:
        return None
    if text.isdigit():
        return int(text)
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning(f"Unparseable timestamp from provider: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _paystack_reference(data: Dict[str, Any]) -> Optional[str]:
    return _text(data.get("reference")) or _text(data.get("subscription_code")) or _text(data.get("id"))


def _paystack_account_hint(data: Dict[str, Any]) -> Optional[str]:
    metadata = _as_dict(data.get("metadata"))
    customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
    customer_metadata = _as_dict(customer.get("metadata"))
    for source in (metadata, customer_metadata):
        for key in ("accountId", "uid"):
            hint = _text(source.get(key))
            if hint:
                return hint
    return None


def _paystack_email(data: Dict[str, Any]) -> Optional[str]:
    customer = data.get("customer")
    if isinstance(customer, dict):
        return _text(customer.get("email"))
    return None


def normalize_paystack_event(payload: Any, default_days: int = DEFAULT_EXTENSION_DAYS) -> NormalizationResult:
    """Normalize a Paystack webhook body (``{"event": ..., "data": {...}}``)"""
    if not isinstance(payload, dict):
        return NormalizationResult(drop_reason=DropReason.INVALID_PAYLOAD)

    event_type = _text(payload.get("event"))
    data = payload.get("data")
    if event_type is None or not isinstance(data, dict):
        return NormalizationResult(drop_reason=DropReason.INVALID_PAYLOAD, event_type=event_type)

    is_success = event_type in PAYSTACK_SUCCESS_EVENTS
    reference = _paystack_reference(data)
    if not reference:
        if is_success:
            logger.warning(f"Dropping Paystack {event_type} without a reference")
            return NormalizationResult(drop_reason=DropReason.MISSING_REFERENCE, event_type=event_type)
        return NormalizationResult(drop_reason=DropReason.UNREFERENCED_NON_SUCCESS, event_type=event_type)

    metadata = _as_dict(data.get("metadata"))
    event = PaymentEvent(
        provider=Provider.PAYSTACK,
        channel=Channel.WEBHOOK,
        event_type=event_type,
        reference=reference,
        is_success=is_success,
        raw_status=_text(data.get("status")),
        metadata_account_id=_paystack_account_hint(data),
        email=_paystack_email(data),
        amount=_optional_int(data.get("amount")),
        currency=_text(data.get("currency")),
        requested_extension_days=resolve_extension_days(metadata.get("days"), metadata.get("months"), default_days),
    )
    return NormalizationResult(event=event, event_type=event_type)


def paystack_account_hint(verification: Dict[str, Any]) -> Optional[str]:
    """Account id the initiating party embedded in a verified transaction's metadata"""
    return _paystack_account_hint(verification)


def normalize_gateway_confirmation(verification: Dict[str, Any], account_id: str, reference: str,
                                   days: Any = None, months: Any = None,
                                   default_days: int = DEFAULT_EXTENSION_DAYS) -> NormalizationResult:
    """Normalize a Paystack verify response for a client confirmation.

    The client's explicit days/months win; otherwise whatever the checkout
    stored in the transaction metadata; otherwise the default.
    """
    raw_status = _text(verification.get("status"))
    verified_reference = _text(verification.get("reference")) or _text(reference)
    if not verified_reference:
        return NormalizationResult(drop_reason=DropReason.MISSING_REFERENCE, event_type="transaction.verify")

    metadata = _as_dict(verification.get("metadata"))
    fallback_days = resolve_extension_days(metadata.get("days"), metadata.get("months"), default_days)
    event = PaymentEvent(
        provider=Provider.PAYSTACK,
        channel=Channel.CLIENT_CONFIRM,
        event_type="transaction.verify",
        reference=verified_reference,
        is_success=raw_status == "success",
        raw_status=raw_status,
        metadata_account_id=_text(account_id),
        email=_paystack_email(verification),
        amount=_optional_int(verification.get("amount")),
        currency=_text(verification.get("currency")),
        requested_extension_days=resolve_extension_days(days, months, fallback_days),
    )
    return NormalizationResult(event=event, event_type=event.event_type)


def normalize_play_subscription(subscription: Dict[str, Any], account_id: Optional[str], purchase_token: str,
                                product_id: Optional[str], now_ms: int,
                                default_days: int = DEFAULT_EXTENSION_DAYS) -> NormalizationResult:
    """Normalize a ``purchases.subscriptionsv2`` resource.

    ACTIVE and IN_GRACE_PERIOD are entitled; CANCELED stays entitled until
    its expiry passes; EXPIRED and anything else is not.
    """
    state = _text(subscription.get("subscriptionState")) or "SUBSCRIPTION_STATE_UNSPECIFIED"
    line_items = subscription.get("lineItems")
    line = line_items[0] if isinstance(line_items, list) and line_items and isinstance(line_items[0], dict) else {}
    expiry_ms = to_epoch_millis(line.get("expiryTime"))

    if state in (PLAY_STATE_ACTIVE, PLAY_STATE_IN_GRACE_PERIOD):
        is_success = True
    elif state == PLAY_STATE_CANCELED:
        is_success = expiry_ms is not None and expiry_ms > now_ms
    else:
        is_success = False

    reference = _text(subscription.get("latestOrderId")) or _text(purchase_token)
    if not reference:
        return NormalizationResult(drop_reason=DropReason.MISSING_REFERENCE, event_type=state)

    event = PaymentEvent(
        provider=Provider.GOOGLE_PLAY,
        channel=Channel.PLAY_VERIFY,
        event_type=state,
        reference=reference,
        is_success=is_success,
        raw_status=state,
        metadata_account_id=_text(account_id),
        requested_extension_days=default_days,
        provider_expiry_ms=expiry_ms,
        product_id=_text(line.get("productId")) or _text(product_id),
    )
    return NormalizationResult(event=event, event_type=state)


def normalize_play_product(purchase: Dict[str, Any], account_id: Optional[str], purchase_token: str,
                           product_id: str, default_days: int = DEFAULT_EXTENSION_DAYS) -> NormalizationResult:
    """Normalize a ``purchases.products`` resource (one-time product)"""
    purchase_state = _optional_int(purchase.get("purchaseState"))
    event_type = f"PRODUCT_PURCHASE_STATE_{purchase_state}"
    reference = _text(purchase.get("orderId")) or _text(purchase_token)
    if not reference:
        return NormalizationResult(drop_reason=DropReason.MISSING_REFERENCE, event_type=event_type)

    event = PaymentEvent(
        provider=Provider.GOOGLE_PLAY,
        channel=Channel.PLAY_VERIFY,
        event_type=event_type,
        reference=reference,
        is_success=purchase_state == PLAY_PRODUCT_PURCHASED,
        raw_status=str(purchase_state),
        metadata_account_id=_text(account_id),
        requested_extension_days=default_days,
        product_id=_text(product_id),
    )
    return NormalizationResult(event=event, event_type=event_type)
