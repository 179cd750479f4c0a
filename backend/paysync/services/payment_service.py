"""Ingress flows: webhook, client confirmation, checkout initiation, Play verification"""
import json
import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from paysync.core.config import Settings
from paysync.core.exceptions import PaymentVerificationError, ProviderNotConfiguredError, ReferenceConflictError
from paysync.core.logging import webhook_logger
from paysync.core.metrics import events_counter
from paysync.core.security import verify_paystack_signature
from paysync.models.payment_ledger import STATUS_IGNORED, STATUS_UNRESOLVED
from paysync.schemas.events import DropReason, PaymentEvent, Provider, ReconcileOutcome
from paysync.schemas.payments import ConfirmRequest, InitiateRequest, PlayVerifyRequest
from paysync.services.identity import resolve_account_id
from paysync.services.normalizer import (
    normalize_gateway_confirmation,
    normalize_paystack_event,
    normalize_play_product,
    normalize_play_subscription,
    paystack_account_hint,
    resolve_extension_days,
)
from paysync.services.paystack_client import PaystackClient
from paysync.services.play_client import GooglePlayClient
from paysync.services.reconciliation import (
    apply_payment_event,
    current_millis,
    record_unapplied,
)

logger = logging.getLogger(__name__)

PLAY_ACKNOWLEDGED = "ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED"


def _resolve(session_factory: sessionmaker, event: PaymentEvent) -> Optional[str]:
    db = session_factory()
    try:
        return resolve_account_id(db, event)
    finally:
        db.close()


def _caller_body(outcome: ReconcileOutcome, account_id: str) -> Dict[str, Any]:
    """Response for a client caller; a replay of another account's payment is refused"""
    if outcome.already_processed and outcome.account_id != account_id:
        logger.warning(f"Reference {outcome.reference} replayed by {account_id} but was applied to another account")
        raise ReferenceConflictError("Reference already applied to a different account")
    return _applied_body(outcome)


def _applied_body(outcome: ReconcileOutcome) -> Dict[str, Any]:
    return {
        "ok": True,
        "accountId": outcome.account_id,
        "reference": outcome.reference,
        "expiresAt": outcome.expires_at,
        "alreadyProcessed": outcome.already_processed,
    }


def process_gateway_webhook(raw_body: bytes, signature: Optional[str], *, settings: Settings,
                            session_factory: sessionmaker) -> Dict[str, Any]:
    """Handle one Paystack webhook delivery and return the acknowledgement body.

    Every classified outcome is a normal return; only infrastructure failures
    raise, and the route acknowledges those as ``internal``.
    """
    if not verify_paystack_signature(raw_body, signature, settings.PAYSTACK_SECRET_KEY):
        events_counter.labels(provider=Provider.PAYSTACK.value, outcome="bad_signature").inc()
        return {"ok": False, "reason": "bad-signature"}

    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        webhook_logger.warning("Paystack webhook body is not valid JSON")
        return {"ok": False, "reason": DropReason.INVALID_PAYLOAD.value}

    result = normalize_paystack_event(payload, settings.DEFAULT_EXTENSION_DAYS)
    if result.dropped:
        if result.drop_reason == DropReason.UNREFERENCED_NON_SUCCESS:
            return {"ok": True, "skipped": True, "event": result.event_type}
        events_counter.labels(provider=Provider.PAYSTACK.value, outcome="dropped").inc()
        webhook_logger.warning(f"Dropped Paystack event {result.event_type}: {result.drop_reason.value}")
        return {"ok": False, "reason": result.drop_reason.value}

    event = result.event
    webhook_logger.info(f"Paystack {event.event_type} for reference {event.reference}")

    if not event.is_success:
        outcome = record_unapplied(
            session_factory, event, STATUS_IGNORED, max_attempts=settings.TRANSACTION_MAX_ATTEMPTS
        )
        if outcome.already_processed:
            return _applied_body(outcome)
        return {"ok": True, "skipped": True, "event": event.event_type, "reference": event.reference}

    account_id = _resolve(session_factory, event)
    if not account_id:
        outcome = record_unapplied(
            session_factory, event, STATUS_UNRESOLVED,
            error_message="No account identifier or unique email match",
            max_attempts=settings.TRANSACTION_MAX_ATTEMPTS,
        )
        if outcome.already_processed:
            return _applied_body(outcome)
        webhook_logger.warning(f"Paystack reference {event.reference} has no resolvable account")
        return {"ok": False, "reason": "no-identity", "reference": event.reference}

    outcome = apply_payment_event(
        session_factory, event, account_id, max_attempts=settings.TRANSACTION_MAX_ATTEMPTS
    )
    return _applied_body(outcome)


def confirm_gateway_payment(request: ConfirmRequest, *, settings: Settings, session_factory: sessionmaker,
                            gateway: Optional[PaystackClient]) -> Dict[str, Any]:
    """Verify a reference with Paystack and, if successful, extend the caller's account.

    Raises:
        PaymentVerificationError: not verified, or the payment belongs to another account
        ReferenceConflictError: the reference was already applied to another account
        ProviderNotConfiguredError / ProviderAuthError / ProviderUnavailableError
    """
    if gateway is None:
        raise ProviderNotConfiguredError("Paystack is not configured")

    verification = gateway.verify(request.reference)

    embedded_account = paystack_account_hint(verification)
    if embedded_account and embedded_account != request.account_id:
        logger.warning(
            f"Confirmation for {request.reference} by {request.account_id} "
            f"but the checkout was started for {embedded_account}"
        )
        raise PaymentVerificationError("Payment not verified", details="reference belongs to a different account")

    result = normalize_gateway_confirmation(
        verification,
        account_id=request.account_id,
        reference=request.reference,
        days=request.days,
        months=request.months,
        default_days=settings.DEFAULT_EXTENSION_DAYS,
    )
    if result.dropped:
        raise PaymentVerificationError("Payment not verified", details=result.drop_reason.value)

    event = result.event
    if not event.is_success:
        raise PaymentVerificationError("Payment not verified", details=f"status={event.raw_status}")

    outcome = apply_payment_event(
        session_factory, event, request.account_id, max_attempts=settings.TRANSACTION_MAX_ATTEMPTS
    )
    return _caller_body(outcome, request.account_id)


def initiate_gateway_payment(request: InitiateRequest, *, settings: Settings,
                             gateway: Optional[PaystackClient]) -> Dict[str, Any]:
    """Start a Paystack checkout carrying the account id and duration in its metadata"""
    if gateway is None:
        raise ProviderNotConfiguredError("Paystack is not configured")

    amount_minor = int(round(request.amount * 100))
    currency = (request.currency or settings.DEFAULT_CURRENCY).upper()
    days = resolve_extension_days(request.days, None, settings.DEFAULT_EXTENSION_DAYS)

    data = gateway.initialize_transaction(
        email=request.email,
        amount_minor=amount_minor,
        currency=currency,
        metadata={"accountId": request.account_id, "days": days},
    )
    return {
        "ok": True,
        "authorizationUrl": data.get("authorization_url"),
        "reference": data.get("reference"),
        "accessCode": data.get("access_code"),
    }


def verify_play_purchase(request: PlayVerifyRequest, *, settings: Settings, session_factory: sessionmaker,
                         billing: Optional[GooglePlayClient]) -> Tuple[Dict[str, Any], Optional[Tuple[str, str, str]]]:
    """Verify a Play purchase token and extend the account.

    Returns the response body and, when the subscription still needs it, the
    ``(package_name, subscription_id, token)`` to acknowledge after responding.

    Raises:
        ValueError: missing fields, unsupported platform or SKU not allowed
        PaymentVerificationError: the token is not entitled
        ReferenceConflictError: the purchase was already applied to another account
        ProviderNotConfiguredError / ProviderAuthError / ProviderUnavailableError
    """
    if request.platform != "android":
        raise ValueError("Only Android supported")
    if not request.account_id:
        raise ValueError("Missing accountId")
    if billing is None:
        raise ProviderNotConfiguredError("Google Play is not configured")

    package_name = request.package_name or billing.default_package_name
    if not package_name:
        raise ValueError("Missing packageName")
    if not request.purchase_token:
        raise ValueError("Missing purchaseToken")
    if settings.ALLOWED_SKU_PREFIX and request.product_id and not request.product_id.startswith(settings.ALLOWED_SKU_PREFIX):
        raise ValueError("SKU not allowed")

    now_ms = current_millis()
    kind = "subscription"
    state = None
    event = None
    acknowledgement = None

    subscription = billing.get_subscription(package_name, request.purchase_token)
    if subscription:
        result = normalize_play_subscription(
            subscription,
            account_id=request.account_id,
            purchase_token=request.purchase_token,
            product_id=request.product_id,
            now_ms=now_ms,
            default_days=settings.DEFAULT_EXTENSION_DAYS,
        )
        state = result.event_type
        event = result.event
        if (event is not None and event.is_success and request.product_id
                and subscription.get("acknowledgementState") != PLAY_ACKNOWLEDGED):
            acknowledgement = (package_name, request.product_id, request.purchase_token)

    if (event is None or not event.is_success) and request.product_id:
        purchase = billing.get_product_purchase(package_name, request.product_id, request.purchase_token)
        if purchase:
            product_result = normalize_play_product(
                purchase,
                account_id=request.account_id,
                purchase_token=request.purchase_token,
                product_id=request.product_id,
                default_days=settings.DEFAULT_EXTENSION_DAYS,
            )
            if product_result.event is not None and (product_result.event.is_success or event is None):
                event = product_result.event
                kind = "product"

    if event is None or not event.is_success:
        raise PaymentVerificationError(
            "Verification failed",
            details=f"state={state}" if state else "token not valid/active",
        )

    outcome = apply_payment_event(
        session_factory, event, request.account_id, now_ms=now_ms,
        max_attempts=settings.TRANSACTION_MAX_ATTEMPTS,
    )
    body = _caller_body(outcome, request.account_id)
    body["summary"] = {
        "kind": kind,
        "state": state if kind == "subscription" else None,
        "isActive": True,
        "expiryTimeMillis": event.provider_expiry_ms,
    }
    return body, acknowledgement


def acknowledge_quietly(billing: GooglePlayClient, package_name: str, subscription_id: str,
                        purchase_token: str) -> None:
    """Background post-step: acknowledge a subscription, logging (not raising) on failure"""
    try:
        billing.acknowledge_subscription(package_name, subscription_id, purchase_token)
        logger.info(f"Acknowledged Play subscription {subscription_id}")
    except Exception as e:
        logger.warning(f"Play acknowledge failed for {subscription_id}: {e}")
