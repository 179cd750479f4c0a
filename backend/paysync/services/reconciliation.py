"""Idempotent application of payment events to entitlements.

Each public function runs as one ``run_in_transaction`` unit: the ledger
guard, the entitlement write and the ledger write commit together or not at
all, and the guard is re-read on every retry.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from opentelemetry import trace
from sqlalchemy.orm import Session, sessionmaker

from paysync.core.metrics import entitlement_extensions_counter, events_counter
from paysync.db.transaction import run_in_transaction
from paysync.models.entitlement import PLAN_PREMIUM, Entitlement
from paysync.models.payment_ledger import (
    STATUS_IGNORED,
    STATUS_SUCCESS,
    STATUS_UNRESOLVED,
    PaymentLedgerEntry,
)
from paysync.schemas.events import PaymentEvent, ReconcileOutcome, ReconcileStatus
from paysync.services.normalizer import DEFAULT_EXTENSION_DAYS

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MILLIS_PER_DAY = 86_400_000

_UNAPPLIED_STATUSES = {
    STATUS_IGNORED: ReconcileStatus.IGNORED,
    STATUS_UNRESOLVED: ReconcileStatus.UNRESOLVED,
}


def current_millis() -> int:
    return int(time.time() * 1000)


def compute_new_expiry(current: Optional[int], now: int, days: int,
                       authoritative: Optional[int] = None) -> int:
    """Extend-from-max: ``max(current, now) + days``.

    An authoritative expiry in the future (billing-service renewals) is used
    as-is, except that it never lowers a later expiry already on record.
    """
    if authoritative is not None and authoritative > now:
        return max(authoritative, current or 0)
    base = max(current or 0, now)
    return base + max(days, 0) * MILLIS_PER_DAY


def _load_ledger_entry(db: Session, reference: str) -> Optional[PaymentLedgerEntry]:
    return (
        db.query(PaymentLedgerEntry)
        .filter(PaymentLedgerEntry.reference == reference)
        .with_for_update()
        .first()
    )


def _load_entitlement(db: Session, account_id: str) -> Optional[Entitlement]:
    return (
        db.query(Entitlement)
        .filter(Entitlement.account_id == account_id)
        .with_for_update()
        .first()
    )


def _already_processed(entry: PaymentLedgerEntry) -> ReconcileOutcome:
    return ReconcileOutcome(
        status=ReconcileStatus.ALREADY_PROCESSED,
        reference=entry.reference,
        account_id=entry.account_id,
        expires_at=entry.new_expiry,
    )


def _fill_ledger_entry(entry: PaymentLedgerEntry, event: PaymentEvent, account_id: Optional[str]) -> None:
    entry.account_id = account_id
    entry.provider = event.provider.value
    entry.event_type = event.event_type
    entry.channel = event.channel.value
    entry.amount = event.amount
    entry.currency = event.currency
    entry.email = event.email
    entry.extension_days = event.requested_extension_days


def apply_payment_event(session_factory: sessionmaker, event: PaymentEvent, account_id: str, *,
                        now_ms: Optional[int] = None, max_attempts: int = 5) -> ReconcileOutcome:
    """Guard on ``event.reference`` and, if unseen, extend the account's entitlement.

    Returns ALREADY_PROCESSED without writing anything when the reference was
    applied before (including by a concurrent request that won the race).
    """

    def work(db: Session) -> ReconcileOutcome:
        now = now_ms if now_ms is not None else current_millis()

        entry = _load_ledger_entry(db, event.reference)
        if entry is not None and entry.processed:
            return _already_processed(entry)

        entitlement = _load_entitlement(db, account_id)
        previous_expiry = entitlement.effective_expiry() if entitlement else None
        new_expiry = compute_new_expiry(
            previous_expiry,
            now,
            event.requested_extension_days or DEFAULT_EXTENSION_DAYS,
            event.provider_expiry_ms,
        )

        if entitlement is None:
            entitlement = Entitlement(account_id=account_id)
            db.add(entitlement)
        entitlement.plan = PLAN_PREMIUM
        if entitlement.activated_at is None:
            entitlement.activated_at = now
        entitlement.expires_at = new_expiry
        entitlement.last_payment_ref = event.reference
        entitlement.last_payment_at = now
        entitlement.last_payment_amount = event.amount
        entitlement.last_payment_currency = event.currency
        entitlement.source = event.provider.value
        if event.product_id:
            entitlement.product_id = event.product_id
        if event.email and not entitlement.email:
            entitlement.email = event.email

        if entry is None:
            entry = PaymentLedgerEntry(reference=event.reference)
            db.add(entry)
        _fill_ledger_entry(entry, event, account_id)
        entry.status = STATUS_SUCCESS
        entry.processed = True
        entry.processed_at = datetime.now(timezone.utc)
        entry.new_expiry = new_expiry
        entry.error_message = None

        # Surface primary-key conflicts inside this attempt
        db.flush()

        return ReconcileOutcome(
            status=ReconcileStatus.APPLIED,
            reference=event.reference,
            account_id=account_id,
            expires_at=new_expiry,
            previous_expiry=previous_expiry,
            activated_at=entitlement.activated_at,
        )

    with tracer.start_as_current_span("reconcile.apply") as span:
        span.set_attribute("paysync.provider", event.provider.value)
        span.set_attribute("paysync.reference", event.reference)
        outcome = run_in_transaction(
            session_factory, work, max_attempts=max_attempts, label=f"apply {event.reference}"
        )
        span.set_attribute("paysync.outcome", outcome.status.value)

    events_counter.labels(provider=event.provider.value, outcome=outcome.status.value).inc()
    if outcome.status == ReconcileStatus.APPLIED:
        entitlement_extensions_counter.labels(provider=event.provider.value).inc()
        logger.info(
            f"Entitlement extended: account={account_id} reference={event.reference} "
            f"expires_at={outcome.expires_at} (was {outcome.previous_expiry})"
        )
    else:
        logger.info(f"Reference {event.reference} already processed, no mutation")
    return outcome


def record_unapplied(session_factory: sessionmaker, event: PaymentEvent, status: str, *,
                     account_id: Optional[str] = None, error_message: Optional[str] = None,
                     max_attempts: int = 5) -> ReconcileOutcome:
    """Record an event that must not extend anything (ignored or unresolved).

    The entry stays ``processed=False`` so a later successful application of
    the same reference can supersede it. A processed entry is never touched.
    """
    if status not in _UNAPPLIED_STATUSES:
        raise ValueError(f"Unsupported ledger status for an unapplied event: {status}")

    def work(db: Session) -> ReconcileOutcome:
        entry = _load_ledger_entry(db, event.reference)
        if entry is not None and entry.processed:
            return _already_processed(entry)

        if entry is None:
            entry = PaymentLedgerEntry(reference=event.reference)
            db.add(entry)
        _fill_ledger_entry(entry, event, account_id)
        entry.status = status
        entry.processed = False
        entry.error_message = error_message
        db.flush()

        return ReconcileOutcome(
            status=_UNAPPLIED_STATUSES[status],
            reference=event.reference,
            account_id=account_id,
        )

    outcome = run_in_transaction(
        session_factory, work, max_attempts=max_attempts, label=f"record {status} {event.reference}"
    )
    events_counter.labels(provider=event.provider.value, outcome=outcome.status.value).inc()
    logger.info(f"Recorded {event.provider.value} {event.event_type} {event.reference} as {outcome.status.value}")
    return outcome
