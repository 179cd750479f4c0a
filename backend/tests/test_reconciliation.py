"""Idempotency guard, entitlement updater and transaction retry tests"""
import threading

import pytest
from unittest.mock import Mock, patch
from sqlalchemy.exc import IntegrityError, OperationalError

from paysync.core.exceptions import TransactionAbortedError
from paysync.db.transaction import run_in_transaction
from paysync.models import Entitlement, PaymentLedgerEntry
from paysync.schemas.events import Channel, PaymentEvent, Provider, ReconcileStatus
from paysync.services import reconciliation
from paysync.services.reconciliation import (
    apply_payment_event,
    compute_new_expiry,
    record_unapplied,
)

from conftest import DAY_MS, NOW_MS


def make_event(reference="ref_1", provider=Provider.PAYSTACK, days=30, expiry=None, success=True, **kwargs):
    return PaymentEvent(
        provider=provider,
        channel=Channel.WEBHOOK if provider == Provider.PAYSTACK else Channel.PLAY_VERIFY,
        event_type="charge.success" if success else "charge.failed",
        reference=reference,
        is_success=success,
        requested_extension_days=days,
        provider_expiry_ms=expiry,
        amount=kwargs.pop("amount", 9900),
        currency=kwargs.pop("currency", "ZAR"),
        **kwargs
    )


@pytest.mark.critical
class TestExtensionPolicy:
    """Test extend-from-max arithmetic"""

    def test_new_account_extends_from_now(self):
        assert compute_new_expiry(None, NOW_MS, 30) == NOW_MS + 30 * DAY_MS

    def test_active_entitlement_extends_from_current_expiry(self):
        current = NOW_MS + 10 * DAY_MS
        assert compute_new_expiry(current, NOW_MS, 30) == current + 30 * DAY_MS

    def test_lapsed_entitlement_extends_from_now(self):
        assert compute_new_expiry(NOW_MS - 5 * DAY_MS, NOW_MS, 30) == NOW_MS + 30 * DAY_MS

    def test_result_never_below_base(self):
        for current in (None, NOW_MS - DAY_MS, NOW_MS, NOW_MS + DAY_MS):
            for days in (0, 1, 30, 365):
                assert compute_new_expiry(current, NOW_MS, days) >= max(current or 0, NOW_MS)

    def test_authoritative_future_expiry_used_directly(self):
        assert compute_new_expiry(NOW_MS + 10 * DAY_MS, NOW_MS, 30, NOW_MS + 40 * DAY_MS) == NOW_MS + 40 * DAY_MS

    def test_authoritative_expiry_never_lowers_a_later_one(self):
        current = NOW_MS + 90 * DAY_MS
        assert compute_new_expiry(current, NOW_MS, 30, NOW_MS + 40 * DAY_MS) == current

    def test_authoritative_past_expiry_falls_back_to_extension(self):
        assert compute_new_expiry(None, NOW_MS, 30, NOW_MS - 1) == NOW_MS + 30 * DAY_MS


@pytest.mark.critical
class TestApplyPaymentEvent:
    """Test guarded entitlement extension"""

    def test_new_account_becomes_premium(self, session_factory, db_session):
        outcome = apply_payment_event(session_factory, make_event(), "acct_1", now_ms=NOW_MS)

        assert outcome.status == ReconcileStatus.APPLIED
        assert outcome.expires_at == NOW_MS + 30 * DAY_MS

        entitlement = db_session.query(Entitlement).filter_by(account_id="acct_1").one()
        assert entitlement.plan == "premium"
        assert entitlement.expires_at == NOW_MS + 30 * DAY_MS
        assert entitlement.activated_at == NOW_MS
        assert entitlement.last_payment_ref == "ref_1"
        assert entitlement.source == "paystack"

        entry = db_session.query(PaymentLedgerEntry).filter_by(reference="ref_1").one()
        assert entry.processed is True
        assert entry.status == "success"
        assert entry.account_id == "acct_1"
        assert entry.processed_at is not None

    def test_replay_is_idempotent(self, session_factory, db_session):
        first = apply_payment_event(session_factory, make_event(), "acct_1", now_ms=NOW_MS)
        second = apply_payment_event(session_factory, make_event(), "acct_1", now_ms=NOW_MS + DAY_MS)

        assert second.already_processed
        assert second.expires_at == first.expires_at
        assert db_session.query(PaymentLedgerEntry).count() == 1
        entitlement = db_session.query(Entitlement).filter_by(account_id="acct_1").one()
        assert entitlement.expires_at == first.expires_at

    def test_activated_at_is_write_once(self, session_factory, make_entitlement, db_session):
        make_entitlement("acct_1", plan="free", expires_at=NOW_MS - DAY_MS, activated_at=NOW_MS - 100 * DAY_MS)

        apply_payment_event(session_factory, make_event(), "acct_1", now_ms=NOW_MS)

        db_session.expire_all()
        entitlement = db_session.query(Entitlement).filter_by(account_id="acct_1").one()
        assert entitlement.activated_at == NOW_MS - 100 * DAY_MS
        assert entitlement.plan == "premium"

    def test_two_references_stack(self, session_factory, db_session):
        apply_payment_event(session_factory, make_event("ref_a"), "acct_1", now_ms=NOW_MS)
        apply_payment_event(session_factory, make_event("ref_b", days=10), "acct_1", now_ms=NOW_MS)

        entitlement = db_session.query(Entitlement).filter_by(account_id="acct_1").one()
        assert entitlement.expires_at == NOW_MS + 40 * DAY_MS

    def test_billing_renewal_uses_authoritative_expiry(self, session_factory, make_entitlement, db_session):
        make_entitlement("acct_1", expires_at=NOW_MS + 10 * DAY_MS, activated_at=NOW_MS - DAY_MS)
        event = make_event("GPA.1", provider=Provider.GOOGLE_PLAY, expiry=NOW_MS + 40 * DAY_MS)

        outcome = apply_payment_event(session_factory, event, "acct_1", now_ms=NOW_MS)

        assert outcome.expires_at == NOW_MS + 40 * DAY_MS
        db_session.expire_all()
        assert db_session.query(Entitlement).filter_by(account_id="acct_1").one().source == "google_play"

    def test_legacy_expiry_is_read_when_canonical_missing(self, session_factory, make_entitlement):
        make_entitlement("acct_1", expires_at=None, legacy_expiry_millis=NOW_MS + 5 * DAY_MS)

        outcome = apply_payment_event(session_factory, make_event(), "acct_1", now_ms=NOW_MS)

        assert outcome.previous_expiry == NOW_MS + 5 * DAY_MS
        assert outcome.expires_at == NOW_MS + 35 * DAY_MS


@pytest.mark.critical
class TestUnappliedEvents:
    """Test ignored and unresolved ledger entries"""

    def test_ignored_event_recorded_without_mutation(self, session_factory, db_session):
        outcome = record_unapplied(session_factory, make_event("ref_fail", success=False), "ignored")

        assert outcome.status == ReconcileStatus.IGNORED
        entry = db_session.query(PaymentLedgerEntry).filter_by(reference="ref_fail").one()
        assert entry.processed is False
        assert entry.status == "ignored"
        assert db_session.query(Entitlement).count() == 0

    def test_unresolved_entry_superseded_by_later_application(self, session_factory, db_session):
        record_unapplied(session_factory, make_event("ref_u"), "unresolved", error_message="no account")

        outcome = apply_payment_event(session_factory, make_event("ref_u"), "acct_1", now_ms=NOW_MS)

        assert outcome.status == ReconcileStatus.APPLIED
        entry = db_session.query(PaymentLedgerEntry).filter_by(reference="ref_u").one()
        assert entry.processed is True
        assert entry.status == "success"
        assert entry.error_message is None

    def test_processed_entry_is_never_downgraded_to_unapplied(self, session_factory, db_session):
        apply_payment_event(session_factory, make_event("ref_p"), "acct_1", now_ms=NOW_MS)

        outcome = record_unapplied(session_factory, make_event("ref_p", success=False), "ignored")

        assert outcome.already_processed
        entry = db_session.query(PaymentLedgerEntry).filter_by(reference="ref_p").one()
        assert entry.status == "success"
        assert entry.processed is True

    def test_unknown_status_rejected(self, session_factory):
        with pytest.raises(ValueError):
            record_unapplied(session_factory, make_event(), "success")


@pytest.mark.critical
class TestConcurrentDelivery:
    """Test two deliveries of one reference racing through the guard"""

    def test_competing_commit_turns_second_attempt_into_replay(self, file_session_factory):
        real_load = reconciliation._load_entitlement
        competitor_outcomes = []
        state = {"raced": False}

        def racing_load(db, account_id):
            current = real_load(db, account_id)
            if not state["raced"]:
                state["raced"] = True
                # Another worker applies the same reference between our guard read and our write
                competitor_outcomes.append(
                    apply_payment_event(file_session_factory, make_event("ref_race"), account_id, now_ms=NOW_MS)
                )
            return current

        with patch.object(reconciliation, "_load_entitlement", side_effect=racing_load):
            outcome = apply_payment_event(
                file_session_factory, make_event("ref_race"), "acct_1", now_ms=NOW_MS, max_attempts=3
            )

        assert competitor_outcomes[0].status == ReconcileStatus.APPLIED
        assert outcome.already_processed

        db = file_session_factory()
        try:
            assert db.query(PaymentLedgerEntry).count() == 1
            entitlement = db.query(Entitlement).filter_by(account_id="acct_1").one()
            # Exactly one extension applied
            assert entitlement.expires_at == NOW_MS + 30 * DAY_MS
        finally:
            db.close()


    def test_parallel_deliveries_apply_once(self, file_session_factory):
        real_load = reconciliation._load_entitlement
        both_past_guard = threading.Barrier(2, timeout=10)
        first_attempt = threading.local()
        outcomes, errors = [], []

        def load_once_both_guarded(db, account_id):
            # Hold each thread's first attempt until both have read an unprocessed ledger
            if not getattr(first_attempt, "seen", False):
                first_attempt.seen = True
                both_past_guard.wait()
            return real_load(db, account_id)

        def deliver():
            try:
                outcomes.append(apply_payment_event(
                    file_session_factory, make_event("ref_parallel"), "acct_1", now_ms=NOW_MS, max_attempts=5
                ))
            except Exception as e:
                errors.append(e)

        with patch.object(reconciliation, "_load_entitlement", side_effect=load_once_both_guarded):
            workers = [threading.Thread(target=deliver) for _ in range(2)]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join(timeout=30)

        assert errors == []
        assert sorted(outcome.status.value for outcome in outcomes) == ["already_processed", "applied"]

        db = file_session_factory()
        try:
            assert db.query(PaymentLedgerEntry).count() == 1
            assert db.query(Entitlement).filter_by(account_id="acct_1").one().expires_at == NOW_MS + 30 * DAY_MS
        finally:
            db.close()

@pytest.mark.high
class TestRunInTransaction:
    """Test the conflict-retry primitive"""

    def test_retries_conflicts_then_succeeds(self, session_factory):
        calls = []

        def work(db):
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("UPDATE ...", {}, Exception("database is locked"))
            return "done"

        assert run_in_transaction(session_factory, work, max_attempts=5, backoff_seconds=0) == "done"
        assert len(calls) == 3

    def test_exhaustion_raises_transaction_aborted(self, session_factory):
        work = Mock(side_effect=IntegrityError("INSERT ...", {}, Exception("UNIQUE constraint failed")))

        with pytest.raises(TransactionAbortedError) as exc_info:
            run_in_transaction(session_factory, work, max_attempts=2, backoff_seconds=0)

        assert exc_info.value.attempts == 2
        assert work.call_count == 2

    def test_other_errors_propagate_without_retry(self, session_factory):
        work = Mock(side_effect=KeyError("boom"))

        with pytest.raises(KeyError):
            run_in_transaction(session_factory, work, max_attempts=5, backoff_seconds=0)

        assert work.call_count == 1
