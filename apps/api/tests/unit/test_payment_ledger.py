"""Tests for the payment ledger: creation and the pending -> terminal CAS.

Invariants locked here:
  - New entries are always pending
  - A terminal status is written at most once (conditional UPDATE)
  - A losing transition leaves the stored values untouched
  - The subscription-applied marker is set once, only for completed payments
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import Session

from payrecon_api.db.models import Payment, PaymentStatus
from payrecon_api.db.repo_payments import PaymentLedger
from payrecon_api.errors import DuplicatePaymentReference, PaymentRecordNotFound
from testkit import naive, seed_payment


def test_create_forces_pending(db_session: Session) -> None:
    payment = Payment(
        reference="ref_led_001",
        organization_id="org_acme",
        plan_id="pro",
        billing_cycle="monthly",
        amount=500_000,
        currency="NGN",
        status=PaymentStatus.COMPLETED.value,
    )
    created = PaymentLedger(db_session).create(payment)

    assert created.status == PaymentStatus.PENDING.value
    assert created.transaction_id is None
    assert created.verified_at is None
    assert created.subscription_applied_at is None


def test_create_duplicate_reference_raises(db_session: Session, session_factory) -> None:
    seed_payment(db_session, "ref_led_002")

    # Second writer in its own session, as with two concurrent initialize calls
    other = session_factory()
    try:
        with pytest.raises(DuplicatePaymentReference) as exc_info:
            seed_payment(other, "ref_led_002", amount=1)
    finally:
        other.close()

    assert exc_info.value.status_code == 409
    assert PaymentLedger(db_session).get_by_reference("ref_led_002").amount == 500_000


def test_get_unknown_reference_raises_not_found(db_session: Session) -> None:
    ledger = PaymentLedger(db_session)
    assert ledger.find_by_reference("ref_missing") is None
    with pytest.raises(PaymentRecordNotFound):
        ledger.get_by_reference("ref_missing")


def test_transition_applies_once(db_session: Session) -> None:
    seed_payment(db_session, "ref_led_003")
    ledger = PaymentLedger(db_session)
    paid_at = datetime(2026, 10, 18, 10, 15, tzinfo=timezone.utc)

    first = ledger.transition_terminal("ref_led_003", PaymentStatus.COMPLETED, transaction_id="tx_1", paid_at=paid_at)
    second = ledger.transition_terminal("ref_led_003", PaymentStatus.COMPLETED, transaction_id="tx_2")

    assert first.applied is True
    assert first.record.status == "completed"
    assert first.record.transaction_id == "tx_1"
    assert first.record.verified_at is not None
    assert naive(first.record.paid_at) == naive(paid_at)

    assert second.applied is False
    assert second.record.transaction_id == "tx_1", "Losing transition must not overwrite stored values"


def test_terminal_status_is_monotonic(db_session: Session) -> None:
    """failed never becomes completed, completed never becomes failed."""
    seed_payment(db_session, "ref_led_004")
    seed_payment(db_session, "ref_led_005")
    ledger = PaymentLedger(db_session)

    ledger.transition_terminal("ref_led_004", PaymentStatus.FAILED)
    late_success = ledger.transition_terminal("ref_led_004", PaymentStatus.COMPLETED, transaction_id="tx_late")
    assert late_success.applied is False
    assert late_success.record.status == "failed"
    assert late_success.record.transaction_id is None

    ledger.transition_terminal("ref_led_005", PaymentStatus.COMPLETED, transaction_id="tx_ok")
    late_failure = ledger.transition_terminal("ref_led_005", PaymentStatus.FAILED)
    assert late_failure.applied is False
    assert late_failure.record.status == "completed"


def test_transition_to_pending_is_rejected(db_session: Session) -> None:
    seed_payment(db_session, "ref_led_006")
    with pytest.raises(ValueError):
        PaymentLedger(db_session).transition_terminal("ref_led_006", PaymentStatus.PENDING)


def test_transition_unknown_reference_raises_not_found(db_session: Session) -> None:
    with pytest.raises(PaymentRecordNotFound):
        PaymentLedger(db_session).transition_terminal("ref_missing", PaymentStatus.FAILED)


def test_transition_visible_to_other_sessions(session_factory) -> None:
    """A second session holding a stale copy sees the settled row on re-read."""
    writer = session_factory()
    reader = session_factory()
    try:
        seed_payment(writer, "ref_led_007")
        stale = PaymentLedger(reader).get_by_reference("ref_led_007")
        assert stale.status == "pending"

        PaymentLedger(writer).transition_terminal("ref_led_007", PaymentStatus.COMPLETED, transaction_id="tx_7")

        fresh = PaymentLedger(reader).get_by_reference("ref_led_007")
        assert fresh.status == "completed"
        assert fresh.transaction_id == "tx_7"
    finally:
        reader.close()
        writer.close()


def test_mark_subscription_applied_once_and_only_when_completed(db_session: Session) -> None:
    seed_payment(db_session, "ref_led_008")
    ledger = PaymentLedger(db_session)

    assert ledger.mark_subscription_applied("ref_led_008") is False, "pending payments are never marked"

    ledger.transition_terminal("ref_led_008", PaymentStatus.COMPLETED, transaction_id="tx_8")
    assert ledger.mark_subscription_applied("ref_led_008") is True
    assert ledger.mark_subscription_applied("ref_led_008") is False
    assert ledger.get_by_reference("ref_led_008").subscription_applied_at is not None


def test_scan_stale_pending(db_session: Session) -> None:
    now = datetime.now(timezone.utc)
    seed_payment(db_session, "ref_old_b", created_at=now - timedelta(hours=2))
    seed_payment(db_session, "ref_old_a", created_at=now - timedelta(hours=3))
    seed_payment(db_session, "ref_fresh", created_at=now - timedelta(minutes=5))
    seed_payment(db_session, "ref_old_settled", created_at=now - timedelta(hours=4))
    ledger = PaymentLedger(db_session)
    ledger.transition_terminal("ref_old_settled", PaymentStatus.FAILED)

    stale = ledger.scan_stale_pending(now - timedelta(hours=1))

    assert [p.reference for p in stale] == ["ref_old_a", "ref_old_b"], "oldest first, pending only"
    assert len(ledger.scan_stale_pending(now - timedelta(hours=1), limit=1)) == 1
