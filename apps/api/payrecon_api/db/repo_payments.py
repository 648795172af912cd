"""Payment ledger repository.

Terminal transitions use a single conditional UPDATE:

    UPDATE payments SET status=:new, transaction_id=:tx, verified_at=:now
    WHERE reference=:ref AND status='pending'

Exactly one concurrent caller changes the row; every other caller sees zero
affected rows and receives the record as already settled.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payrecon_api.db.models import Payment, PaymentStatus
from payrecon_api.errors import DuplicatePaymentReference, PaymentRecordNotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a terminal transition attempt.

    applied is False when the record was already terminal; record then holds
    the stored (unchanged) values.
    """

    record: Payment
    applied: bool


class PaymentLedger:
    """Persistence of payment intents keyed by reference."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, payment: Payment) -> Payment:
        """Insert a new pending payment.

        Raises:
            DuplicatePaymentReference: If the reference already exists
        """
        payment.status = PaymentStatus.PENDING.value
        self.db.add(payment)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise DuplicatePaymentReference(
                f"Payment reference {payment.reference} already exists",
                reference=payment.reference,
            ) from e
        self.db.refresh(payment)

        logger.info(
            "PAYMENT_RECORD_CREATED",
            extra={
                "reference": payment.reference,
                "organization_id": payment.organization_id,
                "plan_id": payment.plan_id,
                "billing_cycle": payment.billing_cycle,
                "amount": payment.amount,
                "currency": payment.currency,
            },
        )
        return payment

    def find_by_reference(self, reference: str) -> Optional[Payment]:
        # populate_existing: another session may have settled the row
        return self.db.get(Payment, reference, populate_existing=True)

    def get_by_reference(self, reference: str) -> Payment:
        """Like find_by_reference, but raises PaymentRecordNotFound."""
        payment = self.find_by_reference(reference)
        if payment is None:
            raise PaymentRecordNotFound(
                f"No payment record for reference {reference}",
                reference=reference,
            )
        return payment

    def transition_terminal(
        self,
        reference: str,
        new_status: PaymentStatus,
        transaction_id: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> TransitionResult:
        """Move a pending payment to a terminal status, at most once.

        Args:
            reference: Payment reference
            new_status: COMPLETED or FAILED
            transaction_id: Provider transaction id (stored only on the winning transition)
            paid_at: Provider settlement timestamp

        Returns:
            TransitionResult(record, applied)

        Raises:
            ValueError: If new_status is not terminal
            PaymentRecordNotFound: If the reference is unknown
        """
        new_status = PaymentStatus(new_status)
        if not new_status.is_terminal:
            raise ValueError(f"transition_terminal requires a terminal status, got {new_status.value}")

        now = datetime.now(timezone.utc)
        stmt = (
            update(Payment)
            .where(
                Payment.reference == reference,
                Payment.status == PaymentStatus.PENDING.value,
            )
            .values(
                status=new_status.value,
                transaction_id=transaction_id,
                verified_at=now,
                paid_at=paid_at,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()
        applied = result.rowcount == 1

        record = self.get_by_reference(reference)

        if applied:
            logger.info(
                "PAYMENT_TRANSITIONED",
                extra={
                    "reference": reference,
                    "status": new_status.value,
                    "transaction_id": transaction_id,
                },
            )
        else:
            logger.info(
                "PAYMENT_ALREADY_TERMINAL",
                extra={
                    "reference": reference,
                    "status": record.status,
                    "requested_status": new_status.value,
                },
            )
        return TransitionResult(record=record, applied=applied)

    def mark_subscription_applied(self, reference: str) -> bool:
        """Record that the projector handled this completed payment.

        Returns:
            True if this call set the marker, False if it was already set
        """
        now = datetime.now(timezone.utc)
        stmt = (
            update(Payment)
            .where(
                Payment.reference == reference,
                Payment.status == PaymentStatus.COMPLETED.value,
                Payment.subscription_applied_at.is_(None),
            )
            .values(subscription_applied_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()
        return result.rowcount == 1

    def scan_stale_pending(self, older_than: datetime, limit: int = 100) -> list[Payment]:
        """Pending payments created before older_than, oldest first."""
        stmt = (
            select(Payment)
            .where(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.created_at < older_than,
            )
            .order_by(Payment.created_at.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def scan_unprojected_completed(self, older_than: datetime, limit: int = 100) -> list[Payment]:
        """Completed payments whose subscription was never applied.

        A process killed between the terminal transition and the projector
        leaves subscription_applied_at NULL. Only rows verified before
        older_than are returned so in-flight confirmations are left alone.
        """
        stmt = (
            select(Payment)
            .where(
                Payment.status == PaymentStatus.COMPLETED.value,
                Payment.subscription_applied_at.is_(None),
                Payment.verified_at < older_than,
            )
            .order_by(Payment.verified_at.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())
