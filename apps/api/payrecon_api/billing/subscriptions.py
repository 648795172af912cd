"""Subscription projection from completed payments.

One subscription row per organization. Applying a completed payment is an
idempotent upsert keyed by organization_id:

    INSERT INTO subscriptions (...) VALUES (...)
    ON CONFLICT (organization_id) DO UPDATE SET ...
    WHERE subscriptions.payment_reference IS DISTINCT FROM excluded.payment_reference
    RETURNING id

A second application of the same payment matches no row in the conflict
branch, so the billing period is never extended twice for one reference,
even when the verify path and the webhook path race.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import select
from sqlalchemy.orm import Session

from payrecon_api.db.engine import dialect_insert
from payrecon_api.db.models import (
    BillingCycle,
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


def add_months(start: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length.

    Jan 31 + 1 month -> Feb 28 (Feb 29 in leap years).
    """
    return start + relativedelta(months=months)


def add_years(start: datetime, years: int) -> datetime:
    """Add calendar years; Feb 29 maps to Feb 28 in non-leap years."""
    return start + relativedelta(years=years)


def cycle_offset(billing_cycle: str, start: datetime) -> datetime:
    """End of the period that begins at start.

    Unknown cycles fall back to monthly with a warning.
    """
    if billing_cycle == BillingCycle.YEARLY.value:
        return add_years(start, 1)
    if billing_cycle != BillingCycle.MONTHLY.value:
        logger.warning(
            "SUBSCRIPTION_UNKNOWN_BILLING_CYCLE",
            extra={"billing_cycle": billing_cycle, "fallback": BillingCycle.MONTHLY.value},
        )
    return add_months(start, 1)


@dataclass(frozen=True)
class ProjectionResult:
    """Result of applying a payment.

    created is True when this call wrote the subscription row (insert or
    replace) and False when the row already carried this payment.
    """

    subscription: Subscription
    created: bool


class SubscriptionProjector:
    """Derives the organization's subscription from a completed payment."""

    def __init__(self, db: Session, clock: Clock = utc_clock):
        self.db = db
        self.clock = clock

    def find_for_organization(self, organization_id: str) -> Optional[Subscription]:
        stmt = select(Subscription).where(Subscription.organization_id == organization_id)
        return self.db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()

    def apply(self, payment: Payment) -> ProjectionResult:
        """Upsert the organization's subscription for a completed payment.

        Raises:
            ValueError: If the payment is not completed
        """
        if payment.status != PaymentStatus.COMPLETED.value:
            raise ValueError(f"Cannot project subscription from {payment.status} payment {payment.reference}")

        existing = self.find_for_organization(payment.organization_id)
        if existing is not None and existing.payment_reference == payment.reference:
            logger.info(
                "SUBSCRIPTION_ALREADY_APPLIED",
                extra={"reference": payment.reference, "organization_id": payment.organization_id},
            )
            return ProjectionResult(subscription=existing, created=False)

        start = self.clock()
        end = cycle_offset(payment.billing_cycle, start)

        insert = dialect_insert(self.db)
        stmt = insert(Subscription).values(
            organization_id=payment.organization_id,
            plan_id=payment.plan_id,
            billing_cycle=payment.billing_cycle,
            status=SubscriptionStatus.ACTIVE.value,
            start_date=start,
            end_date=end,
            amount=payment.amount,
            payment_reference=payment.reference,
            provider=payment.provider,
            created_at=start,
            updated_at=start,
        )
        excluded = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=[Subscription.organization_id],
            set_={
                "plan_id": excluded.plan_id,
                "billing_cycle": excluded.billing_cycle,
                "status": excluded.status,
                "start_date": excluded.start_date,
                "end_date": excluded.end_date,
                "amount": excluded.amount,
                "payment_reference": excluded.payment_reference,
                "provider": excluded.provider,
                "updated_at": excluded.updated_at,
            },
            where=Subscription.payment_reference.is_distinct_from(excluded.payment_reference),
        ).returning(Subscription.id)

        written = self.db.execute(stmt).first()
        self.db.commit()

        subscription = self.find_for_organization(payment.organization_id)
        if written is None:
            # Lost the race to a concurrent apply of the same payment
            logger.info(
                "SUBSCRIPTION_ALREADY_APPLIED",
                extra={"reference": payment.reference, "organization_id": payment.organization_id},
            )
            return ProjectionResult(subscription=subscription, created=False)

        logger.info(
            "SUBSCRIPTION_APPLIED",
            extra={
                "reference": payment.reference,
                "organization_id": payment.organization_id,
                "plan_id": payment.plan_id,
                "billing_cycle": payment.billing_cycle,
                "end_date": end.isoformat(),
                "replaced_reference": existing.payment_reference if existing is not None else None,
            },
        )
        return ProjectionResult(subscription=subscription, created=True)
