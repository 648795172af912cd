"""SQLAlchemy ORM models for payrecon."""

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BIGINT, INTEGER, TEXT, TIMESTAMP, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# SQLite only autoincrements INTEGER PRIMARY KEY
_BigIntPK = BIGINT().with_variant(INTEGER(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class PaymentProvider(str, enum.Enum):
    PAYSTACK = "paystack"


class BillingCycle(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class Payment(Base):
    """Payment ledger entry - one row per checkout reference.

    Created pending at initialize, moved to a terminal status exactly once by
    the reconciler, never deleted.
    """

    __tablename__ = "payments"

    reference: Mapped[str] = mapped_column(TEXT, primary_key=True)
    provider: Mapped[str] = mapped_column(TEXT, nullable=False, default=PaymentProvider.PAYSTACK.value)

    organization_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    plan_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    billing_cycle: Mapped[str] = mapped_column(TEXT, nullable=False)

    # Minor currency unit (kobo for NGN)
    amount: Mapped[int] = mapped_column(BIGINT, nullable=False)
    currency: Mapped[str] = mapped_column(TEXT, nullable=False, default="NGN")

    status: Mapped[str] = mapped_column(TEXT, nullable=False, default=PaymentStatus.PENDING.value)
    transaction_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    # Set once the subscription projector has handled this completed payment
    subscription_applied_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("idx_payments_org", "organization_id"),
        Index("idx_payments_status_created", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return PaymentStatus(self.status).is_terminal

    def __repr__(self) -> str:
        return f"<Payment {self.reference} ({self.status})>"


class Subscription(Base):
    """Active subscription per organization (source of truth).

    Upserts replace the prior row for the organization; a row whose
    payment_reference already matches the payment being applied is left
    untouched.
    """

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    plan_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    billing_cycle: Mapped[str] = mapped_column(TEXT, nullable=False)
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default=SubscriptionStatus.ACTIVE.value)
    start_date: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    amount: Mapped[int] = mapped_column(BIGINT, nullable=False)
    payment_reference: Mapped[str] = mapped_column(TEXT, nullable=False)
    provider: Mapped[str] = mapped_column(TEXT, nullable=False, default=PaymentProvider.PAYSTACK.value)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("organization_id", name="uq_subscriptions_organization"),
        Index("idx_subscriptions_payment_reference", "payment_reference"),
    )

    def __repr__(self) -> str:
        return f"<Subscription {self.organization_id} {self.plan_id} until {self.end_date}>"


class Organization(Base):
    """Organization entity; only the denormalized subscription projection is modelled."""

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    name: Mapped[str] = mapped_column(TEXT, nullable=False)

    subscription_status: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    subscription_plan: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    subscription_end_date: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    trial_start_date: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class WebhookDedupEvent(Base):
    """Webhook dedup gate table.

    Atomic gate: INSERT ON CONFLICT (provider, dedup_key) DO NOTHING
      -> row inserted : first handler, continue
      -> conflict     : reclaim only if the previous attempt failed
    """

    __tablename__ = "webhook_dedup_events"

    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True, autoincrement=True)

    provider: Mapped[str] = mapped_column(TEXT, nullable=False)
    dedup_key: Mapped[str] = mapped_column(TEXT, nullable=False)

    first_seen_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="processing")  # processing | done | failed

    # sha256 hex of the raw body; the body itself is never stored
    request_hash: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "dedup_key", name="uq_webhook_dedup_events"),
        Index("idx_webhook_dedup_status", "status"),
    )
