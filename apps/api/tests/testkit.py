"""Shared test data helpers (settings, clock, seeded rows)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from paystack_stub import TEST_BASE_URL, TEST_SECRET
from payrecon_api.config import Settings
from payrecon_api.db.models import Organization, Payment
from payrecon_api.db.repo_payments import PaymentLedger

# Fixed "now" for subscription period math
FIXED_NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)

ORG_ID = "org_acme"


def naive(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; compare on the UTC wall clock."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class MutableClock:
    """Clock that tests can move forward."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_settings(paystack_secret_key: Optional[str] = TEST_SECRET, **overrides) -> Settings:
    values = {
        "env": "test",
        "database_url": "sqlite://",
        "paystack_secret_key": paystack_secret_key,
        "paystack_base_url": TEST_BASE_URL,
        "verify_retry_delay_seconds": 2.0,
        "frontend_url": "https://app.payrecon.test/billing/callback",
        "cors_allowed_origins": ["http://localhost:5173"],
        "json_logs": False,
    }
    values.update(overrides)
    return Settings(**values)


def seed_organization(
    db: Session,
    organization_id: str = ORG_ID,
    trial_start_date: Optional[datetime] = datetime(2026, 10, 1, tzinfo=timezone.utc),
) -> Organization:
    org = Organization(
        id=organization_id,
        name=f"Organization {organization_id}",
        subscription_status="trial",
        trial_start_date=trial_start_date,
    )
    db.add(org)
    db.commit()
    return org


def seed_payment(
    db: Session,
    reference: str,
    organization_id: str = ORG_ID,
    plan_id: str = "pro",
    billing_cycle: str = "monthly",
    amount: int = 500_000,
    currency: str = "NGN",
    created_at: Optional[datetime] = None,
) -> Payment:
    payment = Payment(
        reference=reference,
        organization_id=organization_id,
        user_id="user_ada",
        plan_id=plan_id,
        billing_cycle=billing_cycle,
        amount=amount,
        currency=currency,
    )
    if created_at is not None:
        payment.created_at = created_at
    return PaymentLedger(db).create(payment)
