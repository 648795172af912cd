"""Confirmation reconciler: converges the verify path and the webhook path.

Both channels run the same sequence once they know the provider outcome:

    ledger.transition_terminal  (conditional UPDATE, exactly one winner)
      -> projector.apply        (conditional upsert, no double extension)
      -> ledger.mark_subscription_applied
      -> dispatch(org_sync.sync) (after commit, best-effort)

Gateway polling happens before any write and never holds a lock. The
projection is re-attempted while subscription_applied_at is unset. A crash
between the ledger commit and the subscription write heals on the next
verify call, on a webhook redelivery once the dedup lease expires, or in
the reaper's projection sweep (resume_projection).
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterator, Optional, Union

from sqlalchemy.orm import Session

from payrecon_api.billing.events import (
    CHARGE_SUCCESS,
    ChargeSuccessData,
    ChargeSuccessEvent,
    dedup_key_for,
    parse_event,
)
from payrecon_api.billing.org_sync import OrganizationSync
from payrecon_api.billing.paystack import PaystackClient, VerifyResult
from payrecon_api.billing.signature import SignatureVerifier
from payrecon_api.billing.subscriptions import SubscriptionProjector
from payrecon_api.billing.webhook_dedup import PROVIDER_PAYSTACK, WebhookDedupGate
from payrecon_api.context import organization_id_var, payment_reference_var
from payrecon_api.db.models import Payment, PaymentStatus, Subscription
from payrecon_api.db.repo_payments import PaymentLedger
from payrecon_api.errors import GatewayUnavailable, NotConfigured, ProjectionSyncFailed, Unauthorized
from payrecon_api.utils.sanitize import payload_hash_bytes, sanitize_str

logger = logging.getLogger(__name__)

Dispatch = Callable[..., Any]


def run_inline(fn: Callable[..., Any], *args: Any) -> None:
    """Dispatch that runs the task immediately (reaper, tests)."""
    fn(*args)


@contextmanager
def _payment_context(reference: str) -> Iterator[None]:
    ref_token = payment_reference_var.set(reference)
    org_token = organization_id_var.set("")
    try:
        yield
    finally:
        organization_id_var.reset(org_token)
        payment_reference_var.reset(ref_token)


@dataclass(frozen=True)
class ConfirmationOutcome:
    """Settled state of one payment as returned to the caller.

    applied is True only for the call that performed the terminal transition.
    """

    reference: str
    status: str
    amount: int
    currency: str
    transaction_id: Optional[str]
    paid_at: Optional[datetime]
    applied: bool
    subscription_end_date: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.status == PaymentStatus.COMPLETED.value

    @property
    def amount_major(self) -> float:
        return self.amount / 100


@dataclass(frozen=True)
class WebhookOutcome:
    """Acknowledgement for one webhook delivery.

    status: processed | ignored | already_processed | unknown_reference
    """

    status: str
    event: str
    reference: Optional[str] = None
    payment_status: Optional[str] = None


class ConfirmationReconciler:
    """Applies a provider outcome to the ledger, subscription and organization."""

    def __init__(
        self,
        db: Session,
        gateway: PaystackClient,
        verifier: Optional[SignatureVerifier],
        projector: SubscriptionProjector,
        org_sync: OrganizationSync,
        dispatch: Dispatch = run_inline,
    ):
        self.db = db
        self.ledger = PaymentLedger(db)
        self.gateway = gateway
        self.verifier = verifier
        self.projector = projector
        self.org_sync = org_sync
        self.dispatch = dispatch

    # ── Verify path ─────────────────────────────────────────────────────────

    async def verify(self, reference: str) -> ConfirmationOutcome:
        """Confirm a payment by asking the provider.

        Raises:
            PaymentRecordNotFound: Unknown reference (no gateway call)
            NotConfigured: Missing or rejected gateway credential
            GatewayUnavailable: Provider never returned a usable answer; the
                payment is settled as failed before re-raising
        """
        with _payment_context(reference):
            payment = self.ledger.get_by_reference(reference)
            organization_id_var.set(payment.organization_id)

            if payment.is_terminal:
                logger.info(
                    "PAYMENT_VERIFY_ALREADY_TERMINAL",
                    extra={"reference": reference, "status": payment.status},
                )
                subscription = self._ensure_projection(payment)
                return self._outcome(payment, applied=False, subscription=subscription)

            logger.info("PAYMENT_VERIFY_STARTED", extra={"reference": reference})
            try:
                result = await self.gateway.verify(reference)
            except GatewayUnavailable:
                self.ledger.transition_terminal(reference, PaymentStatus.FAILED)
                raise

            new_status = self._status_from_gateway(payment, result)
            transition = self.ledger.transition_terminal(
                reference,
                new_status,
                transaction_id=result.transaction_id,
                paid_at=result.paid_at,
            )
            subscription = self._ensure_projection(transition.record)

            logger.info(
                "PAYMENT_VERIFY_COMPLETED",
                extra={
                    "reference": reference,
                    "status": transition.record.status,
                    "provider_status": result.status,
                    "attempts": result.attempts,
                    "applied": transition.applied,
                },
            )
            return self._outcome(transition.record, applied=transition.applied, subscription=subscription)

    def _status_from_gateway(self, payment: Payment, result: VerifyResult) -> PaymentStatus:
        if not result.is_success:
            return PaymentStatus.FAILED
        if not self._amount_matches(payment, result.amount, result.currency):
            return PaymentStatus.FAILED
        return PaymentStatus.COMPLETED

    def resume_projection(self, reference: str) -> Optional[Subscription]:
        """Apply the subscription for a completed payment that never got one.

        Used by the reaper for payments whose confirming process died between
        the terminal transition and the projector. A no-op once
        subscription_applied_at is set.
        """
        with _payment_context(reference):
            payment = self.ledger.get_by_reference(reference)
            organization_id_var.set(payment.organization_id)
            logger.info(
                "PAYMENT_PROJECTION_RESUMED",
                extra={"reference": reference, "status": payment.status},
            )
            return self._ensure_projection(payment)

    # ── Webhook path ────────────────────────────────────────────────────────

    def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookOutcome:
        """Process one signed webhook delivery.

        Raises:
            NotConfigured: No secret key to verify signatures with
            Unauthorized: Missing or mismatched signature
            InvalidWebhookPayload: Body is not a valid Paystack event
        """
        if self.verifier is None:
            raise NotConfigured("PAYSTACK_SECRET_KEY is not configured; webhook rejected")

        payload_hash = payload_hash_bytes(raw_body)
        if not self.verifier.verify(raw_body, signature):
            logger.warning(
                "WEBHOOK_SIGNATURE_INVALID",
                extra={"payload_hash": payload_hash, "signature_present": bool(signature)},
            )
            raise Unauthorized("Invalid webhook signature")

        event = parse_event(raw_body)
        logger.info(
            "WEBHOOK_RECEIVED",
            extra={"provider": PROVIDER_PAYSTACK, "event_type": event.event, "payload_hash": payload_hash},
        )

        if not isinstance(event, ChargeSuccessEvent):
            logger.info("WEBHOOK_EVENT_IGNORED", extra={"event_type": event.event})
            return WebhookOutcome(status="ignored", event=event.event)

        dedup_key = dedup_key_for(event, payload_hash)
        gate = WebhookDedupGate(self.db, PROVIDER_PAYSTACK)
        if not gate.claim(dedup_key, payload_hash).should_process:
            return WebhookOutcome(
                status="already_processed",
                event=event.event,
                reference=event.data.reference,
            )

        try:
            with _payment_context(event.data.reference):
                outcome = self._apply_charge_success(event.data)
        except Exception:
            self.db.rollback()
            gate.mark_failed(dedup_key)
            raise

        gate.mark_done(dedup_key)
        return outcome

    def _apply_charge_success(self, data: ChargeSuccessData) -> WebhookOutcome:
        payment = self.ledger.find_by_reference(data.reference)
        if payment is None:
            logger.warning(
                "WEBHOOK_UNKNOWN_REFERENCE",
                extra={"reference": data.reference, "transaction_id": data.transaction_id},
            )
            return WebhookOutcome(status="unknown_reference", event=CHARGE_SUCCESS, reference=data.reference)
        organization_id_var.set(payment.organization_id)

        if data.status != "success":
            logger.warning(
                "WEBHOOK_CHARGE_STATUS_NOT_SUCCESS",
                extra={"reference": data.reference, "provider_status": data.status},
            )
            return WebhookOutcome(
                status="ignored",
                event=CHARGE_SUCCESS,
                reference=data.reference,
                payment_status=payment.status,
            )

        if self._amount_matches(payment, data.amount, data.currency):
            new_status = PaymentStatus.COMPLETED
        else:
            new_status = PaymentStatus.FAILED

        transition = self.ledger.transition_terminal(
            data.reference,
            new_status,
            transaction_id=data.transaction_id,
            paid_at=data.paid_at,
        )
        if not transition.applied and transition.record.status != new_status.value:
            logger.error(
                "WEBHOOK_CONFLICTS_WITH_TERMINAL_STATUS",
                extra={
                    "reference": data.reference,
                    "stored_status": transition.record.status,
                    "webhook_status": new_status.value,
                    "transaction_id": data.transaction_id,
                },
            )

        self._ensure_projection(transition.record)
        return WebhookOutcome(
            status="processed",
            event=CHARGE_SUCCESS,
            reference=data.reference,
            payment_status=transition.record.status,
        )

    # ── Shared ──────────────────────────────────────────────────────────────

    def _amount_matches(self, payment: Payment, amount: Optional[int], currency: Optional[str]) -> bool:
        currency_ok = currency is None or currency.upper() == payment.currency.upper()
        if amount == payment.amount and currency_ok:
            return True
        logger.warning(
            "PAYMENT_AMOUNT_MISMATCH",
            extra={
                "reference": payment.reference,
                "expected_amount": payment.amount,
                "actual_amount": amount,
                "expected_currency": payment.currency,
                "actual_currency": currency,
                "FRAUD_FLAG": True,
            },
        )
        return False

    def _ensure_projection(self, payment: Payment) -> Optional[Subscription]:
        """Apply the subscription for a completed payment not yet projected."""
        if payment.status != PaymentStatus.COMPLETED.value:
            return None
        if payment.subscription_applied_at is not None:
            return self.projector.find_for_organization(payment.organization_id)

        projection = self.projector.apply(payment)
        self.ledger.mark_subscription_applied(payment.reference)

        subscription = projection.subscription
        self.dispatch(
            self._sync_organization,
            subscription.organization_id,
            subscription.plan_id,
            subscription.end_date,
        )
        return subscription

    def _sync_organization(self, organization_id: str, plan_id: str, end_date: datetime) -> None:
        """Dispatched organization sync; never raises into the caller or the task runner."""
        try:
            self.org_sync.sync(organization_id, plan_id, end_date)
        except Exception as e:
            failure = ProjectionSyncFailed(organization_id, e)
            logger.error(
                "ORG_PROJECTION_SYNC_FAILED",
                extra={
                    "organization_id": organization_id,
                    "plan_id": plan_id,
                    "error_type": type(e).__name__,
                    "error_msg": sanitize_str(str(failure)),
                },
            )

    def _outcome(
        self,
        payment: Payment,
        *,
        applied: bool,
        subscription: Optional[Subscription] = None,
    ) -> ConfirmationOutcome:
        return ConfirmationOutcome(
            reference=payment.reference,
            status=payment.status,
            amount=payment.amount,
            currency=payment.currency,
            transaction_id=payment.transaction_id,
            paid_at=payment.paid_at,
            applied=applied,
            subscription_end_date=subscription.end_date if subscription is not None else None,
        )
