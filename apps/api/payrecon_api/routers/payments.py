"""Payment endpoints: checkout initialization, verification and Paystack webhook.

Webhook error taxonomy (retry storm prevention):
  (A) Invalid JSON / payload schema mismatch        -> 400
  (B) Signature missing or mismatched               -> 401
  (C) Our misconfiguration (missing secret key)     -> 500 WEBHOOK_PROVIDER_MISCONFIG
  (D) Internal DB/processing error after signature  -> 500 WEBHOOK_INTERNAL_ERROR
  500 is ONLY for (C)(D), and carries Retry-After: 60. Signature mismatch is NEVER 500.
  Everything that verifies and parses is acknowledged with 200, including
  events we do not act on and references we do not know.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from payrecon_api.auth.session_auth import CallerContext, get_caller_context
from payrecon_api.billing.org_sync import OrganizationSync
from payrecon_api.billing.paystack import PaystackClient
from payrecon_api.billing.reconciler import ConfirmationReconciler
from payrecon_api.billing.subscriptions import SubscriptionProjector
from payrecon_api.billing.webhook_dedup import PROVIDER_PAYSTACK
from payrecon_api.context import payment_reference_var, request_id_var
from payrecon_api.db.models import Payment, PaymentProvider
from payrecon_api.db.repo_payments import PaymentLedger
from payrecon_api.db.session import get_db
from payrecon_api.errors import DuplicatePaymentReference, PaymentError
from payrecon_api.schemas import (
    InitializePaymentRequest,
    InitializePaymentResponse,
    VerifyPaymentResponse,
    WebhookAck,
)
from payrecon_api.utils.sanitize import payload_hash_bytes, sanitize_str

router = APIRouter(prefix="/payments", tags=["payments"])
logger = logging.getLogger(__name__)


# ============================================================================
# Dependencies
# ============================================================================


def get_gateway(request: Request) -> PaystackClient:
    return request.app.state.gateway


def get_reconciler(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> ConfirmationReconciler:
    """Reconciler bound to this request's session.

    Organization sync is dispatched as a background task so it runs after the
    response is sent and after the confirming transaction has committed.
    """
    state = request.app.state
    return ConfirmationReconciler(
        db=db,
        gateway=state.gateway,
        verifier=state.verifier,
        projector=SubscriptionProjector(db, clock=state.clock),
        org_sync=OrganizationSync(state.session_factory),
        dispatch=background_tasks.add_task,
    )


# ============================================================================
# Webhook Problem Details helper
# ============================================================================


def _webhook_problem(
    request: Request,
    status: int,
    *,
    code: str,
    title: str,
    detail: Optional[str],
    payload_hash: Optional[str],
    extra: Optional[dict] = None,
) -> JSONResponse:
    """Log once + return RFC 9457 Problem Details response with webhook extensions.

    4xx failures -> warning log.
    5xx failures -> error log + Retry-After: 60 response header.
    """
    request_id = request_id_var.get()
    instance = f"urn:payrecon:trace:{request_id}" if request_id else str(request.url.path)

    log_extra: dict = {
        "provider": PROVIDER_PAYSTACK,
        "payload_hash": payload_hash,
        "error_code": code,
    }
    if extra:
        log_extra.update(extra)

    if status >= 500:
        logger.error(code, extra=log_extra)
    else:
        logger.warning(code, extra=log_extra)

    content: dict = {
        "type": f"urn:payrecon:webhook:{code.lower()}",
        "title": title,
        "status": status,
        "provider": PROVIDER_PAYSTACK,
        "error_code": code,
        "instance": instance,
    }
    if detail is not None:
        content["detail"] = detail
    if payload_hash is not None:
        content["payload_hash"] = payload_hash

    headers = {}
    if status >= 500:
        headers["Retry-After"] = "60"

    return JSONResponse(
        status_code=status,
        content=content,
        media_type="application/problem+json",
        headers=headers,
    )


_WEBHOOK_CODES = {
    401: ("WEBHOOK_SIGNATURE_INVALID", "Webhook signature verification failed"),
    400: ("WEBHOOK_INVALID_PAYLOAD", "Invalid webhook payload"),
    500: ("WEBHOOK_PROVIDER_MISCONFIG", "Webhook provider misconfiguration"),
}


# ============================================================================
# POST /payments/initialize
# ============================================================================


@router.post(
    "/initialize",
    response_model=InitializePaymentResponse,
    response_model_by_alias=True,
)
async def initialize_payment(
    body: InitializePaymentRequest,
    request: Request,
    caller: CallerContext = Depends(get_caller_context),
    gateway: PaystackClient = Depends(get_gateway),
    db: Session = Depends(get_db),
) -> InitializePaymentResponse:
    """Start a Paystack checkout and record the pending payment.

    The ledger row is keyed by the provider-assigned reference, which is the
    identifier every later confirmation uses.
    """
    settings = request.app.state.settings
    ledger = PaymentLedger(db)

    if body.reference and ledger.find_by_reference(body.reference) is not None:
        raise DuplicatePaymentReference(
            f"Payment reference {body.reference} already exists",
            reference=body.reference,
        )

    currency = (body.currency or settings.default_currency).upper()
    callback_url = body.callback_url or settings.frontend_url

    result = await gateway.initialize(
        email=body.email,
        amount=body.amount,
        currency=currency,
        reference=body.reference,
        metadata=body.metadata.model_dump(by_alias=True),
        callback_url=callback_url,
    )
    payment_reference_var.set(result.provider_reference)

    ledger.create(
        Payment(
            reference=result.provider_reference,
            provider=PaymentProvider.PAYSTACK.value,
            organization_id=body.metadata.org_id,
            user_id=caller.user_id,
            plan_id=body.metadata.plan_id,
            billing_cycle=body.metadata.billing_cycle,
            amount=body.amount,
            currency=currency,
        )
    )

    return InitializePaymentResponse(
        authorization_url=result.authorization_url,
        reference=result.provider_reference,
    )


# ============================================================================
# GET /payments/verify/{reference}
# ============================================================================


@router.get(
    "/verify/{reference}",
    response_model=VerifyPaymentResponse,
    response_model_by_alias=True,
)
async def verify_payment(
    reference: str,
    reconciler: ConfirmationReconciler = Depends(get_reconciler),
) -> VerifyPaymentResponse:
    """Confirm a payment right after checkout (client-initiated path)."""
    payment_reference_var.set(reference)
    outcome = await reconciler.verify(reference)
    return VerifyPaymentResponse(
        success=outcome.success,
        status=outcome.status,
        amount=outcome.amount_major,
        reference=outcome.reference,
        paid_at=outcome.paid_at,
    )


# ============================================================================
# POST /payments/webhook
# ============================================================================


@router.post("/webhook", response_model=WebhookAck)
async def paystack_webhook(
    request: Request,
    x_paystack_signature: Optional[str] = Header(None, alias="X-Paystack-Signature"),
    reconciler: ConfirmationReconciler = Depends(get_reconciler),
):
    """Paystack webhook handler (provider-pushed path)."""
    # ── Step 0: Raw body ingestion ───────────────────────────────────────────
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body)

    # ── Step 1: Signature, schema, dedup and business processing ────────────
    try:
        outcome = reconciler.handle_webhook(raw_body, x_paystack_signature)
    except PaymentError as exc:
        code, title = _WEBHOOK_CODES.get(exc.status_code, (exc.code, exc.title))
        return _webhook_problem(
            request, exc.status_code,
            code=code,
            title=title,
            detail=exc.detail,
            payload_hash=payload_hash,
        )
    except Exception as exc:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_INTERNAL_ERROR",
            title="Internal processing error",
            detail="An internal error occurred while processing the webhook",
            payload_hash=payload_hash,
            extra={
                "error_type": type(exc).__name__,
                "error_msg": sanitize_str(str(exc)),
            },
        )

    logger.info(
        "WEBHOOK_ACKNOWLEDGED",
        extra={
            "event_type": outcome.event,
            "outcome": outcome.status,
            "reference": outcome.reference,
            "payload_hash": payload_hash,
        },
    )
    return WebhookAck(status=outcome.status)
