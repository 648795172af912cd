"""Error taxonomy for payment confirmation.

Each exception carries the HTTP status and a stable machine code; main.py
renders them as RFC 9457 problem details. Authentication and not-found
errors are raised before any ledger mutation.
"""

from typing import Optional


class PaymentError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    code: str = "PAYMENT_ERROR"
    title: str = "Payment Error"

    def __init__(self, detail: str, *, reference: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.reference = reference


class NotConfigured(PaymentError):
    """A required credential (gateway secret key) is missing.

    Fatal per deployment; every request touching the gateway fails closed.
    """

    status_code = 500
    code = "NOT_CONFIGURED"
    title = "Payment Gateway Not Configured"


class Unauthorized(PaymentError):
    """Bad or missing webhook signature or caller credential."""

    status_code = 401
    code = "UNAUTHORIZED"
    title = "Unauthorized"


class PaymentRecordNotFound(PaymentError):
    """No payment intent exists for the reference being confirmed."""

    status_code = 404
    code = "PAYMENT_RECORD_NOT_FOUND"
    title = "Payment Record Not Found"


class GatewayUnavailable(PaymentError):
    """Provider unreachable or returned a non-success envelope."""

    status_code = 400
    code = "GATEWAY_UNAVAILABLE"
    title = "Payment Gateway Error"


class InvalidWebhookPayload(GatewayUnavailable):
    """Webhook body does not match the expected event schema."""

    code = "WEBHOOK_INVALID_PAYLOAD"
    title = "Invalid Webhook Payload"


class DuplicatePaymentReference(PaymentError):
    """Initialize was called with a reference that already has a ledger entry."""

    status_code = 409
    code = "DUPLICATE_PAYMENT_REFERENCE"
    title = "Duplicate Payment Reference"


class ProjectionSyncFailed(Exception):
    """Organization projection update failed.

    Logged only; never raised to a caller and never retried synchronously.
    """

    def __init__(self, organization_id: str, cause: Exception):
        super().__init__(f"organization projection sync failed for {organization_id}: {cause}")
        self.organization_id = organization_id
        self.cause = cause
