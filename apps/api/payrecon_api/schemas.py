"""Pydantic schemas for API requests/responses."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


# ============================================================================
# RFC 9457 Problem Details
# ============================================================================


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP API errors.

    RFC 9457: detail can be either a string or a structured object (dict).
    """

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: str | dict[str, Any] = Field(..., description="Human-readable explanation or structured error details")
    instance: Optional[str] = Field(None, description="URI reference identifying the specific occurrence")
    code: Optional[str] = Field(None, description="Stable machine-readable error code")
    reference: Optional[str] = Field(None, description="Payment reference the error relates to")


# ============================================================================
# POST /payments/initialize - Request/Response
# ============================================================================


class PaymentMetadata(BaseModel):
    """Checkout metadata; echoed back by Paystack in webhook events."""

    model_config = ConfigDict(populate_by_name=True)

    org_id: str = Field(..., alias="orgId", min_length=1)
    plan_id: str = Field(..., alias="planId", min_length=1)
    billing_cycle: Literal["monthly", "yearly"] = Field(..., alias="billingCycle")


class InitializePaymentRequest(BaseModel):
    """Request body for POST /payments/initialize."""

    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    amount: int = Field(..., gt=0, strict=True, description="Amount in minor currency unit (kobo)")
    currency: Optional[str] = Field(None, min_length=3, max_length=3, description="ISO 4217 code; defaults to NGN")
    reference: Optional[str] = Field(None, min_length=1, max_length=100)
    metadata: PaymentMetadata
    callback_url: Optional[str] = Field(None, alias="callbackUrl")


class InitializePaymentResponse(BaseModel):
    """Response for POST /payments/initialize."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    authorization_url: str = Field(..., serialization_alias="authorizationUrl")
    reference: str


# ============================================================================
# GET /payments/verify/{reference} - Response
# ============================================================================


class VerifyPaymentResponse(BaseModel):
    """Response for GET /payments/verify/{reference}.

    amount is in the major currency unit (naira for NGN).
    """

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    status: str
    amount: float
    reference: str
    paid_at: Optional[datetime] = Field(None, serialization_alias="paidAt")


# ============================================================================
# POST /payments/webhook - Response
# ============================================================================


class WebhookAck(BaseModel):
    """Acknowledgement returned to Paystack (any 2xx stops redelivery)."""

    status: str
