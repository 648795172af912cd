"""Paystack webhook event schemas.

Events are parsed at the boundary in two steps: the envelope
(``{"event": ..., "data": {...}}``) for every delivery, then a strict model
for the event types we act on. Unknown event types stay as the envelope and
are acknowledged without processing.
"""

import json
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from payrecon_api.errors import InvalidWebhookPayload

CHARGE_SUCCESS = "charge.success"


class PaystackEventEnvelope(BaseModel):
    """Outer shape shared by all Paystack webhook events."""

    model_config = ConfigDict(extra="ignore")

    event: str = Field(..., min_length=1)
    data: dict[str, Any]


class ChargeMetadata(BaseModel):
    """Checkout metadata echoed back by Paystack (set at initialize)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    org_id: Optional[str] = Field(default=None, alias="orgId")
    plan_id: Optional[str] = Field(default=None, alias="planId")
    billing_cycle: Optional[str] = Field(default=None, alias="billingCycle")


class ChargeSuccessData(BaseModel):
    """``data`` block of a ``charge.success`` event."""

    model_config = ConfigDict(extra="ignore")

    id: Union[int, str]
    reference: str = Field(..., min_length=1)
    status: str
    amount: int = Field(..., strict=True, gt=0)
    currency: str
    paid_at: Optional[datetime] = None
    metadata: Optional[ChargeMetadata] = None

    @field_validator("metadata", mode="before")
    @classmethod
    def _empty_metadata(cls, value: Any) -> Any:
        # Paystack sends "" or 0 when no metadata was attached
        if value in ("", 0, None):
            return None
        return value

    @property
    def transaction_id(self) -> str:
        return str(self.id)


class ChargeSuccessEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str
    data: ChargeSuccessData


def parse_event(raw_body: bytes) -> Union[ChargeSuccessEvent, PaystackEventEnvelope]:
    """Parse a raw webhook body.

    Returns:
        ChargeSuccessEvent for ``charge.success``, otherwise the envelope

    Raises:
        InvalidWebhookPayload: Body is not JSON or does not match the schema
    """
    try:
        body = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidWebhookPayload("Request body is not valid JSON") from e

    try:
        envelope = PaystackEventEnvelope.model_validate(body)
        if envelope.event == CHARGE_SUCCESS:
            return ChargeSuccessEvent.model_validate(body)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise InvalidWebhookPayload(f"Invalid webhook payload: {fields}") from e

    return envelope


def dedup_key_for(event: Union[ChargeSuccessEvent, PaystackEventEnvelope], payload_hash: str) -> str:
    """Deterministic dedup key for a webhook delivery.

    Primary  : ev_<event>:<data.id> (Paystack transaction id, stable across redeliveries)
    Fallback : body_<sha256> for events without a transaction id
    """
    if isinstance(event, ChargeSuccessEvent):
        return f"ev_{event.event}:{event.data.transaction_id}"
    data_id = event.data.get("id")
    if data_id is not None and str(data_id):
        return f"ev_{event.event}:{data_id}"
    return f"body_{payload_hash}"
