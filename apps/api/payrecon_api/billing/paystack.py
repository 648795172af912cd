"""Paystack Transactions API client.

Paystack API Reference:
- Initialize: https://paystack.com/docs/api/transaction/#initialize
- Verify: https://paystack.com/docs/api/transaction/#verify

Every Paystack response uses the envelope ``{"status": bool, "message": str,
"data": {...}}``. A transaction verified right after checkout is often still
``ongoing``/``pending`` on Paystack's side, so ``verify`` polls a bounded
number of times before giving up.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import httpx
from dateutil.parser import isoparse

from payrecon_api.errors import GatewayUnavailable, NotConfigured

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
# Statuses that will not change on a later poll
DEFINITIVE_FAILURE_STATUSES = frozenset({"failed", "reversed"})


@dataclass(frozen=True)
class InitializeResult:
    authorization_url: str
    provider_reference: str
    access_code: Optional[str] = None


@dataclass(frozen=True)
class VerifyResult:
    """Parsed ``data`` block of the last verify response."""

    status: str
    amount: Optional[int]
    currency: Optional[str]
    transaction_id: Optional[str]
    paid_at: Optional[datetime]
    reference: str
    attempts: int
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_success(self) -> bool:
        return self.status == STATUS_SUCCESS


def _parse_paid_at(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return isoparse(value)
    except (ValueError, OverflowError):
        return None


def _verify_result_from(data: dict[str, Any], reference: str, attempts: int) -> VerifyResult:
    transaction_id = data.get("id")
    amount = data.get("amount")
    return VerifyResult(
        status=str(data.get("status") or "unknown").lower(),
        amount=amount if isinstance(amount, int) and not isinstance(amount, bool) else None,
        currency=data.get("currency"),
        transaction_id=str(transaction_id) if transaction_id is not None else None,
        paid_at=_parse_paid_at(data.get("paid_at") or data.get("paidAt")),
        reference=data.get("reference") or reference,
        attempts=attempts,
        raw=data,
    )


class PaystackClient:
    """Paystack API client.

    Args:
        secret_key: Paystack secret key (sk_test_* or sk_live_*). None means
            not configured; every call then raises NotConfigured.
        base_url: API base URL
        max_attempts: Upper bound on verify calls per confirmation
        retry_delay: Seconds between verify attempts
        sleep: Awaitable sleep used between attempts (tests inject a fake)
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests inject MockTransport)
    """

    def __init__(
        self,
        secret_key: Optional[str],
        base_url: str = "https://api.paystack.co",
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep
        self.timeout = timeout
        self._transport = transport

    @property
    def env(self) -> str:
        if self.secret_key and self.secret_key.startswith("sk_live_"):
            return "live"
        return "test"

    def _get_auth_header(self) -> str:
        if not self.secret_key:
            raise NotConfigured("PAYSTACK_SECRET_KEY is not configured")
        return f"Bearer {self.secret_key}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def initialize(
        self,
        email: str,
        amount: int,
        currency: str,
        reference: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        callback_url: Optional[str] = None,
    ) -> InitializeResult:
        """Create a Paystack checkout session.

        Args:
            email: Customer email
            amount: Amount in minor currency unit (kobo)
            currency: ISO currency code
            reference: Client-chosen reference (Paystack generates one if omitted)
            metadata: Opaque metadata echoed back in webhooks
            callback_url: Redirect target after checkout

        Returns:
            InitializeResult with the provider-assigned reference

        Raises:
            ValueError: If amount is not a positive integer
            NotConfigured: If no secret key is configured
            GatewayUnavailable: Transport failure or non-success envelope
        """
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValueError(f"amount must be a positive integer in minor units, got {amount!r}")

        headers = {
            "Authorization": self._get_auth_header(),
            "Content-Type": "application/json",
        }
        payload: dict[str, Any] = {
            "email": email,
            "amount": amount,
            "currency": currency,
        }
        if reference:
            payload["reference"] = reference
        if metadata:
            payload["metadata"] = metadata
        if callback_url:
            payload["callback_url"] = callback_url

        try:
            async with self._client() as client:
                response = await client.post("/transaction/initialize", json=payload, headers=headers)
        except httpx.RequestError as e:
            logger.error(
                "PAYSTACK_INITIALIZE_TRANSPORT_ERROR",
                extra={"reference": reference, "error_type": type(e).__name__},
            )
            raise GatewayUnavailable("Unable to reach payment gateway", reference=reference) from e

        if response.status_code == 401:
            raise NotConfigured("Paystack rejected the configured secret key", reference=reference)

        body = _json_or_none(response)
        if response.status_code >= 400 or not body or not body.get("status"):
            message = (body or {}).get("message") or "Failed to initialize payment"
            logger.warning(
                "PAYSTACK_INITIALIZE_REJECTED",
                extra={"reference": reference, "http_status": response.status_code, "provider_message": message},
            )
            raise GatewayUnavailable(message, reference=reference)

        data = body.get("data") or {}
        provider_reference = data.get("reference") or reference
        if not data.get("authorization_url") or not provider_reference:
            raise GatewayUnavailable("Payment gateway returned an incomplete response", reference=reference)

        logger.info(
            "PAYSTACK_INITIALIZED",
            extra={"reference": provider_reference, "amount": amount, "currency": currency, "env": self.env},
        )
        return InitializeResult(
            authorization_url=data["authorization_url"],
            provider_reference=provider_reference,
            access_code=data.get("access_code"),
        )

    async def _verify_once(self, client: httpx.AsyncClient, reference: str) -> Optional[dict[str, Any]]:
        """Single verify call.

        Returns:
            ``data`` of a success envelope, or None for a retryable failure

        Raises:
            NotConfigured: Paystack answered 401
        """
        try:
            response = await client.get(
                f"/transaction/verify/{reference}",
                headers={"Authorization": self._get_auth_header()},
            )
        except httpx.RequestError as e:
            logger.warning(
                "PAYSTACK_VERIFY_TRANSPORT_ERROR",
                extra={"reference": reference, "error_type": type(e).__name__},
            )
            return None

        if response.status_code == 401:
            raise NotConfigured("Paystack rejected the configured secret key", reference=reference)

        body = _json_or_none(response)
        if response.status_code >= 400 or not body or not body.get("status") or not isinstance(body.get("data"), dict):
            logger.warning(
                "PAYSTACK_VERIFY_NON_SUCCESS_ENVELOPE",
                extra={
                    "reference": reference,
                    "http_status": response.status_code,
                    "provider_message": (body or {}).get("message"),
                },
            )
            return None
        return body["data"]

    async def verify(self, reference: str) -> VerifyResult:
        """Verify a transaction with bounded polling.

        Up to ``max_attempts`` calls, ``retry_delay`` seconds apart. Stops early
        on ``success`` or a definitive failure (``failed``/``reversed``).
        Pending-like statuses, non-success envelopes and transport errors are
        retried until the bound is reached. Only the final attempt decides
        between returning and raising.

        Returns:
            VerifyResult for the last parsed response (may be non-success)

        Raises:
            NotConfigured: No secret key, or Paystack rejected it
            GatewayUnavailable: The final attempt produced no parseable success envelope
        """
        self._get_auth_header()

        last_data: Optional[dict[str, Any]] = None
        attempt = 0
        async with self._client() as client:
            while attempt < self.max_attempts:
                attempt += 1
                data = await self._verify_once(client, reference)
                last_data = data
                if data is not None:
                    status = str(data.get("status") or "").lower()
                    logger.info(
                        "PAYSTACK_VERIFY_ATTEMPT",
                        extra={"reference": reference, "attempt": attempt, "provider_status": status},
                    )
                    if status == STATUS_SUCCESS or status in DEFINITIVE_FAILURE_STATUSES:
                        break
                if attempt < self.max_attempts:
                    await self._sleep(self.retry_delay)

        if last_data is None:
            logger.error(
                "PAYSTACK_VERIFY_EXHAUSTED",
                extra={"reference": reference, "attempts": attempt},
            )
            raise GatewayUnavailable(
                f"Payment gateway did not confirm {reference} after {attempt} attempts",
                reference=reference,
            )

        return _verify_result_from(last_data, reference, attempt)


def _json_or_none(response: httpx.Response) -> Optional[dict[str, Any]]:
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None
