"""Request context management for observability.

Context variables carry per-request identifiers across async boundaries so
every log record can be tied back to the payment being confirmed.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Payment reference currently being confirmed
payment_reference_var: ContextVar[str] = ContextVar("payment_reference", default="")

# Organization owning the payment currently being confirmed
organization_id_var: ContextVar[str] = ContextVar("organization_id", default="")
