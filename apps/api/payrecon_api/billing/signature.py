"""Paystack webhook signature verification.

Paystack signs the raw request body with HMAC-SHA512 keyed by the account
secret key and sends the hex digest in ``X-Paystack-Signature``. Verification
always runs over the exact bytes received, before any JSON parsing.
"""

import hashlib
import hmac
from typing import Optional

from payrecon_api.errors import NotConfigured


class SignatureVerifier:
    """HMAC-SHA512 webhook signature check (fail closed)."""

    def __init__(self, secret: Optional[str]):
        if not secret or not secret.strip():
            raise NotConfigured("PAYSTACK_SECRET_KEY is not configured; webhook signatures cannot be verified")
        self._secret = secret.encode("utf-8")

    def sign(self, raw_body: bytes) -> str:
        """Hex HMAC-SHA512 digest of raw_body."""
        return hmac.new(self._secret, raw_body, hashlib.sha512).hexdigest()

    def verify(self, raw_body: bytes, claimed_signature: Optional[str]) -> bool:
        """Return True only if claimed_signature matches the body digest.

        A missing or blank signature is a mismatch. Comparison is
        constant-time.
        """
        if not claimed_signature:
            return False
        expected = self.sign(raw_body).encode("ascii")
        # Header values arrive latin-1 decoded; compare bytes so non-ASCII is a mismatch
        claimed = claimed_signature.strip().lower().encode("utf-8", "surrogateescape")
        return hmac.compare_digest(expected, claimed)
