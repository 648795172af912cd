"""Secret / PII scrubbing for log output.

Provider payloads carry customer emails, card fingerprints and reusable
authorization codes; none of them may reach a log sink verbatim.

Strings are processed through a size gate:
 1. > MAX_STR_LOG        -> replaced by length + sha256 prefix, no regex
 2. > MAX_STR_FOR_REGEX  -> only the Bearer/Basic prefix check
 3. otherwise            -> every pattern in _PATTERNS is applied
"""

import hashlib
import re
import traceback
from typing import Any

MAX_STR_LOG: int = 2048
MAX_STR_FOR_REGEX: int = 512
MAX_DEPTH: int = 6

# Lower-cased dict keys whose values are always redacted
_SENSITIVE_KEYS: frozenset[str] = frozenset({
    "authorization", "token", "access_token", "refresh_token",
    "secret", "secret_key", "signature", "x-paystack-signature",
    "email", "phone", "customer", "authorization_code", "access_code",
    "card", "bin", "last4", "signature_key", "account_name",
})

_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"Bearer \S+"),
    re.compile(r"Basic \S+"),
    re.compile(r"sk_(?:live|test)_\S+"),
    re.compile(r"AUTH_[A-Za-z0-9]+"),
    re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
]

_BEARER_PREFIX = "Bearer "
_BASIC_PREFIX = "Basic "


def payload_hash_bytes(raw: bytes) -> str:
    """Return sha256 hex digest of raw bytes."""
    return hashlib.sha256(raw).hexdigest()


def sanitize_str(s: str) -> str:
    """Return a log-safe rendition of ``s``."""
    if not isinstance(s, str):
        return s  # type: ignore[return-value]

    n = len(s)

    if n > MAX_STR_LOG:
        digest = hashlib.sha256(s.encode("utf-8", errors="replace")).hexdigest()[:16]
        return f"[TRUNCATED len={n} sha256={digest}]"

    if n > MAX_STR_FOR_REGEX:
        if s.startswith(_BEARER_PREFIX) or s.startswith(_BASIC_PREFIX):
            return "[REDACTED]"
        return s

    result = s
    for pattern in _PATTERNS:
        result = pattern.sub("[REDACTED]", result)
    return result


def sanitize_obj(obj: Any, depth: int = 0) -> Any:
    """Recursively sanitize a log ``extra`` value.

    Dict values under sensitive keys are replaced, lists and nested dicts are
    walked up to MAX_DEPTH, strings go through sanitize_str().
    """
    if depth >= MAX_DEPTH:
        return "[DEPTH_LIMIT]"

    if isinstance(obj, dict):
        result: dict[str, Any] = {}
        for key, value in obj.items():
            if isinstance(key, str) and key.lower() in _SENSITIVE_KEYS:
                result[key] = "[REDACTED]"
            else:
                result[key] = sanitize_obj(value, depth + 1)
        return result

    if isinstance(obj, (list, tuple)):
        return [sanitize_obj(item, depth + 1) for item in obj]

    if isinstance(obj, str):
        return sanitize_str(obj)

    return obj


def sanitize_field(key: str, value: Any) -> Any:
    """Sanitize a single named log field (used for ``extra`` kwargs)."""
    if key.lower() in _SENSITIVE_KEYS:
        return "[REDACTED]"
    return sanitize_obj(value)


def sanitize_exc(exc_info: tuple) -> str:
    """Format an exc_info tuple into a sanitized traceback string.

    Locals are never captured; they routinely hold the raw webhook body.
    Each frame is scrubbed separately so long tracebacks stay under the
    regex size gate.
    """
    _type, value, _tb = exc_info
    if value is None:
        return ""
    try:
        te = traceback.TracebackException.from_exception(value, capture_locals=False)
        return "".join(sanitize_str(chunk) for chunk in te.format())
    except Exception:
        return "[TRACEBACK_FORMAT_ERROR]"
