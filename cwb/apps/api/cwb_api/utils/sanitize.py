"""Secret / PII sanitizer for structured log output.

Two-tier string processing:
 1. > MAX_STR_LOG  → truncate + sha256, never run regex
 2. otherwise      → regex replacement of processor secrets and bearer credentials

Dict values under sensitive keys (emails, signatures, invoice links) are
redacted wholesale; nesting is capped at MAX_DEPTH.
"""

import hashlib
import re
import traceback
from typing import Any

# ── Size thresholds ───────────────────────────────────────────────────────────
MAX_STR_LOG: int = 2048
MAX_DEPTH: int = 6

# ── Sensitive dict keys (lower-cased for comparison) ─────────────────────────
_SENSITIVE_KEYS: frozenset[str] = frozenset({
    "authorization", "token", "api_key", "secret",
    "signature", "stripe-signature", "stripe_signature",
    "email", "customer_email", "destination",
    "hosted_invoice_url", "invoiceurl", "invoice_url",
})

# ── Pre-compiled regex patterns ───────────────────────────────────────────────
_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"Bearer \S+"),
    re.compile(r"\bsk_(?:live|test)_[0-9A-Za-z]+"),
    re.compile(r"\brk_(?:live|test)_[0-9A-Za-z]+"),
    re.compile(r"\bwhsec_[0-9A-Za-z]+"),
    re.compile(r"\bv1=[0-9a-f]{16,}"),
]


def payload_hash_bytes(raw: bytes) -> str:
    """Return sha256 hex digest of raw bytes."""
    return hashlib.sha256(raw).hexdigest()


def sanitize_str(s: str) -> str:
    """Redact credentials inside a string; truncate oversized values."""
    if not isinstance(s, str):
        return s  # type: ignore[return-value]

    if len(s) > MAX_STR_LOG:
        digest = hashlib.sha256(s.encode("utf-8", errors="replace")).hexdigest()[:16]
        return f"[TRUNCATED len={len(s)} sha256={digest}]"

    result = s
    for pattern in _PATTERNS:
        result = pattern.sub("[REDACTED]", result)
    return result


def sanitize_obj(obj: Any, depth: int = 0) -> Any:
    """Recursively sanitize a log extra value.

    - dict: redact sensitive keys, recurse others
    - list/tuple: recurse each element
    - str: run sanitize_str()
    - other: return as-is
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


def sanitize_exc(exc_info: tuple) -> str:
    """Format an exc_info tuple into a sanitized traceback string (no locals)."""
    _type, value, _tb = exc_info
    if value is None:
        return ""
    te = traceback.TracebackException.from_exception(value, capture_locals=False)
    return sanitize_str("".join(te.format()))
