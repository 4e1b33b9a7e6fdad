"""Square webhook signature verification: constant-time HMAC-SHA256.

Security contract:
- Signature is the hex HMAC-SHA256 of the exact raw request body
- All comparisons use hmac.compare_digest() (constant-time, no timing attacks)
- Missing key or missing signature -> verification fails (fail-closed)
- The secret is passed in by the caller, never read from the environment here
"""

from __future__ import annotations

import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-square-hmacsha256-signature"


def compute_signature(body: bytes | str, signature_key: str) -> str:
    """Hex HMAC-SHA256 of ``body`` under ``signature_key``."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hmac.new(signature_key.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes | str, signature: str | None, signature_key: str | None) -> bool:
    """Verify a Square webhook signature.

    Args:
        body: Raw request body (bytes) or the payload string
        signature: Value of the X-Square-HMACSHA256-Signature header
        signature_key: Webhook signature key from the Square dashboard

    Returns:
        True if the signature matches
    """
    if not signature_key:
        logger.warning("Signature key not configured, rejecting webhook")
        return False
    if not signature or not body:
        return False

    expected = compute_signature(body, signature_key)
    provided = signature.strip().lower().encode("utf-8")
    return hmac.compare_digest(expected.encode("ascii"), provided)
