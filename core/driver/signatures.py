"""
Webhook signature verification.

Ingestion collaborators sign the raw request body with HMAC-SHA256 using a
shared secret and send the hex digest in a header, optionally prefixed
with "sha256=" and optionally as a comma-separated list during secret
rotation. Verification fails closed: no secret configured means every
webhook is rejected.
"""

import hashlib
import hmac
import logging
from typing import List, Optional

from core.errors import SignatureError


logger = logging.getLogger(__name__)


SIGNATURE_PREFIX = "sha256="


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of body under secret."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _parse_signatures(header: str) -> List[str]:
    candidates = []
    for part in header.split(","):
        part = part.strip()
        if part.lower().startswith(SIGNATURE_PREFIX):
            part = part[len(SIGNATURE_PREFIX):]
        if part:
            candidates.append(part.lower())
    return candidates


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """
    Verify a webhook signature.

    Args:
        body: Raw request body exactly as received
        signature: Signature header value
        secret: Shared secret (None or empty rejects everything)

    Raises:
        SignatureError: If no secret is configured, the header is missing,
            or no candidate matches
    """
    if not secret or not secret.strip():
        logger.error("Webhook secret not configured, rejecting webhook")
        raise SignatureError("Webhook secret is not configured")

    if not signature:
        raise SignatureError("Missing webhook signature")

    expected = compute_signature(body, secret)
    if not any(hmac.compare_digest(expected, c) for c in _parse_signatures(signature)):
        logger.warning("Webhook signature mismatch")
        raise SignatureError("Webhook signature does not match")
