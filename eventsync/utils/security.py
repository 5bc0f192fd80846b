import base64
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-square-hmacsha256-signature"


def compute_signature(secret: str, body: bytes) -> str:
    """base64(HMAC-SHA256(secret, body))"""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """
    Verify a webhook signature in constant time.

    An unconfigured secret fails closed: no event is ingested unverified.
    """
    if not secret:
        logger.error("Webhook signature key is not configured; rejecting delivery")
        return False
    if not signature:
        return False
    expected = compute_signature(secret, body)
    return hmac.compare_digest(expected, signature.strip())
