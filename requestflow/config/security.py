"""
Signing utilities for outgoing notification payloads.
Uses HMAC-SHA256 so webhook receivers can verify the sender.
"""

import hmac
import hashlib
import time
from typing import Optional

import structlog

from requestflow.config.settings import settings

logger = structlog.get_logger()

# Receivers reject signatures older than this
SIGNATURE_MAX_AGE_SECONDS = 300


def sign_payload(body: bytes, timestamp: Optional[int] = None, secret: Optional[str] = None) -> str:
    """
    Sign a webhook body.

    Format: v1=<hex digest of "v1:{timestamp}:{body}">

    Args:
        body: Raw request body
        timestamp: Unix timestamp sent alongside the signature
        secret: Override for settings.secret_key

    Returns:
        Signature header value
    """
    if timestamp is None:
        timestamp = int(time.time())
    key = (secret or settings.secret_key).encode()
    basestring = f"v1:{timestamp}:".encode() + body
    return "v1=" + hmac.new(key, basestring, hashlib.sha256).hexdigest()


def verify_payload_signature(
    timestamp: str,
    body: bytes,
    signature: str,
    secret: Optional[str] = None,
) -> bool:
    """
    Verify a signature produced by sign_payload.

    Rejects stale timestamps to prevent replay and compares in constant time.
    """
    try:
        request_time = int(timestamp)
    except (TypeError, ValueError):
        logger.warning("payload_signature_bad_timestamp")
        return False

    time_diff = abs(int(time.time()) - request_time)
    if time_diff > SIGNATURE_MAX_AGE_SECONDS:
        logger.warning("payload_signature_timestamp_too_old", time_diff_seconds=time_diff)
        return False

    expected = sign_payload(body, request_time, secret)
    return hmac.compare_digest(signature, expected)
