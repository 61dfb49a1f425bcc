"""
Utility functions for the relay: callback signature checks and timestamps.
"""

import hmac
import hashlib
import logging
import time
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

META_SIGNATURE_PREFIX = "sha256="
SLACK_SIGNATURE_VERSION = "v0"
SLACK_REPLAY_WINDOW_SECONDS = 300


def utc_now() -> str:
    """Server time as ISO-8601 UTC with microseconds."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def compute_meta_signature(secret: str, body: bytes) -> str:
    """Signature Meta puts in X-Hub-Signature-256: sha256=<hex hmac of raw body>."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{META_SIGNATURE_PREFIX}{digest}"


def compute_slack_signature(secret: str, timestamp: str, body: bytes) -> str:
    """Slack request signature: v0=<hex hmac of "v0:<timestamp>:<raw body>">."""
    base = f"{SLACK_SIGNATURE_VERSION}:{timestamp}:".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), base, hashlib.sha256).hexdigest()
    return f"{SLACK_SIGNATURE_VERSION}={digest}"


def verify_meta_signature(secret: str, body: bytes, header: Optional[str]) -> bool:
    """
    Verify the HMAC-SHA256 signature of an inbound WhatsApp callback.

    Args:
        secret: META_APP_SECRET
        body: Raw request body bytes
        header: Value of the X-Hub-Signature-256 header

    Returns:
        True if signature is valid, False otherwise (never raises)
    """
    if not header:
        logger.info("Signature header missing")
        return False

    presented = header[len(META_SIGNATURE_PREFIX):] if header.startswith(META_SIGNATURE_PREFIX) else header
    expected = compute_meta_signature(secret, body)[len(META_SIGNATURE_PREFIX):]

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))
    logger.info(f"Meta signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid


def verify_slack_signature(
    secret: str,
    timestamp: Optional[str],
    body: bytes,
    signature: Optional[str],
    now: Optional[float] = None,
) -> bool:
    """
    Verify a Slack interactive callback.

    Rejects missing headers, unparsable timestamps and anything older than
    the replay window before checking the HMAC.
    """
    if not timestamp or not signature:
        logger.info("Slack signature or timestamp missing")
        return False

    try:
        ts = int(timestamp)
    except ValueError:
        logger.info(f"Slack timestamp unparsable: {timestamp!r}")
        return False

    current = time.time() if now is None else now
    if current - ts > SLACK_REPLAY_WINDOW_SECONDS:
        logger.warning("Slack request timestamp too old")
        return False

    expected = compute_slack_signature(secret, timestamp, body)
    is_valid = hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
    logger.info(f"Slack signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid
