"""
Webhook signature verification.

Signatures are HMAC-SHA256, hex encoded, optionally prefixed with ``sha256=``.
The signed content is the raw request body, or ``<timestamp>.<body>`` when the
sender includes a timestamp header, so a replayed body cannot be paired with a
fresh timestamp.
"""
import hashlib
import hmac
import logging
import time
from typing import Optional, Union

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = 'sha256='


def _as_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode('utf-8')


def signed_payload(body: bytes, timestamp: Optional[str] = None) -> bytes:
    """Bytes covered by the signature: the body, prefixed by ``<timestamp>.`` if present."""
    if not timestamp:
        return body
    return _as_bytes(timestamp) + b'.' + body


def compute_signature(body: bytes, secret: Union[str, bytes]) -> str:
    """Return the hex HMAC-SHA256 digest of ``body`` keyed by ``secret``."""
    return hmac.new(_as_bytes(secret), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Union[str, bytes],
                     timestamp: Optional[str] = None) -> bool:
    """
    Check a webhook signature against the raw body.

    Args:
        body: Raw request body exactly as received
        signature: Header value, ``<hex>`` or ``sha256=<hex>``
        secret: The tenant's resolved webhook secret
        timestamp: Timestamp header value, signed together with the body when present

    Returns:
        True if the signature matches, False otherwise
    """
    if not signature or not secret:
        return False

    provided = signature.strip()
    if provided.startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]

    expected = compute_signature(signed_payload(body, timestamp), secret)
    return hmac.compare_digest(provided.lower().encode('ascii', 'replace'), expected.encode('ascii'))


def is_timestamp_fresh(timestamp: Optional[str], window_seconds: int, now: Optional[float] = None) -> bool:
    """
    Check that a webhook timestamp (unix seconds) lies within the replay window.

    A missing header passes; an unparseable one fails. A window of 0 disables
    the check.
    """
    if window_seconds <= 0 or timestamp is None or timestamp == '':
        return True
    try:
        sent_at = float(timestamp)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable webhook timestamp: {timestamp!r}")
        return False
    now = time.time() if now is None else now
    return abs(now - sent_at) <= window_seconds
