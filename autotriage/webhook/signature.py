"""GitHub webhook signature verification.

GitHub signs each delivery with HMAC-SHA256 over the exact request body and
sends ``sha256=<hexdigest>`` in the X-Hub-Signature-256 header. The digest
must be computed over the raw bytes before any JSON decoding; re-serialized
JSON does not reproduce them.
"""

import hashlib
import hmac
from typing import Optional, Union


SIGNATURE_PREFIX = "sha256="


def compute_signature(raw_payload: bytes, secret: str) -> str:
    """Return the ``sha256=``-prefixed signature GitHub would send."""
    digest = hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(
    raw_payload: bytes,
    signature_header: Optional[Union[str, bytes]],
    secret: str,
) -> bool:
    """Check a webhook signature in constant time.

    Args:
        raw_payload: The request body exactly as received.
        signature_header: Value of the signature header, or None if absent.
        secret: The shared webhook secret.

    Returns:
        True if the signature matches. An absent, empty, or non-ASCII
        header yields False; this function never raises for bad input.
    """
    if not signature_header or not secret:
        return False

    if isinstance(signature_header, str):
        try:
            provided = signature_header.strip().encode("ascii")
        except UnicodeEncodeError:
            return False
    else:
        provided = signature_header.strip()

    expected = compute_signature(raw_payload, secret).encode("ascii")
    return hmac.compare_digest(provided, expected)
