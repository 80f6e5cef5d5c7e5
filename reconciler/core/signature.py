"""
Webhook signature verification.

The gateway signs ``id=<X-Request-Id>;<raw body>`` with HMAC-SHA256 and sends
the digest as ``X-Signature: sha256=<digest>``. The digest may be hex or
base64 encoded. Verification must run over the raw request bytes: hashing a
re-serialized JSON body breaks as soon as key order or whitespace differ.
"""
import base64
import binascii
import hashlib
import hmac
import string
from typing import Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

SIGNATURE_ALGORITHM = "sha256"
_HEX_DIGITS = frozenset(string.hexdigits)


def parse_signature_header(header: str) -> Dict[str, str]:
    """Split ``key1=val1,key2=val2`` into a dict. Malformed pairs are skipped."""
    parts: Dict[str, str] = {}
    for pair in header.split(","):
        key, sep, value = pair.partition("=")
        if not sep:
            continue
        parts[key.strip().lower()] = value.strip()
    return parts


def signing_payload(request_id: str, raw_body: bytes) -> bytes:
    return b"id=" + request_id.encode("utf-8") + b";" + raw_body


def compute_signature(request_id: str, raw_body: bytes, secret: str) -> bytes:
    """Raw HMAC-SHA256 digest of the signing payload."""
    return hmac.new(
        secret.encode("utf-8"), signing_payload(request_id, raw_body), hashlib.sha256
    ).digest()


def _decode_digest(value: str) -> Optional[bytes]:
    digest_size = hashlib.sha256().digest_size
    if len(value) == digest_size * 2 and set(value) <= _HEX_DIGITS:
        return bytes.fromhex(value)
    try:
        decoded = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None
    return decoded if len(decoded) == digest_size else None


class SignatureVerifier:
    """Validates that a notification was produced by the gateway."""

    def verify(
        self,
        request_id: Optional[str],
        signature_header: Optional[str],
        raw_body: bytes,
        secret: Optional[str],
    ) -> bool:
        """
        Check an inbound signature in constant time.

        Args:
            request_id: Value of the X-Request-Id header
            signature_header: Value of the X-Signature header
            raw_body: Request body exactly as received
            secret: Shared webhook secret

        Returns:
            bool: True only if the signature matches. Never raises; policy on
            failure belongs to the caller.
        """
        if not secret:
            logger.warning("webhook_signature_secret_missing")
            return False
        if not request_id or not signature_header:
            return False

        provided = parse_signature_header(signature_header).get(SIGNATURE_ALGORITHM)
        if not provided:
            logger.warning("webhook_signature_malformed", header=signature_header)
            return False

        provided_digest = _decode_digest(provided)
        if provided_digest is None:
            logger.warning("webhook_signature_undecodable", request_id=request_id)
            return False

        expected = compute_signature(request_id, raw_body, secret)
        return hmac.compare_digest(expected, provided_digest)
