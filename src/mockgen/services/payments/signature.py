"""HMAC signature validation for commerce platform payment webhooks.

Incoming webhooks carry a hex-encoded HMAC-SHA256 of the raw request body,
keyed with the shared webhook secret, optionally prefixed with ``sha256=``.

Security Note:
    verify_payment_signature MUST be called before the payload is parsed.
    Any failure maps to 401 Unauthorized.
"""

import hashlib
import hmac
import string

from mockgen.services.exceptions import InvalidSignatureError

SIGNATURE_PREFIX = "sha256="
SIGNATURE_HEX_LENGTH = hashlib.sha256().digest_size * 2
_HEX_DIGITS = frozenset(string.hexdigits)


def compute_payment_signature(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of ``raw_body`` keyed with ``secret``."""
    return hmac.new(key=secret.encode("utf-8"), msg=raw_body, digestmod=hashlib.sha256).hexdigest()


def normalize_signature(signature_header: str) -> str:
    """Strip whitespace and the optional ``sha256=`` prefix; lowercase the hex digest."""
    signature = signature_header.strip()
    if signature.lower().startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX) :]
    return signature.lower()


def validate_payment_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    """Validate a webhook signature using HMAC-SHA256.

    Args:
        raw_body: Raw request body bytes (NOT parsed JSON)
        signature: Signature header value (hex, optional ``sha256=`` prefix)
        secret: Shared webhook secret

    Returns:
        True if the signature is well-formed and matches, False otherwise

    Security:
        - Uses hmac.compare_digest() for constant-time comparison.
        - Malformed signatures (wrong length, non-hex) are rejected before comparison.
    """
    if not secret or not signature:
        return False

    provided = normalize_signature(signature)
    if len(provided) != SIGNATURE_HEX_LENGTH or not set(provided) <= _HEX_DIGITS:
        return False

    expected = compute_payment_signature(raw_body, secret)
    return hmac.compare_digest(expected, provided)


def verify_payment_signature(raw_body: bytes, signature: str | None, secret: str) -> None:
    """Raise unless ``signature`` authenticates ``raw_body``.

    Raises:
        InvalidSignatureError: Secret not configured, header missing, malformed or wrong
    """
    if not secret:
        raise InvalidSignatureError("Webhook secret not configured")
    if not signature:
        raise InvalidSignatureError("Missing signature header")
    if not validate_payment_signature(raw_body, signature, secret):
        raise InvalidSignatureError("Invalid webhook signature")
