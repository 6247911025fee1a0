"""
Utility functions for the SMS wallet service.
"""

import hmac
import hashlib
import logging
from datetime import datetime, timezone

from sms_wallet.errors import InvalidPhoneNumber

logger = logging.getLogger(__name__)

E164_MAX_DIGITS = 15


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from X-Signature header
        secret: CALLBACK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying HMAC signature, body length: {len(body)} bytes")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.debug(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def validate_phone_number(phone_number: str) -> str:
    """
    Validate an E.164-like phone number: '+' followed by 1-15 digits.

    Returns:
        The phone number unchanged

    Raises:
        InvalidPhoneNumber: If the format does not match
    """
    if not phone_number.startswith("+"):
        raise InvalidPhoneNumber(phone_number, "must start with '+'")
    digits = phone_number[1:]
    if not digits.isdigit() or not digits.isascii():
        raise InvalidPhoneNumber(phone_number, "must contain only digits after '+'")
    if len(digits) > E164_MAX_DIGITS:
        raise InvalidPhoneNumber(phone_number, f"must have at most {E164_MAX_DIGITS} digits")
    return phone_number


def utc_now_iso() -> str:
    """Current server time as ISO-8601 UTC with millisecond precision and Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
