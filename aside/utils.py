"""
Utility functions: phone identity, webhook signatures, clock.
"""

import base64
import hashlib
import hmac
import logging
import re
from datetime import datetime, timezone
from typing import Mapping

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")

# Toll-free, then premium/service prefixes (US, country code stripped)
_TOLL_FREE_PREFIX = re.compile(r"^(800|888|877|866|855|844|833|822|880|881|882|883|884|885|886|887|889)")
_SERVICE_PREFIX = re.compile(r"^(900|976|411|511|611|711|811|911)")


def utcnow() -> datetime:
    """Naive UTC now; all stored timestamps are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_phone(raw: str) -> str:
    """
    Canonicalize a provider phone string to one E.164-like form.

    Providers may send "+15551234567", "15551234567", "(555) 123-4567" or
    "5551234567" for the same handset; all map to "+15551234567".
    """
    raw = raw.strip()
    digits = _NON_DIGITS.sub("", raw)

    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def is_reachable_phone(phone: str) -> bool:
    """
    Heuristic: False for numbers that outbound SMS should not be sent to.

    Test numbers (anything containing 555), toll-free and premium/service
    prefixes are treated as unreachable.
    """
    digits = _NON_DIGITS.sub("", phone)
    if digits.startswith("1") and len(digits) == 11:
        digits = digits[1:]

    if "555" in digits:
        return False
    if _TOLL_FREE_PREFIX.match(digits) or _SERVICE_PREFIX.match(digits):
        return False
    return True


def verify_twilio_signature(url: str, params: Mapping[str, str], signature: str, auth_token: str) -> bool:
    """
    Verify a Twilio X-Twilio-Signature header.

    Twilio signs the full request URL followed by every POST parameter
    (sorted by name, name immediately followed by value) with HMAC-SHA1
    keyed by the account auth token, base64 encoded.

    Args:
        url: The public URL Twilio posted to
        params: Form parameters of the request
        signature: Value of the X-Twilio-Signature header
        auth_token: TWILIO_AUTH_TOKEN

    Returns:
        True if signature is valid, False otherwise
    """
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(
        auth_token.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha1
    ).digest()
    expected_signature = base64.b64encode(digest).decode("ascii")

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature or "")
    logger.debug(f"Twilio signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid
