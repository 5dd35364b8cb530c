"""
Utility functions for the inbox API: phone/channel normalization,
timestamps and Twilio webhook signature checks.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Mapping, Optional

from twilio.request_validator import RequestValidator

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"

PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
_PHONE_NOISE = re.compile(r"[\s\-\.\(\)]")


def utcnow() -> datetime:
    """Current time as naive UTC, the form timestamps are stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def format_ts(value: Optional[datetime]) -> Optional[str]:
    """Serialize a stored timestamp as ISO-8601 UTC with a Z suffix."""
    if value is None:
        return None
    return to_naive_utc(value).isoformat(timespec="milliseconds") + "Z"


def strip_channel_prefix(address: str) -> str:
    """Remove a 'whatsapp:' prefix if present."""
    if address[:len(WHATSAPP_PREFIX)].lower() == WHATSAPP_PREFIX:
        return address[len(WHATSAPP_PREFIX):]
    return address


def normalize_phone(raw: str) -> str:
    """
    Normalize a phone number as received from a form or the provider.

    Drops the 'whatsapp:' prefix and formatting characters, so
    'whatsapp:+1 (415) 555-0100' becomes '+14155550100'.
    """
    return _PHONE_NOISE.sub("", strip_channel_prefix(raw.strip()))


def is_valid_phone(phone: str) -> bool:
    return bool(PHONE_PATTERN.match(phone))


def channel_from_address(from_address: str, to_address: Optional[str] = None) -> str:
    """Channel of an inbound provider message, derived from its address prefixes."""
    for address in (from_address, to_address):
        if address and address.lower().startswith(WHATSAPP_PREFIX):
            return "whatsapp"
    return "sms"


def verify_twilio_signature(
    url: str,
    params: Mapping[str, str],
    signature: Optional[str],
    auth_token: Optional[str],
) -> bool:
    """
    Verify the X-Twilio-Signature header of a webhook request.

    Args:
        url: Full public URL Twilio posted to
        params: Decoded form parameters
        signature: Value of the X-Twilio-Signature header
        auth_token: TWILIO_AUTH_TOKEN

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not auth_token:
        logger.warning("Twilio signature or auth token missing")
        return False

    is_valid = RequestValidator(auth_token).validate(url, dict(params), signature)
    logger.info(f"Twilio signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid
