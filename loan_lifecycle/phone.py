"""
Phone Number Normalization

Converts loosely formatted South African numbers into E.164 form for the
SMS sender.
"""

import logging
import re

logger = logging.getLogger("lendflow.phone")

COUNTRY_CODE = "27"

# Returned for empty input so the notification is recorded as failed instead
# of being silently dropped
INVALID_PHONE_NUMBER = "+27000000000"

_NON_DIGITS = re.compile(r"\D")


def normalize_phone_number(raw: str) -> str:
    """
    Normalize a local phone number to +27 international form.

    "082 123 4567" -> "+27821234567"
    "27821234567"  -> "+27821234567"
    "+27821234567" -> "+27821234567"
    ""             -> INVALID_PHONE_NUMBER
    """
    raw = (raw or "").strip()
    international = raw.startswith("+")
    digits = _NON_DIGITS.sub("", raw)

    if not digits:
        logger.warning(f"Empty phone number {raw!r}, using sentinel {INVALID_PHONE_NUMBER}")
        return INVALID_PHONE_NUMBER

    if international:
        return f"+{digits}"
    if digits.startswith("0"):
        return f"+{COUNTRY_CODE}{digits[1:]}"
    if digits.startswith(COUNTRY_CODE):
        return f"+{digits}"
    return f"+{COUNTRY_CODE}{digits}"


def is_valid_e164(number: str) -> bool:
    """True for a plausible E.164 number that is not the sentinel"""
    return number != INVALID_PHONE_NUMBER and bool(re.fullmatch(r"\+[1-9]\d{7,14}", number))
