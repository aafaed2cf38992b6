from __future__ import annotations

import re
from typing import Optional

SINGAPORE_COUNTRY_CODE = "65"
LOCAL_NUMBER_PREFIXES = ("6", "8", "9")
MIN_PHONE_DIGITS = 8
MAX_PHONE_DIGITS = 15
MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 80

_EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}$")


def normalize_phone(text: Optional[str]) -> Optional[str]:
    """Return the phone as bare digits with a country code, or None.

    Eight-digit Singapore numbers (starting 6, 8 or 9) get the 65 prefix.
    Anything else must already carry its country code.
    """
    if not isinstance(text, str):
        return None
    stripped = text.strip()
    if not stripped or re.search(r"[A-Za-z]", stripped):
        return None
    digits = "".join(ch for ch in stripped if ch.isdigit())
    if len(digits) == MIN_PHONE_DIGITS and digits.startswith(LOCAL_NUMBER_PREFIXES):
        return f"{SINGAPORE_COUNTRY_CODE}{digits}"
    if len(digits) <= MIN_PHONE_DIGITS or len(digits) > MAX_PHONE_DIGITS:
        return None
    return digits


def normalize_email(text: Optional[str]) -> Optional[str]:
    if not isinstance(text, str):
        return None
    candidate = text.strip().lower()
    if len(candidate) > 254 or not _EMAIL_RE.match(candidate):
        return None
    return candidate


def normalize_name(text: Optional[str]) -> Optional[str]:
    if not isinstance(text, str):
        return None
    cleaned = " ".join(text.split())
    if len(cleaned) < MIN_NAME_LENGTH or len(cleaned) > MAX_NAME_LENGTH:
        return None
    if not any(ch.isalpha() for ch in cleaned):
        return None
    return cleaned
