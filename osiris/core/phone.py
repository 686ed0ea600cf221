# osiris/core/phone.py
from __future__ import annotations

import re

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: str | None, default_country: str = "1") -> str | None:
    """
    Normalize a North American phone number to E.164.

    "(512) 555-0123" → "+15125550123"; "+44 20 7946 0958" is kept as given.
    Returns None for anything that cannot be a dialable number.
    """
    if not raw:
        return None

    raw = str(raw).strip()
    digits = _NON_DIGITS.sub("", raw)

    if raw.startswith("+"):
        return f"+{digits}" if 8 <= len(digits) <= 15 else None

    if len(digits) == 10:
        return f"+{default_country}{digits}"
    if len(digits) == 11 and digits.startswith(default_country):
        return f"+{digits}"

    return None
