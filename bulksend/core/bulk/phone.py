# bulksend/core/bulk/phone.py
"""
Phone number normalization to E.164.

Providers require ``+[country code][number]``.  Guest lists are typed
in by hand, so local formats are common:

- ``"+972 58 400 3578"`` -> ``"+972584003578"``
- ``"058-400-3578"``     -> ``"+972584003578"`` (IL default)
- ``"(415) 555-1234"``   -> ``"+14155551234"``  (US)

``to_e164`` returns None when the input cannot be a dialable number;
the dispatch executor treats that as "no contact channel".
"""
from __future__ import annotations

import re

_E164_RE = re.compile(r"^\+[1-9]\d{6,14}$")

# country -> (calling code, trunk prefix)
COUNTRY_CODES: dict[str, tuple[str, str]] = {
    "IL": ("972", "0"),
    "US": ("1", "1"),
    "UK": ("44", "0"),
}

DEFAULT_COUNTRY = "IL"


def _clean(phone: str) -> str:
    has_plus = phone.strip().startswith("+")
    digits = re.sub(r"\D", "", phone)
    return f"+{digits}" if has_plus else digits


def is_e164(phone: str) -> bool:
    return bool(_E164_RE.match(phone))


def to_e164(phone: str | None, country: str = DEFAULT_COUNTRY) -> str | None:
    """Normalize ``phone`` to E.164, or None if it is not usable."""
    if not phone:
        return None

    cleaned = _clean(phone)
    if is_e164(cleaned):
        return cleaned

    digits = cleaned.lstrip("+")
    if len(digits) < 7:
        return None

    code, trunk = COUNTRY_CODES.get(country, COUNTRY_CODES[DEFAULT_COUNTRY])

    if digits.startswith(code) and len(digits) > 9:
        candidate = f"+{digits}"
    elif trunk == "0" and digits.startswith("0"):
        candidate = f"+{code}{digits[1:]}"
    elif country == "US" and len(digits) == 10:
        candidate = f"+1{digits}"
    else:
        candidate = f"+{code}{digits}"

    return candidate if is_e164(candidate) else None
