"""
Dialed-number helpers.
"""

import re

_NON_DIAL_CHARS = re.compile(r"[^0-9+]")
_E164 = re.compile(r"^\+[1-9]\d{6,14}$")
_EXTENSION = re.compile(r"^\d{2,8}$")


def normalize_number(value: str | None) -> str:
    """Strip everything but digits and '+'."""
    if not value:
        return ""
    return _NON_DIAL_CHARS.sub("", value)


def is_e164(value: str) -> bool:
    return bool(_E164.match(value))


def is_extension_number(value: str) -> bool:
    return bool(_EXTENSION.match(value))


def is_transport_uri(value: str) -> bool:
    lowered = value.lower()
    return lowered.startswith(("sip:", "sips:")) or ("@" in value and " " not in value)
