"""
PIN normalization.

The engine passes the PIN the user spoke in whatever shape the model chose:
a number (leading zeros lost), a string with spaces or dashes, sometimes
something else entirely. Everything is reduced to one canonical 6-digit string.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict

from .errors import PinValidationError, PinValidationReason

PIN_LENGTH = 6
_PIN_RE = re.compile(r"[0-9]{6}")
_NON_DIGIT_RE = re.compile(r"[^0-9]")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_whole_non_negative(value: int | float) -> bool:
    if isinstance(value, float) and not value.is_integer():
        return False
    return value >= 0


def _render_number(value: int | float) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).rjust(PIN_LENGTH, "0")


def normalize_pin(value: Any) -> str:
    """
    Return the canonical 6-digit PIN for `value`.

    Numbers are zero-padded (42 -> "000042"); strings lose every non-digit
    character ("12 34-56" -> "123456"). Raises PinValidationError otherwise.
    """
    if _is_number(value):
        candidate = _render_number(value)
    elif isinstance(value, str):
        candidate = _NON_DIGIT_RE.sub("", value)
    else:
        raise PinValidationError(PinValidationReason.WRONG_TYPE)

    if not _PIN_RE.fullmatch(candidate):
        digit_count = sum(1 for ch in candidate if "0" <= ch <= "9")
        number = value if _is_number(value) and not _is_whole_non_negative(value) else None
        raise PinValidationError(PinValidationReason.WRONG_LENGTH, digit_count=digit_count, number=number)
    return candidate


def is_valid_pin(value: Any) -> bool:
    try:
        normalize_pin(value)
    except PinValidationError:
        return False
    return True


def analyze_pin_input(value: Any) -> Dict[str, Any]:
    """Describe how a raw PIN argument arrived. Never raises."""
    raw = "" if value is None else str(value)
    if isinstance(value, str):
        digits_only = _NON_DIGIT_RE.sub("", value)
        char_codes = [ord(ch) for ch in value]
    else:
        digits_only = _NON_DIGIT_RE.sub("", raw)
        char_codes = []

    try:
        normalized = normalize_pin(value)
        validation_error = None
    except PinValidationError as e:
        normalized = None
        validation_error = str(e)

    return {
        "received_value": value if value is None or isinstance(value, (str, int, float, bool)) else raw,
        "type": type(value).__name__,
        "length": len(raw),
        "is_string": isinstance(value, str),
        "is_number": _is_number(value),
        "raw_string": raw,
        "digits_only": digits_only,
        "char_codes": char_codes,
        "normalized": normalized,
        "validation_error": validation_error,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
