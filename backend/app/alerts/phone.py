"""
phone.py — E.164 phone number validation and masking.

E.164: a leading '+', a non-zero country digit, at most 15 digits total.
"""

from __future__ import annotations

import re
from typing import Optional

from backend.app.core.errors import ValidationError
from backend.app.core.logging_config import mask_phone

__all__ = ["is_valid_e164", "phone_validation_error", "validate_e164", "mask_phone"]

E164_PATTERN = re.compile(r"^\+[1-9][0-9]{0,14}$")


def is_valid_e164(phone: Optional[str]) -> bool:
    if not phone:
        return False
    return bool(E164_PATTERN.match(phone.strip()))


def phone_validation_error(phone: Optional[str]) -> Optional[str]:
    """Human-readable reason the number is not E.164, or None if it is."""
    if not phone or not phone.strip():
        return "Phone number is required"
    trimmed = phone.strip()
    if not trimmed.startswith("+"):
        return "Phone number must start with + followed by country code"
    if len(trimmed) > 16:
        return "Phone number too long (maximum 15 digits)"
    if not E164_PATTERN.match(trimmed):
        return "Invalid phone number format. Expected E.164 format (e.g., +14155552671)"
    return None


def validate_e164(phone: Optional[str], field: str = "phone_number") -> str:
    """Return the trimmed number or raise ValidationError."""
    error = phone_validation_error(phone)
    if error:
        raise ValidationError(error, field=field, error_code="INVALID_PHONE_NUMBER")
    return phone.strip()  # type: ignore[union-attr]
