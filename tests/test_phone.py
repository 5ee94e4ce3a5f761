"""
test_phone.py — E.164 validation and phone masking.

Run with:
    pytest tests/test_phone.py -v
"""

from __future__ import annotations

import pytest

from backend.app.alerts.phone import (
    is_valid_e164,
    mask_phone,
    phone_validation_error,
    validate_e164,
)
from backend.app.core.errors import ValidationError


class TestIsValidE164:

    @pytest.mark.parametrize("phone", ["+14155552671", "+442071838750", "+919876543210", "+1"])
    def test_valid_numbers(self, phone):
        assert is_valid_e164(phone)

    @pytest.mark.parametrize("phone", [
        "14155552671",        # no plus
        "+04155552671",       # leading zero country code
        "+1415555267123456",  # 16 digits
        "+1 415 555 2671",    # spaces
        "+1-415-555-2671",
        "",
        None,
    ])
    def test_invalid_numbers(self, phone):
        assert not is_valid_e164(phone)

    def test_surrounding_whitespace_tolerated(self):
        assert is_valid_e164("  +14155552671 ")


class TestValidationMessages:

    def test_missing(self):
        assert phone_validation_error("") == "Phone number is required"

    def test_missing_plus(self):
        assert "must start with +" in phone_validation_error("14155552671")

    def test_too_long(self):
        assert "too long" in phone_validation_error("+1415555267123456")

    def test_valid_returns_none(self):
        assert phone_validation_error("+14155552671") is None

    def test_validate_raises_with_field(self):
        with pytest.raises(ValidationError) as exc:
            validate_e164("555-1234", field="to")
        assert exc.value.status_code == 422
        assert exc.value.error_code == "INVALID_PHONE_NUMBER"
        assert exc.value.details["field"] == "to"

    def test_validate_returns_trimmed(self):
        assert validate_e164(" +14155552671 ") == "+14155552671"


class TestMaskPhone:

    def test_keeps_last_four(self):
        assert mask_phone("+14155552671") == "+*******2671"

    def test_short_number(self):
        assert mask_phone("+123") == "+123"

    def test_none_and_blank(self):
        assert mask_phone(None) == "unknown"
        assert mask_phone("   ") == "unknown"

    def test_never_leaks_full_number(self):
        assert "415555" not in mask_phone("+14155552671")
