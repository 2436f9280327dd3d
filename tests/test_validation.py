"""
Tests for /pay input validation.
"""

import pytest
from decimal import Decimal

from beastswap_relay.errors import ValidationError
from beastswap_relay.validation import DisbursementRequest, RequestValidator

from conftest import EXCHANGE_RATE, new_address


@pytest.fixture
def validator() -> RequestValidator:
    return RequestValidator(min_purchase=Decimal("0.1"), exchange_rate=EXCHANGE_RATE)


class TestRequestValidator:
    """Tests for RequestValidator.validate."""

    def test_valid_request(self, validator):
        sender = new_address()
        request = validator.validate(sender, 0.5)
        assert request == DisbursementRequest(sender=sender, amount=Decimal("0.5"))

    def test_numeric_string_amount_accepted(self, validator):
        request = validator.validate(new_address(), "0.25")
        assert request.amount == Decimal("0.25")

    def test_sender_is_stripped(self, validator):
        sender = new_address()
        assert validator.validate(f"  {sender} ", 1).sender == sender

    @pytest.mark.parametrize("sender", [None, "", "   ", 123, ["addr"]])
    def test_missing_or_bad_sender(self, validator, sender):
        with pytest.raises(ValidationError, match="Invalid sender or amount"):
            validator.validate(sender, 1)

    @pytest.mark.parametrize("amount", [None, "abc", True, False, [1], {"sol": 1}, 0, -1, "NaN", "Infinity"])
    def test_missing_or_bad_amount(self, validator, amount):
        with pytest.raises(ValidationError, match="Invalid sender or amount"):
            validator.validate(new_address(), amount)

    def test_below_minimum_purchase(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(new_address(), 0.05)
        assert exc_info.value.message == "Minimum purchase amount is 0.1 SOL"
        assert exc_info.value.status_code == 400

    def test_minimum_checked_before_address(self, validator):
        """A placeholder address with a too-small amount reports the minimum."""
        with pytest.raises(ValidationError, match="Minimum purchase amount"):
            validator.validate("Addr1", 0.05)

    def test_minimum_is_inclusive(self, validator):
        assert validator.validate(new_address(), "0.1").amount == Decimal("0.1")

    @pytest.mark.parametrize("sender", ["Addr1", "not-base58-0OIl", "1" * 50])
    def test_invalid_address(self, validator, sender):
        with pytest.raises(ValidationError, match="Invalid sender address"):
            validator.validate(sender, 1)

    def test_too_many_decimal_places(self, validator):
        with pytest.raises(ValidationError, match="too many decimal places"):
            validator.validate(new_address(), "0.123456789")

    def test_custom_address_validator(self):
        validator = RequestValidator(Decimal("0.1"), EXCHANGE_RATE, address_validator=lambda s: s == "ok")
        assert validator.validate("ok", 1).sender == "ok"
        with pytest.raises(ValidationError, match="Invalid sender address"):
            validator.validate("nope", 1)
