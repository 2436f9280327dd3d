"""
Validation of untrusted /pay input.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable

from .amounts import format_sol, payout_amount, to_decimal
from .config import is_valid_address
from .errors import ValidationError

INVALID_SENDER_OR_AMOUNT = "Invalid sender or amount"


@dataclass(frozen=True)
class DisbursementRequest:
    """A validated payout request."""

    sender: str  # Buyer's Solana address (base58)
    amount: Decimal  # SOL the buyer claims to have paid


class RequestValidator:
    """Turns raw {sender, amount} into a DisbursementRequest."""

    def __init__(
        self,
        min_purchase: Decimal,
        exchange_rate: int,
        address_validator: Callable[[str], bool] = is_valid_address,
    ):
        self.min_purchase = min_purchase
        self.exchange_rate = exchange_rate
        self.address_validator = address_validator

    def validate(self, raw_sender: Any, raw_amount: Any) -> DisbursementRequest:
        """
        Validate raw request fields.

        Numeric strings are accepted for amount; booleans are not.

        Raises:
            ValidationError: with a user-facing message
        """
        if not isinstance(raw_sender, str) or not raw_sender.strip():
            raise ValidationError(INVALID_SENDER_OR_AMOUNT)
        sender = raw_sender.strip()

        if raw_amount is None or not isinstance(raw_amount, (int, float, str, Decimal)):
            raise ValidationError(INVALID_SENDER_OR_AMOUNT)
        try:
            amount = to_decimal(raw_amount)
        except ValueError:
            raise ValidationError(INVALID_SENDER_OR_AMOUNT) from None
        if not amount.is_finite() or amount <= 0:
            raise ValidationError(INVALID_SENDER_OR_AMOUNT)

        if amount < self.min_purchase:
            raise ValidationError(f"Minimum purchase amount is {format_sol(self.min_purchase)} SOL")

        if not self.address_validator(sender):
            raise ValidationError("Invalid sender address")

        try:
            payout_amount(amount, self.exchange_rate)
        except ValueError:
            raise ValidationError("Amount has too many decimal places") from None

        return DisbursementRequest(sender=sender, amount=amount)
