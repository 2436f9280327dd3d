"""
SOL and payout amount arithmetic.

All amounts are handled as Decimal: JSON floats such as 0.1 are not exactly
representable, and float(0.1) * 1e8 = 9999999.999999998, not 10000000.
"""

from decimal import Decimal, InvalidOperation
from typing import Union

LAMPORTS_PER_SOL = Decimal("1000000000")

Number = Union[int, float, str, Decimal]


def to_decimal(value: Number) -> Decimal:
    """
    Convert a number to Decimal without float representation error.

    Floats go through str() first so 0.1 becomes Decimal("0.1").

    Raises:
        ValueError: if the value is not numeric
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"Not a number: {value!r}") from e


def lamports_to_sol(lamports: int) -> Decimal:
    """Convert lamports to SOL."""
    return Decimal(lamports) / LAMPORTS_PER_SOL


def payout_amount(sol_amount: Number, exchange_rate: int) -> int:
    """
    Compute the payout for a SOL amount, in payout base units.

    Examples:
        >>> payout_amount("1", 100_000_000)
        100000000
        >>> payout_amount(0.1, 100_000_000)
        10000000
        >>> payout_amount("0.12345678", 100_000_000)
        12345678

    Raises:
        ValueError: if the product is not a whole number of base units
    """
    units = to_decimal(sol_amount) * exchange_rate

    if units != units.to_integral_value():
        raise ValueError(f"SOL amount {sol_amount} results in fractional payout units: {units}")

    return int(units)


def format_sol(value: Decimal) -> str:
    """Render a SOL amount without exponent or trailing zeros (0.10 -> "0.1")."""
    return format(value.normalize(), "f")
