from decimal import ROUND_HALF_DOWN, ROUND_HALF_UP, Decimal
from typing import Union


def round_money(value: Union[Decimal, float, int, str]) -> Decimal:
    """
    Round monetary value to 2 decimal places using ROUND_HALF_UP.

    Examples:
        >>> round_money(10.125)
        Decimal('10.13')
        >>> round_money(10.124)
        Decimal('10.12')
        >>> round_money("10.115")
        Decimal('10.12')
    """
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    if value < 0:
        return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_DOWN)
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


# Largest difference still treated as "the same amount"
MONEY_TOLERANCE = Decimal("0.01")


def amounts_match(
    actual: Union[Decimal, float, int, str],
    expected: Union[Decimal, float, int, str],
    tolerance: Decimal = MONEY_TOLERANCE,
) -> bool:
    """
    True when two amounts differ by no more than tolerance.

    Examples:
        >>> amounts_match("30000", Decimal("30000.00"))
        True
        >>> amounts_match("29999.99", "30000")
        True
        >>> amounts_match("25000", "30000")
        False
    """
    return abs(Decimal(str(actual)) - Decimal(str(expected))) <= tolerance


def format_kes(amount: Union[Decimal, float, int, str]) -> str:
    """Format an amount for tenant-facing text, e.g. 'KES 10,000'."""
    value = round_money(amount)
    if value == value.to_integral_value():
        return f"KES {value:,.0f}"
    return f"KES {value:,.2f}"
