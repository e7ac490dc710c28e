"""
Payroll Engine - Monetary Primitives

All money is held as integer paise (1/100 rupee). Rates are Decimals.
Every statutory line is rounded on its own with round-half-away-from-zero,
which is what Decimal's ROUND_HALF_UP does.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Union

Paise = int

PAISE_PER_RUPEE = 100
_ONE = Decimal("1")


def round_half_away(value: Union[Decimal, int]) -> Paise:
    """Round a Decimal to the nearest whole paisa, halves away from zero."""
    return int(Decimal(value).quantize(_ONE, rounding=ROUND_HALF_UP))


def apply_rate(amount: Paise, rate: Decimal) -> Paise:
    """``amount * rate`` rounded to a whole paisa."""
    return round_half_away(Decimal(amount) * rate)


def divide(amount: Union[Paise, Decimal], divisor: Union[int, Decimal]) -> Paise:
    """``amount / divisor`` rounded to a whole paisa."""
    if not divisor:
        raise ZeroDivisionError("divisor must be non-zero")
    return round_half_away(Decimal(amount) / Decimal(divisor))


def sum_paise(amounts: Iterable[Paise]) -> Paise:
    """Sum pre-rounded amounts. Never round after summing."""
    return sum(int(a) for a in amounts)


def rupees_to_paise(rupees: Union[Decimal, int, str]) -> Paise:
    """Convert a rupee amount (e.g. ``"1234.50"``) to paise."""
    return round_half_away(Decimal(str(rupees)) * PAISE_PER_RUPEE)


def paise_to_rupees(amount: Paise) -> Decimal:
    return (Decimal(amount) / PAISE_PER_RUPEE).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def format_rupees(amount: Paise) -> str:
    """Major-unit string with exactly two decimals, as filings require."""
    return f"{paise_to_rupees(amount):.2f}"
