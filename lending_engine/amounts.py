"""
Monetary Amount Helpers

All amounts handled by the engine are Decimal. NEVER uses float for monetary
values; rounding to cents happens once, at the end of a computation.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any, Iterable
import re

from .exceptions import InvalidAmountError

# Set global decimal context for financial precision
getcontext().prec = 28

ZERO = Decimal('0')
CENT = Decimal('0.01')
HUNDRED = Decimal('100')

# Tolerance used when comparing component sums against totals
DEFAULT_TOLERANCE = Decimal('0.01')

# Whitespace, currency signs with an optional prefix ("RD$", "US$") and ISO codes
_CURRENCY_MARKS = re.compile(r'\s+|[A-Z]{0,3}[$€£¥]|^[A-Z]{3}|[A-Z]{3}$')
_AMOUNT_CHARS = re.compile(r'[+-]?[\d.,]+')


def to_decimal(value: Any) -> Decimal:
    """
    Coerce a value to Decimal without passing through float

    Args:
        value: Decimal, int, str or float

    Returns:
        Decimal value

    Raises:
        ValueError: If value cannot be represented as a finite Decimal
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Cannot convert {value!r} to Decimal")

    if not result.is_finite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    return result


def round_currency(value: Decimal) -> Decimal:
    """Round to 2 decimal places using half-up rounding"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def amounts_match(left: Decimal, right: Decimal, tolerance: Decimal = DEFAULT_TOLERANCE) -> bool:
    """Check whether two amounts agree within tolerance"""
    return abs(to_decimal(left) - to_decimal(right)) <= tolerance


def sum_amounts(values: Iterable[Decimal]) -> Decimal:
    """Sum Decimal amounts, starting from an exact zero"""
    return sum((to_decimal(v) for v in values), ZERO)


def to_money(value: Any) -> Decimal:
    """
    Coerce an incoming amount to Decimal cents

    Raises:
        InvalidAmountError: If value is not a finite number or carries
            precision below one cent
    """
    try:
        amount = to_decimal(value)
        cents = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except (ValueError, InvalidOperation):
        raise InvalidAmountError(f"Cannot use {value!r} as an amount")

    if cents != amount:
        raise InvalidAmountError(f"Amount {value!r} has more than 2 decimal places")
    return cents


def decimal_from_string(value: str) -> Decimal:
    """
    Parse a user-entered amount such as "RD$1,500.50", "1.500,50" or "1500,5"

    Currency symbols and whitespace are ignored. When both separators are
    present the last one is the decimal point.

    Args:
        value: String representation of number

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    clean_value = _CURRENCY_MARKS.sub('', value.strip())
    if not _AMOUNT_CHARS.fullmatch(clean_value):
        raise ValueError(f"Cannot convert '{value}' to Decimal")

    if ',' in clean_value and '.' in clean_value:
        if clean_value.rfind(',') > clean_value.rfind('.'):
            clean_value = clean_value.replace('.', '').replace(',', '.')
        else:
            clean_value = clean_value.replace(',', '')
    elif clean_value.count(',') == 1:
        whole, fraction = clean_value.split(',')
        if len(fraction) <= 2:
            clean_value = f"{whole}.{fraction}"
        else:
            clean_value = whole + fraction
    elif clean_value.count(',') > 1:
        clean_value = clean_value.replace(',', '')

    try:
        return to_decimal(clean_value)
    except ValueError:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
