"""
Late Fee Module

Fee policy configuration and the single late-fee formula used by every
caller. Days overdue are counted from an installment's due date, net of the
grace period; the fee base is the principal attributable to that installment,
never the loan's remaining balance.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union
from enum import Enum
import logging

from .amounts import ZERO, HUNDRED, to_decimal, round_currency
from .exceptions import FeePolicyError


logger = logging.getLogger("lending.fees")

DAYS_PER_FEE_MONTH = 30

DateLike = Union[date, datetime]


class CalculationMode(Enum):
    """How a late-fee rate is applied over time"""
    DAILY = "daily"          # base × rate × days
    MONTHLY = "monthly"      # base × rate × started 30-day months
    COMPOUND = "compound"    # base × ((1 + rate)^days − 1)


@dataclass(frozen=True)
class FeePolicy:
    """
    Immutable late-fee configuration for one loan.

    A disabled policy accrues nothing regardless of the other fields.
    A max_late_fee of zero means the fee is uncapped.
    """
    enabled: bool
    rate_per_period: Decimal            # Percentage, e.g. 2 for 2%
    grace_period_days: int = 0
    max_late_fee: Decimal = ZERO
    calculation_mode: CalculationMode = CalculationMode.DAILY

    def __post_init__(self):
        if not isinstance(self.enabled, bool):
            raise FeePolicyError(f"enabled must be a boolean, got {self.enabled!r}")

        for field_name in ('rate_per_period', 'max_late_fee'):
            raw = getattr(self, field_name)
            try:
                value = to_decimal(raw)
            except ValueError:
                raise FeePolicyError(f"{field_name} must be numeric, got {raw!r}")
            if value < ZERO:
                raise FeePolicyError(f"{field_name} cannot be negative, got {value}")
            object.__setattr__(self, field_name, value)

        if isinstance(self.grace_period_days, bool) or not isinstance(self.grace_period_days, int):
            raise FeePolicyError(f"grace_period_days must be an integer, got {self.grace_period_days!r}")
        if self.grace_period_days < 0:
            raise FeePolicyError(f"grace_period_days cannot be negative, got {self.grace_period_days}")

        if not isinstance(self.calculation_mode, CalculationMode):
            try:
                mode = CalculationMode(self.calculation_mode)
            except ValueError:
                raise FeePolicyError(f"Unknown late fee calculation mode: {self.calculation_mode!r}")
            object.__setattr__(self, 'calculation_mode', mode)

    @property
    def is_capped(self) -> bool:
        return self.max_late_fee > ZERO

    @classmethod
    def disabled(cls) -> 'FeePolicy':
        """Policy that never accrues a fee"""
        return cls(enabled=False, rate_per_period=ZERO)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'rate_per_period': str(self.rate_per_period),
            'grace_period_days': self.grace_period_days,
            'max_late_fee': str(self.max_late_fee),
            'calculation_mode': self.calculation_mode.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FeePolicy':
        missing = [key for key in ('enabled', 'rate_per_period') if key not in data]
        if missing:
            raise FeePolicyError(f"Fee policy is missing required fields: {', '.join(missing)}")
        return cls(
            enabled=data['enabled'],
            rate_per_period=data['rate_per_period'],
            grace_period_days=data.get('grace_period_days', 0),
            max_late_fee=data.get('max_late_fee', ZERO),
            calculation_mode=data.get('calculation_mode', CalculationMode.DAILY.value),
        )


@dataclass(frozen=True)
class LateFeeAccrual:
    """Result of a single late-fee calculation"""
    days_overdue: int
    fee_amount: Decimal


def _is_aware(value: DateLike) -> Optional[bool]:
    """None for a plain date, otherwise whether the datetime carries an offset"""
    if not isinstance(value, datetime):
        return None
    return value.utcoffset() is not None


def _calendar_date(value: DateLike) -> date:
    return value.date() if isinstance(value, datetime) else value


def elapsed_days(due_date: DateLike, as_of: DateLike) -> int:
    """
    Whole days from due_date to as_of, floored (negative when not yet due)
    """
    # Values that cannot be subtracted directly (a date with a datetime, or
    # naive with aware datetimes) are compared by calendar date
    if _is_aware(due_date) != _is_aware(as_of):
        due_date = _calendar_date(due_date)
        as_of = _calendar_date(as_of)
    # timedelta.days is already floored for partial and negative spans
    return (as_of - due_date).days


def days_overdue(policy: FeePolicy, due_date: DateLike, as_of: DateLike) -> int:
    """Days past due net of the grace period, never negative"""
    return max(0, elapsed_days(due_date, as_of) - policy.grace_period_days)


def accrue(policy: FeePolicy, principal_base: Decimal, due_date: DateLike, as_of: DateLike) -> LateFeeAccrual:
    """
    Calculate the late fee accrued on one principal base

    Args:
        policy: Fee policy of the loan
        principal_base: Principal attributable to the installment(s) evaluated
        due_date: Due date the delay is counted from
        as_of: Date of calculation

    Returns:
        LateFeeAccrual with days overdue and the fee rounded half-up to cents
    """
    if not policy.enabled:
        return LateFeeAccrual(days_overdue=0, fee_amount=ZERO)

    overdue = days_overdue(policy, due_date, as_of)
    base = to_decimal(principal_base)

    # Guard before any multiplication or exponentiation
    if overdue <= 0 or base <= ZERO or policy.rate_per_period == ZERO:
        return LateFeeAccrual(days_overdue=overdue, fee_amount=ZERO)

    rate = policy.rate_per_period / HUNDRED

    if policy.calculation_mode == CalculationMode.DAILY:
        fee = base * rate * overdue
    elif policy.calculation_mode == CalculationMode.MONTHLY:
        months_overdue = -(-overdue // DAYS_PER_FEE_MONTH)
        fee = base * rate * months_overdue
    elif policy.calculation_mode == CalculationMode.COMPOUND:
        fee = base * ((Decimal('1') + rate) ** overdue - Decimal('1'))
    else:
        raise FeePolicyError(f"Unsupported calculation mode: {policy.calculation_mode}")

    if policy.is_capped:
        fee = min(fee, policy.max_late_fee)

    return LateFeeAccrual(days_overdue=overdue, fee_amount=round_currency(fee))
