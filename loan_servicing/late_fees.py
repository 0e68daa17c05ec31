"""
Late Fee Module

Simple daily late fees on overdue installments. A fee is always recomputed
from scratch for an evaluation date, so evaluating the same date twice gives
the same figure.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date
from dataclasses import dataclass
from typing import Iterable, List
from enum import Enum

from .currency import Money, Currency, sum_money
from .exceptions import ValidationError
from .loans import Installment


class LateFeeType(Enum):
    PERCENTAGE_DAILY = "PERCENTAGE_DAILY"  # Fraction of the outstanding installment per day late


@dataclass(frozen=True)
class LateFeePolicy:
    """Active late fee policy"""
    type: LateFeeType
    value: Decimal           # e.g. Decimal('0.015') for 1.5% per day
    grace_period_days: int = 0

    def __post_init__(self):
        if not isinstance(self.value, Decimal):
            object.__setattr__(self, 'value', Decimal(str(self.value)))
        if self.value < 0:
            raise ValidationError("Late fee value cannot be negative")
        if self.grace_period_days < 0:
            raise ValidationError("Grace period cannot be negative")


@dataclass(frozen=True)
class OverdueInfo:
    """Overdue position of a loan on a given date"""
    days_overdue: int           # Days since the oldest overdue installment fell due
    overdue_installments: int
    overdue_amount: Money       # Outstanding capital + interest on those installments
    late_fee: Money             # Fees as computed for the evaluation date


def days_past_due(installment: Installment, as_of: date) -> int:
    return max(0, (as_of - installment.due_date).days)


def is_fee_eligible(installment: Installment, as_of: date, policy: LateFeePolicy) -> bool:
    """Unpaid and aged past the grace period"""
    if installment.outstanding_scheduled.is_zero():
        return False
    return days_past_due(installment, as_of) > policy.grace_period_days


def compute_late_fee(installment: Installment, as_of: date, policy: LateFeePolicy) -> Money:
    """
    Compute the accrued late fee for an installment

    Args:
        installment: Installment to evaluate
        as_of: Evaluation date
        policy: Active late fee policy

    Returns:
        Fee in the installment's currency, zero inside the grace period
    """
    currency = installment.currency
    if not is_fee_eligible(installment, as_of, policy):
        return Money.zero(currency)

    # Counted from the end of the grace period, not from the due date
    days_late = days_past_due(installment, as_of) - policy.grace_period_days

    if policy.type == LateFeeType.PERCENTAGE_DAILY:
        units = Decimal(installment.outstanding_scheduled.minor_units) * policy.value * days_late
        return Money.from_minor_units(
            int(units.quantize(Decimal('1'), rounding=ROUND_HALF_UP)), currency
        )
    raise ValidationError(f"Unsupported late fee type: {policy.type}")


def overdue_info(installments: Iterable[Installment], as_of: date,
                 policy: LateFeePolicy, currency: Currency) -> OverdueInfo:
    """Summarize the fee-eligible installments of a loan"""
    overdue: List[Installment] = sorted(
        (i for i in installments if is_fee_eligible(i, as_of, policy)),
        key=lambda i: i.number,
    )
    return OverdueInfo(
        days_overdue=days_past_due(overdue[0], as_of) if overdue else 0,
        overdue_installments=len(overdue),
        overdue_amount=sum_money((i.outstanding_scheduled for i in overdue), currency),
        late_fee=sum_money((compute_late_fee(i, as_of, policy) for i in overdue), currency),
    )
