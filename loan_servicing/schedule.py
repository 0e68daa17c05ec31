"""
Schedule Generator Module

Builds the installment plan for a loan at origination. All splitting is done
in whole minor units so that installment components always reconcile exactly
with the principal and the finance charge.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date, timedelta
from dataclasses import dataclass
from typing import List, Optional, Union
import calendar

from .currency import Money, sum_money
from .exceptions import InvalidTermsError
from .loans import Installment, LoanStructure, LoanTerms, PaymentFrequency


RateOrCharge = Union[Decimal, Money, None]


@dataclass(frozen=True)
class LoanQuote:
    """Figures shown to a borrower before origination"""
    installment_count: int
    installment_amount: Money       # First installment total, the estimated installment
    total_finance_charge: Money
    total_payable: Money
    effective_rate_per_term: Decimal  # Finance charge as a percent of principal


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def due_date_for(start_date: date, frequency: PaymentFrequency, number: int) -> date:
    """Due date of installment ``number`` (1-indexed); nothing falls due on the start date"""
    if frequency == PaymentFrequency.DAILY:
        return start_date + timedelta(days=number)
    elif frequency == PaymentFrequency.WEEKLY:
        return start_date + timedelta(days=7 * number)
    elif frequency == PaymentFrequency.BIWEEKLY:
        return start_date + timedelta(days=14 * number)
    elif frequency == PaymentFrequency.MONTHLY:
        return add_months(start_date, number)
    else:
        raise InvalidTermsError(f"Unsupported payment frequency: {frequency}")


def _round_units(value: Decimal) -> int:
    return int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def _validate(principal: Money, installment_count: int) -> None:
    if not isinstance(principal, Money):
        raise InvalidTermsError("Principal must be a Money amount")
    if not principal.is_positive():
        raise InvalidTermsError("Principal must be greater than zero")
    if isinstance(installment_count, bool) or not isinstance(installment_count, int):
        raise InvalidTermsError("Installment count must be an integer")
    if installment_count <= 0:
        raise InvalidTermsError("Installment count must be greater than zero")


def _flat_rate_components(principal: Money, charge: RateOrCharge, count: int):
    if charge is None:
        raise InvalidTermsError("Flat rate loans require a total finance charge")
    if not isinstance(charge, Money):
        charge = Money(Decimal(str(charge)), principal.currency)
    if charge.currency != principal.currency:
        raise InvalidTermsError("Finance charge currency must match principal currency")
    if charge.is_negative():
        raise InvalidTermsError("Finance charge cannot be negative")

    return principal.split_evenly(count), charge.split_evenly(count)


def _french_components(principal: Money, annual_rate: RateOrCharge, count: int,
                       frequency: PaymentFrequency):
    if annual_rate is None:
        raise InvalidTermsError("French amortization requires an annual interest rate")
    if isinstance(annual_rate, Money):
        raise InvalidTermsError("Annual interest rate must be a rate, not an amount")
    annual_rate = Decimal(str(annual_rate))
    if annual_rate < 0:
        raise InvalidTermsError("Annual interest rate cannot be negative")

    currency = principal.currency
    periodic_rate = annual_rate / Decimal(frequency.periods_per_year)

    if periodic_rate == Decimal('0'):
        # No interest - simple division
        capitals = principal.split_evenly(count)
        return capitals, [Money.zero(currency) for _ in capitals]

    # Standard formula: P * [r(1+r)^n] / [(1+r)^n - 1]
    factor = (Decimal('1') + periodic_rate) ** count
    payment = Money(principal.amount * periodic_rate * factor / (factor - Decimal('1')), currency)

    balance = principal.minor_units
    payment_units = payment.minor_units
    capitals: List[Money] = []
    interests: List[Money] = []

    for number in range(1, count + 1):
        interest = _round_units(Decimal(balance) * periodic_rate)
        if number == count:
            # Final installment absorbs rounding drift
            capital = balance
        else:
            capital = min(max(payment_units - interest, 0), balance)
        balance -= capital

        capitals.append(Money.from_minor_units(capital, currency))
        interests.append(Money.from_minor_units(interest, currency))

    return capitals, interests


def generate_schedule(
    principal: Money,
    structure: LoanStructure,
    rate_or_charge: RateOrCharge,
    installment_count: int,
    frequency: PaymentFrequency,
    start_date: date,
    loan_id: str = ""
) -> List[Installment]:
    """
    Generate the installment schedule for a loan

    Args:
        principal: Amount lent
        structure: FRENCH_AMORTIZATION or FLAT_RATE
        rate_or_charge: Annual rate (French) or total finance charge (flat rate)
        installment_count: Number of installments
        frequency: Spacing between due dates
        start_date: Origination date; installment n falls due n periods later
        loan_id: Owning loan, stamped on every installment

    Returns:
        Installments ordered by sequence number

    Raises:
        InvalidTermsError: If the terms cannot produce a schedule
    """
    _validate(principal, installment_count)

    if structure == LoanStructure.FLAT_RATE:
        capitals, interests = _flat_rate_components(principal, rate_or_charge, installment_count)
    elif structure == LoanStructure.FRENCH_AMORTIZATION:
        capitals, interests = _french_components(principal, rate_or_charge, installment_count, frequency)
    else:
        raise InvalidTermsError(f"Unsupported loan structure: {structure}")

    return [
        Installment.scheduled(
            loan_id=loan_id,
            number=number,
            due_date=due_date_for(start_date, frequency, number),
            capital=capital,
            interest=interest,
        )
        for number, (capital, interest) in enumerate(zip(capitals, interests), start=1)
    ]


def schedule_for_terms(terms: LoanTerms, loan_id: str = "") -> List[Installment]:
    """Generate the schedule described by a LoanTerms record"""
    return generate_schedule(
        principal=terms.principal,
        structure=terms.structure,
        rate_or_charge=terms.rate_or_charge,
        installment_count=terms.installment_count,
        frequency=terms.frequency,
        start_date=terms.start_date,
        loan_id=loan_id,
    )


def quote_loan(terms: LoanTerms, schedule: Optional[List[Installment]] = None) -> LoanQuote:
    """Summarize a schedule the way it is presented before signing"""
    if schedule is None:
        schedule = schedule_for_terms(terms)
    currency = terms.currency
    finance_charge = sum_money((i.scheduled_interest for i in schedule), currency)
    effective_rate = (finance_charge.amount / terms.principal.amount * Decimal('100')).quantize(
        Decimal('0.01'), rounding=ROUND_HALF_UP
    )
    return LoanQuote(
        installment_count=len(schedule),
        installment_amount=schedule[0].scheduled_total,
        total_finance_charge=finance_charge,
        total_payable=terms.principal + finance_charge,
        effective_rate_per_term=effective_rate,
    )
