"""
Allocation Engine Module

Applies a payment across a loan's unpaid installments, oldest first, and
within each installment to late fee, then interest, then capital. All
arithmetic runs on integer minor units.

Reversal subtracts exactly the amounts recorded on the reversed payment's
allocation lines, so allocations made by other payments are never touched.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import List, Optional
import uuid

from .currency import Money, sum_money
from .exceptions import (
    AllocationError, AlreadyReversed, InvalidPaymentAmountError, LoanNotPayable,
    OverpaymentNotAllowed, ReversalNotAllowed
)
from .late_fees import LateFeePolicy
from .lifecycle import (
    can_apply_payment, flag_overdue_installments, status_after_allocation,
    status_after_reversal, transition
)
from .loans import Installment, Loan, LoanStatus
from .payments import AllocationLine, Payment, PaymentType, ReversalState


# Payment types that exist to pay ahead, exempt from the overpayment rejection
PREPAYMENT_TYPES = (PaymentType.ADVANCE, PaymentType.CAPITAL_PAYMENT, PaymentType.FULL_SETTLEMENT)


@dataclass
class AllocationResult:
    """Outcome of applying one payment"""
    payment: Payment
    loan: Loan
    previous_status: LoanStatus
    new_loan_status: LoanStatus

    @property
    def lines(self) -> List[AllocationLine]:
        return self.payment.lines

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.new_loan_status


@dataclass
class ReversalResult:
    """Outcome of reversing one payment"""
    payment: Payment
    loan: Loan
    previous_status: LoanStatus
    new_loan_status: LoanStatus

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.new_loan_status


def amount_due(loan: Loan, as_of: date) -> Money:
    """
    What a regular payment on ``as_of`` may cover: everything already due
    plus the next upcoming installment
    """
    unpaid = loan.unpaid_installments
    due = [i for i in unpaid if i.due_date <= as_of]
    upcoming = [i for i in unpaid if i.due_date > as_of][:1]
    return sum_money((i.outstanding_total for i in due + upcoming), loan.currency)


def _validate_amount(loan: Loan, amount: Money) -> None:
    if not isinstance(amount, Money):
        raise InvalidPaymentAmountError("Payment amount must be a Money amount")
    if amount.currency != loan.currency:
        raise InvalidPaymentAmountError(
            f"Payment currency {amount.currency.code} does not match loan currency {loan.currency.code}"
        )
    if not amount.is_positive():
        raise InvalidPaymentAmountError("Payment amount must be greater than zero")


def _allocate_to(installment: Installment, remaining: int) -> AllocationLine:
    """Take up to ``remaining`` units for one installment: fee, interest, capital"""
    currency = installment.currency

    late_fee = min(remaining, installment.outstanding_late_fee.minor_units)
    remaining -= late_fee
    interest = min(remaining, installment.outstanding_interest.minor_units)
    remaining -= interest
    capital = min(remaining, installment.outstanding_capital.minor_units)

    return AllocationLine(
        installment_number=installment.number,
        late_fee=Money.from_minor_units(late_fee, currency),
        interest=Money.from_minor_units(interest, currency),
        capital=Money.from_minor_units(capital, currency),
    )


def apply_payment(
    loan: Loan,
    amount: Money,
    payment_date: date,
    actor_id: str,
    payment_type: PaymentType = PaymentType.REGULAR,
    reject_overpayment: bool = False,
    now: Optional[datetime] = None,
    policy: Optional[LateFeePolicy] = None
) -> AllocationResult:
    """
    Allocate a payment against the loan, mutating loan and installments in memory

    Args:
        loan: Loan aggregate with its installments
        amount: Payment amount
        payment_date: Date the cash was received
        actor_id: User registering the payment
        payment_type: Payment type
        reject_overpayment: Reject regular payments above the amount due
        now: Timestamp for the payment record
        policy: Late-fee policy; when given, installments that went past grace
            since the last overdue run keep an OVERDUE loan OVERDUE

    Returns:
        AllocationResult with the new payment record and loan status

    Raises:
        LoanNotPayable: If the loan is PAID or CANCELLED
        InvalidPaymentAmountError: If the amount is not positive or wrong currency
        OverpaymentNotAllowed: If the amount cannot be fully allocated
    """
    if not can_apply_payment(loan.status):
        raise LoanNotPayable(loan.id, loan.status.value)
    _validate_amount(loan, amount)

    loan.refresh_balances()
    outstanding = loan.total_outstanding
    if amount > outstanding:
        raise OverpaymentNotAllowed(loan.id, amount.to_string(), outstanding.to_string())
    if payment_type == PaymentType.FULL_SETTLEMENT and amount != outstanding:
        raise InvalidPaymentAmountError(
            f"Full settlement must equal the outstanding balance {outstanding.to_string()}"
        )
    if reject_overpayment and payment_type not in PREPAYMENT_TYPES:
        due = amount_due(loan, payment_date)
        if amount > due:
            raise OverpaymentNotAllowed(loan.id, amount.to_string(), due.to_string())

    remaining = amount.minor_units
    lines: List[AllocationLine] = []

    for installment in loan.unpaid_installments:
        if remaining == 0:
            break
        line = _allocate_to(installment, remaining)
        units = line.total.minor_units
        if units == 0:
            continue
        remaining -= units

        installment.paid_late_fee = installment.paid_late_fee + line.late_fee
        installment.paid_interest = installment.paid_interest + line.interest
        installment.paid_capital = installment.paid_capital + line.capital
        installment.refresh_status()
        lines.append(line)

    if remaining:
        # amount <= outstanding, so every unit must land somewhere
        raise AllocationError(loan.id, Money.from_minor_units(remaining, loan.currency).to_string())

    loan.refresh_balances()
    if policy is not None and loan.status == LoanStatus.OVERDUE:
        flag_overdue_installments(loan, payment_date, policy)
    previous_status = loan.status
    transition(loan, status_after_allocation(loan))

    now = now or datetime.now(timezone.utc)
    payment = Payment(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        loan_id=loan.id,
        amount=amount,
        payment_type=payment_type,
        created_by=actor_id,
        payment_date=payment_date,
        lines=lines,
    )

    return AllocationResult(
        payment=payment,
        loan=loan,
        previous_status=previous_status,
        new_loan_status=loan.status,
    )


def reverse_payment(
    loan: Loan,
    payment: Payment,
    actor_id: str,
    reason: str,
    now: Optional[datetime] = None
) -> ReversalResult:
    """
    Undo one payment's allocation lines, mutating loan, installments and payment in memory

    Raises:
        AlreadyReversed: If the payment was reversed before
        ReversalNotAllowed: If the loan is cancelled or the lines no longer fit
    """
    if payment.is_reversed:
        raise AlreadyReversed(payment.id)
    if payment.loan_id != loan.id:
        raise ReversalNotAllowed(payment.id, f"payment belongs to loan {payment.loan_id}")
    if loan.status == LoanStatus.CANCELLED:
        raise ReversalNotAllowed(payment.id, "loan is cancelled")

    # Check every line before touching anything
    for line in payment.lines:
        try:
            installment = loan.installment(line.installment_number)
        except KeyError:
            raise ReversalNotAllowed(payment.id, f"installment {line.installment_number} does not exist")
        if (line.late_fee > installment.paid_late_fee
                or line.interest > installment.paid_interest
                or line.capital > installment.paid_capital):
            raise ReversalNotAllowed(
                payment.id, f"installment {line.installment_number} no longer holds these amounts"
            )

    for line in payment.lines:
        installment = loan.installment(line.installment_number)
        installment.paid_late_fee = installment.paid_late_fee - line.late_fee
        installment.paid_interest = installment.paid_interest - line.interest
        installment.paid_capital = installment.paid_capital - line.capital
        installment.refresh_status()

    loan.refresh_balances()
    previous_status = loan.status
    transition(loan, status_after_reversal(loan))

    now = now or datetime.now(timezone.utc)
    payment.reversal_state = ReversalState.REVERSED
    payment.reversed_by = actor_id
    payment.reversal_reason = reason
    payment.reversed_at = now
    payment.updated_at = now

    return ReversalResult(
        payment=payment,
        loan=loan,
        previous_status=previous_status,
        new_loan_status=loan.status,
    )
