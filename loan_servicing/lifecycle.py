"""
Loan Lifecycle Module

State machine for loan status. Operator actions arrive as tagged request
variants (CancelLoan, MarkOverdue) and are resolved here; allocation and
reversal ask the machine for the status that follows from installment state.
"""

from datetime import date, datetime
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Union

from .exceptions import InvalidTransitionError, LoanAlreadyTerminal, LoanNotOverdue
from .late_fees import LateFeePolicy, is_fee_eligible
from .loans import Installment, Loan, LoanStatus


TRANSITIONS: Dict[LoanStatus, Set[LoanStatus]] = {
    LoanStatus.ACTIVE: {LoanStatus.PAID, LoanStatus.CANCELLED, LoanStatus.OVERDUE},
    LoanStatus.OVERDUE: {LoanStatus.ACTIVE, LoanStatus.PAID, LoanStatus.CANCELLED},
    LoanStatus.PAID: {LoanStatus.ACTIVE},  # Reversal only
    LoanStatus.CANCELLED: set(),
}


@dataclass(frozen=True)
class CancelLoan:
    """Operator cancels the loan; payments already applied stay applied"""
    reason: Optional[str] = None


@dataclass(frozen=True)
class MarkOverdue:
    """Operator flags the loan overdue; as_of defaults to today"""
    as_of: Optional[date] = None


LifecycleAction = Union[CancelLoan, MarkOverdue]


def can_apply_payment(status: LoanStatus) -> bool:
    return status not in (LoanStatus.PAID, LoanStatus.CANCELLED)


def transition(loan: Loan, target: LoanStatus) -> bool:
    """
    Move the loan to ``target``

    Returns:
        True if the status changed, False if it already was ``target``

    Raises:
        InvalidTransitionError: If the machine does not allow the move
    """
    if loan.status == target:
        return False
    if target not in TRANSITIONS[loan.status]:
        raise InvalidTransitionError(loan.status.value, target.value)
    loan.status = target
    return True


def flag_overdue_installments(loan: Loan, as_of: date, policy: LateFeePolicy) -> List[Installment]:
    """
    Stamp overdue_since on every fee-eligible installment that is not stamped yet

    Returns:
        Fee-eligible installments (stamped now or earlier)
    """
    eligible = [i for i in loan.unpaid_installments if is_fee_eligible(i, as_of, policy)]
    for installment in eligible:
        if installment.overdue_since is None:
            installment.overdue_since = as_of
        installment.refresh_status()
    return eligible


def status_after_allocation(loan: Loan) -> LoanStatus:
    """Status implied by installment state once a payment has been applied"""
    if loan.all_installments_paid:
        return LoanStatus.PAID
    if loan.status == LoanStatus.OVERDUE and not loan.has_overdue_installments:
        return LoanStatus.ACTIVE
    return loan.status


def status_after_reversal(loan: Loan) -> LoanStatus:
    """Status implied by installment state once a payment has been undone"""
    if loan.status == LoanStatus.PAID and not loan.all_installments_paid:
        return LoanStatus.ACTIVE
    if loan.status == LoanStatus.OVERDUE and not loan.has_overdue_installments:
        return LoanStatus.ACTIVE
    return loan.status


class LoanLifecycle:
    """Resolves operator actions against a loan"""

    def __init__(self, policy: LateFeePolicy):
        self.policy = policy

    def apply(self, loan: Loan, action: LifecycleAction, actor_id: str, now: datetime) -> LoanStatus:
        """
        Resolve a lifecycle action, mutating the loan in memory

        Raises:
            LoanAlreadyTerminal: If the loan is PAID or CANCELLED
            LoanNotOverdue: For MarkOverdue when nothing is past grace
        """
        if isinstance(action, CancelLoan):
            return self.cancel(loan, actor_id, action.reason, now)
        elif isinstance(action, MarkOverdue):
            return self.mark_overdue(loan, action.as_of or now.date())
        else:
            raise TypeError(f"Unknown lifecycle action: {type(action).__name__}")

    def cancel(self, loan: Loan, actor_id: str, reason: Optional[str], now: datetime) -> LoanStatus:
        if loan.is_terminal:
            raise LoanAlreadyTerminal(loan.id, loan.status.value)
        transition(loan, LoanStatus.CANCELLED)
        loan.cancelled_by = actor_id
        loan.cancelled_at = now
        loan.cancellation_reason = reason
        return loan.status

    def mark_overdue(self, loan: Loan, as_of: date) -> LoanStatus:
        if loan.is_terminal:
            raise LoanAlreadyTerminal(loan.id, loan.status.value)
        if not flag_overdue_installments(loan, as_of, self.policy):
            raise LoanNotOverdue(loan.id)
        transition(loan, LoanStatus.OVERDUE)
        return loan.status
