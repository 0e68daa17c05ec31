"""
Overdue Processing Module

Batch scan of non-terminal loans: stamps installments past grace, sets their
late fee to the figure computed for the evaluation date, and flags loans
OVERDUE. Fees are set, never added, so a second run on the same date
changes nothing.

Loans are independent; the scan fans out over a bounded thread pool and each
worker returns its own outcome for the coordinator to fold into the summary.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional
import logging

from .currency import Money, Currency, sum_money
from .exceptions import LoanServicingError
from .late_fees import LateFeePolicy, compute_late_fee
from .lifecycle import flag_overdue_installments, transition
from .loans import Loan, LoanStatus

if TYPE_CHECKING:
    from .service import LoanServicingService


logger = logging.getLogger("loan_servicing.overdue")


@dataclass(frozen=True)
class FeeApplication:
    loan_id: str
    amount: Money


@dataclass(frozen=True)
class BatchFailure:
    loan_id: str
    code: str
    error: str


@dataclass(frozen=True)
class LoanOverdueOutcome:
    """Result of evaluating one loan"""
    loan_id: str
    fee_increase: Money
    became_overdue: bool
    changed: bool
    skipped: bool = False


@dataclass
class BatchSummary:
    """Result of one batch run"""
    as_of: date
    processed: int = 0
    newly_overdue: List[str] = field(default_factory=list)
    fees_applied: List[FeeApplication] = field(default_factory=list)
    failures: List[BatchFailure] = field(default_factory=list)

    def total_fees(self, currency: Currency) -> Money:
        return sum_money((fee.amount for fee in self.fees_applied), currency)


def assess_loan(loan: Loan, as_of: date, policy: LateFeePolicy) -> LoanOverdueOutcome:
    """
    Evaluate one loan for the given date, mutating it in memory

    Each fee-eligible installment's assessed fee becomes the fee computed for
    ``as_of``, but never less than what has already been collected on it.
    """
    if loan.is_terminal:
        return LoanOverdueOutcome(loan.id, Money.zero(loan.currency), False, False, skipped=True)

    before = loan.snapshot()
    increase = 0

    for installment in flag_overdue_installments(loan, as_of, policy):
        fee = compute_late_fee(installment, as_of, policy)
        assessed = max(fee, installment.paid_late_fee)
        increase += assessed.minor_units - installment.late_fee_assessed.minor_units
        installment.late_fee_assessed = assessed
        installment.refresh_status()

    loan.refresh_balances()

    became_overdue = False
    if loan.status == LoanStatus.ACTIVE and loan.has_overdue_installments:
        became_overdue = transition(loan, LoanStatus.OVERDUE)

    return LoanOverdueOutcome(
        loan_id=loan.id,
        fee_increase=Money.from_minor_units(max(increase, 0), loan.currency),
        became_overdue=became_overdue,
        changed=loan.snapshot() != before,
    )


class OverdueProcessor:
    """Runs the overdue scan across loans with bounded parallelism"""

    def __init__(self, service: 'LoanServicingService', max_workers: Optional[int] = None):
        self.service = service
        self.max_workers = max_workers or service.settings.batch_max_workers

    def run(self, actor_id: str, as_of: Optional[date] = None) -> BatchSummary:
        """
        Evaluate every ACTIVE and OVERDUE loan

        Args:
            actor_id: User or system account running the batch
            as_of: Evaluation date, defaults to today

        Returns:
            BatchSummary; per-loan failures are collected, not raised
        """
        as_of = as_of or self.service.today()
        policy = self.service.config_provider.get_late_fee_policy()
        loan_ids = self.service.repository.list_loan_ids({LoanStatus.ACTIVE, LoanStatus.OVERDUE})

        summary = BatchSummary(as_of=as_of)
        outcomes: List[LoanOverdueOutcome] = []

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {
                pool.submit(self.service.assess_overdue, loan_id, actor_id, as_of, policy): loan_id
                for loan_id in loan_ids
            }
            for future in as_completed(futures):
                loan_id = futures[future]
                try:
                    outcomes.append(future.result())
                except Exception as e:
                    # One bad loan must not stop the scan
                    logger.exception("Overdue processing failed for loan %s", loan_id)
                    code = e.code if isinstance(e, LoanServicingError) else type(e).__name__
                    summary.failures.append(BatchFailure(loan_id, code, str(e)))

        for outcome in sorted(outcomes, key=lambda o: o.loan_id):
            if outcome.skipped:
                continue
            summary.processed += 1
            if outcome.became_overdue:
                summary.newly_overdue.append(outcome.loan_id)
            if outcome.fee_increase.is_positive():
                summary.fees_applied.append(FeeApplication(outcome.loan_id, outcome.fee_increase))
        summary.failures.sort(key=lambda f: f.loan_id)

        logger.info(
            "Overdue run for %s: %d processed, %d newly overdue, %d fees, %d failures",
            as_of.isoformat(), summary.processed, len(summary.newly_overdue),
            len(summary.fees_applied), len(summary.failures)
        )
        return summary
