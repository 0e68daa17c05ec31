"""
Loan Repository Module

Maps loan aggregates and payments onto the storage port. A loan, its
installments and any payments touched by an operation are committed in one
``save_many`` call guarded by the loan's version.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Set

from .loans import Installment, Loan, LoanStatus
from .payments import Payment
from .storage import StorageInterface


LOANS_TABLE = "loans"
INSTALLMENTS_TABLE = "installments"
PAYMENTS_TABLE = "payments"


class LoanRepository:
    """Loads and commits loan aggregates"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def load_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(LOANS_TABLE, loan_id)
        if not data:
            return None
        rows = self.storage.find(INSTALLMENTS_TABLE, {"loan_id": loan_id})
        return Loan.from_dict(data, [Installment.from_dict(row) for row in rows])

    def list_loan_ids(self, statuses: Optional[Set[LoanStatus]] = None) -> List[str]:
        loans = self.storage.load_all(LOANS_TABLE)
        wanted = {s.value for s in statuses} if statuses else None
        return sorted(
            row['id'] for row in loans
            if wanted is None or row['status'] in wanted
        )

    def list_loans(self, statuses: Optional[Set[LoanStatus]] = None) -> List[Loan]:
        loans = []
        for loan_id in self.list_loan_ids(statuses):
            loan = self.load_loan(loan_id)
            if loan:
                loans.append(loan)
        return loans

    def load_payment(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(PAYMENTS_TABLE, payment_id)
        return Payment.from_dict(data) if data else None

    def payments_for_loan(self, loan_id: str) -> List[Payment]:
        """Payment history for a loan, oldest first"""
        rows = self.storage.find(PAYMENTS_TABLE, {"loan_id": loan_id})
        payments = [Payment.from_dict(row) for row in rows]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    def commit(
        self,
        loan: Loan,
        expected_version: int,
        payments: Iterable[Payment] = (),
        now: Optional[datetime] = None
    ) -> Loan:
        """
        Write the loan, all of its installments and the given payments atomically

        Raises:
            ConcurrencyConflictError: If the stored loan is no longer at ``expected_version``
        """
        loan.version = expected_version + 1
        if now:
            loan.updated_at = now

        writes = [(LOANS_TABLE, loan.id, loan.to_dict())]
        writes.extend(
            (INSTALLMENTS_TABLE, installment.id, installment.to_dict())
            for installment in loan.installments
        )
        writes.extend((PAYMENTS_TABLE, payment.id, payment.to_dict()) for payment in payments)

        self.storage.save_many(writes, {(LOANS_TABLE, loan.id): expected_version})
        return loan
