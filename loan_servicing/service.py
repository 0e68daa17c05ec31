"""
Loan Servicing Service Module

Entry point for the public operations: origination, payment registration,
reversal, lifecycle actions and the overdue batch. Every mutation of a loan
runs under that loan's lock and is committed with a version guard, retried
when another writer got there first.
"""

import threading
from contextlib import contextmanager
from datetime import date, datetime, timezone
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple
import uuid

from .allocation import AllocationResult, ReversalResult
from . import allocation
from .audit import AuditAction, AuditEntity, AuditSink, AuditTrail
from .config import LoanServicingConfig, SettingsConfigProvider, SystemConfigProvider, get_config
from .currency import Money, sum_money
from .exceptions import (
    ConcurrencyConflictError, InvalidTermsError, LoanNotFoundError, NoOpReversal,
    TransientConflictError, ValidationError
)
from .late_fees import LateFeePolicy, OverdueInfo, is_fee_eligible, overdue_info
from .lifecycle import CancelLoan, LifecycleAction, LoanLifecycle, MarkOverdue
from .loans import Loan, LoanStatus, LoanTerms
from .logging_config import get_logger, log_action, setup_logging_from_settings
from .overdue import BatchSummary, LoanOverdueOutcome, OverdueProcessor, assess_loan
from .payments import Payment, PaymentType
from .repository import LoanRepository
from .schedule import LoanQuote, quote_loan, schedule_for_terms
from .storage import StorageInterface, create_storage


logger = get_logger("loan_servicing.service")


@dataclass(frozen=True)
class LoanSummary:
    """Balances and payment progress of one loan"""
    loan_id: str
    status: LoanStatus
    principal: Money
    total_payable: Money
    remaining_capital: Money
    remaining_interest: Money
    outstanding_late_fees: Money
    capital_paid: Money
    interest_paid: Money
    late_fees_paid: Money
    total_paid: Money
    payment_count: int
    paid_installments: int
    installment_count: int
    progress_percentage: Decimal  # Share of principal repaid, 0-100


class LoanLocks:
    """One lock per loan id, kept only while some caller holds or waits on it"""

    def __init__(self):
        self._guard = threading.Lock()
        # loan id -> [lock, number of holders and waiters]
        self._locks: Dict[str, List[Any]] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, loan_id: str):
        with self._guard:
            entry = self._locks.setdefault(loan_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[loan_id]


# (result, payments to write) or None when the loan was not changed
Mutation = Callable[[Loan], Tuple[Any, Optional[List[Payment]]]]


class LoanServicingService:
    """
    Loan servicing operations over a storage backend
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_sink: Optional[AuditSink] = None,
        config_provider: Optional[SystemConfigProvider] = None,
        settings: Optional[LoanServicingConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.settings = settings or get_config()
        self.repository = LoanRepository(storage)
        self.config_provider = config_provider or SettingsConfigProvider(self.settings)
        if audit_sink is None and self.settings.enable_audit_logging:
            audit_sink = AuditTrail(storage)
        self.audit_sink = audit_sink
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks = LoanLocks()

    @classmethod
    def from_config(cls, settings: Optional[LoanServicingConfig] = None, **kwargs) -> 'LoanServicingService':
        """Build a service on the storage named by ``database_url``, with logging configured"""
        settings = settings or get_config()
        setup_logging_from_settings(settings)
        return cls(create_storage(settings.database_url), settings=settings, **kwargs)

    def now(self) -> datetime:
        return self.clock()

    def today(self) -> date:
        return self.clock().date()

    # Origination

    def quote(self, terms: LoanTerms) -> LoanQuote:
        """Figures for a prospective loan, nothing is stored"""
        return quote_loan(terms)

    def create_loan_schedule(self, terms: LoanTerms, actor_id: str) -> Loan:
        """
        Originate a loan and persist its installment schedule

        Args:
            terms: Agreed loan terms
            actor_id: User creating the loan

        Returns:
            The new ACTIVE loan with its installments

        Raises:
            InvalidTermsError: If the terms cannot produce a schedule
        """
        if not isinstance(terms, LoanTerms):
            raise InvalidTermsError("Loan terms are required")
        if not terms.client_id:
            raise InvalidTermsError("Client id is required")

        now = self.now()
        loan_id = str(uuid.uuid4())
        installments = schedule_for_terms(terms, loan_id)

        loan = Loan(
            id=loan_id,
            created_at=now,
            updated_at=now,
            terms=terms,
            created_by=actor_id,
            installments=installments,
        )
        loan.refresh_balances()
        self.repository.commit(loan, expected_version=0, now=now)

        quote = quote_loan(terms, installments)
        self._audit(
            actor_id, AuditAction.CREATE_LOAN, AuditEntity.LOAN, loan.id,
            {
                "client_id": terms.client_id,
                "structure": terms.structure.value,
                "principal": terms.principal.to_string(),
                "installment_count": terms.installment_count,
                "frequency": terms.frequency.value,
                "total_finance_charge": quote.total_finance_charge.to_string(),
            }
        )
        log_action(
            logger, "info", f"Created loan {loan.id} for client {terms.client_id}",
            user_id=actor_id, action="create_loan", resource=f"loan:{loan.id}",
            extra={"principal": terms.principal.to_string(), "installments": terms.installment_count}
        )
        return loan

    # Payments

    def apply_payment(
        self,
        loan_id: str,
        amount: Money,
        actor_id: str,
        payment_date: Optional[date] = None,
        payment_type: PaymentType = PaymentType.REGULAR
    ) -> AllocationResult:
        """
        Register a payment and allocate it oldest installment first

        Raises:
            LoanNotFoundError: If the loan does not exist
            LoanNotPayable: If the loan is PAID or CANCELLED
            InvalidPaymentAmountError: If the amount is not positive
            OverpaymentNotAllowed: If the amount exceeds what may be collected
            TransientConflictError: If concurrent writers kept winning
        """
        payment_date = payment_date or self.today()
        policy = self.config_provider.get_late_fee_policy()

        def mutate(loan: Loan):
            result = allocation.apply_payment(
                loan, amount, payment_date, actor_id,
                payment_type=payment_type,
                reject_overpayment=self.settings.reject_overpayment,
                now=self.now(),
                policy=policy,
            )
            return result, [result.payment]

        result: AllocationResult = self._run_loan_transaction(loan_id, "apply_payment", mutate)
        payment = result.payment

        self._audit(
            actor_id, AuditAction.REGISTER_PAYMENT, AuditEntity.PAYMENT, payment.id,
            {
                "loan_id": loan_id,
                "amount": payment.amount.to_string(),
                "payment_type": payment.payment_type.value,
                "capital": payment.capital_applied.to_string(),
                "interest": payment.interest_applied.to_string(),
                "late_fee": payment.late_fee_applied.to_string(),
                "previous_status": result.previous_status.value,
                "new_status": result.new_loan_status.value,
                "remaining_capital": result.loan.remaining_capital.to_string(),
            }
        )
        log_action(
            logger, "info", f"Applied payment {payment.id} to loan {loan_id}",
            user_id=actor_id, action="apply_payment", resource=f"loan:{loan_id}",
            extra={
                "amount": payment.amount.to_string(),
                "installments": [line.installment_number for line in payment.lines],
                "status": result.new_loan_status.value,
            }
        )
        return result

    def reverse_payment(self, payment_id: str, actor_id: str, reason: str) -> ReversalResult:
        """
        Undo a payment's allocation lines exactly

        Raises:
            NoOpReversal: If the payment does not exist
            AlreadyReversed: If it was reversed before
            ReversalNotAllowed: If the loan is cancelled
        """
        if not reason or not reason.strip():
            raise ValidationError("A reversal reason is required")

        payment = self.repository.load_payment(payment_id)
        if payment is None:
            raise NoOpReversal(payment_id)

        def mutate(loan: Loan):
            # Re-read under the loan lock; another reversal may have landed
            current = self.repository.load_payment(payment_id)
            result = allocation.reverse_payment(loan, current, actor_id, reason, now=self.now())
            return result, [result.payment]

        result: ReversalResult = self._run_loan_transaction(payment.loan_id, "reverse_payment", mutate)

        self._audit(
            actor_id, AuditAction.REVERSE_PAYMENT, AuditEntity.PAYMENT, payment_id,
            {
                "loan_id": payment.loan_id,
                "amount": payment.amount.to_string(),
                "reason": reason,
                "previous_status": result.previous_status.value,
                "new_status": result.new_loan_status.value,
            }
        )
        log_action(
            logger, "info", f"Reversed payment {payment_id} on loan {payment.loan_id}",
            user_id=actor_id, action="reverse_payment", resource=f"payment:{payment_id}",
            extra={"reason": reason, "status": result.new_loan_status.value}
        )
        return result

    # Lifecycle

    def apply_action(self, loan_id: str, action: LifecycleAction, actor_id: str) -> Loan:
        """
        Resolve an operator lifecycle action

        Raises:
            LoanAlreadyTerminal: If the loan is PAID or CANCELLED
            LoanNotOverdue: For MarkOverdue when no installment is past grace
        """
        lifecycle = LoanLifecycle(self.config_provider.get_late_fee_policy())
        previous: Dict[str, Any] = {}

        def mutate(loan: Loan):
            before = loan.snapshot()
            previous['status'] = loan.status
            lifecycle.apply(loan, action, actor_id, self.now())
            previous['changed'] = loan.snapshot() != before
            return loan, ([] if previous['changed'] else None)

        loan: Loan = self._run_loan_transaction(loan_id, type(action).__name__, mutate)
        if not previous['changed']:
            logger.debug("%s left loan %s unchanged", type(action).__name__, loan_id)
            return loan

        if isinstance(action, CancelLoan):
            audit_action, verb = AuditAction.CANCEL_LOAN, "cancel_loan"
            metadata = {"reason": action.reason}
        else:
            audit_action, verb = AuditAction.MARK_OVERDUE, "mark_overdue"
            metadata = {"overdue_installments": [
                i.number for i in loan.unpaid_installments if i.overdue_since is not None
            ]}
        metadata.update({
            "previous_status": previous['status'].value,
            "new_status": loan.status.value,
            "remaining_capital": loan.remaining_capital.to_string(),
        })

        self._audit(actor_id, audit_action, AuditEntity.LOAN, loan_id, metadata)
        log_action(
            logger, "info", f"Loan {loan_id} {previous['status'].value} -> {loan.status.value}",
            user_id=actor_id, action=verb, resource=f"loan:{loan_id}"
        )
        return loan

    def cancel_loan(self, loan_id: str, actor_id: str, reason: Optional[str] = None) -> Loan:
        return self.apply_action(loan_id, CancelLoan(reason), actor_id)

    def mark_overdue(self, loan_id: str, actor_id: str, as_of: Optional[date] = None) -> Loan:
        return self.apply_action(loan_id, MarkOverdue(as_of), actor_id)

    # Overdue batch

    def process_overdue_loans(self, actor_id: str, as_of: Optional[date] = None) -> BatchSummary:
        """Run the overdue scan over every ACTIVE and OVERDUE loan"""
        return OverdueProcessor(self).run(actor_id, as_of)

    def assess_overdue(
        self,
        loan_id: str,
        actor_id: str,
        as_of: date,
        policy: Optional[LateFeePolicy] = None
    ) -> LoanOverdueOutcome:
        """Evaluate one loan for the overdue batch and commit any change"""
        policy = policy or self.config_provider.get_late_fee_policy()

        def mutate(loan: Loan):
            outcome = assess_loan(loan, as_of, policy)
            return outcome, ([] if outcome.changed else None)

        outcome: LoanOverdueOutcome = self._run_loan_transaction(loan_id, "assess_overdue", mutate)

        if outcome.fee_increase.is_positive():
            self._audit(
                actor_id, AuditAction.APPLY_LATE_FEE, AuditEntity.LOAN, loan_id,
                {"as_of": as_of.isoformat(), "amount": outcome.fee_increase.to_string()}
            )
        if outcome.became_overdue:
            self._audit(
                actor_id, AuditAction.MARK_OVERDUE, AuditEntity.LOAN, loan_id,
                {"as_of": as_of.isoformat(), "previous_status": LoanStatus.ACTIVE.value,
                 "new_status": LoanStatus.OVERDUE.value}
            )
        return outcome

    # Queries

    def get_loan(self, loan_id: str) -> Loan:
        loan = self.repository.load_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        return loan

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        return self.repository.load_payment(payment_id)

    def get_payments_by_loan(self, loan_id: str) -> List[Payment]:
        self.get_loan(loan_id)
        return self.repository.payments_for_loan(loan_id)

    def get_loan_summary(self, loan_id: str) -> LoanSummary:
        """Balances plus what has been collected, from installment amounts"""
        loan = self.get_loan(loan_id)
        currency = loan.currency
        installments = loan.installments

        capital_paid = sum_money((i.paid_capital for i in installments), currency)
        interest_paid = sum_money((i.paid_interest for i in installments), currency)
        fees_paid = sum_money((i.paid_late_fee for i in installments), currency)
        payments = [p for p in self.repository.payments_for_loan(loan_id) if not p.is_reversed]

        principal = loan.terms.principal
        progress = (capital_paid.amount / principal.amount * Decimal('100')).quantize(Decimal('0.01'))

        return LoanSummary(
            loan_id=loan.id,
            status=loan.status,
            principal=principal,
            total_payable=sum_money((i.scheduled_total for i in installments), currency),
            remaining_capital=loan.remaining_capital,
            remaining_interest=loan.remaining_interest,
            outstanding_late_fees=loan.outstanding_late_fees,
            capital_paid=capital_paid,
            interest_paid=interest_paid,
            late_fees_paid=fees_paid,
            total_paid=capital_paid + interest_paid + fees_paid,
            payment_count=len(payments),
            paid_installments=sum(1 for i in installments if i.is_settled),
            installment_count=len(installments),
            progress_percentage=progress,
        )

    def get_overdue_loans(self, as_of: Optional[date] = None) -> List[Tuple[Loan, OverdueInfo]]:
        """Non-terminal loans with installments past grace, most days overdue first"""
        as_of = as_of or self.today()
        policy = self.config_provider.get_late_fee_policy()

        results = []
        for loan in self.repository.list_loans({LoanStatus.ACTIVE, LoanStatus.OVERDUE}):
            if not any(is_fee_eligible(i, as_of, policy) for i in loan.unpaid_installments):
                continue
            results.append((loan, overdue_info(loan.unpaid_installments, as_of, policy, loan.currency)))

        results.sort(key=lambda pair: (-pair[1].days_overdue, pair[0].id))
        return results

    # Internals

    def _run_loan_transaction(self, loan_id: str, operation: str, mutate: Mutation):
        """
        Load, mutate and commit one loan under its lock

        The mutation runs on a freshly loaded aggregate each attempt. Errors it
        raises propagate with nothing written.
        """
        attempts = self.settings.max_conflict_retries + 1

        with self._locks.hold(loan_id):
            for attempt in range(1, attempts + 1):
                loan = self.repository.load_loan(loan_id)
                if loan is None:
                    raise LoanNotFoundError(loan_id)

                expected_version = loan.version
                result, payments = mutate(loan)
                if payments is None:
                    return result

                try:
                    self.repository.commit(loan, expected_version, payments, now=self.now())
                    return result
                except ConcurrencyConflictError as e:
                    logger.warning(
                        "Version conflict on loan %s during %s (attempt %d/%d): %s",
                        loan_id, operation, attempt, attempts, e
                    )

        raise TransientConflictError(loan_id, attempts)

    def _audit(
        self,
        actor_id: str,
        action: AuditAction,
        entity_type: AuditEntity,
        entity_id: str,
        metadata: Dict[str, Any]
    ) -> None:
        """Report to the audit sink; sink failures never undo a committed operation"""
        if self.audit_sink is None:
            return
        try:
            self.audit_sink.record(actor_id, action, entity_type, entity_id, metadata)
        except Exception:
            logger.exception(
                "Audit sink failed recording %s for %s %s", action.value, entity_type.value, entity_id
            )
