"""
Test suite for the loan servicing service

Covers the public operations end to end over InMemoryStorage: persistence,
all-or-nothing failures, optimistic-lock retries and audit reporting.
"""

import logging
import threading

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from loan_servicing.audit import AuditAction, AuditEntity, AuditSink, AuditTrail
from loan_servicing.config import LoanServicingConfig, StaticConfigProvider
from loan_servicing.currency import Money, Currency
from loan_servicing.exceptions import (
    AlreadyReversed, ConcurrencyConflictError, InvalidTermsError, LoanAlreadyTerminal,
    LoanNotFoundError, LoanNotOverdue, LoanNotPayable, NoOpReversal, OverpaymentNotAllowed,
    ReversalNotAllowed, TransientConflictError, ValidationError
)
from loan_servicing.late_fees import LateFeePolicy, LateFeeType
from loan_servicing.lifecycle import CancelLoan, MarkOverdue
from loan_servicing.loans import InstallmentStatus, LoanStatus, LoanStructure, LoanTerms, PaymentFrequency
from loan_servicing.payments import PaymentType, ReversalState
from loan_servicing.schemas import parse_action
from loan_servicing.service import LoanLocks, LoanServicingService
from loan_servicing.storage import InMemoryStorage


NOW = datetime(2024, 1, 8, 12, 0, tzinfo=timezone.utc)


def dop(amount: str) -> Money:
    return Money(Decimal(amount), Currency.DOP)


def flat_terms(client_id="client-1") -> LoanTerms:
    return LoanTerms(
        client_id=client_id,
        principal=dop('1000'),
        structure=LoanStructure.FLAT_RATE,
        installment_count=4,
        frequency=PaymentFrequency.WEEKLY,
        start_date=date(2024, 1, 1),
        total_finance_charge=dop('200'),
    )


class RecordingSink(AuditSink):
    def __init__(self):
        self.records = []

    def record(self, actor_id, action, entity_type, entity_id, metadata=None):
        self.records.append((actor_id, action, entity_type, entity_id, metadata))


class FailingSink(AuditSink):
    def record(self, actor_id, action, entity_type, entity_id, metadata=None):
        raise RuntimeError("audit store unavailable")


class ContendedStorage(InMemoryStorage):
    """Simulates another writer committing the loan right before us"""

    def __init__(self, conflicts: int):
        super().__init__()
        self.conflicts = conflicts

    def save_many(self, writes, expected_versions=None):
        if self.conflicts and any(table == "payments" for table, _, _ in writes):
            self.conflicts -= 1
            for (table, record_id) in (expected_versions or {}):
                row = self.load(table, record_id)
                row['version'] += 1
                self.save(table, record_id, row)
        super().save_many(writes, expected_versions)


@pytest.fixture
def settings():
    return LoanServicingConfig(max_conflict_retries=2, batch_max_workers=4)


@pytest.fixture
def policy():
    return LateFeePolicy(LateFeeType.PERCENTAGE_DAILY, Decimal('0.01'))


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def service(storage, sink, policy, settings):
    return LoanServicingService(
        storage,
        audit_sink=sink,
        config_provider=StaticConfigProvider(policy),
        settings=settings,
        clock=lambda: NOW,
    )


class TestCreateLoan:

    def test_loan_and_schedule_are_persisted(self, service, storage, sink):
        loan = service.create_loan_schedule(flat_terms(), "officer-1")

        stored = service.get_loan(loan.id)
        assert stored.status == LoanStatus.ACTIVE
        assert stored.version == 1
        assert stored.created_by == "officer-1"
        assert stored.remaining_capital == dop('1000')
        assert stored.remaining_interest == dop('200')
        assert [i.scheduled_total for i in stored.ordered_installments] == [dop('300')] * 4
        assert storage.count("installments") == 4

        actor, action, entity_type, entity_id, metadata = sink.records[-1]
        assert (actor, action, entity_type, entity_id) == (
            "officer-1", AuditAction.CREATE_LOAN, AuditEntity.LOAN, loan.id
        )
        assert metadata["total_finance_charge"] == "DOP 200.00"

    def test_invalid_terms_store_nothing(self, service, storage, sink):
        terms = flat_terms()
        terms.installment_count = 0

        with pytest.raises(InvalidTermsError):
            service.create_loan_schedule(terms, "officer-1")
        assert storage.count("loans") == 0
        assert sink.records == []

    def test_client_required(self, service):
        with pytest.raises(InvalidTermsError):
            service.create_loan_schedule(flat_terms(client_id=""), "officer-1")

    def test_quote(self, service):
        assert service.quote(flat_terms()).installment_amount == dop('300')


class TestApplyPayment:

    def test_payment_is_committed(self, service, storage):
        loan = service.create_loan_schedule(flat_terms(), "officer-1")

        result = service.apply_payment(loan.id, dop('450'), "cashier-1")

        stored = service.get_loan(loan.id)
        assert stored.version == 2
        assert stored.remaining_capital == dop('650')
        assert stored.installment(1).status == InstallmentStatus.PAID
        assert stored.installment(2).status == InstallmentStatus.PARTIAL

        payment = service.get_payment(result.payment.id)
        assert payment.amount == dop('450')
        assert payment.payment_date == NOW.date()
        assert payment.lines == result.lines
        assert service.get_payments_by_loan(loan.id) == [payment]

    def test_unknown_loan(self, service):
        with pytest.raises(LoanNotFoundError):
            service.apply_payment("missing", dop('100'), "cashier-1")

    def test_cancelled_loan_is_not_mutated(self, service, storage):
        loan = service.create_loan_schedule(flat_terms(), "officer-1")
        service.cancel_loan(loan.id, "officer-1", reason="fraud")
        before = storage.load("loans", loan.id)
        installments_before = storage.find("installments", {"loan_id": loan.id})

        with pytest.raises(LoanNotPayable):
            service.apply_payment(loan.id, dop('100'), "cashier-1")

        assert storage.load("loans", loan.id) == before
        assert storage.find("installments", {"loan_id": loan.id}) == installments_before
        assert storage.count("payments") == 0

    def test_full_payment_then_reverse(self, service, sink):
        loan = service.create_loan_schedule(flat_terms(), "officer-1")
        result = service.apply_payment(loan.id, dop('1200'), "cashier-1",
                                       payment_type=PaymentType.FULL_SETTLEMENT)
        assert result.new_loan_status == LoanStatus.PAID

        reversal = service.reverse_payment(result.payment.id, "supervisor-1", "bounced check")

        assert reversal.new_loan_status == LoanStatus.ACTIVE
        stored = service.get_loan(loan.id)
        assert stored.status == LoanStatus.ACTIVE
        assert stored.remaining_capital == dop('1000')
        assert all(i.status == InstallmentStatus.PENDING for i in stored.installments)
        assert service.get_payment(result.payment.id).reversal_state == ReversalState.REVERSED

        actions = [record[1] for record in sink.records]
        assert actions == [
            AuditAction.CREATE_LOAN, AuditAction.REGISTER_PAYMENT, AuditAction.REVERSE_PAYMENT
        ]

    def test_reject_overpayment_setting(self, storage, policy):
        service = LoanServicingService(
            storage,
            config_provider=StaticConfigProvider(policy),
            settings=LoanServicingConfig(reject_overpayment=True, enable_audit_logging=False),
            clock=lambda: NOW,
        )
        loan = service.create_loan_schedule(flat_terms(), "officer-1")

        with pytest.raises(OverpaymentNotAllowed):
            service.apply_payment(loan.id, dop('601'), "cashier-1")
        service.apply_payment(loan.id, dop('601'), "cashier-1", payment_type=PaymentType.ADVANCE)


class TestReversePayment:

    def test_unknown_payment(self, service):
        with pytest.raises(NoOpReversal):
            service.reverse_payment("missing", "supervisor-1", "error")

    def test_reason_required(self, service):
        with pytest.raises(ValidationError):
            service.reverse_payment("anything", "supervisor-1", "  ")

    def test_twice(self, service):
        loan = service.create_loan_schedule(flat_terms(), "officer-1")
        result = service.apply_payment(loan.id, dop('300'), "cashier-1")
        service.reverse_payment(result.payment.id, "supervisor-1", "error")

        with pytest.raises(AlreadyReversed):
            service.reverse_payment(result.payment.id, "supervisor-1", "error")
        assert service.get_loan(loan.id).version == 3

    def test_cancelled_loan(self, service):
        loan = service.create_loan_schedule(flat_terms(), "officer-1")
        result = service.apply_payment(loan.id, dop('300'), "cashier-1")
        service.cancel_loan(loan.id, "officer-1")

        with pytest.raises(ReversalNotAllowed):
            service.reverse_payment(result.payment.id, "supervisor-1", "error")
        assert service.get_payment(result.payment.id).reversal_state == ReversalState.ACTIVE


class TestLifecycleActions:

    def test_cancel(self, service, sink):
        loan = service.create_loan_schedule(flat_terms(), "officer-1")

        cancelled = service.cancel_loan(loan.id, "officer-2", reason="client withdrew")

        assert cancelled.status == LoanStatus.CANCELLED
        stored = service.get_loan(loan.id)
        assert stored.cancelled_by == "officer-2"
        assert stored.cancelled_at == NOW
        assert stored.cancellation_reason == "client withdrew"
        assert sink.records[-1][1] == AuditAction.CANCEL_LOAN
        assert sink.records[-1][4]["previous_status"] == "ACTIVE"

        with pytest.raises(LoanAlreadyTerminal):
            service.cancel_loan(loan.id, "officer-2")

    def test_mark_overdue(self, service):
        loan = service.create_loan_schedule(flat_terms(), "officer-1")

        with pytest.raises(LoanNotOverdue):
            service.mark_overdue(loan.id, "officer-2", as_of=date(2024, 1, 8))

        marked = service.mark_overdue(loan.id, "officer-2", as_of=date(2024, 1, 10))
        assert marked.status == LoanStatus.OVERDUE
        assert service.get_loan(loan.id).installment(1).overdue_since == date(2024, 1, 10)

    def test_apply_action_from_payload(self, service):
        loan = service.create_loan_schedule(flat_terms(), "officer-1")

        action = parse_action({"action": "cancel", "reason": "duplicate"})
        assert action == CancelLoan(reason="duplicate")

        loan = service.apply_action(loan.id, action, "officer-2")
        assert loan.status == LoanStatus.CANCELLED

    def test_apply_action_mark_overdue(self, service):
        loan = service.create_loan_schedule(flat_terms(), "officer-1")
        loan = service.apply_action(loan.id, MarkOverdue(date(2024, 1, 20)), "officer-2")
        assert loan.status == LoanStatus.OVERDUE


class TestQueries:

    def test_loan_summary(self, service):
        loan = service.create_loan_schedule(flat_terms(), "officer-1")
        service.apply_payment(loan.id, dop('450'), "cashier-1")
        reversed_payment = service.apply_payment(loan.id, dop('10'), "cashier-1")
        service.reverse_payment(reversed_payment.payment.id, "supervisor-1", "typo")

        summary = service.get_loan_summary(loan.id)

        assert summary.principal == dop('1000')
        assert summary.total_payable == dop('1200')
        assert summary.capital_paid == dop('350')
        assert summary.interest_paid == dop('100')
        assert summary.late_fees_paid == dop('0')
        assert summary.total_paid == dop('450')
        assert summary.remaining_capital == dop('650')
        assert summary.payment_count == 1
        assert summary.paid_installments == 1
        assert summary.installment_count == 4
        assert summary.progress_percentage == Decimal('35.00')

    def test_get_loan_missing(self, service):
        with pytest.raises(LoanNotFoundError):
            service.get_loan("missing")
        assert service.get_payment("missing") is None

    def test_overdue_loans(self, service):
        early = service.create_loan_schedule(flat_terms("client-1"), "officer-1")
        current = service.create_loan_schedule(flat_terms("client-2"), "officer-1")
        service.apply_payment(current.id, dop('600'), "cashier-1")
        cancelled = service.create_loan_schedule(flat_terms("client-3"), "officer-1")
        service.cancel_loan(cancelled.id, "officer-1")

        overdue = service.get_overdue_loans(as_of=date(2024, 1, 20))

        assert [loan.id for loan, _ in overdue] == [early.id]
        info = overdue[0][1]
        assert info.days_overdue == 12
        assert info.overdue_installments == 2
        assert info.overdue_amount == dop('600')
        assert info.late_fee == dop('51.00')


class TestConcurrency:

    def test_conflict_is_retried(self, sink, policy, settings):
        storage = ContendedStorage(conflicts=1)
        service = LoanServicingService(
            storage, audit_sink=sink, config_provider=StaticConfigProvider(policy),
            settings=settings, clock=lambda: NOW,
        )
        loan = service.create_loan_schedule(flat_terms(), "officer-1")

        service.apply_payment(loan.id, dop('300'), "cashier-1")

        stored = service.get_loan(loan.id)
        assert stored.remaining_capital == dop('750')
        assert storage.count("payments") == 1
        # Created at 1, bumped by the other writer to 2, our commit makes 3
        assert stored.version == 3

    def test_retries_exhausted(self, sink, policy, settings):
        storage = ContendedStorage(conflicts=10)
        service = LoanServicingService(
            storage, audit_sink=sink, config_provider=StaticConfigProvider(policy),
            settings=settings, clock=lambda: NOW,
        )
        loan = service.create_loan_schedule(flat_terms(), "officer-1")

        with pytest.raises(TransientConflictError) as exc_info:
            service.apply_payment(loan.id, dop('300'), "cashier-1")

        assert exc_info.value.attempts == settings.max_conflict_retries + 1
        assert storage.count("payments") == 0
        assert service.get_loan(loan.id).remaining_capital == dop('1000')

    def test_conflict_error_from_storage(self, storage):
        storage.save_many([("loans", "x", {"id": "x", "version": 1})], {("loans", "x"): 0})
        with pytest.raises(ConcurrencyConflictError):
            storage.save_many([("loans", "x", {"id": "x", "version": 2})], {("loans", "x"): 0})

    def test_parallel_payments_on_one_loan(self, service, storage):
        loan = service.create_loan_schedule(flat_terms(), "officer-1")
        errors = []

        def worker():
            try:
                service.apply_payment(loan.id, dop('300'), "cashier-1")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        stored = service.get_loan(loan.id)
        assert stored.status == LoanStatus.PAID
        assert stored.version == 5
        assert storage.count("payments") == 4


class TestAuditing:

    def test_sink_failure_does_not_undo_operation(self, storage, policy, settings, caplog):
        service = LoanServicingService(
            storage, audit_sink=FailingSink(), config_provider=StaticConfigProvider(policy),
            settings=settings, clock=lambda: NOW,
        )

        with caplog.at_level(logging.ERROR, logger="loan_servicing.service"):
            loan = service.create_loan_schedule(flat_terms(), "officer-1")

        assert service.get_loan(loan.id).status == LoanStatus.ACTIVE
        assert any("Audit sink failed" in r.getMessage() for r in caplog.records)

    def test_default_audit_trail(self, storage, policy, settings):
        service = LoanServicingService(
            storage, config_provider=StaticConfigProvider(policy), settings=settings, clock=lambda: NOW,
        )
        assert isinstance(service.audit_sink, AuditTrail)

        loan = service.create_loan_schedule(flat_terms(), "officer-1")
        result = service.apply_payment(loan.id, dop('100'), "cashier-1")

        events = service.audit_sink.get_events_for_entity(AuditEntity.PAYMENT, result.payment.id)
        assert [e.action for e in events] == [AuditAction.REGISTER_PAYMENT]
        assert events[0].metadata["amount"] == "DOP 100.00"
        assert service.audit_sink.verify_integrity()


class TestFromConfig:

    def test_builds_sqlite_backed_service(self, tmp_path, policy):
        settings = LoanServicingConfig(database_url=f"sqlite:///{tmp_path / 'loans.db'}", log_format="text")
        package_logger = logging.getLogger("loan_servicing")
        try:
            service = LoanServicingService.from_config(
                settings, config_provider=StaticConfigProvider(policy), clock=lambda: NOW
            )
            loan = service.create_loan_schedule(flat_terms(), "officer-1")

            assert service.get_loan(loan.id).status == LoanStatus.ACTIVE
            assert len(package_logger.handlers) == 1
            service.storage.close()
        finally:
            for handler in list(package_logger.handlers):
                package_logger.removeHandler(handler)
            package_logger.propagate = True
            package_logger.setLevel(logging.NOTSET)


class TestLoanLocks:

    def test_locks_are_released_after_use(self, service):
        loan = service.create_loan_schedule(flat_terms(), "officer-1")
        service.apply_payment(loan.id, dop('300'), "cashier-1")
        service.mark_overdue(loan.id, "officer-2", as_of=date(2024, 1, 20))

        assert len(service._locks) == 0

    def test_waiter_keeps_lock_alive(self):
        locks = LoanLocks()
        entered = threading.Event()
        release = threading.Event()
        order = []

        def first():
            with locks.hold("loan-1"):
                entered.set()
                release.wait(timeout=5)
                order.append("first")

        def second():
            with locks.hold("loan-1"):
                order.append("second")

        t1 = threading.Thread(target=first)
        t1.start()
        entered.wait(timeout=5)
        t2 = threading.Thread(target=second)
        t2.start()
        release.set()
        t1.join()
        t2.join()

        assert order == ["first", "second"]
        assert len(locks) == 0

    def test_lock_released_when_body_raises(self):
        locks = LoanLocks()
        with pytest.raises(RuntimeError):
            with locks.hold("loan-1"):
                raise RuntimeError("boom")
        assert len(locks) == 0


class TestNoOpActions:

    def test_repeated_mark_overdue_does_not_commit(self, service, sink):
        loan = service.create_loan_schedule(flat_terms(), "officer-1")
        service.mark_overdue(loan.id, "officer-2", as_of=date(2024, 1, 10))
        version = service.get_loan(loan.id).version
        audited = len(sink.records)

        again = service.mark_overdue(loan.id, "officer-2", as_of=date(2024, 1, 11))

        assert again.status == LoanStatus.OVERDUE
        assert service.get_loan(loan.id).version == version
        assert len(sink.records) == audited

    def test_newly_late_installment_is_committed(self, service):
        loan = service.create_loan_schedule(flat_terms(), "officer-1")
        service.mark_overdue(loan.id, "officer-2", as_of=date(2024, 1, 10))
        version = service.get_loan(loan.id).version

        service.mark_overdue(loan.id, "officer-2", as_of=date(2024, 1, 20))

        stored = service.get_loan(loan.id)
        assert stored.version == version + 1
        assert stored.installment(2).overdue_since == date(2024, 1, 20)
