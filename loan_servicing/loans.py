"""
Loan Module

Loan, installment and terms records, with their storage serialization.
Installments are owned by their loan; sequence number is the allocation order.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .currency import Money, Currency, sum_money
from .storage import StorageRecord


class LoanStructure(Enum):
    """How the finance charge accrues"""
    FRENCH_AMORTIZATION = "FRENCH_AMORTIZATION"  # Level payment, interest on declining balance
    FLAT_RATE = "FLAT_RATE"                      # Fixed total charge split evenly


class PaymentFrequency(Enum):
    """Payment frequency options"""
    DAILY = "DAILY"          # 365 payments per year
    WEEKLY = "WEEKLY"        # 52 payments per year
    BIWEEKLY = "BIWEEKLY"    # 26 payments per year
    MONTHLY = "MONTHLY"      # 12 payments per year

    @property
    def periods_per_year(self) -> int:
        return {
            PaymentFrequency.DAILY: 365,
            PaymentFrequency.WEEKLY: 52,
            PaymentFrequency.BIWEEKLY: 26,
            PaymentFrequency.MONTHLY: 12,
        }[self]


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    PAID = "PAID"            # Terminal, reopened only by reversal
    CANCELLED = "CANCELLED"  # Terminal


class InstallmentStatus(Enum):
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


def _money(data: Dict[str, Any], key: str, currency: Currency) -> Money:
    return Money(Decimal(data[key]), currency)


def _optional_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


@dataclass
class LoanTerms:
    """Loan terms as agreed at origination"""
    client_id: str
    principal: Money
    structure: LoanStructure
    installment_count: int
    frequency: PaymentFrequency
    start_date: date
    annual_interest_rate: Optional[Decimal] = None  # French only, e.g. 0.24 for 24%
    total_finance_charge: Optional[Money] = None    # Flat rate only

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def rate_or_charge(self):
        """The parameter the structure requires"""
        if self.structure == LoanStructure.FRENCH_AMORTIZATION:
            return self.annual_interest_rate
        return self.total_finance_charge

    def to_dict(self) -> Dict[str, Any]:
        return {
            'client_id': self.client_id,
            'principal': str(self.principal.amount),
            'currency': self.currency.code,
            'structure': self.structure.value,
            'installment_count': self.installment_count,
            'frequency': self.frequency.value,
            'start_date': self.start_date.isoformat(),
            'annual_interest_rate': (
                str(self.annual_interest_rate) if self.annual_interest_rate is not None else None
            ),
            'total_finance_charge': (
                str(self.total_finance_charge.amount) if self.total_finance_charge is not None else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanTerms':
        currency = Currency[data['currency']]
        rate = data.get('annual_interest_rate')
        charge = data.get('total_finance_charge')
        return cls(
            client_id=data['client_id'],
            principal=_money(data, 'principal', currency),
            structure=LoanStructure(data['structure']),
            installment_count=data['installment_count'],
            frequency=PaymentFrequency(data['frequency']),
            start_date=date.fromisoformat(data['start_date']),
            annual_interest_rate=Decimal(rate) if rate is not None else None,
            total_finance_charge=Money(Decimal(charge), currency) if charge is not None else None,
        )


@dataclass
class Installment:
    """Single schedule entry, mutated in place by allocations and fee runs"""
    loan_id: str
    number: int
    due_date: date
    scheduled_capital: Money
    scheduled_interest: Money
    paid_capital: Money
    paid_interest: Money
    late_fee_assessed: Money
    paid_late_fee: Money
    status: InstallmentStatus = InstallmentStatus.PENDING
    overdue_since: Optional[date] = None  # First evaluation date past grace

    @classmethod
    def scheduled(cls, loan_id: str, number: int, due_date: date,
                  capital: Money, interest: Money) -> 'Installment':
        zero = Money.zero(capital.currency)
        return cls(
            loan_id=loan_id,
            number=number,
            due_date=due_date,
            scheduled_capital=capital,
            scheduled_interest=interest,
            paid_capital=zero,
            paid_interest=zero,
            late_fee_assessed=zero,
            paid_late_fee=zero,
        )

    @property
    def id(self) -> str:
        return f"{self.loan_id}:{self.number}"

    @property
    def currency(self) -> Currency:
        return self.scheduled_capital.currency

    @property
    def scheduled_total(self) -> Money:
        return self.scheduled_capital + self.scheduled_interest

    @property
    def outstanding_capital(self) -> Money:
        return self.scheduled_capital - self.paid_capital

    @property
    def outstanding_interest(self) -> Money:
        return self.scheduled_interest - self.paid_interest

    @property
    def outstanding_late_fee(self) -> Money:
        return self.late_fee_assessed - self.paid_late_fee

    @property
    def outstanding_scheduled(self) -> Money:
        """Unpaid capital plus interest, the base late fees accrue on"""
        return self.outstanding_capital + self.outstanding_interest

    @property
    def outstanding_total(self) -> Money:
        return self.outstanding_scheduled + self.outstanding_late_fee

    @property
    def total_paid(self) -> Money:
        return self.paid_capital + self.paid_interest + self.paid_late_fee

    @property
    def is_settled(self) -> bool:
        return self.outstanding_total.is_zero()

    def refresh_status(self) -> InstallmentStatus:
        """Derive status from amounts"""
        if self.is_settled:
            self.status = InstallmentStatus.PAID
        elif self.total_paid.is_positive():
            self.status = InstallmentStatus.PARTIAL
        elif self.overdue_since is not None:
            self.status = InstallmentStatus.OVERDUE
        else:
            self.status = InstallmentStatus.PENDING
        return self.status

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'number': self.number,
            'due_date': self.due_date.isoformat(),
            'currency': self.currency.code,
            'scheduled_capital': str(self.scheduled_capital.amount),
            'scheduled_interest': str(self.scheduled_interest.amount),
            'paid_capital': str(self.paid_capital.amount),
            'paid_interest': str(self.paid_interest.amount),
            'late_fee_assessed': str(self.late_fee_assessed.amount),
            'paid_late_fee': str(self.paid_late_fee.amount),
            'status': self.status.value,
            'overdue_since': self.overdue_since.isoformat() if self.overdue_since else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        currency = Currency[data['currency']]
        return cls(
            loan_id=data['loan_id'],
            number=data['number'],
            due_date=date.fromisoformat(data['due_date']),
            scheduled_capital=_money(data, 'scheduled_capital', currency),
            scheduled_interest=_money(data, 'scheduled_interest', currency),
            paid_capital=_money(data, 'paid_capital', currency),
            paid_interest=_money(data, 'paid_interest', currency),
            late_fee_assessed=_money(data, 'late_fee_assessed', currency),
            paid_late_fee=_money(data, 'paid_late_fee', currency),
            status=InstallmentStatus(data['status']),
            overdue_since=_optional_date(data.get('overdue_since')),
        )


@dataclass
class Loan(StorageRecord):
    """Loan aggregate: terms, status, balances and its installments"""
    terms: LoanTerms
    created_by: str
    status: LoanStatus = LoanStatus.ACTIVE
    installments: List[Installment] = field(default_factory=list)

    # Denormalized balances, recomputed from installments
    remaining_capital: Optional[Money] = None
    remaining_interest: Optional[Money] = None
    outstanding_late_fees: Optional[Money] = None

    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    version: int = 0

    def __post_init__(self):
        zero = Money.zero(self.currency)
        if self.remaining_capital is None:
            self.remaining_capital = self.terms.principal
        if self.remaining_interest is None:
            self.remaining_interest = zero
        if self.outstanding_late_fees is None:
            self.outstanding_late_fees = zero

    @property
    def client_id(self) -> str:
        return self.terms.client_id

    @property
    def currency(self) -> Currency:
        return self.terms.currency

    @property
    def is_terminal(self) -> bool:
        return self.status in (LoanStatus.PAID, LoanStatus.CANCELLED)

    @property
    def ordered_installments(self) -> List[Installment]:
        return sorted(self.installments, key=lambda i: i.number)

    @property
    def unpaid_installments(self) -> List[Installment]:
        return [i for i in self.ordered_installments if not i.is_settled]

    @property
    def all_installments_paid(self) -> bool:
        return all(i.is_settled for i in self.installments)

    @property
    def has_overdue_installments(self) -> bool:
        """Any unpaid installment already flagged past grace"""
        return any(i.overdue_since is not None for i in self.unpaid_installments)

    @property
    def total_outstanding(self) -> Money:
        return self.remaining_capital + self.remaining_interest + self.outstanding_late_fees

    def installment(self, number: int) -> Installment:
        for inst in self.installments:
            if inst.number == number:
                return inst
        raise KeyError(f"Loan {self.id} has no installment {number}")

    def snapshot(self):
        """Comparable view of status and installment state, to detect no-op changes"""
        return self.status, [i.to_dict() for i in self.ordered_installments]

    def refresh_balances(self) -> None:
        """Recompute remaining balances from installment amounts"""
        currency = self.currency
        self.remaining_capital = sum_money((i.outstanding_capital for i in self.installments), currency)
        self.remaining_interest = sum_money((i.outstanding_interest for i in self.installments), currency)
        self.outstanding_late_fees = sum_money((i.outstanding_late_fee for i in self.installments), currency)

    def to_dict(self) -> Dict[str, Any]:
        """Loan record without installments, which are stored separately"""
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'client_id': self.client_id,
            'terms': self.terms.to_dict(),
            'created_by': self.created_by,
            'status': self.status.value,
            'currency': self.currency.code,
            'remaining_capital': str(self.remaining_capital.amount),
            'remaining_interest': str(self.remaining_interest.amount),
            'outstanding_late_fees': str(self.outstanding_late_fees.amount),
            'cancelled_by': self.cancelled_by,
            'cancelled_at': self.cancelled_at.isoformat() if self.cancelled_at else None,
            'cancellation_reason': self.cancellation_reason,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any],
                  installments: Optional[List[Installment]] = None) -> 'Loan':
        currency = Currency[data['currency']]
        cancelled_at = data.get('cancelled_at')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            terms=LoanTerms.from_dict(data['terms']),
            created_by=data['created_by'],
            status=LoanStatus(data['status']),
            installments=sorted(installments or [], key=lambda i: i.number),
            remaining_capital=_money(data, 'remaining_capital', currency),
            remaining_interest=_money(data, 'remaining_interest', currency),
            outstanding_late_fees=_money(data, 'outstanding_late_fees', currency),
            cancelled_by=data.get('cancelled_by'),
            cancelled_at=datetime.fromisoformat(cancelled_at) if cancelled_at else None,
            cancellation_reason=data.get('cancellation_reason'),
            version=data.get('version', 0),
        )
