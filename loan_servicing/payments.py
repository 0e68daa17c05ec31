"""
Payment Module

Payment records and their allocation lines. Payments are never deleted;
a reversal flips the reversal state and records who reversed it and why.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .currency import Money, Currency, sum_money
from .storage import StorageRecord


class PaymentType(Enum):
    """Payment types"""
    REGULAR = "REGULAR"
    ADVANCE = "ADVANCE"                  # Pays future installments ahead of time
    CAPITAL_PAYMENT = "CAPITAL_PAYMENT"  # Extra payment toward capital
    FULL_SETTLEMENT = "FULL_SETTLEMENT"  # Must cover the whole outstanding balance


class ReversalState(Enum):
    ACTIVE = "ACTIVE"
    REVERSED = "REVERSED"


@dataclass(frozen=True)
class AllocationLine:
    """Portion of one payment applied to one installment"""
    installment_number: int
    late_fee: Money
    interest: Money
    capital: Money

    @property
    def total(self) -> Money:
        return self.late_fee + self.interest + self.capital

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installment_number': self.installment_number,
            'late_fee': str(self.late_fee.amount),
            'interest': str(self.interest.amount),
            'capital': str(self.capital.amount),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], currency: Currency) -> 'AllocationLine':
        return cls(
            installment_number=data['installment_number'],
            late_fee=Money(Decimal(data['late_fee']), currency),
            interest=Money(Decimal(data['interest']), currency),
            capital=Money(Decimal(data['capital']), currency),
        )


@dataclass
class Payment(StorageRecord):
    """Record of a loan payment"""
    loan_id: str
    amount: Money
    payment_type: PaymentType
    created_by: str
    payment_date: date
    lines: List[AllocationLine] = field(default_factory=list)
    reversal_state: ReversalState = ReversalState.ACTIVE
    reversed_by: Optional[str] = None
    reversal_reason: Optional[str] = None
    reversed_at: Optional[datetime] = None

    @property
    def is_reversed(self) -> bool:
        return self.reversal_state == ReversalState.REVERSED

    def _line_sum(self, attr: str) -> Money:
        return sum_money((getattr(line, attr) for line in self.lines), self.amount.currency)

    @property
    def capital_applied(self) -> Money:
        return self._line_sum('capital')

    @property
    def interest_applied(self) -> Money:
        return self._line_sum('interest')

    @property
    def late_fee_applied(self) -> Money:
        return self._line_sum('late_fee')

    @property
    def allocated_total(self) -> Money:
        return self._line_sum('total')

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'payment_type': self.payment_type.value,
            'created_by': self.created_by,
            'payment_date': self.payment_date.isoformat(),
            'lines': [line.to_dict() for line in self.lines],
            'reversal_state': self.reversal_state.value,
            'reversed_by': self.reversed_by,
            'reversal_reason': self.reversal_reason,
            'reversed_at': self.reversed_at.isoformat() if self.reversed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        currency = Currency[data['currency']]
        reversed_at = data.get('reversed_at')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            amount=Money(Decimal(data['amount']), currency),
            payment_type=PaymentType(data['payment_type']),
            created_by=data['created_by'],
            payment_date=date.fromisoformat(data['payment_date']),
            lines=[AllocationLine.from_dict(line, currency) for line in data.get('lines', [])],
            reversal_state=ReversalState(data['reversal_state']),
            reversed_by=data.get('reversed_by'),
            reversal_reason=data.get('reversal_reason'),
            reversed_at=datetime.fromisoformat(reversed_at) if reversed_at else None,
        )
