"""
Pydantic schemas for requests entering the loan servicing core

JSON numbers are converted to Decimal through their string form before they
become Money, so 0.1 arrives as Decimal('0.1').
"""

from decimal import Decimal
from datetime import date
from typing import Annotated, Any, Dict, Literal, Optional, Type, TypeVar, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from .config import get_config
from .currency import Money, Currency, to_decimal
from .exceptions import ValidationError
from .lifecycle import CancelLoan, LifecycleAction, MarkOverdue
from .loans import LoanStructure, LoanTerms, PaymentFrequency
from .payments import PaymentType


Number = Union[str, int, float, Decimal]


def _decimal_or_none(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return to_decimal(value)


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (DOP, USD, etc.)")

    def to_money(self) -> Money:
        return Money(to_decimal(self.amount), Currency[self.currency.upper()])

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


# Loan schemas
class CreateLoanRequest(BaseModel):
    client_id: str = Field(..., min_length=1)
    principal_amount: Number
    structure: LoanStructure
    installment_count: int
    payment_frequency: PaymentFrequency
    start_date: date
    annual_interest_rate: Optional[Number] = Field(
        None, description="French amortization, decimal fraction (0.24 for 24%)"
    )
    total_finance_charge: Optional[Number] = Field(None, description="Flat rate only")
    currency: Optional[str] = None  # Defaults to the configured currency

    @field_validator('principal_amount', 'annual_interest_rate', 'total_finance_charge', mode='after')
    @classmethod
    def _to_decimal(cls, value):
        return _decimal_or_none(value)

    @field_validator('currency', mode='after')
    @classmethod
    def _known_currency(cls, value):
        if value is not None and value.upper() not in Currency.__members__:
            raise ValueError(f"Unsupported currency: {value}")
        return value

    def to_terms(self, default_currency: Optional[Currency] = None) -> LoanTerms:
        """Terms in the requested currency, else ``default_currency``, else the configured one"""
        if self.currency:
            currency = Currency[self.currency.upper()]
        else:
            currency = default_currency or get_config().currency_enum
        charge = self.total_finance_charge
        return LoanTerms(
            client_id=self.client_id,
            principal=Money(self.principal_amount, currency),
            structure=self.structure,
            installment_count=self.installment_count,
            frequency=self.payment_frequency,
            start_date=self.start_date,
            annual_interest_rate=self.annual_interest_rate,
            total_finance_charge=Money(charge, currency) if charge is not None else None,
        )


# Payment schemas
class PaymentRequest(BaseModel):
    loan_id: str
    total_amount: Number
    type: PaymentType = PaymentType.REGULAR
    payment_date: Optional[date] = None

    @field_validator('total_amount', mode='after')
    @classmethod
    def _to_decimal(cls, value):
        return _decimal_or_none(value)

    def to_money(self, currency: Currency) -> Money:
        return Money(self.total_amount, currency)


class ReversePaymentRequest(BaseModel):
    reason: str = Field(..., min_length=1)


# Lifecycle action schemas
class CancelActionRequest(BaseModel):
    action: Literal["cancel"]
    reason: Optional[str] = None

    def to_action(self) -> CancelLoan:
        return CancelLoan(reason=self.reason)


class MarkOverdueActionRequest(BaseModel):
    action: Literal["mark_overdue"]
    as_of: Optional[date] = None

    def to_action(self) -> MarkOverdue:
        return MarkOverdue(as_of=self.as_of)


LoanActionRequest = Annotated[
    Union[CancelActionRequest, MarkOverdueActionRequest],
    Field(discriminator="action")
]

_action_adapter = TypeAdapter(LoanActionRequest)


M = TypeVar('M', bound=BaseModel)


def parse_request(model: Type[M], payload: Dict[str, Any]) -> M:
    """Validate a payload, raising the core's ValidationError on failure"""
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {model.__name__}: {e}") from e


def parse_action(payload: Dict[str, Any]) -> LifecycleAction:
    """Resolve a tagged lifecycle action payload to its action variant"""
    try:
        request = _action_adapter.validate_python(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid lifecycle action: {e}") from e
    return request.to_action()
