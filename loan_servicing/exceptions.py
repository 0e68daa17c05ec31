"""Custom exception hierarchy for the loan servicing core."""


class LoanServicingError(Exception):
    """Base exception for all loan servicing errors."""

    code = "LOAN_SERVICING_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# Validation errors: rejected before any state mutation

class ValidationError(LoanServicingError, ValueError):
    """Raised when input is malformed or missing."""

    code = "VALIDATION_ERROR"


class InvalidTermsError(ValidationError):
    """Raised when loan terms cannot produce a schedule."""

    code = "INVALID_TERMS"


class InvalidPaymentAmountError(ValidationError):
    """Raised when a payment amount is non-positive or otherwise unusable."""

    code = "INVALID_PAYMENT_AMOUNT"


# Not found

class NotFoundError(LoanServicingError):
    """Raised when a referenced record does not exist."""

    code = "NOT_FOUND"


class LoanNotFoundError(NotFoundError):
    code = "LOAN_NOT_FOUND"

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found")
        self.loan_id = loan_id


class NoOpReversal(NotFoundError):
    """Raised when the payment to reverse does not exist."""

    code = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: str):
        super().__init__(f"Payment {payment_id} not found, nothing to reverse")
        self.payment_id = payment_id


# State conflicts: no mutation applied, safe to retry after correcting

class StateConflictError(LoanServicingError):
    """Raised when the loan or payment state does not allow the operation."""

    code = "STATE_CONFLICT"


class LoanNotPayable(StateConflictError):
    code = "LOAN_NOT_PAYABLE"

    def __init__(self, loan_id: str, status: str):
        super().__init__(f"Cannot register payment on loan {loan_id} with status {status}")
        self.loan_id = loan_id
        self.status = status


class OverpaymentNotAllowed(StateConflictError):
    code = "OVERPAYMENT_NOT_ALLOWED"

    def __init__(self, loan_id: str, amount: str, limit: str):
        super().__init__(f"Payment {amount} on loan {loan_id} exceeds the allowed {limit}")
        self.loan_id = loan_id
        self.amount = amount
        self.limit = limit


class AlreadyReversed(StateConflictError):
    code = "ALREADY_REVERSED"

    def __init__(self, payment_id: str):
        super().__init__(f"Payment {payment_id} is already reversed")
        self.payment_id = payment_id


class ReversalNotAllowed(StateConflictError):
    code = "CANNOT_REVERSE_PAYMENT"

    def __init__(self, payment_id: str, reason: str):
        super().__init__(f"Cannot reverse payment {payment_id}: {reason}")
        self.payment_id = payment_id


class LoanAlreadyTerminal(StateConflictError):
    code = "LOAN_ALREADY_TERMINAL"

    def __init__(self, loan_id: str, status: str):
        super().__init__(f"Loan {loan_id} is already {status}")
        self.loan_id = loan_id
        self.status = status


class LoanNotOverdue(StateConflictError):
    code = "LOAN_NOT_OVERDUE"

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} has no installment past its grace period")
        self.loan_id = loan_id


class InvalidTransitionError(StateConflictError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str):
        super().__init__(f"Transition {current} -> {target} is not allowed")
        self.current = current
        self.target = target


class AllocationError(LoanServicingError):
    """A payment could not be fully placed on the installments it was checked against."""

    code = "ALLOCATION_ERROR"

    def __init__(self, loan_id: str, unallocated: str):
        super().__init__(f"Loan {loan_id}: {unallocated} left unallocated")
        self.loan_id = loan_id
        self.unallocated = unallocated


# Concurrency

class ConcurrencyConflictError(LoanServicingError):
    """Raised by storage when an optimistic version check fails."""

    code = "CONCURRENCY_CONFLICT"


class TransientConflictError(LoanServicingError):
    """Raised when conflict retries are exhausted; the caller should retry."""

    code = "TRANSIENT_CONFLICT"

    def __init__(self, loan_id: str, attempts: int):
        super().__init__(f"Loan {loan_id} kept changing concurrently after {attempts} attempts")
        self.loan_id = loan_id
        self.attempts = attempts
