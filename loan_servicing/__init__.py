"""
Loan Servicing Core

Amortization schedules, payment allocation, late fees and the loan lifecycle,
with proper financial math using Decimal and a hash-chained audit trail.
"""

__version__ = "1.0.0"
