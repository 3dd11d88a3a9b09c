"""
Loan Tracker

Personal loan EMI tracking: amortization schedules, mid-tenure term
changes, installment settlement and ad-hoc payments, with Decimal money
and a hash-chained audit trail.
"""

__version__ = "1.0.0"
