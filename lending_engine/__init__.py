"""
Lending Engine

Late-fee accrual and interest-first payment allocation for installment
loans, with Decimal arithmetic throughout and a hash-chained audit trail.
"""

__version__ = "1.0.0"
