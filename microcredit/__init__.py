"""
Microcredit Portal Core

Loan amortization, installment lifecycle and programmed-savings ledgers
for a microcredit/savings cooperative portal. All money math uses Decimal
and every balance mutation runs inside an atomic storage transaction.
"""

__version__ = "1.0.0"
