"""
Loan Servicing Engine

Installment lifecycle and payment reconciliation for a microfinance
lending backend: amortization schedules, fine accrual, payment-gateway
checkout sessions, idempotent webhook reconciliation and reminder sweeps.
"""

__version__ = "1.0.0"
