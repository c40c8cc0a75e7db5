"""
Loan Lifecycle Orchestrator

State machines that take a loan application from submission to a funded,
signed and repaid loan, with document gating, Decimal amortization math,
hash-chained audit trails and best-effort SMS notifications.
"""

__version__ = "1.0.0"
