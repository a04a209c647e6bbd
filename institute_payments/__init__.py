"""
Institute Payments

Payment and installment lifecycle engine for a learning institute:
derived payment status, overdue sweeps and payment alerts.
"""

__version__ = "1.0.0"
