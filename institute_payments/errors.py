"""
Error Taxonomy Module

Exceptions raised by the payment engine. The HTTP layer maps each one to a
status code; the engine itself never retries.
"""


class PaymentError(Exception):
    """Base class for all payment engine errors"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PaymentError, ValueError):
    """Missing or malformed input, including installment sum mismatches"""


class NotFoundError(PaymentError, LookupError):
    """Unknown payment, installment index or alert"""


class InvalidOperationError(PaymentError):
    """Operation not allowed in the aggregate's current state"""


class PermissionDeniedError(PaymentError):
    """Caller does not own the resource it is acting on"""


class ConcurrencyError(PaymentError):
    """A versioned write lost the race against another writer"""
