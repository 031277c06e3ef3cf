"""Exceptions raised by the payment and payout core."""
from typing import Optional


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    error_code = "PAYMENT_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code


class PaymentValidationError(PaymentError):
    """Raised when request input or a fare split fails validation."""

    error_code = "VALIDATION_ERROR"


class NotFoundError(PaymentError):
    """Raised when a booking, transaction or payout does not exist."""

    error_code = "NOT_FOUND"


class AuthorizationError(PaymentError):
    """Raised when the caller does not own the resource."""

    error_code = "FORBIDDEN"


class ConflictError(PaymentError):
    """Raised when the resource is in a state that forbids the operation."""

    error_code = "CONFLICT"


class SignatureMismatchError(PaymentError):
    """Raised when a checkout signature does not match the recomputed HMAC."""

    error_code = "SIGNATURE_MISMATCH"


class PaymentNotSuccessfulError(PaymentError):
    """Raised when the gateway reports the payment as neither captured nor authorized."""

    error_code = "PAYMENT_NOT_SUCCESSFUL"


class PayoutError(PaymentError):
    """Raised when a payout cannot be created or retried."""

    error_code = "PAYOUT_ERROR"
