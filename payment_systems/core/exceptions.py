"""Exceptions raised by the ledger, plan registry and subscription services."""


class PaymentError(Exception):
    """Base exception for payment and billing errors."""

    pass


class PaymentValidationError(PaymentError):
    """Raised when a request fails a precondition. Nothing is written or sent."""

    pass


class NotFoundError(PaymentError):
    """Raised when a referenced transaction, plan, subscription or instrument is missing."""

    pass


class ConflictError(PaymentError):
    """Raised when a write would collide with existing state."""

    pass


class IdempotencyConflictError(ConflictError):
    """Raised when an idempotency key is already held by an in-flight operation."""

    def __init__(self, idempotency_key: str, message: str | None = None):
        """
        Initialize conflict error.

        Args:
            idempotency_key: The contested key
            message: Optional override for the error message
        """
        super().__init__(
            message or f"Request with idempotency key {idempotency_key} is already in progress"
        )
        self.idempotency_key = idempotency_key
