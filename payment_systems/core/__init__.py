"""Ledger, subscription lifecycle and billing engine."""
from .exceptions import (
    ConflictError,
    IdempotencyConflictError,
    NotFoundError,
    PaymentError,
    PaymentValidationError,
)

__all__ = [
    "PaymentError",
    "PaymentValidationError",
    "NotFoundError",
    "ConflictError",
    "IdempotencyConflictError",
]
