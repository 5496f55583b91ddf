"""
Idempotency guard for ledger operations.

The caller-supplied key is looked up before any new work starts. The
UNIQUE constraint on transactions.idempotency_key closes the race between
two first writers; the loser sees an IntegrityError on flush.
"""
from enum import Enum
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payment_systems.database.models import Transaction
from payment_systems.monitoring.metrics import metrics

from .enums import IN_FLIGHT_STATUSES
from .exceptions import IdempotencyConflictError, PaymentValidationError

logger = structlog.get_logger(__name__)

MAX_KEY_LENGTH = 255


class IdempotencyOutcome(str, Enum):
    NEW = "new"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"


class IdempotencyGuard:
    """Resolves a request's idempotency key against stored transactions."""

    @staticmethod
    def validate_key(idempotency_key: str) -> None:
        if not idempotency_key or not idempotency_key.strip():
            raise PaymentValidationError("Idempotency key is required")
        if len(idempotency_key) > MAX_KEY_LENGTH:
            raise PaymentValidationError(
                f"Idempotency key must be at most {MAX_KEY_LENGTH} characters"
            )

    async def find(self, idempotency_key: str, db: AsyncSession) -> Optional[Transaction]:
        result = await db.execute(
            select(Transaction).where(Transaction.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def check(self, idempotency_key: str, db: AsyncSession) -> Optional[Transaction]:
        """
        Check whether a key has been used.

        Args:
            idempotency_key: Caller-supplied key
            db: Database session

        Returns:
            Optional[Transaction]: The stored terminal transaction to echo, or
            None when the key is new

        Raises:
            PaymentValidationError: If the key is empty or too long
            IdempotencyConflictError: If the key belongs to an in-flight operation
        """
        self.validate_key(idempotency_key)
        existing = await self.find(idempotency_key, db)

        if existing is None:
            metrics.record_idempotency_outcome(IdempotencyOutcome.NEW.value)
            return None

        if existing.status in IN_FLIGHT_STATUSES:
            metrics.record_idempotency_outcome(IdempotencyOutcome.CONFLICT.value)
            logger.warning(
                "idempotency_conflict",
                idempotency_key=idempotency_key,
                transaction_id=str(existing.id),
                status=existing.status.value,
            )
            raise IdempotencyConflictError(idempotency_key)

        metrics.record_idempotency_outcome(IdempotencyOutcome.DUPLICATE.value)
        logger.info(
            "idempotency_duplicate",
            idempotency_key=idempotency_key,
            transaction_id=str(existing.id),
            status=existing.status.value,
        )
        return existing
