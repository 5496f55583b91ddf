"""
Transaction ledger.

Every mutating operation is an idempotent two-phase write on the caller's
session:

1. Resolve the idempotency key (new, in-flight conflict, or terminal echo)
2. Check preconditions (no writes, no gateway call on failure)
3. Add the PROCESSING row and flush it, enforcing the unique key
4. Call the gateway once
5. Write the terminal status plus any parent side effect, then commit

Gateway declines are recorded as FAILED rows and returned. Gateway
infrastructure errors and persistence errors roll back and propagate.
"""
import time
import uuid
from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_systems.database.models import Transaction
from payment_systems.integrations.gateway import GatewayResult, PaymentGateway
from payment_systems.monitoring.metrics import metrics

from .clock import Clock, utcnow
from .enums import TransactionStatus, TransactionType
from .exceptions import IdempotencyConflictError, NotFoundError, PaymentValidationError
from .idempotency import IdempotencyGuard
from .types import (
    CaptureRequest,
    PaymentRequest,
    PaymentResponse,
    RefundRequest,
    VoidRequest,
)
from .validation import check_capture, check_payment, check_refund, check_void

logger = structlog.get_logger(__name__)

DUPLICATE_MESSAGE = "Duplicate request - returning existing transaction"

# Captures that count against the authorized amount
HELD_CAPTURE_STATUSES = (
    TransactionStatus.PROCESSING,
    TransactionStatus.COMPLETED,
    TransactionStatus.PARTIALLY_REFUNDED,
    TransactionStatus.REFUNDED,
)


def new_merchant_reference() -> str:
    return f"txn_{uuid.uuid4().hex}"


class TransactionLedger:
    """
    Purchase, authorization, capture, refund and void against the gateway.

    Features:
    - At most one gateway call per idempotency key
    - Refund and cumulative capture bounds checked before the gateway is called
    - Child outcome and parent side effect committed together
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        idempotency_guard: Optional[IdempotencyGuard] = None,
        clock: Clock = utcnow,
    ) -> None:
        """
        Initialize ledger.

        Args:
            gateway: Settlement gateway adapter
            idempotency_guard: Key resolver (defaults to a new guard)
            clock: Source of the current time
        """
        self.gateway = gateway
        self.idempotency_guard = idempotency_guard or IdempotencyGuard()
        self.clock = clock

    async def create_purchase(self, request: PaymentRequest, db: AsyncSession) -> PaymentResponse:
        """Authorize and capture in one step."""
        return await self._charge(TransactionType.PURCHASE, request, db)

    async def create_authorization(
        self, request: PaymentRequest, db: AsyncSession
    ) -> PaymentResponse:
        """Place a hold for later capture or void."""
        return await self._charge(TransactionType.AUTHORIZATION, request, db)

    async def capture_payment(self, request: CaptureRequest, db: AsyncSession) -> PaymentResponse:
        """
        Capture a completed authorization.

        Args:
            request: Capture request; amount defaults to the uncaptured balance
            db: Database session

        Returns:
            PaymentResponse: The capture transaction

        Raises:
            PaymentValidationError: If the parent cannot be captured for this amount
            NotFoundError: If the authorization does not exist
            IdempotencyConflictError: If the key is in flight
        """
        start_time = time.time()
        duplicate = await self.replay(request.idempotency_key, TransactionType.CAPTURE, db)
        if duplicate is not None:
            return duplicate

        parent = await self._load_parent(request.transaction_id, db)
        captured = await self._captured_total(parent, db)
        amount = check_capture(parent, request.amount, captured).require()

        txn = self._child(parent, TransactionType.CAPTURE, amount, request.idempotency_key)
        await self._open(txn, db)
        try:
            result = await self.gateway.capture(
                parent.gateway_reference, amount, parent.currency, txn.merchant_reference
            )
            hint = (parent.gateway_payload or {}).get("instrument_hint")
            if hint and "instrument_hint" not in result.raw_payload:
                result.raw_payload = {**result.raw_payload, "instrument_hint": hint}
            self._settle(txn, result)
            await db.commit()
        except Exception as e:
            await self._abort(txn, db, e)
            raise

        return self._finish(txn, start_time)

    async def refund_payment(self, request: RefundRequest, db: AsyncSession) -> PaymentResponse:
        """
        Refund part or all of a completed purchase or capture.

        On success the parent's refunded amount grows by the refund and its
        status becomes REFUNDED or PARTIALLY_REFUNDED in the same commit.

        Args:
            request: Refund request; amount defaults to the remaining balance
            db: Database session

        Returns:
            PaymentResponse: The refund transaction

        Raises:
            PaymentValidationError: If the refund would exceed the remaining balance
            NotFoundError: If the parent transaction does not exist
            IdempotencyConflictError: If the key is in flight
        """
        start_time = time.time()
        duplicate = await self.replay(request.idempotency_key, TransactionType.REFUND, db)
        if duplicate is not None:
            return duplicate

        parent = await self._load_parent(request.transaction_id, db)
        amount = check_refund(parent, request.amount).require()

        txn = self._child(
            parent, TransactionType.REFUND, amount, request.idempotency_key, request.reason
        )
        await self._open(txn, db)
        try:
            result = await self.gateway.refund(
                parent.gateway_reference,
                amount,
                parent.currency,
                txn.merchant_reference,
                instrument_hint=(parent.gateway_payload or {}).get("instrument_hint"),
            )
            self._settle(txn, result)
            if result.success:
                parent.refunded_amount = parent.refunded_amount + amount
                parent.status = (
                    TransactionStatus.REFUNDED
                    if parent.refunded_amount >= parent.amount
                    else TransactionStatus.PARTIALLY_REFUNDED
                )
            await db.commit()
        except Exception as e:
            await self._abort(txn, db, e)
            raise

        if result.success:
            logger.info(
                "parent_refund_applied",
                parent_transaction_id=str(parent.id),
                refunded_amount=str(parent.refunded_amount),
                parent_status=parent.status.value,
            )
        return self._finish(txn, start_time)

    async def cancel_payment(self, request: VoidRequest, db: AsyncSession) -> PaymentResponse:
        """
        Void a completed authorization that has not been captured.

        On success the authorization becomes CANCELLED in the same commit.
        """
        start_time = time.time()
        duplicate = await self.replay(request.idempotency_key, TransactionType.VOID, db)
        if duplicate is not None:
            return duplicate

        parent = await self._load_parent(request.transaction_id, db)
        amount = check_void(parent, await self._captured_total(parent, db)).require()

        txn = self._child(
            parent, TransactionType.VOID, amount, request.idempotency_key, request.reason
        )
        await self._open(txn, db)
        try:
            result = await self.gateway.void(parent.gateway_reference, txn.merchant_reference)
            self._settle(txn, result)
            if result.success:
                parent.status = TransactionStatus.CANCELLED
            await db.commit()
        except Exception as e:
            await self._abort(txn, db, e)
            raise

        return self._finish(txn, start_time)

    async def get_transaction(self, transaction_id: uuid.UUID, db: AsyncSession) -> PaymentResponse:
        """
        Get a transaction by ID.

        Raises:
            NotFoundError: If no such transaction exists
        """
        txn = await db.get(Transaction, transaction_id)
        if txn is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return self.to_response(txn)

    async def list_child_transactions(
        self, transaction_id: uuid.UUID, db: AsyncSession
    ) -> List[PaymentResponse]:
        """Captures, refunds and voids recorded against a transaction, oldest first."""
        result = await db.execute(
            select(Transaction)
            .where(Transaction.parent_transaction_id == transaction_id)
            .order_by(Transaction.created_at)
        )
        return [self.to_response(txn) for txn in result.scalars().all()]

    @staticmethod
    def to_response(txn: Transaction, duplicate: bool = False) -> PaymentResponse:
        if duplicate:
            message = DUPLICATE_MESSAGE
        elif txn.status == TransactionStatus.FAILED:
            message = txn.failure_reason
        else:
            message = None
        return PaymentResponse(
            transaction_id=txn.id,
            operation=txn.transaction_type,
            status=txn.status,
            amount=txn.amount,
            currency=txn.currency,
            created_at=txn.created_at,
            gateway_reference=txn.gateway_reference,
            auth_code=txn.auth_code,
            message=message,
            parent_transaction_id=txn.parent_transaction_id,
            refunded_amount=txn.refunded_amount,
            duplicate=duplicate,
        )

    async def _charge(
        self, operation: TransactionType, request: PaymentRequest, db: AsyncSession
    ) -> PaymentResponse:
        start_time = time.time()
        duplicate = await self.replay(request.idempotency_key, operation, db)
        if duplicate is not None:
            return duplicate

        amount = check_payment(request.amount, request.currency).require()
        if not request.instrument.is_active:
            raise PaymentValidationError("Payment instrument is not active")

        currency = request.currency.upper()
        txn = Transaction(
            id=uuid.uuid4(),
            merchant_reference=new_merchant_reference(),
            transaction_type=operation,
            status=TransactionStatus.PROCESSING,
            payment_method=request.instrument.kind,
            amount=amount,
            refunded_amount=Decimal("0.00"),
            currency=currency,
            idempotency_key=request.idempotency_key,
            customer_id=request.customer_id,
            order_id=request.order_id,
            description=request.description,
            metadata_json=dict(request.metadata) or None,
            created_at=self.clock(),
        )
        await self._open(txn, db)
        try:
            call = (
                self.gateway.purchase
                if operation == TransactionType.PURCHASE
                else self.gateway.authorize
            )
            result = await call(
                amount,
                currency,
                request.instrument,
                txn.merchant_reference,
                order_ref=request.order_id,
                description=request.description,
            )
            self._settle(txn, result)
            await db.commit()
        except Exception as e:
            await self._abort(txn, db, e)
            raise

        return self._finish(txn, start_time)

    async def replay(
        self, idempotency_key: str, operation: TransactionType, db: AsyncSession
    ) -> Optional[PaymentResponse]:
        """
        Duplicate echo for a key that already reached a terminal status.

        Returns None for an unused key. Raises IdempotencyConflictError if the
        key is in flight or was used for another operation.
        """
        existing = await self.idempotency_guard.check(idempotency_key, db)
        if existing is None:
            return None
        if existing.transaction_type != operation:
            raise IdempotencyConflictError(
                idempotency_key,
                f"Idempotency key {idempotency_key} was already used for a "
                f"{existing.transaction_type.value} operation",
            )
        metrics.record_ledger_operation(operation.value, "duplicate", 0.0)
        return self.to_response(existing, duplicate=True)

    async def _load_parent(self, transaction_id: uuid.UUID, db: AsyncSession) -> Transaction:
        # Row lock serializes concurrent follow-ups on the same parent
        result = await db.execute(
            select(Transaction).where(Transaction.id == transaction_id).with_for_update()
        )
        parent = result.scalar_one_or_none()
        if parent is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return parent

    async def _captured_total(self, parent: Transaction, db: AsyncSession) -> Decimal:
        total = await db.scalar(
            select(func.sum(Transaction.amount)).where(
                Transaction.parent_transaction_id == parent.id,
                Transaction.transaction_type == TransactionType.CAPTURE,
                Transaction.status.in_(HELD_CAPTURE_STATUSES),
            )
        )
        return Decimal(str(total)) if total is not None else Decimal("0.00")

    def _child(
        self,
        parent: Transaction,
        operation: TransactionType,
        amount: Decimal,
        idempotency_key: str,
        description: Optional[str] = None,
    ) -> Transaction:
        return Transaction(
            id=uuid.uuid4(),
            merchant_reference=new_merchant_reference(),
            parent_transaction_id=parent.id,
            transaction_type=operation,
            status=TransactionStatus.PROCESSING,
            payment_method=parent.payment_method,
            amount=amount,
            refunded_amount=Decimal("0.00"),
            currency=parent.currency,
            idempotency_key=idempotency_key,
            customer_id=parent.customer_id,
            order_id=parent.order_id,
            description=description,
            created_at=self.clock(),
        )

    async def _open(self, txn: Transaction, db: AsyncSession) -> None:
        """Flush the PROCESSING row so the unique key is enforced before the gateway call."""
        db.add(txn)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            if await self.idempotency_guard.find(txn.idempotency_key, db) is not None:
                logger.warning(
                    "idempotency_race_lost",
                    idempotency_key=txn.idempotency_key,
                    operation=txn.transaction_type.value,
                )
                raise IdempotencyConflictError(txn.idempotency_key)
            raise

        logger.info(
            "transaction_processing",
            transaction_id=str(txn.id),
            operation=txn.transaction_type.value,
            amount=str(txn.amount),
            currency=txn.currency,
            parent_transaction_id=(
                str(txn.parent_transaction_id) if txn.parent_transaction_id else None
            ),
        )

    def _settle(self, txn: Transaction, result: GatewayResult) -> None:
        txn.gateway_reference = result.gateway_ref
        txn.auth_code = result.auth_code
        txn.gateway_payload = result.raw_payload or None
        txn.processed_at = self.clock()
        if result.success:
            txn.status = TransactionStatus.COMPLETED
        else:
            txn.status = TransactionStatus.FAILED
            txn.failure_reason = result.message or "Declined by gateway"

    async def _abort(self, txn: Transaction, db: AsyncSession, error: Exception) -> None:
        transaction_id, operation = str(txn.id), txn.transaction_type.value
        await db.rollback()
        metrics.record_ledger_operation(operation, "error", 0.0)
        logger.error(
            "transaction_aborted",
            transaction_id=transaction_id,
            operation=operation,
            error=str(error),
            error_type=type(error).__name__,
        )

    def _finish(self, txn: Transaction, start_time: float) -> PaymentResponse:
        duration = time.time() - start_time
        completed = txn.status == TransactionStatus.COMPLETED
        metrics.record_ledger_operation(
            txn.transaction_type.value,
            txn.status.value,
            duration,
            float(txn.amount) if completed else None,
        )
        log = logger.info if completed else logger.warning
        log(
            "transaction_settled",
            transaction_id=str(txn.id),
            operation=txn.transaction_type.value,
            status=txn.status.value,
            gateway_reference=txn.gateway_reference,
            failure_reason=txn.failure_reason,
            duration_seconds=duration,
        )
        return self.to_response(txn)
