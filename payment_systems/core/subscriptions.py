"""
Subscription lifecycle manager.

Creation and cancellation each span one local write and one gateway
mandate call. A failed mandate call leaves no local trace.

Every mutation carries a caller-supplied idempotency key. A retried create
returns the subscription the key already created, and a retried update or
cancellation returns the subscription unchanged.
"""
import hashlib
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_systems.database.models import Subscription, SubscriptionPayment, SubscriptionPlan
from payment_systems.integrations.gateway import (
    UNLIMITED_OCCURRENCES,
    InstrumentDirectory,
    PaymentGateway,
)
from payment_systems.monitoring.metrics import metrics

from .billing_dates import calculate_next_billing_date
from .clock import Clock, ensure_utc, utcnow
from .enums import (
    TERMINAL_SUBSCRIPTION_STATUSES,
    SubscriptionPaymentStatus,
    SubscriptionStatus,
)
from .exceptions import IdempotencyConflictError, NotFoundError, PaymentValidationError
from .plans import PlanRegistry
from .types import (
    CancelSubscriptionRequest,
    CreateSubscriptionRequest,
    MandateRequest,
    PaymentInstrument,
    UpdateSubscriptionRequest,
)

logger = structlog.get_logger(__name__)

CANCELLABLE_PAYMENT_STATUSES = (
    SubscriptionPaymentStatus.PENDING,
    SubscriptionPaymentStatus.RETRYING,
)


def mandate_reference(idempotency_key: str) -> str:
    """Gateway-side reference for the mandate created under a subscription key."""
    return f"sub_{hashlib.sha256(idempotency_key.encode()).hexdigest()[:32]}"


class SubscriptionManager:
    """Creates, updates and cancels subscriptions."""

    def __init__(
        self,
        gateway: PaymentGateway,
        instruments: InstrumentDirectory,
        plans: Optional[PlanRegistry] = None,
        clock: Clock = utcnow,
    ) -> None:
        """
        Initialize subscription manager.

        Args:
            gateway: Gateway used to register and cancel recurring mandates
            instruments: Lookup for stored payment instruments
            plans: Plan registry (defaults to a new registry)
            clock: Source of the current time
        """
        self.gateway = gateway
        self.instruments = instruments
        self.plans = plans or PlanRegistry()
        self.clock = clock

    async def create_subscription(
        self, request: CreateSubscriptionRequest, db: AsyncSession
    ) -> Subscription:
        """
        Subscribe a customer to a plan.

        With a trial the subscription starts in TRIAL and is first billed
        when the trial ends. Without one it starts ACTIVE and is billed at
        the start date, in advance for its first period.

        Args:
            request: Subscription request
            db: Database session

        Returns:
            Subscription: The persisted subscription

        Raises:
            NotFoundError: If the plan or instrument does not exist, or the
                instrument is inactive or owned by another customer
            IdempotencyConflictError: If the key belongs to another customer or
                plan, or a create with the same key is in flight
            PaymentValidationError: If the plan is unavailable, the dates
                are inconsistent, or the gateway refuses the mandate
        """
        existing = await self.replay(request, db)
        if existing is not None:
            return existing

        plan = await self.plans.get_plan(request.plan_id, db)
        if not self.plans.is_plan_available(plan):
            raise PaymentValidationError(f"Subscription plan {plan.id} is not available")
        instrument = await self.require_instrument(request.instrument_id, request.customer_id)

        start = ensure_utc(request.start_date) if request.start_date else self.clock()
        trial_end = self._trial_end(
            plan, start, ensure_utc(request.trial_end) if request.trial_end else None
        )

        subscription = Subscription(
            id=uuid.uuid4(),
            customer_id=request.customer_id,
            plan_id=plan.id,
            payment_instrument_id=request.instrument_id,
            idempotency_key=request.idempotency_key,
            billing_cycle_count=0,
            failed_payment_count=0,
            metadata_json=dict(request.metadata) or None,
            created_at=self.clock(),
        )
        if trial_end is not None:
            subscription.status = SubscriptionStatus.TRIAL
            subscription.trial_start = start
            subscription.trial_end = trial_end
            subscription.current_period_start = start
            subscription.current_period_end = trial_end
            subscription.next_billing_date = trial_end
        else:
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.current_period_start = start
            subscription.current_period_end = calculate_next_billing_date(
                start, plan.billing_interval, plan.billing_interval_count
            )
            subscription.next_billing_date = start

        db.add(subscription)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            if await self.find_by_idempotency_key(request.idempotency_key, db) is not None:
                raise IdempotencyConflictError(request.idempotency_key)
            raise

        try:
            mandate = await self.gateway.create_recurring_mandate(
                MandateRequest(
                    reference=mandate_reference(request.idempotency_key),
                    plan_name=plan.name,
                    amount=plan.amount,
                    currency=plan.currency,
                    interval=plan.billing_interval,
                    interval_count=plan.billing_interval_count,
                    customer_id=request.customer_id,
                    instrument=instrument,
                    start_date=subscription.next_billing_date,
                    total_occurrences=plan.max_billing_cycles or UNLIMITED_OCCURRENCES,
                )
            )
            if not mandate.success:
                raise PaymentValidationError(
                    f"Recurring mandate registration failed: {mandate.message}"
                )
            subscription.gateway_mandate_reference = mandate.mandate_ref
            subscription.gateway_payload = mandate.raw_payload or None
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(
                "subscription_creation_failed",
                customer_id=request.customer_id,
                plan_id=str(request.plan_id),
                error=str(e),
            )
            raise

        logger.info(
            "subscription_created",
            subscription_id=str(subscription.id),
            customer_id=subscription.customer_id,
            plan_id=str(plan.id),
            status=subscription.status.value,
            next_billing_date=subscription.next_billing_date.isoformat(),
            mandate_ref=subscription.gateway_mandate_reference,
        )
        return subscription

    async def replay(
        self, request: CreateSubscriptionRequest, db: AsyncSession
    ) -> Optional[Subscription]:
        """
        Subscription already created under the request's key, if any.

        Raises:
            IdempotencyConflictError: If the key was used for another customer or plan
        """
        existing = await self.find_by_idempotency_key(request.idempotency_key, db)
        if existing is None:
            return None
        if existing.customer_id != request.customer_id or existing.plan_id != request.plan_id:
            raise IdempotencyConflictError(
                request.idempotency_key,
                f"Idempotency key {request.idempotency_key} was already used "
                "for another subscription",
            )
        logger.info(
            "subscription_duplicate_request",
            subscription_id=str(existing.id),
            idempotency_key=request.idempotency_key,
        )
        return existing

    async def find_by_idempotency_key(
        self, idempotency_key: str, db: AsyncSession
    ) -> Optional[Subscription]:
        result = await db.execute(
            select(Subscription).where(Subscription.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def get_subscription(self, subscription_id: uuid.UUID, db: AsyncSession) -> Subscription:
        subscription = await db.get(Subscription, subscription_id)
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return subscription

    async def list_subscriptions(
        self,
        db: AsyncSession,
        customer_id: Optional[str] = None,
        status: Optional[SubscriptionStatus] = None,
    ) -> List[Subscription]:
        stmt = select(Subscription).order_by(Subscription.created_at)
        if customer_id is not None:
            stmt = stmt.where(Subscription.customer_id == customer_id)
        if status is not None:
            stmt = stmt.where(Subscription.status == status)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def list_payments(
        self, subscription_id: uuid.UUID, db: AsyncSession
    ) -> List[SubscriptionPayment]:
        await self.get_subscription(subscription_id, db)
        result = await db.execute(
            select(SubscriptionPayment)
            .where(SubscriptionPayment.subscription_id == subscription_id)
            .order_by(SubscriptionPayment.cycle_number, SubscriptionPayment.created_at)
        )
        return list(result.scalars().all())

    async def update_subscription(
        self,
        subscription_id: uuid.UUID,
        request: UpdateSubscriptionRequest,
        db: AsyncSession,
    ) -> Subscription:
        """
        Change the instrument, status or metadata of a live subscription.

        Raises:
            NotFoundError: If the subscription or new instrument does not exist
            PaymentValidationError: If the subscription has ended or the
                requested status is only reachable through cancellation or expiry
            IdempotencyConflictError: If the key was last used to cancel
        """
        subscription = await self.get_subscription(subscription_id, db)
        if self._replayed(subscription, "update", request.idempotency_key):
            return subscription
        if subscription.status in TERMINAL_SUBSCRIPTION_STATUSES:
            raise PaymentValidationError(
                f"Cannot update subscription with status: {subscription.status.value}"
            )

        if request.instrument_id is not None:
            await self.require_instrument(request.instrument_id, subscription.customer_id)
            subscription.payment_instrument_id = request.instrument_id

        if request.status is not None and request.status != subscription.status:
            new_status = SubscriptionStatus(request.status)
            if new_status in TERMINAL_SUBSCRIPTION_STATUSES:
                raise PaymentValidationError(
                    f"Status {new_status.value} cannot be set directly; cancel the subscription"
                )
            self.transition(subscription, new_status)

        if request.metadata is not None:
            subscription.metadata_json = {**(subscription.metadata_json or {}), **request.metadata}

        self._mark_applied(subscription, "update", request.idempotency_key)
        await db.commit()
        logger.info(
            "subscription_updated",
            subscription_id=str(subscription.id),
            status=subscription.status.value,
        )
        return subscription

    async def cancel_subscription(
        self,
        subscription_id: uuid.UUID,
        request: CancelSubscriptionRequest,
        db: AsyncSession,
    ) -> Subscription:
        """
        Cancel a subscription and its gateway mandate.

        Pending and retrying cycle payments are cancelled with it, so no
        retry fires after cancellation.

        Raises:
            NotFoundError: If the subscription does not exist
            PaymentValidationError: If it has already ended or the gateway
                refuses to cancel the mandate
            IdempotencyConflictError: If the key was last used for an update
        """
        subscription = await self.get_subscription(subscription_id, db)
        if self._replayed(subscription, "cancel", request.idempotency_key):
            return subscription
        if subscription.status == SubscriptionStatus.CANCELLED:
            raise PaymentValidationError("Subscription is already cancelled")
        if subscription.status == SubscriptionStatus.EXPIRED:
            raise PaymentValidationError("Subscription has already expired")

        try:
            if subscription.gateway_mandate_reference:
                result = await self.gateway.cancel_recurring_mandate(
                    subscription.gateway_mandate_reference
                )
                if not result.success:
                    raise PaymentValidationError(
                        f"Recurring mandate cancellation failed: {result.message}"
                    )

            now = self.clock()
            self.transition(subscription, SubscriptionStatus.CANCELLED)
            subscription.cancelled_at = now
            subscription.ended_at = (
                now if request.cancel_immediately else subscription.current_period_end
            )
            if request.reason:
                subscription.metadata_json = {
                    **(subscription.metadata_json or {}),
                    "cancellation_reason": request.reason,
                }

            self._mark_applied(subscription, "cancel", request.idempotency_key)
            cancelled_payments = await self.cancel_open_payments(subscription.id, db)
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(
                "subscription_cancellation_failed",
                subscription_id=str(subscription_id),
                error=str(e),
            )
            raise

        logger.info(
            "subscription_cancelled",
            subscription_id=str(subscription.id),
            immediate=request.cancel_immediately,
            ended_at=subscription.ended_at.isoformat() if subscription.ended_at else None,
            cancelled_payments=cancelled_payments,
        )
        return subscription

    async def cancel_open_payments(self, subscription_id: uuid.UUID, db: AsyncSession) -> int:
        """Cancel pending and retrying payments of a subscription. Does not commit."""
        result = await db.execute(
            select(SubscriptionPayment).where(
                SubscriptionPayment.subscription_id == subscription_id,
                SubscriptionPayment.status.in_(CANCELLABLE_PAYMENT_STATUSES),
            )
        )
        payments = result.scalars().all()
        for payment in payments:
            payment.status = SubscriptionPaymentStatus.CANCELLED
            payment.next_retry_at = None
        return len(payments)

    async def require_instrument(self, instrument_id: str, customer_id: str) -> PaymentInstrument:
        """
        Resolve an instrument the customer owns and can still charge.

        Raises:
            NotFoundError: If it is unknown, inactive or owned by someone else
        """
        instrument = await self.instruments.get_instrument(instrument_id)
        if (
            instrument is None
            or instrument.customer_id != customer_id
            or not instrument.is_active
        ):
            raise NotFoundError(f"Payment instrument {instrument_id} not found or inactive")
        return instrument

    @staticmethod
    def transition(subscription: Subscription, status: SubscriptionStatus) -> None:
        """Set a new status and record the transition."""
        previous = subscription.status
        if previous == status:
            return
        subscription.status = status
        metrics.record_subscription_transition(previous.value, status.value)
        logger.info(
            "subscription_status_changed",
            subscription_id=str(subscription.id),
            from_status=previous.value,
            to_status=status.value,
        )

    @staticmethod
    def _replayed(
        subscription: Subscription, operation: str, idempotency_key: Optional[str]
    ) -> bool:
        if not idempotency_key or not subscription.last_request_key:
            return False
        used_for, _, used_key = subscription.last_request_key.partition(":")
        if used_key != idempotency_key:
            return False
        if used_for != operation:
            raise IdempotencyConflictError(
                idempotency_key,
                f"Idempotency key {idempotency_key} was already used to "
                f"{used_for} this subscription",
            )
        logger.info(
            "subscription_duplicate_request",
            subscription_id=str(subscription.id),
            operation=operation,
            idempotency_key=idempotency_key,
        )
        return True

    @staticmethod
    def _mark_applied(
        subscription: Subscription, operation: str, idempotency_key: Optional[str]
    ) -> None:
        if idempotency_key:
            subscription.last_request_key = f"{operation}:{idempotency_key}"

    @staticmethod
    def _trial_end(
        plan: SubscriptionPlan, start: datetime, explicit_trial_end: Optional[datetime]
    ) -> Optional[datetime]:
        if explicit_trial_end is not None:
            if explicit_trial_end <= start:
                raise PaymentValidationError("Trial end must be after the start date")
            return explicit_trial_end
        if plan.trial_period_days:
            return start + timedelta(days=plan.trial_period_days)
        return None
