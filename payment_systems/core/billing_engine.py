"""
Subscription billing engine.

Sweeps are triggered from outside (worker loop or admin API). Each due
item is processed in its own session, so one bad subscription never
stops a sweep. Charges go through the ledger with an idempotency key
derived from (subscription, cycle, attempt number, scheduled attempt
time), which makes a re-run of the same attempt an echo rather than a
second charge.
"""
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_systems.config import Settings
from payment_systems.database.models import Subscription, SubscriptionPayment, SubscriptionPlan
from payment_systems.monitoring.metrics import metrics

from .billing_dates import calculate_next_billing_date
from .clock import Clock, utcnow
from .enums import (
    OPEN_SUBSCRIPTION_PAYMENT_STATUSES,
    TERMINAL_SUBSCRIPTION_STATUSES,
    SubscriptionPaymentStatus,
    SubscriptionStatus,
    TransactionStatus,
)
from .exceptions import IdempotencyConflictError, NotFoundError, PaymentValidationError
from .ledger import TransactionLedger
from .retry_policy import RetryPolicy
from .subscriptions import SubscriptionManager
from .types import PaymentRequest, PaymentResponse

logger = structlog.get_logger(__name__)

RETRYABLE_PAYMENT_STATUSES = (
    SubscriptionPaymentStatus.FAILED,
    SubscriptionPaymentStatus.RETRYING,
)


@dataclass(frozen=True)
class BillingConfig:
    """
    Billing limits, resolved once from settings.

    An ACTIVE subscription becomes PAST_DUE when its consecutive failures
    reach past_due_threshold, or earlier when one payment uses up all
    max_retry_attempts. With the defaults (3 and 3) both happen on the
    same failure.
    """

    max_retry_attempts: int = 3
    past_due_threshold: int = 3
    batch_size: int = 500

    @classmethod
    def from_settings(cls, settings: Settings) -> "BillingConfig":
        return cls(
            max_retry_attempts=settings.billing_max_retry_attempts,
            past_due_threshold=settings.billing_past_due_threshold,
            batch_size=settings.billing_batch_size,
        )


class BillingOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class SweepResult:
    """Counters for one sweep."""

    sweep: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    trials_converted: int = 0

    def record(self, outcome: BillingOutcome) -> None:
        if outcome == BillingOutcome.SUCCEEDED:
            self.succeeded += 1
        elif outcome == BillingOutcome.FAILED:
            self.failed += 1
        else:
            self.skipped += 1
        metrics.record_billing_item(self.sweep, outcome.value)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def billing_idempotency_key(
    subscription_id: uuid.UUID, cycle_number: int, attempt_number: int, attempt_at: datetime
) -> str:
    """Ledger key for one charge attempt of one billing cycle."""
    return (
        f"sub_{subscription_id}_cycle_{cycle_number}"
        f"_attempt_{attempt_number}_{int(attempt_at.timestamp())}"
    )


class SubscriptionBillingEngine:
    """
    Finds due subscriptions and failed payments and charges them.

    Features:
    - Trial conversion ahead of each recurring sweep
    - Exponential backoff retries bounded by max_retry_attempts
    - PAST_DUE escalation and EXPIRED on the last configured cycle
    - Resumes payments left PENDING or PROCESSING by an interrupted run
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: TransactionLedger,
        subscriptions: SubscriptionManager,
        retry_policy: RetryPolicy,
        config: BillingConfig,
        clock: Clock = utcnow,
    ) -> None:
        """
        Initialize billing engine.

        Args:
            session_factory: Factory for per-item sessions
            ledger: Transaction ledger used for every charge
            subscriptions: Lifecycle manager (instrument checks, transitions)
            retry_policy: Backoff schedule for failed payments
            config: Retry and escalation limits
            clock: Source of the current time
        """
        self.session_factory = session_factory
        self.ledger = ledger
        self.subscriptions = subscriptions
        self.retry_policy = retry_policy
        self.config = config
        self.clock = clock

    async def process_recurring_billing(self) -> SweepResult:
        """
        Convert elapsed trials, then bill every ACTIVE subscription that is due.

        Returns:
            SweepResult: Counters for the sweep
        """
        start_time = time.time()
        result = SweepResult(sweep="recurring")
        result.trials_converted = await self._convert_elapsed_trials()

        now = self.clock()
        async with self.session_factory() as db:
            due = await db.execute(
                select(Subscription.id)
                .where(
                    Subscription.status == SubscriptionStatus.ACTIVE,
                    Subscription.next_billing_date <= now,
                )
                .order_by(Subscription.next_billing_date)
                .limit(self.config.batch_size)
            )
            subscription_ids = list(due.scalars().all())

        logger.info("recurring_billing_started", due_count=len(subscription_ids))

        for subscription_id in subscription_ids:
            result.processed += 1
            with structlog.contextvars.bound_contextvars(subscription_id=str(subscription_id)):
                try:
                    async with self.session_factory() as db:
                        outcome = await self._bill_due_subscription(subscription_id, db)
                    result.record(outcome)
                except Exception as e:
                    result.errors += 1
                    metrics.record_billing_item(result.sweep, "error")
                    logger.error(
                        "subscription_billing_error",
                        error=str(e),
                        error_type=type(e).__name__,
                        exc_info=True,
                    )

        duration = time.time() - start_time
        metrics.record_billing_sweep(result.sweep, duration)
        logger.info("recurring_billing_completed", duration_seconds=duration, **result.as_dict())
        return result

    async def process_failed_payment_retries(self) -> SweepResult:
        """
        Retry failed payments whose backoff has elapsed.

        Payments of cancelled or expired subscriptions are cancelled
        instead of charged.
        """
        start_time = time.time()
        result = SweepResult(sweep="retry")

        now = self.clock()
        async with self.session_factory() as db:
            due = await db.execute(
                select(SubscriptionPayment.id)
                .where(
                    SubscriptionPayment.status.in_(RETRYABLE_PAYMENT_STATUSES),
                    SubscriptionPayment.retry_count < SubscriptionPayment.max_retry_attempts,
                    SubscriptionPayment.next_retry_at.is_not(None),
                    SubscriptionPayment.next_retry_at <= now,
                )
                .order_by(SubscriptionPayment.next_retry_at)
                .limit(self.config.batch_size)
            )
            payment_ids = list(due.scalars().all())

        logger.info("payment_retries_started", due_count=len(payment_ids))

        for payment_id in payment_ids:
            result.processed += 1
            with structlog.contextvars.bound_contextvars(payment_id=str(payment_id)):
                try:
                    async with self.session_factory() as db:
                        outcome = await self._retry_payment(payment_id, db)
                    result.record(outcome)
                except Exception as e:
                    result.errors += 1
                    metrics.record_billing_item(result.sweep, "error")
                    logger.error(
                        "payment_retry_error",
                        error=str(e),
                        error_type=type(e).__name__,
                        exc_info=True,
                    )

        duration = time.time() - start_time
        metrics.record_billing_sweep(result.sweep, duration)
        logger.info("payment_retries_completed", duration_seconds=duration, **result.as_dict())
        return result

    async def process_subscription_billing_manual(self, subscription_id: uuid.UUID) -> SweepResult:
        """
        Bill one subscription now, regardless of its next billing date.

        Raises:
            NotFoundError: If the subscription does not exist
            PaymentValidationError: If it is cancelled or expired
        """
        result = SweepResult(sweep="manual", processed=1)
        async with self.session_factory() as db:
            subscription = await db.get(Subscription, subscription_id)
            if subscription is None:
                raise NotFoundError(f"Subscription {subscription_id} not found")
            if subscription.status in TERMINAL_SUBSCRIPTION_STATUSES:
                raise PaymentValidationError(
                    f"Cannot bill subscription with status: {subscription.status.value}"
                )
            logger.info("manual_billing_requested", subscription_id=str(subscription_id))
            outcome = await self._bill_subscription(subscription, db, manual=True)
        result.record(outcome)
        return result

    async def _convert_elapsed_trials(self) -> int:
        now = self.clock()
        async with self.session_factory() as db:
            elapsed = await db.execute(
                select(Subscription).where(
                    Subscription.status == SubscriptionStatus.TRIAL,
                    Subscription.trial_end.is_not(None),
                    Subscription.trial_end <= now,
                )
            )
            trials = elapsed.scalars().all()
            for subscription in trials:
                self.subscriptions.transition(subscription, SubscriptionStatus.ACTIVE)
            await db.commit()

        if trials:
            logger.info("trials_converted", count=len(trials))
        return len(trials)

    async def _bill_due_subscription(
        self, subscription_id: uuid.UUID, db: AsyncSession
    ) -> BillingOutcome:
        subscription = await db.get(Subscription, subscription_id)
        # Re-check: the selection may be stale by the time the item runs
        if (
            subscription is None
            or subscription.status != SubscriptionStatus.ACTIVE
            or subscription.next_billing_date > self.clock()
        ):
            return BillingOutcome.SKIPPED
        return await self._bill_subscription(subscription, db, manual=False)

    async def _bill_subscription(
        self, subscription: Subscription, db: AsyncSession, manual: bool
    ) -> BillingOutcome:
        plan = await db.get(SubscriptionPlan, subscription.plan_id)
        if plan is None:
            raise NotFoundError(f"Subscription plan {subscription.plan_id} not found")

        cycle_number = subscription.billing_cycle_count + 1
        payment = await self._open_payment(subscription.id, cycle_number, db)

        if payment is not None and payment.status == SubscriptionPaymentStatus.RETRYING:
            if not manual:
                logger.info(
                    "billing_skipped_retry_pending",
                    payment_id=str(payment.id),
                    next_retry_at=payment.next_retry_at.isoformat() if payment.next_retry_at else None,
                )
                return BillingOutcome.SKIPPED
            payment.retry_count += 1
        elif payment is not None:
            logger.info(
                "billing_resuming_payment",
                payment_id=str(payment.id),
                status=payment.status.value,
            )
        else:
            now = self.clock()
            payment = SubscriptionPayment(
                id=uuid.uuid4(),
                subscription_id=subscription.id,
                amount=plan.amount,
                currency=plan.currency,
                billing_date=now if manual else subscription.next_billing_date,
                cycle_number=cycle_number,
                status=SubscriptionPaymentStatus.PENDING,
                retry_count=0,
                max_retry_attempts=self.config.max_retry_attempts,
                created_at=now,
            )
            db.add(payment)
            await db.commit()
            logger.info(
                "subscription_payment_created",
                payment_id=str(payment.id),
                cycle_number=cycle_number,
                amount=str(payment.amount),
            )

        return await self._attempt(subscription, plan, payment, db)

    async def _retry_payment(self, payment_id: uuid.UUID, db: AsyncSession) -> BillingOutcome:
        payment = await db.get(SubscriptionPayment, payment_id)
        if (
            payment is None
            or payment.status not in RETRYABLE_PAYMENT_STATUSES
            or payment.next_retry_at is None
            or payment.next_retry_at > self.clock()
            or payment.retry_count >= payment.max_retry_attempts
        ):
            return BillingOutcome.SKIPPED

        subscription = await db.get(Subscription, payment.subscription_id)
        if subscription is None or subscription.status in TERMINAL_SUBSCRIPTION_STATUSES:
            payment.status = SubscriptionPaymentStatus.CANCELLED
            payment.next_retry_at = None
            await db.commit()
            logger.info(
                "payment_retry_cancelled",
                subscription_status=subscription.status.value if subscription else None,
            )
            return BillingOutcome.SKIPPED

        plan = await db.get(SubscriptionPlan, subscription.plan_id)
        if plan is None:
            raise NotFoundError(f"Subscription plan {subscription.plan_id} not found")

        payment.retry_count += 1
        return await self._attempt(subscription, plan, payment, db)

    async def _open_payment(
        self, subscription_id: uuid.UUID, cycle_number: int, db: AsyncSession
    ) -> Optional[SubscriptionPayment]:
        result = await db.execute(
            select(SubscriptionPayment)
            .where(
                SubscriptionPayment.subscription_id == subscription_id,
                SubscriptionPayment.cycle_number == cycle_number,
                SubscriptionPayment.status.in_(OPEN_SUBSCRIPTION_PAYMENT_STATUSES),
            )
            .order_by(SubscriptionPayment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _attempt(
        self,
        subscription: Subscription,
        plan: SubscriptionPlan,
        payment: SubscriptionPayment,
        db: AsyncSession,
    ) -> BillingOutcome:
        """Charge one attempt of a payment and apply the outcome."""
        attempt_at = payment.created_at if payment.retry_count == 0 else payment.next_retry_at
        idempotency_key = billing_idempotency_key(
            subscription.id,
            payment.cycle_number,
            payment.retry_count + 1,
            attempt_at or payment.created_at,
        )
        payment.status = SubscriptionPaymentStatus.PROCESSING
        await db.commit()

        response: Optional[PaymentResponse] = None
        failure_reason: Optional[str] = None
        try:
            instrument = await self.subscriptions.require_instrument(
                subscription.payment_instrument_id, subscription.customer_id
            )
            response = await self.ledger.create_purchase(
                PaymentRequest(
                    idempotency_key=idempotency_key,
                    amount=payment.amount,
                    currency=payment.currency,
                    instrument=instrument,
                    customer_id=subscription.customer_id,
                    order_id=f"sub_{subscription.id.hex}_cycle_{payment.cycle_number}",
                    description=f"{plan.name} billing cycle {payment.cycle_number}",
                    metadata={
                        "subscription_id": str(subscription.id),
                        "subscription_payment_id": str(payment.id),
                        "cycle_number": payment.cycle_number,
                        "attempt": payment.retry_count + 1,
                    },
                ),
                db,
            )
        except IdempotencyConflictError:
            logger.warning("billing_attempt_in_progress", idempotency_key=idempotency_key)
            return BillingOutcome.SKIPPED
        except Exception as e:
            # The ledger rolled back; reload what this session holds
            await db.refresh(payment)
            await db.refresh(subscription)
            failure_reason = str(e) or type(e).__name__
            logger.error(
                "billing_charge_error",
                payment_id=str(payment.id),
                idempotency_key=idempotency_key,
                error=failure_reason,
                error_type=type(e).__name__,
            )

        if response is not None and response.status == TransactionStatus.COMPLETED:
            self._apply_success(subscription, plan, payment, response)
            outcome = BillingOutcome.SUCCEEDED
        else:
            if response is not None:
                payment.transaction_id = response.transaction_id
                failure_reason = response.message or "Payment declined"
            self._apply_failure(subscription, payment, failure_reason or "Payment failed")
            outcome = BillingOutcome.FAILED

        await db.commit()
        logger.info(
            "subscription_payment_processed",
            payment_id=str(payment.id),
            cycle_number=payment.cycle_number,
            outcome=outcome.value,
            payment_status=payment.status.value,
            retry_count=payment.retry_count,
            next_retry_at=payment.next_retry_at.isoformat() if payment.next_retry_at else None,
            subscription_status=subscription.status.value,
            failed_payment_count=subscription.failed_payment_count,
        )
        return outcome

    def _apply_success(
        self,
        subscription: Subscription,
        plan: SubscriptionPlan,
        payment: SubscriptionPayment,
        response: PaymentResponse,
    ) -> None:
        now = self.clock()
        payment.status = SubscriptionPaymentStatus.COMPLETED
        payment.transaction_id = response.transaction_id
        payment.processed_at = now
        payment.next_retry_at = None
        payment.failure_reason = None

        period_start = subscription.next_billing_date
        next_billing_date = calculate_next_billing_date(
            period_start, plan.billing_interval, plan.billing_interval_count
        )
        subscription.billing_cycle_count += 1
        subscription.failed_payment_count = 0
        subscription.last_payment_date = now
        subscription.last_payment_amount = payment.amount
        subscription.current_period_start = period_start
        subscription.current_period_end = next_billing_date
        subscription.next_billing_date = next_billing_date

        if subscription.status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.TRIAL):
            self.subscriptions.transition(subscription, SubscriptionStatus.ACTIVE)

        if (
            plan.max_billing_cycles is not None
            and subscription.billing_cycle_count >= plan.max_billing_cycles
        ):
            self.subscriptions.transition(subscription, SubscriptionStatus.EXPIRED)
            subscription.ended_at = now

    def _apply_failure(
        self, subscription: Subscription, payment: SubscriptionPayment, reason: str
    ) -> None:
        now = self.clock()
        payment.failure_reason = reason
        payment.processed_at = now
        if payment.retry_count + 1 < payment.max_retry_attempts:
            payment.status = SubscriptionPaymentStatus.RETRYING
            payment.next_retry_at = self.retry_policy.next_retry_at(payment.retry_count, now)
        else:
            payment.status = SubscriptionPaymentStatus.FAILED
            payment.next_retry_at = None

        subscription.failed_payment_count += 1
        exhausted = payment.status == SubscriptionPaymentStatus.FAILED
        if subscription.status == SubscriptionStatus.ACTIVE and (
            exhausted or subscription.failed_payment_count >= self.config.past_due_threshold
        ):
            self.subscriptions.transition(subscription, SubscriptionStatus.PAST_DUE)
