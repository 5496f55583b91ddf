"""
Stripe implementation of the payment gateway and instrument directory.

Implements:
- Circuit breaker pattern
- Provider-side idempotency keyed on the merchant reference
- Error classification into declines (data) and infrastructure errors

Calls are never retried here. Retries are owned by the ledger and the
billing engine, which scope them with their own idempotency keys.
"""
import asyncio
import threading
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple, Type

import stripe
import structlog

from payment_systems.config import Settings
from payment_systems.core.billing_dates import calculate_next_billing_date
from payment_systems.core.enums import BillingInterval, PaymentMethodKind
from payment_systems.core.types import MandateRequest, PaymentInstrument
from payment_systems.monitoring.metrics import metrics

from .gateway import (
    GatewayError,
    GatewayErrorType,
    GatewayResult,
    UNLIMITED_OCCURRENCES,
    MandateResult,
    to_minor_units,
    to_unix_timestamp,
)

logger = structlog.get_logger(__name__)

_DECLINE_ERRORS: Tuple[Type[Exception], ...] = (stripe.CardError, stripe.InvalidRequestError)

_STRIPE_INTERVALS: Dict[BillingInterval, Tuple[str, int]] = {
    BillingInterval.DAILY: ("day", 1),
    BillingInterval.WEEKLY: ("week", 1),
    BillingInterval.MONTHLY: ("month", 1),
    BillingInterval.QUARTERLY: ("month", 3),
    BillingInterval.YEARLY: ("year", 1),
}


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Stops calling the provider while its error rate is over threshold.
    Declines are valid answers and do not count as failures.

    Calls arrive from executor threads; state and counters change only
    under the lock, which is never held while the provider is called.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
        excluded_exceptions: Tuple[Type[Exception], ...] = _DECLINE_ERRORS,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
            excluded_exceptions: Exceptions passed through without counting
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.excluded_exceptions = excluded_exceptions
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open
        self._lock = threading.Lock()

    def call(self, func: Callable[[], Any]) -> Any:
        """
        Execute function with circuit breaker protection.

        Raises:
            GatewayError: If circuit is open
        """
        self._admit()
        try:
            result = func()
        except self.excluded_exceptions:
            self.on_success()
            raise
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        with self._lock:
            self.failure_count = 0
            if self.state == "half_open":
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self._set_state("closed")
                    logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()
            if self.state == "half_open" or self.failure_count >= self.failure_threshold:
                self._set_state("open")
                logger.warning("circuit_breaker_opened", failure_count=self.failure_count)

    def _admit(self) -> None:
        with self._lock:
            if self.state != "open":
                return
            if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
                return
        raise GatewayError("Circuit breaker is open", GatewayErrorType.TRANSIENT)

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


def _payload(obj: Any) -> Dict[str, Any]:
    """JSON-safe copy of a Stripe object."""
    to_dict = getattr(obj, "to_dict_recursive", None) or getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _decline_message(error: stripe.StripeError) -> str:
    return getattr(error, "user_message", None) or str(error) or "Payment declined"


class StripeGateway:
    """
    Stripe-backed payment gateway.

    Purchases and authorizations are confirmed off-session PaymentIntents
    against the instrument's stored PaymentMethod. Recurring mandates are
    Stripe Subscriptions with collection paused; charges themselves always
    go through the ledger.
    """

    def __init__(
        self,
        settings: Settings,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """Initialize Stripe gateway."""
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.gateway_failure_threshold,
            timeout=settings.gateway_recovery_timeout,
        )

        logger.info(
            "stripe_gateway_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> GatewayErrorType:
        """
        Classify Stripe error.

        Args:
            error: Stripe error

        Returns:
            GatewayErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return GatewayErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return GatewayErrorType.TRANSIENT
        elif isinstance(error, (stripe.AuthenticationError, stripe.PermissionError)):
            return GatewayErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return GatewayErrorType.TRANSIENT

    async def _call(self, operation: str, func: Callable[[], Any]) -> Any:
        """
        Run a blocking Stripe call off the event loop behind the circuit breaker.

        Declines and network failures propagate as Stripe exceptions for the
        caller to normalize; everything else becomes GatewayError.
        """
        start_time = time.time()
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, self.circuit_breaker.call, func)
        except _DECLINE_ERRORS:
            metrics.record_gateway_call(operation, "declined", time.time() - start_time)
            raise
        except stripe.APIConnectionError as e:
            metrics.record_gateway_call(operation, "error", time.time() - start_time)
            metrics.record_gateway_error(GatewayErrorType.TRANSIENT.value)
            logger.warning("stripe_network_error", operation=operation, error_message=str(e))
            raise
        except stripe.StripeError as e:
            metrics.record_gateway_call(operation, "error", time.time() - start_time)
            error_type = self._classify_error(e)
            metrics.record_gateway_error(error_type.value)
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise GatewayError(str(e), error_type, original_error=e) from e
        except GatewayError as e:
            metrics.record_gateway_call(operation, "error", time.time() - start_time)
            metrics.record_gateway_error(e.error_type.value)
            logger.error("stripe_call_rejected", operation=operation, error_message=str(e))
            raise

        metrics.record_gateway_call(operation, "success", time.time() - start_time)
        return result

    async def _execute(
        self,
        operation: str,
        func: Callable[[], Any],
        succeeded: Callable[[Dict[str, Any]], bool],
        extra_payload: Optional[Dict[str, Any]] = None,
    ) -> GatewayResult:
        """Run a charge-type call and normalize the outcome."""
        try:
            obj = await self._call(operation, func)
        except _DECLINE_ERRORS as e:
            logger.info(
                "stripe_operation_declined",
                operation=operation,
                error_code=getattr(e, "code", None),
            )
            return GatewayResult(
                success=False,
                message=_decline_message(e),
                raw_payload={
                    "error": {
                        "type": type(e).__name__,
                        "code": getattr(e, "code", None),
                        "message": str(e),
                    }
                },
            )
        except stripe.APIConnectionError as e:
            return GatewayResult(
                success=False,
                message=f"Gateway network error: {e}",
                raw_payload={"error": {"type": "network", "message": str(e)}},
            )

        payload = _payload(obj)
        if extra_payload:
            payload.update(extra_payload)
        ok = succeeded(payload)
        charge = payload.get("latest_charge")
        result = GatewayResult(
            success=ok,
            gateway_ref=payload.get("id"),
            auth_code=charge if isinstance(charge, str) else None,
            message=None if ok else f"Unexpected gateway status: {payload.get('status')}",
            raw_payload=payload,
        )
        logger.info(
            "stripe_operation_completed",
            operation=operation,
            gateway_ref=result.gateway_ref,
            status=payload.get("status"),
            success=ok,
        )
        return result

    def _intent_call(
        self,
        amount: Decimal,
        currency: str,
        instrument: PaymentInstrument,
        reference: str,
        capture_method: str,
        order_ref: Optional[str],
        description: Optional[str],
    ) -> Callable[[], Any]:
        def _create() -> Any:
            return stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=currency.lower(),
                customer=instrument.customer_id,
                payment_method=instrument.token,
                confirm=True,
                off_session=True,
                capture_method=capture_method,
                description=description,
                metadata={"merchant_reference": reference, "order_id": order_ref or ""},
                idempotency_key=reference,
            )

        return _create

    async def purchase(
        self,
        amount: Decimal,
        currency: str,
        instrument: PaymentInstrument,
        reference: str,
        order_ref: Optional[str] = None,
        description: Optional[str] = None,
    ) -> GatewayResult:
        """Authorize and capture in one step."""
        logger.info("stripe_purchase", reference=reference, amount=str(amount), currency=currency)
        func = self._intent_call(
            amount, currency, instrument, reference, "automatic", order_ref, description
        )
        return await self._execute(
            "purchase",
            func,
            lambda p: p.get("status") == "succeeded",
            {"instrument_hint": instrument.last_four},
        )

    async def authorize(
        self,
        amount: Decimal,
        currency: str,
        instrument: PaymentInstrument,
        reference: str,
        order_ref: Optional[str] = None,
        description: Optional[str] = None,
    ) -> GatewayResult:
        """Place a hold without capturing funds."""
        logger.info("stripe_authorize", reference=reference, amount=str(amount), currency=currency)
        func = self._intent_call(
            amount, currency, instrument, reference, "manual", order_ref, description
        )
        return await self._execute(
            "authorize",
            func,
            lambda p: p.get("status") in ("requires_capture", "succeeded"),
            {"instrument_hint": instrument.last_four},
        )

    async def capture(
        self, gateway_ref: str, amount: Decimal, currency: str, reference: str
    ) -> GatewayResult:
        """Capture a previously authorized PaymentIntent."""
        logger.info("stripe_capture", gateway_ref=gateway_ref, amount=str(amount))

        def _capture() -> Any:
            return stripe.PaymentIntent.capture(
                gateway_ref,
                amount_to_capture=to_minor_units(amount),
                idempotency_key=reference,
            )

        return await self._execute("capture", _capture, lambda p: p.get("status") == "succeeded")

    async def refund(
        self,
        gateway_ref: str,
        amount: Decimal,
        currency: str,
        reference: str,
        instrument_hint: Optional[str] = None,
    ) -> GatewayResult:
        """Refund part or all of a captured PaymentIntent."""
        logger.info(
            "stripe_refund",
            gateway_ref=gateway_ref,
            amount=str(amount),
            instrument_hint=instrument_hint,
        )

        def _refund() -> Any:
            return stripe.Refund.create(
                payment_intent=gateway_ref,
                amount=to_minor_units(amount),
                metadata={"merchant_reference": reference},
                idempotency_key=reference,
            )

        return await self._execute(
            "refund", _refund, lambda p: p.get("status") in ("succeeded", "pending")
        )

    async def void(self, gateway_ref: str, reference: str) -> GatewayResult:
        """Release an uncaptured authorization."""
        logger.info("stripe_void", gateway_ref=gateway_ref)

        def _cancel() -> Any:
            return stripe.PaymentIntent.cancel(gateway_ref, idempotency_key=reference)

        return await self._execute("void", _cancel, lambda p: p.get("status") == "canceled")

    async def create_recurring_mandate(self, request: MandateRequest) -> MandateResult:
        """
        Register the recurring schedule with Stripe.

        Creates a recurring Price and a Subscription for the customer with
        collection paused, so Stripe holds the mandate while every charge
        is still made by the ledger.
        """
        interval, multiplier = _STRIPE_INTERVALS[BillingInterval(request.interval)]
        params: Dict[str, Any] = {
            "customer": request.customer_id,
            "default_payment_method": request.instrument.token,
            "pause_collection": {"behavior": "void"},
            "metadata": {"reference": request.reference},
            "idempotency_key": request.reference,
        }
        if request.start_date.timestamp() > time.time():
            params["trial_end"] = to_unix_timestamp(request.start_date)
        if request.total_occurrences != UNLIMITED_OCCURRENCES:
            ends_at = calculate_next_billing_date(
                request.start_date,
                request.interval,
                request.interval_count * request.total_occurrences,
            )
            params["cancel_at"] = to_unix_timestamp(ends_at)

        logger.info(
            "stripe_mandate_create",
            reference=request.reference,
            customer_id=request.customer_id,
            total_occurrences=request.total_occurrences,
        )

        def _create() -> Any:
            price = stripe.Price.create(
                unit_amount=to_minor_units(request.amount),
                currency=request.currency.lower(),
                recurring={
                    "interval": interval,
                    "interval_count": multiplier * request.interval_count,
                },
                product_data={"name": request.plan_name},
                idempotency_key=f"{request.reference}_price",
            )
            return stripe.Subscription.create(items=[{"price": price["id"]}], **params)

        try:
            subscription = await self._call("create_mandate", _create)
        except _DECLINE_ERRORS as e:
            return MandateResult(success=False, message=_decline_message(e))
        except stripe.APIConnectionError as e:
            return MandateResult(success=False, message=f"Gateway network error: {e}")

        payload = _payload(subscription)
        return MandateResult(success=True, mandate_ref=payload.get("id"), raw_payload=payload)

    async def cancel_recurring_mandate(self, mandate_ref: str) -> MandateResult:
        """Cancel the Stripe Subscription backing a mandate."""
        logger.info("stripe_mandate_cancel", mandate_ref=mandate_ref)

        def _cancel() -> Any:
            return stripe.Subscription.cancel(mandate_ref)

        try:
            subscription = await self._call("cancel_mandate", _cancel)
        except _DECLINE_ERRORS as e:
            return MandateResult(success=False, mandate_ref=mandate_ref, message=str(e))
        except stripe.APIConnectionError as e:
            return MandateResult(
                success=False, mandate_ref=mandate_ref, message=f"Gateway network error: {e}"
            )

        payload = _payload(subscription)
        return MandateResult(
            success=payload.get("status") == "canceled",
            mandate_ref=mandate_ref,
            raw_payload=payload,
        )

    async def get_instrument(self, instrument_id: str) -> Optional[PaymentInstrument]:
        """
        Look up a stored PaymentMethod.

        Returns None for unknown ids. A PaymentMethod detached from its
        customer is reported as inactive.
        """
        def _retrieve() -> Any:
            return stripe.PaymentMethod.retrieve(instrument_id)

        try:
            method = _payload(await self._call("retrieve_instrument", _retrieve))
        except stripe.InvalidRequestError:
            return None
        except (stripe.CardError, stripe.APIConnectionError) as e:
            raise GatewayError(str(e), GatewayErrorType.TRANSIENT, original_error=e) from e

        method_type = method.get("type")
        details = method.get(method_type) or {}
        if method_type == "card":
            kind = (
                PaymentMethodKind.DEBIT_CARD
                if details.get("funding") == "debit"
                else PaymentMethodKind.CREDIT_CARD
            )
        else:
            kind = PaymentMethodKind.BANK_TRANSFER

        customer = method.get("customer")
        return PaymentInstrument(
            id=method["id"],
            customer_id=customer or "",
            kind=kind,
            token=method["id"],
            last_four=details.get("last4"),
            is_active=customer is not None,
        )
