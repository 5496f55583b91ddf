"""
API routes for payments, plans, subscriptions and billing administration.

Domain errors are mapped to HTTP status codes by the exception handlers
registered in api.main.
"""
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from payment_systems.core.billing_engine import SubscriptionBillingEngine
from payment_systems.core.enums import PlanStatus, SubscriptionStatus, TransactionType
from payment_systems.core.ledger import TransactionLedger
from payment_systems.core.plans import PlanRegistry
from payment_systems.core.subscriptions import SubscriptionManager
from payment_systems.core.types import (
    CancelSubscriptionRequest,
    CaptureRequest,
    CreatePlanRequest,
    CreateSubscriptionRequest,
    PaymentRequest,
    PaymentResponse,
    RefundRequest,
    UpdatePlanRequest,
    UpdateSubscriptionRequest,
    VoidRequest,
)
from payment_systems.database.connection import get_db
from payment_systems.monitoring.health import HealthCheck

from .dependencies import (
    get_billing_engine,
    get_health_check,
    get_ledger,
    get_plan_registry,
    get_subscription_manager,
)
from .schemas import (
    CaptureRequestBody,
    HealthCheckResponse,
    PaymentCreateRequest,
    PaymentListResponse,
    PaymentResponseSchema,
    PlanCreateRequest,
    PlanResponse,
    PlanUpdateRequest,
    RefundRequestBody,
    SubscriptionCancelRequest,
    SubscriptionCreateRequest,
    SubscriptionPaymentResponse,
    SubscriptionResponse,
    SubscriptionUpdateRequest,
    SweepResponse,
    VoidRequestBody,
)

logger = structlog.get_logger(__name__)

payment_router = APIRouter(prefix="/payments", tags=["payments"])
plan_router = APIRouter(prefix="/plans", tags=["plans"])
subscription_router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

IdempotencyKey = Header(
    ...,
    alias="Idempotency-Key",
    min_length=1,
    max_length=255,
    description="Caller-supplied key; a retry with the same key is applied at most once",
)


def _payment_response(result: PaymentResponse, response: Response) -> PaymentResponseSchema:
    # A replayed request did not create anything
    if result.duplicate:
        response.status_code = status.HTTP_200_OK
    return PaymentResponseSchema.model_validate(result)


async def _charge(
    request: PaymentCreateRequest,
    idempotency_key: str,
    authorize_only: bool,
    ledger: TransactionLedger,
    subscriptions: SubscriptionManager,
    db: AsyncSession,
) -> PaymentResponse:
    # Replays echo the stored result without touching the instrument
    operation = TransactionType.AUTHORIZATION if authorize_only else TransactionType.PURCHASE
    duplicate = await ledger.replay(idempotency_key, operation, db)
    if duplicate is not None:
        return duplicate

    instrument = await subscriptions.require_instrument(request.instrument_id, request.customer_id)
    payment_request = PaymentRequest(
        idempotency_key=idempotency_key,
        amount=request.amount,
        currency=request.currency,
        instrument=instrument,
        customer_id=request.customer_id,
        order_id=request.order_id,
        description=request.description,
        metadata=request.metadata,
    )
    if authorize_only:
        return await ledger.create_authorization(payment_request, db)
    return await ledger.create_purchase(payment_request, db)


@payment_router.post(
    "/purchase",
    response_model=PaymentResponseSchema,
    status_code=status.HTTP_201_CREATED,
    summary="Purchase",
    description="Authorize and capture in one step, idempotent per Idempotency-Key",
)
async def create_purchase(
    request: PaymentCreateRequest,
    response: Response,
    idempotency_key: str = IdempotencyKey,
    ledger: TransactionLedger = Depends(get_ledger),
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponseSchema:
    logger.info(
        "api_purchase_request",
        customer_id=request.customer_id,
        amount=str(request.amount),
        currency=request.currency,
    )
    result = await _charge(request, idempotency_key, False, ledger, subscriptions, db)
    return _payment_response(result, response)


@payment_router.post(
    "/authorize",
    response_model=PaymentResponseSchema,
    status_code=status.HTTP_201_CREATED,
    summary="Authorize",
    description="Place a hold for later capture or void",
)
async def create_authorization(
    request: PaymentCreateRequest,
    response: Response,
    idempotency_key: str = IdempotencyKey,
    ledger: TransactionLedger = Depends(get_ledger),
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponseSchema:
    logger.info(
        "api_authorize_request",
        customer_id=request.customer_id,
        amount=str(request.amount),
        currency=request.currency,
    )
    result = await _charge(request, idempotency_key, True, ledger, subscriptions, db)
    return _payment_response(result, response)


@payment_router.post(
    "/{transaction_id}/capture",
    response_model=PaymentResponseSchema,
    status_code=status.HTTP_201_CREATED,
    summary="Capture an authorization",
)
async def capture_payment(
    transaction_id: UUID,
    response: Response,
    body: Optional[CaptureRequestBody] = None,
    idempotency_key: str = IdempotencyKey,
    ledger: TransactionLedger = Depends(get_ledger),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponseSchema:
    result = await ledger.capture_payment(
        CaptureRequest(
            idempotency_key=idempotency_key,
            transaction_id=transaction_id,
            amount=body.amount if body else None,
        ),
        db,
    )
    return _payment_response(result, response)


@payment_router.post(
    "/{transaction_id}/refund",
    response_model=PaymentResponseSchema,
    status_code=status.HTTP_201_CREATED,
    summary="Refund a purchase or capture",
)
async def refund_payment(
    transaction_id: UUID,
    response: Response,
    body: Optional[RefundRequestBody] = None,
    idempotency_key: str = IdempotencyKey,
    ledger: TransactionLedger = Depends(get_ledger),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponseSchema:
    result = await ledger.refund_payment(
        RefundRequest(
            idempotency_key=idempotency_key,
            transaction_id=transaction_id,
            amount=body.amount if body else None,
            reason=body.reason if body else None,
        ),
        db,
    )
    return _payment_response(result, response)


@payment_router.post(
    "/{transaction_id}/void",
    response_model=PaymentResponseSchema,
    status_code=status.HTTP_201_CREATED,
    summary="Void an authorization",
)
async def void_payment(
    transaction_id: UUID,
    response: Response,
    body: Optional[VoidRequestBody] = None,
    idempotency_key: str = IdempotencyKey,
    ledger: TransactionLedger = Depends(get_ledger),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponseSchema:
    result = await ledger.cancel_payment(
        VoidRequest(
            idempotency_key=idempotency_key,
            transaction_id=transaction_id,
            reason=body.reason if body else None,
        ),
        db,
    )
    return _payment_response(result, response)


@payment_router.get(
    "/{transaction_id}",
    response_model=PaymentResponseSchema,
    summary="Get transaction",
)
async def get_transaction(
    transaction_id: UUID,
    ledger: TransactionLedger = Depends(get_ledger),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponseSchema:
    return PaymentResponseSchema.model_validate(await ledger.get_transaction(transaction_id, db))


@payment_router.get(
    "/{transaction_id}/children",
    response_model=PaymentListResponse,
    summary="List captures, refunds and voids of a transaction",
)
async def list_child_transactions(
    transaction_id: UUID,
    ledger: TransactionLedger = Depends(get_ledger),
    db: AsyncSession = Depends(get_db),
) -> PaymentListResponse:
    await ledger.get_transaction(transaction_id, db)
    children = await ledger.list_child_transactions(transaction_id, db)
    return PaymentListResponse(
        items=[PaymentResponseSchema.model_validate(child) for child in children]
    )


@plan_router.post(
    "",
    response_model=PlanResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a subscription plan",
)
async def create_plan(
    request: PlanCreateRequest,
    plans: PlanRegistry = Depends(get_plan_registry),
    db: AsyncSession = Depends(get_db),
) -> PlanResponse:
    plan = await plans.create_plan(CreatePlanRequest(**request.model_dump()), db)
    return PlanResponse.model_validate(plan)


@plan_router.get("", response_model=List[PlanResponse], summary="List subscription plans")
async def list_plans(
    active_only: bool = False,
    plan_status: Optional[PlanStatus] = None,
    plans: PlanRegistry = Depends(get_plan_registry),
    db: AsyncSession = Depends(get_db),
) -> List[PlanResponse]:
    result = await plans.list_plans(db, active_only=active_only, status=plan_status)
    return [PlanResponse.model_validate(plan) for plan in result]


@plan_router.get("/{plan_id}", response_model=PlanResponse, summary="Get subscription plan")
async def get_plan(
    plan_id: UUID,
    plans: PlanRegistry = Depends(get_plan_registry),
    db: AsyncSession = Depends(get_db),
) -> PlanResponse:
    return PlanResponse.model_validate(await plans.get_plan(plan_id, db))


@plan_router.patch("/{plan_id}", response_model=PlanResponse, summary="Update plan details")
async def update_plan(
    plan_id: UUID,
    request: PlanUpdateRequest,
    plans: PlanRegistry = Depends(get_plan_registry),
    db: AsyncSession = Depends(get_db),
) -> PlanResponse:
    plan = await plans.update_plan(plan_id, UpdatePlanRequest(**request.model_dump()), db)
    return PlanResponse.model_validate(plan)


@plan_router.post("/{plan_id}/deactivate", response_model=PlanResponse, summary="Deactivate plan")
async def deactivate_plan(
    plan_id: UUID,
    plans: PlanRegistry = Depends(get_plan_registry),
    db: AsyncSession = Depends(get_db),
) -> PlanResponse:
    return PlanResponse.model_validate(await plans.deactivate_plan(plan_id, db))


@plan_router.post("/{plan_id}/archive", response_model=PlanResponse, summary="Archive plan")
async def archive_plan(
    plan_id: UUID,
    plans: PlanRegistry = Depends(get_plan_registry),
    db: AsyncSession = Depends(get_db),
) -> PlanResponse:
    return PlanResponse.model_validate(await plans.archive_plan(plan_id, db))


@plan_router.delete(
    "/{plan_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an unused plan",
)
async def delete_plan(
    plan_id: UUID,
    plans: PlanRegistry = Depends(get_plan_registry),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await plans.delete_plan(plan_id, db)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@subscription_router.post(
    "",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a subscription",
)
async def create_subscription(
    request: SubscriptionCreateRequest,
    response: Response,
    idempotency_key: str = IdempotencyKey,
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
    db: AsyncSession = Depends(get_db),
) -> SubscriptionResponse:
    logger.info(
        "api_create_subscription_request",
        customer_id=request.customer_id,
        plan_id=str(request.plan_id),
    )
    create_request = CreateSubscriptionRequest(
        idempotency_key=idempotency_key, **request.model_dump()
    )
    subscription = await subscriptions.replay(create_request, db)
    if subscription is not None:
        response.status_code = status.HTTP_200_OK
    else:
        subscription = await subscriptions.create_subscription(create_request, db)
    return SubscriptionResponse.model_validate(subscription)


@subscription_router.get(
    "", response_model=List[SubscriptionResponse], summary="List subscriptions"
)
async def list_subscriptions(
    customer_id: Optional[str] = None,
    subscription_status: Optional[SubscriptionStatus] = None,
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
    db: AsyncSession = Depends(get_db),
) -> List[SubscriptionResponse]:
    result = await subscriptions.list_subscriptions(
        db, customer_id=customer_id, status=subscription_status
    )
    return [SubscriptionResponse.model_validate(subscription) for subscription in result]


@subscription_router.get(
    "/{subscription_id}", response_model=SubscriptionResponse, summary="Get subscription"
)
async def get_subscription(
    subscription_id: UUID,
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
    db: AsyncSession = Depends(get_db),
) -> SubscriptionResponse:
    return SubscriptionResponse.model_validate(
        await subscriptions.get_subscription(subscription_id, db)
    )


@subscription_router.patch(
    "/{subscription_id}", response_model=SubscriptionResponse, summary="Update subscription"
)
async def update_subscription(
    subscription_id: UUID,
    request: SubscriptionUpdateRequest,
    idempotency_key: str = IdempotencyKey,
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
    db: AsyncSession = Depends(get_db),
) -> SubscriptionResponse:
    subscription = await subscriptions.update_subscription(
        subscription_id,
        UpdateSubscriptionRequest(idempotency_key=idempotency_key, **request.model_dump()),
        db,
    )
    return SubscriptionResponse.model_validate(subscription)


@subscription_router.post(
    "/{subscription_id}/cancel",
    response_model=SubscriptionResponse,
    summary="Cancel subscription",
)
async def cancel_subscription(
    subscription_id: UUID,
    request: Optional[SubscriptionCancelRequest] = None,
    idempotency_key: str = IdempotencyKey,
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
    db: AsyncSession = Depends(get_db),
) -> SubscriptionResponse:
    request = request or SubscriptionCancelRequest()
    subscription = await subscriptions.cancel_subscription(
        subscription_id,
        CancelSubscriptionRequest(idempotency_key=idempotency_key, **request.model_dump()),
        db,
    )
    return SubscriptionResponse.model_validate(subscription)


@subscription_router.get(
    "/{subscription_id}/payments",
    response_model=List[SubscriptionPaymentResponse],
    summary="List billing cycle payments",
)
async def list_subscription_payments(
    subscription_id: UUID,
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
    db: AsyncSession = Depends(get_db),
) -> List[SubscriptionPaymentResponse]:
    payments = await subscriptions.list_payments(subscription_id, db)
    return [SubscriptionPaymentResponse.model_validate(payment) for payment in payments]


@admin_router.post(
    "/billing/run",
    response_model=SweepResponse,
    summary="Run recurring billing",
    description="Convert elapsed trials and bill all due subscriptions",
)
async def run_recurring_billing(
    engine: SubscriptionBillingEngine = Depends(get_billing_engine),
) -> SweepResponse:
    logger.info("api_recurring_billing_triggered")
    return SweepResponse.model_validate(await engine.process_recurring_billing())


@admin_router.post(
    "/billing/retries",
    response_model=SweepResponse,
    summary="Retry failed subscription payments",
)
async def run_payment_retries(
    engine: SubscriptionBillingEngine = Depends(get_billing_engine),
) -> SweepResponse:
    logger.info("api_payment_retries_triggered")
    return SweepResponse.model_validate(await engine.process_failed_payment_retries())


@admin_router.post(
    "/billing/subscriptions/{subscription_id}",
    response_model=SweepResponse,
    summary="Bill one subscription now",
)
async def bill_subscription(
    subscription_id: UUID,
    engine: SubscriptionBillingEngine = Depends(get_billing_engine),
) -> SweepResponse:
    logger.info("api_manual_billing_triggered", subscription_id=str(subscription_id))
    return SweepResponse.model_validate(
        await engine.process_subscription_billing_manual(subscription_id)
    )


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
