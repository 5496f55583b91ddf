"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from payment_systems.core.enums import (
    BillingInterval,
    PlanStatus,
    SubscriptionPaymentStatus,
    SubscriptionStatus,
    TransactionStatus,
    TransactionType,
)


class PaymentCreateRequest(BaseModel):
    """Request schema for purchases and authorizations."""

    customer_id: str = Field(..., min_length=1, description="Customer identifier")
    instrument_id: str = Field(..., min_length=1, description="Stored payment instrument ID")
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2, description="Amount")
    currency: str = Field(..., min_length=3, max_length=3, description="Currency code (e.g., USD)")
    order_id: Optional[str] = Field(default=None, description="Merchant order reference")
    description: Optional[str] = Field(default=None, description="Payment description")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Payment metadata")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        return v.upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "customer_id": "cus_NffrFeUfNV2Hib",
                    "instrument_id": "pm_1NVQ4Z2eZvKYlo2C",
                    "amount": "100.00",
                    "currency": "USD",
                    "order_id": "order_123",
                    "description": "Premium plan upgrade",
                }
            ]
        }
    }


class CaptureRequestBody(BaseModel):
    amount: Optional[Decimal] = Field(
        default=None,
        gt=0,
        max_digits=10,
        decimal_places=2,
        description="Amount to capture (defaults to the authorized amount)",
    )


class RefundRequestBody(BaseModel):
    amount: Optional[Decimal] = Field(
        default=None,
        gt=0,
        max_digits=10,
        decimal_places=2,
        description="Amount to refund (defaults to the remaining balance)",
    )
    reason: Optional[str] = Field(default=None, description="Refund reason")


class VoidRequestBody(BaseModel):
    reason: Optional[str] = Field(default=None, description="Void reason")


class PaymentResponseSchema(BaseModel):
    """Response schema for ledger operations."""

    model_config = ConfigDict(from_attributes=True)

    transaction_id: UUID = Field(..., description="Transaction ID")
    operation: TransactionType = Field(..., description="Operation type")
    status: TransactionStatus = Field(..., description="Transaction status")
    amount: Decimal = Field(..., description="Operation amount")
    refunded_amount: Decimal = Field(..., description="Amount refunded so far")
    currency: str = Field(..., description="Currency code")
    gateway_reference: Optional[str] = Field(default=None, description="Gateway reference")
    auth_code: Optional[str] = Field(default=None, description="Gateway authorization code")
    message: Optional[str] = Field(default=None, description="Failure or duplicate message")
    parent_transaction_id: Optional[UUID] = Field(default=None, description="Parent transaction")
    duplicate: bool = Field(default=False, description="True when replayed by idempotency key")
    created_at: datetime = Field(..., description="Creation timestamp")


class PlanCreateRequest(BaseModel):
    """Request schema for creating a subscription plan."""

    name: str = Field(..., min_length=1, max_length=100, description="Unique plan name")
    description: Optional[str] = Field(default=None, description="Plan description")
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2, description="Price per cycle")
    currency: str = Field(..., min_length=3, max_length=3, description="Currency code")
    billing_interval: BillingInterval = Field(..., description="Billing interval unit")
    billing_interval_count: int = Field(default=1, ge=1, description="Intervals per cycle")
    trial_period_days: Optional[int] = Field(default=None, ge=0, description="Trial length")
    max_billing_cycles: Optional[int] = Field(default=None, ge=1, description="Cycles before expiry")
    setup_fee: Optional[Decimal] = Field(default=None, ge=0, description="One-time setup fee")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Plan metadata")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return v.upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "name": "Pro Monthly",
                    "amount": "29.99",
                    "currency": "USD",
                    "billing_interval": "monthly",
                    "billing_interval_count": 1,
                    "trial_period_days": 14,
                }
            ]
        }
    }


class PlanUpdateRequest(BaseModel):
    description: Optional[str] = Field(default=None, description="Plan description")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Metadata to merge")


class PlanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: Optional[str] = None
    amount: Decimal
    currency: str
    billing_interval: BillingInterval
    billing_interval_count: int
    trial_period_days: Optional[int] = None
    max_billing_cycles: Optional[int] = None
    setup_fee: Optional[Decimal] = None
    status: PlanStatus
    is_active: bool
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class SubscriptionCreateRequest(BaseModel):
    """Request schema for creating a subscription."""

    customer_id: str = Field(..., min_length=1, description="Customer identifier")
    plan_id: UUID = Field(..., description="Subscription plan ID")
    instrument_id: str = Field(..., min_length=1, description="Stored payment instrument ID")
    start_date: Optional[datetime] = Field(default=None, description="Start (defaults to now)")
    trial_end: Optional[datetime] = Field(
        default=None, description="Explicit trial end (overrides the plan's trial length)"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Subscription metadata")


class SubscriptionUpdateRequest(BaseModel):
    instrument_id: Optional[str] = Field(default=None, description="New payment instrument")
    status: Optional[SubscriptionStatus] = Field(default=None, description="New status")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Metadata to merge")


class SubscriptionCancelRequest(BaseModel):
    cancel_immediately: bool = Field(
        default=False, description="End now instead of at the end of the current period"
    )
    reason: Optional[str] = Field(default=None, description="Cancellation reason")


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: str
    plan_id: UUID
    payment_instrument_id: str
    gateway_mandate_reference: Optional[str] = None
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: datetime
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    billing_cycle_count: int
    failed_payment_count: int
    last_payment_date: Optional[datetime] = None
    last_payment_amount: Optional[Decimal] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class SubscriptionPaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID
    transaction_id: Optional[UUID] = None
    amount: Decimal
    currency: str
    billing_date: datetime
    cycle_number: int
    status: SubscriptionPaymentStatus
    retry_count: int
    max_retry_attempts: int
    next_retry_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None


class SweepResponse(BaseModel):
    """Response schema for billing sweeps."""

    model_config = ConfigDict(from_attributes=True)

    sweep: str = Field(..., description="Sweep name (recurring/retry/manual)")
    processed: int = Field(..., description="Items examined")
    succeeded: int = Field(..., description="Successful charges")
    failed: int = Field(..., description="Failed charges")
    skipped: int = Field(..., description="Items skipped or cancelled")
    errors: int = Field(..., description="Items that raised")
    trials_converted: int = Field(default=0, description="Trials converted to active")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class PaymentListResponse(BaseModel):
    items: List[PaymentResponseSchema]
