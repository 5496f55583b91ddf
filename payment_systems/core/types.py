"""
Plain request/response records passed between the API, the ledger and the
billing engine. ORM rows never cross these boundaries.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from .enums import (
    BillingInterval,
    PaymentMethodKind,
    SubscriptionStatus,
    TransactionStatus,
    TransactionType,
)


@dataclass(frozen=True)
class PaymentInstrument:
    """A stored, tokenized payment instrument owned by a customer."""

    id: str
    customer_id: str
    kind: PaymentMethodKind
    token: str
    last_four: Optional[str] = None
    is_active: bool = True


@dataclass
class PaymentRequest:
    """Purchase or authorization request."""

    idempotency_key: str
    amount: Decimal
    currency: str
    instrument: PaymentInstrument
    customer_id: str
    order_id: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CaptureRequest:
    """Capture of a completed authorization. Amount defaults to the authorized amount."""

    idempotency_key: str
    transaction_id: UUID
    amount: Optional[Decimal] = None


@dataclass
class RefundRequest:
    """Refund of a completed purchase or capture. Amount defaults to the remaining balance."""

    idempotency_key: str
    transaction_id: UUID
    amount: Optional[Decimal] = None
    reason: Optional[str] = None


@dataclass
class VoidRequest:
    """Void of a completed, uncaptured authorization."""

    idempotency_key: str
    transaction_id: UUID
    reason: Optional[str] = None


@dataclass
class PaymentResponse:
    """Normalized outcome of a ledger operation."""

    transaction_id: UUID
    operation: TransactionType
    status: TransactionStatus
    amount: Decimal
    currency: str
    created_at: datetime
    gateway_reference: Optional[str] = None
    auth_code: Optional[str] = None
    message: Optional[str] = None
    parent_transaction_id: Optional[UUID] = None
    refunded_amount: Decimal = Decimal("0.00")
    duplicate: bool = False

    @property
    def succeeded(self) -> bool:
        """True when the gateway accepted the operation."""
        return self.status not in (TransactionStatus.FAILED, TransactionStatus.PROCESSING)


@dataclass
class MandateRequest:
    """Terms of a recurring mandate registered with the gateway."""

    reference: str
    plan_name: str
    amount: Decimal
    currency: str
    interval: BillingInterval
    interval_count: int
    customer_id: str
    instrument: PaymentInstrument
    start_date: datetime
    total_occurrences: int


@dataclass
class CreatePlanRequest:
    name: str
    amount: Decimal
    currency: str
    billing_interval: BillingInterval
    billing_interval_count: int = 1
    description: Optional[str] = None
    trial_period_days: Optional[int] = None
    max_billing_cycles: Optional[int] = None
    setup_fee: Optional[Decimal] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UpdatePlanRequest:
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class CreateSubscriptionRequest:
    idempotency_key: str
    customer_id: str
    plan_id: UUID
    instrument_id: str
    start_date: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UpdateSubscriptionRequest:
    instrument_id: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    metadata: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = None


@dataclass
class CancelSubscriptionRequest:
    cancel_immediately: bool = False
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None
