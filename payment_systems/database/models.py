"""SQLAlchemy database models for the transaction ledger and subscription billing."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Type

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    Uuid,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from payment_systems.core.clock import utcnow
from payment_systems.core.enums import (
    BillingInterval,
    PaymentMethodKind,
    PlanStatus,
    SubscriptionPaymentStatus,
    SubscriptionStatus,
    TransactionStatus,
    TransactionType,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(10, 2, asdecimal=True)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime stored as UTC.

    Backends without a native timestamptz (SQLite) hand back naive values;
    those are read as UTC so callers always compare aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def enum_column(enum_cls: Type[Enum], name: str) -> SAEnum:
    """Portable enum column persisted by value with a CHECK constraint."""
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Transaction(Base):
    """
    Ledger rows, one per gateway operation.

    Purchases and authorizations are roots; captures, refunds and voids point
    at their parent through parent_transaction_id. Rows are never deleted.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    merchant_reference: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    gateway_reference: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    auth_code: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    parent_transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("transactions.id"), nullable=True, index=True
    )
    transaction_type: Mapped[TransactionType] = mapped_column(
        enum_column(TransactionType, "transaction_type"), nullable=False
    )
    status: Mapped[TransactionStatus] = mapped_column(
        enum_column(TransactionStatus, "transaction_status"), nullable=False, index=True
    )
    payment_method: Mapped[PaymentMethodKind] = mapped_column(
        enum_column(PaymentMethodKind, "payment_method_kind"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    refunded_amount: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0.00")
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    gateway_payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_positive_amount"),
        CheckConstraint(
            "refunded_amount >= 0 AND refunded_amount <= amount",
            name="ck_transactions_refund_bound",
        ),
        CheckConstraint("length(currency) = 3", name="ck_transactions_currency"),
        Index("idx_transactions_customer_status", "customer_id", "status"),
    )

    @property
    def remaining_amount(self) -> Decimal:
        """Amount still refundable."""
        return self.amount - (self.refunded_amount or Decimal("0.00"))

    def __repr__(self) -> str:
        """String representation of Transaction."""
        return (
            f"<Transaction(id={self.id}, type={self.transaction_type}, "
            f"amount={self.amount}, status={self.status})>"
        )


class SubscriptionPlan(Base):
    """
    Plan catalogue.

    Pricing and cadence are fixed at creation; only description and
    metadata change afterwards.
    """

    __tablename__ = "subscription_plans"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    billing_interval: Mapped[BillingInterval] = mapped_column(
        enum_column(BillingInterval, "billing_interval"), nullable=False
    )
    billing_interval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    trial_period_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_billing_cycles: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    setup_fee: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    status: Mapped[PlanStatus] = mapped_column(
        enum_column(PlanStatus, "plan_status"), nullable=False, default=PlanStatus.ACTIVE
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    metadata_json: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_plans_positive_amount"),
        CheckConstraint("billing_interval_count >= 1", name="ck_plans_interval_count"),
        CheckConstraint("length(currency) = 3", name="ck_plans_currency"),
    )

    def __repr__(self) -> str:
        """String representation of SubscriptionPlan."""
        return f"<SubscriptionPlan(id={self.id}, name={self.name}, status={self.status})>"


class Subscription(Base):
    """
    Customer subscription to a plan, billed against a stored instrument.

    idempotency_key is the creating request's key; a retried create returns
    this row instead of registering a second mandate.
    """

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    plan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscription_plans.id"), nullable=False, index=True
    )
    payment_instrument_id: Mapped[str] = mapped_column(String(255), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    # "<operation>:<key>" of the last applied update or cancellation
    last_request_key: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    gateway_mandate_reference: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        enum_column(SubscriptionStatus, "subscription_status"), nullable=False
    )
    current_period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    next_billing_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    trial_start: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    trial_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    billing_cycle_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_payment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_payment_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_payment_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    metadata_json: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    gateway_payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "next_billing_date >= current_period_start",
            name="ck_subscriptions_billing_after_period_start",
        ),
        CheckConstraint("failed_payment_count >= 0", name="ck_subscriptions_failed_count"),
        Index("idx_subscriptions_status_next_billing", "status", "next_billing_date"),
    )

    def __repr__(self) -> str:
        """String representation of Subscription."""
        return (
            f"<Subscription(id={self.id}, customer_id={self.customer_id}, "
            f"status={self.status}, next_billing_date={self.next_billing_date})>"
        )


class SubscriptionPayment(Base):
    """One billing cycle's charge, including its retry schedule."""

    __tablename__ = "subscription_payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("transactions.id"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    billing_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    cycle_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[SubscriptionPaymentStatus] = mapped_column(
        enum_column(SubscriptionPaymentStatus, "subscription_payment_status"),
        nullable=False,
        index=True,
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retry_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "retry_count >= 0 AND retry_count <= max_retry_attempts",
            name="ck_subscription_payments_retry_bound",
        ),
        Index("idx_subscription_payments_status_retry", "status", "next_retry_at"),
        Index("idx_subscription_payments_cycle", "subscription_id", "cycle_number"),
    )

    def __repr__(self) -> str:
        """String representation of SubscriptionPayment."""
        return (
            f"<SubscriptionPayment(id={self.id}, subscription_id={self.subscription_id}, "
            f"cycle={self.cycle_number}, status={self.status})>"
        )
