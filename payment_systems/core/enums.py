"""Status and type enumerations shared by the ledger and the billing engine."""
from enum import Enum


class TransactionType(str, Enum):
    """Gateway operation recorded by a transaction row."""

    PURCHASE = "purchase"
    AUTHORIZATION = "authorization"
    CAPTURE = "capture"
    REFUND = "refund"
    VOID = "void"


class TransactionStatus(str, Enum):
    """Transaction lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


# Rows in these states hold an in-flight idempotency key
IN_FLIGHT_STATUSES = frozenset({TransactionStatus.PENDING, TransactionStatus.PROCESSING})


class PaymentMethodKind(str, Enum):
    """Kind of stored payment instrument."""

    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    BANK_TRANSFER = "bank_transfer"


class BillingInterval(str, Enum):
    """Plan billing cadence unit."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class PlanStatus(str, Enum):
    """Subscription plan catalogue state."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_SUBSCRIPTION_STATUSES = frozenset(
    {SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED}
)


class SubscriptionPaymentStatus(str, Enum):
    """Per-cycle payment states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


OPEN_SUBSCRIPTION_PAYMENT_STATUSES = frozenset(
    {
        SubscriptionPaymentStatus.PENDING,
        SubscriptionPaymentStatus.PROCESSING,
        SubscriptionPaymentStatus.RETRYING,
    }
)
