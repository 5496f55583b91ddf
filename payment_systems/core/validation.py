"""
Preconditions for ledger operations.

Pure functions over a request and, for follow-up operations, the parent
transaction. Each returns a Precondition; nothing here touches the
database or the gateway.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from payment_systems.database.models import Transaction

from .enums import TransactionStatus, TransactionType
from .exceptions import PaymentValidationError

CENT = Decimal("0.01")
MAX_AMOUNT = Decimal("99999999.99")

REFUNDABLE_TYPES = frozenset({TransactionType.PURCHASE, TransactionType.CAPTURE})
REFUNDABLE_STATUSES = frozenset(
    {TransactionStatus.COMPLETED, TransactionStatus.PARTIALLY_REFUNDED}
)


@dataclass(frozen=True)
class Precondition:
    """Outcome of a precondition check; ``amount`` is the resolved operation amount."""

    allowed: bool
    amount: Optional[Decimal] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, amount: Optional[Decimal] = None) -> "Precondition":
        return cls(allowed=True, amount=amount)

    @classmethod
    def deny(cls, reason: str) -> "Precondition":
        return cls(allowed=False, reason=reason)

    def require(self) -> Optional[Decimal]:
        """Return the resolved amount or raise PaymentValidationError."""
        if not self.allowed:
            raise PaymentValidationError(self.reason or "Operation not allowed")
        return self.amount


def check_amount(amount: Decimal) -> Precondition:
    try:
        if not amount.is_finite() or amount <= 0:
            return Precondition.deny("Amount must be positive")
        if amount != amount.quantize(CENT):
            return Precondition.deny("Amount must have at most two decimal places")
    except (InvalidOperation, AttributeError):
        return Precondition.deny(f"Invalid amount: {amount!r}")
    if amount > MAX_AMOUNT:
        return Precondition.deny(f"Amount exceeds maximum of {MAX_AMOUNT}")
    return Precondition.ok(amount.quantize(CENT))


def check_currency(currency: str) -> Precondition:
    if not isinstance(currency, str) or len(currency) != 3 or not currency.isalpha():
        return Precondition.deny("Currency must be 3-letter code")
    return Precondition.ok()


def check_payment(amount: Decimal, currency: str) -> Precondition:
    """Preconditions shared by purchases and authorizations."""
    currency_check = check_currency(currency)
    if not currency_check.allowed:
        return currency_check
    return check_amount(amount)


def check_capture(
    parent: Transaction,
    amount: Optional[Decimal] = None,
    captured: Decimal = Decimal("0.00"),
) -> Precondition:
    """
    A capture needs a completed authorization with an uncaptured balance.

    ``captured`` is the total of earlier captures against the authorization.
    The amount defaults to the uncaptured balance and may not exceed it.
    """
    if parent.transaction_type != TransactionType.AUTHORIZATION:
        return Precondition.deny("Only authorizations can be captured")
    if parent.status != TransactionStatus.COMPLETED:
        return Precondition.deny(
            f"Cannot capture authorization with status: {parent.status.value}"
        )
    if not parent.gateway_reference:
        return Precondition.deny("Authorization has no gateway reference")
    uncaptured = parent.amount - captured
    if uncaptured <= 0:
        return Precondition.deny("Authorization has already been fully captured")
    if amount is None:
        return Precondition.ok(uncaptured)
    amount_check = check_amount(amount)
    if not amount_check.allowed:
        return amount_check
    if amount > parent.amount:
        return Precondition.deny(
            f"Capture amount {amount} exceeds authorized amount {parent.amount}"
        )
    if amount > uncaptured:
        return Precondition.deny(
            f"Capture amount {amount} exceeds uncaptured amount {uncaptured}"
        )
    return amount_check


def check_refund(parent: Transaction, amount: Optional[Decimal] = None) -> Precondition:
    """
    A refund needs a completed or partially refunded purchase or capture.

    The amount defaults to the remaining balance and may not exceed it.
    """
    if parent.transaction_type not in REFUNDABLE_TYPES:
        return Precondition.deny("Only purchases and captures can be refunded")
    if parent.status not in REFUNDABLE_STATUSES:
        return Precondition.deny(f"Cannot refund transaction with status: {parent.status.value}")
    if not parent.gateway_reference:
        return Precondition.deny("Transaction has no gateway reference")
    remaining = parent.remaining_amount
    if amount is None:
        return Precondition.ok(remaining)
    amount_check = check_amount(amount)
    if not amount_check.allowed:
        return amount_check
    if amount > remaining:
        return Precondition.deny(
            f"Refund amount {amount} exceeds remaining refundable amount {remaining}"
        )
    return amount_check


def check_void(parent: Transaction, captured: Decimal = Decimal("0.00")) -> Precondition:
    """Only a completed, uncaptured authorization can be voided."""
    if parent.transaction_type != TransactionType.AUTHORIZATION:
        return Precondition.deny("Only authorizations can be voided")
    if parent.status != TransactionStatus.COMPLETED:
        return Precondition.deny(f"Cannot void authorization with status: {parent.status.value}")
    if captured > 0:
        return Precondition.deny("Cannot void an authorization that has been captured")
    if not parent.gateway_reference:
        return Precondition.deny("Authorization has no gateway reference")
    return Precondition.ok(parent.amount)
