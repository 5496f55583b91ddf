"""
Gateway contract consumed by the ledger and the subscription services.

Declines are data (a failed GatewayResult). Only infrastructure problems
are raised, as GatewayError.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from payment_systems.core.types import MandateRequest, PaymentInstrument

# Total occurrences value meaning "no end date"
UNLIMITED_OCCURRENCES = 9999


class GatewayErrorType(Enum):
    """Classification of gateway infrastructure errors."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RATE_LIMIT = "rate_limit"


class GatewayError(Exception):
    """Raised when the gateway could not be reached or refused to process a call."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original provider exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


@dataclass
class GatewayResult:
    """Normalized outcome of a single gateway call."""

    success: bool
    gateway_ref: Optional[str] = None
    auth_code: Optional[str] = None
    message: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MandateResult:
    """Outcome of registering or cancelling a recurring mandate."""

    success: bool
    mandate_ref: Optional[str] = None
    message: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """Operations the ledger and subscription services need from a gateway."""

    async def purchase(
        self,
        amount: Decimal,
        currency: str,
        instrument: PaymentInstrument,
        reference: str,
        order_ref: Optional[str] = None,
        description: Optional[str] = None,
    ) -> GatewayResult:
        ...

    async def authorize(
        self,
        amount: Decimal,
        currency: str,
        instrument: PaymentInstrument,
        reference: str,
        order_ref: Optional[str] = None,
        description: Optional[str] = None,
    ) -> GatewayResult:
        ...

    async def capture(
        self, gateway_ref: str, amount: Decimal, currency: str, reference: str
    ) -> GatewayResult:
        ...

    async def refund(
        self,
        gateway_ref: str,
        amount: Decimal,
        currency: str,
        reference: str,
        instrument_hint: Optional[str] = None,
    ) -> GatewayResult:
        ...

    async def void(self, gateway_ref: str, reference: str) -> GatewayResult:
        ...

    async def create_recurring_mandate(self, request: MandateRequest) -> MandateResult:
        ...

    async def cancel_recurring_mandate(self, mandate_ref: str) -> MandateResult:
        ...


class InstrumentDirectory(Protocol):
    """Lookup of stored payment instruments."""

    async def get_instrument(self, instrument_id: str) -> Optional[PaymentInstrument]:
        ...


def to_minor_units(amount: Decimal) -> int:
    """Convert a two-decimal amount to integer cents."""
    return int((amount * 100).to_integral_value())


def to_unix_timestamp(value: datetime) -> int:
    return int(value.timestamp())
