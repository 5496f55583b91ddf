"""Settlement gateway integrations."""
from .gateway import (
    GatewayError,
    GatewayErrorType,
    GatewayResult,
    InstrumentDirectory,
    MandateResult,
    PaymentGateway,
)

__all__ = [
    "GatewayError",
    "GatewayErrorType",
    "GatewayResult",
    "InstrumentDirectory",
    "MandateResult",
    "PaymentGateway",
]
