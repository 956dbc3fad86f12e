"""Payment gateway package."""

from vaultpay.services.gateway.interface import (
    GatewayError,
    GatewayResult,
    GatewayUnavailableError,
    PaymentGatewayInterface,
)
from vaultpay.services.gateway.simulated import SimulatedPaymentGateway

__all__ = [
    "GatewayError",
    "GatewayResult",
    "GatewayUnavailableError",
    "PaymentGatewayInterface",
    "SimulatedPaymentGateway",
]
