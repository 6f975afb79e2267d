# gateways/__init__.py
from gateways.base import (
    PaymentGatewayClient,
    GatewayRegistry,
    GatewayError,
    GatewayUnavailable,
    GatewayRequestError,
    CircuitBreaker,
    CircuitState,
)

from gateways.razorpay_client import RazorpayClient
from gateways.cashfree_client import CashfreeClient

__all__ = [
    "PaymentGatewayClient",
    "GatewayRegistry",
    "GatewayError",
    "GatewayUnavailable",
    "GatewayRequestError",
    "CircuitBreaker",
    "CircuitState",
    "RazorpayClient",
    "CashfreeClient",
]
