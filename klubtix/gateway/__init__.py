from ..config import PAYMENT_GATEWAY
from .base import (
    GatewayEvent,
    GatewayIntent,
    GatewayPayment,
    PaymentGateway,
    PaymentStatus,
    idempotency_key,
)
from ._mockpay import MockPay

BACKEND = PAYMENT_GATEWAY  # 'mock' | 'stripe'


# Factory keeps server.py simple and constructor-agnostic:
def new_gateway(backend: str = BACKEND) -> PaymentGateway:
    if backend == "stripe":
        from ._stripe import StripeGateway
        return StripeGateway()
    if backend == "mock":
        return MockPay()
    raise RuntimeError(f"unknown PAYMENT_GATEWAY: {backend}")


__all__ = [
    "BACKEND",
    "GatewayEvent",
    "GatewayIntent",
    "GatewayPayment",
    "MockPay",
    "PaymentGateway",
    "PaymentStatus",
    "idempotency_key",
    "new_gateway",
]
