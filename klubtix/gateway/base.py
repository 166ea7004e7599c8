from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional


class PaymentStatus(str, Enum):
    """The one payment vocabulary the rest of the system speaks."""
    PENDING = "pending"
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


# event kinds handed to the reconciler
SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELED = "canceled"
IGNORED = "ignored"


def idempotency_key(order_id: str, *parts: Any) -> str:
    """One key per logical attempt: `order:<id>:create`, `order:<id>:retry:2:confirm`."""
    return ":".join(["order", order_id, *(str(p) for p in parts)])


# ----------------------------
# Results
# ----------------------------
@dataclass(frozen=True)
class GatewayIntent:
    payment_ref: str
    status: PaymentStatus
    client_secret: Optional[str] = None
    redirect_url: Optional[str] = None
    payment_intent_id: Optional[str] = None


@dataclass(frozen=True)
class GatewayPayment:
    payment_ref: str
    status: PaymentStatus
    payment_intent_id: Optional[str] = None
    payment_method: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def order_id(self) -> Optional[str]:
        return self.metadata.get("order_id")

    def external_ids(self) -> dict[str, str]:
        ids = {"payment_ref": self.payment_ref}
        if self.payment_intent_id:
            ids["payment_intent_id"] = self.payment_intent_id
        return ids


@dataclass(frozen=True)
class GatewayEvent:
    event_id: str
    kind: str  # succeeded | failed | canceled | ignored
    event_type: str
    # every processor id the event names; any of them may be the stored ref
    payment_refs: tuple[str, ...] = ()
    payment_intent_id: Optional[str] = None
    order_id: Optional[str] = None
    payment_method: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    # charged amount, when the payload carries one
    amount_cents: Optional[int] = None

    def external_ids(self) -> dict[str, str]:
        ids = {}
        if self.payment_refs:
            ids["payment_ref"] = self.payment_refs[0]
        if self.payment_intent_id:
            ids["payment_intent_id"] = self.payment_intent_id
        return ids


# ----------------------------
# Gateway interface
# ----------------------------
class PaymentGateway(ABC):
    name: str = "gateway"

    @abstractmethod
    async def create_payment(
        self, amount_cents: int, currency: str, metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> GatewayIntent: ...

    @abstractmethod
    async def retrieve(self, payment_ref: str) -> GatewayPayment: ...

    @abstractmethod
    async def update_payment_method(
        self, payment_ref: str, payment_method: str, idempotency_key: str,
    ) -> GatewayPayment: ...

    @abstractmethod
    async def confirm(
        self, payment_ref: str, idempotency_key: str,
    ) -> GatewayPayment: ...

    @abstractmethod
    async def cancel(
        self, payment_ref: str, idempotency_key: Optional[str] = None,
    ) -> GatewayPayment: ...

    # raises InvalidSignatureError / ValidationError
    @abstractmethod
    def verify_webhook(self, payload: bytes,
                       headers: Mapping[str, str]) -> dict: ...

    @abstractmethod
    def parse_event(self, event: dict) -> GatewayEvent: ...

    async def aclose(self) -> None:
        return None
