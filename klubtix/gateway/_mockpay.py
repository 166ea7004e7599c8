from __future__ import annotations
import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Callable, Mapping, Optional

import httpx
import structlog

from ..config import MOCK_SECRET, MOCK_WEBHOOK_URL
from ..errors import GatewayError, InvalidSignatureError, ValidationError
from ..helpers import ct_equal
from .base import (
    CANCELED, FAILED, IGNORED, SUCCEEDED,
    GatewayEvent, GatewayIntent, GatewayPayment, PaymentGateway,
    PaymentStatus,
)

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-mockpay-signature"

# Stripe-style test payment methods
PM_SUCCEEDS = "pm_card_visa"
PM_REQUIRES_ACTION = "pm_card_authenticationRequired"
DECLINES = {
    "pm_card_chargeDeclined": ("card_declined", "Your card was declined."),
    "pm_card_chargeDeclinedInsufficientFunds": (
        "insufficient_funds", "Your card has insufficient funds."
    ),
    "pm_card_chargeDeclinedExpiredCard": (
        "expired_card", "Your card has expired."
    ),
}

_STATUS = {
    "requires_payment_method": PaymentStatus.REQUIRES_PAYMENT_METHOD,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.REQUIRES_ACTION,
    "processing": PaymentStatus.PROCESSING,
    "succeeded": PaymentStatus.SUCCEEDED,
    "canceled": PaymentStatus.CANCELED,
}


def sign(secret: str, payload: bytes) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


class MockPay(PaymentGateway):
    """
    In-process payment processor for local runs, demos and tests.

    Intents live in memory and move through Stripe's lifecycle. Mutating
    calls honour idempotency keys: a repeated key replays the first outcome,
    including a decline.
    """
    name = "mock"

    def __init__(self, secret: str = MOCK_SECRET,
                 webhook_url: str = MOCK_WEBHOOK_URL) -> None:
        self.secret = secret
        self.webhook_url = webhook_url
        self._intents: dict[str, dict[str, Any]] = {}
        self._replies: dict[str, tuple[str, Any]] = {}

    # ---
    # idempotency
    # ---
    def _once(self, key: Optional[str], op: Callable[[], GatewayPayment]):
        if key and key in self._replies:
            kind, value = self._replies[key]
            if kind == "error":
                raise value
            return value
        try:
            result = op()
        except GatewayError as e:
            if key:
                self._replies[key] = ("error", e)
            raise
        if key:
            self._replies[key] = ("ok", result)
        return result

    def _intent(self, payment_ref: str) -> dict[str, Any]:
        pi = self._intents.get(payment_ref)
        if pi is None:
            raise GatewayError("resource_missing",
                               f"No such payment: {payment_ref}")
        return pi

    @staticmethod
    def _view(pi: dict[str, Any]) -> GatewayPayment:
        err = pi.get("last_error") or {}
        return GatewayPayment(
            payment_ref=pi["id"],
            payment_intent_id=pi["id"],
            status=_STATUS[pi["status"]],
            payment_method=pi.get("payment_method"),
            amount_cents=pi["amount"],
            currency=pi["currency"],
            error_code=err.get("code"),
            error_message=err.get("message"),
            metadata=dict(pi["metadata"]),
        )

    # ---
    # PaymentGateway
    # ---
    async def create_payment(self, amount_cents, currency, metadata,
                             idempotency_key) -> GatewayIntent:
        if idempotency_key in self._replies:
            return self._replies[idempotency_key][1]
        pid = f"mock_{uuid.uuid4().hex}"
        self._intents[pid] = {
            "id": pid,
            "amount": int(amount_cents),
            "currency": currency,
            "metadata": dict(metadata),
            "status": "requires_payment_method",
            "payment_method": None,
            "last_error": None,
            "client_secret": f"{pid}_secret_{uuid.uuid4().hex[:16]}",
            "created_at": int(time.time()),
        }
        intent = GatewayIntent(
            payment_ref=pid,
            payment_intent_id=pid,
            status=PaymentStatus.REQUIRES_PAYMENT_METHOD,
            client_secret=self._intents[pid]["client_secret"],
            redirect_url=f"/mockpay/{pid}",
        )
        self._replies[idempotency_key] = ("ok", intent)
        return intent

    async def retrieve(self, payment_ref: str) -> GatewayPayment:
        return self._view(self._intent(payment_ref))

    async def update_payment_method(self, payment_ref, payment_method,
                                    idempotency_key) -> GatewayPayment:
        def op():
            pi = self._intent(payment_ref)
            if pi["status"] in ("succeeded", "canceled", "processing"):
                raise GatewayError(
                    "payment_intent_unexpected_state",
                    f"PaymentIntent is {pi['status']}",
                )
            pi["payment_method"] = payment_method
            pi["status"] = "requires_confirmation"
            return self._view(pi)
        return self._once(idempotency_key, op)

    async def confirm(self, payment_ref, idempotency_key) -> GatewayPayment:
        def op():
            pi = self._intent(payment_ref)
            if pi["status"] == "succeeded":
                return self._view(pi)
            if pi["status"] == "canceled":
                raise GatewayError("payment_intent_unexpected_state",
                                   "PaymentIntent is canceled")
            pm = pi.get("payment_method")
            if not pm:
                raise GatewayError("payment_intent_unexpected_state",
                                   "A payment method is required")
            if pm in DECLINES:
                code, message = DECLINES[pm]
                pi["status"] = "requires_payment_method"
                pi["last_error"] = {"code": code, "message": message}
                raise GatewayError(code, message)
            if pm == PM_REQUIRES_ACTION:
                pi["status"] = "requires_action"
            else:
                pi["status"] = "succeeded"
                pi["last_error"] = None
            return self._view(pi)
        return self._once(idempotency_key, op)

    async def cancel(self, payment_ref, idempotency_key=None) -> GatewayPayment:
        def op():
            pi = self._intent(payment_ref)
            if pi["status"] == "succeeded":
                raise GatewayError("payment_intent_unexpected_state",
                                   "PaymentIntent already succeeded")
            pi["status"] = "canceled"
            return self._view(pi)
        return self._once(idempotency_key, op)

    def verify_webhook(self, payload: bytes,
                       headers: Mapping[str, str]) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        if not sig or not ct_equal(sign(self.secret, payload), sig):
            raise InvalidSignatureError()
        try:
            return json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Invalid JSON")

    def parse_event(self, event: dict) -> GatewayEvent:
        kind = (event.get("type") or "").split(".")[-1]
        if kind not in (SUCCEEDED, FAILED, CANCELED):
            kind = IGNORED
        pid = event.get("payment_id") or ""
        err = event.get("error") or {}
        return GatewayEvent(
            event_id=event.get("id") or event.get("idempotency_key") or "",
            kind=kind,
            event_type=event.get("type", ""),
            payment_refs=(pid,) if pid else (),
            payment_intent_id=pid or None,
            order_id=(event.get("metadata") or {}).get("order_id"),
            payment_method=event.get("payment_method"),
            error_code=err.get("code"),
            error_message=err.get("message"),
            amount_cents=event.get("amount"),
        )

    # ---
    # buyer simulation
    # ---
    async def simulate(self, payment_ref: str, outcome: str,
                       payment_method: Optional[str] = None) -> GatewayPayment:
        """Play the buyer's side of a hosted payment page."""
        if outcome == CANCELED:
            return await self.cancel(payment_ref)
        if outcome == FAILED:
            payment_method = payment_method or "pm_card_chargeDeclined"
        await self.update_payment_method(
            payment_ref, payment_method or PM_SUCCEEDS, None
        )
        try:
            return await self.confirm(payment_ref, None)
        except GatewayError:
            return await self.retrieve(payment_ref)

    def build_event(self, payment_ref: str,
                    kind: Optional[str] = None) -> tuple[bytes, dict]:
        pi = self._intent(payment_ref)
        if kind is None:
            kind = {
                "succeeded": SUCCEEDED, "canceled": CANCELED,
            }.get(pi["status"], FAILED)
        event = {
            "id": f"evt_{uuid.uuid4().hex}",
            "type": f"payment.{kind}",
            "payment_id": payment_ref,
            "metadata": dict(pi["metadata"]),
            "amount": pi["amount"],
            "currency": pi["currency"],
            "payment_method": pi.get("payment_method"),
            "error": pi.get("last_error"),
            "created_at": int(time.time()),
        }
        payload = json.dumps(event).encode()
        return payload, {
            SIGNATURE_HEADER: sign(self.secret, payload),
            "content-type": "application/json",
        }

    async def emit(self, client: httpx.AsyncClient, payment_ref: str,
                   kind: Optional[str] = None) -> int:
        """POST a signed event for the intent's current state; returns the HTTP status."""
        payload, headers = self.build_event(payment_ref, kind)
        resp = await client.post(self.webhook_url, content=payload,
                                 headers=headers)
        logger.info("mockpay_webhook_delivered", payment_ref=payment_ref,
                    status_code=resp.status_code)
        return resp.status_code
