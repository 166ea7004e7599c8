from __future__ import annotations
import asyncio
import json
from typing import Any, Mapping, Optional

import stripe
import structlog

from ..config import (
    GATEWAY_TIMEOUT_SECONDS,
    STRIPE_CANCEL_URL,
    STRIPE_CHECKOUT_MODE,
    STRIPE_SECRET_KEY,
    STRIPE_SUCCESS_URL,
    STRIPE_WEBHOOK_SECRET,
)
from ..errors import GatewayError, InvalidSignatureError, ValidationError
from .base import (
    CANCELED, FAILED, IGNORED, SUCCEEDED,
    GatewayEvent, GatewayIntent, GatewayPayment, PaymentGateway,
    PaymentStatus,
)

logger = structlog.get_logger(__name__)

_STATUS = {
    "requires_payment_method": PaymentStatus.REQUIRES_PAYMENT_METHOD,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.REQUIRES_ACTION,
    "processing": PaymentStatus.PROCESSING,
    "requires_capture": PaymentStatus.PROCESSING,
    "succeeded": PaymentStatus.SUCCEEDED,
    "canceled": PaymentStatus.CANCELED,
}

# event type -> kind handed to the reconciler
_EVENT_KINDS = {
    "payment_intent.succeeded": SUCCEEDED,
    "payment_intent.payment_failed": FAILED,
    "payment_intent.canceled": CANCELED,
    "checkout.session.completed": SUCCEEDED,
    "checkout.session.async_payment_succeeded": SUCCEEDED,
    "checkout.session.async_payment_failed": FAILED,
    "checkout.session.expired": CANCELED,
}


def _id(value: Any) -> Optional[str]:
    # expandable fields arrive as an id or as the expanded object
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


def _name(fn: Any) -> str:
    return getattr(fn, "__qualname__", repr(fn))


class StripeGateway(PaymentGateway):
    """
    Stripe payment intents (`mode="intent"`, the client confirms with the
    client secret) or hosted checkout sessions (`mode="session"`, the buyer
    is redirected). The stored ref is the intent id or the session id; ids
    starting with `cs_` are sessions.
    """
    name = "stripe"

    def __init__(
        self,
        api_key: Optional[str] = STRIPE_SECRET_KEY,
        webhook_secret: Optional[str] = STRIPE_WEBHOOK_SECRET,
        mode: str = STRIPE_CHECKOUT_MODE,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
        success_url: str = STRIPE_SUCCESS_URL,
        cancel_url: str = STRIPE_CANCEL_URL,
    ) -> None:
        if not api_key:
            raise RuntimeError("StripeGateway requires STRIPE_SECRET_KEY")
        if mode not in ("intent", "session"):
            raise RuntimeError(f"unknown STRIPE_CHECKOUT_MODE: {mode}")
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.mode = mode
        self.timeout = timeout
        self.success_url = success_url
        self.cancel_url = cancel_url

    async def _call(self, fn, *args, **kwargs):
        """Run a blocking stripe call off the loop, bounded by the timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs),
                self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("stripe_timeout", call=_name(fn))
            raise GatewayError("timeout", "Payment processor timed out",
                               transient=True)
        except stripe.CardError as e:
            raise GatewayError(e.code or "card_declined",
                               e.user_message or str(e))
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.warning("stripe_unavailable", call=_name(fn),
                           error=str(e))
            raise GatewayError(e.code or "api_connection_error", str(e),
                               transient=True)
        except stripe.StripeError as e:
            logger.error("stripe_error", call=_name(fn), error=str(e))
            raise GatewayError(e.code or "stripe_error", str(e))

    @staticmethod
    def _view(pi: Any, payment_ref: Optional[str] = None) -> GatewayPayment:
        err = pi.get("last_payment_error") or {}
        return GatewayPayment(
            payment_ref=payment_ref or pi["id"],
            payment_intent_id=pi["id"],
            status=_STATUS.get(pi["status"], PaymentStatus.PENDING),
            payment_method=_id(pi.get("payment_method")),
            amount_cents=pi.get("amount"),
            currency=pi.get("currency"),
            error_code=err.get("decline_code") or err.get("code"),
            error_message=err.get("message"),
            metadata=dict(pi.get("metadata") or {}),
        )

    async def _intent_id(self, payment_ref: str) -> str:
        if not payment_ref.startswith("cs_"):
            return payment_ref
        session = await self._call(stripe.checkout.Session.retrieve,
                                   payment_ref)
        intent = _id(session.get("payment_intent"))
        if not intent:
            raise GatewayError("payment_intent_unexpected_state",
                               "Checkout session has no payment yet")
        return intent

    # ---
    # PaymentGateway
    # ---
    async def create_payment(self, amount_cents, currency, metadata,
                             idempotency_key) -> GatewayIntent:
        metadata = dict(metadata)
        if self.mode == "session":
            session = await self._call(
                stripe.checkout.Session.create,
                mode="payment",
                line_items=[{
                    "price_data": {
                        "currency": currency,
                        "unit_amount": int(amount_cents),
                        "product_data": {
                            "name": metadata.get("description", "Tickets"),
                        },
                    },
                    "quantity": 1,
                }],
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                success_url=self.success_url,
                cancel_url=self.cancel_url,
                idempotency_key=idempotency_key,
            )
            return GatewayIntent(
                payment_ref=session["id"],
                status=PaymentStatus.PENDING,
                redirect_url=session.get("url"),
                payment_intent_id=_id(session.get("payment_intent")),
            )

        pi = await self._call(
            stripe.PaymentIntent.create,
            amount=int(amount_cents),
            currency=currency,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
        return GatewayIntent(
            payment_ref=pi["id"],
            payment_intent_id=pi["id"],
            status=_STATUS.get(pi["status"], PaymentStatus.PENDING),
            client_secret=pi.get("client_secret"),
        )

    async def retrieve(self, payment_ref: str) -> GatewayPayment:
        if not payment_ref.startswith("cs_"):
            pi = await self._call(stripe.PaymentIntent.retrieve, payment_ref)
            return self._view(pi)

        session = await self._call(stripe.checkout.Session.retrieve,
                                   payment_ref, expand=["payment_intent"])
        pi = session.get("payment_intent")
        if pi is not None and not isinstance(pi, str):
            return self._view(pi, payment_ref=payment_ref)
        if session.get("status") == "expired":
            status = PaymentStatus.CANCELED
        elif session.get("payment_status") == "paid":
            status = PaymentStatus.SUCCEEDED
        else:
            status = PaymentStatus.PENDING
        return GatewayPayment(
            payment_ref=payment_ref,
            payment_intent_id=pi,
            status=status,
            amount_cents=session.get("amount_total"),
            currency=session.get("currency"),
            metadata=dict(session.get("metadata") or {}),
        )

    async def update_payment_method(self, payment_ref, payment_method,
                                    idempotency_key) -> GatewayPayment:
        intent = await self._intent_id(payment_ref)
        pi = await self._call(
            stripe.PaymentIntent.modify, intent,
            payment_method=payment_method,
            idempotency_key=idempotency_key,
        )
        return self._view(pi, payment_ref=payment_ref)

    async def confirm(self, payment_ref, idempotency_key) -> GatewayPayment:
        intent = await self._intent_id(payment_ref)
        pi = await self._call(
            stripe.PaymentIntent.confirm, intent,
            idempotency_key=idempotency_key,
        )
        return self._view(pi, payment_ref=payment_ref)

    async def cancel(self, payment_ref, idempotency_key=None) -> GatewayPayment:
        if payment_ref.startswith("cs_"):
            await self._call(stripe.checkout.Session.expire, payment_ref,
                             idempotency_key=idempotency_key)
            return await self.retrieve(payment_ref)
        pi = await self._call(stripe.PaymentIntent.cancel, payment_ref,
                              idempotency_key=idempotency_key)
        return self._view(pi)

    def verify_webhook(self, payload: bytes,
                       headers: Mapping[str, str]) -> dict:
        if not self.webhook_secret:
            raise RuntimeError("StripeGateway requires STRIPE_WEBHOOK_SECRET")
        try:
            stripe.Webhook.construct_event(
                payload, headers.get("stripe-signature", ""),
                self.webhook_secret,
            )
        except stripe.SignatureVerificationError:
            raise InvalidSignatureError()
        except ValueError:
            raise ValidationError("Invalid JSON")
        return json.loads(payload.decode())

    def parse_event(self, event: dict) -> GatewayEvent:
        etype = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        kind = _EVENT_KINDS.get(etype, IGNORED)

        if etype.startswith("checkout.session."):
            if (etype == "checkout.session.completed"
                    and obj.get("payment_status") != "paid"):
                # async methods settle later via async_payment_succeeded
                kind = IGNORED
            intent = _id(obj.get("payment_intent"))
            refs = tuple(r for r in (obj.get("id"), intent) if r)
            err: dict = {}
            pm = None
            amount = obj.get("amount_total")
        else:
            intent = obj.get("id")
            refs = (intent,) if intent else ()
            err = obj.get("last_payment_error") or {}
            pm = _id(obj.get("payment_method"))
            amount = obj.get("amount")

        return GatewayEvent(
            event_id=event.get("id", ""),
            kind=kind,
            event_type=etype,
            payment_refs=refs,
            payment_intent_id=intent,
            order_id=(obj.get("metadata") or {}).get("order_id"),
            payment_method=pm,
            error_code=err.get("decline_code") or err.get("code"),
            error_message=err.get("message"),
            amount_cents=amount,
        )
