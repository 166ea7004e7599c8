"""
Fulfillment: selection -> paid order -> exactly `quantity` tickets.

Three entry points reach the same end state and may race each other:

  confirm_payment      buyer returns from the payment form
  apply_payment_event  gateway webhook (at-least-once, any order)
  retry_payment        buyer supplies a new payment method

All of them settle through `OrderLedger.mark_paid`, which transitions at
most once, and then run `issue_tickets`, which only fills slots that are
still empty. Either can be repeated safely.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Awaitable, Iterable, Optional, TypeVar

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import (
    MIN_CHARGE_CENTS,
    PLATFORM_FEE_FIXED_CENTS,
    PLATFORM_FEE_PERCENT,
    PROCESSOR_FEE_FIXED_CENTS,
    PROCESSOR_FEE_PERCENT,
)
from .errors import (
    AuthorizationError,
    ConflictError,
    EventNotFoundError,
    OrderNotFoundError,
    GatewayError,
    ValidationError,
)
from .gateway import GatewayEvent, GatewayIntent, PaymentGateway, PaymentStatus
from .gateway.base import CANCELED, FAILED, SUCCEEDED
from .gateway import idempotency_key as idem
from .helpers import is_valid_email, new_id, now_ts, to_iso
from .infra.sql import Gated
from .infra.timings import timeit
from .ledger import (
    OPEN_STATES,
    RETRYABLE_STATES,
    OrderLedger,
    OrderStatus,
    is_paid,
    load_items,
    load_tickets,
)
from .model.catalog import get_event, load_catalog
from .model.db import Order, OrderItem, Ticket
from .pricing import (
    DiscountValidation,
    FeeSchedule,
    PriceCalculation,
    PricingEngine,
    Selection,
)
from .ticketcodes import TicketCodeGenerator

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def default_pricing() -> PricingEngine:
    return PricingEngine(
        FeeSchedule(PLATFORM_FEE_PERCENT, PLATFORM_FEE_FIXED_CENTS),
        FeeSchedule(PROCESSOR_FEE_PERCENT, PROCESSOR_FEE_FIXED_CENTS),
    )


@dataclass
class Checkout:
    order: Order
    intent: GatewayIntent
    pricing: PriceCalculation


@dataclass
class FulfillmentResult:
    order: Order
    tickets: list[Ticket] = field(default_factory=list)
    # True only for the call that moved the order into paid
    transitioned: bool = False


@dataclass
class OrderView:
    order: Order
    items: list[OrderItem]
    tickets: list[Ticket]


class FulfillmentOrchestrator:
    def __init__(
        self,
        db: AsyncSession,
        gated: Gated,
        gateway: PaymentGateway,
        pricing: Optional[PricingEngine] = None,
        codes: Optional[TicketCodeGenerator] = None,
    ) -> None:
        self.db = db
        self.gated = gated
        self.gateway = gateway
        self.pricing = pricing or default_pricing()
        self.codes = codes or TicketCodeGenerator()
        self.ledger = OrderLedger(db, gated)

    # ---
    # pricing
    # ---
    async def quote(
        self,
        selections: Iterable[Selection],
        event_id: Optional[str] = None,
        discount_code: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> PriceCalculation:
        selections = list(selections)
        async with timeit("pricing.quote"):
            async with self.gated():
                async with self.db.begin():
                    if event_id is not None:
                        await self._published_event(event_id)
                    catalog = await load_catalog(
                        self.db, [s.tier_id for s in selections],
                        event_id, discount_code,
                    )
            return self.pricing.calculate(
                selections, catalog, discount_code, currency
            )

    async def validate_discount_code(
        self,
        event_id: str,
        code: str,
        tier_ids: Iterable[str] = (),
        subtotal_cents: Optional[int] = None,
    ) -> DiscountValidation:
        tier_ids = list(tier_ids)
        async with self.gated():
            async with self.db.begin():
                await self._published_event(event_id)
                catalog = await load_catalog(self.db, tier_ids, event_id, code)
        return self.pricing.validate_code(
            catalog, code, tier_ids or catalog.tiers.keys(), subtotal_cents
        )

    # ---
    # checkout
    # ---
    async def create_checkout(
        self,
        buyer_id: str,
        event_id: str,
        selections: Iterable[Selection],
        *,
        buyer_email: str,
        buyer_name: str = "",
        discount_code: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> Checkout:
        if not buyer_id:
            raise AuthorizationError("Sign in to buy tickets")
        if not is_valid_email(buyer_email):
            raise ValidationError(
                "buyer_email is required and must be a valid email address"
            )
        pricing = await self.quote(selections, event_id, discount_code,
                                   currency)
        if pricing.total_cents < MIN_CHARGE_CENTS:
            raise ValidationError(
                f"Order total must be at least {MIN_CHARGE_CENTS} cents"
            )

        order = await self.ledger.create(
            event_id, buyer_id, pricing.quantity, pricing,
            buyer_email=buyer_email.strip(), buyer_name=buyer_name.strip(),
        )
        order_id = order.id
        log = logger.bind(order_id=order_id)

        try:
            async with timeit("gateway.create"):
                intent = await self.gateway.create_payment(
                    pricing.total_cents,
                    pricing.currency,
                    {
                        "order_id": order.id,
                        "event_id": event_id,
                        "buyer_id": buyer_id,
                        "quantity": str(pricing.quantity),
                    },
                    idem(order.id, "create"),
                )
        except GatewayError as e:
            log.warning("checkout_gateway_failed", **e.audit())
            await self.ledger.mark_failed(
                order.id, {**e.audit(), "last_error_step": "gateway.create"}
            )
            raise

        try:
            order = await self.ledger.attach_payment(
                order.id, intent.payment_ref, intent.payment_intent_id
            )
        except Exception:
            # the order is unusable without its ref; do not leave a live
            # intent behind
            log.error("checkout_attach_failed",
                      payment_ref=intent.payment_ref, exc_info=True)
            await self._cancel_quietly(order_id, intent.payment_ref)
            raise

        log.info("checkout_created", payment_ref=intent.payment_ref,
                 amount_cents=order.amount_cents)
        return Checkout(order=order, intent=intent, pricing=pricing)

    async def _cancel_quietly(self, order_id: str, payment_ref: str) -> None:
        try:
            await self.gateway.cancel(payment_ref, idem(order_id, "cancel"))
        except GatewayError as e:
            logger.warning("checkout_cancel_failed", order_id=order_id,
                           payment_ref=payment_ref, **e.audit())

    # ---
    # entry 1: synchronous confirmation
    # ---
    async def confirm_payment(
        self, buyer_id: Optional[str], order_id: str,
    ) -> FulfillmentResult:
        order = self._owned(await self.ledger.get(order_id), buyer_id)
        if is_paid(order):
            return FulfillmentResult(order, await self.issue_tickets(order))
        if order.status == OrderStatus.CANCELLED.value:
            raise ConflictError("Order was cancelled")
        if not order.payment_ref:
            raise ConflictError("Order has no payment yet")

        payment = await self._gateway_step(
            order, "gateway.retrieve",
            self.gateway.retrieve(order.payment_ref),
        )
        self._check_amount(order, payment.amount_cents)

        if payment.status is PaymentStatus.SUCCEEDED:
            return await self._settle(
                order.id, payment.payment_method, payment.external_ids(),
                "confirm",
            )
        if payment.status is PaymentStatus.CANCELED:
            if order.status in RETRYABLE_STATES:
                await self.ledger.mark_cancelled(order.id, "payment_canceled")
            raise ConflictError("Payment was canceled")
        if payment.status is PaymentStatus.FAILED or (
            payment.status is PaymentStatus.REQUIRES_PAYMENT_METHOD
            and payment.error_code
        ):
            err = GatewayError(payment.error_code or "payment_failed",
                               payment.error_message or "")
            if order.status in OPEN_STATES:
                await self.ledger.mark_failed(
                    order.id, {**err.audit(), "failed_via": "confirm"}
                )
            raise err
        if payment.status in (PaymentStatus.PROCESSING,
                              PaymentStatus.REQUIRES_ACTION):
            if order.status == OrderStatus.PENDING.value:
                order = await self.ledger.mark_processing(order.id)
        # not settled yet: the webhook (or another confirm) finishes it
        return FulfillmentResult(order)

    # ---
    # entry 2: webhook
    # ---
    async def apply_payment_event(
        self, event: GatewayEvent,
    ) -> Optional[FulfillmentResult]:
        if event.kind not in (SUCCEEDED, FAILED, CANCELED):
            return None
        order = await self._order_for_event(event)
        log = logger.bind(order_id=order.id, event_id=event.event_id,
                          kind=event.kind)

        if event.kind == SUCCEEDED:
            self._check_amount(order, event.amount_cents)
            return await self._settle(
                order.id, event.payment_method, event.external_ids(),
                "webhook",
            )

        if event.kind == FAILED:
            if order.status not in OPEN_STATES:
                log.info("payment_event_ignored", status=order.status)
                return FulfillmentResult(order)
            order = await self.ledger.mark_failed(order.id, {
                "last_error": event.error_message or event.error_code,
                "last_error_code": event.error_code,
                "failed_via": "webhook",
            })
            return FulfillmentResult(order)

        # CANCELED
        if order.status not in RETRYABLE_STATES:
            log.info("payment_event_ignored", status=order.status)
            return FulfillmentResult(order)
        order = await self.ledger.mark_cancelled(order.id, "payment_canceled")
        return FulfillmentResult(order)

    async def _order_for_event(self, event: GatewayEvent) -> Order:
        for ref in event.payment_refs:
            order = await self.ledger.find_by_payment_ref(ref)
            if order is not None:
                return order
        if event.order_id:
            return await self.ledger.get(event.order_id)
        # unknown yet: the gateway redelivers until the order exists
        raise OrderNotFoundError(
            event.payment_refs[0] if event.payment_refs else event.event_id
        )

    # ---
    # entry 3: manual retry
    # ---
    async def retry_payment(
        self, buyer_id: Optional[str], order_id: str, payment_method: str,
    ) -> FulfillmentResult:
        if not payment_method:
            raise ValidationError("payment_method is required")
        order = self._owned(await self.ledger.get(order_id), buyer_id)
        if order.status not in RETRYABLE_STATES:
            raise ConflictError(
                f"Cannot retry payment for order with status: {order.status}"
            )
        if not order.payment_ref:
            raise ConflictError("Order has no payment yet")
        ref = order.payment_ref

        payment = await self._gateway_step(
            order, "gateway.retrieve", self.gateway.retrieve(ref)
        )
        if payment.status is PaymentStatus.SUCCEEDED:
            raise ConflictError("Payment already succeeded")
        if payment.status is PaymentStatus.CANCELED:
            raise ConflictError("Payment was canceled")

        order = await self.ledger.begin_retry(order.id)
        attempt = order.meta["retry_count"]
        try:
            async with timeit("gateway.retry"):
                await self.gateway.update_payment_method(
                    ref, payment_method, idem(order.id, "retry", attempt,
                                              "update"),
                )
                payment = await self.gateway.confirm(
                    ref, idem(order.id, "retry", attempt, "confirm"),
                )
        except GatewayError as e:
            await self.ledger.mark_failed(order.id, {
                **e.audit(), "failed_via": "retry",
            })
            raise

        if payment.status is PaymentStatus.SUCCEEDED:
            return await self._settle(
                order.id, payment.payment_method or payment_method,
                payment.external_ids(), "retry",
            )
        if payment.status in (PaymentStatus.REQUIRES_ACTION,
                              PaymentStatus.PROCESSING):
            # stays processing until the buyer finishes authentication
            return FulfillmentResult(order)

        err = GatewayError(payment.error_code or "payment_failed",
                           payment.error_message or "")
        await self.ledger.mark_failed(order.id, {
            **err.audit(), "failed_via": "retry",
        })
        raise err

    # ---
    # settlement + tickets
    # ---
    async def _settle(self, order_key: str, payment_method: Optional[str],
                      external_ids: dict, source: str) -> FulfillmentResult:
        async with timeit("ledger.mark_paid"):
            settled = await self.ledger.mark_paid(
                order_key, payment_method, external_ids, source
            )
        tickets = await self.issue_tickets(settled.order)
        return FulfillmentResult(settled.order, tickets, settled.transitioned)

    async def issue_tickets(self, order: Order) -> list[Ticket]:
        """
        Fill every empty ticket slot of a paid order and return all tickets.

        Slots `0..quantity-1` are handed out across the order items in
        position order. Concurrent issuers collide on `(order_id, slot)`,
        so the total never exceeds the quantity. A failure leaves the
        order paid with its tickets incomplete; running this again
        finishes the job.
        """
        if not is_paid(order):
            raise ConflictError("Order is not paid")
        # a rollback expires `order`; only the id is safe to read afterwards
        order_id = order.id
        try:
            async with timeit("tickets.issue"):
                async with self.gated():
                    async with self.db.begin():
                        created = await self._fill_slots(order)
                        tickets = await load_tickets(self.db, order_id)
        except Exception as e:
            logger.error("ticket_issuance_failed", order_id=order_id,
                         exc_info=True)
            await self.ledger.annotate(
                order_id,
                last_issuance_error=type(e).__name__,
                last_issuance_error_at=to_iso(now_ts()),
            )
            raise

        if created:
            logger.info("tickets_issued", order_id=order_id,
                        created=created, total=len(tickets))
        return tickets

    async def _fill_slots(self, order: Order) -> int:
        # UN-GATED: caller holds the gate and the transaction
        taken = {t.slot for t in await load_tickets(self.db, order.id)}
        if len(taken) >= order.quantity:
            return 0

        event = await get_event(self.db, order.event_id)
        event_name = event.name if event is not None else ""
        purchase_date = to_iso(order.paid_at)
        created = 0
        slot = 0
        for item in await load_items(self.db, order.id):
            for _ in range(item.quantity):
                if slot >= order.quantity:
                    break
                if slot not in taken:
                    created += await self._issue_one(
                        order, item, slot, event_name, purchase_date
                    )
                slot += 1
        return created

    async def _issue_one(self, order: Order, item: OrderItem, slot: int,
                         event_name: str, purchase_date: Optional[str]) -> int:
        def build(code: str) -> Ticket:
            return Ticket(
                id=new_id(),
                order_id=order.id,
                slot=slot,
                event_id=order.event_id,
                ticket_tier_id=item.tier_id,
                attendee_email=order.buyer_email,
                attendee_name=order.buyer_name,
                ticket_code=code,
                status="valid",
                meta={
                    "tier_name": item.tier_name,
                    "event_name": event_name,
                    "price_cents": item.unit_price_cents,
                    "currency": order.currency,
                    "purchase_date": purchase_date,
                },
                created_at=now_ts(),
            )

        try:
            await self.codes.insert_unique(self.db, build)
        except IntegrityError:
            # another issuer filled this slot first
            logger.info("ticket_slot_taken", order_id=order.id, slot=slot)
            return 0
        return 1

    async def resume_issuance(self, buyer_id: Optional[str],
                              order_id: str) -> FulfillmentResult:
        order = self._owned(await self.ledger.get(order_id), buyer_id)
        if not is_paid(order):
            raise ConflictError(
                f"Cannot issue tickets for order with status: {order.status}"
            )
        return FulfillmentResult(order, await self.issue_tickets(order))

    async def resume_all(self, limit: int = 100) -> dict[str, int]:
        """Finish issuance for every paid order that is still short of tickets."""
        done = failed = 0
        # ids only: a failed issuance expires every order in the session
        short = await self.ledger.list_paid_missing_tickets(limit)
        order_ids = [o.id for o in short]
        for order_id in order_ids:
            try:
                await self.issue_tickets(await self.ledger.get(order_id))
                done += 1
            except Exception:
                # already logged and recorded on the order; next sweep retries
                failed += 1
        if done or failed:
            logger.info("issuance_resumed", done=done, failed=failed)
        return {"done": done, "failed": failed}

    # ---
    # reads
    # ---
    async def order_status(self, buyer_id: Optional[str],
                           order_id: str) -> OrderView:
        order = self._owned(await self.ledger.get(order_id), buyer_id)
        async with self.gated():
            async with self.db.begin():
                items = await load_items(self.db, order.id)
                tickets = await load_tickets(self.db, order.id)
        return OrderView(order, items, tickets)

    async def list_orders(self, buyer_id: str,
                          limit: int = 100) -> list[Order]:
        if not buyer_id:
            raise AuthorizationError("Sign in to see your orders")
        return await self.ledger.list_for_buyer(buyer_id, limit)

    # ---
    # helpers
    # ---
    async def _published_event(self, event_id: str):
        event = await get_event(self.db, event_id)
        if event is None or event.status != "published":
            raise EventNotFoundError(event_id)
        return event

    async def _gateway_step(self, order: Order, step: str,
                            call: Awaitable[T]) -> T:
        order_id, status = order.id, order.status
        try:
            async with timeit(step):
                return await call
        except GatewayError as e:
            info = {**e.audit(), "last_error_step": step}
            if status in OPEN_STATES:
                # the attempt is over; confirm or retry can still settle it
                try:
                    await self.ledger.mark_failed(order_id, info)
                except ConflictError:
                    await self.ledger.annotate(order_id, **info)
            else:
                await self.ledger.annotate(order_id, **info)
            raise

    @staticmethod
    def _owned(order: Order, buyer_id: Optional[str]) -> Order:
        # None: internal caller (webhook, sweeper)
        if buyer_id is not None and order.buyer_id != buyer_id:
            raise AuthorizationError("You do not have access to this order")
        return order

    @staticmethod
    def _check_amount(order: Order, amount_cents: Optional[int]) -> None:
        if amount_cents is not None and amount_cents != order.amount_cents:
            logger.error("payment_amount_mismatch", order_id=order.id,
                         expected=order.amount_cents, got=amount_cents)
            raise ConflictError("Payment amount does not match the order")
