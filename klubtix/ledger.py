"""
Order ledger: the only code that writes order state.

    pending ──> processing ──> paid
       │  ╲         │  ▲
       │   ╲        ▼  │ (retry)
       │    ╲──> failed
       ▼
    cancelled            (also from processing / failed)

`paid` (and the legacy spelling `completed`) and `cancelled` are terminal.
Every transition is a conditional UPDATE on the current status, so a
webhook racing a synchronous confirmation can never apply a payment twice.
"""
from __future__ import annotations
from enum import Enum
from typing import Any, Iterable, NamedTuple, Optional

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ConflictError, OrderNotFoundError, ValidationError
from .helpers import new_id, now_ts, to_iso
from .infra.sql import Gated
from .model.db import DiscountCode, Order, OrderItem, Ticket, TicketTier
from .pricing import PriceCalculation

logger = structlog.get_logger(__name__)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    COMPLETED = "completed"  # legacy rows
    FAILED = "failed"
    CANCELLED = "cancelled"


PAID_STATES = (OrderStatus.PAID.value, OrderStatus.COMPLETED.value)
TERMINAL_STATES = PAID_STATES + (OrderStatus.CANCELLED.value,)
RETRYABLE_STATES = (
    OrderStatus.PENDING.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.FAILED.value,
)
OPEN_STATES = (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value)

# where older rows kept the processor references
LEGACY_REF_KEYS = ("stripe_payment_intent_id", "stripe_session_id")


class Settlement(NamedTuple):
    order: Order
    tickets: list[Ticket]
    transitioned: bool


def is_paid(order: Order) -> bool:
    return order.status in PAID_STATES


# UN-GATED: callers hold the gate and the transaction
async def load_items(db: AsyncSession, order_id: str) -> list[OrderItem]:
    rows = await db.execute(
        select(OrderItem)
        .where(OrderItem.order_id == order_id)
        .order_by(OrderItem.position)
    )
    return list(rows.scalars())


async def load_tickets(db: AsyncSession, order_id: str) -> list[Ticket]:
    rows = await db.execute(
        select(Ticket)
        .where(Ticket.order_id == order_id)
        .order_by(Ticket.slot)
    )
    return list(rows.scalars())


class OrderLedger:
    def __init__(self, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    # ---
    # creation
    # ---
    async def create(
        self,
        event_id: str,
        buyer_id: str,
        quantity: int,
        pricing: PriceCalculation,
        *,
        buyer_email: str = "",
        buyer_name: str = "",
        payment_ref: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
    ) -> Order:
        if quantity != pricing.quantity or quantity < 1:
            raise ValidationError("Quantity does not match the selection")
        if (pricing.total_cents != pricing.subtotal_cents
                - pricing.discount_cents + pricing.fees_cents):
            raise ValidationError("Price does not reconcile")

        order = Order(
            id=new_id(),
            event_id=event_id,
            buyer_id=buyer_id,
            buyer_email=buyer_email,
            buyer_name=buyer_name,
            quantity=quantity,
            subtotal_cents=pricing.subtotal_cents,
            discount_cents=pricing.discount_cents,
            fee_cents=pricing.fees_cents,
            amount_cents=pricing.total_cents,
            currency=pricing.currency,
            discount_code=pricing.discount_code,
            status=OrderStatus.PENDING.value,
            payment_ref=payment_ref,
            payment_intent_id=payment_intent_id,
            meta={
                "applied_discount": pricing.applied_discount,
                "platform_fee": pricing.fees_cents,
                "processor_fee": pricing.processor_fee_cents,
                "net_amount": pricing.net_cents,
                "retry_count": 0,
            },
            created_at=now_ts(),
        )
        async with self.gated():
            async with self.db.begin():
                self.db.add(order)
                for pos, line in enumerate(pricing.lines):
                    self.db.add(OrderItem(
                        id=new_id(),
                        order_id=order.id,
                        position=pos,
                        tier_id=line.tier_id,
                        tier_name=line.tier_name,
                        quantity=line.quantity,
                        unit_price_cents=line.unit_price_cents,
                    ))
        logger.info(
            "order_created", order_id=order.id, event_id=event_id,
            quantity=quantity, amount_cents=order.amount_cents,
        )
        return order

    async def attach_payment(
        self, order_id: str, payment_ref: str,
        payment_intent_id: Optional[str] = None,
    ) -> Order:
        async with self.gated():
            async with self.db.begin():
                order = await self._locate(order_id, lock=True)
                values: dict[str, Any] = {"payment_ref": payment_ref}
                if payment_intent_id:
                    values["payment_intent_id"] = payment_intent_id
                return await self._write(order, values)

    # ---
    # reads
    # ---
    async def get(self, order_id_or_ref: str) -> Order:
        async with self.gated():
            async with self.db.begin():
                return await self._locate(order_id_or_ref)

    async def find_by_payment_ref(self, ref: str) -> Optional[Order]:
        async with self.gated():
            async with self.db.begin():
                return await self._by_ref(ref)

    async def items(self, order_id: str) -> list[OrderItem]:
        async with self.gated():
            async with self.db.begin():
                return await load_items(self.db, order_id)

    async def tickets(self, order_id: str) -> list[Ticket]:
        async with self.gated():
            async with self.db.begin():
                return await load_tickets(self.db, order_id)

    async def list_for_buyer(self, buyer_id: str,
                             limit: int = 100) -> list[Order]:
        async with self.gated():
            async with self.db.begin():
                rows = await self.db.execute(
                    select(Order)
                    .where(Order.buyer_id == buyer_id)
                    .order_by(Order.created_at.desc())
                    .limit(max(1, min(limit, 500)))
                )
                return list(rows.scalars())

    async def list_paid_missing_tickets(self, limit: int = 100) -> list[Order]:
        """Paid orders whose ticket count is still short of the quantity."""
        issued = (
            select(Ticket.order_id, func.count(Ticket.id).label("n"))
            .group_by(Ticket.order_id)
            .subquery()
        )
        async with self.gated():
            async with self.db.begin():
                rows = await self.db.execute(
                    select(Order)
                    .outerjoin(issued, issued.c.order_id == Order.id)
                    .where(
                        Order.status.in_(PAID_STATES),
                        func.coalesce(issued.c.n, 0) < Order.quantity,
                    )
                    .order_by(Order.paid_at)
                    .limit(limit)
                )
                return list(rows.scalars())

    # ---
    # transitions
    # ---
    async def mark_paid(
        self,
        order_id_or_ref: str,
        payment_method: Optional[str],
        external_ids: Optional[dict[str, str]] = None,
        source: str = "confirm",
    ) -> Settlement:
        """
        Move an order into `paid`, exactly once.

        Replays (already paid) return the stored order and its tickets
        untouched. The first application also books the sold units against
        each tier and one use of the discount code.
        """
        external_ids = dict(external_ids or {})
        async with self.gated():
            async with self.db.begin():
                order = await self._locate(order_id_or_ref, lock=True)
                if is_paid(order):
                    return Settlement(
                        order, await load_tickets(self.db, order.id), False
                    )
                if order.status == OrderStatus.CANCELLED.value:
                    raise ConflictError("Order was cancelled")

                paid_at = now_ts()
                values: dict[str, Any] = {
                    "status": OrderStatus.PAID.value,
                    "paid_at": paid_at,
                    "payment_method": payment_method or order.payment_method,
                }
                intent = external_ids.pop("payment_intent_id", None)
                if intent and not order.payment_intent_id:
                    values["payment_intent_id"] = intent
                ref = external_ids.pop("payment_ref", None)
                if ref and not order.payment_ref:
                    values["payment_ref"] = ref
                values["meta"] = {
                    **(order.meta or {}),
                    **external_ids,
                    "paid_via": source,
                    "paid_at": to_iso(paid_at),
                }

                updated = await self._cas(
                    order.id, values, exclude=TERMINAL_STATES
                )
                if updated is None:
                    # lost the race: someone else settled it first
                    order = await self._locate(order.id, lock=True)
                    if is_paid(order):
                        return Settlement(
                            order, await load_tickets(self.db, order.id), False
                        )
                    raise ConflictError(
                        f"Order is {order.status}, cannot mark paid"
                    )

                await self._book_sale(updated)
                tickets = await load_tickets(self.db, updated.id)

        logger.info(
            "order_paid", order_id=updated.id, source=source,
            payment_ref=updated.payment_ref,
            amount_cents=updated.amount_cents,
        )
        return Settlement(updated, tickets, True)

    async def mark_failed(self, order_id: str,
                          error_info: dict[str, Any]) -> Order:
        failed_at = now_ts()
        async with self.gated():
            async with self.db.begin():
                order = await self._locate(order_id, lock=True)
                updated = await self._cas(order.id, {
                    "status": OrderStatus.FAILED.value,
                    "failed_at": failed_at,
                    "meta": {
                        **(order.meta or {}),
                        **error_info,
                        "failed_at": to_iso(failed_at),
                    },
                }, only=OPEN_STATES)
                if updated is None:
                    raise ConflictError(
                        f"Order is {order.status}, cannot mark failed"
                    )
        logger.warning("order_failed", order_id=order.id, **error_info)
        return updated

    async def mark_cancelled(self, order_id: str,
                             reason: Optional[str] = None) -> Order:
        cancelled_at = now_ts()
        async with self.gated():
            async with self.db.begin():
                order = await self._locate(order_id, lock=True)
                updated = await self._cas(order.id, {
                    "status": OrderStatus.CANCELLED.value,
                    "cancelled_at": cancelled_at,
                    "meta": {
                        **(order.meta or {}),
                        "cancellation_reason": reason,
                    },
                }, only=RETRYABLE_STATES)
                if updated is None:
                    raise ConflictError(
                        f"Order is {order.status}, cannot cancel"
                    )
        logger.info("order_cancelled", order_id=order.id, reason=reason)
        return updated

    async def mark_processing(self, order_id: str) -> Order:
        async with self.gated():
            async with self.db.begin():
                order = await self._locate(order_id, lock=True)
                if order.status == OrderStatus.PROCESSING.value:
                    return order
                updated = await self._cas(order.id, {
                    "status": OrderStatus.PROCESSING.value,
                }, only=(OrderStatus.PENDING.value,))
                if updated is None:
                    raise ConflictError(
                        f"Order is {order.status}, cannot move to processing"
                    )
                return updated

    async def begin_retry(self, order_id: str) -> Order:
        now = now_ts()
        async with self.gated():
            async with self.db.begin():
                order = await self._locate(order_id, lock=True)
                meta = dict(order.meta or {})
                meta["retry_count"] = int(meta.get("retry_count", 0)) + 1
                meta["last_retry_at"] = to_iso(now)
                updated = await self._cas(order.id, {
                    "status": OrderStatus.PROCESSING.value,
                    "meta": meta,
                }, only=RETRYABLE_STATES)
                if updated is None:
                    raise ConflictError(
                        f"Cannot retry payment for order with status: "
                        f"{order.status}"
                    )
        logger.info("order_retry", order_id=order.id,
                    retry_count=meta["retry_count"])
        return updated

    async def annotate(self, order_id: str, **info: Any) -> Order:
        """Add audit entries to the metadata; status and money untouched."""
        async with self.gated():
            async with self.db.begin():
                order = await self._locate(order_id, lock=True)
                return await self._write(
                    order, {"meta": {**(order.meta or {}), **info}}
                )

    # ---
    # UN-GATED internals: callers hold the gate and the transaction
    # ---
    async def _locate(self, key: str, lock: bool = False) -> Order:
        stmt = select(Order).where(Order.id == key)
        if lock:
            stmt = stmt.with_for_update()
        order = (await self.db.execute(
            stmt.execution_options(populate_existing=True)
        )).scalars().first()
        if order is None:
            order = await self._by_ref(key, lock=lock)
        if order is None:
            raise OrderNotFoundError(key)
        return order

    async def _by_ref(self, ref: str, lock: bool = False) -> Optional[Order]:
        # canonical columns first, then the legacy metadata copies
        clauses = [
            or_(Order.payment_ref == ref, Order.payment_intent_id == ref),
            or_(*(Order.meta[k].as_string() == ref for k in LEGACY_REF_KEYS)),
        ]
        for clause in clauses:
            stmt = select(Order).where(clause)
            if lock:
                stmt = stmt.with_for_update()
            order = (await self.db.execute(
                stmt.execution_options(populate_existing=True)
            )).scalars().first()
            if order is not None:
                return order
        return None

    async def _cas(
        self,
        order_id: str,
        values: dict[str, Any],
        only: Optional[Iterable[str]] = None,
        exclude: Optional[Iterable[str]] = None,
    ) -> Optional[Order]:
        stmt = update(Order).where(Order.id == order_id)
        if only is not None:
            stmt = stmt.where(Order.status.in_(list(only)))
        if exclude is not None:
            stmt = stmt.where(Order.status.not_in(list(exclude)))
        stmt = (
            stmt.values(**values)
            .returning(Order)
            .execution_options(
                populate_existing=True, synchronize_session=False
            )
        )
        return (await self.db.execute(stmt)).scalars().first()

    async def _write(self, order: Order, values: dict[str, Any]) -> Order:
        updated = await self._cas(order.id, values)
        if updated is None:
            raise OrderNotFoundError(order.id)
        return updated

    async def _book_sale(self, order: Order) -> None:
        for item in await load_items(self.db, order.id):
            await self.db.execute(
                update(TicketTier)
                .where(TicketTier.id == item.tier_id)
                .values(quantity_sold=TicketTier.quantity_sold + item.quantity)
                .execution_options(synchronize_session=False)
            )
        if order.discount_code:
            await self.db.execute(
                update(DiscountCode)
                .where(
                    DiscountCode.event_id == order.event_id,
                    DiscountCode.code == order.discount_code,
                )
                .values(usage_count=DiscountCode.usage_count + 1)
                .execution_options(synchronize_session=False)
            )
