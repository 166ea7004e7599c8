import asyncio

import pytest
from sqlalchemy import update

from klubtix.errors import ConflictError, OrderNotFoundError, ValidationError
from klubtix.ledger import OrderStatus
from klubtix.model.db import DiscountCode, Order, TicketTier
from klubtix.pricing import Selection

from .conftest import BUYER, EMAIL, EVENT_ID, GA, VIP

pytestmark = pytest.mark.asyncio


async def new_order(orch, quantity=2, tier_id=GA, code=None):
    pricing = await orch.quote([Selection(tier_id, quantity)], EVENT_ID, code)
    return await orch.ledger.create(
        EVENT_ID, BUYER, pricing.quantity, pricing, buyer_email=EMAIL
    )


async def sold(store, tier_id=GA) -> int:
    async with store.SessionAsync() as db:
        return (await db.get(TicketTier, tier_id)).quantity_sold


async def test_create_records_money_and_items(orchestrator):
    orch = orchestrator()
    order = await new_order(orch)
    assert order.status == OrderStatus.PENDING.value
    assert order.quantity == 2
    assert order.subtotal_cents == 10000
    assert order.fee_cents == 620
    assert order.amount_cents == 10620
    assert order.meta["platform_fee"] == 620
    assert order.meta["processor_fee"] == 338
    assert order.meta["net_amount"] == 10620 - 338
    assert order.meta["retry_count"] == 0

    items = await orch.ledger.items(order.id)
    assert [(i.tier_id, i.quantity, i.unit_price_cents) for i in items] == [
        (GA, 2, 5000)
    ]


async def test_create_rejects_quantity_mismatch(orchestrator):
    orch = orchestrator()
    pricing = await orch.quote([Selection(GA, 2)], EVENT_ID)
    with pytest.raises(ValidationError):
        await orch.ledger.create(EVENT_ID, BUYER, 3, pricing)


async def test_mark_paid_applies_once(store, orchestrator):
    ledger = orchestrator().ledger
    order = await new_order(orchestrator())

    first = await ledger.mark_paid(
        order.id, "pm_card_visa",
        {"payment_ref": "mock_1", "payment_intent_id": "mock_1"},
    )
    assert first.transitioned
    assert first.order.status == "paid"
    assert first.order.payment_ref == "mock_1"
    assert first.order.meta["paid_via"] == "confirm"

    again = await ledger.mark_paid("mock_1", "pm_other", source="webhook")
    assert not again.transitioned
    assert again.order.paid_at == first.order.paid_at
    assert again.order.payment_method == "pm_card_visa"
    assert again.order.meta["paid_via"] == "confirm"
    assert await sold(store) == 2


async def test_concurrent_mark_paid_transitions_once(store, orchestrator):
    order = await new_order(orchestrator())
    a, b = orchestrator().ledger, orchestrator().ledger

    results = await asyncio.gather(
        a.mark_paid(order.id, "pm_card_visa", source="confirm"),
        b.mark_paid(order.id, "pm_card_visa", source="webhook"),
    )
    assert sorted(r.transitioned for r in results) == [False, True]
    assert await sold(store) == 2


async def test_paid_is_terminal(orchestrator):
    ledger = orchestrator().ledger
    order = await new_order(orchestrator())
    await ledger.mark_paid(order.id, "pm_card_visa")

    with pytest.raises(ConflictError):
        await ledger.mark_failed(order.id, {"last_error_code": "late"})
    with pytest.raises(ConflictError):
        await ledger.mark_cancelled(order.id, "too late")
    with pytest.raises(ConflictError, match="status: paid"):
        await ledger.begin_retry(order.id)

    after = await ledger.get(order.id)
    assert after.status == "paid"
    assert after.amount_cents == order.amount_cents
    assert "last_error_code" not in after.meta


async def test_cancelled_is_terminal(orchestrator):
    ledger = orchestrator().ledger
    order = await new_order(orchestrator())
    await ledger.mark_cancelled(order.id, "buyer_abandoned")

    with pytest.raises(ConflictError):
        await ledger.mark_paid(order.id, "pm_card_visa")
    with pytest.raises(ConflictError):
        await ledger.begin_retry(order.id)
    assert (await ledger.get(order.id)).status == "cancelled"


async def test_legacy_completed_counts_as_paid(store, orchestrator):
    ledger = orchestrator().ledger
    order = await new_order(orchestrator())
    async with store.SessionAsync() as db:
        async with db.begin():
            await db.execute(
                update(Order).where(Order.id == order.id)
                .values(status="completed")
            )

    settled = await ledger.mark_paid(order.id, "pm_card_visa")
    assert not settled.transitioned
    assert settled.order.status == "completed"
    with pytest.raises(ConflictError):
        await ledger.mark_failed(order.id, {})


async def test_failed_then_retry(orchestrator):
    ledger = orchestrator().ledger
    order = await new_order(orchestrator())

    failed = await ledger.mark_failed(order.id, {
        "last_error": "Your card was declined.",
        "last_error_code": "card_declined",
    })
    assert failed.status == "failed"
    assert failed.failed_at is not None
    assert failed.meta["last_error_code"] == "card_declined"

    # failed is not open: a second failure report is a conflict
    with pytest.raises(ConflictError):
        await ledger.mark_failed(order.id, {"last_error_code": "again"})

    retried = await ledger.begin_retry(order.id)
    assert retried.status == "processing"
    assert retried.meta["retry_count"] == 1
    assert retried.meta["last_retry_at"]

    retried = await ledger.begin_retry(order.id)
    assert retried.meta["retry_count"] == 2

    paid = await ledger.mark_paid(order.id, "pm_card_visa", source="retry")
    assert paid.transitioned
    assert paid.order.meta["retry_count"] == 2


async def test_mark_processing(orchestrator):
    ledger = orchestrator().ledger
    order = await new_order(orchestrator())
    assert (await ledger.mark_processing(order.id)).status == "processing"
    assert (await ledger.mark_processing(order.id)).status == "processing"
    await ledger.mark_paid(order.id, None)
    with pytest.raises(ConflictError):
        await ledger.mark_processing(order.id)


async def test_lookup_by_any_reference(orchestrator):
    ledger = orchestrator().ledger
    order = await new_order(orchestrator())
    await ledger.attach_payment(order.id, "cs_test_123", "pi_test_123")

    assert (await ledger.get(order.id)).payment_ref == "cs_test_123"
    assert (await ledger.get("cs_test_123")).id == order.id
    assert (await ledger.get("pi_test_123")).id == order.id
    assert await ledger.find_by_payment_ref("cs_other") is None
    with pytest.raises(OrderNotFoundError):
        await ledger.get("cs_other")


async def test_lookup_by_legacy_metadata(orchestrator):
    ledger = orchestrator().ledger
    order = await new_order(orchestrator())
    await ledger.annotate(order.id, stripe_payment_intent_id="pi_legacy_1")

    found = await ledger.find_by_payment_ref("pi_legacy_1")
    assert found is not None and found.id == order.id

    settled = await ledger.mark_paid("pi_legacy_1", "card", source="webhook")
    assert settled.transitioned
    assert settled.order.id == order.id


async def test_discount_use_is_booked_on_payment(store, orchestrator):
    ledger = orchestrator().ledger
    order = await new_order(orchestrator(), quantity=1, tier_id=VIP,
                            code="early10")
    assert order.discount_code == "EARLY10"
    assert order.discount_cents == 1500

    await ledger.mark_paid(order.id, "pm_card_visa")
    await ledger.mark_paid(order.id, "pm_card_visa")
    async with store.SessionAsync() as db:
        dc = await db.get(DiscountCode, f"{EVENT_ID}-early10")
    assert dc.usage_count == 1
    assert await sold(store, VIP) == 1


async def test_paid_orders_missing_tickets(orchestrator):
    ledger = orchestrator().ledger
    paid = await new_order(orchestrator())
    pending = await new_order(orchestrator())
    await ledger.mark_paid(paid.id, "pm_card_visa")

    missing = {o.id for o in await ledger.list_paid_missing_tickets()}
    assert paid.id in missing
    assert pending.id not in missing


async def test_list_for_buyer(orchestrator):
    ledger = orchestrator().ledger
    first = await new_order(orchestrator())
    second = await new_order(orchestrator())
    orders = await ledger.list_for_buyer(BUYER)
    assert {o.id for o in orders} == {first.id, second.id}
    assert await ledger.list_for_buyer("someone-else") == []
