import json
from unittest.mock import AsyncMock

import orjson
import pytest

from klubtix.errors import (
    InvalidSignatureError,
    OrderNotFoundError,
    ValidationError,
)
from klubtix.gateway._mockpay import SIGNATURE_HEADER, sign
from klubtix.model.eventlog import new_store
from klubtix.model.eventlog._redis import k_event
from klubtix.reconciler import WebhookReconciler

from .conftest import BUYER, SECRET, checkout

pytestmark = pytest.mark.asyncio


@pytest.fixture
def reconciler(orchestrator, eventlog, gateway):
    def make():
        return WebhookReconciler(gateway, eventlog(), orchestrator())
    return make


def signed(event: dict) -> tuple[bytes, dict]:
    payload = json.dumps(event).encode()
    return payload, {SIGNATURE_HEADER: sign(SECRET, payload)}


async def test_success_event_settles_order(orchestrator, gateway, reconciler):
    co = await checkout(orchestrator())
    await gateway.simulate(co.intent.payment_ref, "succeeded")
    payload, headers = gateway.build_event(co.intent.payment_ref)

    out = await reconciler().handle(payload, headers)
    assert out == {
        "ok": True,
        "order_id": co.order.id,
        "order_status": "paid",
        "tickets": 2,
    }
    order = await orchestrator().ledger.get(co.order.id)
    assert order.meta["paid_via"] == "webhook"
    assert order.payment_method == "pm_card_visa"


async def test_replay_is_a_noop(orchestrator, gateway, reconciler, eventlog):
    co = await checkout(orchestrator())
    await gateway.simulate(co.intent.payment_ref, "succeeded")
    payload, headers = gateway.build_event(co.intent.payment_ref)

    def issued(tickets):
        return [(t.id, t.ticket_code) for t in tickets]

    await reconciler().handle(payload, headers)
    tickets = issued(await orchestrator().ledger.tickets(co.order.id))
    assert len(tickets) == 2

    again = await reconciler().handle(payload, headers)
    assert again == {"ok": True, "idempotent": True}
    assert issued(await orchestrator().ledger.tickets(co.order.id)) == tickets
    assert await eventlog().seen(json.loads(payload)["id"])


async def test_bad_signature_is_rejected(orchestrator, gateway, reconciler):
    co = await checkout(orchestrator())
    payload, _ = gateway.build_event(co.intent.payment_ref, "succeeded")
    with pytest.raises(InvalidSignatureError):
        await reconciler().handle(payload, {SIGNATURE_HEADER: "forged"})
    with pytest.raises(InvalidSignatureError):
        await reconciler().handle(payload, {})
    assert (await orchestrator().ledger.get(co.order.id)).status == "pending"


async def test_invalid_json_is_rejected(reconciler):
    payload = b"{not json"
    with pytest.raises(ValidationError, match="Invalid JSON"):
        await reconciler().handle(
            payload, {SIGNATURE_HEADER: sign(SECRET, payload)}
        )


async def test_missing_event_id_is_rejected(reconciler):
    payload, headers = signed({"type": "payment.succeeded",
                               "payment_id": "mock_x"})
    with pytest.raises(ValidationError, match="event id"):
        await reconciler().handle(payload, headers)


async def test_unknown_event_type_is_acknowledged(reconciler):
    payload, headers = signed({"id": "evt_1", "type": "payment.refunded"})
    assert await reconciler().handle(payload, headers) == {
        "ok": True, "ignored": True,
    }


async def test_failure_event_marks_order_failed(orchestrator, gateway,
                                                reconciler):
    co = await checkout(orchestrator())
    await gateway.simulate(co.intent.payment_ref, "failed")
    payload, headers = gateway.build_event(co.intent.payment_ref)

    out = await reconciler().handle(payload, headers)
    assert out["order_status"] == "failed"
    order = await orchestrator().ledger.get(co.order.id)
    assert order.meta["last_error_code"] == "card_declined"
    assert order.meta["failed_via"] == "webhook"


async def test_failure_after_payment_is_ignored(orchestrator, gateway,
                                                reconciler):
    orch = orchestrator()
    co = await checkout(orch)
    await gateway.simulate(co.intent.payment_ref, "succeeded")
    await orch.confirm_payment(BUYER, co.order.id)

    # delivered out of order: an earlier failed attempt arrives last
    payload, headers = gateway.build_event(co.intent.payment_ref, "failed")
    out = await reconciler().handle(payload, headers)
    assert out["order_status"] == "paid"
    assert out["tickets"] == 0
    order = await orchestrator().ledger.get(co.order.id)
    assert order.status == "paid"
    assert "last_error_code" not in order.meta


async def test_cancel_event(orchestrator, gateway, reconciler):
    co = await checkout(orchestrator())
    await gateway.simulate(co.intent.payment_ref, "canceled")
    payload, headers = gateway.build_event(co.intent.payment_ref)

    out = await reconciler().handle(payload, headers)
    assert out["order_status"] == "cancelled"


async def test_success_for_cancelled_order_is_acknowledged(
        orchestrator, gateway, reconciler, eventlog):
    orch = orchestrator()
    co = await checkout(orch)
    await orch.ledger.mark_cancelled(co.order.id, "buyer_abandoned")
    payload, headers = gateway.build_event(co.intent.payment_ref, "succeeded")

    out = await reconciler().handle(payload, headers)
    assert out["ok"] is True
    assert "cancelled" in out["conflict"]
    assert await eventlog().seen(json.loads(payload)["id"])
    assert (await orch.ledger.get(co.order.id)).status == "cancelled"


async def test_success_with_wrong_amount_is_not_applied(orchestrator,
                                                        reconciler, eventlog):
    co = await checkout(orchestrator())
    payload, headers = signed({
        "id": "evt_short", "type": "payment.succeeded",
        "payment_id": co.intent.payment_ref,
        "amount": co.order.amount_cents - 1,
    })
    out = await reconciler().handle(payload, headers)
    assert out == {"ok": True,
                   "conflict": "Payment amount does not match the order"}

    order = await orchestrator().ledger.get(co.order.id)
    assert order.status == "pending"
    assert await orchestrator().ledger.tickets(co.order.id) == []
    assert await eventlog().seen("evt_short")


async def test_unknown_order_asks_for_redelivery(reconciler, eventlog):
    payload, headers = signed({
        "id": "evt_orphan", "type": "payment.succeeded",
        "payment_id": "mock_unknown",
    })
    with pytest.raises(OrderNotFoundError):
        await reconciler().handle(payload, headers)
    assert not await eventlog().seen("evt_orphan")


async def test_order_found_by_metadata_when_ref_unknown(orchestrator, gateway,
                                                        reconciler):
    co = await checkout(orchestrator())
    payload, headers = signed({
        "id": "evt_meta", "type": "payment.succeeded",
        "payment_id": "mock_rotated",
        "metadata": {"order_id": co.order.id},
    })
    out = await reconciler().handle(payload, headers)
    assert out["order_id"] == co.order.id
    assert out["order_status"] == "paid"


async def test_sql_event_log_marks_once(eventlog):
    log = eventlog()
    assert not await log.seen("evt_1")
    assert await log.mark_processed("evt_1", "succeeded", "mock_1", "o1")
    assert not await log.mark_processed("evt_1", "succeeded", "mock_1", "o1")
    assert await log.seen("evt_1")


async def test_redis_event_log():
    r = AsyncMock()
    r.exists.return_value = 0
    r.set.side_effect = [True, None]
    log = new_store(backend="redis", r=r, ttl_seconds=60)

    assert not await log.seen("evt_1")
    r.exists.assert_awaited_once_with(k_event("evt_1"))

    assert await log.mark_processed("evt_1", "succeeded", "mock_1", "o1")
    assert not await log.mark_processed("evt_1", "succeeded", "mock_1", "o1")

    key, value = r.set.await_args_list[0].args
    assert key == "whevt:evt_1"
    assert orjson.loads(value)["order_id"] == "o1"
    assert r.set.await_args_list[0].kwargs == {"nx": True, "ex": 60}


async def test_event_log_factory_requires_its_backend():
    with pytest.raises(RuntimeError):
        new_store(backend="redis")
    with pytest.raises(RuntimeError):
        new_store(backend="sql")
    with pytest.raises(RuntimeError):
        new_store(backend="mongo")
