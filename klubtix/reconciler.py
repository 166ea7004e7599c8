from __future__ import annotations
from typing import Any, Mapping

import structlog

from .errors import ConflictError, ValidationError
from .fulfillment import FulfillmentOrchestrator
from .gateway import PaymentGateway
from .gateway.base import IGNORED
from .infra.timings import timeit

logger = structlog.get_logger(__name__)


class WebhookReconciler:
    """
    Applies signed gateway events to orders, at-least-once safe.

    An event id is written to the event log only after the event was
    applied, so a delivery that failed half-way is applied again on
    redelivery; the ledger and ticket slots make that second run a no-op
    for whatever already happened.

    Raises (and so answers non-2xx, asking for redelivery) on bad
    signatures, unknown orders and unexpected errors. A conflict, such as
    a failure event for an order that is already paid, is final and is
    acknowledged.
    """

    def __init__(self, gateway: PaymentGateway, events,
                 fulfillment: FulfillmentOrchestrator) -> None:
        self.gateway = gateway
        self.events = events
        self.fulfillment = fulfillment

    async def handle(self, payload: bytes,
                     headers: Mapping[str, str]) -> dict[str, Any]:
        raw = self.gateway.verify_webhook(payload, headers)
        event = self.gateway.parse_event(raw)
        if not event.event_id:
            raise ValidationError("Missing event id")
        log = logger.bind(event_id=event.event_id, event_type=event.event_type)

        if event.kind == IGNORED:
            log.debug("webhook_ignored")
            return {"ok": True, "ignored": True}

        async with timeit("eventlog.seen"):
            if await self.events.seen(event.event_id):
                log.info("webhook_replay")
                return {"ok": True, "idempotent": True}

        try:
            async with timeit("webhook.apply"):
                result = await self.fulfillment.apply_payment_event(event)
        except ConflictError as e:
            log.info("webhook_conflict", message=e.message)
            await self._mark(event, None)
            return {"ok": True, "conflict": e.message}

        order_id = result.order.id if result is not None else None
        await self._mark(event, order_id)
        log.info("webhook_applied", kind=event.kind, order_id=order_id)

        out: dict[str, Any] = {"ok": True}
        if result is not None:
            out.update(
                order_id=result.order.id,
                order_status=result.order.status,
                tickets=len(result.tickets),
            )
        return out

    async def _mark(self, event, order_id) -> None:
        async with timeit("eventlog.mark"):
            await self.events.mark_processed(
                event.event_id,
                event.kind,
                event.payment_refs[0] if event.payment_refs else None,
                order_id,
            )
