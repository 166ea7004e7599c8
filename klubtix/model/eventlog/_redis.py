from __future__ import annotations
from typing import Optional

import orjson
import redis.asyncio as redis

from ...helpers import now_ts


# ---- keys
def k_event(event_id: str) -> str: return f"whevt:{event_id}"


class EventLog:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def seen(self, event_id: str) -> bool:
        return bool(await self.r.exists(k_event(event_id)))

    async def mark_processed(
        self, event_id: str, kind: str,
        payment_ref: Optional[str] = None, order_id: Optional[str] = None,
    ) -> bool:
        # NX marker; expires once redelivery is no longer plausible
        ok = await self.r.set(
            k_event(event_id),
            orjson.dumps({
                "kind": kind,
                "payment_ref": payment_ref,
                "order_id": order_id,
                "processed_at": now_ts(),
            }),
            nx=True,
            ex=self.ttl,
        )
        return bool(ok)
