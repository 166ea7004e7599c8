from __future__ import annotations
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from ...helpers import now_ts
from ...infra.sql import Gated


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_WEBHOOK_EVENTS = r"""
-- one row per gateway event that was applied to an order
CREATE TABLE IF NOT EXISTS webhook_events (
  event_id     TEXT PRIMARY KEY,
  kind         TEXT NOT NULL,
  payment_ref  TEXT,
  order_id     TEXT,
  processed_at DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_IDX_WEBHOOK_EVENTS_ORDER = r"""
CREATE INDEX IF NOT EXISTS idx_webhook_events_order
  ON webhook_events (order_id);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_WEBHOOK_EVENTS))
    await exec_(text(SQL_CREATE_IDX_WEBHOOK_EVENTS_ORDER))


class EventLog:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def seen(self, event_id: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT 1 FROM webhook_events WHERE event_id = :id
                """), {"id": event_id})).first()
        return row is not None

    async def mark_processed(
        self, event_id: str, kind: str,
        payment_ref: Optional[str] = None, order_id: Optional[str] = None,
    ) -> bool:
        """True if this call recorded the event, False if it was already there."""
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  INSERT INTO webhook_events(
                    event_id, kind, payment_ref, order_id, processed_at
                  ) VALUES (:id, :kind, :ref, :order_id, :ts)
                  ON CONFLICT (event_id) DO NOTHING
                  RETURNING event_id
                """), {
                    "id": event_id,
                    "kind": kind,
                    "ref": payment_ref,
                    "order_id": order_id,
                    "ts": now_ts(),
                })).first()
        return row is not None
