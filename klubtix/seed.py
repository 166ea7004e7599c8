"""
Seed a demo event so the API and the load client have something to sell.

Usage:
  DATABASE_URL=sqlite:///./klubtix.db python -m klubtix.seed --event evt-launch

Re-running is safe: only missing rows are inserted, so sold counts and
code usage on a live database are left alone.
"""
from __future__ import annotations
import argparse
import asyncio
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from .config import DATABASE_URL, DEFAULT_CURRENCY
from .infra.sql import Gated, make_async_engine
from .logs import configure_logging
from .model.db import Base, DiscountCode, Event, GroupPricingRule, TicketTier

logger = structlog.get_logger(__name__)


def demo_rows(event_id: str, currency: str = DEFAULT_CURRENCY) -> list:
    ga, vip = f"{event_id}-ga", f"{event_id}-vip"
    return [
        Event(id=event_id, name="Launch Night", slug=event_id,
              status="published", currency=currency),
        TicketTier(id=ga, event_id=event_id, name="General Admission",
                   price_cents=5000, currency=currency,
                   quantity_available=10_000, quantity_sold=0,
                   min_per_order=1, max_per_order=20, sort_order=0),
        TicketTier(id=vip, event_id=event_id, name="VIP",
                   price_cents=15000, currency=currency,
                   quantity_available=200, quantity_sold=0,
                   min_per_order=1, max_per_order=4, sort_order=1),
        GroupPricingRule(id=f"{ga}-group10", ticket_tier_id=ga,
                         min_quantity=10, discount_percentage=20),
        DiscountCode(id=f"{event_id}-early10", event_id=event_id,
                     code="EARLY10", discount_type="percentage",
                     discount_value=10, usage_count=0, is_active=True),
    ]


async def seed_catalog(db: AsyncSession, gated: Gated, event_id: str,
                       currency: str = DEFAULT_CURRENCY) -> list[str]:
    """Insert the demo event, its tiers, one group rule and one code."""
    rows = demo_rows(event_id, currency)
    added = 0
    async with gated():
        async with db.begin():
            for row in rows:
                if await db.get(type(row), row.id) is None:
                    db.add(row)
                    added += 1
    tier_ids = [r.id for r in rows if isinstance(r, TicketTier)]
    logger.info("catalog_seeded", event_id=event_id, tiers=tier_ids,
                added=added)
    return tier_ids


async def _main(database_url: str, event_id: str,
                currency: Optional[str]) -> None:
    engine, SessionAsync, gated = make_async_engine(database_url)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with SessionAsync() as session:
            tier_ids = await seed_catalog(
                session, gated, event_id, currency or DEFAULT_CURRENCY
            )
    finally:
        await engine.dispose()
    print(f"event: {event_id}")
    for tid in tier_ids:
        print(f"tier:  {tid}")


def main():
    ap = argparse.ArgumentParser(description="Seed a demo Klubtix event")
    ap.add_argument("--database-url", default=DATABASE_URL)
    ap.add_argument("--event", default="evt-launch", help="Event id")
    ap.add_argument("--currency", default=None)
    args = ap.parse_args()
    configure_logging()
    asyncio.run(_main(args.database_url, args.event, args.currency))


if __name__ == "__main__":
    main()
