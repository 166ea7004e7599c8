from __future__ import annotations
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..pricing import Catalog, CodeDiscount, GroupRule, TierPrice
from .db import DiscountCode, Event, GroupPricingRule, TicketTier


def tier_price(t: TicketTier) -> TierPrice:
    return TierPrice(
        id=t.id,
        event_id=t.event_id,
        name=t.name,
        price_cents=int(t.price_cents),
        currency=t.currency,
        quantity_available=t.quantity_available,
        quantity_sold=int(t.quantity_sold or 0),
        sales_start=t.sales_start,
        sales_end=t.sales_end,
        min_per_order=int(t.min_per_order),
        max_per_order=int(t.max_per_order),
        is_hidden=bool(t.is_hidden),
    )


def code_discount(d: DiscountCode) -> CodeDiscount:
    return CodeDiscount(
        code=d.code.upper(),
        discount_type=d.discount_type,
        discount_value=int(d.discount_value),
        applicable_tiers=(
            frozenset(d.applicable_tiers) if d.applicable_tiers else None
        ),
        usage_limit=d.usage_limit,
        usage_count=int(d.usage_count or 0),
        valid_from=d.valid_from,
        valid_until=d.valid_until,
        minimum_purchase_cents=d.minimum_purchase_cents,
        is_active=bool(d.is_active),
    )


# UN-GATED: callers hold the gate and the transaction
async def get_event(db: AsyncSession, event_id: str) -> Optional[Event]:
    return await db.get(Event, event_id)


async def find_discount_code(
    db: AsyncSession, event_id: str, code: str
) -> Optional[DiscountCode]:
    return (await db.execute(
        select(DiscountCode).where(
            DiscountCode.event_id == event_id,
            DiscountCode.code == code.strip().upper(),
        )
    )).scalars().first()


async def load_catalog(
    db: AsyncSession,
    tier_ids: Iterable[str],
    event_id: Optional[str] = None,
    discount_code: Optional[str] = None,
) -> Catalog:
    """
    Snapshot the tiers, group rules and discount code a selection needs.
    Tiers of other events are left out, so they surface as not found.
    """
    ids = list(dict.fromkeys(tier_ids))
    stmt = select(TicketTier).where(TicketTier.id.in_(ids))
    if event_id is not None:
        stmt = stmt.where(TicketTier.event_id == event_id)
    tiers = {t.id: tier_price(t) for t in (await db.execute(stmt)).scalars()}

    rules: dict[str, list[GroupRule]] = {}
    if tiers:
        rows = (await db.execute(
            select(GroupPricingRule)
            .where(GroupPricingRule.ticket_tier_id.in_(list(tiers)))
            .order_by(GroupPricingRule.min_quantity)
        )).scalars()
        for r in rows:
            rules.setdefault(r.ticket_tier_id, []).append(GroupRule(
                min_quantity=int(r.min_quantity),
                discount_percentage=Decimal(str(r.discount_percentage)),
            ))

    discount = None
    if discount_code:
        code_event = event_id
        if code_event is None and tiers:
            code_event = next(iter(tiers.values())).event_id
        if code_event is not None:
            row = await find_discount_code(db, code_event, discount_code)
            if row is not None:
                discount = code_discount(row)

    return Catalog(tiers=tiers, group_rules=rules, discount=discount)
