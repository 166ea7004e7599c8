from __future__ import annotations
from dataclasses import dataclass
from typing import Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from klubtix.fulfillment import FulfillmentOrchestrator
from klubtix.gateway import MockPay
from klubtix.infra.sql import Gated, make_async_engine
from klubtix.model.db import Base, TicketTier
from klubtix.model.eventlog import new_store
from klubtix.model.eventlog._sql import create_schema
from klubtix.pricing import Selection
from klubtix.seed import seed_catalog

EVENT_ID = "evt-test"
GA = f"{EVENT_ID}-ga"
VIP = f"{EVENT_ID}-vip"
BUYER = "buyer-1"
EMAIL = "ada@example.com"
WEBHOOK_URL = "http://testserver/payments/webhook"
SECRET = "test-secret"


@dataclass
class Store:
    engine: AsyncEngine
    SessionAsync: async_sessionmaker
    gated: Gated


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'klubtix.db'}"


@pytest_asyncio.fixture
async def store(db_url):
    engine, SessionAsync, gated = make_async_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await create_schema(conn)
    async with SessionAsync() as session:
        await seed_catalog(session, gated, EVENT_ID, "usd")
    yield Store(engine, SessionAsync, gated)
    await engine.dispose()


@pytest.fixture
def gateway() -> MockPay:
    return MockPay(secret=SECRET, webhook_url=WEBHOOK_URL)


@pytest_asyncio.fixture
async def sessions(store):
    """Hands out fresh sessions; one per concurrent actor."""
    opened = []

    def make():
        s = store.SessionAsync()
        opened.append(s)
        return s
    yield make
    for s in opened:
        await s.close()


@pytest.fixture
def orchestrator(store, gateway, sessions) -> Callable[..., FulfillmentOrchestrator]:
    def make(**kw) -> FulfillmentOrchestrator:
        return FulfillmentOrchestrator(
            sessions(), store.gated, kw.pop("gateway", gateway), **kw
        )
    return make


@pytest.fixture
def eventlog(store, sessions):
    def make():
        return new_store(backend="sql", db=sessions(), gated=store.gated)
    return make


async def add_tier(store: Store, tier_id: str, price_cents: int,
                   max_per_order: int = 10, **kw) -> str:
    async with store.SessionAsync() as session:
        async with store.gated():
            async with session.begin():
                session.add(TicketTier(
                    id=tier_id, event_id=EVENT_ID, name=tier_id,
                    price_cents=price_cents, currency="usd",
                    quantity_available=kw.pop("quantity_available", None),
                    quantity_sold=0, min_per_order=1,
                    max_per_order=max_per_order, **kw,
                ))
    return tier_id


async def checkout(orch: FulfillmentOrchestrator, quantity: int = 2,
                   tier_id: str = GA, buyer_id: str = BUYER, **kw):
    return await orch.create_checkout(
        buyer_id, EVENT_ID, [Selection(tier_id, quantity)],
        buyer_email=EMAIL, **kw,
    )
