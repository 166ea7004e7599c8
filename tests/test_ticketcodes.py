import asyncio
import re
import uuid

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from klubtix.errors import CodeGenerationExhausted
from klubtix.helpers import now_ts
from klubtix.model.db import Ticket
from klubtix.ticketcodes import TicketCodeGenerator

from .conftest import EVENT_ID, GA

CODE_RE = re.compile(r"^TKT-[0-9A-Z]+-[0-9ABCDEFGHJKMNPQRSTVWXYZ]{10}$")


def scripted(*parts):
    it = iter(parts)
    return lambda: next(it)


def builder(order_id: str, slot: int):
    def build(code: str) -> Ticket:
        return Ticket(
            id=uuid.uuid4().hex, order_id=order_id, slot=slot,
            event_id=EVENT_ID, ticket_tier_id=GA, ticket_code=code,
            meta={}, created_at=now_ts(),
        )
    return build


def test_format():
    gen = TicketCodeGenerator()
    for _ in range(100):
        assert CODE_RE.match(gen.generate())


def test_timestamp_prefix_is_base36_millis():
    gen = TicketCodeGenerator(clock=lambda: 1.0, random_part=lambda: "A" * 10)
    assert gen.generate() == "TKT-RS-AAAAAAAAAA"


def test_distinct_in_memory():
    gen = TicketCodeGenerator()
    codes = {gen.generate() for _ in range(20_000)}
    assert len(codes) == 20_000


def test_attempt_floor():
    assert TicketCodeGenerator(max_attempts=1).max_attempts == 5
    assert TicketCodeGenerator(max_attempts=8).max_attempts == 8


@pytest.mark.asyncio
async def test_collision_redraws(store):
    gen = TicketCodeGenerator(
        clock=lambda: 1.0,
        random_part=scripted("A" * 10, "A" * 10, "A" * 10, "B" * 10),
    )
    async with store.SessionAsync() as db:
        async with db.begin():
            first = await gen.insert_unique(db, builder("o1", 0))
            second = await gen.insert_unique(db, builder("o1", 1))
    assert first.ticket_code == "TKT-RS-AAAAAAAAAA"
    assert second.ticket_code == "TKT-RS-BBBBBBBBBB"

    async with store.SessionAsync() as db:
        n = (await db.execute(select(func.count(Ticket.id)))).scalar_one()
    assert n == 2


@pytest.mark.asyncio
async def test_exhaustion(store):
    gen = TicketCodeGenerator(max_attempts=5, clock=lambda: 1.0,
                              random_part=lambda: "A" * 10)
    async with store.SessionAsync() as db:
        async with db.begin():
            await gen.insert_unique(db, builder("o1", 0))
            with pytest.raises(CodeGenerationExhausted) as exc:
                await gen.insert_unique(db, builder("o1", 1))
    assert exc.value.attempts == 5


@pytest.mark.asyncio
async def test_taken_slot_is_not_a_collision(store):
    gen = TicketCodeGenerator(
        clock=lambda: 1.0, random_part=scripted("A" * 10, "B" * 10)
    )
    async with store.SessionAsync() as db:
        async with db.begin():
            await gen.insert_unique(db, builder("o1", 0))
            with pytest.raises(IntegrityError):
                await gen.insert_unique(db, builder("o1", 0))


@pytest.mark.asyncio
async def test_concurrent_issuers_never_share_a_code(store):
    gen = TicketCodeGenerator()

    async def issue(worker: int, n: int):
        async with store.SessionAsync() as db:
            async with store.gated():
                async with db.begin():
                    for slot in range(n):
                        await gen.insert_unique(
                            db, builder(f"order-{worker}", slot)
                        )

    await asyncio.gather(*(issue(w, 200) for w in range(5)))

    async with store.SessionAsync() as db:
        total = (await db.execute(select(func.count(Ticket.id)))).scalar_one()
        distinct = (await db.execute(
            select(func.count(func.distinct(Ticket.ticket_code)))
        )).scalar_one()
    assert total == 1000
    assert distinct == 1000
