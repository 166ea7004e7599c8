"""
Ticket codes: short, human-readable, unique across every ticket ever issued.

A code is `TKT-<base36 ms timestamp>-<10 Crockford base32 chars>`. The random
part alone carries 50 bits, so a collision is a bug (or a broken random
source) rather than bad luck. Uniqueness is enforced by the store's unique
index: a candidate is inserted inside a savepoint and a unique violation on
the code is the signal to draw again. Reading first and inserting after is
not enough with concurrent issuers, so there is no pre-check.
"""
from __future__ import annotations
import secrets
import time
from typing import Callable, Optional, TypeVar

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import TICKET_CODE_MAX_ATTEMPTS
from .errors import CodeGenerationExhausted
from .model.db import Ticket

logger = structlog.get_logger(__name__)

# Crockford: no I, L, O, U
ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
RANDOM_CHARS = 10
PREFIX = "TKT"

T = TypeVar("T", bound=Ticket)


def _base36(n: int) -> str:
    digits = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    out = ""
    while True:
        n, r = divmod(n, 36)
        out = digits[r] + out
        if n == 0:
            return out


class TicketCodeGenerator:
    def __init__(
        self,
        max_attempts: int = TICKET_CODE_MAX_ATTEMPTS,
        random_part: Optional[Callable[[], str]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_attempts = max(5, max_attempts)
        self._random_part = random_part or self._secure_random_part
        self._clock = clock

    @staticmethod
    def _secure_random_part() -> str:
        return "".join(secrets.choice(ALPHABET) for _ in range(RANDOM_CHARS))

    def generate(self) -> str:
        ts = _base36(int(self._clock() * 1000))
        return f"{PREFIX}-{ts}-{self._random_part()}"

    async def code_exists(self, db: AsyncSession, code: str) -> bool:
        row = (await db.execute(
            select(Ticket.id).where(Ticket.ticket_code == code)
        )).first()
        return row is not None

    async def insert_unique(
        self, db: AsyncSession, build: Callable[[str], T]
    ) -> T:
        """
        Insert `build(code)` with a fresh code, redrawing on code collisions.

        Must run inside an open transaction. Any integrity error that is not
        a code collision (e.g. a taken order slot) is re-raised unchanged.
        """
        for attempt in range(1, self.max_attempts + 1):
            code = self.generate()
            ticket = build(code)
            try:
                async with db.begin_nested():
                    db.add(ticket)
                    await db.flush()
                return ticket
            except IntegrityError:
                if not await self.code_exists(db, code):
                    raise
                logger.warning(
                    "ticket_code_collision", attempt=attempt, code=code
                )
        logger.error("ticket_code_exhausted", attempts=self.max_attempts)
        raise CodeGenerationExhausted(self.max_attempts)


