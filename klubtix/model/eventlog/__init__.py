from typing import Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from ...config import EVENTLOG_BACKEND, EVENTLOG_TTL_SECONDS
from ...infra.sql import Gated

BACKEND = EVENTLOG_BACKEND  # 'sql' | 'redis'


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, backend: str = BACKEND,
              db: Optional[AsyncSession] = None,
              gated: Optional[Gated] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = EVENTLOG_TTL_SECONDS):
    if backend == "redis":
        if r is None:
            raise RuntimeError("EventLog(redis) requires r=redis.Redis")
        from ._redis import EventLog
        return EventLog(r=r, ttl_seconds=ttl_seconds)
    if backend == "sql":
        if db is None:
            raise RuntimeError("EventLog(sql) requires db=AsyncSession")
        if gated is None:
            raise RuntimeError("EventLog(sql) requires gated=Gated")
        from ._sql import EventLog
        return EventLog(db=db, gated=gated)
    raise RuntimeError(f"unknown EVENTLOG_BACKEND: {backend}")


__all__ = ["new_store", "BACKEND"]
