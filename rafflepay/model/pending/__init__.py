from typing import Optional

import redis.asyncio as redis

from ...config import Settings
from ...infra.sql import Database
from ._redis import PendingIndex as RedisPendingIndex
from ._sql import PendingIndex as SqlPendingIndex


# Factory keeps server.py simple and constructor-agnostic:
def new_index(settings: Settings, *,
              db: Optional[Database] = None,
              r: Optional[redis.Redis] = None):
    if settings.pending_backend == "redis":
        if r is None:
            raise RuntimeError("PendingIndex(redis) requires r=redis.Redis")
        return RedisPendingIndex(r=r, ttl_seconds=settings.pending_ttl_seconds)
    if db is None:
        raise RuntimeError("PendingIndex(sql) requires db=Database")
    return SqlPendingIndex(db=db)


__all__ = ["new_index", "RedisPendingIndex", "SqlPendingIndex"]
