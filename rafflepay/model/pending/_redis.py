# model/pending/_redis.py
from __future__ import annotations
from typing import Any, Dict, List, Mapping, Tuple

import redis.asyncio as redis

from ...helpers import now_ts


# ---- keys
def k_pay(payment_id: str) -> str: return f"pay:{payment_id}"


PENDING_INDEX = "pending_payments"


class PendingIndex:
    """
    Sorted set of payment ids (score = created_at) plus one hash per payment
    with a TTL. A hash that expired while its id is still in the set is
    cleaned up on the next `recent()` read.
    """

    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def add(self, payment: Mapping[str, Any]) -> None:
        # hash values as strings for decode_responses=True
        pid = str(payment["payment_id"])
        created = float(payment.get("created_at") or now_ts())
        mapping = {
            "payment_id": pid,
            "order_id": str(payment.get("order_id", "")),
            "provider": str(payment.get("provider", "")),
            "provider_token": str(payment.get("provider_token") or ""),
            "amount_clp": str(int(payment.get("amount_clp", 0))),
            "created_at": repr(created),
        }
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_pay(pid), mapping=mapping)
        pipe.expire(k_pay(pid), self.ttl + 60)
        pipe.zadd(PENDING_INDEX, {pid: created})
        await pipe.execute()

    async def remove(self, payment_id: str) -> None:
        pipe = self.r.pipeline(transaction=True)
        pipe.zrem(PENDING_INDEX, payment_id)
        pipe.delete(k_pay(payment_id))
        await pipe.execute()

    async def recent(
        self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        total = await self.r.zcard(PENDING_INDEX)
        pids = await self.r.zrevrange(PENDING_INDEX, 0, max(0, limit - 1))

        pipe = self.r.pipeline()
        for pid in pids:
            pipe.hgetall(k_pay(pid))
        rows = await pipe.execute()

        now = now_ts()
        items = []
        for pid, h in zip(pids, rows):
            # house-keeping
            if not h:
                await self.remove(pid)
                total -= 1
                continue
            try:
                created = float(h.get("created_at", "0"))
            except ValueError:
                created = 0.0
            items.append({
                "payment_id": pid,
                "order_id": h.get("order_id", ""),
                "provider": h.get("provider", ""),
                "provider_token": h.get("provider_token", ""),
                "amount_clp": int(h.get("amount_clp", "0")),
                "created_at": created,
                "age_ms": int(max(0.0, now - created) * 1000),
                "status": "PENDING",
            })
        return max(0, total), items
