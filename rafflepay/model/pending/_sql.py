from __future__ import annotations
from typing import Any, Dict, List, Mapping, Tuple

from sqlalchemy import select, func

from ...helpers import now_ts, as_utc
from ...infra.sql import Database
from ..orm import Payment, PAY_INIT


class PendingIndex:
    """
    Pending payments straight from the `payments` table (status `init`).
    `add` / `remove` have nothing to do: the row's status is the index.
    """

    def __init__(self, *, db: Database) -> None:
        self.db = db

    async def add(self, payment: Mapping[str, Any]) -> None:
        return None

    async def remove(self, payment_id: str) -> None:
        return None

    async def recent(
        self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        async with self.db.transaction() as tx:
            total = (await tx.execute(
                select(func.count()).select_from(Payment)
                .where(Payment.status == PAY_INIT)
            )).scalar_one()
            rows = (await tx.execute(
                select(Payment)
                .where(Payment.status == PAY_INIT)
                .order_by(Payment.created_at.desc())
                .limit(max(0, int(limit)))
            )).scalars().all()

        now = now_ts()
        items = []
        for p in rows:
            created = as_utc(p.created_at).timestamp() if p.created_at else 0.0
            items.append({
                "payment_id": p.id,
                "order_id": p.order_id,
                "provider": p.provider,
                "provider_token": p.provider_token or "",
                "amount_clp": int(p.amount_clp),
                "created_at": created,
                "age_ms": int(max(0.0, now - created) * 1000),
                "status": "PENDING",
            })
        return int(total), items
