# model/tickets.py
"""
Raffle ticket pool.

Every raffle owns `total_tickets` pre-materialized rows numbered 1..N. A paid
order claims the lowest-numbered available rows inside the payment-approval
transaction:

- PostgreSQL: `SELECT ... FOR UPDATE SKIP LOCKED`, so a concurrent claimer
  moves on to the next free rows instead of waiting for ours.
- Anything else (SQLite): compare-and-swap on `version`; a lost race only
  means picking again from what is still available.

Either way the claim is all or nothing: a short pool raises
`InsufficientTickets` and the caller's transaction rolls back.
"""

from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import select, insert, func, text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ValidationError, NotFound, InsufficientTickets
from ..helpers import new_id, as_utc
from ..infra.sql import supports_skip_locked
from .orm import (
    Raffle, RafflePricingTier, RaffleTicket,
    TICKET_AVAILABLE, TICKET_PAID,
)

log = structlog.get_logger(__name__)

# rows per INSERT when materializing a pool
MATERIALIZE_CHUNK = 1000

# pick-and-swap rounds before giving up on a contended pool
MAX_CAS_ROUNDS = 8


# ------------------------------------------------------------------------------
# Raffles
# ------------------------------------------------------------------------------

def _positive_int(value: Any, field: str) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")
    if n <= 0:
        raise ValidationError(f"{field} must be > 0")
    return n


async def create_raffle(
    tx: AsyncSession,
    name: str,
    ticket_price_clp: int,
    total_tickets: int,
    starts_at: Optional[datetime] = None,
    ends_at: Optional[datetime] = None,
    tiers: Optional[Iterable[Dict[str, Any]]] = None,
) -> Raffle:
    """
    Create a raffle with its whole ticket pool (numbers 1..total_tickets, all
    available) and optional pricing tiers.
    """
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("name is required")
    ticket_price_clp = _positive_int(ticket_price_clp, "ticket_price_clp")
    total_tickets = _positive_int(total_tickets, "total_tickets")
    if starts_at and ends_at and as_utc(ends_at) <= as_utc(starts_at):
        raise ValidationError("ends_at must be after starts_at")

    raffle = Raffle(
        id=new_id(),
        name=name.strip(),
        ticket_price_clp=ticket_price_clp,
        total_tickets=total_tickets,
        paid_tickets=0,
        starts_at=starts_at,
        ends_at=ends_at,
    )
    tx.add(raffle)

    for i, t in enumerate(tiers or ()):
        if not isinstance(t, dict):
            raise ValidationError("each tier must be an object")
        qty = _positive_int(t.get("quantity"), "tier quantity")
        price = _positive_int(t.get("price_clp"), "tier price_clp")
        tx.add(RafflePricingTier(
            id=new_id(),
            raffle_id=raffle.id,
            quantity=qty,
            price_clp=price,
            active=bool(t.get("active", True)),
            sort=int(t.get("sort", i)),
            label=t.get("label"),
        ))
    await tx.flush()

    total = total_tickets
    for lo in range(1, total + 1, MATERIALIZE_CHUNK):
        hi = min(total, lo + MATERIALIZE_CHUNK - 1)
        await tx.execute(insert(RaffleTicket), [
            {
                "id": new_id(),
                "raffle_id": raffle.id,
                "number": n,
                "status": TICKET_AVAILABLE,
                "version": 0,
            }
            for n in range(lo, hi + 1)
        ])

    log.info("raffle_created", raffle_id=raffle.id, total_tickets=total)
    return raffle


async def get_raffle(db: AsyncSession, raffle_id: str) -> Raffle:
    raffle = await db.get(Raffle, raffle_id)
    if raffle is None:
        raise NotFound("raffle not found")
    return raffle


async def raffle_tiers(
    db: AsyncSession, raffle_id: str
) -> List[RafflePricingTier]:
    rows = (await db.execute(
        select(RafflePricingTier)
        .where(RafflePricingTier.raffle_id == raffle_id)
        .order_by(RafflePricingTier.sort, RafflePricingTier.quantity)
    )).scalars().all()
    return list(rows)


async def availability(db: AsyncSession, raffle_id: str) -> Dict[str, Any]:
    raffle = await get_raffle(db, raffle_id)
    available = (await db.execute(
        select(func.count()).select_from(RaffleTicket).where(
            RaffleTicket.raffle_id == raffle_id,
            RaffleTicket.status == TICKET_AVAILABLE,
        )
    )).scalar_one()
    return {
        "raffle_id": raffle.id,
        "total": raffle.total_tickets,
        "paid": raffle.paid_tickets,
        "available": int(available),
    }


# ------------------------------------------------------------------------------
# Order <-> tickets
# ------------------------------------------------------------------------------

async def count_order_tickets(tx: AsyncSession, order_id: str) -> int:
    n = (await tx.execute(
        select(func.count()).select_from(RaffleTicket)
        .where(RaffleTicket.order_id == order_id)
    )).scalar_one()
    return int(n)


async def order_ticket_numbers(db: AsyncSession, order_id: str) -> List[int]:
    rows = (await db.execute(
        select(RaffleTicket.number)
        .where(RaffleTicket.order_id == order_id)
        .order_by(RaffleTicket.number)
    )).scalars().all()
    return [int(n) for n in rows]


# ------------------------------------------------------------------------------
# Allocation
# ------------------------------------------------------------------------------

async def _claim_skip_locked(
    tx: AsyncSession, raffle_id: str, order_id: str, user_id: str,
    quantity: int,
) -> List[int]:
    rows = (await tx.execute(text("""
        SELECT id, number FROM raffle_tickets
        WHERE raffle_id = :rid AND status = :available
        ORDER BY number ASC
        LIMIT :n
        FOR UPDATE SKIP LOCKED
    """), {
        "rid": raffle_id, "available": TICKET_AVAILABLE, "n": quantity,
    })).all()

    if len(rows) < quantity:
        raise InsufficientTickets(quantity, len(rows))

    await tx.execute(text("""
        UPDATE raffle_tickets
        SET status = :paid, user_id = :uid, order_id = :oid,
            reservation_expires_at = NULL, version = version + 1
        WHERE id IN :ids
    """).bindparams(bindparam("ids", expanding=True)), {
        "paid": TICKET_PAID, "uid": user_id, "oid": order_id,
        "ids": [r.id for r in rows],
    })
    return [int(r.number) for r in rows]


async def _claim_cas(
    tx: AsyncSession, raffle_id: str, order_id: str, user_id: str,
    quantity: int,
) -> List[int]:
    claimed: List[int] = []
    for _ in range(MAX_CAS_ROUNDS):
        need = quantity - len(claimed)
        if need <= 0:
            break
        rows = (await tx.execute(text("""
            SELECT id, number, version FROM raffle_tickets
            WHERE raffle_id = :rid AND status = :available
            ORDER BY number ASC
            LIMIT :n
        """), {
            "rid": raffle_id, "available": TICKET_AVAILABLE, "n": need,
        })).all()
        if not rows:
            break

        for r in rows:
            res = await tx.execute(text("""
                UPDATE raffle_tickets
                SET status = :paid, user_id = :uid, order_id = :oid,
                    reservation_expires_at = NULL, version = version + 1
                WHERE id = :id AND status = :available AND version = :ver
            """), {
                "paid": TICKET_PAID, "uid": user_id, "oid": order_id,
                "id": r.id, "available": TICKET_AVAILABLE, "ver": r.version,
            })
            if res.rowcount == 1:
                claimed.append(int(r.number))

    if len(claimed) < quantity:
        raise InsufficientTickets(quantity, len(claimed))
    return sorted(claimed)


async def assign_tickets(
    tx: AsyncSession,
    raffle_id: str,
    order_id: str,
    user_id: str,
    quantity: int,
) -> List[int]:
    """
    Claim `quantity` available tickets of `raffle_id` for `order_id` and
    return their numbers, ascending.

    Must run inside the payment-approval transaction. The caller checks
    `count_order_tickets(tx, order_id) == 0` first; this function does not
    guard against a second batch for the same order.
    """
    if quantity is None or int(quantity) <= 0:
        raise ValidationError("quantity must be > 0")
    quantity = int(quantity)

    exists = (await tx.execute(
        select(Raffle.id).where(Raffle.id == raffle_id)
    )).scalar_one_or_none()
    if exists is None:
        raise NotFound("raffle not found")

    if supports_skip_locked(tx):
        numbers = await _claim_skip_locked(
            tx, raffle_id, order_id, user_id, quantity
        )
    else:
        numbers = await _claim_cas(
            tx, raffle_id, order_id, user_id, quantity
        )

    await tx.execute(text("""
        UPDATE raffles SET paid_tickets = paid_tickets + :n WHERE id = :rid
    """), {"n": quantity, "rid": raffle_id})

    log.info(
        "tickets_assigned",
        raffle_id=raffle_id, order_id=order_id, quantity=quantity,
        first=numbers[0], last=numbers[-1],
    )
    return numbers
