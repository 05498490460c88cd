# model/inventory.py
"""
Inventory ledger: per (variant, source) `stock` and `reserved` counters.

  available = stock - reserved,   0 <= reserved <= stock

Level rows are re-read inside the caller's transaction (`FOR UPDATE` where the
store has row locks) and every write is a guarded UPDATE whose WHERE clause
restates the availability check, so a row that moved under us fails with
`InsufficientStock` instead of tripping the CHECK constraint.

The `*_for_items` helpers spread an order line over all levels of its variant
in stable `source_id` order; they are used at order creation (reserve),
payment confirmation (consume) and cancellation / rejection (release).
"""

from __future__ import annotations
from typing import Dict, Iterable, List, Tuple

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ValidationError, NotFound, InsufficientStock
from ..infra.sql import supports_skip_locked
from .orm import InventoryLevel, OrderItem, Product, PRODUCT_PHYSICAL


def _check_qty(qty: int) -> None:
    if qty is None or int(qty) <= 0:
        raise ValidationError("quantity must be > 0")


def _locking(tx: AsyncSession) -> str:
    return " FOR UPDATE" if supports_skip_locked(tx) else ""


async def _get_level(
    tx: AsyncSession, variant_id: str, source_id: str
) -> Dict[str, int]:
    row = (await tx.execute(text(f"""
        SELECT id, stock, reserved FROM inventory_levels
        WHERE variant_id = :v AND source_id = :s{_locking(tx)}
    """), {"v": variant_id, "s": source_id})).mappings().first()
    if not row:
        raise NotFound("inventory level not found")
    return dict(row)


async def _levels_for_variant(
    tx: AsyncSession, variant_id: str
) -> List[Dict[str, int]]:
    rows = (await tx.execute(text(f"""
        SELECT id, source_id, stock, reserved FROM inventory_levels
        WHERE variant_id = :v
        ORDER BY source_id ASC{_locking(tx)}
    """), {"v": variant_id})).mappings().all()
    return [dict(r) for r in rows]


# guarded writes: False means the row no longer satisfies the check

async def _take(tx: AsyncSession, level_id: str, qty: int) -> bool:
    res = await tx.execute(text("""
        UPDATE inventory_levels
        SET reserved = reserved + :q
        WHERE id = :id AND stock - reserved >= :q
    """), {"id": level_id, "q": qty})
    return res.rowcount == 1


async def _give_back(tx: AsyncSession, level_id: str, qty: int) -> bool:
    res = await tx.execute(text("""
        UPDATE inventory_levels
        SET reserved = reserved - :q
        WHERE id = :id AND reserved >= :q
    """), {"id": level_id, "q": qty})
    return res.rowcount == 1


async def _ship(tx: AsyncSession, level_id: str, qty: int) -> bool:
    res = await tx.execute(text("""
        UPDATE inventory_levels
        SET reserved = reserved - :q, stock = stock - :q
        WHERE id = :id AND reserved >= :q AND stock >= :q
    """), {"id": level_id, "q": qty})
    return res.rowcount == 1


# ------------------------------------------------------------------------------
# Single level
# ------------------------------------------------------------------------------

async def reserve(
    tx: AsyncSession, variant_id: str, source_id: str, qty: int
) -> Dict[str, int]:
    _check_qty(qty)
    lvl = await _get_level(tx, variant_id, source_id)
    available = lvl["stock"] - lvl["reserved"]
    if available < qty or not await _take(tx, lvl["id"], qty):
        raise InsufficientStock("insufficient stock")
    return {"stock": lvl["stock"], "reserved": lvl["reserved"] + qty}


async def release(
    tx: AsyncSession, variant_id: str, source_id: str, qty: int
) -> Dict[str, int]:
    _check_qty(qty)
    lvl = await _get_level(tx, variant_id, source_id)
    dec = min(qty, lvl["reserved"])
    if dec > 0 and not await _give_back(tx, lvl["id"], dec):
        lvl = await _get_level(tx, variant_id, source_id)
        dec = min(qty, lvl["reserved"])
        if dec > 0:
            await _give_back(tx, lvl["id"], dec)
    return {"stock": lvl["stock"], "reserved": lvl["reserved"] - dec}


async def consume(
    tx: AsyncSession, variant_id: str, source_id: str, qty: int
) -> Dict[str, int]:
    _check_qty(qty)
    lvl = await _get_level(tx, variant_id, source_id)
    if lvl["reserved"] < qty or lvl["stock"] < qty \
            or not await _ship(tx, lvl["id"], qty):
        raise InsufficientStock("no reservation/stock left to consume")
    return {"stock": lvl["stock"] - qty, "reserved": lvl["reserved"] - qty}


# ------------------------------------------------------------------------------
# Order lines, spread over a variant's levels
# ------------------------------------------------------------------------------

async def physical_lines(
    tx: AsyncSession, order_id: str
) -> List[Tuple[str, int]]:
    """(variant_id, qty) of the order's lines that hold stock."""
    rows = (await tx.execute(
        select(OrderItem.variant_id, OrderItem.qty)
        .join(Product, Product.id == OrderItem.product_id)
        .where(
            OrderItem.order_id == order_id,
            OrderItem.variant_id.is_not(None),
            Product.type == PRODUCT_PHYSICAL,
        )
        .order_by(OrderItem.id)
    )).all()
    return [(r.variant_id, int(r.qty)) for r in rows]


async def available_for_variant(db: AsyncSession, variant_id: str) -> int:
    rows = (await db.execute(
        select(InventoryLevel.stock, InventoryLevel.reserved)
        .where(InventoryLevel.variant_id == variant_id)
    )).all()
    return sum(stock - reserved for stock, reserved in rows)


async def reserve_for_items(
    tx: AsyncSession, items: Iterable[Tuple[str, int]]
) -> None:
    """
    items: (variant_id, qty). Takes as much as is available from each level
    until the line is covered; raises if the variant runs short.
    """
    for variant_id, qty in items:
        _check_qty(qty)
        remaining = qty
        for lvl in await _levels_for_variant(tx, variant_id):
            if remaining <= 0:
                break
            take = min(lvl["stock"] - lvl["reserved"], remaining)
            if take > 0 and await _take(tx, lvl["id"], take):
                remaining -= take
        if remaining > 0:
            raise InsufficientStock(
                f"insufficient stock for variant {variant_id}"
            )


async def consume_for_items(
    tx: AsyncSession, items: Iterable[Tuple[str, int]]
) -> None:
    for variant_id, qty in items:
        _check_qty(qty)
        remaining = qty
        for lvl in await _levels_for_variant(tx, variant_id):
            if remaining <= 0:
                break
            take = min(lvl["reserved"], lvl["stock"], remaining)
            if take > 0 and await _ship(tx, lvl["id"], take):
                remaining -= take
        if remaining > 0:
            raise InsufficientStock(
                f"no reservation left to consume for variant {variant_id}"
            )


async def release_for_items(
    tx: AsyncSession, items: Iterable[Tuple[str, int]]
) -> None:
    # never goes negative: a level gives back at most what it holds
    for variant_id, qty in items:
        _check_qty(qty)
        remaining = qty
        for lvl in await _levels_for_variant(tx, variant_id):
            if remaining <= 0:
                break
            take = min(lvl["reserved"], remaining)
            if take > 0 and await _give_back(tx, lvl["id"], take):
                remaining -= take
