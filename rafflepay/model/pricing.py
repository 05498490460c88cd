# model/pricing.py
"""
Tiered raffle pricing.

Tiers are bundle offers ("5 stickers for 4000"). The calculator is greedy:
tiers with the best effective unit price are consumed first, as many whole
packs as fit, and whatever is left is charged at the base unit price. This is
best-value-first, not an optimal knapsack.
"""

from __future__ import annotations
from typing import Any, Dict, Iterable, List, Mapping, TypedDict

from ..errors import ValidationError


class BreakdownLine(TypedDict):
    kind: str  # "tier" | "base"
    quantity: int
    unit_price_clp: int
    total_clp: int


class Pricing(TypedDict):
    total_clp: int
    breakdown: List[BreakdownLine]


def _field(t: Any, name: str, default=None):
    if isinstance(t, Mapping):
        return t.get(name, default)
    return getattr(t, name, default)


def active_tiers(tiers: Iterable[Any] | None) -> List[Dict[str, int]]:
    """
    Normalize ORM rows or plain dicts to `{quantity, price_clp}`, dropping
    inactive tiers and empty packs.
    """
    out = []
    for t in tiers or ():
        if t is None:
            continue
        active = _field(t, "active", True)
        if active is None:
            active = True
        qty = int(_field(t, "quantity", 0) or 0)
        if not active or qty <= 0:
            continue
        out.append({"quantity": qty, "price_clp": int(_field(t, "price_clp"))})
    return out


def compute_best_pricing(
    base_unit_price: int,
    quantity: int,
    tiers: Iterable[Any] | None,
) -> Pricing:
    if base_unit_price <= 0:
        raise ValidationError("base unit price must be > 0")
    if quantity <= 0:
        raise ValidationError("quantity must be > 0")

    # stable sort: equal unit prices keep their configured order
    candidates = sorted(
        active_tiers(tiers),
        key=lambda t: t["price_clp"] / t["quantity"],
    )

    remaining = quantity
    total = 0
    breakdown: List[BreakdownLine] = []

    for t in candidates:
        packs = remaining // t["quantity"]
        if packs <= 0:
            continue
        pack_qty = packs * t["quantity"]
        part = packs * t["price_clp"]
        breakdown.append({
            "kind": "tier",
            "quantity": pack_qty,
            "unit_price_clp": t["price_clp"] // t["quantity"],
            "total_clp": part,
        })
        total += part
        remaining -= pack_qty

    if remaining > 0:
        part = remaining * base_unit_price
        breakdown.append({
            "kind": "base",
            "quantity": remaining,
            "unit_price_clp": base_unit_price,
            "total_clp": part,
        })
        total += part

    return {"total_clp": total, "breakdown": breakdown}
