from __future__ import annotations
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog
from sqlalchemy import select

from .errors import ValidationError, NotFound
from .helpers import new_id, utcnow, product_order_number
from .infra.sql import Database
from .infra.timings import timeit
from .model.coupons import check_coupon, normalize_code
from .model.inventory import (
    reserve_for_items, release_for_items, physical_lines,
)
from .model.orm import (
    User, Order, OrderItem, OrderDiscount, Payment, Product, Variant, Coupon,
    ORDER_DRAFT, ORDER_PENDING, ORDER_CANCELLED,
    PAY_INIT, PAY_REJECTED, PRODUCT_PHYSICAL,
)
from .model.tickets import order_ticket_numbers

log = structlog.get_logger(__name__)

# IVA, in percent
TAX_RATE_PCT = 19


def tax_for(taxable: int) -> int:
    # rounds half up
    return (max(0, taxable) * TAX_RATE_PCT + 50) // 100


def _merge_lines(items: Iterable[Mapping[str, Any]]) -> Dict[str, int]:
    lines: Dict[str, int] = {}
    if not isinstance(items, (list, tuple)):
        raise ValidationError("items must be a list")
    for it in items:
        if not isinstance(it, Mapping):
            raise ValidationError("each item must be an object")
        variant_id = it.get("variant_id")
        if not variant_id:
            raise ValidationError("variant_id is required")
        try:
            qty = int(it.get("qty", it.get("quantity", 0)))
        except (TypeError, ValueError):
            raise ValidationError("qty must be an integer")
        if qty <= 0:
            raise ValidationError("qty must be > 0")
        lines[variant_id] = lines.get(variant_id, 0) + qty
    if not lines:
        raise ValidationError("order has no items")
    return lines


async def create_order(
    db: Database,
    user_id: str,
    items: Iterable[Mapping[str, Any]],
    coupon_code: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Draft order for catalog products. Physical lines reserve stock right away;
    the reservation is consumed when the payment is approved and released if
    the order is cancelled or the payment rejected.
    """
    lines = _merge_lines(items)
    coupon_code = normalize_code(coupon_code)

    async with timeit("db.create_order"):
        async with db.transaction() as tx:
            user = await tx.get(User, user_id)
            if user is None:
                raise NotFound("user not found")

            rows = (await tx.execute(
                select(Variant, Product)
                .join(Product, Product.id == Variant.product_id)
                .where(Variant.id.in_(list(lines)))
            )).all()
            found = {v.id: (v, p) for v, p in rows}

            snapshots: List[OrderItem] = []
            physical = []
            subtotal = 0
            order_id = new_id()
            for variant_id, qty in lines.items():
                if variant_id not in found:
                    raise NotFound(f"variant {variant_id} not found")
                variant, product = found[variant_id]
                if not variant.active:
                    raise ValidationError(f"variant {variant_id} is inactive")
                unit = product.price_clp + (variant.extra_price_clp or 0)
                subtotal += unit * qty
                snapshots.append(OrderItem(
                    id=new_id(),
                    order_id=order_id,
                    product_id=product.id,
                    variant_id=variant.id,
                    title_snap=product.title,
                    sku_snap=variant.sku,
                    qty=qty,
                    unit_price_clp=unit,
                    total_clp=unit * qty,
                ))
                if product.type == PRODUCT_PHYSICAL:
                    physical.append((variant.id, qty))

            coupon = None
            discount = 0
            if coupon_code:
                row = (await tx.execute(
                    select(Coupon).where(Coupon.code == coupon_code)
                )).scalar_one_or_none()
                coupon = check_coupon(row, subtotal)
                discount = coupon["discount_clp"]

            tax = tax_for(subtotal - discount)
            shipping = 0
            total = subtotal - discount + tax + shipping

            order = Order(
                id=order_id,
                number=product_order_number(),
                user_id=user.id,
                status=ORDER_DRAFT,
                subtotal_clp=subtotal,
                discount_clp=discount,
                tax_clp=tax,
                shipping_clp=shipping,
                total_clp=total,
                currency="CLP",
            )
            tx.add(order)
            await tx.flush()
            tx.add_all(snapshots)
            if coupon is not None:
                tx.add(OrderDiscount(
                    id=new_id(),
                    order_id=order_id,
                    coupon_id=coupon["coupon_id"],
                    amount_clp=discount,
                    description=f"coupon {coupon['code']}",
                    redeemed=False,
                ))
            if physical:
                await reserve_for_items(tx, physical)

            result = {
                "order_id": order.id,
                "number": order.number,
                "status": order.status,
                "subtotal_clp": subtotal,
                "discount_clp": discount,
                "tax_clp": tax,
                "shipping_clp": shipping,
                "total_clp": total,
                "items": [
                    {
                        "variant_id": s.variant_id,
                        "title": s.title_snap,
                        "qty": s.qty,
                        "unit_price_clp": s.unit_price_clp,
                        "total_clp": s.total_clp,
                    }
                    for s in snapshots
                ],
            }

    log.info("order_created", order_id=result["order_id"],
             total_clp=total, lines=len(snapshots))
    return result


async def cancel_order(db: Database, order_id: str, user_id: str,
                       pending=None) -> Dict[str, Any]:
    async with timeit("db.cancel_order"):
        async with db.transaction() as tx:
            order = await tx.get(Order, order_id, with_for_update=True)
            if order is None or order.user_id != user_id:
                raise NotFound("order not found")
            if order.status not in (ORDER_DRAFT, ORDER_PENDING):
                raise ValidationError(
                    "only draft or pending orders can be cancelled"
                )

            physical = await physical_lines(tx, order_id)
            if physical:
                await release_for_items(tx, physical)

            # an open payment can no longer complete this order
            open_payments = (await tx.execute(
                select(Payment).where(
                    Payment.order_id == order_id,
                    Payment.status == PAY_INIT,
                ).with_for_update()
            )).scalars().all()
            for p in open_payments:
                p.status = PAY_REJECTED
                p.updated_at = utcnow()

            order.status = ORDER_CANCELLED
            dropped = [p.id for p in open_payments]

    if pending is not None:
        for pid in dropped:
            await pending.remove(pid)
    log.info("order_cancelled", order_id=order_id,
             payments_closed=len(dropped))
    return {"order_id": order_id, "status": ORDER_CANCELLED}


async def get_order(db: Database, order_id: str,
                    user_id: Optional[str] = None) -> Dict[str, Any]:
    async with db.transaction() as tx:
        order = await tx.get(Order, order_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise NotFound("order not found")
        items = (await tx.execute(
            select(OrderItem).where(OrderItem.order_id == order_id)
        )).scalars().all()
        payments = (await tx.execute(
            select(Payment).where(Payment.order_id == order_id)
            .order_by(Payment.created_at)
        )).scalars().all()
        tickets = await order_ticket_numbers(tx, order_id)

        return {
            "order_id": order.id,
            "number": order.number,
            "status": order.status,
            "subtotal_clp": order.subtotal_clp,
            "discount_clp": order.discount_clp,
            "tax_clp": order.tax_clp,
            "shipping_clp": order.shipping_clp,
            "total_clp": order.total_clp,
            "currency": order.currency,
            "created_at": order.created_at.isoformat()
            if order.created_at else None,
            "paid_at": order.paid_at.isoformat() if order.paid_at else None,
            "items": [
                {
                    "variant_id": i.variant_id,
                    "title": i.title_snap,
                    "sku": i.sku_snap,
                    "qty": i.qty,
                    "unit_price_clp": i.unit_price_clp,
                    "total_clp": i.total_clp,
                }
                for i in items
            ],
            "payments": [
                {"payment_id": p.id, "provider": p.provider,
                 "status": p.status, "amount_clp": p.amount_clp}
                for p in payments
            ],
            "tickets": tickets,
        }
