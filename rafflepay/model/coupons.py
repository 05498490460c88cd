# model/coupons.py
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ValidationError, NotFound, CouponExhausted
from ..helpers import utcnow, as_utc
from .orm import Coupon, COUPON_PERCENT, COUPON_AMOUNT


def discount_for(coupon: Coupon, subtotal: int) -> int:
    if coupon.type == COUPON_PERCENT:
        discount = (subtotal * int(coupon.value)) // 100
    elif coupon.type == COUPON_AMOUNT:
        discount = int(coupon.value)
    else:
        raise ValidationError(f"unknown coupon type: {coupon.type}")
    return max(0, min(discount, subtotal))


def check_coupon(
    coupon: Optional[Coupon], subtotal: int, now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Evaluate the coupon rules against `subtotal`. First failing rule wins:
    exists, started, not expired, uses left, minimum subtotal.
    """
    if coupon is None:
        raise NotFound("coupon not valid")

    now = now or utcnow()
    starts_at = as_utc(coupon.starts_at)
    ends_at = as_utc(coupon.ends_at)

    if starts_at is not None and now < starts_at:
        raise ValidationError("coupon is not active yet")
    if ends_at is not None and now > ends_at:
        raise ValidationError("coupon has expired")
    if coupon.used >= coupon.max_uses:
        raise CouponExhausted("coupon has no uses left")
    if coupon.min_subtotal and subtotal < coupon.min_subtotal:
        raise ValidationError(
            f"minimum subtotal for this coupon is {coupon.min_subtotal}"
        )

    discount = discount_for(coupon, subtotal)
    return {
        "valid": True,
        "coupon_id": coupon.id,
        "code": coupon.code,
        "discount_clp": discount,
        "new_total": subtotal - discount,
        "type": coupon.type,
        "value": coupon.value,
    }


def normalize_code(code: Any) -> Optional[str]:
    """Stripped coupon code, or None when none was given."""
    if code is None:
        return None
    if not isinstance(code, str):
        raise ValidationError("coupon code must be a string")
    return code.strip() or None


async def validate_coupon(
    db: AsyncSession, code: str, subtotal: int,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Read-only; the used counter is bumped by `redeem_coupon` at payment."""
    code = normalize_code(code)
    if not code:
        raise ValidationError("coupon code is required")
    try:
        subtotal = int(subtotal)
    except (TypeError, ValueError):
        raise ValidationError("subtotal must be an integer")
    if subtotal < 0:
        raise ValidationError("subtotal must be >= 0")

    coupon = (await db.execute(
        select(Coupon).where(Coupon.code == code)
    )).scalar_one_or_none()
    return check_coupon(coupon, subtotal, now)


async def redeem_coupon(tx: AsyncSession, coupon_id: str) -> bool:
    """
    Count one use of the coupon. Atomic increment-with-check, so concurrent
    confirmations can never push `used` past `max_uses`.
    Returns False if the coupon had no uses left.
    """
    result = await tx.execute(text("""
        UPDATE coupons
        SET used = used + 1
        WHERE id = :id AND used < max_uses
    """), {"id": coupon_id})
    return result.rowcount == 1
