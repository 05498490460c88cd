import time
import re
import random
import string
import uuid
from datetime import datetime, timezone
import hmac
from typing import Optional


_B36 = string.digits + string.ascii_uppercase


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def new_id() -> str:
    return uuid.uuid4().hex


def base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_B36[r])
    return "".join(reversed(out))


def _order_number(prefix: str) -> str:
    # ms timestamp alone collides under concurrent checkouts
    suffix = "".join(random.choices(_B36, k=4))
    return f"{prefix}-{base36(int(time.time() * 1000))}-{suffix}"


def sticker_order_number() -> str:
    return _order_number("STICKER")


def product_order_number() -> str:
    return _order_number("ORD")
