from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
    Index,
)

from ..helpers import new_id, utcnow


Base = declarative_base()


# order status
ORDER_DRAFT = "draft"
ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_FAILED = "failed"
ORDER_CANCELLED = "cancelled"

# payment status
PAY_INIT = "init"
PAY_APPROVED = "approved"
PAY_REJECTED = "rejected"

PROVIDER_MP = "mercadopago"
PROVIDER_FLOW = "flow"

# ticket status
TICKET_AVAILABLE = "available"
TICKET_PAID = "paid"

ENTRY_PENDING_PURCHASE = "pending_purchase"

PRODUCT_PHYSICAL = "physical"
PRODUCT_DIGITAL = "digital"

COUPON_PERCENT = "percent"
COUPON_AMOUNT = "amount"


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    lastname = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    address = Column(String, nullable=True)
    city = Column(String, nullable=True)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True, default=new_id)
    number = Column(String, nullable=False, unique=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)

    # draft | pending | paid | failed | cancelled
    status = Column(String, nullable=False, default=ORDER_PENDING)

    # CLP, integer
    subtotal_clp = Column(Integer, nullable=False, default=0)
    discount_clp = Column(Integer, nullable=False, default=0)
    tax_clp = Column(Integer, nullable=False, default=0)
    shipping_clp = Column(Integer, nullable=False, default=0)
    total_clp = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=False, default="CLP")

    created_at = Column(DateTime(timezone=True), nullable=False,
                        default=utcnow)
    paid_at = Column(DateTime(timezone=True), nullable=True)


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    variant_id = Column(String, ForeignKey("variants.id"), nullable=True)
    title_snap = Column(String, nullable=False)
    sku_snap = Column(String, nullable=True)
    qty = Column(Integer, nullable=False)
    unit_price_clp = Column(Integer, nullable=False)
    total_clp = Column(Integer, nullable=False)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    provider = Column(String, nullable=False)  # mercadopago | flow

    # init | approved | rejected
    status = Column(String, nullable=False, default=PAY_INIT)
    amount_clp = Column(Integer, nullable=False)

    # MP: preference id | Flow: token
    provider_token = Column(String, nullable=True, index=True)
    # MP: payment id | Flow: flowOrder
    provider_order_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False,
                        default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class Raffle(Base):
    __tablename__ = "raffles"
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    ticket_price_clp = Column(Integer, nullable=False)
    total_tickets = Column(Integer, nullable=False)
    paid_tickets = Column(Integer, nullable=False, default=0)
    starts_at = Column(DateTime(timezone=True), nullable=True)
    ends_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("total_tickets > 0", name="ck_raffle_total"),
        CheckConstraint(
            "paid_tickets >= 0 AND paid_tickets <= total_tickets",
            name="ck_raffle_paid",
        ),
    )


class RafflePricingTier(Base):
    __tablename__ = "raffle_pricing_tiers"
    id = Column(String, primary_key=True, default=new_id)
    raffle_id = Column(String, ForeignKey("raffles.id"), nullable=False,
                       index=True)
    quantity = Column(Integer, nullable=False)
    price_clp = Column(Integer, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    sort = Column(Integer, nullable=False, default=0)
    label = Column(String, nullable=True)


class RaffleTicket(Base):
    __tablename__ = "raffle_tickets"
    id = Column(String, primary_key=True, default=new_id)
    raffle_id = Column(String, ForeignKey("raffles.id"), nullable=False)
    number = Column(Integer, nullable=False)

    # available | paid
    status = Column(String, nullable=False, default=TICKET_AVAILABLE)
    user_id = Column(String, ForeignKey("users.id"), nullable=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True,
                      index=True)
    reservation_expires_at = Column(DateTime(timezone=True), nullable=True)

    # bumped on every claim; compare-and-swap guard where the store has
    # no SKIP LOCKED
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("raffle_id", "number", name="uq_raffle_number"),
        Index("ix_tickets_raffle_status_number",
              "raffle_id", "status", "number"),
    )


class RaffleEntry(Base):
    __tablename__ = "raffle_entries"
    id = Column(String, primary_key=True, default=new_id)
    raffle_id = Column(String, ForeignKey("raffles.id"), nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    entries = Column(Integer, nullable=False)
    source = Column(String, nullable=False, default=ENTRY_PENDING_PURCHASE)


class Coupon(Base):
    __tablename__ = "coupons"
    id = Column(String, primary_key=True, default=new_id)
    code = Column(String, nullable=False, unique=True)
    type = Column(String, nullable=False)  # percent | amount
    value = Column(Integer, nullable=False)
    max_uses = Column(Integer, nullable=False)
    used = Column(Integer, nullable=False, default=0)
    min_subtotal = Column(Integer, nullable=False, default=0)
    starts_at = Column(DateTime(timezone=True), nullable=True)
    ends_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("used >= 0 AND used <= max_uses",
                        name="ck_coupon_used"),
    )


class OrderDiscount(Base):
    __tablename__ = "order_discounts"
    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    coupon_id = Column(String, ForeignKey("coupons.id"), nullable=True)
    amount_clp = Column(Integer, nullable=False)
    description = Column(String, nullable=True)
    # set once the coupon's used counter was incremented for this order
    redeemed = Column(Boolean, nullable=False, default=False)


class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True, default=new_id)
    title = Column(String, nullable=False)
    type = Column(String, nullable=False, default=PRODUCT_PHYSICAL)
    price_clp = Column(Integer, nullable=False)


class Variant(Base):
    __tablename__ = "variants"
    id = Column(String, primary_key=True, default=new_id)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    sku = Column(String, nullable=True)
    extra_price_clp = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)


class InventorySource(Base):
    __tablename__ = "inventory_sources"
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    active = Column(Boolean, nullable=False, default=True)


class InventoryLevel(Base):
    __tablename__ = "inventory_levels"
    id = Column(String, primary_key=True, default=new_id)
    variant_id = Column(String, ForeignKey("variants.id"), nullable=False)
    source_id = Column(String, ForeignKey("inventory_sources.id"),
                       nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("variant_id", "source_id", name="uq_level"),
        CheckConstraint("reserved >= 0 AND reserved <= stock",
                        name="ck_level_reserved"),
    )
