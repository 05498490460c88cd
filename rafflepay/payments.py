# payments.py
"""
Checkout and payment reconciliation.

A checkout writes Order (pending) + Payment (init) + RaffleEntry / OrderDiscount
in one transaction, then asks the provider for a redirect URL. No provider call
is ever made while a transaction is open.

Whatever tells us about a payment later (MP webhook, Flow webhook, Flow return
poll, operator reconciliation) goes through the same steps:

  1. ask the provider for the authoritative status; callback bodies only say
     *what* to re-check
  2. map the provider's correlation field back to our Payment
  3. already approved -> nothing to do
  4. success -> `process_successful_payment`: one transaction re-locks the
     payment, re-checks it, assigns tickets, consumes stock, redeems the
     coupon and marks the order paid. Mail goes out after commit.
  5. failure -> `mark_rejected`: payment rejected, order failed, stock
     reservations released

Payment states only move init -> approved or init -> rejected.
"""

from __future__ import annotations
from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings
from .errors import (
    RaffleError, ValidationError, NotFound, Conflict, ProviderError,
    InsufficientTickets,
)
from .helpers import (
    new_id, utcnow, as_utc, is_valid_email, sticker_order_number,
)
from .infra.sql import Database
from .infra.timings import timeit
from .mail import Mailer, OrderConfirmation
from .model.coupons import check_coupon, normalize_code, redeem_coupon
from .model.inventory import (
    consume_for_items, release_for_items, physical_lines,
)
from .model.orm import (
    User, Order, OrderItem, Payment, Raffle, RaffleEntry, RaffleTicket,
    Coupon, OrderDiscount,
    ORDER_DRAFT, ORDER_PENDING, ORDER_PAID, ORDER_FAILED, ORDER_CANCELLED,
    PAY_INIT, PAY_APPROVED, PAY_REJECTED,
    PROVIDER_MP, PROVIDER_FLOW, TICKET_AVAILABLE,
    ENTRY_PENDING_PURCHASE,
)
from .model.pricing import compute_best_pricing
from .model.tickets import (
    assign_tickets, count_order_tickets, order_ticket_numbers, raffle_tiers,
)
from .providers import (
    PaymentProvider, CheckoutRequest, ProviderStatus,
    MercadoPagoClient, FlowClient,
    KIND_SUCCESS, KIND_FAILURE,
)
from .providers.mercadopago import (
    extract_resource_id, extract_topic, is_payment_event,
)
from .providers.flow import extract_token

log = structlog.get_logger(__name__)

MIN_QUANTITY = 1
MAX_QUANTITY = 1000

GUEST_EMAIL = "guest@nivem.cl"

# outcomes of one reconciliation step
OUT_APPROVED = "approved"
OUT_ALREADY_APPROVED = "already_approved"
OUT_REJECTED = "rejected"
OUT_ALREADY_REJECTED = "already_rejected"
OUT_PENDING = "pending"
OUT_UNKNOWN = "unknown_payment"
OUT_CONFLICT = "conflict"

_SUCCESS_OUTCOMES = (OUT_APPROVED, OUT_ALREADY_APPROVED)
_FAILURE_OUTCOMES = (OUT_REJECTED, OUT_ALREADY_REJECTED)


def _payer_email(user: User) -> str:
    email = (user.email or "").strip().lower()
    return email if is_valid_email(email) else GUEST_EMAIL


async def _lock_payment(tx: AsyncSession, payment_id: str) -> Optional[Payment]:
    return (await tx.execute(
        select(Payment).where(Payment.id == payment_id).with_for_update()
    )).scalar_one_or_none()


class PaymentsService:
    def __init__(
        self,
        db: Database,
        settings: Settings,
        mp: MercadoPagoClient,
        flow: FlowClient,
        mailer: Mailer,
        pending,
    ) -> None:
        self.db = db
        self.settings = settings
        self.mp = mp
        self.flow = flow
        self.mailer = mailer
        self.pending = pending
        self.providers: Dict[str, PaymentProvider] = {
            PROVIDER_MP: mp,
            PROVIDER_FLOW: flow,
        }

    def _provider(self, name: str) -> PaymentProvider:
        provider = None
        if isinstance(name, str):
            provider = self.providers.get(name)
        if provider is None:
            raise ValidationError(f"unknown provider: {name}")
        if not provider.configured:
            raise ProviderError(f"{name} is not configured")
        return provider

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------
    async def create_checkout(
        self,
        user_id: str,
        raffle_id: str,
        quantity: int,
        coupon_code: Optional[str] = None,
        provider: str = PROVIDER_MP,
    ) -> Dict[str, Any]:
        """
        Price `quantity` tickets, open a pending order and hand back the
        provider's redirect URL.
        """
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            raise ValidationError("quantity must be an integer")
        if not MIN_QUANTITY <= quantity <= MAX_QUANTITY:
            raise ValidationError(
                f"quantity must be between {MIN_QUANTITY} and {MAX_QUANTITY}"
            )
        coupon_code = normalize_code(coupon_code)
        prov = self._provider(provider)

        async with timeit("db.checkout"):
            async with self.db.transaction() as tx:
                user = await tx.get(User, user_id)
                if user is None:
                    raise NotFound("user not found")
                raffle = await tx.get(Raffle, raffle_id)
                if raffle is None:
                    raise NotFound("raffle not found")

                now = utcnow()
                starts_at = as_utc(raffle.starts_at)
                ends_at = as_utc(raffle.ends_at)
                if starts_at is not None and now < starts_at:
                    raise ValidationError("raffle has not started yet")
                if ends_at is not None and now > ends_at:
                    raise ValidationError("raffle has ended")

                available = (await tx.execute(
                    select(func.count()).select_from(RaffleTicket).where(
                        RaffleTicket.raffle_id == raffle_id,
                        RaffleTicket.status == TICKET_AVAILABLE,
                    )
                )).scalar_one()
                if available < quantity:
                    raise InsufficientTickets(quantity, int(available))

                pricing = compute_best_pricing(
                    raffle.ticket_price_clp, quantity,
                    await raffle_tiers(tx, raffle_id),
                )
                subtotal = pricing["total_clp"]

                coupon = None
                discount = 0
                if coupon_code:
                    row = (await tx.execute(
                        select(Coupon).where(Coupon.code == coupon_code)
                    )).scalar_one_or_none()
                    coupon = check_coupon(row, subtotal, now)
                    discount = coupon["discount_clp"]

                total = subtotal - discount
                if total <= 0:
                    raise ValidationError("order total must be > 0")

                order = Order(
                    id=new_id(),
                    number=sticker_order_number(),
                    user_id=user.id,
                    status=ORDER_PENDING,
                    subtotal_clp=subtotal,
                    discount_clp=discount,
                    tax_clp=0,
                    shipping_clp=0,
                    total_clp=total,
                    currency="CLP",
                )
                payment = Payment(
                    id=new_id(),
                    order_id=order.id,
                    provider=provider,
                    status=PAY_INIT,
                    amount_clp=total,
                )
                tx.add(order)
                await tx.flush()
                tx.add_all([
                    payment,
                    RaffleEntry(
                        id=new_id(),
                        raffle_id=raffle.id,
                        user_id=user.id,
                        order_id=order.id,
                        entries=quantity,
                        source=ENTRY_PENDING_PURCHASE,
                    ),
                ])
                if coupon is not None:
                    tx.add(OrderDiscount(
                        id=new_id(),
                        order_id=order.id,
                        coupon_id=coupon["coupon_id"],
                        amount_clp=discount,
                        description=f"coupon {coupon['code']}",
                        redeemed=False,
                    ))

                req: CheckoutRequest = {
                    "payment_id": payment.id,
                    "order_id": order.id,
                    "item_id": raffle.id,
                    "title": f"Pack {quantity} stickers: {raffle.name}",
                    "amount_clp": total,
                    "payer_email": _payer_email(user),
                    "payer_name": user.name or "",
                    "payer_lastname": user.lastname or "",
                }
                order_number = order.number

        log.info(
            "checkout_created",
            order_id=req["order_id"], payment_id=req["payment_id"],
            provider=provider, raffle_id=raffle_id, quantity=quantity,
            total_clp=total,
        )
        redirect_url = await self._open_provider_payment(prov, req)
        return {
            "redirect_url": redirect_url,
            "order_id": req["order_id"],
            "order_number": order_number,
            "payment_id": req["payment_id"],
            "provider": provider,
            "subtotal_clp": subtotal,
            "discount_clp": discount,
            "total_clp": total,
            "breakdown": pricing["breakdown"],
        }

    async def create_order_checkout(
        self, order_id: str, user_id: str, provider: str = PROVIDER_MP,
    ) -> Dict[str, Any]:
        """Open a provider payment for an existing draft (product) order."""
        prov = self._provider(provider)

        async with timeit("db.order_checkout"):
            async with self.db.transaction() as tx:
                order = await tx.get(Order, order_id, with_for_update=True)
                if order is None or order.user_id != user_id:
                    raise NotFound("order not found")
                if order.status != ORDER_DRAFT:
                    raise Conflict(
                        f"order is {order.status}, only draft orders "
                        f"can be paid"
                    )
                if order.total_clp <= 0:
                    raise ValidationError("order total must be > 0")
                user = await tx.get(User, order.user_id)

                payment = Payment(
                    id=new_id(),
                    order_id=order.id,
                    provider=provider,
                    status=PAY_INIT,
                    amount_clp=order.total_clp,
                )
                tx.add(payment)
                order.status = ORDER_PENDING

                req: CheckoutRequest = {
                    "payment_id": payment.id,
                    "order_id": order.id,
                    "item_id": order.id,
                    "title": f"Order {order.number}",
                    "amount_clp": order.total_clp,
                    "payer_email": _payer_email(user),
                    "payer_name": user.name or "",
                    "payer_lastname": user.lastname or "",
                }
                order_number = order.number

        log.info("order_checkout_created", order_id=order_id,
                 payment_id=req["payment_id"], provider=provider)
        redirect_url = await self._open_provider_payment(prov, req)
        return {
            "redirect_url": redirect_url,
            "order_id": order_id,
            "order_number": order_number,
            "payment_id": req["payment_id"],
            "provider": provider,
            "total_clp": req["amount_clp"],
        }

    async def _open_provider_payment(
        self, prov: PaymentProvider, req: CheckoutRequest
    ) -> str:
        try:
            checkout = await prov.create_checkout(req)
        except ProviderError as e:
            log.error("checkout_provider_failed", provider=prov.name,
                      payment_id=req["payment_id"], error=e.detail)
            await self.mark_rejected(req["payment_id"])
            raise

        async with timeit("db.checkout_token"):
            async with self.db.transaction() as tx:
                payment = await tx.get(Payment, req["payment_id"])
                payment.provider_token = checkout["provider_token"]
                if checkout["provider_order_id"]:
                    payment.provider_order_id = checkout["provider_order_id"]
                payment.updated_at = utcnow()
                created_at = as_utc(payment.created_at)

        await self.pending.add({
            "payment_id": req["payment_id"],
            "order_id": req["order_id"],
            "provider": prov.name,
            "provider_token": checkout["provider_token"],
            "amount_clp": req["amount_clp"],
            "created_at": created_at.timestamp() if created_at else None,
        })
        return checkout["redirect_url"]

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    async def handle_mp_webhook(
        self,
        query: Mapping[str, Any],
        body: Optional[Mapping[str, Any]],
        headers: Mapping[str, str],
    ) -> Dict[str, Any]:
        resource_id = extract_resource_id(query, body)
        topic = extract_topic(query, body)

        if not self.mp.check_signature(headers, resource_id):
            return {"ok": True}
        if not is_payment_event(query, body):
            log.info("mp_webhook_ignored", topic=topic,
                     resource_id=resource_id)
            return {"ok": True}
        if not resource_id:
            log.warning("mp_webhook_without_id", query=dict(query))
            return {"ok": True}

        try:
            status = await self.mp.get_payment(resource_id)
            outcome = await self._apply(PROVIDER_MP, status)
        except ProviderError as e:
            # retried by MP or picked up by reconciliation
            log.warning("mp_webhook_deferred", resource_id=resource_id,
                        error=e.detail)
            return {"ok": True}
        except Exception:
            log.exception("mp_webhook_failed", resource_id=resource_id)
            return {"ok": True}

        log.info("mp_webhook_processed", resource_id=resource_id,
                 outcome=outcome)
        return {"ok": True}

    async def handle_flow_webhook(
        self, body: Optional[Mapping[str, Any]]
    ) -> Dict[str, Any]:
        token = extract_token(body)
        if not token:
            log.warning("flow_webhook_without_token")
            return {"ok": True}

        try:
            status = await self.flow.get_status(token)
            outcome = await self._apply(PROVIDER_FLOW, status, token=token)
        except ProviderError as e:
            log.warning("flow_webhook_deferred", error=e.detail)
            return {"ok": True}
        except Exception:
            log.exception("flow_webhook_failed")
            return {"ok": True}

        log.info("flow_webhook_processed", outcome=outcome)
        return {"ok": True}

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    async def _apply(
        self, provider: str, status: ProviderStatus,
        token: Optional[str] = None,
    ) -> str:
        payment_id = status["correlation_id"]
        if not payment_id:
            log.warning("provider_status_without_reference",
                        provider=provider, provider_ref=status["provider_ref"])
            return OUT_UNKNOWN

        async with self.db.transaction() as tx:
            payment = await tx.get(Payment, payment_id)
            if payment is None or payment.provider != provider:
                log.warning("payment_not_found", provider=provider,
                            payment_id=payment_id)
                return OUT_UNKNOWN
            current = payment.status
            amount = payment.amount_clp

        if current == PAY_APPROVED:
            await self.pending.remove(payment_id)
            return OUT_ALREADY_APPROVED

        if status["amount"] is not None and status["amount"] != amount:
            log.warning("payment_amount_mismatch", payment_id=payment_id,
                        expected=amount, reported=status["amount"])

        if status["kind"] == KIND_SUCCESS:
            return await self.process_successful_payment(
                payment_id, provider_token=token,
                provider_ref=status["provider_ref"],
            )
        if status["kind"] == KIND_FAILURE:
            return await self.mark_rejected(
                payment_id, provider_token=token,
                provider_ref=status["provider_ref"],
            )

        log.info("payment_still_pending", payment_id=payment_id,
                 provider=provider, raw_status=status["raw_status"])
        return OUT_PENDING

    async def process_successful_payment(
        self,
        payment_id: str,
        provider_token: Optional[str] = None,
        provider_ref: Optional[str] = None,
    ) -> str:
        """
        Approve the payment and fulfil its order, exactly once.

        Duplicate deliveries racing each other serialize on the payment row;
        whoever comes second finds it approved and leaves.
        """
        email_to: Optional[str] = None
        confirmation: Optional[OrderConfirmation] = None

        async with timeit("db.confirm_payment"):
            async with self.db.transaction() as tx:
                payment = await _lock_payment(tx, payment_id)
                if payment is None:
                    return OUT_UNKNOWN
                if payment.status == PAY_APPROVED:
                    log.info("payment_already_approved", payment_id=payment_id)
                    return OUT_ALREADY_APPROVED
                if payment.status == PAY_REJECTED:
                    log.error(
                        "approved_after_rejection",
                        payment_id=payment_id, order_id=payment.order_id,
                        provider_ref=provider_ref,
                    )
                    return OUT_CONFLICT

                payment.status = PAY_APPROVED
                payment.updated_at = utcnow()
                if provider_token:
                    payment.provider_token = provider_token
                if provider_ref:
                    payment.provider_order_id = provider_ref

                order = await tx.get(Order, payment.order_id,
                                     with_for_update=True)
                user = await tx.get(User, order.user_id)
                products: List[str] = []
                raffle_date: Optional[str] = None

                numbers: List[int] = []
                entry = (await tx.execute(
                    select(RaffleEntry)
                    .where(RaffleEntry.order_id == order.id)
                    .limit(1)
                )).scalar_one_or_none()
                if entry is not None and entry.entries > 0:
                    if await count_order_tickets(tx, order.id) == 0:
                        numbers = await assign_tickets(
                            tx, entry.raffle_id, order.id, order.user_id,
                            entry.entries,
                        )
                    else:
                        numbers = await order_ticket_numbers(tx, order.id)
                        log.warning("tickets_already_linked",
                                    order_id=order.id, count=len(numbers))
                    raffle = await tx.get(Raffle, entry.raffle_id)
                    products.append(
                        f"Pack {entry.entries} stickers: {raffle.name}"
                    )
                    if raffle.ends_at is not None:
                        raffle_date = as_utc(raffle.ends_at).strftime(
                            "%Y-%m-%d"
                        )

                physical = await physical_lines(tx, order.id)
                if physical:
                    await consume_for_items(tx, physical)
                items = (await tx.execute(
                    select(OrderItem).where(OrderItem.order_id == order.id)
                )).scalars().all()
                products.extend(f"{i.qty} x {i.title_snap}" for i in items)

                discount = (await tx.execute(
                    select(OrderDiscount).where(
                        OrderDiscount.order_id == order.id,
                        OrderDiscount.coupon_id.is_not(None),
                        OrderDiscount.redeemed.is_(False),
                    )
                )).scalars().first()
                if discount is not None:
                    if await redeem_coupon(tx, discount.coupon_id):
                        discount.redeemed = True
                    else:
                        log.warning(
                            "coupon_exhausted_at_payment",
                            order_id=order.id, coupon_id=discount.coupon_id,
                        )

                order.status = ORDER_PAID
                order.paid_at = utcnow()

                if user is not None and user.email:
                    email_to = user.email
                    confirmation = {
                        "order_number": order.number,
                        "customer_name": user.name or "Customer",
                        "tickets": numbers,
                        "total_clp": payment.amount_clp,
                        "products": products,
                        "raffle_date": raffle_date,
                        "billing": {
                            "name": " ".join(
                                p for p in (user.name, user.lastname) if p
                            ) or "N/A",
                            "address": user.address or "N/A",
                            "city": user.city or "N/A",
                            "phone": user.phone or "N/A",
                        },
                    }
                order_id = order.id

        log.info("payment_approved", payment_id=payment_id,
                 order_id=order_id, tickets=len(numbers))

        await self.pending.remove(payment_id)
        if email_to and confirmation:
            try:
                await self.mailer.send_order_confirmation(
                    email_to, confirmation
                )
            except Exception:
                # the payment stands; the mail can be re-sent by hand
                log.exception("confirmation_mail_failed",
                              order_id=order_id, to=email_to)
        return OUT_APPROVED

    async def mark_rejected(
        self,
        payment_id: str,
        provider_token: Optional[str] = None,
        provider_ref: Optional[str] = None,
    ) -> str:
        async with timeit("db.reject_payment"):
            async with self.db.transaction() as tx:
                payment = await _lock_payment(tx, payment_id)
                if payment is None:
                    return OUT_UNKNOWN
                if payment.status == PAY_APPROVED:
                    log.error("rejection_after_approval",
                              payment_id=payment_id)
                    return OUT_ALREADY_APPROVED
                if payment.status == PAY_REJECTED:
                    return OUT_ALREADY_REJECTED

                payment.status = PAY_REJECTED
                payment.updated_at = utcnow()
                if provider_token:
                    payment.provider_token = provider_token
                if provider_ref:
                    payment.provider_order_id = provider_ref

                order = await tx.get(Order, payment.order_id,
                                     with_for_update=True)
                if order.status in (ORDER_DRAFT, ORDER_PENDING):
                    physical = await physical_lines(tx, order.id)
                    if physical:
                        await release_for_items(tx, physical)
                    order.status = ORDER_FAILED

        await self.pending.remove(payment_id)
        log.info("payment_rejected", payment_id=payment_id)
        return OUT_REJECTED

    # ------------------------------------------------------------------
    # Polling / reconciliation
    # ------------------------------------------------------------------
    async def check_flow_status(self, token: Optional[str],
                                order_id: Optional[str]) -> str:
        """success | failure | pending, for the Flow return redirect."""
        if order_id:
            async with self.db.transaction() as tx:
                order = await tx.get(Order, order_id)
                status = order.status if order is not None else None
            if status == ORDER_PAID:
                return "success"
            if status in (ORDER_FAILED, ORDER_CANCELLED):
                return "failure"

        if not token:
            return "pending"
        try:
            provider_status = await self.flow.get_status(token)
            outcome = await self._apply(PROVIDER_FLOW, provider_status,
                                        token=token)
        except ProviderError as e:
            log.warning("flow_status_unavailable", error=e.detail)
            return "pending"
        except RaffleError as e:
            log.error("flow_status_failed", order_id=order_id, error=e.detail)
            return "pending"

        if outcome in _SUCCESS_OUTCOMES:
            return "success"
        if outcome in _FAILURE_OUTCOMES:
            return "failure"
        return "pending"

    async def _reconcile_one(self, item: Mapping[str, Any]) -> str:
        payment_id = item["payment_id"]
        provider = item["provider"]
        if provider == PROVIDER_MP:
            status = await self.mp.search_by_reference(payment_id)
            if status is None:
                return OUT_PENDING
            if status["correlation_id"] != payment_id:
                log.warning("mp_search_reference_mismatch",
                            payment_id=payment_id,
                            reported=status["correlation_id"])
                return OUT_PENDING
            return await self._apply(PROVIDER_MP, status)
        if provider == PROVIDER_FLOW:
            token = item.get("provider_token")
            if not token:
                return OUT_PENDING
            status = await self.flow.get_status(token)
            return await self._apply(PROVIDER_FLOW, status, token=token)
        log.warning("reconcile_unknown_provider", payment_id=payment_id,
                    provider=provider)
        return OUT_UNKNOWN

    async def reconcile_pending(self, limit: int = 100) -> Dict[str, int]:
        """
        Re-ask the providers about every payment still pending and run the
        answers through the state machine.
        """
        total, items = await self.pending.recent(limit)
        counts = {
            "total_pending": total,
            "checked": 0,
            "approved": 0,
            "rejected": 0,
            "pending": 0,
            "errors": 0,
        }
        for item in items:
            counts["checked"] += 1
            try:
                outcome = await self._reconcile_one(item)
            except ProviderError as e:
                log.warning("reconcile_provider_error",
                            payment_id=item["payment_id"], error=e.detail)
                counts["errors"] += 1
                continue
            except RaffleError as e:
                log.error("reconcile_failed",
                          payment_id=item["payment_id"], error=e.detail)
                counts["errors"] += 1
                continue

            if outcome in _SUCCESS_OUTCOMES:
                counts["approved"] += 1
            elif outcome in _FAILURE_OUTCOMES:
                counts["rejected"] += 1
            elif outcome == OUT_UNKNOWN:
                await self.pending.remove(item["payment_id"])
                counts["errors"] += 1
            elif outcome == OUT_CONFLICT:
                counts["errors"] += 1
            else:
                counts["pending"] += 1

        log.info("reconcile_done", **counts)
        return counts
