import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, func

from rafflepay.errors import ValidationError, NotFound, ProviderError
from rafflepay.helpers import utcnow
from rafflepay.model.orm import (
    Order, Payment, Coupon, OrderDiscount, RaffleEntry, Raffle,
    ORDER_PENDING, ORDER_PAID, ORDER_FAILED,
    PAY_INIT, PAY_APPROVED, PAY_REJECTED, PROVIDER_FLOW,
)
from rafflepay.model.tickets import order_ticket_numbers
from rafflepay.payments import (
    OUT_APPROVED, OUT_ALREADY_APPROVED, OUT_CONFLICT,
)
from rafflepay.providers.flow import sign
from rafflepay.providers.mercadopago import sign_manifest


def _mp_query(mp_id):
    return {"type": "payment", "data.id": str(mp_id)}


async def _payment(db, payment_id):
    async with db.transaction() as tx:
        return await tx.get(Payment, payment_id)


async def _order(db, order_id):
    async with db.transaction() as tx:
        return await tx.get(Order, order_id)


async def _tickets(db, order_id):
    async with db.transaction() as tx:
        return await order_ticket_numbers(tx, order_id)


async def _count(db, model):
    async with db.transaction() as tx:
        return (await tx.execute(
            select(func.count()).select_from(model)
        )).scalar_one()


@pytest.fixture
async def buyer(seed):
    return await seed.user(email="Buyer@Example.com")


# ----------------------------
# Checkout
# ----------------------------
async def test_mp_checkout_opens_a_pending_order(db, seed, svc, stub, buyer):
    rid = await seed.raffle(total=10, price=1000)

    out = await svc.create_checkout(buyer, rid, 2)

    assert out["redirect_url"].startswith("https://mp.test/checkout")
    assert out["total_clp"] == 2000
    assert out["order_number"].startswith("STICKER-")

    pref = stub.preferences[0]
    assert pref["external_reference"] == out["payment_id"]
    assert pref["items"][0]["unit_price"] == 2000
    assert pref["payer"]["email"] == "buyer@example.com"
    assert pref["notification_url"] == \
        "https://api.test/payments/mercadopago/webhook"

    payment = await _payment(db, out["payment_id"])
    assert payment.status == PAY_INIT
    assert payment.provider_token == "pref-1"
    order = await _order(db, out["order_id"])
    assert order.status == ORDER_PENDING
    async with db.transaction() as tx:
        entry = (await tx.execute(
            select(RaffleEntry).where(RaffleEntry.order_id == order.id)
        )).scalar_one()
    assert entry.entries == 2

    total, items = await svc.pending.recent(10)
    assert total == 1
    assert items[0]["payment_id"] == out["payment_id"]


@pytest.mark.parametrize("quantity", [0, 1001, "many"])
async def test_checkout_rejects_bad_quantity(db, seed, svc, stub, buyer,
                                             quantity):
    rid = await seed.raffle()
    with pytest.raises(ValidationError):
        await svc.create_checkout(buyer, rid, quantity)
    assert await _count(db, Order) == 0
    assert stub.calls == []


async def test_checkout_rejects_unknown_raffle_and_user(db, seed, svc, buyer):
    rid = await seed.raffle()
    with pytest.raises(NotFound):
        await svc.create_checkout(buyer, "missing", 1)
    with pytest.raises(NotFound):
        await svc.create_checkout("nobody", rid, 1)
    assert await _count(db, Order) == 0


async def test_checkout_outside_the_raffle_window(db, seed, svc, buyer):
    now = utcnow()
    ended = await seed.raffle(starts_at=now - timedelta(days=10),
                              ends_at=now - timedelta(days=1))
    upcoming = await seed.raffle(starts_at=now + timedelta(days=1))
    with pytest.raises(ValidationError):
        await svc.create_checkout(buyer, ended, 1)
    with pytest.raises(ValidationError):
        await svc.create_checkout(buyer, upcoming, 1)
    assert await _count(db, Order) == 0


async def test_checkout_rejects_free_orders(db, seed, svc, buyer):
    rid = await seed.raffle(price=1000)
    await seed.coupon(code="FREE", type="amount", value=5000)
    with pytest.raises(ValidationError):
        await svc.create_checkout(buyer, rid, 1, coupon_code="FREE")
    assert await _count(db, Order) == 0


async def test_checkout_with_unknown_coupon(db, seed, svc, buyer):
    rid = await seed.raffle()
    with pytest.raises(NotFound):
        await svc.create_checkout(buyer, rid, 1, coupon_code="NOPE")
    assert await _count(db, Order) == 0


async def test_provider_error_at_checkout_fails_the_order(db, seed, svc,
                                                          stub, buyer):
    rid = await seed.raffle()
    stub.fail_status = 500

    with pytest.raises(ProviderError):
        await svc.create_checkout(buyer, rid, 1)

    async with db.transaction() as tx:
        order = (await tx.execute(select(Order))).scalar_one()
        payment = (await tx.execute(select(Payment))).scalar_one()
    assert order.status == ORDER_FAILED
    assert payment.status == PAY_REJECTED


# ----------------------------
# Mercado Pago webhook
# ----------------------------
async def test_webhook_approves_and_assigns_tickets(db, seed, svc, stub,
                                                    mailer, buyer):
    rid = await seed.raffle(total=10)
    out = await svc.create_checkout(buyer, rid, 2)
    stub.mp_payment("9001", out["payment_id"], "approved", 2000)

    ack = await svc.handle_mp_webhook(_mp_query(9001), None, {})

    assert ack == {"ok": True}
    payment = await _payment(db, out["payment_id"])
    assert payment.status == PAY_APPROVED
    assert payment.provider_order_id == "9001"
    order = await _order(db, out["order_id"])
    assert order.status == ORDER_PAID
    assert order.paid_at is not None
    assert await _tickets(db, out["order_id"]) == [1, 2]

    assert len(mailer.sent) == 1
    email, payload = mailer.sent[0]
    assert email == "Buyer@Example.com"
    assert payload["tickets"] == [1, 2]
    assert payload["total_clp"] == 2000
    assert payload["billing"]["city"] == "Santiago"

    total, _ = await svc.pending.recent(10)
    assert total == 0


async def test_redelivered_webhooks_are_no_ops(db, seed, svc, stub, mailer,
                                               buyer):
    rid = await seed.raffle(total=10)
    out = await svc.create_checkout(buyer, rid, 3)
    stub.mp_payment("9001", out["payment_id"], "approved", 3000)

    await asyncio.gather(*(
        svc.handle_mp_webhook(_mp_query(9001), None, {}) for _ in range(3)
    ))
    await svc.handle_mp_webhook(_mp_query(9001), None, {})

    assert await _tickets(db, out["order_id"]) == [1, 2, 3]
    async with db.transaction() as tx:
        raffle = await tx.get(Raffle, rid)
    assert raffle.paid_tickets == 3
    assert len(mailer.sent) == 1
    assert await svc.process_successful_payment(out["payment_id"]) == \
        OUT_ALREADY_APPROVED


async def test_coupon_with_one_use_is_redeemed_once(db, seed, svc, stub):
    rid = await seed.raffle(total=10, price=1000)
    cid = await seed.coupon(code="ONCE", value=10, max_uses=1)
    u1, u2 = await seed.user(), await seed.user()

    a = await svc.create_checkout(u1, rid, 2, coupon_code="ONCE")
    b = await svc.create_checkout(u2, rid, 2, coupon_code="ONCE")
    assert a["discount_clp"] == b["discount_clp"] == 200
    stub.mp_payment("1", a["payment_id"], "approved", 1800)
    stub.mp_payment("2", b["payment_id"], "approved", 1800)

    await svc.handle_mp_webhook(_mp_query(1), None, {})
    await svc.handle_mp_webhook(_mp_query(2), None, {})

    assert (await _order(db, a["order_id"])).status == ORDER_PAID
    assert (await _order(db, b["order_id"])).status == ORDER_PAID
    async with db.transaction() as tx:
        coupon = await tx.get(Coupon, cid)
        redeemed = dict((await tx.execute(
            select(OrderDiscount.order_id, OrderDiscount.redeemed)
        )).all())
    assert coupon.used == 1
    assert redeemed == {a["order_id"]: True, b["order_id"]: False}


async def test_rejected_payment_fails_the_order(db, seed, svc, stub, mailer,
                                                buyer):
    rid = await seed.raffle()
    out = await svc.create_checkout(buyer, rid, 1)
    stub.mp_payment("9001", out["payment_id"], "rejected", 1000)

    await svc.handle_mp_webhook(_mp_query(9001), None, {})

    assert (await _payment(db, out["payment_id"])).status == PAY_REJECTED
    assert (await _order(db, out["order_id"])).status == ORDER_FAILED
    assert await _tickets(db, out["order_id"]) == []
    assert mailer.sent == []


async def test_approval_after_rejection_is_not_applied(db, seed, svc, stub,
                                                       buyer):
    rid = await seed.raffle()
    out = await svc.create_checkout(buyer, rid, 1)
    stub.mp_payment("9001", out["payment_id"], "rejected", 1000)
    await svc.handle_mp_webhook(_mp_query(9001), None, {})

    stub.mp_payment("9002", out["payment_id"], "approved", 1000)
    await svc.handle_mp_webhook(_mp_query(9002), None, {})

    assert (await _payment(db, out["payment_id"])).status == PAY_REJECTED
    assert await _tickets(db, out["order_id"]) == []
    assert await svc.process_successful_payment(out["payment_id"]) == \
        OUT_CONFLICT


async def test_provider_timeout_leaves_payment_pending(db, seed, svc, stub,
                                                       buyer):
    rid = await seed.raffle()
    out = await svc.create_checkout(buyer, rid, 1)
    stub.mp_payment("9001", out["payment_id"], "approved", 1000)
    stub.down = True

    ack = await svc.handle_mp_webhook(_mp_query(9001), None, {})

    assert ack == {"ok": True}
    assert (await _payment(db, out["payment_id"])).status == PAY_INIT
    total, _ = await svc.pending.recent(10)
    assert total == 1


async def test_other_topics_are_ignored(db, seed, svc, stub, buyer):
    rid = await seed.raffle()
    out = await svc.create_checkout(buyer, rid, 1)
    stub.mp_payment("9001", out["payment_id"], "approved", 1000)

    ack = await svc.handle_mp_webhook(
        {"topic": "merchant_order", "id": "9001"}, None, {}
    )

    assert ack == {"ok": True}
    assert stub.calls_to("/v1/payments/") == 0
    assert (await _payment(db, out["payment_id"])).status == PAY_INIT


async def test_resource_id_from_body(db, seed, svc, stub, buyer):
    rid = await seed.raffle()
    out = await svc.create_checkout(buyer, rid, 1)
    stub.mp_payment("4242", out["payment_id"], "approved", 1000)

    await svc.handle_mp_webhook(
        {}, {"topic": "payment",
             "resource": "https://api.mercadopago.com/v1/payments/4242"}, {}
    )

    assert (await _payment(db, out["payment_id"])).status == PAY_APPROVED


async def test_strict_signatures(db, seed, make_service, stub, buyer):
    svc = make_service(mp_signature_mode="strict")
    rid = await seed.raffle()
    out = await svc.create_checkout(buyer, rid, 1)
    stub.mp_payment("9001", out["payment_id"], "approved", 1000)

    forged = {"x-signature": "ts=1700000000,v1=deadbeef",
              "x-request-id": "req-1"}
    assert await svc.handle_mp_webhook(_mp_query(9001), None, forged) == \
        {"ok": True}
    assert stub.calls_to("/v1/payments/") == 0
    assert (await _payment(db, out["payment_id"])).status == PAY_INIT

    v1 = sign_manifest("mp-webhook-secret", "9001", "req-1", "1700000000")
    signed = {"x-signature": f"ts=1700000000,v1={v1}",
              "x-request-id": "req-1"}
    await svc.handle_mp_webhook(_mp_query(9001), None, signed)
    assert (await _payment(db, out["payment_id"])).status == PAY_APPROVED


async def test_insufficient_tickets_at_payment_rolls_back(db, seed, svc,
                                                          stub, mailer):
    rid = await seed.raffle(total=3)
    u1, u2 = await seed.user(), await seed.user()
    a = await svc.create_checkout(u1, rid, 2)
    b = await svc.create_checkout(u2, rid, 2)
    stub.mp_payment("1", a["payment_id"], "approved", 2000)
    stub.mp_payment("2", b["payment_id"], "approved", 2000)

    await svc.handle_mp_webhook(_mp_query(1), None, {})
    ack = await svc.handle_mp_webhook(_mp_query(2), None, {})

    assert ack == {"ok": True}
    assert await _tickets(db, a["order_id"]) == [1, 2]
    assert await _tickets(db, b["order_id"]) == []
    assert (await _payment(db, b["payment_id"])).status == PAY_INIT
    assert (await _order(db, b["order_id"])).status == ORDER_PENDING
    assert len(mailer.sent) == 1


async def test_mail_failure_keeps_the_payment(db, seed, svc, stub, mailer,
                                              buyer):
    rid = await seed.raffle()
    out = await svc.create_checkout(buyer, rid, 1)
    stub.mp_payment("9001", out["payment_id"], "approved", 1000)
    mailer.fail = True

    await svc.handle_mp_webhook(_mp_query(9001), None, {})

    assert (await _payment(db, out["payment_id"])).status == PAY_APPROVED
    assert (await _order(db, out["order_id"])).status == ORDER_PAID
    assert await _tickets(db, out["order_id"]) == [1]


async def test_amount_mismatch_still_approves(db, seed, svc, stub, buyer):
    rid = await seed.raffle()
    out = await svc.create_checkout(buyer, rid, 1)
    stub.mp_payment("9001", out["payment_id"], "approved", 1)

    await svc.handle_mp_webhook(_mp_query(9001), None, {})

    assert (await _payment(db, out["payment_id"])).status == PAY_APPROVED


# ----------------------------
# Flow
# ----------------------------
def _flow_token(out):
    return out["redirect_url"].split("token=", 1)[1]


async def test_flow_checkout_and_webhook(db, seed, svc, stub, mailer, buyer):
    rid = await seed.raffle(total=10)
    out = await svc.create_checkout(buyer, rid, 2, provider=PROVIDER_FLOW)

    form = stub.flow_creates[0]
    unsigned = {k: v for k, v in form.items() if k != "s"}
    assert form["s"] == sign("flow-secret", unsigned)
    assert form["apiKey"] == "flow-api-key"
    assert form["commerceOrder"] == out["payment_id"]
    assert form["amount"] == "2000"

    token = _flow_token(out)
    stub.set_flow(token, 2, out["payment_id"], 2000)
    assert await svc.handle_flow_webhook({"token": token}) == {"ok": True}

    payment = await _payment(db, out["payment_id"])
    assert payment.status == PAY_APPROVED
    assert payment.provider_token == token
    assert await _tickets(db, out["order_id"]) == [1, 2]
    assert len(mailer.sent) == 1


async def test_flow_webhook_without_token(svc, stub):
    assert await svc.handle_flow_webhook({}) == {"ok": True}
    assert stub.calls == []


async def test_check_flow_status(db, seed, svc, stub, buyer):
    rid = await seed.raffle(total=10)
    out = await svc.create_checkout(buyer, rid, 1, provider=PROVIDER_FLOW)
    token = _flow_token(out)

    stub.set_flow(token, 1, out["payment_id"], 1000)
    assert await svc.check_flow_status(token, out["order_id"]) == "pending"

    stub.set_flow(token, 3, out["payment_id"], 1000)
    assert await svc.check_flow_status(token, out["order_id"]) == "failure"
    assert (await _order(db, out["order_id"])).status == ORDER_FAILED

    ok = await svc.create_checkout(buyer, rid, 1, provider=PROVIDER_FLOW)
    ok_token = _flow_token(ok)
    stub.set_flow(ok_token, 2, ok["payment_id"], 1000)
    assert await svc.check_flow_status(ok_token, ok["order_id"]) == "success"
    # answered from the order, no provider call
    calls = len(stub.calls)
    assert await svc.check_flow_status(ok_token, ok["order_id"]) == "success"
    assert len(stub.calls) == calls


async def test_check_flow_status_provider_down(seed, svc, stub, buyer):
    rid = await seed.raffle()
    out = await svc.create_checkout(buyer, rid, 1, provider=PROVIDER_FLOW)
    stub.down = True
    assert await svc.check_flow_status(_flow_token(out), None) == "pending"


# ----------------------------
# Reconciliation
# ----------------------------
async def test_reconcile_pending(db, seed, svc, stub, mailer):
    rid = await seed.raffle(total=10)
    u1, u2, u3 = await seed.user(), await seed.user(), await seed.user()
    paid = await svc.create_checkout(u1, rid, 1)
    abandoned = await svc.create_checkout(u2, rid, 1)
    declined = await svc.create_checkout(u3, rid, 1, provider=PROVIDER_FLOW)

    stub.mp_payment("1", paid["payment_id"], "rejected", 1000)
    stub.mp_payment("2", paid["payment_id"], "approved", 1000)
    stub.set_flow(_flow_token(declined), 3, declined["payment_id"], 1000)

    counts = await svc.reconcile_pending(limit=50)

    assert counts == {
        "total_pending": 3,
        "checked": 3,
        "approved": 1,
        "rejected": 1,
        "pending": 1,
        "errors": 0,
    }
    assert (await _payment(db, paid["payment_id"])).status == PAY_APPROVED
    assert (await _payment(db, abandoned["payment_id"])).status == PAY_INIT
    assert (await _payment(db, declined["payment_id"])).status == PAY_REJECTED
    assert len(mailer.sent) == 1

    again = await svc.reconcile_pending()
    assert again["total_pending"] == 1


async def test_reconcile_counts_provider_errors(seed, svc, stub, buyer):
    rid = await seed.raffle()
    await svc.create_checkout(buyer, rid, 1)
    stub.down = True

    counts = await svc.reconcile_pending()

    assert counts["checked"] == 1
    assert counts["errors"] == 1
    assert counts["approved"] == 0


async def test_direct_approval_returns_approved(db, seed, svc, buyer):
    rid = await seed.raffle()
    out = await svc.create_checkout(buyer, rid, 1)
    assert await svc.process_successful_payment(out["payment_id"]) == \
        OUT_APPROVED
    assert await svc.process_successful_payment("missing") == "unknown_payment"


async def test_checkouts_in_the_same_millisecond(db, seed, svc, monkeypatch):
    rid = await seed.raffle(total=10)
    u1, u2 = await seed.user(), await seed.user()
    monkeypatch.setattr("rafflepay.helpers.time.time", lambda: 1700000000.0)

    a = await svc.create_checkout(u1, rid, 1)
    b = await svc.create_checkout(u2, rid, 1)

    assert a["order_number"] != b["order_number"]
    assert a["order_number"].startswith("STICKER-")
    assert await _count(db, Order) == 2


@pytest.mark.parametrize("code", [123, ["SAVE10"], {"code": "SAVE10"}])
async def test_checkout_rejects_non_string_coupon(db, seed, svc, stub, buyer,
                                                  code):
    rid = await seed.raffle()
    with pytest.raises(ValidationError):
        await svc.create_checkout(buyer, rid, 1, coupon_code=code)
    assert await _count(db, Order) == 0
    assert stub.calls == []


async def test_payment_type_in_body_wins_over_query_topic(db, seed, svc, stub,
                                                          buyer):
    rid = await seed.raffle()
    out = await svc.create_checkout(buyer, rid, 1)
    stub.mp_payment("9001", out["payment_id"], "approved", 1000)

    await svc.handle_mp_webhook(
        {"topic": "merchant_order"},
        {"type": "payment", "data": {"id": "9001"}}, {},
    )

    assert (await _payment(db, out["payment_id"])).status == PAY_APPROVED
