import dataclasses
import itertools
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

import httpx
import orjson
import pytest
from sqlalchemy import select

from rafflepay.config import Settings
from rafflepay.infra import timings
from rafflepay.infra.sql import make_database
from rafflepay.model.orm import (
    Base, User, Order, Coupon, Product, Variant, InventorySource,
    InventoryLevel, ORDER_PENDING, PRODUCT_PHYSICAL,
)
from rafflepay.model.pending import SqlPendingIndex
from rafflepay.model.tickets import create_raffle
from rafflepay.payments import PaymentsService
from rafflepay.providers import MercadoPagoClient, FlowClient


MP_BASE = "https://mp.test"
FLOW_BASE = "https://flow.test/api"


def make_settings(tmp_path, **overrides) -> Settings:
    base = Settings(
        database_url=f"sqlite:///{tmp_path / 'rafflepay.db'}",
        mp_access_token="TEST-ACCESS-TOKEN",
        mp_api_base=MP_BASE,
        mp_webhook_secret="mp-webhook-secret",
        mp_signature_mode="lenient",
        flow_api_key="flow-api-key",
        flow_secret_key="flow-secret",
        flow_api_url=FLOW_BASE,
        api_base_url="https://api.test",
        public_base_url="https://shop.test",
        session_secret="test-session-secret",
        admin_username="admin",
        admin_password="s3cret",
        log_json=False,
    )
    return dataclasses.replace(base, **overrides)


# ----------------------------
# Provider stub (MockTransport)
# ----------------------------
class ProviderStub:
    """
    Enough of Mercado Pago and Flow to drive checkout, status lookups and
    the payments search. `down = True` turns every call into a timeout.
    """

    def __init__(self) -> None:
        self.down = False
        self.fail_status: Optional[int] = None
        self.calls: List[httpx.Request] = []
        self.preferences: List[Dict[str, Any]] = []
        self.flow_creates: List[Dict[str, str]] = []
        self.mp_payments: Dict[str, Dict[str, Any]] = {}
        self.flow_status: Dict[str, Dict[str, Any]] = {}
        self._seq = itertools.count(1)

    # -- scripting
    def mp_payment(self, mp_id: str, payment_id: str, status: str,
                   amount: int) -> None:
        self.mp_payments[str(mp_id)] = {
            "id": int(mp_id),
            "status": status,
            "external_reference": payment_id,
            "transaction_amount": amount,
        }

    def set_flow(self, token: str, status: int, commerce_order: str,
                 amount: int, flow_order: int = 777) -> None:
        self.flow_status[token] = {
            "flowOrder": flow_order,
            "commerceOrder": commerce_order,
            "status": status,
            "amount": amount,
        }

    def calls_to(self, path_part: str) -> int:
        return sum(1 for r in self.calls if path_part in r.url.path)

    # -- transport
    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.down:
            raise httpx.ConnectTimeout("provider down", request=request)
        if self.fail_status:
            return httpx.Response(self.fail_status, json={"error": "boom"})

        url = str(request.url)
        path = request.url.path

        if url.startswith(MP_BASE):
            if request.method == "POST" and path == "/checkout/preferences":
                body = orjson.loads(request.content)
                self.preferences.append(body)
                pref_id = f"pref-{next(self._seq)}"
                return httpx.Response(200, json={
                    "id": pref_id,
                    "init_point": f"{MP_BASE}/checkout?pref_id={pref_id}",
                })
            if path == "/v1/payments/search":
                ref = request.url.params.get("external_reference")
                results = [p for p in self.mp_payments.values()
                           if p["external_reference"] == ref]
                return httpx.Response(200, json={"results": results})
            if path.startswith("/v1/payments/"):
                mp_id = path.rsplit("/", 1)[-1]
                if mp_id not in self.mp_payments:
                    return httpx.Response(404, json={"message": "not found"})
                return httpx.Response(200, json=self.mp_payments[mp_id])

        if url.startswith(FLOW_BASE):
            if request.method == "POST" and path.endswith("/payment/create"):
                form = dict(parse_qsl(request.content.decode()))
                self.flow_creates.append(form)
                n = next(self._seq)
                return httpx.Response(200, json={
                    "token": f"tok-{n}",
                    "url": "https://flow.test/app/pay",
                    "flowOrder": 5000 + n,
                })
            if path.endswith("/payment/getStatus"):
                token = request.url.params.get("token")
                if token not in self.flow_status:
                    return httpx.Response(400, json={"code": 105})
                return httpx.Response(200, json=self.flow_status[token])

        return httpx.Response(404, json={"unexpected": url})


class FakeMailer:
    def __init__(self) -> None:
        self.sent: List[tuple] = []
        self.fail = False

    async def send_order_confirmation(self, email, payload) -> bool:
        if self.fail:
            raise httpx.ConnectError("mail relay down")
        self.sent.append((email, payload))
        return True


# ----------------------------
# Seeding
# ----------------------------
class Seeder:
    def __init__(self, db) -> None:
        self.db = db
        self._n = itertools.count(1)

    async def user(self, email: Optional[str] = None,
                   name: str = "Ana") -> str:
        n = next(self._n)
        uid = f"user-{n}"
        async with self.db.transaction() as tx:
            tx.add(User(
                id=uid,
                email=email or f"buyer{n}@example.com",
                name=name,
                lastname="Rojas",
                phone="+56 9 1234 5678",
                address="Av. Siempre Viva 742",
                city="Santiago",
            ))
        return uid

    async def raffle(self, total: int = 10, price: int = 1000,
                     tiers=None, starts_at=None, ends_at=None) -> str:
        async with self.db.transaction() as tx:
            raffle = await create_raffle(
                tx, "Summer raffle", price, total, starts_at, ends_at, tiers
            )
            return raffle.id

    async def order(self, user_id: str, total: int = 1000) -> str:
        oid = f"order-{next(self._n)}"
        async with self.db.transaction() as tx:
            tx.add(Order(
                id=oid, number=f"N-{oid}", user_id=user_id,
                status=ORDER_PENDING, subtotal_clp=total, total_clp=total,
            ))
        return oid

    async def coupon(self, code: str = "SAVE10", type: str = "percent",
                     value: int = 10, max_uses: int = 5, used: int = 0,
                     min_subtotal: int = 0, starts_at=None,
                     ends_at=None) -> str:
        cid = f"coupon-{next(self._n)}"
        async with self.db.transaction() as tx:
            tx.add(Coupon(
                id=cid, code=code, type=type, value=value,
                max_uses=max_uses, used=used, min_subtotal=min_subtotal,
                starts_at=starts_at, ends_at=ends_at,
            ))
        return cid

    async def product(self, price: int = 10000, stocks=(5,),
                      type: str = PRODUCT_PHYSICAL, extra: int = 0) -> str:
        """Product + one variant with a level per source; returns variant id."""
        n = next(self._n)
        pid, vid = f"prod-{n}", f"var-{n}"
        async with self.db.transaction() as tx:
            tx.add(Product(id=pid, title=f"Hoodie {n}", type=type,
                           price_clp=price))
            tx.add(Variant(id=vid, product_id=pid, sku=f"SKU-{n}",
                           extra_price_clp=extra, active=True))
            for i, stock in enumerate(stocks):
                sid = f"src-{n}-{chr(ord('a') + i)}"
                tx.add(InventorySource(id=sid, name=f"Store {i}"))
                tx.add(InventoryLevel(id=f"lvl-{n}-{i}", variant_id=vid,
                                      source_id=sid, stock=stock,
                                      reserved=0))
        return vid

    async def levels(self, variant_id: str) -> List[tuple]:
        async with self.db.transaction() as tx:
            rows = (await tx.execute(
                select(InventoryLevel.stock, InventoryLevel.reserved)
                .where(InventoryLevel.variant_id == variant_id)
                .order_by(InventoryLevel.source_id)
            )).all()
        return [(r.stock, r.reserved) for r in rows]


# ----------------------------
# Fixtures
# ----------------------------
@pytest.fixture(autouse=True)
def _clear_timings():
    timings.reset()
    yield
    timings.reset()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
async def db(settings):
    database = make_database(settings)
    async with database.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield database
    await database.dispose()


@pytest.fixture
def seed(db):
    return Seeder(db)


@pytest.fixture
def stub():
    return ProviderStub()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
async def http(stub):
    client = httpx.AsyncClient(transport=httpx.MockTransport(stub.handler))
    yield client
    await client.aclose()


@pytest.fixture
def make_service(db, settings, http, mailer):
    def _make(**overrides) -> PaymentsService:
        s = dataclasses.replace(settings, **overrides) if overrides \
            else settings
        return PaymentsService(
            db=db,
            settings=s,
            mp=MercadoPagoClient(s, http),
            flow=FlowClient(s, http),
            mailer=mailer,
            pending=SqlPendingIndex(db=db),
        )
    return _make


@pytest.fixture
def svc(make_service):
    return make_service()
