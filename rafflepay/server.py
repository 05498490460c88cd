from __future__ import annotations
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import orjson
import redis.asyncio as redis
import structlog
from fastapi import Depends, FastAPI, Form, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy import select
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .config import Settings
from .errors import RaffleError, ValidationError
from .helpers import ct_equal
from .infra import timings
from .infra.logs import configure_logging
from .infra.sql import make_database
from .infra.timings import timeit
from .mail import Mailer
from .model.coupons import validate_coupon
from .model.orm import Base, Order, PROVIDER_MP, PROVIDER_FLOW
from .model.pending import new_index
from .model.pricing import compute_best_pricing
from .model.tickets import (
    availability, create_raffle, get_raffle, raffle_tiers,
)
from .orders import create_order, cancel_order, get_order
from .payments import PaymentsService
from .providers import MercadoPagoClient, FlowClient

log = structlog.get_logger(__name__)

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))


def _parse_dt(value: Any, field: str) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime")


def create_app(
    settings: Optional[Settings] = None,
    *,
    http: Optional[httpx.AsyncClient] = None,
    mailer: Optional[Mailer] = None,
    redis_client: Optional[redis.Redis] = None,
    configure_logs: bool = True,
) -> FastAPI:
    """
    Build the app. Run with:

        uvicorn rafflepay.server:create_app --factory
    """
    settings = settings or Settings.from_env()
    if configure_logs:
        configure_logging(settings.log_level, settings.log_json)

    db = make_database(settings)

    app = FastAPI(
        title="rafflepay",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.state.settings = settings
    app.state.db = db

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        log.info(
            "rafflepay_starting",
            database=db.engine.dialect.name,
            pending_backend=settings.pending_backend,
            mercadopago=settings.mp_configured,
            flow=settings.flow_configured,
            signature_mode=settings.mp_signature_mode,
        )
        if not settings.mp_configured:
            log.warning("mercadopago_not_configured",
                        hint="set MP_ACCESS_TOKEN")
        if not settings.flow_configured:
            log.warning(
                "flow_not_configured",
                hint="set FLOW_API_KEY, FLOW_SECRET_KEY and FLOW_API_URL",
            )

    @app.on_event("startup")
    async def _db_init():
        async with db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @app.on_event("startup")
    async def _http_client_start():
        app.state.owns_http = http is None
        app.state.http = http or httpx.AsyncClient(
            timeout=settings.provider_timeout,
            limits=httpx.Limits(
                max_connections=100, max_keepalive_connections=20
            ),
        )

    @app.on_event("startup")
    async def _redis_start():
        app.state.redis = None
        if settings.pending_backend == "redis":
            app.state.redis = redis_client or redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )

    @app.on_event("startup")
    async def _services_start():
        client = app.state.http
        app.state.payments = PaymentsService(
            db=db,
            settings=settings,
            mp=MercadoPagoClient(settings, client),
            flow=FlowClient(settings, client),
            mailer=mailer or Mailer(settings, client),
            pending=new_index(settings, db=db, r=app.state.redis),
        )

    @app.on_event("shutdown")
    async def _http_client_stop():
        client = getattr(app.state, "http", None)
        if client is not None and app.state.owns_http:
            await client.aclose()
        app.state.http = None

    @app.on_event("shutdown")
    async def _redis_stop():
        r = getattr(app.state, "redis", None)
        if r is not None and redis_client is None:
            await r.aclose()
        app.state.redis = None

    @app.on_event("shutdown")
    async def _db_stop():
        await db.dispose()

    # ----------------------------
    # Errors
    # ----------------------------
    @app.exception_handler(RaffleError)
    async def _raffle_error(request: Request, exc: RaffleError):
        return ORJSONResponse(
            {"detail": exc.detail}, status_code=exc.status_code
        )

    # ----------------------------
    # Dependencies
    # ----------------------------
    def payments() -> PaymentsService:
        return app.state.payments

    def current_user(x_user_id: Optional[str] = Header(None)) -> str:
        # identity is established upstream; we only read it
        if not x_user_id or not x_user_id.strip():
            raise HTTPException(401, detail="missing x-user-id")
        return x_user_id.strip()

    def is_admin(request: Request) -> bool:
        return bool(request.session.get("admin_user"))

    def require_admin(request: Request) -> None:
        if not is_admin(request):
            # preserve where we wanted to go
            dest = request.url.path
            raise HTTPException(
                status_code=307, detail="redirect to login",
                headers={"Location": f"/admin/login?next={dest}"},
            )

    async def _json_body(request: Request) -> Optional[Dict[str, Any]]:
        raw = await request.body()
        if not raw:
            return None
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    # ----------------------------
    # Health
    # ----------------------------
    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    # ----------------------------
    # API: raffles
    # ----------------------------
    @app.get("/api/raffles/{raffle_id}/pricing")
    async def raffle_pricing(raffle_id: str, quantity: int = 1):
        async with db.transaction() as tx:
            raffle = await get_raffle(tx, raffle_id)
            tiers = await raffle_tiers(tx, raffle_id)
            pricing = compute_best_pricing(
                raffle.ticket_price_clp, quantity, tiers
            )
        return {"raffle_id": raffle_id, "quantity": quantity, **pricing}

    @app.get("/api/raffles/{raffle_id}/availability")
    async def raffle_availability(raffle_id: str):
        async with db.transaction() as tx:
            return await availability(tx, raffle_id)

    @app.post("/api/raffles/{raffle_id}/checkout")
    async def raffle_checkout_mp(
        raffle_id: str,
        payload: dict,
        user_id: str = Depends(current_user),
        svc: PaymentsService = Depends(payments),
    ):
        return await svc.create_checkout(
            user_id, raffle_id, payload.get("quantity"),
            payload.get("coupon_code"), PROVIDER_MP,
        )

    @app.post("/api/raffles/{raffle_id}/checkout-flow")
    async def raffle_checkout_flow(
        raffle_id: str,
        payload: dict,
        user_id: str = Depends(current_user),
        svc: PaymentsService = Depends(payments),
    ):
        return await svc.create_checkout(
            user_id, raffle_id, payload.get("quantity"),
            payload.get("coupon_code"), PROVIDER_FLOW,
        )

    # ----------------------------
    # API: coupons
    # ----------------------------
    @app.post("/api/coupons/validate")
    async def coupons_validate(payload: dict):
        async with db.transaction() as tx:
            return await validate_coupon(
                tx, payload.get("code"), payload.get("subtotal")
            )

    # ----------------------------
    # API: product orders
    # ----------------------------
    @app.post("/api/orders")
    async def orders_create(payload: dict,
                            user_id: str = Depends(current_user)):
        return await create_order(
            db, user_id, payload.get("items") or [],
            payload.get("coupon_code"),
        )

    @app.post("/api/orders/{order_id}/cancel")
    async def orders_cancel(
        order_id: str,
        user_id: str = Depends(current_user),
        svc: PaymentsService = Depends(payments),
    ):
        return await cancel_order(db, order_id, user_id, pending=svc.pending)

    @app.post("/api/orders/{order_id}/checkout")
    async def orders_checkout(
        order_id: str,
        payload: dict,
        user_id: str = Depends(current_user),
        svc: PaymentsService = Depends(payments),
    ):
        return await svc.create_order_checkout(
            order_id, user_id, payload.get("provider") or PROVIDER_MP
        )

    @app.get("/api/orders/{order_id}")
    async def orders_get(order_id: str,
                         user_id: str = Depends(current_user)):
        async with timeit("db.get_order"):
            return await get_order(db, order_id, user_id)

    # ----------------------------
    # Provider callbacks
    # ----------------------------
    @app.post("/payments/mercadopago/webhook")
    async def mp_webhook(request: Request,
                         svc: PaymentsService = Depends(payments)):
        body = await _json_body(request)
        return await svc.handle_mp_webhook(
            dict(request.query_params), body, request.headers
        )

    @app.post("/payments/flow/webhook")
    async def flow_webhook(request: Request,
                           svc: PaymentsService = Depends(payments)):
        if request.headers.get("content-type", "").startswith(
                "application/json"):
            body = await _json_body(request)
        else:
            try:
                body = dict(await request.form())
            except Exception as e:
                # always ack
                log.warning("flow_webhook_unreadable", error=str(e))
                body = None
        return await svc.handle_flow_webhook(body)

    @app.get("/payments/mercadopago/return")
    async def mp_return(status: Optional[str] = None,
                        payment_id: Optional[str] = None):
        base = settings.public_base_url
        if status in ("success", "approved"):
            url = f"{base}/checkout/success?payment_id={payment_id or ''}"
        elif status == "failure":
            url = f"{base}/checkout/failure"
        else:
            url = f"{base}/checkout/pending"
        return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)

    @app.post("/payments/flow/return")
    async def flow_return(request: Request, order_id: Optional[str] = None,
                          svc: PaymentsService = Depends(payments)):
        form = await request.form()
        token = form.get("token")
        outcome = await svc.check_flow_status(token, order_id)
        return RedirectResponse(
            url=f"{settings.public_base_url}/checkout/{outcome}"
                f"?order_id={order_id or ''}",
            status_code=HTTP_303_SEE_OTHER,
        )

    @app.post("/payments/flow/failure")
    async def flow_failure(order_id: Optional[str] = None):
        return RedirectResponse(
            url=f"{settings.public_base_url}/checkout/failure"
                f"?order_id={order_id or ''}",
            status_code=HTTP_303_SEE_OTHER,
        )

    # ----------------------------
    # Admin
    # ----------------------------
    @app.get("/admin/login", response_class=HTMLResponse)
    async def admin_login_get(request: Request,
                              next: str | None = "/api/admin/orders"):
        return templates.TemplateResponse(
            request, "login.html", {"next": next, "error": None}
        )

    @app.post("/admin/login", response_class=HTMLResponse)
    async def admin_login_post(
        request: Request,
        username: str = Form(...),
        password: str = Form(...),
        next: str = Form("/api/admin/orders"),
    ):
        ok_user = ct_equal(username.strip(), settings.admin_username)
        ok_pass = ct_equal(password, settings.admin_password)
        if ok_user and ok_pass:
            request.session["admin_user"] = username.strip()
            log.info("admin_login", user=username.strip())
            return RedirectResponse(
                url=(next or "/api/admin/orders"),
                status_code=HTTP_303_SEE_OTHER,
            )
        log.warning("admin_login_failed", user=username.strip())
        return templates.TemplateResponse(
            request, "login.html",
            {"next": next, "error": "Invalid credentials."},
            status_code=401,
        )

    @app.get("/admin/logout")
    async def admin_logout(request: Request):
        request.session.clear()
        return RedirectResponse(url="/admin/login",
                                status_code=HTTP_303_SEE_OTHER)

    @app.post("/api/admin/raffles", dependencies=[Depends(require_admin)])
    async def admin_create_raffle(payload: dict):
        async with db.transaction() as tx:
            raffle = await create_raffle(
                tx,
                payload.get("name") or "",
                payload.get("ticket_price_clp"),
                payload.get("total_tickets"),
                _parse_dt(payload.get("starts_at"), "starts_at"),
                _parse_dt(payload.get("ends_at"), "ends_at"),
                payload.get("tiers") or [],
            )
            return {
                "id": raffle.id,
                "name": raffle.name,
                "ticket_price_clp": raffle.ticket_price_clp,
                "total_tickets": raffle.total_tickets,
            }

    @app.get("/api/admin/orders", dependencies=[Depends(require_admin)])
    async def admin_orders(limit: int = 200, status: Optional[str] = None):
        limit = max(1, min(limit, 500))
        q = select(Order).order_by(Order.created_at.desc()).limit(limit)
        if status:
            q = q.where(Order.status == status)
        async with db.transaction() as tx:
            rows = (await tx.execute(q)).scalars().all()
        items = [
            {
                "id": o.id,
                "number": o.number,
                "status": o.status,
                "user_id": o.user_id,
                "total_clp": o.total_clp,
                "created_at": o.created_at.isoformat()
                if o.created_at else None,
                "paid_at": o.paid_at.isoformat() if o.paid_at else "-",
            }
            for o in rows
        ]
        return {"items": items, "limit": limit}

    @app.get("/api/admin/pending", dependencies=[Depends(require_admin)])
    async def admin_pending(limit: int = 100,
                            svc: PaymentsService = Depends(payments)):
        total, items = await svc.pending.recent(limit=limit)
        return {"items": items, "limit": limit, "total": total,
                "backend": settings.pending_backend}

    @app.post("/api/admin/reconcile", dependencies=[Depends(require_admin)])
    async def admin_reconcile(limit: int = 100,
                              svc: PaymentsService = Depends(payments)):
        return await svc.reconcile_pending(limit=limit)

    @app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
    async def admin_timings():
        return timings.snapshot()

    return app
