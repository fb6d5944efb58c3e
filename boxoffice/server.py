from __future__ import annotations
import logging
import sys

import httpx
import orjson
import redis.asyncio as redis
from typing import Optional

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.middleware.sessions import SessionMiddleware

from . import config
from .authz import Action, Actor, Domain, Role, authorize
from .errors import (
    DomainError, ErrorCode, EventNotFoundError, InvalidCartError,
    OrderNotFoundError,
)
from .helpers import ct_equal, is_valid_email
from .infra.logs import setup_logging
from .infra.sql import create_schema, make_async_engine
from .infra.timings import aggregates, timeit
from .jobs import make_sender, reap_once
from .mockpay import MockPay, PaymentAdapter, new_adapter
from .model import capacity, inventory, orders, payments
from .model.audit import AuditSink, SqlAuditSink, record_all
from .model.capacity import parse_cart
from .model.checkout import checkout
from .model.orm import Base
from .model.outbox import deliver_due
from .model.webhook import process_callback, replay

setup_logging()
logger = logging.getLogger(__name__)

if config.DATABASE_URL is None:
    logger.critical("NEED DATABASE_URL!")
    sys.exit(1)

engine, SessionAsync, gated = make_async_engine(config.DATABASE_URL)

adapter: PaymentAdapter = new_adapter()

app = FastAPI(
    title="BoxOffice",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=config.SESSION_SECRET)

MOCKPAY_STATUSES = {
    "paid", "succeeded", "failed", "canceled", "expired", "refunded",
}

_HTTP_STATUS = {
    ErrorCode.ORDER_NOT_FOUND: 404,
    ErrorCode.EVENT_NOT_FOUND: 404,
    ErrorCode.INVALID_CART: 400,
    ErrorCode.PERMISSION_DENIED: 403,
    ErrorCode.NOT_AUTHENTICATED: 401,
}


def get_sessions() -> async_sessionmaker:
    return SessionAsync


async def get_db(
    sessions: async_sessionmaker = Depends(get_sessions),
) -> AsyncSession:
    async with sessions() as session:
        yield session


def get_audit(
    sessions: async_sessionmaker = Depends(get_sessions),
) -> AuditSink:
    return SqlAuditSink(sessions, gated)


def current_actor(request: Request) -> Optional[Actor]:
    return Actor.from_session(request.session.get("actor"))


@app.exception_handler(DomainError)
async def _domain_error(request: Request, exc: DomainError):
    return ORJSONResponse(
        status_code=_HTTP_STATUS.get(exc.code, 400),
        content={"error": exc.code.value, "message": exc.message},
    )


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _db_init():
    await create_schema(engine, Base.metadata)
    logger.info("BoxOffice is starting up (provider=%s, redis=%s)",
                adapter.name, "on" if config.REDIS_URL else "off")


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=128, max_keepalive_connections=128
        ),
    )


@app.on_event("startup")
async def _redis_start():
    app.state.redis = None
    if config.REDIS_URL:
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _engine_stop():
    await engine.dispose()


# ----------------------------
# Checkout
# ----------------------------
def _event_id(payload: dict) -> str:
    event_id = payload.get("event_id")
    if not event_id or not isinstance(event_id, str):
        raise InvalidCartError("event_id is required")
    return event_id


@app.post("/api/checkout/validate")
async def validate_cart(payload: dict, db: AsyncSession = Depends(get_db)):
    event_id = _event_id(payload)
    lines = parse_cart(payload.get("lines"))

    # DB-GATE; the unit locks are released when the tx ends
    async with timeit("db.validate"):
        async with gated():
            async with db.begin():
                if await orders.get_event(db, event_id) is None:
                    raise EventNotFoundError(event_id)
                result = await capacity.validate(db, event_id, lines)
    return result.to_dict()


@app.post("/api/checkout")
async def create_checkout(payload: dict, db: AsyncSession = Depends(get_db)):
    event_id = _event_id(payload)
    lines = parse_cart(payload.get("lines"))
    customer_email = (payload.get("customer_email") or "").strip()

    if not is_valid_email(customer_email):
        raise HTTPException(
            400,
            detail="customer_email is required and must be a valid email "
                   "address"
        )

    async with timeit("db.checkout"):
        async with gated():
            async with db.begin():
                outcome = await checkout(
                    db,
                    adapter,
                    event_id=event_id,
                    email=customer_email,
                    lines=lines,
                    user_ref=payload.get("user_ref"),
                )
    if not outcome.accepted:
        return ORJSONResponse(status_code=409, content=outcome.to_dict())
    logger.info("checkout: order %s pending, %s %s", outcome.order.id,
                outcome.order.total, outcome.order.currency)
    return outcome.to_dict()


# ----------------------------
# API: Order status (polled by success page)
# ----------------------------
@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, db: AsyncSession = Depends(get_db)):
    async with timeit("db.get_order"):
        async with gated():
            async with db.begin():
                view = await orders.order_view(db, order_id)
    if view is None:
        raise OrderNotFoundError(order_id)
    return view


@app.get("/api/events/{event_id}/inventory")
async def get_inventory(event_id: str, db: AsyncSession = Depends(get_db)):
    async with timeit("db.inventory"):
        async with gated():
            async with db.begin():
                if await orders.get_event(db, event_id) is None:
                    raise EventNotFoundError(event_id)
                return await inventory.compute_inventory(db, event_id)


# ----------------------------
# Webhook endpoint
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    audit: AuditSink = Depends(get_audit),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = adapter.verify_webhook(payload, headers)
    callback = adapter.parse(event)

    try:
        async with timeit("db.settle"):
            async with gated():
                async with db.begin():
                    outcome = await process_callback(db, callback)
    except Exception:
        # tx (admission row included) is rolled back; provider retries
        logger.exception("settlement failed for payment %s (%s)",
                         callback.provider_payment_id, callback.status)
        return ORJSONResponse(
            status_code=500,
            content={"ok": False, "error": "SETTLEMENT_FAILED"},
        )

    async with timeit("audit.record"):
        await record_all(audit, outcome.audit)
    return outcome.to_dict()


# ----------------------------
# MockPay: sign & deliver a provider callback
# ----------------------------
@app.post("/mockpay/{payment_id}/emit")
async def mockpay_emit(
    payment_id: str, request: Request,
    db: AsyncSession = Depends(get_db),
):
    if not isinstance(adapter, MockPay):
        raise HTTPException(404, "mockpay is not the active provider")

    form = await request.form()
    kind = form.get("t")
    if kind not in MOCKPAY_STATUSES:
        raise HTTPException(400, detail="invalid kind")

    async with timeit("db.get_payment"):
        async with gated():
            async with db.begin():
                payment = await payments.get_payment(db, adapter.name,
                                                     payment_id)
    if payment is None:
        raise HTTPException(404, "payment not found")

    event = adapter.build_event(payment_id, payment.order_id, kind,
                                payment.amount, payment.currency)
    body = orjson.dumps(event)

    client_http: httpx.AsyncClient = app.state.http
    try:
        r = await client_http.post(
            config.MOCK_WEBHOOK_URL,
            content=body,
            headers={
                "x-mockpay-signature": adapter.sign(body),
                "content-type": "application/json",
            },
        )
    except httpx.HTTPError as e:
        # the shopper can press the button again
        logger.warning("mockpay webhook delivery failed: %s", e)
        return {"ok": False, "delivered": False, "order_id": payment.order_id}

    return {
        "ok": r.status_code < 400,
        "delivered": True,
        "status_code": r.status_code,
        "order_id": payment.order_id,
        "result": r.json() if r.content else None,
    }


# ----------------------------
# Admin
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
):
    ok_user = ct_equal(username.strip(), config.ADMIN_USERNAME)
    ok_pass = ct_equal(password, config.ADMIN_PASSWORD)
    if not (ok_user and ok_pass):
        raise HTTPException(401, detail="Invalid credentials.")
    actor = Actor(
        username=username.strip(),
        role=Role(config.ADMIN_ROLE),
        org_id=config.ADMIN_ORG_ID,
    )
    request.session["actor"] = actor.to_session()
    return {"ok": True, **actor.to_session()}


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"ok": True}


@app.get("/api/admin/orders")
async def api_admin_orders(
    request: Request,
    limit: int = 200,
    db: AsyncSession = Depends(get_db),
):
    actor = current_actor(request)
    authorize(actor, Domain.ORDERS, Action.READ,
              actor.org_id if actor else None)

    async with timeit("db.list_orders"):
        async with gated():
            async with db.begin():
                items = await orders.list_recent_orders(db, limit,
                                                        actor.org_id)
    return {"items": items, "limit": limit}


@app.post("/api/admin/orders/{order_id}/replay")
async def api_admin_replay(
    order_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    audit: AuditSink = Depends(get_audit),
):
    actor = current_actor(request)
    async with timeit("db.replay"):
        async with gated():
            async with db.begin():
                order = await orders.get_order(db, order_id)
                if order is None:
                    authorize(actor, Domain.SETTLEMENT, Action.WRITE)
                    raise OrderNotFoundError(order_id)
                authorize(actor, Domain.SETTLEMENT, Action.WRITE,
                          order.org_id)
                result = await replay(db, order_id)

    logger.info("admin %s replayed settlement for order %s: %s",
                actor.username, order_id, result.message)
    await record_all(audit, result.audit)
    return result.to_dict()


@app.post("/api/admin/reap")
async def api_admin_reap(
    request: Request,
    max_age_minutes: int = config.STALE_ORDER_MAX_AGE_MINUTES,
    sessions: async_sessionmaker = Depends(get_sessions),
    audit: AuditSink = Depends(get_audit),
):
    authorize(current_actor(request), Domain.ORDERS, Action.WRITE)
    count = await reap_once(
        sessions, gated, max_age_minutes,
        r=getattr(app.state, "redis", None), audit=audit,
    )
    return {"cancelled": count, "skipped": count is None}


@app.post("/api/admin/outbox/deliver")
async def api_admin_deliver_outbox(
    request: Request,
    limit: int = config.OUTBOX_BATCH_SIZE,
    sessions: async_sessionmaker = Depends(get_sessions),
):
    authorize(current_actor(request), Domain.OPS, Action.WRITE)
    async with timeit("outbox.deliver"):
        return await deliver_due(
            sessions, make_sender(getattr(app.state, "http", None)),
            limit=limit,
        )


@app.get("/api/admin/timings")
async def api_admin_timings(request: Request):
    authorize(current_actor(request), Domain.OPS, Action.READ)
    return {"items": aggregates()}
