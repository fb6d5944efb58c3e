"""Shared pytest fixtures for test suite"""
import os
from dataclasses import dataclass
from typing import AsyncGenerator

import fakeredis
import httpx
import pytest
from sqlalchemy import select

# server.py builds its engine at import time; it never connects in tests
os.environ.setdefault("DATABASE_URL", "sqlite:///./.pytest-boxoffice.db")
os.environ.setdefault("MOCK_SECRET", "test-secret")

from boxoffice.helpers import now_ts
from boxoffice.infra.sql import create_schema, make_async_engine
from boxoffice.mockpay import MockPay
from boxoffice.model.capacity import CartLine
from boxoffice.model.checkout import checkout
from boxoffice.model.orm import (
    Base, Event, Order, Product, ProductTicketRestriction, ProductVariant,
    TicketType,
)
from boxoffice.model.settlement import SettlementStateMachine


@dataclass
class Catalog:
    event_id: str = "evt-1"
    org_id: str = "org-1"
    ga: str = "tt-ga"
    vip: str = "tt-vip"
    free: str = "tt-free"
    early: str = "tt-early"
    later: str = "tt-later"
    retired: str = "tt-retired"
    shirt: str = "p-shirt"
    shirt_s: str = "v-shirt-s"
    shirt_m: str = "v-shirt-m"
    upgrade: str = "p-upgrade"


@pytest.fixture(scope="function")
async def database(tmp_path):
    """Fresh SQLite file database per test."""
    db = make_async_engine(f"sqlite:///{tmp_path / 'boxoffice.db'}")
    await create_schema(db.engine, Base.metadata)
    try:
        yield db
    finally:
        await db.engine.dispose()


@pytest.fixture
def sessions(database):
    return database.sessions


@pytest.fixture
def gated(database):
    return database.gated


@pytest.fixture
async def catalog(sessions) -> Catalog:
    """One event with a spread of ticket types and add-on products."""
    c = Catalog()
    now = now_ts()
    async with sessions() as db:
        async with db.begin():
            db.add(Event(id=c.event_id, org_id=c.org_id, name="Harbour Jam"))
            db.add_all([
                TicketType(id=c.ga, event_id=c.event_id, name="General",
                           price=2500, capacity=100, max_per_order=10,
                           sort_order=1),
                TicketType(id=c.vip, event_id=c.event_id, name="VIP",
                           price=9000, capacity=2, max_per_order=4,
                           sort_order=2),
                TicketType(id=c.free, event_id=c.event_id, name="Crew",
                           price=0, capacity=None, max_per_order=None,
                           sort_order=3),
                TicketType(id=c.early, event_id=c.event_id, name="Early Bird",
                           price=1500, capacity=50, sales_end=now - 3600),
                TicketType(id=c.later, event_id=c.event_id, name="Door",
                           price=3000, capacity=50, sales_start=now + 3600),
                TicketType(id=c.retired, event_id=c.event_id, name="Retired",
                           price=1000, capacity=50, is_active=False),
            ])
            await db.flush()
            db.add_all([
                Product(id=c.shirt, event_id=c.event_id, name="Shirt",
                        price=2000, capacity=5, max_per_order=3),
                Product(id=c.upgrade, event_id=c.event_id, name="Backstage",
                        category="ticket_upgrade", price=1500,
                        capacity=None),
            ])
            await db.flush()
            db.add_all([
                ProductVariant(id=c.shirt_s, product_id=c.shirt, name="S",
                               capacity=1),
                ProductVariant(id=c.shirt_m, product_id=c.shirt, name="M",
                               capacity=None),
                ProductTicketRestriction(product_id=c.upgrade,
                                         ticket_type_id=c.vip),
            ])
    return c


@pytest.fixture
def adapter() -> MockPay:
    return MockPay(secret="test-secret")


@pytest.fixture
def place_order(sessions, catalog, adapter):
    """Run checkout for (ticket_type_id, qty) pairs; returns the outcome."""

    async def _place(*items, email="fan@example.com", product_items=()):
        lines = [CartLine(quantity=q, ticket_type_id=tt) for tt, q in items]
        lines += [
            CartLine(quantity=q, product_id=p, variant_id=v)
            for p, v, q in product_items
        ]
        async with sessions() as db:
            async with db.begin():
                return await checkout(db, adapter, event_id=catalog.event_id,
                                      email=email, lines=lines)

    return _place


@pytest.fixture
def settle(sessions):
    """Run one settlement in its own transaction."""

    async def _settle(order_id, status, **kw):
        async with sessions() as db:
            async with db.begin():
                return await SettlementStateMachine(db).settle(
                    order_id, status, **kw
                )

    return _settle


@pytest.fixture
def load_order(sessions):
    async def _load(order_id):
        async with sessions() as db:
            return (await db.execute(
                select(Order).where(Order.id == order_id)
            )).scalars().first()

    return _load


@pytest.fixture(scope="function")
def fake_redis():
    return fakeredis.FakeAsyncRedis(decode_responses=True)


@pytest.fixture
async def client(sessions, fake_redis) -> AsyncGenerator[httpx.AsyncClient, None]:
    """API client against the app with the test database wired in."""
    from boxoffice import server

    server.app.dependency_overrides[server.get_sessions] = lambda: sessions
    server.app.state.redis = fake_redis
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://testserver") as ac:
        # mockpay posts its webhook back into the same app
        server.app.state.http = ac
        yield ac
    server.app.dependency_overrides.clear()
    server.app.state.http = None
    server.app.state.redis = None


@pytest.fixture
async def admin_client(client) -> httpx.AsyncClient:
    r = await client.post("/admin/login", data={
        "username": "admin", "password": "supasecret",
    })
    assert r.status_code == 200
    return client
