import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, NamedTuple, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from .. import config

# `async with gated(): ...` bounds how many coroutines do DB work at once
Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    # order lines and tickets reference their parents
    "PRAGMA foreign_keys=ON;",
)


class Database(NamedTuple):
    engine: AsyncEngine
    sessions: async_sessionmaker
    gated: Gated


def async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def make_gate(limit: int) -> Gated:
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated():
        async with sem:
            yield

    return gated


def make_async_engine(database_url: str,
                      gate_limit: Optional[int] = None) -> Database:
    url = async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    is_pg = url.startswith("postgresql+asyncpg://")
    if is_pg:
        kw.update(
            pool_size=config.DB_POOL_SIZE,
            max_overflow=config.DB_MAX_OVERFLOW,
            pool_timeout=config.DB_POOL_TIMEOUT,
        )

    engine = create_async_engine(url, **kw)

    if url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            # we emit BEGIN ourselves, see _sqlite_begin
            dbapi_connection.isolation_level = None
            cur = dbapi_connection.cursor()
            for pragma in SQLITE_PRAGMAS:
                cur.execute(pragma)
            cur.close()

        # SQLite has no FOR UPDATE: take the write lock when the transaction
        # starts so reads under "lock" cannot go stale before the write
        @event.listens_for(engine.sync_engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    sessions = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # one gate per engine; on postgres it defaults to the pool size
    if gate_limit is None:
        gate_limit = config.DB_GATE_LIMIT or (
            config.DB_POOL_SIZE if is_pg else 10
        )
    return Database(engine, sessions, make_gate(gate_limit))


async def create_schema(engine: AsyncEngine, metadata) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
