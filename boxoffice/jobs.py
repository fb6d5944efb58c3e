"""
Scheduled jobs.

    python -m boxoffice.jobs reap [--max-age-minutes 60]
    python -m boxoffice.jobs deliver-outbox [--limit 100]

Each run prints one JSON line with its counts. Meant to be started from cron
or a scheduler every few minutes.
"""
from __future__ import annotations
import argparse
import asyncio
import logging
import sys
from typing import Dict, Optional

import httpx
import orjson
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import async_sessionmaker

from . import config
from .infra.lease import acquire_lease, release_lease
from .infra.logs import setup_logging
from .infra.sql import Gated, make_async_engine
from .infra.timings import timeit
from .model.audit import AuditSink, SqlAuditSink, record_all
from .model.outbox import (
    HttpNotificationSender, LogNotificationSender, NotificationSender,
    deliver_due,
)
from .model.reaper import reap

logger = logging.getLogger(__name__)

REAPER_LEASE = "reaper"


async def reap_once(
    sessions: async_sessionmaker,
    gated: Gated,
    max_age_minutes: int = config.STALE_ORDER_MAX_AGE_MINUTES,
    *,
    r: Optional[redis.Redis] = None,
    audit: Optional[AuditSink] = None,
) -> Optional[int]:
    """Cancelled count, or None when another host holds the lease."""
    token = None
    if r is not None:
        token = await acquire_lease(r, REAPER_LEASE,
                                    config.REAPER_LEASE_SECONDS)
        if token is None:
            logger.info("reaper lease held elsewhere, skipping this run")
            return None
    try:
        async with timeit("db.reap"):
            async with gated():
                async with sessions() as db:
                    async with db.begin():
                        result = await reap(db, max_age_minutes)
        if audit is None:
            audit = SqlAuditSink(sessions, gated)
        await record_all(audit, result.audit)
        return result.count
    finally:
        if token is not None:
            await release_lease(r, REAPER_LEASE, token)


def make_sender(http: Optional[httpx.AsyncClient]) -> NotificationSender:
    if config.NOTIFY_URL and http is not None:
        return HttpNotificationSender(http, config.NOTIFY_URL)
    return LogNotificationSender()


async def _run_reap(args) -> Dict[str, Optional[int]]:
    database = make_async_engine(args.database_url)
    r = None
    if args.redis_url:
        r = redis.from_url(args.redis_url, decode_responses=True,
                           socket_timeout=2.0, socket_connect_timeout=2.0)
    try:
        count = await reap_once(database.sessions, database.gated,
                                args.max_age_minutes, r=r)
    finally:
        if r is not None:
            await r.aclose()
        await database.engine.dispose()
    return {"cancelled": count, "skipped": count is None}


async def _run_outbox(args) -> Dict[str, int]:
    database = make_async_engine(args.database_url)
    async with httpx.AsyncClient(timeout=5.0) as http:
        try:
            return await deliver_due(database.sessions, make_sender(http),
                                     limit=args.limit)
        finally:
            await database.engine.dispose()


def main(argv=None):
    ap = argparse.ArgumentParser(description="BoxOffice scheduled jobs")
    ap.add_argument(
        "--database-url", default=config.DATABASE_URL,
        help="defaults to $DATABASE_URL"
    )
    sub = ap.add_subparsers(dest="job", required=True)

    p_reap = sub.add_parser("reap", help="cancel stale pending orders")
    p_reap.add_argument(
        "--max-age-minutes", type=int,
        default=config.STALE_ORDER_MAX_AGE_MINUTES,
    )
    p_reap.add_argument(
        "--redis-url", default=config.REDIS_URL,
        help="take a single-flight lease in redis (default: $REDIS_URL)"
    )

    p_out = sub.add_parser("deliver-outbox",
                           help="send due notifications")
    p_out.add_argument("--limit", type=int, default=config.OUTBOX_BATCH_SIZE)

    args = ap.parse_args(argv)
    if not args.database_url:
        ap.error("need --database-url or DATABASE_URL")

    setup_logging()
    if args.job == "reap":
        out = asyncio.run(_run_reap(args))
    else:
        out = asyncio.run(_run_outbox(args))
    print(orjson.dumps(out).decode(), flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
