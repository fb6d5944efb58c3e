# model/outbox.py
"""
Notification outbox.

enqueue() writes the intent to notify inside the caller's transaction and is
keyed by an idempotency key, so a replayed settlement cannot queue the same
message twice. Delivery happens later, from deliver_due(), with exponential
backoff; the settlement path never waits for it.
"""

from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import httpx
from sqlalchemy import JSON, bindparam, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .orm import OutboxMessage
from .states import OutboxStatus
from .. import config
from ..helpers import new_id, now_ts

logger = logging.getLogger(__name__)


SQL_ENQUEUE = text("""
  INSERT INTO notification_outbox(
    id, org_id, recipient, template_key, payload, idempotency_key, status,
    attempt_count, max_attempts, next_attempt_at, created_at
  ) VALUES (
    :id, :org_id, :recipient, :template_key, :payload, :idempotency_key,
    'queued', 0, :max_attempts, :now, :now
  )
  ON CONFLICT (idempotency_key) DO NOTHING
  RETURNING id
""").bindparams(bindparam("payload", type_=JSON))


class NotificationOutbox(ABC):
    @abstractmethod
    async def enqueue(
        self, org_id: Optional[str], recipient: str, template_key: str,
        payload: Dict[str, Any], idempotency_key: str,
    ) -> bool:
        """True when queued now, False when the key was already present."""
        ...


class SqlOutbox(NotificationOutbox):
    def __init__(self, db: AsyncSession,
                 max_attempts: int = config.OUTBOX_MAX_ATTEMPTS) -> None:
        self.db = db
        self.max_attempts = max_attempts

    async def enqueue(self, org_id, recipient, template_key, payload,
                      idempotency_key) -> bool:
        row = (await self.db.execute(SQL_ENQUEUE, {
            "id": new_id(),
            "org_id": org_id,
            "recipient": recipient,
            "template_key": template_key,
            "payload": payload,
            "idempotency_key": idempotency_key,
            "max_attempts": self.max_attempts,
            "now": now_ts(),
        })).first()
        return row is not None


# ------------------------------------------------------------------------------
# Delivery
# ------------------------------------------------------------------------------

class NotificationSender(ABC):
    @abstractmethod
    async def send(self, message: Dict[str, Any]) -> None:
        """Raise on failure; the message is retried with backoff."""
        ...


class HttpNotificationSender(NotificationSender):
    """POSTs the message as JSON to a mail/notification relay."""

    def __init__(self, client: httpx.AsyncClient, url: str) -> None:
        self.client = client
        self.url = url

    async def send(self, message: Dict[str, Any]) -> None:
        r = await self.client.post(self.url, json=message)
        r.raise_for_status()


class LogNotificationSender(NotificationSender):
    """Development sender: no relay configured."""

    async def send(self, message: Dict[str, Any]) -> None:
        logger.info("notification %s -> %s (%s)", message["template_key"],
                    message["recipient"], message["idempotency_key"])


def backoff_delay(attempt_count: int,
                  initial: float = config.OUTBOX_INITIAL_DELAY_SECONDS,
                  multiplier: float = config.OUTBOX_BACKOFF_MULTIPLIER
                  ) -> float:
    return initial * (multiplier ** max(0, attempt_count - 1))


def _as_message(m: OutboxMessage) -> Dict[str, Any]:
    return {
        "id": m.id,
        "org_id": m.org_id,
        "recipient": m.recipient,
        "template_key": m.template_key,
        "payload": m.payload,
        "idempotency_key": m.idempotency_key,
        "attempt": m.attempt_count,
    }


async def claim_due(db: AsyncSession, limit: int, now: float,
                    lease_seconds: float) -> List[Dict[str, Any]]:
    """
    Claim up to `limit` due messages. Claimed rows are pushed into the future
    by `lease_seconds` so a concurrent worker skips them while we deliver
    outside of any transaction.
    """
    rows = (await db.execute(
        select(OutboxMessage)
        .where(OutboxMessage.status == OutboxStatus.QUEUED.value,
               OutboxMessage.next_attempt_at <= now)
        .order_by(OutboxMessage.next_attempt_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )).scalars().all()
    claimed = []
    for m in rows:
        m.attempt_count += 1
        m.next_attempt_at = now + lease_seconds
        claimed.append(_as_message(m))
    await db.flush()
    return claimed


async def mark_sent(db: AsyncSession, message_id: str, now: float) -> None:
    m = await db.get(OutboxMessage, message_id)
    m.status = OutboxStatus.SENT.value
    m.sent_at = now
    m.last_error = None


async def mark_failed(db: AsyncSession, message_id: str, error: str,
                      now: float) -> bool:
    """Reschedule with backoff; returns True when the message gave up."""
    m = await db.get(OutboxMessage, message_id)
    m.last_error = error[:500]
    if m.attempt_count >= m.max_attempts:
        m.status = OutboxStatus.FAILED.value
        return True
    m.next_attempt_at = now + backoff_delay(m.attempt_count)
    return False


async def deliver_due(
    sessions: async_sessionmaker,
    sender: NotificationSender,
    *,
    limit: int = config.OUTBOX_BATCH_SIZE,
    lease_seconds: float = 300.0,
    clock: Callable[[], float] = now_ts,
) -> Dict[str, int]:
    result = {"processed": 0, "sent": 0, "retrying": 0, "failed": 0}

    async with sessions() as db:
        async with db.begin():
            batch = await claim_due(db, limit, clock(), lease_seconds)

    for message in batch:
        result["processed"] += 1
        try:
            await sender.send(message)
        except Exception as e:
            logger.warning("outbox delivery failed for %s: %s",
                           message["id"], e)
            async with sessions() as db:
                async with db.begin():
                    gave_up = await mark_failed(db, message["id"], str(e),
                                                clock())
            result["failed" if gave_up else "retrying"] += 1
            continue
        async with sessions() as db:
            async with db.begin():
                await mark_sent(db, message["id"], clock())
        result["sent"] += 1

    return result
