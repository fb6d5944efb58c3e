"""Notification outbox tests"""
import httpx
import pytest
from sqlalchemy import select

from boxoffice.model.orm import OutboxMessage
from boxoffice.model.outbox import (
    HttpNotificationSender, NotificationSender, SqlOutbox, backoff_delay,
    deliver_due,
)


class RecordingSender(NotificationSender):
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send(self, message):
        if self.fail:
            raise RuntimeError("relay down")
        self.sent.append(message)


async def enqueue(sessions, key="order_confirmation:o1"):
    async with sessions() as db:
        async with db.begin():
            return await SqlOutbox(db).enqueue(
                "org-1", "fan@example.com", "order_confirmation",
                {"order_id": "o1"}, key,
            )


async def message(sessions, key="order_confirmation:o1"):
    async with sessions() as db:
        return (await db.execute(
            select(OutboxMessage).where(OutboxMessage.idempotency_key == key)
        )).scalars().one()


class TestEnqueue:
    """One message per idempotency key"""

    async def test_enqueue_is_keyed(self, sessions):
        assert await enqueue(sessions) is True
        assert await enqueue(sessions) is False
        m = await message(sessions)
        assert m.status == "queued"
        assert m.attempt_count == 0
        assert m.max_attempts == 3
        assert m.payload == {"order_id": "o1"}


class TestDelivery:
    """deliver_due() with backoff"""

    def test_backoff_delay(self):
        assert backoff_delay(1) == 60
        assert backoff_delay(2) == 120
        assert backoff_delay(3) == 240

    async def test_delivers_and_marks_sent(self, sessions):
        await enqueue(sessions)
        m = await message(sessions)
        sender = RecordingSender()

        out = await deliver_due(sessions, sender,
                                clock=lambda: m.next_attempt_at)
        assert out == {"processed": 1, "sent": 1, "retrying": 0, "failed": 0}
        assert sender.sent[0]["template_key"] == "order_confirmation"
        assert (await message(sessions)).status == "sent"

        again = await deliver_due(sessions, sender,
                                  clock=lambda: m.next_attempt_at + 10_000)
        assert again["processed"] == 0

    async def test_retries_with_backoff_then_gives_up(self, sessions):
        await enqueue(sessions)
        t0 = (await message(sessions)).next_attempt_at
        sender = RecordingSender(fail=True)

        first = await deliver_due(sessions, sender, clock=lambda: t0)
        assert first["retrying"] == 1
        m = await message(sessions)
        assert m.attempt_count == 1
        assert m.next_attempt_at == pytest.approx(t0 + 60)
        assert m.last_error == "relay down"

        # not due yet
        idle = await deliver_due(sessions, sender, clock=lambda: t0 + 30)
        assert idle["processed"] == 0

        second = await deliver_due(sessions, sender, clock=lambda: t0 + 60)
        assert second["retrying"] == 1
        assert (await message(sessions)).next_attempt_at == \
            pytest.approx(t0 + 60 + 120)

        third = await deliver_due(sessions, sender, clock=lambda: t0 + 180)
        assert third["failed"] == 1
        m = await message(sessions)
        assert m.status == "failed"
        assert m.attempt_count == 3

        after = await deliver_due(sessions, sender, clock=lambda: t0 + 10_000)
        assert after["processed"] == 0

    async def test_http_sender(self, sessions):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202)

        async with httpx.AsyncClient(
                transport=httpx.MockTransport(handler)) as http:
            sender = HttpNotificationSender(http, "http://relay/notify")
            await enqueue(sessions)
            t0 = (await message(sessions)).next_attempt_at
            out = await deliver_due(sessions, sender, clock=lambda: t0)

        assert out["sent"] == 1
        assert seen[0].url == "http://relay/notify"
        assert b"order_confirmation" in seen[0].content

    async def test_http_sender_error_is_retried(self, sessions):
        async with httpx.AsyncClient(transport=httpx.MockTransport(
                lambda request: httpx.Response(503))) as http:
            sender = HttpNotificationSender(http, "http://relay/notify")
            await enqueue(sessions)
            t0 = (await message(sessions)).next_attempt_at
            out = await deliver_due(sessions, sender, clock=lambda: t0)
        assert out["retrying"] == 1
