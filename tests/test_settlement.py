"""Settlement state machine tests"""
from sqlalchemy import func, select, update

from boxoffice.errors import ErrorCode
from boxoffice.model import inventory, payments
from boxoffice.model.orm import OutboxMessage, TicketInstance, TicketType
from boxoffice.model.settlement import confirmation_key
from boxoffice.model.states import PaymentStatus
from boxoffice.model.webhook import replay


async def count(sessions, model, *where):
    async with sessions() as db:
        stmt = select(func.count()).select_from(model)
        if where:
            stmt = stmt.where(*where)
        return (await db.execute(stmt)).scalar_one()


async def tickets_of(sessions, order_id):
    async with sessions() as db:
        return (await db.execute(
            select(TicketInstance)
            .where(TicketInstance.order_id == order_id)
            .order_by(TicketInstance.order_line_id,
                      TicketInstance.sequence_no)
        )).scalars().all()


class TestPaid:
    """pending -> paid"""

    async def test_three_lines_of_two_issue_six_tickets_once(
            self, sessions, catalog, place_order, settle, load_order):
        placed = await place_order((catalog.ga, 2), (catalog.vip, 2),
                                   (catalog.free, 2))
        order_id = placed.order.id

        first = await settle(order_id, "paid")
        assert first.paid is True
        assert first.overbooked is False
        assert first.tickets_issued == 6
        assert first.notification_queued is True
        assert [a.action for a in first.audit] == ["order.paid"]

        second = await settle(order_id, "paid")
        assert second.paid is False
        assert second.tickets_issued == 0
        assert second.message == "Order already paid"
        assert second.to_dict()["tickets_issued"] == 0

        order = await load_order(order_id)
        assert order.status == "paid"
        assert order.paid_at is not None
        assert await count(sessions, TicketInstance) == 6
        assert await count(
            sessions, OutboxMessage,
            OutboxMessage.idempotency_key == confirmation_key(order_id),
        ) == 1

    async def test_ticket_numbering_and_tokens(self, sessions, catalog,
                                               place_order, settle):
        placed = await place_order((catalog.ga, 3), (catalog.vip, 1))
        await settle(placed.order.id, "paid")

        tickets = await tickets_of(sessions, placed.order.id)
        by_line = {}
        for t in tickets:
            by_line.setdefault(t.order_line_id, []).append(t.sequence_no)
        assert sorted(sorted(v) for v in by_line.values()) == [[1], [1, 2, 3]]
        tokens = {t.token for t in tickets}
        assert len(tokens) == 4
        assert all(len(tok) >= 40 for tok in tokens)
        assert {t.owner_ref for t in tickets} == {"fan@example.com"}

    async def test_payment_record_follows_callbacks(self, sessions, catalog,
                                                    place_order, settle):
        placed = await place_order((catalog.ga, 1))
        pid = placed.payment.provider_payment_id
        assert placed.payment.status == "open"

        await settle(placed.order.id, "paid", provider_payment_id=pid,
                     amount=2500, currency="eur")
        async with sessions() as db:
            payment = await payments.get_payment(db, "mockpay", pid)
        assert payment.status == "paid"

    async def test_stale_callbacks_never_move_payment_back(
            self, sessions, catalog, place_order, settle, load_order):
        placed = await place_order((catalog.ga, 1))
        pid = placed.payment.provider_payment_id
        await settle(placed.order.id, "paid", provider_payment_id=pid)

        for stale in ("failed", "open", "expired"):
            await settle(placed.order.id, stale, provider_payment_id=pid)

        async with sessions() as db:
            payment = await payments.get_payment(db, "mockpay", pid)
        assert payment.status == "paid"
        assert (await load_order(placed.order.id)).status == "paid"

        # replay reads the payment row, so it must still say paid
        async with sessions() as db:
            async with db.begin():
                again = await replay(db, placed.order.id)
        assert again.message == "Order already paid"
        assert again.tickets_issued == 0

    async def test_paid_after_failure_still_advances_payment(
            self, sessions, catalog, place_order, settle):
        placed = await place_order((catalog.ga, 1))
        pid = placed.payment.provider_payment_id
        await settle(placed.order.id, "failed", provider_payment_id=pid)
        late = await settle(placed.order.id, "paid", provider_payment_id=pid)
        assert late.refund_required is True

        async with sessions() as db:
            payment = await payments.get_payment(db, "mockpay", pid)
        assert payment.status == "paid"

    def test_payment_status_order(self):
        assert PaymentStatus.OPEN.can_advance_to(PaymentStatus.PAID)
        assert PaymentStatus.PAID.can_advance_to(PaymentStatus.REFUNDED)
        assert not PaymentStatus.PAID.can_advance_to(PaymentStatus.FAILED)
        assert not PaymentStatus.REFUNDED.can_advance_to(PaymentStatus.PAID)

    async def test_amount_mismatch_is_audited_not_blocking(
            self, catalog, place_order, settle):
        placed = await place_order((catalog.ga, 1))
        result = await settle(placed.order.id, "paid",
                              provider_payment_id="mock_x", amount=1,
                              currency="usd")
        assert result.paid is True
        assert "payment.amount_mismatch" in [a.action for a in result.audit]


class TestOverbooking:
    """Capacity is re-checked against issued tickets at payment time"""

    async def test_overbooked_order_is_cancelled_without_tickets(
            self, sessions, catalog, place_order, settle, load_order):
        placed = await place_order((catalog.ga, 1), (catalog.vip, 2))
        # capacity shrank after checkout
        async with sessions() as db:
            async with db.begin():
                await db.execute(update(TicketType)
                                 .where(TicketType.id == catalog.vip)
                                 .values(capacity=1))

        result = await settle(placed.order.id, "paid")
        assert result.paid is False
        assert result.overbooked is True
        assert result.refund_required is True
        assert result.tickets_issued == 0
        assert result.message == "Capacity exceeded. Order cancelled."
        body = result.to_dict()
        assert body["ticket_type"] == "VIP"
        assert body["available"] == 1
        assert body["requested"] == 2

        assert (await load_order(placed.order.id)).status == "cancelled"
        assert await count(sessions, TicketInstance) == 0
        assert await count(sessions, OutboxMessage) == 0

    async def test_second_paid_order_past_capacity_is_refused(
            self, sessions, catalog, place_order, settle):
        first = await place_order((catalog.vip, 2))
        # a stale pending order from before a capacity change
        async with sessions() as db:
            async with db.begin():
                await db.execute(update(TicketType)
                                 .where(TicketType.id == catalog.vip)
                                 .values(capacity=4))
        second = await place_order((catalog.vip, 2))
        async with sessions() as db:
            async with db.begin():
                await db.execute(update(TicketType)
                                 .where(TicketType.id == catalog.vip)
                                 .values(capacity=3))

        assert (await settle(first.order.id, "paid")).tickets_issued == 2
        late = await settle(second.order.id, "paid")
        assert late.overbooked is True

        async with sessions() as db:
            issued = await inventory.issued_ticket_count(db, catalog.vip)
        assert issued == 2


class TestFailures:
    """failed / expired / cancelled and other statuses"""

    async def test_failed_and_cancelled(self, catalog, place_order, settle,
                                        load_order):
        a = await place_order((catalog.ga, 1))
        b = await place_order((catalog.ga, 1))
        c = await place_order((catalog.ga, 1))

        assert (await settle(a.order.id, "failed")).cancelled is True
        await settle(b.order.id, "expired")
        await settle(c.order.id, "cancelled")

        assert (await load_order(a.order.id)).status == "failed"
        assert (await load_order(b.order.id)).status == "cancelled"
        assert (await load_order(c.order.id)).status == "cancelled"

    async def test_late_payment_does_not_resurrect(self, sessions, catalog,
                                                   place_order, settle,
                                                   load_order):
        placed = await place_order((catalog.ga, 2))
        await settle(placed.order.id, "canceled")

        late = await settle(placed.order.id, "paid")
        assert late.paid is False
        assert late.refund_required is True
        assert (await load_order(placed.order.id)).status == "cancelled"
        assert await count(sessions, TicketInstance) == 0

    async def test_failure_after_paid_is_ignored(self, catalog, place_order,
                                                 settle, load_order):
        placed = await place_order((catalog.ga, 1))
        await settle(placed.order.id, "paid")
        result = await settle(placed.order.id, "failed")
        assert result.message == "Order already paid"
        assert (await load_order(placed.order.id)).status == "paid"

    async def test_unknown_status_is_acknowledged(self, catalog, place_order,
                                                  settle, load_order):
        placed = await place_order((catalog.ga, 1))
        result = await settle(placed.order.id, "chargeback_pending")
        assert result.payment_status == "open"
        assert result.message == "Status open - no action required"
        assert (await load_order(placed.order.id)).status == "pending"

    async def test_unknown_order(self, catalog, settle):
        result = await settle("missing", "paid")
        assert result.error is ErrorCode.ORDER_NOT_FOUND
        assert result.to_dict()["error"] == "ORDER_NOT_FOUND"


class TestRefund:
    """paid -> refunded voids tickets"""

    async def test_refund_voids_tickets_and_frees_capacity(
            self, sessions, catalog, place_order, settle, load_order):
        placed = await place_order((catalog.vip, 2))
        await settle(placed.order.id, "paid")

        result = await settle(placed.order.id, "refunded")
        assert result.refunded is True
        assert result.tickets_voided == 2
        assert (await load_order(placed.order.id)).status == "refunded"

        tickets = await tickets_of(sessions, placed.order.id)
        assert {t.status for t in tickets} == {"void"}
        assert all(t.voided_at is not None for t in tickets)

        async with sessions() as db:
            assert await inventory.issued_ticket_count(db, catalog.vip) == 0

        again = await settle(placed.order.id, "refunded")
        assert again.tickets_voided == 0
