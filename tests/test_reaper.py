"""Stale order reaper tests"""

from boxoffice.infra.lease import acquire_lease, k_lease
from boxoffice.jobs import REAPER_LEASE, reap_once
from boxoffice.model.audit import MemoryAuditSink
from boxoffice.model.reaper import reap


async def run_reap(sessions, now, max_age_minutes=60):
    async with sessions() as db:
        async with db.begin():
            return await reap(db, max_age_minutes, now=now)


class TestReap:
    """reap(maxAgeMinutes)"""

    async def test_cancels_only_stale_pending_orders(
            self, sessions, catalog, place_order, settle, load_order):
        stale = await place_order((catalog.ga, 1))
        paid = await place_order((catalog.ga, 1))
        await settle(paid.order.id, "paid")

        later = stale.order.created_at + 61 * 60
        result = await run_reap(sessions, later)

        assert result.count == 1
        assert result.cancelled == [stale.order.id]
        assert [a.action for a in result.audit] == ["order.expired"]
        assert (await load_order(stale.order.id)).status == "cancelled"
        assert (await load_order(paid.order.id)).status == "paid"

    async def test_young_orders_survive(self, sessions, catalog,
                                        place_order, load_order):
        placed = await place_order((catalog.ga, 1))
        result = await run_reap(sessions, placed.order.created_at + 59 * 60)
        assert result.count == 0
        assert (await load_order(placed.order.id)).status == "pending"

    async def test_reaped_order_releases_capacity_and_refuses_late_payment(
            self, sessions, catalog, place_order, settle):
        placed = await place_order((catalog.vip, 2))
        await run_reap(sessions, placed.order.created_at + 3600 + 1)

        again = await place_order((catalog.vip, 2))
        assert again.accepted

        late = await settle(placed.order.id, "paid")
        assert late.refund_required is True
        assert late.tickets_issued == 0


class TestReapOnce:
    """Job wrapper: lease + audit"""

    async def test_skips_when_lease_is_held(self, sessions, gated,
                                            fake_redis):
        assert await acquire_lease(fake_redis, REAPER_LEASE, 60)
        assert await reap_once(sessions, gated, r=fake_redis) is None

    async def test_runs_and_releases_lease(self, sessions, gated, catalog,
                                           place_order, fake_redis):
        await place_order((catalog.ga, 1))
        audit = MemoryAuditSink()

        # max age 0: everything pending is stale
        count = await reap_once(sessions, gated, 0, r=fake_redis, audit=audit)
        assert count == 1
        assert [r.action for r in audit.records] == ["order.expired"]
        assert await fake_redis.get(k_lease(REAPER_LEASE)) is None

    async def test_without_redis(self, sessions, gated, catalog):
        assert await reap_once(sessions, gated, audit=MemoryAuditSink()) == 0
