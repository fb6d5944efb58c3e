# model/reaper.py
"""Cancels pending orders nobody paid for, releasing their committed demand."""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import orders
from .audit import AuditRecord
from .orm import Order
from .states import OrderStatus
from .. import config
from ..helpers import now_ts

logger = logging.getLogger(__name__)


@dataclass
class ReapResult:
    cancelled: List[str] = field(default_factory=list)
    audit: List[AuditRecord] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.cancelled)


async def reap(
    db: AsyncSession,
    max_age_minutes: int = config.STALE_ORDER_MAX_AGE_MINUTES,
    *,
    now: Optional[float] = None,
    limit: int = 500,
) -> ReapResult:
    """
    Orders whose lock is held right now are being settled; they are skipped
    and picked up by the next sweep if still pending.
    """
    now = now_ts() if now is None else now
    cutoff = now - max_age_minutes * 60

    stale = (await db.execute(
        select(Order)
        .where(Order.status == OrderStatus.PENDING.value,
               Order.created_at < cutoff)
        .order_by(Order.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )).scalars().all()

    result = ReapResult()
    for order in stale:
        if order.status != OrderStatus.PENDING.value:
            continue
        orders.transition(order, OrderStatus.CANCELLED, now)
        result.cancelled.append(order.id)
        result.audit.append(AuditRecord(
            org_id=order.org_id,
            action="order.expired",
            entity_type="order",
            entity_id=order.id,
            metadata={"age_seconds": int(now - order.created_at)},
        ))

    if result.cancelled:
        await db.flush()
        logger.info("reaper cancelled %d stale pending orders", result.count)
    return result
