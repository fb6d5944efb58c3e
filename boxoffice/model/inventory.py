# model/inventory.py
"""
Inventory ledger over the catalog tables.

There is no stored "sold" counter. Every number here is derived from source
rows, and every capacity decision re-derives it while holding the unit's row
lock:
- committed demand = sum(order_lines.quantity) over pending+paid orders
- issued count     = count(ticket_instances) in issued/checked_in
- available        = capacity - committed (capacity NULL = unlimited)
"""

from __future__ import annotations
from typing import Any, Dict, Optional, Type

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .orm import (
    Order, OrderLine, Product, ProductVariant, TicketInstance, TicketType,
)
from .states import COMMITTED_ORDER_STATUSES, LIVE_TICKET_STATUSES
from ..helpers import now_ts, to_iso


# ------------------------------------------------------------------------------
# Row locks
# ------------------------------------------------------------------------------

async def lock_ticket_type(
    db: AsyncSession, ticket_type_id: str, event_id: str | None = None,
    *, skip_locked: bool = True, active_only: bool = True,
) -> Optional[TicketType]:
    """
    SELECT ... FOR UPDATE [SKIP LOCKED] on a ticket type.
    Returns None when missing, inactive (active_only), in another event, or
    (skip_locked) held by a concurrent transaction.
    """
    stmt = select(TicketType).where(TicketType.id == ticket_type_id)
    if active_only:
        stmt = stmt.where(TicketType.is_active.is_(True))
    if event_id is not None:
        stmt = stmt.where(TicketType.event_id == event_id)
    stmt = stmt.with_for_update(skip_locked=skip_locked)
    return (await db.execute(stmt)).scalars().first()


async def lock_product(
    db: AsyncSession, product_id: str, event_id: str,
    *, skip_locked: bool = True,
) -> Optional[Product]:
    stmt = select(Product).where(
        Product.id == product_id,
        Product.event_id == event_id,
        Product.is_active.is_(True),
    ).with_for_update(skip_locked=skip_locked)
    return (await db.execute(stmt)).scalars().first()


async def lock_variant(
    db: AsyncSession, variant_id: str, product_id: str,
    *, skip_locked: bool = True,
) -> Optional[ProductVariant]:
    stmt = select(ProductVariant).where(
        ProductVariant.id == variant_id,
        ProductVariant.product_id == product_id,
        ProductVariant.is_active.is_(True),
    ).with_for_update(skip_locked=skip_locked)
    return (await db.execute(stmt)).scalars().first()


async def is_lockable_unit(
    db: AsyncSession, model: Type[Any], unit_id: str, **filters: Any
) -> bool:
    """
    Plain (non-locking) lookup used after a skip-locked miss to tell
    "does not exist / inactive" apart from "busy right now".
    """
    stmt = select(model.id).where(model.id == unit_id,
                                  model.is_active.is_(True))
    for col, value in filters.items():
        stmt = stmt.where(getattr(model, col) == value)
    return (await db.execute(stmt)).first() is not None


# ------------------------------------------------------------------------------
# Derived counts
# ------------------------------------------------------------------------------

async def _committed_line_quantity(db: AsyncSession, column, unit_id) -> int:
    stmt = (
        select(func.coalesce(func.sum(OrderLine.quantity), 0))
        .select_from(OrderLine)
        .join(Order, Order.id == OrderLine.order_id)
        .where(column == unit_id,
               Order.status.in_(COMMITTED_ORDER_STATUSES))
    )
    return int((await db.execute(stmt)).scalar_one())


async def committed_ticket_demand(db: AsyncSession,
                                  ticket_type_id: str) -> int:
    return await _committed_line_quantity(
        db, OrderLine.ticket_type_id, ticket_type_id
    )


async def committed_product_demand(db: AsyncSession, product_id: str) -> int:
    return await _committed_line_quantity(db, OrderLine.product_id,
                                          product_id)


async def committed_variant_demand(db: AsyncSession, variant_id: str) -> int:
    return await _committed_line_quantity(db, OrderLine.variant_id,
                                          variant_id)


async def issued_ticket_count(db: AsyncSession, ticket_type_id: str) -> int:
    stmt = select(func.count(TicketInstance.id)).where(
        TicketInstance.ticket_type_id == ticket_type_id,
        TicketInstance.status.in_(LIVE_TICKET_STATUSES),
    )
    return int((await db.execute(stmt)).scalar_one())


def available_units(capacity: Optional[int], committed: int) -> Optional[int]:
    """None means unlimited."""
    if capacity is None:
        return None
    return capacity - committed


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

async def compute_inventory(db: AsyncSession, event_id: str) -> Dict[str, Any]:
    """
    Returns:
      {
        "event_id": ...,
        "ticket_types": [{ "id", "name", "capacity", "committed", "issued",
                           "available", "sold_out" }, ...],
        "products": [{ "id", "name", "capacity", "committed", "available",
                       "sold_out", "variants": [...] }, ...],
        "timestamp": ...
      }
    No locks: this is a dashboard read, not a capacity decision.
    """
    ticket_types = (await db.execute(
        select(TicketType)
        .where(TicketType.event_id == event_id)
        .order_by(TicketType.sort_order, TicketType.id)
    )).scalars().all()

    tt_out = []
    for tt in ticket_types:
        committed = await committed_ticket_demand(db, tt.id)
        issued = await issued_ticket_count(db, tt.id)
        available = available_units(tt.capacity, committed)
        tt_out.append({
            "id": tt.id,
            "name": tt.name,
            "capacity": tt.capacity,
            "committed": committed,
            "issued": issued,
            "available": available,
            "sold_out": available is not None and available <= 0,
            "is_active": tt.is_active,
        })

    products = (await db.execute(
        select(Product).where(Product.event_id == event_id)
        .order_by(Product.name, Product.id)
    )).scalars().all()

    p_out = []
    for p in products:
        committed = await committed_product_demand(db, p.id)
        available = available_units(p.capacity, committed)
        variants = (await db.execute(
            select(ProductVariant)
            .where(ProductVariant.product_id == p.id)
            .order_by(ProductVariant.name, ProductVariant.id)
        )).scalars().all()
        v_out = []
        for v in variants:
            v_committed = await committed_variant_demand(db, v.id)
            v_available = available_units(v.capacity, v_committed)
            v_out.append({
                "id": v.id,
                "name": v.name,
                "capacity": v.capacity,
                "committed": v_committed,
                "available": v_available,
                "sold_out": v_available is not None and v_available <= 0,
            })
        p_out.append({
            "id": p.id,
            "name": p.name,
            "category": p.category,
            "capacity": p.capacity,
            "committed": committed,
            "available": available,
            "sold_out": available is not None and available <= 0,
            "variants": v_out,
        })

    return {
        "event_id": event_id,
        "ticket_types": tt_out,
        "products": p_out,
        "timestamp": to_iso(now_ts()),
    }
