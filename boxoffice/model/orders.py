# model/orders.py
"""Durable cart records: order header plus priced lines."""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .capacity import LineVerdict
from .orm import Event, Order, OrderLine, TicketInstance
from .states import OrderStatus
from ..helpers import new_id, now_ts, to_iso


# monotonic: anything not listed is refused
ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.FAILED,
    }),
    OrderStatus.PAID: frozenset({OrderStatus.REFUNDED}),
}


class InvalidTransition(ValueError):
    pass


async def get_event(db: AsyncSession, event_id: str) -> Optional[Event]:
    return await db.get(Event, event_id)


async def create_pending_order(
    db: AsyncSession,
    *,
    event: Event,
    email: str,
    verdicts: Sequence[LineVerdict],
    currency: str,
    user_ref: Optional[str] = None,
    discount: int = 0,
) -> Order:
    """
    Persist an accepted cart. Prices come from the validation verdicts, which
    read them under the unit locks; they are never looked up again.
    """
    if not verdicts or not all(v.ok for v in verdicts):
        raise ValueError("only fully accepted carts become orders")

    now = now_ts()
    subtotal = sum(v.line_total for v in verdicts)
    discount = max(0, min(int(discount), subtotal))
    order = Order(
        id=new_id(),
        event_id=event.id,
        org_id=event.org_id,
        email=email,
        user_ref=user_ref,
        status=OrderStatus.PENDING.value,
        currency=currency,
        subtotal=subtotal,
        discount=discount,
        total=subtotal - discount,
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    for v in sorted(verdicts, key=lambda v: v.index):
        db.add(OrderLine(
            id=new_id(),
            order_id=order.id,
            ticket_type_id=v.line.ticket_type_id,
            product_id=v.line.product_id,
            variant_id=v.line.variant_id,
            quantity=v.line.quantity,
            unit_price=v.unit_price,
            line_total=v.line_total,
        ))
    await db.flush()
    return order


async def get_order(db: AsyncSession, order_id: str) -> Optional[Order]:
    return await db.get(Order, order_id)


async def lock_order(db: AsyncSession, order_id: str) -> Optional[Order]:
    """Blocking FOR UPDATE: an order is only contended by its own callbacks
    and the reaper."""
    stmt = (
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalars().first()


async def get_lines(db: AsyncSession, order_id: str) -> List[OrderLine]:
    rows = await db.execute(
        select(OrderLine)
        .where(OrderLine.order_id == order_id)
        .order_by(OrderLine.id)
    )
    return list(rows.scalars().all())


def transition(order: Order, new_status: OrderStatus,
               now: Optional[float] = None) -> None:
    current = OrderStatus(order.status)
    if new_status not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(
            f"order {order.id}: {current.value} -> {new_status.value}"
        )
    ts = now_ts() if now is None else now
    order.status = new_status.value
    order.updated_at = ts
    if new_status is OrderStatus.PAID:
        order.paid_at = ts


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

def order_header(order: Order) -> Dict[str, Any]:
    return {
        "order_id": order.id,
        "event_id": order.event_id,
        "status": order.status,
        "email": order.email,
        "currency": order.currency,
        "subtotal": order.subtotal,
        "discount": order.discount,
        "total": order.total,
        "created_at": to_iso(order.created_at),
        "paid_at": to_iso(order.paid_at),
    }


async def order_view(db: AsyncSession, order_id: str) -> Optional[Dict[str, Any]]:
    order = await get_order(db, order_id)
    if order is None:
        return None
    lines = await get_lines(db, order_id)
    tickets = (await db.execute(
        select(TicketInstance)
        .where(TicketInstance.order_id == order_id)
        .order_by(TicketInstance.order_line_id, TicketInstance.sequence_no)
    )).scalars().all()

    out = order_header(order)
    out["lines"] = [{
        "id": ln.id,
        "ticket_type_id": ln.ticket_type_id,
        "product_id": ln.product_id,
        "variant_id": ln.variant_id,
        "quantity": ln.quantity,
        "unit_price": ln.unit_price,
        "line_total": ln.line_total,
    } for ln in lines]
    out["tickets"] = [{
        "id": t.id,
        "order_line_id": t.order_line_id,
        "ticket_type_id": t.ticket_type_id,
        "sequence_no": t.sequence_no,
        "status": t.status,
        "token": t.token,
    } for t in tickets]
    return out


async def list_recent_orders(
    db: AsyncSession, limit: int = 200, org_id: Optional[str] = None
) -> List[Dict[str, Any]]:
    stmt = select(Order).order_by(Order.created_at.desc()).limit(
        max(1, min(limit, 500))
    )
    if org_id is not None:
        stmt = stmt.where(Order.org_id == org_id)
    rows = (await db.execute(stmt)).scalars().all()
    return [order_header(o) for o in rows]
