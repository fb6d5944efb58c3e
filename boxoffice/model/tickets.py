# model/tickets.py
"""
Ticket issuance.

(order_line_id, sequence_no) is unique, sequence_no runs 1..quantity. Issuing
inserts every sequence number with ON CONFLICT DO NOTHING, so re-running it
for a line that is already (partly) issued only fills the gaps.
"""

from __future__ import annotations
from typing import List, Optional

from sqlalchemy import select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from .orm import TicketInstance
from .states import TicketStatus
from ..helpers import new_id, new_ticket_token, now_ts


SQL_ISSUE_TICKET = text("""
  INSERT INTO ticket_instances(
    id, event_id, ticket_type_id, order_id, order_line_id, sequence_no,
    owner_ref, token, status, created_at
  ) VALUES (
    :id, :event_id, :ticket_type_id, :order_id, :order_line_id, :seq,
    :owner_ref, :token, 'issued', :created_at
  )
  ON CONFLICT (order_line_id, sequence_no) DO NOTHING
  RETURNING id
""")


async def issue(
    db: AsyncSession,
    order_line_id: str,
    ticket_type_id: str,
    quantity: int,
    event_id: str,
    owner_ref: Optional[str],
    *,
    order_id: str,
) -> int:
    """
    issue(orderLineId, ticketTypeId, quantity, eventId, ownerRef) -> count
    created by this call (0 on a pure replay).
    """
    if quantity < 1:
        raise ValueError("quantity must be >= 1")

    created = 0
    now = now_ts()
    for seq in range(1, quantity + 1):
        row = (await db.execute(SQL_ISSUE_TICKET, {
            "id": new_id(),
            "event_id": event_id,
            "ticket_type_id": ticket_type_id,
            "order_id": order_id,
            "order_line_id": order_line_id,
            "seq": seq,
            "owner_ref": owner_ref,
            "token": new_ticket_token(),
            "created_at": now,
        })).first()
        if row is not None:
            created += 1
    return created


async def tickets_for_order(db: AsyncSession,
                            order_id: str) -> List[TicketInstance]:
    rows = await db.execute(
        select(TicketInstance)
        .where(TicketInstance.order_id == order_id)
        .order_by(TicketInstance.order_line_id, TicketInstance.sequence_no)
    )
    return list(rows.scalars().all())


async def void_order_tickets(db: AsyncSession, order_id: str) -> int:
    """Refund path: issued tickets stop counting against capacity."""
    res = await db.execute(
        update(TicketInstance)
        .where(
            TicketInstance.order_id == order_id,
            TicketInstance.status == TicketStatus.ISSUED.value,
        )
        .values(status=TicketStatus.VOID.value, voided_at=now_ts())
        .execution_options(synchronize_session=False)
    )
    return int(res.rowcount or 0)
