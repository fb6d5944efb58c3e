# model/settlement.py
"""
Settlement state machine.

Consumes one provider status callback for an order and moves the order (and
its payment record) forward:

  order:   pending -> paid -> refunded
           pending -> cancelled | failed

Terminal states are sinks: a replayed or late signal is acknowledged and
changes nothing. On "paid" the ticket capacity is checked again under the
ticket type locks against the tickets actually issued so far. If the order no
longer fits, the overbooking failsafe cancels it, issues nothing and reports
that a refund is required.

Everything runs inside the caller's transaction. Locks: the order row first
(blocking), then ticket types in id order (blocking). Units before order
would be the textbook order; this one cannot deadlock because checkout and
the reaper only ever take their locks with SKIP LOCKED and never wait.

Nothing here talks to the network; the confirmation goes through the outbox
and audit records are returned for the caller to write after commit.
"""

from __future__ import annotations
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from . import inventory, orders, payments, tickets
from .audit import AuditRecord
from .orm import Order, OrderLine
from .outbox import NotificationOutbox, SqlOutbox
from .states import FAILURE_STATUSES, OrderStatus, PaymentStatus
from ..errors import ErrorCode
from ..helpers import now_ts

logger = logging.getLogger(__name__)

CONFIRMATION_TEMPLATE = "order_confirmation"


def confirmation_key(order_id: str) -> str:
    return f"{CONFIRMATION_TEMPLATE}:{order_id}"


@dataclass
class Overbooking:
    ticket_type_id: str
    ticket_type: str
    capacity: int
    issued: int
    available: int
    requested: int


@dataclass
class SettlementResult:
    order_id: str
    paid: bool = False
    overbooked: bool = False
    cancelled: bool = False
    refunded: bool = False
    refund_required: bool = False
    tickets_issued: int = 0
    tickets_voided: int = 0
    notification_queued: bool = False
    order_status: Optional[str] = None
    payment_status: Optional[str] = None
    message: str = ""
    error: Optional[ErrorCode] = None
    overbooking: Optional[Overbooking] = None
    audit: List[AuditRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "order_id": self.order_id,
            "paid": self.paid,
            "overbooked": self.overbooked,
            "tickets_issued": self.tickets_issued,
            "message": self.message,
            "order_status": self.order_status,
            "payment_status": self.payment_status,
        }
        if self.cancelled:
            out["cancelled"] = True
        if self.refunded:
            out["refunded"] = True
            out["tickets_voided"] = self.tickets_voided
        if self.refund_required:
            out["refund_required"] = True
        if self.notification_queued:
            out["notification_queued"] = True
        if self.error is not None:
            out["error"] = self.error.value
        if self.overbooking is not None:
            ob = self.overbooking
            out.update({
                "ticket_type": ob.ticket_type,
                "available": ob.available,
                "requested": ob.requested,
            })
        return out


class SettlementStateMachine:
    def __init__(self, db: AsyncSession,
                 outbox: Optional[NotificationOutbox] = None,
                 provider: str = "mockpay") -> None:
        self.db = db
        self.outbox = outbox if outbox is not None else SqlOutbox(db)
        self.provider = provider

    async def settle(
        self,
        order_id: str,
        status: str,
        *,
        provider_payment_id: Optional[str] = None,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
    ) -> SettlementResult:
        pstatus = PaymentStatus.from_provider(status)
        result = SettlementResult(order_id=order_id,
                                  payment_status=pstatus.value)

        order = await orders.lock_order(self.db, order_id)
        if order is None:
            result.error = ErrorCode.ORDER_NOT_FOUND
            result.message = "Order not found"
            return result

        if provider_payment_id:
            await payments.record_status(
                self.db,
                order_id=order.id,
                provider=self.provider,
                provider_payment_id=provider_payment_id,
                status=pstatus,
                amount=amount,
                currency=currency,
            )

        current = OrderStatus(order.status)
        if pstatus is PaymentStatus.PAID:
            await self._on_paid(order, current, result, amount, currency)
        elif pstatus in FAILURE_STATUSES:
            self._on_failure(order, current, pstatus, result)
        elif pstatus is PaymentStatus.REFUNDED:
            await self._on_refunded(order, current, result)
        else:
            result.message = f"Status {pstatus.value} - no action required"

        result.order_status = order.status
        return result

    # --- paid ----------------------------------------------------------------

    async def _on_paid(self, order: Order, current: OrderStatus,
                       result: SettlementResult, amount: Optional[int],
                       currency: Optional[str]) -> None:
        if current is OrderStatus.PAID:
            result.message = "Order already paid"
            return
        if current is OrderStatus.REFUNDED:
            result.message = "Order already refunded"
            return
        if current is not OrderStatus.PENDING:
            # cancelled by the reaper or a failure callback before the money
            # arrived; sinks do not reopen
            result.refund_required = True
            result.message = (
                f"Order is {current.value}; payment must be refunded"
            )
            result.audit.append(self._audit(order, "order.late_payment",
                                            {"order_status": current.value}))
            logger.warning("late payment for %s order %s", current.value,
                           order.id)
            return

        self._check_amount(order, amount, currency, result)

        lines = await orders.get_lines(self.db, order.id)
        ticket_lines = [ln for ln in lines if ln.ticket_type_id is not None]

        overbooking = await self._recheck_capacity(ticket_lines)
        if overbooking is not None:
            orders.transition(order, OrderStatus.CANCELLED)
            result.overbooked = True
            result.cancelled = True
            result.refund_required = True
            result.overbooking = overbooking
            result.message = "Capacity exceeded. Order cancelled."
            result.audit.append(self._audit(order, "order.overbooked", {
                "ticket_type_id": overbooking.ticket_type_id,
                "available": overbooking.available,
                "requested": overbooking.requested,
            }))
            logger.warning(
                "OVERBOOKED: order %s cancelled, refund required "
                "(%s: available=%s requested=%s)", order.id,
                overbooking.ticket_type, overbooking.available,
                overbooking.requested,
            )
            return

        now = now_ts()
        orders.transition(order, OrderStatus.PAID, now)
        await self.db.flush()

        issued = 0
        owner_ref = order.user_ref or order.email
        for line in ticket_lines:
            issued += await tickets.issue(
                self.db, line.id, line.ticket_type_id, line.quantity,
                order.event_id, owner_ref, order_id=order.id,
            )

        result.paid = True
        result.tickets_issued = issued
        result.notification_queued = await self.outbox.enqueue(
            order.org_id,
            order.email,
            CONFIRMATION_TEMPLATE,
            {
                "order_id": order.id,
                "event_id": order.event_id,
                "total": order.total,
                "currency": order.currency,
                "tickets_issued": issued,
            },
            confirmation_key(order.id),
        )
        result.message = "Order paid"
        result.audit.append(self._audit(order, "order.paid", {
            "tickets_issued": issued,
            "total": order.total,
        }))
        logger.info("order %s PAID, %d tickets issued", order.id, issued)

    async def _recheck_capacity(
        self, ticket_lines: List[OrderLine]
    ) -> Optional[Overbooking]:
        """Authoritative check against issued tickets, under lock."""
        demand: "OrderedDict[str, int]" = OrderedDict()
        for ln in sorted(ticket_lines, key=lambda ln: ln.ticket_type_id):
            demand[ln.ticket_type_id] = (
                demand.get(ln.ticket_type_id, 0) + ln.quantity
            )

        for ticket_type_id, requested in demand.items():
            tt = await inventory.lock_ticket_type(
                self.db, ticket_type_id, skip_locked=False, active_only=False
            )
            if tt is None or tt.capacity is None:
                continue
            issued = await inventory.issued_ticket_count(self.db,
                                                         ticket_type_id)
            available = tt.capacity - issued
            if requested > available:
                return Overbooking(
                    ticket_type_id=ticket_type_id,
                    ticket_type=tt.name,
                    capacity=tt.capacity,
                    issued=issued,
                    available=available,
                    requested=requested,
                )
        return None

    def _check_amount(self, order: Order, amount: Optional[int],
                      currency: Optional[str],
                      result: SettlementResult) -> None:
        mismatch = (
            (amount is not None and int(amount) != order.total)
            or (currency is not None
                and currency.lower() != order.currency.lower())
        )
        if not mismatch:
            return
        logger.warning("payment amount mismatch for order %s: got %s %s, "
                       "expected %s %s", order.id, amount, currency,
                       order.total, order.currency)
        result.audit.append(self._audit(order, "payment.amount_mismatch", {
            "amount": amount,
            "currency": currency,
            "expected_amount": order.total,
            "expected_currency": order.currency,
        }))

    # --- failed / cancelled / expired ----------------------------------------

    def _on_failure(self, order: Order, current: OrderStatus,
                    pstatus: PaymentStatus, result: SettlementResult) -> None:
        if current.is_terminal:
            result.message = f"Order already {current.value}"
            return
        # committed demand only counts pending+paid orders, so flipping the
        # status is the whole release
        target = (OrderStatus.FAILED if pstatus is PaymentStatus.FAILED
                  else OrderStatus.CANCELLED)
        orders.transition(order, target)
        result.cancelled = True
        result.message = f"Order {target.value} ({pstatus.value})"
        result.audit.append(self._audit(order, f"order.{target.value}",
                                        {"reason": pstatus.value}))
        logger.info("order %s %s (%s)", order.id, target.value,
                    pstatus.value)

    # --- refunded ------------------------------------------------------------

    async def _on_refunded(self, order: Order, current: OrderStatus,
                           result: SettlementResult) -> None:
        if current is not OrderStatus.PAID:
            result.message = f"Order is {current.value} - no refund action"
            return
        orders.transition(order, OrderStatus.REFUNDED)
        await self.db.flush()
        voided = await tickets.void_order_tickets(self.db, order.id)
        result.refunded = True
        result.tickets_voided = voided
        result.message = "Order refunded"
        result.audit.append(self._audit(order, "order.refunded",
                                        {"tickets_voided": voided}))
        logger.info("order %s REFUNDED, %d tickets voided", order.id, voided)

    def _audit(self, order: Order, action: str,
               metadata: Dict[str, Any]) -> AuditRecord:
        return AuditRecord(
            org_id=order.org_id,
            action=action,
            entity_type="order",
            entity_id=order.id,
            metadata=metadata,
        )
