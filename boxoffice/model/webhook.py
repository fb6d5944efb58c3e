# model/webhook.py
"""
Provider callback processing: gate first, then settle, one transaction.

The caller owns the transaction. If settlement raises, the admission row is
rolled back with everything else and the provider's retry runs the whole
thing again.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from . import orders, payments
from .audit import AuditRecord
from .outbox import NotificationOutbox
from .paymentevents import admit, event_key
from .settlement import SettlementResult, SettlementStateMachine
from .states import OrderStatus, PaymentStatus
from ..errors import ErrorCode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentCallback:
    provider: str
    provider_payment_id: str
    status: str
    order_id: Optional[str] = None
    provider_event_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_key(self) -> str:
        return event_key(self.provider_payment_id, self.status,
                         self.provider_event_id)


@dataclass
class WebhookOutcome:
    admitted: bool
    settlement: Optional[SettlementResult] = None

    @property
    def audit(self) -> List[AuditRecord]:
        if not self.admitted or self.settlement is None:
            return []
        return self.settlement.audit

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": True}
        if not self.admitted:
            out["idempotent"] = True
        if self.settlement is not None:
            out.update(self.settlement.to_dict())
        return out


async def _resolve_order_id(db: AsyncSession,
                            cb: PaymentCallback) -> Optional[str]:
    # the payment row we created at checkout is authoritative
    payment = await payments.get_payment(db, cb.provider,
                                         cb.provider_payment_id)
    if payment is None:
        return cb.order_id
    if cb.order_id and cb.order_id != payment.order_id:
        logger.warning("payment %s/%s belongs to order %s, callback says %s",
                       cb.provider, cb.provider_payment_id, payment.order_id,
                       cb.order_id)
    return payment.order_id


async def _already_processed(db: AsyncSession,
                             cb: PaymentCallback) -> SettlementResult:
    """Reply for a replayed event: same shape, nothing done."""
    order_id = await _resolve_order_id(db, cb)
    order = await orders.get_order(db, order_id) if order_id else None
    result = SettlementResult(
        order_id=order_id or "",
        payment_status=PaymentStatus.from_provider(cb.status).value,
        message="Event already processed",
    )
    if order is not None:
        result.order_status = order.status
        if OrderStatus(order.status).is_terminal:
            result.message = f"Order already {order.status}"
    return result


async def process_callback(
    db: AsyncSession,
    cb: PaymentCallback,
    outbox: Optional[NotificationOutbox] = None,
) -> WebhookOutcome:
    admission = await admit(
        db,
        cb.provider,
        cb.event_key,
        cb.payload,
        provider_payment_id=cb.provider_payment_id,
        event_type=cb.status,
    )
    if admission.duplicate:
        logger.info("duplicate payment event %s/%s ignored", cb.provider,
                    admission.provider_event_id)
        return WebhookOutcome(admitted=False,
                              settlement=await _already_processed(db, cb))

    order_id = await _resolve_order_id(db, cb)
    if order_id is None:
        result = SettlementResult(order_id="", error=ErrorCode.ORDER_NOT_FOUND,
                                  message="Order not found")
        logger.warning("payment %s/%s has no known order", cb.provider,
                       cb.provider_payment_id)
        return WebhookOutcome(admitted=True, settlement=result)

    machine = SettlementStateMachine(db, outbox=outbox, provider=cb.provider)
    result = await machine.settle(
        order_id,
        cb.status,
        provider_payment_id=cb.provider_payment_id,
        amount=cb.amount,
        currency=cb.currency,
    )
    return WebhookOutcome(admitted=True, settlement=result)


async def replay(
    db: AsyncSession,
    order_id: str,
    outbox: Optional[NotificationOutbox] = None,
) -> SettlementResult:
    """
    Run settlement again with the last status the provider reported for the
    order. Bypasses the event gate; settlement itself is idempotent.
    """
    payment = await payments.latest_payment(db, order_id)
    if payment is None:
        result = SettlementResult(order_id=order_id)
        order = await orders.get_order(db, order_id)
        if order is None:
            result.error = ErrorCode.ORDER_NOT_FOUND
            result.message = "Order not found"
        else:
            result.order_status = order.status
            result.message = "No payment on record"
        return result
    machine = SettlementStateMachine(db, outbox=outbox,
                                     provider=payment.provider)
    return await machine.settle(
        order_id,
        payment.status,
        provider_payment_id=payment.provider_payment_id,
        amount=payment.amount,
        currency=payment.currency,
    )
