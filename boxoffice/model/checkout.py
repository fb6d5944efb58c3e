# model/checkout.py
"""
Checkout: validate a cart and, only when every line is accepted, turn it into
a pending order with an open payment.

All of it runs in the caller's transaction, so the unit locks taken by the
validator are still held when the order lines are inserted.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from . import capacity, orders, payments
from .capacity import CartLine, ValidationResult
from .orm import Order, Payment
from .. import config
from ..errors import EventNotFoundError

if TYPE_CHECKING:
    from ..mockpay import PaymentAdapter


@dataclass
class CheckoutOutcome:
    validation: ValidationResult
    order: Optional[Order] = None
    payment: Optional[Payment] = None
    redirect_url: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.order is not None

    def to_dict(self) -> Dict[str, Any]:
        out = self.validation.to_dict()
        if self.order is not None:
            out.update({
                "order_id": self.order.id,
                "amount": self.order.total,
                "currency": self.order.currency,
                "payment_id": self.payment.provider_payment_id,
                "redirect_url": self.redirect_url,
            })
        return out


async def checkout(
    db: AsyncSession,
    adapter: "PaymentAdapter",
    *,
    event_id: str,
    email: str,
    lines: Sequence[CartLine],
    user_ref: Optional[str] = None,
    currency: str = config.DEFAULT_CURRENCY,
) -> CheckoutOutcome:
    event = await orders.get_event(db, event_id)
    if event is None:
        raise EventNotFoundError(event_id)

    result = await capacity.validate(db, event_id, lines)
    if not result.accepted:
        return CheckoutOutcome(validation=result)

    order = await orders.create_pending_order(
        db,
        event=event,
        email=email,
        verdicts=result.lines,
        currency=currency,
        user_ref=user_ref,
    )
    session = adapter.create_session_id_and_url()
    payment = await payments.create_payment(db, order, adapter.name,
                                            session["payment_id"])
    return CheckoutOutcome(
        validation=result,
        order=order,
        payment=payment,
        redirect_url=session["redirect_url"],
    )
