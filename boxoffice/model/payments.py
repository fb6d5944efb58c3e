# model/payments.py
"""Provider charge records, keyed by (provider, provider_payment_id)."""

from __future__ import annotations
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .orm import Order, Payment
from .states import PaymentStatus
from ..helpers import new_id, now_ts

logger = logging.getLogger(__name__)


async def create_payment(
    db: AsyncSession, order: Order, provider: str, provider_payment_id: str
) -> Payment:
    now = now_ts()
    payment = Payment(
        id=new_id(),
        order_id=order.id,
        provider=provider,
        provider_payment_id=provider_payment_id,
        status=PaymentStatus.OPEN.value,
        amount=order.total,
        currency=order.currency,
        created_at=now,
        updated_at=now,
    )
    db.add(payment)
    await db.flush()
    return payment


async def get_payment(
    db: AsyncSession, provider: str, provider_payment_id: str
) -> Optional[Payment]:
    stmt = select(Payment).where(
        Payment.provider == provider,
        Payment.provider_payment_id == provider_payment_id,
    )
    return (await db.execute(stmt)).scalars().first()


async def record_status(
    db: AsyncSession,
    *,
    order_id: str,
    provider: str,
    provider_payment_id: str,
    status: PaymentStatus,
    amount: Optional[int],
    currency: Optional[str],
) -> Payment:
    """Update the charge in place; create it when the provider knows it
    before we do. Out-of-order callbacks never move it backwards."""
    payment = await get_payment(db, provider, provider_payment_id)
    now = now_ts()
    if payment is None:
        payment = Payment(
            id=new_id(),
            order_id=order_id,
            provider=provider,
            provider_payment_id=provider_payment_id,
            amount=int(amount or 0),
            currency=(currency or "eur").lower(),
            created_at=now,
        )
        db.add(payment)
    elif not PaymentStatus(payment.status).can_advance_to(status):
        logger.info("stale %s for payment %s/%s ignored (is %s)",
                    status.value, provider, provider_payment_id,
                    payment.status)
        return payment
    payment.status = status.value
    payment.updated_at = now
    await db.flush()
    return payment


async def latest_payment(db: AsyncSession, order_id: str) -> Optional[Payment]:
    stmt = (
        select(Payment)
        .where(Payment.order_id == order_id)
        .order_by(Payment.updated_at.desc())
        .limit(1)
    )
    return (await db.execute(stmt)).scalars().first()
