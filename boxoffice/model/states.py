"""Closed status vocabularies for orders, payments, tickets and the outbox."""

from __future__ import annotations
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    FAILED = "failed"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


# orders whose lines count as committed demand at checkout time
COMMITTED_ORDER_STATUSES = (OrderStatus.PENDING.value, OrderStatus.PAID.value)


class PaymentStatus(str, Enum):
    """Provider payment states mapped into a closed local set."""

    CREATED = "created"
    OPEN = "open"
    PENDING = "pending"
    AUTHORIZED = "authorized"
    PAID = "paid"
    FAILED = "failed"
    CANCELED = "canceled"
    EXPIRED = "expired"
    REFUNDED = "refunded"

    @property
    def rank(self) -> int:
        return _PAYMENT_RANK[self]

    def can_advance_to(self, new: "PaymentStatus") -> bool:
        """A charge never moves back: a stale open/failed after paid, or
        paid after refunded, is ignored."""
        return new.rank >= self.rank

    @classmethod
    def from_provider(cls, raw: str | None) -> "PaymentStatus":
        # unknown provider states degrade to OPEN instead of failing
        value = (raw or "").strip().lower()
        if value == "cancelled":
            return cls.CANCELED
        try:
            return cls(value)
        except ValueError:
            return cls.OPEN


_PAYMENT_RANK = {
    PaymentStatus.CREATED: 0,
    PaymentStatus.OPEN: 0,
    PaymentStatus.PENDING: 0,
    PaymentStatus.AUTHORIZED: 1,
    # a late paid after a failure is still real money
    PaymentStatus.FAILED: 2,
    PaymentStatus.CANCELED: 2,
    PaymentStatus.EXPIRED: 2,
    PaymentStatus.PAID: 3,
    PaymentStatus.REFUNDED: 4,
}

# provider statuses that end a pending order without payment
FAILURE_STATUSES = frozenset({
    PaymentStatus.FAILED, PaymentStatus.EXPIRED, PaymentStatus.CANCELED,
})


class TicketStatus(str, Enum):
    ISSUED = "issued"
    CHECKED_IN = "checked_in"
    VOID = "void"


# ticket instances that occupy capacity
LIVE_TICKET_STATUSES = (TicketStatus.ISSUED.value, TicketStatus.CHECKED_IN.value)


class OutboxStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"
