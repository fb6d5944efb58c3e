# model/capacity.py
"""
Capacity validation for a proposed cart.

validate() runs inside the caller's transaction and performs no writes. Every
sellable unit it looks at is locked with FOR UPDATE SKIP LOCKED and the locks
stay held until the caller's transaction ends, so a concurrent validator
cannot slip in between two of this call's lock acquisitions.

Units are locked in a fixed order (ticket types by id, then products by id,
each variant right after its product) no matter how the cart is ordered.
Results are reported in the cart's order.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import inventory
from .orm import Product, ProductTicketRestriction, ProductVariant, TicketType
from ..errors import InvalidCartError
from ..helpers import now_ts


class RejectReason(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    SALES_NOT_STARTED = "SALES_NOT_STARTED"
    SALES_ENDED = "SALES_ENDED"
    INSUFFICIENT_CAPACITY = "INSUFFICIENT_CAPACITY"
    EXCEEDS_MAX_PER_ORDER = "EXCEEDS_MAX_PER_ORDER"
    RESTRICTED_UPGRADE = "RESTRICTED_UPGRADE"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    # exists, but a concurrent validation holds its lock; retryable
    UNIT_BUSY = "UNIT_BUSY"


UPGRADE_CATEGORY = "ticket_upgrade"


@dataclass(frozen=True)
class CartLine:
    """One requested item: a ticket type XOR a product (+ optional variant)."""

    quantity: int
    ticket_type_id: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.ticket_type_id is None) == (self.product_id is None):
            raise InvalidCartError(
                "each line needs exactly one of ticket_type_id or product_id"
            )
        if self.variant_id is not None and self.product_id is None:
            raise InvalidCartError("variant_id requires product_id")

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CartLine":
        if not isinstance(raw, dict):
            raise InvalidCartError("cart line must be an object")
        try:
            quantity = int(raw.get("quantity", 0))
        except (TypeError, ValueError):
            raise InvalidCartError("quantity must be an integer")
        return cls(
            quantity=quantity,
            ticket_type_id=raw.get("ticket_type_id") or None,
            product_id=raw.get("product_id") or None,
            variant_id=raw.get("variant_id") or None,
        )

    @property
    def is_ticket(self) -> bool:
        return self.ticket_type_id is not None

    @property
    def lock_key(self) -> Tuple[int, str, str]:
        if self.is_ticket:
            return (0, self.ticket_type_id, "")
        return (1, self.product_id, self.variant_id or "")


def parse_cart(raw_lines: Iterable[Dict[str, Any]]) -> List[CartLine]:
    lines = [CartLine.from_dict(r) for r in (raw_lines or [])]
    if not lines:
        raise InvalidCartError("cart is empty")
    return lines


@dataclass
class LineVerdict:
    index: int
    line: CartLine
    ok: bool = False
    reason: Optional[RejectReason] = None
    name: Optional[str] = None
    unit_price: Optional[int] = None
    capacity: Optional[int] = None
    committed: Optional[int] = None
    available: Optional[int] = None
    max_per_order: Optional[int] = None

    @property
    def line_total(self) -> int:
        if not self.ok or self.unit_price is None:
            return 0
        return self.unit_price * self.line.quantity

    def reject(self, reason: RejectReason) -> "LineVerdict":
        self.ok = False
        self.reason = reason
        return self

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "index": self.index,
            "ticket_type_id": self.line.ticket_type_id,
            "product_id": self.line.product_id,
            "variant_id": self.line.variant_id,
            "name": self.name,
            "requested": self.line.quantity,
            "status": "OK" if self.ok else "REJECTED",
            "reason": self.reason.value if self.reason else None,
            "available": self.available,
        }
        if self.ok:
            out["unit_price"] = self.unit_price
            out["line_total"] = self.line_total
        else:
            out["capacity"] = self.capacity
            out["committed"] = self.committed
            out["max_per_order"] = self.max_per_order
        return out


@dataclass
class ValidationResult:
    lines: List[LineVerdict] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return bool(self.lines) and all(v.ok for v in self.lines)

    @property
    def total_price(self) -> int:
        return sum(v.line_total for v in self.lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.accepted,
            "total_price": self.total_price,
            "lines": [v.to_dict() for v in self.lines],
        }


def _window_reason(unit, now: float) -> Optional[RejectReason]:
    if unit.sales_start is not None and now < unit.sales_start:
        return RejectReason.SALES_NOT_STARTED
    if unit.sales_end is not None and now > unit.sales_end:
        return RejectReason.SALES_ENDED
    return None


class CapacityValidator:
    """
    Pre-checkout gate. One instance per call: it remembers which units this
    transaction has already locked and how much of each the cart asks for.
    """

    def __init__(self, db: AsyncSession, event_id: str,
                 now: Optional[float] = None) -> None:
        self.db = db
        self.event_id = event_id
        self.now = now_ts() if now is None else now
        self._ticket_types: Dict[str, Optional[TicketType]] = {}
        self._products: Dict[str, Optional[Product]] = {}
        self._variants: Dict[str, Optional[ProductVariant]] = {}
        self._cart_demand: Dict[Tuple[str, str], int] = {}
        self._cart_ticket_types: set[str] = set()

    async def validate(self, lines: Sequence[CartLine]) -> ValidationResult:
        verdicts = [LineVerdict(index=i, line=ln) for i, ln in enumerate(lines)]
        ordered = sorted(verdicts, key=lambda v: v.line.lock_key)

        # ticket lines sort first, so the cart's ticket types are known
        # before any upgrade restriction is evaluated
        for verdict in ordered:
            if verdict.line.is_ticket:
                await self._check_ticket_line(verdict)
            else:
                await self._check_product_line(verdict)

        return ValidationResult(lines=verdicts)

    # --- locking -------------------------------------------------------------

    async def _ticket_type(self, ticket_type_id: str) -> Optional[TicketType]:
        if ticket_type_id not in self._ticket_types:
            self._ticket_types[ticket_type_id] = (
                await inventory.lock_ticket_type(
                    self.db, ticket_type_id, self.event_id, skip_locked=True
                )
            )
        return self._ticket_types[ticket_type_id]

    async def _product(self, product_id: str) -> Optional[Product]:
        if product_id not in self._products:
            self._products[product_id] = await inventory.lock_product(
                self.db, product_id, self.event_id, skip_locked=True
            )
        return self._products[product_id]

    async def _variant(self, variant_id: str,
                       product_id: str) -> Optional[ProductVariant]:
        if variant_id not in self._variants:
            self._variants[variant_id] = await inventory.lock_variant(
                self.db, variant_id, product_id, skip_locked=True
            )
        return self._variants[variant_id]

    async def _missing_reason(self, model, unit_id: str,
                              **filters) -> RejectReason:
        busy = await inventory.is_lockable_unit(self.db, model, unit_id,
                                                **filters)
        return RejectReason.UNIT_BUSY if busy else RejectReason.NOT_FOUND

    # --- per-line checks -----------------------------------------------------

    def _already_in_cart(self, kind: str, unit_id: str) -> int:
        return self._cart_demand.get((kind, unit_id), 0)

    def _take(self, kind: str, unit_id: str, qty: int) -> None:
        key = (kind, unit_id)
        self._cart_demand[key] = self._cart_demand.get(key, 0) + qty

    def _over_capacity(self, verdict: LineVerdict, capacity: Optional[int],
                       committed: int, in_cart: int) -> bool:
        available = inventory.available_units(capacity, committed + in_cart)
        verdict.capacity = capacity
        verdict.committed = committed
        verdict.available = available
        return available is not None and verdict.line.quantity > available

    async def _check_ticket_line(self, verdict: LineVerdict) -> None:
        line = verdict.line
        if line.quantity < 1:
            verdict.reject(RejectReason.INVALID_QUANTITY)
            return

        tt = await self._ticket_type(line.ticket_type_id)
        if tt is None:
            verdict.reject(await self._missing_reason(
                TicketType, line.ticket_type_id, event_id=self.event_id
            ))
            return

        self._cart_ticket_types.add(tt.id)
        verdict.name = tt.name

        window = _window_reason(tt, self.now)
        if window is not None:
            verdict.reject(window)
            return

        in_cart = self._already_in_cart("ticket", tt.id)
        if (tt.max_per_order is not None
                and in_cart + line.quantity > tt.max_per_order):
            verdict.max_per_order = tt.max_per_order
            verdict.reject(RejectReason.EXCEEDS_MAX_PER_ORDER)
            return

        committed = await inventory.committed_ticket_demand(self.db, tt.id)
        if self._over_capacity(verdict, tt.capacity, committed, in_cart):
            verdict.reject(RejectReason.INSUFFICIENT_CAPACITY)
            return

        self._take("ticket", tt.id, line.quantity)
        verdict.ok = True
        verdict.unit_price = tt.price

    async def _check_product_line(self, verdict: LineVerdict) -> None:
        line = verdict.line
        if line.quantity < 1:
            verdict.reject(RejectReason.INVALID_QUANTITY)
            return

        product = await self._product(line.product_id)
        if product is None:
            verdict.reject(await self._missing_reason(
                Product, line.product_id, event_id=self.event_id
            ))
            return

        verdict.name = product.name

        window = _window_reason(product, self.now)
        if window is not None:
            verdict.reject(window)
            return

        in_cart = self._already_in_cart("product", product.id)
        if (product.max_per_order is not None
                and in_cart + line.quantity > product.max_per_order):
            verdict.max_per_order = product.max_per_order
            verdict.reject(RejectReason.EXCEEDS_MAX_PER_ORDER)
            return

        if product.category == UPGRADE_CATEGORY:
            allowed = await self._upgrade_companions(product.id)
            if allowed and not (allowed & self._cart_ticket_types):
                verdict.reject(RejectReason.RESTRICTED_UPGRADE)
                return

        if product.capacity is not None:
            committed = await inventory.committed_product_demand(
                self.db, product.id
            )
            if self._over_capacity(verdict, product.capacity, committed,
                                   in_cart):
                verdict.reject(RejectReason.INSUFFICIENT_CAPACITY)
                return

        if line.variant_id is not None:
            variant = await self._variant(line.variant_id, product.id)
            if variant is None:
                verdict.reject(await self._missing_reason(
                    ProductVariant, line.variant_id, product_id=product.id
                ))
                return
            verdict.name = f"{product.name} ({variant.name})"
            if variant.capacity is not None:
                v_in_cart = self._already_in_cart("variant", variant.id)
                committed = await inventory.committed_variant_demand(
                    self.db, variant.id
                )
                if self._over_capacity(verdict, variant.capacity, committed,
                                       v_in_cart):
                    verdict.reject(RejectReason.INSUFFICIENT_CAPACITY)
                    return
            self._take("variant", variant.id, line.quantity)

        self._take("product", product.id, line.quantity)
        verdict.ok = True
        verdict.unit_price = product.price

    async def _upgrade_companions(self, product_id: str) -> set[str]:
        rows = (await self.db.execute(
            select(ProductTicketRestriction.ticket_type_id)
            .where(ProductTicketRestriction.product_id == product_id)
        )).all()
        return {r[0] for r in rows}


async def validate(db: AsyncSession, event_id: str,
                   lines: Sequence[CartLine],
                   now: Optional[float] = None) -> ValidationResult:
    """validate(eventId, lines[]) -> ValidationResult. Must run in a tx."""
    return await CapacityValidator(db, event_id, now=now).validate(lines)
