from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from ..helpers import now_ts


Base = declarative_base()


# ----------------------------
# Catalog: events and sellable units
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    org_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    created_at = Column(Float, nullable=False, default=now_ts)


class TicketType(Base):
    __tablename__ = "ticket_types"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # cents
    # NULL = unlimited
    capacity = Column(Integer, nullable=True)
    max_per_order = Column(Integer, nullable=True)
    sales_start = Column(Float, nullable=True)
    sales_end = Column(Float, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("price >= 0", name="ticket_types_price_check"),
        CheckConstraint("capacity IS NULL OR capacity >= 0",
                        name="ticket_types_capacity_check"),
    )


class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    name = Column(String, nullable=False)
    # merchandise | ticket_upgrade | donation | ...
    category = Column(String, nullable=False, default="merchandise")
    price = Column(Integer, nullable=False)  # cents
    capacity = Column(Integer, nullable=True)
    max_per_order = Column(Integer, nullable=False, default=10)
    sales_start = Column(Float, nullable=True)
    sales_end = Column(Float, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("price >= 0", name="products_price_check"),
        CheckConstraint("capacity IS NULL OR capacity >= 0",
                        name="products_capacity_check"),
    )


class ProductVariant(Base):
    __tablename__ = "product_variants"
    id = Column(String, primary_key=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False,
                        index=True)
    name = Column(String, nullable=False)
    capacity = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class ProductTicketRestriction(Base):
    """An upgrade product may only be bought next to one of these types."""
    __tablename__ = "product_ticket_restrictions"
    product_id = Column(String, ForeignKey("products.id"), primary_key=True)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            primary_key=True)


# ----------------------------
# Orders
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    org_id = Column(String, nullable=False, index=True)
    email = Column(String, nullable=False)
    user_ref = Column(String, nullable=True)

    # pending | paid | cancelled | failed | refunded
    status = Column(String, nullable=False, default="pending")
    currency = Column(String, nullable=False, default="eur")
    subtotal = Column(Integer, nullable=False, default=0)  # cents
    discount = Column(Integer, nullable=False, default=0)  # cents
    total = Column(Integer, nullable=False, default=0)  # cents

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)

    __table_args__ = (
        CheckConstraint("total = subtotal - discount",
                        name="orders_total_check"),
        CheckConstraint("discount >= 0 AND discount <= subtotal",
                        name="orders_discount_check"),
        Index("orders_status_created_idx", "status", "created_at"),
    )


class OrderLine(Base):
    __tablename__ = "order_lines"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=True, index=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=True,
                        index=True)
    variant_id = Column(String, ForeignKey("product_variants.id"),
                        nullable=True, index=True)
    quantity = Column(Integer, nullable=False)
    # captured at checkout; never re-read from the catalog afterwards
    unit_price = Column(Integer, nullable=False)
    line_total = Column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="order_lines_quantity_check"),
        CheckConstraint(
            "(ticket_type_id IS NOT NULL AND product_id IS NULL "
            "AND variant_id IS NULL) OR "
            "(ticket_type_id IS NULL AND product_id IS NOT NULL)",
            name="order_lines_item_xor_check",
        ),
        CheckConstraint("line_total = unit_price * quantity",
                        name="order_lines_total_check"),
    )


# ----------------------------
# Payments
# ----------------------------
class Payment(Base):
    """Provider-side charge record, updated in place."""
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    provider = Column(String, nullable=False)
    provider_payment_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default="open")
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False, default="eur")
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "provider_payment_id",
                         name="payments_provider_payment_unique"),
    )


class PaymentEvent(Base):
    """One raw provider notification. Append-only."""
    __tablename__ = "payment_events"
    id = Column(String, primary_key=True)
    provider = Column(String, nullable=False)
    provider_event_id = Column(String, nullable=False)
    provider_payment_id = Column(String, nullable=True)
    event_type = Column(String, nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id",
                         name="payment_events_provider_event_unique"),
    )


# ----------------------------
# Tickets
# ----------------------------
class TicketInstance(Base):
    __tablename__ = "ticket_instances"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    order_line_id = Column(String, ForeignKey("order_lines.id"),
                           nullable=False)
    sequence_no = Column(Integer, nullable=False)
    owner_ref = Column(String, nullable=True)
    token = Column(String, nullable=False, unique=True)
    # issued | checked_in | void
    status = Column(String, nullable=False, default="issued")
    created_at = Column(Float, nullable=False)
    voided_at = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("order_line_id", "sequence_no",
                         name="ticket_instances_line_seq_unique"),
        CheckConstraint("sequence_no >= 1",
                        name="ticket_instances_seq_check"),
        Index("ticket_instances_type_status_idx", "ticket_type_id", "status"),
    )


# ----------------------------
# Collaborators: outbox and audit
# ----------------------------
class OutboxMessage(Base):
    __tablename__ = "notification_outbox"
    id = Column(String, primary_key=True)
    org_id = Column(String, nullable=True)
    recipient = Column(String, nullable=False)
    template_key = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    idempotency_key = Column(String, nullable=False, unique=True)

    # queued | sent | failed
    status = Column(String, nullable=False, default="queued")
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    next_attempt_at = Column(Float, nullable=False)
    last_error = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    sent_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("notification_outbox_due_idx", "status", "next_attempt_at"),
    )


class AuditEntry(Base):
    __tablename__ = "audit_log"
    id = Column(String, primary_key=True)
    org_id = Column(String, nullable=True, index=True)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=True)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("audit_log_entity_idx", "entity_type", "entity_id"),
    )
