from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=True)
    # draft | published | cancelled
    status = Column(String, nullable=False, default="published")
    currency = Column(String, nullable=False, default="usd")


class TicketTier(Base):
    __tablename__ = "ticket_tiers"
    id = Column(String, primary_key=True)
    event_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    price_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="usd")
    quantity_available = Column(Integer, nullable=True)  # NULL = unlimited
    quantity_sold = Column(Integer, nullable=False, default=0)
    sales_start = Column(Float, nullable=True)
    sales_end = Column(Float, nullable=True)
    min_per_order = Column(Integer, nullable=False, default=1)
    max_per_order = Column(Integer, nullable=False, default=10)
    is_hidden = Column(Boolean, nullable=False, default=False)
    sort_order = Column(Integer, nullable=False, default=0)


class GroupPricingRule(Base):
    __tablename__ = "group_pricing_rules"
    id = Column(String, primary_key=True)
    ticket_tier_id = Column(String, nullable=False, index=True)
    min_quantity = Column(Integer, nullable=False)
    discount_percentage = Column(Integer, nullable=False)


class DiscountCode(Base):
    __tablename__ = "discount_codes"
    __table_args__ = (UniqueConstraint("event_id", "code"),)
    id = Column(String, primary_key=True)
    event_id = Column(String, nullable=False)
    code = Column(String, nullable=False)  # stored upper-case
    description = Column(String, nullable=True)
    discount_type = Column(String, nullable=False)  # percentage | fixed
    # percent for 'percentage', minor units for 'fixed'
    discount_value = Column(Integer, nullable=False)
    applicable_tiers = Column(JSON, nullable=True)  # NULL = every tier
    usage_limit = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    valid_from = Column(Float, nullable=True)
    valid_until = Column(Float, nullable=True)
    minimum_purchase_cents = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    event_id = Column(String, nullable=False)
    buyer_id = Column(String, nullable=False, index=True)
    buyer_email = Column(String, nullable=False, default="")
    buyer_name = Column(String, nullable=False, default="")
    quantity = Column(Integer, nullable=False)

    # all money in minor units
    subtotal_cents = Column(Integer, nullable=False)
    discount_cents = Column(Integer, nullable=False, default=0)
    fee_cents = Column(Integer, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="usd")
    discount_code = Column(String, nullable=True)

    # pending | processing | paid | completed | failed | cancelled
    status = Column(String, nullable=False, default="pending")
    payment_method = Column(String, nullable=True)

    # canonical external reference: whatever the gateway handed back at
    # checkout (intent id or checkout session id)
    payment_ref = Column(String, nullable=True, unique=True)
    # the processor's payment intent, once known (sessions resolve later)
    payment_intent_id = Column(String, nullable=True, unique=True)

    # audit trail only: retry counts, errors, fee breakdown, provenance
    meta = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    failed_at = Column(Float, nullable=True)
    cancelled_at = Column(Float, nullable=True)


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (UniqueConstraint("order_id", "position"),)
    id = Column(String, primary_key=True)
    order_id = Column(String, nullable=False, index=True)
    position = Column(Integer, nullable=False)
    tier_id = Column(String, nullable=False)
    tier_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        # one ticket per purchased unit, whoever issues it
        UniqueConstraint("order_id", "slot"),
        Index("ix_tickets_event", "event_id"),
    )
    id = Column(String, primary_key=True)
    order_id = Column(String, nullable=False)
    slot = Column(Integer, nullable=False)
    event_id = Column(String, nullable=False)
    ticket_tier_id = Column(String, nullable=False)
    attendee_email = Column(String, nullable=False, default="")
    attendee_name = Column(String, nullable=False, default="")
    ticket_code = Column(String, nullable=False, unique=True)
    # valid | used | void
    status = Column(String, nullable=False, default="valid")
    # tier/event name and price as they were at issuance
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(Float, nullable=False)
