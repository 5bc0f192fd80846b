"""
Order Models

- Order: keyed by (organization, external order id), versioned upstream
- OrderLineItem: keyed by (organization, uid) when a uid exists, otherwise
  always inserted; carries a snapshot of the order totals at write time
"""

import uuid
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, JSON, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from ..database import Base
from ..utils.dates import utcnow
import enum


class OrderState(str, enum.Enum):
    OPEN = "OPEN"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"
    DRAFT = "DRAFT"


class LinkConfidence(str, enum.Enum):
    """Which deferred-linking strategy produced a link"""
    EXACT = "exact"
    SERVICE_WINDOW = "service_window"
    CUSTOMER_WINDOW = "customer_window"
    NAME_HEURISTIC = "name_heuristic"


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    external_id = Column(String(64), nullable=False)

    # Resolved references
    location_id = Column(String(36), ForeignKey("locations.id", ondelete="SET NULL"), nullable=True)
    customer_id = Column(String(36), ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)

    state = Column(String(20), nullable=True)
    version = Column(Integer, nullable=True)

    # Money (cents)
    total_money_cents = Column(Integer, nullable=True)
    total_tax_cents = Column(Integer, nullable=True)
    total_discount_cents = Column(Integer, nullable=True)
    total_tip_cents = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=True)

    # Filled by the deferred linker, write-once
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True)
    booking_confidence = Column(String(20), nullable=True)

    upstream_created_at = Column(DateTime, nullable=True)
    upstream_updated_at = Column(DateTime, nullable=True)
    raw_payload = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    line_items = relationship("OrderLineItem", back_populates="order", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("organization_id", "external_id", name="uq_orders_org_external"),
        Index("ix_orders_customer_created", "customer_id", "upstream_created_at"),
        Index("ix_orders_booking", "booking_id"),
    )

    def __repr__(self):
        return f"<Order {self.external_id} state={self.state} v={self.version}>"


class OrderLineItem(Base):
    __tablename__ = "order_line_items"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    uid = Column(String(64), nullable=True)  # optional upstream

    name = Column(String(255), nullable=True)
    variation_name = Column(String(255), nullable=True)
    quantity = Column(String(20), nullable=True)
    item_type = Column(String(30), nullable=True)
    service_variation_id = Column(String(64), nullable=True)  # external catalog object id

    # Money (cents)
    base_price_cents = Column(Integer, nullable=True)
    gross_sales_cents = Column(Integer, nullable=True)
    total_tax_cents = Column(Integer, nullable=True)
    total_discount_cents = Column(Integer, nullable=True)
    total_cents = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=True)

    # Snapshot of the order at write time
    order_state = Column(String(20), nullable=True)
    order_version = Column(Integer, nullable=True)
    order_total_cents = Column(Integer, nullable=True)
    order_tax_cents = Column(Integer, nullable=True)
    order_discount_cents = Column(Integer, nullable=True)

    # Filled by the deferred linker, write-once
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True)
    technician_id = Column(String(36), ForeignKey("staff_members.id", ondelete="SET NULL"), nullable=True)
    technician_confidence = Column(String(20), nullable=True)
    administrator_id = Column(String(36), ForeignKey("staff_members.id", ondelete="SET NULL"), nullable=True)
    administrator_confidence = Column(String(20), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="line_items")

    __table_args__ = (
        UniqueConstraint("organization_id", "uid", name="uq_line_items_org_uid"),
        Index("ix_line_items_order", "order_id"),
        Index("ix_line_items_service", "service_variation_id"),
    )

    def __repr__(self):
        return f"<OrderLineItem {self.uid} {self.name}>"
