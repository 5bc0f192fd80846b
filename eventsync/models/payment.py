import uuid
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, JSON, Index, UniqueConstraint
from ..database import Base
from ..utils.dates import utcnow


class Payment(Base):
    """
    Payment keyed by (organization, external payment id).

    ``order_id``, ``booking_id``, ``technician_id`` and ``administrator_id``
    are set by the deferred linker and never cleared afterwards. The raw
    external references are kept so linking can be retried at any time.
    """
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    external_id = Column(String(64), nullable=False)

    location_id = Column(String(36), ForeignKey("locations.id", ondelete="SET NULL"), nullable=True)
    customer_id = Column(String(36), ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)

    # External references as delivered
    external_order_id = Column(String(64), nullable=True)
    external_team_member_id = Column(String(64), nullable=True)

    status = Column(String(20), nullable=True)  # APPROVED, COMPLETED, CANCELED, FAILED
    source_type = Column(String(30), nullable=True)

    # Money (cents)
    amount_cents = Column(Integer, nullable=True)
    tip_cents = Column(Integer, nullable=True)
    total_cents = Column(Integer, nullable=True)
    approved_cents = Column(Integer, nullable=True)
    refunded_cents = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=True)

    card_brand = Column(String(30), nullable=True)
    card_last4 = Column(String(4), nullable=True)
    receipt_number = Column(String(64), nullable=True)
    receipt_url = Column(String(500), nullable=True)

    # Deferred links, write-once
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True)
    link_confidence = Column(String(20), nullable=True)
    technician_id = Column(String(36), ForeignKey("staff_members.id", ondelete="SET NULL"), nullable=True)
    administrator_id = Column(String(36), ForeignKey("staff_members.id", ondelete="SET NULL"), nullable=True)

    upstream_created_at = Column(DateTime, nullable=True)
    upstream_updated_at = Column(DateTime, nullable=True)
    raw_payload = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "external_id", name="uq_payments_org_external"),
        Index("ix_payments_external_order", "organization_id", "external_order_id"),
        Index("ix_payments_order", "order_id"),
        Index("ix_payments_unlinked", "booking_id", "upstream_created_at"),
    )

    def __repr__(self):
        return f"<Payment {self.external_id} status={self.status}>"
