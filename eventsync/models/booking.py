"""
Booking Models

One Booking row per upstream booking with explicit child BookingSegment rows,
replaced as a set whenever a non-regressing version is applied.
"""

import uuid
from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, JSON, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from ..database import Base
from ..utils.dates import utcnow
import enum


class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    CANCELLED_BY_CUSTOMER = "CANCELLED_BY_CUSTOMER"
    CANCELLED_BY_SELLER = "CANCELLED_BY_SELLER"
    DECLINED = "DECLINED"
    NO_SHOW = "NO_SHOW"


# Bookings in these states never produced a paid visit
UNLINKABLE_BOOKING_STATUSES = (
    BookingStatus.CANCELLED_BY_CUSTOMER.value,
    BookingStatus.CANCELLED_BY_SELLER.value,
    BookingStatus.DECLINED.value,
)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    external_id = Column(String(64), nullable=False)

    location_id = Column(String(36), ForeignKey("locations.id", ondelete="SET NULL"), nullable=True)
    customer_id = Column(String(36), ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)

    status = Column(String(30), nullable=True)
    version = Column(Integer, nullable=True)
    start_at = Column(DateTime, nullable=True)

    source = Column(String(50), nullable=True)
    creator_type = Column(String(30), nullable=True)
    customer_note = Column(String(1000), nullable=True)

    upstream_created_at = Column(DateTime, nullable=True)
    upstream_updated_at = Column(DateTime, nullable=True)
    raw_payload = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    segments = relationship(
        "BookingSegment",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingSegment.position",
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "external_id", name="uq_bookings_org_external"),
        Index("ix_bookings_customer_start", "customer_id", "start_at"),
        Index("ix_bookings_location_start", "location_id", "start_at"),
    )

    def __repr__(self):
        return f"<Booking {self.external_id} status={self.status} v={self.version}>"


class BookingSegment(Base):
    __tablename__ = "booking_segments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False, default=0)

    service_variation_id = Column(String(64), nullable=True)  # external catalog object id
    service_variation_version = Column(String(32), nullable=True)
    external_team_member_id = Column(String(64), nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    intermission_minutes = Column(Integer, nullable=True)
    any_team_member = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow)

    booking = relationship("Booking", back_populates="segments")

    __table_args__ = (
        Index("ix_booking_segments_booking", "booking_id", "position"),
        Index("ix_booking_segments_service", "service_variation_id"),
    )

    def __repr__(self):
        return f"<BookingSegment {self.position} {self.service_variation_id}>"
