"""
Tenant Models

- Organization: tenant root, keyed by the platform merchant id
- Location: business location, keyed per organization by external id
"""

import uuid
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, JSON, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from ..database import Base
from ..utils.dates import utcnow


class Organization(Base):
    """
    Tenant root. Immutable once created except for ``is_active``.
    """
    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    merchant_id = Column(String(64), nullable=False, unique=True)
    name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    locations = relationship("Location", back_populates="organization")

    __table_args__ = (
        Index("ix_organizations_active", "is_active", "created_at"),
    )

    def __repr__(self):
        return f"<Organization {self.merchant_id} active={self.is_active}>"


class Location(Base):
    """
    Stub rows (``is_stub``) are created on first reference with a placeholder
    name; backfill replaces the name.
    """
    __tablename__ = "locations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    external_id = Column(String(64), nullable=False)

    name = Column(String(255), nullable=False)
    address = Column(JSON, nullable=True)
    timezone = Column(String(64), nullable=True)
    is_stub = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    organization = relationship("Organization", back_populates="locations")

    __table_args__ = (
        UniqueConstraint("organization_id", "external_id", name="uq_locations_org_external"),
        Index("ix_locations_external", "external_id"),
    )

    def __repr__(self):
        return f"<Location {self.external_id} {self.name}>"
