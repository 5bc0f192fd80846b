import uuid
from sqlalchemy import Column, String, DateTime, ForeignKey, Index
from ..database import Base
from ..utils.dates import utcnow


class Customer(Base):
    """
    Platform customer. External ids are unique across the whole platform, so
    the natural key is the external id alone.

    Stub rows carry only the external id; PII fills in later, first write wins.
    """
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    external_id = Column(String(64), nullable=False, unique=True)

    given_name = Column(String(255), nullable=True)
    family_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_customers_org", "organization_id"),
    )

    @property
    def display_name(self) -> str:
        parts = [p for p in (self.given_name, self.family_name) if p]
        return " ".join(parts) or self.external_id

    def __repr__(self):
        return f"<Customer {self.external_id}>"
