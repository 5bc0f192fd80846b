import uuid
from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, UniqueConstraint
from ..database import Base
from ..utils.dates import utcnow


class ServiceVariation(Base):
    """Catalog service variation referenced by line items and booking segments."""
    __tablename__ = "service_variations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    external_id = Column(String(64), nullable=False)

    name = Column(String(255), nullable=True)
    duration_minutes = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "external_id", name="uq_service_variations_org_external"),
    )

    def __repr__(self):
        return f"<ServiceVariation {self.external_id}>"
