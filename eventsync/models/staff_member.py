import uuid
from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint
from ..database import Base
from ..utils.dates import utcnow


class StaffMember(Base):
    """
    Technician or administrator. Never stub-created: an unknown staff id is a
    linking gap that the retry queue closes once the team member syncs.
    """
    __tablename__ = "staff_members"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    external_id = Column(String(64), nullable=False)

    given_name = Column(String(255), nullable=True)
    family_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    role = Column(String(50), nullable=True)  # OWNER, ADMIN, TECHNICIAN, ...
    status = Column(String(20), nullable=True)  # ACTIVE, INACTIVE

    upstream_updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "external_id", name="uq_staff_org_external"),
    )

    def __repr__(self):
        return f"<StaffMember {self.external_id} {self.given_name}>"
