"""
Webhook Event Log Model

Audit trail of every verified delivery: what arrived, which tenant it
resolved to, and what the pipeline did with it. Duplicate deliveries of the
same ``event_id`` share one row.
"""

import uuid
from sqlalchemy import Column, String, Text, DateTime, Index
from ..database import Base
from ..utils.dates import utcnow
import enum


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"  # Unrecognized event type
    DROPPED = "dropped"  # Tenant could not be resolved
    REJECTED = "rejected"  # Malformed payload
    FAILED = "failed"  # Storage error


class WebhookEventLog(Base):
    __tablename__ = "webhook_event_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Provider identification
    event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(100), nullable=True)
    merchant_id = Column(String(64), nullable=True)
    organization_id = Column(String(36), nullable=True)

    payload_hash = Column(String(64), nullable=True)  # SHA256 of the raw body

    # Processing result
    status = Column(String(20), default=WebhookEventStatus.RECEIVED.value)
    result_action = Column(String(50), nullable=True)  # created, updated, ignored, dropped
    entity_id = Column(String(36), nullable=True)
    error_message = Column(Text, nullable=True)

    received_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_webhook_event_status", "status", "received_at"),
        Index("ix_webhook_event_type", "event_type", "received_at"),
    )

    def __repr__(self):
        return f"<WebhookEventLog {self.event_type} status={self.status}>"
