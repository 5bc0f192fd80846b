"""
Retry Job Model

Deferred unit of work drained by the job runner:

    queued -> running -> succeeded
                      -> queued   (retry, scheduled_at = now + backoff)
                      -> failed   (terminal, manual or batch requeue)

Idempotent on ``correlation_id``.
"""

import uuid
from sqlalchemy import Column, String, Text, DateTime, Integer, JSON, Index
from ..database import Base
from ..utils.dates import utcnow
import enum


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobStage(str, enum.Enum):
    LINK_PAYMENT = "link-payment"
    LINK_ORDER = "link-order"
    FETCH_ORDER = "fetch-order"
    FETCH_BOOKING = "fetch-booking"
    SYNC_GIFT_CARD = "sync-gift-card"


class JobOutcome(str, enum.Enum):
    """Why a job reached a terminal state"""
    COMPLETED = "completed"
    UNLINKABLE = "unlinkable"  # no match after exhausting every strategy
    EXHAUSTED = "exhausted"  # max_attempts reached on a recoverable error
    UPSTREAM_NOT_FOUND = "upstream_not_found"
    PERMANENT_ERROR = "permanent_error"


class RetryJob(Base):
    __tablename__ = "retry_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    correlation_id = Column(String(255), nullable=False, unique=True)  # e.g. link-payment-P1
    stage = Column(String(50), nullable=False)
    organization_id = Column(String(36), nullable=True)
    payload = Column(JSON, nullable=True)

    status = Column(String(20), default=JobStatus.QUEUED.value, nullable=False)
    outcome = Column(String(30), nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=5, nullable=False)
    scheduled_at = Column(DateTime, default=utcnow, nullable=False)

    last_error = Column(Text, nullable=True)
    error_code = Column(String(50), nullable=True)

    # Worker locking
    lock_owner = Column(String(100), nullable=True)
    locked_at = Column(DateTime, nullable=True)

    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_retry_jobs_due", "status", "scheduled_at"),
        Index("ix_retry_jobs_stage_status", "stage", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.SUCCEEDED.value, JobStatus.FAILED.value)

    def __repr__(self):
        return f"<RetryJob {self.correlation_id} {self.status} {self.attempts}/{self.max_attempts}>"
