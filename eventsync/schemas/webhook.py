from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any


class WebhookResponse(BaseModel):
    """Response for webhook processing"""
    success: bool
    action: str  # persisted, duplicate, ignored, dropped, rejected
    event_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    message: Optional[str] = None
    jobs: List[str] = Field(default_factory=list)


# ==================
# Retry job queue
# ==================

class DrainResponse(BaseModel):
    claimed: int
    succeeded: int
    retried: int
    failed: int
    errors: List[str] = Field(default_factory=list)
    duration_ms: int = 0


class JobStatusResponse(BaseModel):
    counts: Dict[str, int]
    scheduler: Optional[Dict[str, Any]] = None
    recent_failures: List[Dict[str, Any]] = Field(default_factory=list)


class RequeueRequest(BaseModel):
    stage: Optional[str] = None
    include_not_found: bool = False


class RequeueResponse(BaseModel):
    requeued: int
