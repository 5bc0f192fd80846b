"""
Webhook intake boundary.

Verifies the provider signature over the raw body, then hands the envelope to
the ingestion pipeline. Status codes:

- 401 missing or invalid signature (the core never runs)
- 400 body is not JSON or the event is malformed
- 200 everything else, including ignored, dropped and duplicate events
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request

from ..schemas.webhook import WebhookResponse
from ..services.webhook_processor import compute_payload_hash
from ..utils.logging_config import clear_context
from ..utils.security import verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/square", response_model=WebhookResponse)
async def receive_square_webhook(
    request: Request,
    x_square_hmacsha256_signature: Optional[str] = Header(None),
):
    """
    Receive a commerce platform webhook.

    The signature is base64(HMAC-SHA256(signature key, raw body)).
    """
    settings = request.app.state.settings
    request_id = getattr(request.state, "request_id", "no-request-id")
    body = await request.body()

    if not verify_signature(settings.webhook_signature_key, body, x_square_hmacsha256_signature):
        logger.warning(f"[{request_id}] Webhook signature check failed")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        envelope = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        logger.warning(f"[{request_id}] Webhook body is not valid JSON")
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    pipeline = request.app.state.pipeline
    try:
        result = await pipeline.process(envelope, payload_hash=compute_payload_hash(body))
    finally:
        clear_context()

    if result.action == "rejected":
        raise HTTPException(status_code=400, detail=result.message or "Malformed payload")

    return WebhookResponse(
        success=True,
        action=result.action,
        event_id=result.event_id,
        entity_type=result.entity_type,
        entity_id=result.entity_id,
        message=result.message or None,
        jobs=result.jobs,
    )
