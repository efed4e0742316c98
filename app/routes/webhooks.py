"""
Inbound webhook routes.

Receives Intercom conversation notifications. The raw body is read
before any parsing so the signature can be checked against the exact
bytes Intercom signed. The handler only records the attempt and queues
it; dispatch happens in the worker, so Intercom always gets a fast
acknowledgment.
"""
import hashlib
import hmac
import json

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.dependencies.pipeline import Pipeline, get_pipeline
from app.errors import StoreError, ValidationError
from app.logging_config import get_logger
from app.routes import metrics
from app.schemas.webhook import parse_webhook_event
from app.sentry_config import capture_exception


router = APIRouter(prefix="/api", tags=["webhooks"])

log = get_logger(component="webhooks")

SIGNATURE_HEADER = "X-Hub-Signature"


def generate_webhook_signature(payload: bytes, secret: str) -> str:
    """Intercom-style signature: sha1=<HMAC-SHA1 hex digest>."""
    digest = hmac.new(secret.encode(), payload, hashlib.sha1).hexdigest()
    return f"sha1={digest}"


def verify_webhook_signature(payload: bytes, signature: str | None, secret: str) -> bool:
    if not signature:
        return False
    expected = generate_webhook_signature(payload, secret)
    return hmac.compare_digest(expected, signature.strip())


async def _receive(request: Request, pipeline: Pipeline) -> dict:
    body = await request.body()

    secret = pipeline.settings.INTERCOM_WEBHOOK_SECRET
    if secret and not verify_webhook_signature(body, request.headers.get(SIGNATURE_HEADER), secret):
        log.warning("webhook_signature_invalid")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature"
        )

    try:
        payload = json.loads(body)
    except ValueError:
        metrics.track_webhook("unknown", "invalid")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Request body is not valid JSON"
        )

    try:
        event = parse_webhook_event(payload)
    except ValidationError as e:
        topic = payload.get("topic") or payload.get("type") if isinstance(payload, dict) else None
        log.warning("webhook_rejected", topic=topic, errors=e.errors)
        metrics.track_webhook("unknown", "invalid")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(e), "errors": e.errors}
        )

    if event.topic not in pipeline.settings.TRIGGER_TOPICS:
        log.info("webhook_topic_ignored", topic=event.topic, conversation_id=event.conversation_id)
        metrics.track_webhook(event.topic, "ignored")
        return {"received": True, "ignored": True, "conversation_id": event.conversation_id}

    try:
        result = await pipeline.orchestrator.accept(event)
    except StoreError as e:
        log.error("webhook_store_unavailable", conversation_id=event.conversation_id, error=str(e))
        capture_exception(e, conversation_id=event.conversation_id)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Invitation store unavailable"
        )

    metrics.track_webhook(event.topic, "duplicate" if result.duplicate else "accepted")
    return {
        "received": True,
        "conversation_id": result.attempt.conversation_id,
        "status": result.attempt.status.value,
        "duplicate": result.duplicate,
    }


@router.post("/webhook/intercom", response_model=dict)
async def intercom_webhook(request: Request, pipeline: Pipeline = Depends(get_pipeline)):
    """
    Intercom conversation webhook.

    Returns 200 once the attempt is recorded (or recognised as a
    duplicate), 400 for malformed events, 401 for a bad signature and
    503 when the store is unavailable so Intercom redelivers.
    """
    return await _receive(request, pipeline)


@router.post("/notifications/intercom", response_model=dict, include_in_schema=False)
async def intercom_notification_alias(request: Request, pipeline: Pipeline = Depends(get_pipeline)):
    """Alias kept for webhook subscriptions registered on the old path."""
    return await _receive(request, pipeline)
