"""
Read-only query routes.

Used by the dashboard and health-check pollers; nothing here mutates
the pipeline's state.
"""
import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.dependencies.pipeline import Pipeline, get_pipeline, get_store
from app.errors import StoreError
from app.services.outcome_store import OutcomeStore

router = APIRouter(prefix="/api", tags=["API"])


def _store_unavailable(e: StoreError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=str(e)
    )


@router.get("/logs", response_model=dict)
async def list_logs(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    store: OutcomeStore = Depends(get_store)
):
    """Recent invitation attempts, newest first."""
    try:
        attempts = await store.list_attempts(limit=limit, offset=offset)
    except StoreError as e:
        raise _store_unavailable(e)
    return {
        "items": [attempt.to_dict() for attempt in attempts],
        "limit": limit,
        "offset": offset,
    }


@router.get("/logs/{conversation_id}", response_model=dict)
async def get_log(conversation_id: str, store: OutcomeStore = Depends(get_store)):
    """Single invitation attempt by conversation id."""
    try:
        attempt = await store.get(conversation_id)
    except StoreError as e:
        raise _store_unavailable(e)
    if attempt is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Invitation attempt not found"
        )
    return attempt.to_dict()


@router.get("/stats", response_model=dict)
async def get_stats(store: OutcomeStore = Depends(get_store)):
    """Aggregate invitation counters."""
    try:
        stats = await store.get_stats()
    except StoreError as e:
        raise _store_unavailable(e)
    return stats.to_dict()


def _check_result(ok: bool, healthy: str, unhealthy: str) -> dict:
    if ok:
        return {"status": "healthy", "message": healthy}
    return {"status": "error", "message": unhealthy}


@router.get("/health", response_model=dict)
async def get_health(pipeline: Pipeline = Depends(get_pipeline)):
    """Connectivity check per external dependency."""
    intercom_ok, smtp_ok, database_ok = await asyncio.gather(
        pipeline.resolver.test_connection(),
        pipeline.notifier.test_connection(),
        pipeline.store.ping(),
    )
    services = {
        "intercom": _check_result(intercom_ok, "API connected", "Unable to reach Intercom API"),
        "smtp": _check_result(smtp_ok, "Relay connected", "Unable to authenticate with SMTP relay"),
        "database": _check_result(database_ok, "Store connected", "Invitation store unavailable"),
    }
    overall = "healthy" if all(s["status"] == "healthy" for s in services.values()) else "degraded"
    return {"status": overall, "services": services}
