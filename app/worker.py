"""
ARQ Background Worker for the invitation pipeline.

Executes queued dispatch steps. Start with:
    arq app.worker.WorkerSettings
"""
import asyncio

from arq import Retry
from arq.connections import RedisSettings

from app.config import settings
from app.dependencies.pipeline import build_pipeline
from app.errors import StoreError
from app.logging_config import configure_logging, get_logger
from app.sentry_config import capture_exception, configure_sentry
from app.services.retry_queue import STORE_RETRY_DEFER, ArqRetryQueue


log = get_logger(component="worker")


async def startup(ctx: dict) -> None:
    """Build the pipeline and re-queue attempts left in flight."""
    configure_logging()
    configure_sentry()
    pipeline = build_pipeline(settings, queue=ArqRetryQueue(settings.REDIS_URL, pool=ctx["redis"]))
    await pipeline.start()
    ctx["pipeline"] = pipeline

    requeued = await pipeline.orchestrator.reconcile()
    log.info("worker_started", requeued=requeued)


async def shutdown(ctx: dict) -> None:
    pipeline = ctx.get("pipeline")
    if pipeline is not None:
        await pipeline.close()
    log.info("worker_stopped")


async def process_invitation(ctx: dict, conversation_id: str) -> dict:
    """Run one dispatch step for a conversation."""
    job_try = ctx.get("job_try", 1)
    bound = log.bind(conversation_id=conversation_id, job_try=job_try)
    bound.info("task_started")

    try:
        attempt = await ctx["pipeline"].orchestrator.process(conversation_id)
    except StoreError as e:
        bound.error("task_store_unavailable", error=str(e))
        capture_exception(e, conversation_id=conversation_id)
        if job_try >= WorkerSettings.max_tries:
            raise
        # Use ARQ's Retry to re-run the step once the store recovers
        raise Retry(defer=STORE_RETRY_DEFER * job_try)

    if attempt is None:
        return {"conversation_id": conversation_id, "status": "missing"}
    bound.info("task_finished", status=attempt.status.value, retry_count=attempt.retry_count)
    return {
        "conversation_id": conversation_id,
        "status": attempt.status.value,
        "retry_count": attempt.retry_count,
    }


# Register functions for ARQ
ARQ_FUNCTIONS = [
    process_invitation,
]


async def main():
    """Run the worker using arq cli."""
    log.info("worker_usage", command="arq app.worker.WorkerSettings", redis=settings.REDIS_URL)


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq app.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    job_timeout = 120
    max_tries = 3
    functions = ARQ_FUNCTIONS
    on_startup = startup
    on_shutdown = shutdown


if __name__ == "__main__":
    asyncio.run(main())
