"""
ReviewFlow - review invitation pipeline

FastAPI application entry point.
"""
import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI

# Import observability modules
from app.config import Settings, settings as default_settings
from app.logging_config import configure_logging, get_logger
from app.sentry_config import configure_sentry
from app.middleware.logging import LoggingMiddleware
from app.routes.metrics import router as metrics_router

# Import route modules
from app.routes.api import router as api_router
from app.routes.webhooks import router as webhooks_router

from app.dependencies.pipeline import Pipeline, build_pipeline
from app.services.retry_queue import InMemoryRetryQueue

log = get_logger(component="main")


def create_app(settings: Settings = default_settings, pipeline: Pipeline | None = None) -> FastAPI:
    """
    Build the application.

    The pipeline is assembled at start-up unless one is injected. With
    the in-memory queue, a worker loop runs inside this process.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = pipeline or build_pipeline(settings)
        await active.start()
        app.state.pipeline = active

        worker = None
        if isinstance(active.queue, InMemoryRetryQueue):
            await active.orchestrator.reconcile()
            worker = asyncio.create_task(active.queue.run_forever(active.orchestrator.process))

        log.info(
            "application_started",
            store=type(active.store).__name__,
            queue=type(active.queue).__name__,
        )
        try:
            yield
        finally:
            if worker is not None:
                worker.cancel()
                with suppress(asyncio.CancelledError):
                    await worker
            await active.close()
            log.info("application_stopped")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Sends review invitations when support conversations close",
        lifespan=lifespan,
    )

    # Add logging middleware FIRST (runs before other middleware)
    app.add_middleware(LoggingMiddleware)

    # Include metrics endpoint FIRST (so it's always available)
    app.include_router(metrics_router)

    # Include webhook ingestion
    app.include_router(webhooks_router)

    # Include read-only query routes
    app.include_router(api_router)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running"
        }

    @app.get("/health")
    async def health():
        """Liveness check."""
        return {"status": "healthy"}

    return app


# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

# Create FastAPI app
app = create_app()
