"""
Pipeline wiring.

Builds the store, queue, external clients and orchestrator from
settings once per process, and exposes them to routes as FastAPI
dependencies.
"""
from dataclasses import dataclass

from fastapi import Request

from app.config import Settings
from app.database import build_engine, build_session_factory
from app.logging_config import get_logger
from app.services.contact_resolver import ContactResolver
from app.services.email_service import EmailService, SMTPConfig, build_review_link
from app.services.orchestrator import InvitationOrchestrator, RetryPolicy
from app.services.outcome_store import InMemoryOutcomeStore, OutcomeStore, SqlOutcomeStore
from app.services.retry_queue import ArqRetryQueue, InMemoryRetryQueue, RetryQueue
from app.services.trustpilot_client import TrustpilotClient


log = get_logger(component="pipeline")


@dataclass
class Pipeline:
    settings: Settings
    store: OutcomeStore
    queue: RetryQueue
    resolver: ContactResolver
    dispatcher: TrustpilotClient
    notifier: EmailService
    orchestrator: InvitationOrchestrator

    async def start(self) -> None:
        await self.store.start()

    async def close(self) -> None:
        await self.queue.close()
        await self.resolver.close()
        await self.dispatcher.close()
        await self.store.close()


def build_store(settings: Settings) -> OutcomeStore:
    if settings.STORE_BACKEND == "memory":
        return InMemoryOutcomeStore()
    if settings.STORE_BACKEND == "sql":
        engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
        return SqlOutcomeStore(engine, build_session_factory(engine))
    raise ValueError(f"Unknown STORE_BACKEND: {settings.STORE_BACKEND}")


def build_queue(settings: Settings) -> RetryQueue:
    if settings.QUEUE_BACKEND == "memory":
        return InMemoryRetryQueue()
    if settings.QUEUE_BACKEND == "arq":
        return ArqRetryQueue(settings.REDIS_URL)
    raise ValueError(f"Unknown QUEUE_BACKEND: {settings.QUEUE_BACKEND}")


def build_pipeline(
    settings: Settings,
    store: OutcomeStore | None = None,
    queue: RetryQueue | None = None,
) -> Pipeline:
    """Assemble the pipeline; store/queue may be injected."""
    store = store or build_store(settings)
    queue = queue or build_queue(settings)

    resolver = ContactResolver(
        token=settings.INTERCOM_TOKEN,
        base_url=settings.INTERCOM_BASE_URL,
        api_version=settings.INTERCOM_API_VERSION,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    dispatcher = TrustpilotClient(
        api_key=settings.TRUSTPILOT_API_KEY,
        secret_key=settings.TRUSTPILOT_SECRET_KEY,
        business_unit_id=settings.TRUSTPILOT_BUSINESS_UNIT_ID,
        template_id=settings.TEMPLATE_ID,
        base_url=settings.TRUSTPILOT_BASE_URL,
        locale=settings.INVITATION_LOCALE,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    notifier = EmailService(SMTPConfig(
        host=settings.SMTP_HOST,
        port=settings.SMTP_PORT,
        secure=settings.SMTP_SECURE,
        user=settings.SMTP_USER or "",
        password=settings.SMTP_PASSWORD or "",
        from_email=settings.SMTP_FROM_EMAIL or settings.SMTP_USER or "",
        from_name=settings.SMTP_FROM_NAME,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    ))
    orchestrator = InvitationOrchestrator(
        store=store,
        queue=queue,
        resolver=resolver,
        dispatcher=dispatcher,
        notifier=notifier,
        business_name=settings.BUSINESS_NAME,
        review_link=build_review_link(
            settings.TRUSTPILOT_REVIEW_HOST,
            settings.TRUSTPILOT_DOMAIN,
            settings.BUSINESS_NAME,
        ),
        policy=RetryPolicy(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay_seconds=settings.RETRY_BASE_DELAY_SECONDS,
        ),
        template_id=settings.TEMPLATE_ID,
    )

    for warning in settings.configuration_warnings():
        log.warning("configuration_incomplete", detail=warning)

    return Pipeline(
        settings=settings,
        store=store,
        queue=queue,
        resolver=resolver,
        dispatcher=dispatcher,
        notifier=notifier,
        orchestrator=orchestrator,
    )


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def get_orchestrator(request: Request) -> InvitationOrchestrator:
    return request.app.state.pipeline.orchestrator


def get_store(request: Request) -> OutcomeStore:
    return request.app.state.pipeline.store
