"""
Invitation orchestrator.

Turns a validated conversation event into at most one review
invitation:

    accept()  -> create the pending attempt and queue the first step
    process() -> resolve contact, dispatch, retry or finish

State machine: pending -> retrying* -> success | failed. Terminal
states are sticky. Retryable dispatch failures increment retry_count;
when it reaches the cap the attempt fails and the fallback email is
tried. The orchestrator keeps no state of its own: everything it needs
between steps is in the outcome store.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from app.errors import DispatchError, RateLimited, ResolutionError
from app.logging_config import get_logger
from app.models.base import utcnow
from app.models.invitation import InvitationStatus
from app.routes import metrics
from app.schemas.webhook import IntercomWebhookEvent
from app.services.contact_resolver import ContactResolver
from app.services.email_service import EmailService, ReviewEmail
from app.services.outcome_store import InvitationRecord, OutcomeStore
from app.services.retry_queue import RetryQueue
from app.services.trustpilot_client import TrustpilotClient


log = get_logger(component="orchestrator")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 5.0

    def delay_for(self, retry_count: int) -> float:
        """Backoff before the next step, given retries already used."""
        return self.base_delay_seconds * (2 ** retry_count)


@dataclass(frozen=True)
class AcceptResult:
    attempt: InvitationRecord
    created: bool

    @property
    def duplicate(self) -> bool:
        return not self.created


class InvitationOrchestrator:
    """Coordinates contact resolution, dispatch, retries and fallback."""

    def __init__(
        self,
        store: OutcomeStore,
        queue: RetryQueue,
        resolver: ContactResolver,
        dispatcher: TrustpilotClient,
        notifier: EmailService,
        business_name: str,
        review_link: str,
        policy: RetryPolicy | None = None,
        template_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.queue = queue
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.business_name = business_name
        self.review_link = review_link
        self.policy = policy or RetryPolicy()
        self.template_id = template_id
        self._clock = clock

    async def accept(self, event: IntercomWebhookEvent) -> AcceptResult:
        """
        Record the conversation and queue its first dispatch step.

        A conversation that already has an attempt (finished or in
        flight) is a duplicate delivery: the existing record is returned
        unchanged and nothing is queued.

        Raises:
            StoreError: persistence unavailable
        """
        contact = event.primary_contact
        draft = InvitationRecord(
            conversation_id=event.conversation_id,
            contact_id=contact.id,
            customer_email=contact.email or "",
            customer_name=contact.name or "",
            agent_name=event.agent_name,
        )
        attempt, created = await self.store.create_or_get(draft)
        bound = log.bind(conversation_id=attempt.conversation_id, topic=event.topic)

        if not created:
            bound.info("duplicate_webhook_ignored", status=attempt.status.value, retry_count=attempt.retry_count)
            metrics.track_duplicate_webhook()
            return AcceptResult(attempt=attempt, created=False)

        await self.queue.enqueue(attempt.conversation_id, self._clock(), attempt=0)
        bound.info("invitation_accepted", contact_id=attempt.contact_id, agent_name=attempt.agent_name)
        return AcceptResult(attempt=attempt, created=True)

    async def process(self, conversation_id: str) -> InvitationRecord | None:
        """
        Run one dispatch step for a queued conversation.

        Raises:
            StoreError: persistence unavailable
        """
        bound = log.bind(conversation_id=conversation_id)
        attempt = await self.store.get(conversation_id)
        if attempt is None:
            bound.warning("attempt_not_found")
            return None
        if attempt.is_terminal:
            bound.info("attempt_already_terminal", status=attempt.status.value)
            return attempt

        if attempt.status == InvitationStatus.PENDING:
            try:
                attempt = await self._resolve_contact(attempt)
            except ResolutionError as e:
                bound.error("contact_resolution_failed", error=str(e))
                metrics.track_resolution_failure()
                failed = await self.store.mark_failed(conversation_id, str(e))
                if failed is not None:
                    metrics.track_invitation_outcome(InvitationStatus.FAILED.value)
                return failed or await self.store.get(conversation_id)

        return await self._dispatch(attempt)

    async def _resolve_contact(self, attempt: InvitationRecord) -> InvitationRecord:
        details = await self.resolver.resolve(attempt.contact_id)
        if details is None:
            raise ResolutionError(f"Could not resolve contact {attempt.contact_id}")

        email = details.email or attempt.customer_email
        if not email:
            raise ResolutionError(f"No email address for contact {attempt.contact_id}")

        name = details.name or attempt.customer_name
        updated = await self.store.update_contact(attempt.conversation_id, email, name)
        return updated or attempt

    async def _dispatch(self, attempt: InvitationRecord) -> InvitationRecord | None:
        conversation_id = attempt.conversation_id
        bound = log.bind(conversation_id=conversation_id, retry_count=attempt.retry_count)

        try:
            result = await self.dispatcher.send_invitation(
                email=attempt.customer_email,
                name=attempt.customer_name,
                reference_id=conversation_id,
                template_id=self.template_id,
            )
        except DispatchError as e:
            if e.retryable:
                return await self._handle_retryable(attempt, e)
            bound.error("invitation_rejected", error=str(e), error_type=type(e).__name__)
            failed = await self.store.mark_failed(conversation_id, str(e), response_log=e.to_log())
            return await self._finish_failed(conversation_id, failed)

        bound.info("invitation_sent", invitation_id=result.id, platform_status=result.status)
        updated = await self.store.mark_success(
            conversation_id,
            external_invitation_id=result.id,
            response_log=result.raw,
        )
        if updated is not None:
            metrics.track_invitation_outcome(InvitationStatus.SUCCESS.value)
        return updated or await self.store.get(conversation_id)

    async def _handle_retryable(self, attempt: InvitationRecord, error: DispatchError) -> InvitationRecord | None:
        conversation_id = attempt.conversation_id
        retries_used = attempt.retry_count + 1
        bound = log.bind(conversation_id=conversation_id, retry_count=retries_used, error=str(error))

        if retries_used >= self.policy.max_attempts:
            bound.error("invitation_retries_exhausted")
            failed = await self.store.mark_failed(
                conversation_id,
                str(error),
                response_log=error.to_log(),
                count_retry=True,
            )
            return await self._finish_failed(conversation_id, failed)

        delay = self.policy.delay_for(attempt.retry_count)
        if isinstance(error, RateLimited) and error.retry_after:
            delay = max(delay, error.retry_after)
        next_retry_at = self._clock() + timedelta(seconds=delay)

        updated = await self.store.mark_retrying(
            conversation_id,
            str(error),
            next_retry_at,
            response_log=error.to_log(),
        )
        if updated is None:
            # another worker finished this attempt first
            return await self.store.get(conversation_id)

        metrics.track_retry()
        await self.queue.enqueue(conversation_id, next_retry_at, attempt=updated.retry_count)
        bound.warning("invitation_retry_scheduled", delay_seconds=delay, next_retry_at=next_retry_at.isoformat())
        return updated

    async def _finish_failed(self, conversation_id: str, failed: InvitationRecord | None) -> InvitationRecord | None:
        if failed is None:
            return await self.store.get(conversation_id)
        metrics.track_invitation_outcome(InvitationStatus.FAILED.value)
        return await self._send_fallback(failed)

    async def _send_fallback(self, attempt: InvitationRecord) -> InvitationRecord:
        """Best-effort email invitation; never changes status."""
        outcome = await self.notifier.send_review_invitation(ReviewEmail(
            customer_email=attempt.customer_email,
            customer_name=attempt.customer_name or "Valued Customer",
            agent_name=attempt.agent_name,
            conversation_id=attempt.conversation_id,
            business_name=self.business_name,
            review_link=self.review_link,
        ))
        metrics.track_fallback_email(outcome.success)
        log.info(
            "fallback_email_recorded",
            conversation_id=attempt.conversation_id,
            success=outcome.success,
            error=outcome.error,
        )
        updated = await self.store.record_fallback(attempt.conversation_id, outcome.to_log())
        return updated or attempt

    async def reconcile(self) -> int:
        """
        Re-queue every attempt still pending or retrying. Used at worker
        start-up so attempts survive a restart; queue task ids make
        re-enqueueing an already queued step a no-op.
        """
        now = self._clock()
        requeued = 0
        for attempt in await self.store.list_active():
            eligible_at = attempt.next_retry_at or now
            if await self.queue.enqueue(attempt.conversation_id, max(eligible_at, now), attempt=attempt.retry_count):
                requeued += 1
        if requeued:
            log.info("stalled_attempts_requeued", count=requeued)
        return requeued
