"""Shared fixtures: webhook payloads and fake external clients."""
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from app.errors import DispatchError
from app.services.contact_resolver import ContactDetails
from app.services.email_service import FallbackResult
from app.services.orchestrator import InvitationOrchestrator, RetryPolicy
from app.services.outcome_store import InMemoryOutcomeStore
from app.services.retry_queue import InMemoryRetryQueue, RetryQueue
from app.services.trustpilot_client import InvitationResult


FIXED_NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _payload(
    conversation_id: str = "conv-123",
    contact_id: str = "c-1",
    email: str | None = "alice@example.com",
    name: str | None = "Alice",
    topic: str = "conversation.admin.closed",
    agent: str | None = "Bob",
) -> dict:
    parts = []
    if agent:
        parts.append({"author": {"type": "admin", "name": agent}})
    return {
        "type": topic,
        "data": {
            "item": {
                "id": conversation_id,
                "contacts": {"contacts": [{"id": contact_id, "email": email, "name": name}]},
                "conversation_parts": {"conversation_parts": parts},
            }
        },
    }


@pytest.fixture
def make_payload():
    return _payload


class FakeResolver:
    def __init__(self, details: ContactDetails | None = None):
        self.details = details or ContactDetails(email="alice@example.com", name="Alice")
        self.calls: list[str] = []
        self.healthy = True

    async def resolve(self, contact_id):
        self.calls.append(contact_id)
        return self.details

    async def test_connection(self):
        return self.healthy

    async def close(self):
        pass


class FakeDispatcher:
    """Returns (or raises) the queued outcomes in order."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls: list[dict] = []

    async def send_invitation(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0) if self.outcomes else InvitationResult(id="inv-1", status="sent")
        if isinstance(outcome, DispatchError):
            raise outcome
        return outcome

    async def close(self):
        pass


class FakeNotifier:
    def __init__(self, result: FallbackResult | None = None):
        self.result = result or FallbackResult(success=True, message_id="<msg-1@example.com>")
        self.sent = []
        self.healthy = True

    async def send_review_invitation(self, data):
        self.sent.append(data)
        return self.result

    async def test_connection(self):
        return self.healthy


class RecordingQueue(RetryQueue):
    """Records enqueues without running anything."""

    def __init__(self):
        self.tasks: list[tuple[str, datetime, int]] = []

    async def enqueue(self, conversation_id, eligible_at, attempt=0):
        self.tasks.append((conversation_id, eligible_at, attempt))
        return True


@pytest.fixture
def harness():
    store = InMemoryOutcomeStore()
    queue = InMemoryRetryQueue(clock=lambda: FIXED_NOW)
    resolver = FakeResolver()
    dispatcher = FakeDispatcher()
    notifier = FakeNotifier()
    orchestrator = InvitationOrchestrator(
        store=store,
        queue=queue,
        resolver=resolver,
        dispatcher=dispatcher,
        notifier=notifier,
        business_name="Acme",
        review_link="https://www.trustpilot.com/evaluate/acme.com",
        policy=RetryPolicy(max_attempts=3, base_delay_seconds=5.0),
        template_id="tpl-1",
        clock=lambda: FIXED_NOW,
    )
    return SimpleNamespace(
        store=store,
        queue=queue,
        resolver=resolver,
        dispatcher=dispatcher,
        notifier=notifier,
        orchestrator=orchestrator,
    )
