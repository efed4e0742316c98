"""Tests for both outcome store variants."""
import asyncio
from datetime import timedelta

import pytest

from app.database import build_engine, build_session_factory
from app.models.invitation import InvitationStatus
from app.services.outcome_store import InMemoryOutcomeStore, InvitationRecord, SqlOutcomeStore

from conftest import FIXED_NOW


def _record(conversation_id: str = "conv-1") -> InvitationRecord:
    return InvitationRecord(
        conversation_id=conversation_id,
        contact_id="c-1",
        customer_email="alice@example.com",
        customer_name="Alice",
        agent_name="Bob",
    )


@pytest.fixture(params=["memory", "sql"])
def store_factory(request, tmp_path):
    """Yields an async factory returning a started store."""

    async def build():
        if request.param == "memory":
            return InMemoryOutcomeStore()
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'outcomes.db'}")
        store = SqlOutcomeStore(engine, build_session_factory(engine))
        await store.create_schema()
        await store.start()
        return store

    return build


def test_create_or_get_inserts_once(store_factory) -> None:
    async def scenario():
        store = await store_factory()
        try:
            first, created_first = await store.create_or_get(_record())
            second, created_second = await store.create_or_get(_record())
            return first, created_first, second, created_second, await store.get_stats()
        finally:
            await store.close()

    first, created_first, second, created_second, stats = asyncio.run(scenario())

    assert created_first is True
    assert created_second is False
    assert first.status == InvitationStatus.PENDING
    assert second.conversation_id == "conv-1"
    assert second.retry_count == 0
    assert stats.total_invites == 1


def test_retry_then_success_updates_counters(store_factory) -> None:
    async def scenario():
        store = await store_factory()
        try:
            await store.create_or_get(_record())
            retrying = await store.mark_retrying(
                "conv-1", "timeout", FIXED_NOW + timedelta(seconds=5), response_log={"error": "TransientError"}
            )
            success = await store.mark_success("conv-1", "inv-9", response_log={"id": "inv-9"})
            return retrying, success, await store.get_stats()
        finally:
            await store.close()

    retrying, success, stats = asyncio.run(scenario())

    assert retrying.status == InvitationStatus.RETRYING
    assert retrying.retry_count == 1
    assert retrying.next_retry_at == FIXED_NOW + timedelta(seconds=5)
    assert success.status == InvitationStatus.SUCCESS
    assert success.retry_count == 1
    assert success.external_invitation_id == "inv-9"
    assert success.next_retry_at is None
    assert success.response_log == {"id": "inv-9"}
    assert stats.successful_invites == 1
    assert stats.failed_invites == 0


def test_terminal_status_is_sticky(store_factory) -> None:
    async def scenario():
        store = await store_factory()
        try:
            await store.create_or_get(_record())
            await store.mark_failed("conv-1", "rejected", count_retry=True)
            late_success = await store.mark_success("conv-1", "inv-late")
            late_failure = await store.mark_failed("conv-1", "again")
            late_retry = await store.mark_retrying("conv-1", "again", FIXED_NOW)
            return late_success, late_failure, late_retry, await store.get("conv-1"), await store.get_stats()
        finally:
            await store.close()

    late_success, late_failure, late_retry, attempt, stats = asyncio.run(scenario())

    assert late_success is None
    assert late_failure is None
    assert late_retry is None
    assert attempt.status == InvitationStatus.FAILED
    assert attempt.retry_count == 1
    assert attempt.error_message == "rejected"
    assert stats.failed_invites == 1
    assert stats.successful_invites == 0


def test_record_fallback_merges_into_response_log(store_factory) -> None:
    async def scenario():
        store = await store_factory()
        try:
            await store.create_or_get(_record())
            await store.mark_failed("conv-1", "rejected", response_log={"status_code": 400})
            return await store.record_fallback("conv-1", {"success": True, "message_id": "<m@x>", "error": None})
        finally:
            await store.close()

    attempt = asyncio.run(scenario())

    assert attempt.status == InvitationStatus.FAILED
    assert attempt.response_log == {
        "status_code": 400,
        "fallback": {"success": True, "message_id": "<m@x>", "error": None},
    }


def test_list_active_and_update_contact(store_factory) -> None:
    async def scenario():
        store = await store_factory()
        try:
            for conversation_id in ("conv-1", "conv-2", "conv-3"):
                await store.create_or_get(_record(conversation_id))
            await store.mark_success("conv-2", "inv-2")
            updated = await store.update_contact("conv-3", "carol@example.com", "Carol")
            active = await store.list_active()
            listed = await store.list_attempts(limit=10)
            return updated, active, listed
        finally:
            await store.close()

    updated, active, listed = asyncio.run(scenario())

    assert updated.customer_email == "carol@example.com"
    assert updated.customer_name == "Carol"
    assert sorted(a.conversation_id for a in active) == ["conv-1", "conv-3"]
    assert sorted(a.conversation_id for a in listed) == ["conv-1", "conv-2", "conv-3"]


def test_ping(store_factory) -> None:
    async def scenario():
        store = await store_factory()
        try:
            return await store.ping()
        finally:
            await store.close()

    assert asyncio.run(scenario()) is True


def test_memory_listing_is_newest_first_with_paging() -> None:
    store = InMemoryOutcomeStore()

    async def scenario():
        for conversation_id in ("conv-1", "conv-2", "conv-3"):
            await store.create_or_get(_record(conversation_id))
        return await store.list_attempts(limit=2), await store.list_attempts(limit=2, offset=2)

    first_page, second_page = asyncio.run(scenario())

    assert [a.conversation_id for a in first_page] == ["conv-3", "conv-2"]
    assert [a.conversation_id for a in second_page] == ["conv-1"]


def test_memory_reset_clears_records_and_counters() -> None:
    store = InMemoryOutcomeStore()
    asyncio.run(store.create_or_get(_record()))

    store.reset()

    assert asyncio.run(store.get("conv-1")) is None
    assert asyncio.run(store.get_stats()).total_invites == 0


def test_stats_to_dict_reports_in_flight() -> None:
    store = InMemoryOutcomeStore()

    async def scenario():
        await store.create_or_get(_record("conv-1"))
        await store.create_or_get(_record("conv-2"))
        await store.mark_success("conv-1", "inv-1")
        return (await store.get_stats()).to_dict()

    stats = asyncio.run(scenario())

    assert stats["total_invites"] == 2
    assert stats["successful_invites"] == 1
    assert stats["in_flight_invites"] == 1
    assert stats["last_updated"] is not None


def test_concurrent_create_or_get_inserts_once(store_factory) -> None:
    async def scenario():
        store = await store_factory()
        try:
            results = await asyncio.gather(*(store.create_or_get(_record()) for _ in range(5)))
            return results, await store.get_stats()
        finally:
            await store.close()

    results, stats = asyncio.run(scenario())

    assert [created for _, created in results].count(True) == 1
    assert {attempt.conversation_id for attempt, _ in results} == {"conv-1"}
    assert stats.total_invites == 1


def test_record_fallback_touches_updated_at(store_factory, monkeypatch) -> None:
    ticks = iter(FIXED_NOW + timedelta(seconds=n) for n in range(100))
    monkeypatch.setattr("app.services.outcome_store.utcnow", lambda: next(ticks))

    async def scenario():
        store = await store_factory()
        try:
            await store.create_or_get(_record())
            failed = await store.mark_failed("conv-1", "rejected")
            fallback = await store.record_fallback("conv-1", {"success": False, "message_id": None, "error": "smtp down"})
            return failed, fallback
        finally:
            await store.close()

    failed, fallback = asyncio.run(scenario())

    assert fallback.updated_at > failed.updated_at
    assert fallback.status == InvitationStatus.FAILED
