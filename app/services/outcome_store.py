"""
Outcome Store

Durable record of invitation attempts plus aggregate counters. One
interface, two variants: InMemoryOutcomeStore for tests and
single-process runs, SqlOutcomeStore for production. The variant is
chosen at process start and never mixed.

Every status transition is a compare-and-swap from an active status
(pending/retrying). Counters move in the same step as the transition
that caused them, so successful + failed <= total always holds.
"""
import abc
import copy
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.errors import StoreError
from app.models.base import Base, utcnow
from app.models.invitation import ACTIVE_STATUSES, InvitationAttempt, InvitationStatus
from app.models.stats import STATS_ROW_ID, SystemStats


@dataclass(frozen=True)
class InvitationRecord:
    """Store-agnostic snapshot of an invitation attempt."""
    conversation_id: str
    contact_id: str
    customer_email: str
    customer_name: str
    agent_name: str
    status: InvitationStatus = InvitationStatus.PENDING
    retry_count: int = 0
    error_message: str | None = None
    external_invitation_id: str | None = None
    response_log: dict[str, Any] | None = None
    next_retry_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict:
        return {
            "conversation_id": self.conversation_id,
            "contact_id": self.contact_id,
            "customer_email": self.customer_email,
            "customer_name": self.customer_name,
            "agent_name": self.agent_name,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "external_invitation_id": self.external_invitation_id,
            "response_log": self.response_log,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class StatsSnapshot:
    total_invites: int = 0
    successful_invites: int = 0
    failed_invites: int = 0
    last_updated: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "total_invites": self.total_invites,
            "successful_invites": self.successful_invites,
            "failed_invites": self.failed_invites,
            "in_flight_invites": self.total_invites - self.successful_invites - self.failed_invites,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }


class OutcomeStore(abc.ABC):
    """Persistence interface used by the orchestrator and query routes."""

    async def start(self) -> None:
        """Prepare the backend (idempotent)."""

    async def close(self) -> None:
        """Release backend resources."""

    @abc.abstractmethod
    async def create_or_get(self, record: InvitationRecord) -> tuple[InvitationRecord, bool]:
        """
        Insert a new pending attempt and bump total_invites, or return
        the existing attempt for the conversation.

        Returns:
            (attempt, created)
        """

    @abc.abstractmethod
    async def get(self, conversation_id: str) -> InvitationRecord | None:
        ...

    @abc.abstractmethod
    async def update_contact(self, conversation_id: str, email: str, name: str) -> InvitationRecord | None:
        """Store resolved contact details on an active attempt."""

    @abc.abstractmethod
    async def mark_retrying(
        self,
        conversation_id: str,
        error_message: str,
        next_retry_at: datetime,
        response_log: dict | None = None,
    ) -> InvitationRecord | None:
        """Increment retry_count and set status=retrying."""

    @abc.abstractmethod
    async def mark_success(
        self,
        conversation_id: str,
        external_invitation_id: str,
        response_log: dict | None = None,
    ) -> InvitationRecord | None:
        ...

    @abc.abstractmethod
    async def mark_failed(
        self,
        conversation_id: str,
        error_message: str,
        response_log: dict | None = None,
        count_retry: bool = False,
    ) -> InvitationRecord | None:
        """Terminal failure; count_retry also increments retry_count."""

    @abc.abstractmethod
    async def record_fallback(self, conversation_id: str, outcome: dict) -> InvitationRecord | None:
        """Merge the fallback email outcome into response_log. Status is untouched."""

    @abc.abstractmethod
    async def list_attempts(self, limit: int = 50, offset: int = 0) -> list[InvitationRecord]:
        """Attempts, newest first."""

    @abc.abstractmethod
    async def list_active(self) -> list[InvitationRecord]:
        """Attempts still pending or retrying, oldest first."""

    @abc.abstractmethod
    async def get_stats(self) -> StatsSnapshot:
        ...

    @abc.abstractmethod
    async def ping(self) -> bool:
        ...


def _merge_fallback(response_log: dict | None, outcome: dict) -> dict:
    merged = dict(response_log or {})
    merged["fallback"] = outcome
    return merged


class InMemoryOutcomeStore(OutcomeStore):
    """Thread-safe in-memory store. The lock is never held across an await."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._records: dict[str, InvitationRecord] = {}
            self._stats = StatsSnapshot(last_updated=utcnow())

    def _bump(self, total: int = 0, successful: int = 0, failed: int = 0) -> None:
        self._stats = StatsSnapshot(
            total_invites=self._stats.total_invites + total,
            successful_invites=self._stats.successful_invites + successful,
            failed_invites=self._stats.failed_invites + failed,
            last_updated=utcnow(),
        )

    def _transition(self, conversation_id: str, **changes) -> InvitationRecord | None:
        existing = self._records.get(conversation_id)
        if existing is None or existing.status not in ACTIVE_STATUSES:
            return None
        updated = replace(existing, updated_at=utcnow(), **changes)
        self._records[conversation_id] = updated
        return updated

    async def create_or_get(self, record: InvitationRecord) -> tuple[InvitationRecord, bool]:
        with self._lock:
            existing = self._records.get(record.conversation_id)
            if existing is not None:
                return existing, False
            now = utcnow()
            created = replace(
                record,
                status=InvitationStatus.PENDING,
                retry_count=0,
                created_at=now,
                updated_at=now,
            )
            self._records[record.conversation_id] = created
            self._bump(total=1)
            return created, True

    async def get(self, conversation_id: str) -> InvitationRecord | None:
        with self._lock:
            return self._records.get(conversation_id)

    async def update_contact(self, conversation_id, email, name):
        with self._lock:
            return self._transition(conversation_id, customer_email=email, customer_name=name)

    async def mark_retrying(self, conversation_id, error_message, next_retry_at, response_log=None):
        with self._lock:
            existing = self._records.get(conversation_id)
            if existing is None:
                return None
            return self._transition(
                conversation_id,
                status=InvitationStatus.RETRYING,
                retry_count=existing.retry_count + 1,
                error_message=error_message,
                next_retry_at=next_retry_at,
                response_log=copy.deepcopy(response_log),
            )

    async def mark_success(self, conversation_id, external_invitation_id, response_log=None):
        with self._lock:
            updated = self._transition(
                conversation_id,
                status=InvitationStatus.SUCCESS,
                external_invitation_id=external_invitation_id,
                error_message=None,
                next_retry_at=None,
                response_log=copy.deepcopy(response_log),
            )
            if updated is not None:
                self._bump(successful=1)
            return updated

    async def mark_failed(self, conversation_id, error_message, response_log=None, count_retry=False):
        with self._lock:
            existing = self._records.get(conversation_id)
            if existing is None:
                return None
            updated = self._transition(
                conversation_id,
                status=InvitationStatus.FAILED,
                retry_count=existing.retry_count + (1 if count_retry else 0),
                error_message=error_message,
                next_retry_at=None,
                response_log=copy.deepcopy(response_log),
            )
            if updated is not None:
                self._bump(failed=1)
            return updated

    async def record_fallback(self, conversation_id, outcome):
        with self._lock:
            existing = self._records.get(conversation_id)
            if existing is None:
                return None
            updated = replace(
                existing,
                response_log=_merge_fallback(existing.response_log, outcome),
                updated_at=utcnow(),
            )
            self._records[conversation_id] = updated
            return updated

    async def list_attempts(self, limit=50, offset=0):
        with self._lock:
            # insertion order breaks created_at ties
            records = list(reversed(self._records.values()))
        records.sort(key=lambda record: record.created_at, reverse=True)
        return records[offset:offset + limit]

    async def list_active(self):
        with self._lock:
            records = [r for r in self._records.values() if r.status in ACTIVE_STATUSES]
        return sorted(records, key=lambda record: record.created_at)

    async def get_stats(self):
        with self._lock:
            return self._stats

    async def ping(self):
        return True


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round-trip
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_record(row: InvitationAttempt) -> InvitationRecord:
    return InvitationRecord(
        conversation_id=row.conversation_id,
        contact_id=row.contact_id,
        customer_email=row.customer_email,
        customer_name=row.customer_name,
        agent_name=row.agent_name,
        status=InvitationStatus(row.status),
        retry_count=row.retry_count,
        error_message=row.error_message,
        external_invitation_id=row.external_invitation_id,
        response_log=row.response_log,
        next_retry_at=_aware(row.next_retry_at),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


class SqlOutcomeStore(OutcomeStore):
    """
    SQLAlchemy-backed store.

    Each operation runs in its own short transaction; no session is kept
    open across network calls made by the orchestrator. SQLAlchemy errors
    surface as StoreError.
    """

    def __init__(self, engine: AsyncEngine, session_factory: async_sessionmaker[AsyncSession]):
        self.engine = engine
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self):
        try:
            async with self.session_factory() as db:
                yield db
        except SQLAlchemyError as e:
            raise StoreError(f"Outcome store unavailable: {e}") from e

    async def create_schema(self) -> None:
        """Create tables (bootstrap / tests)."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StoreError(f"Schema creation failed: {e}") from e

    async def start(self) -> None:
        """Ensure the single stats row exists."""
        async with self._session() as db:
            if await db.get(SystemStats, STATS_ROW_ID) is None:
                db.add(SystemStats(id=STATS_ROW_ID))
                try:
                    await db.commit()
                except IntegrityError:
                    # another process created it first
                    await db.rollback()

    async def close(self) -> None:
        await self.engine.dispose()

    async def _bump(self, db: AsyncSession, total: int = 0, successful: int = 0, failed: int = 0) -> None:
        stmt = (
            update(SystemStats)
            .where(SystemStats.id == STATS_ROW_ID)
            .values(
                total_invites=SystemStats.total_invites + total,
                successful_invites=SystemStats.successful_invites + successful,
                failed_invites=SystemStats.failed_invites + failed,
                last_updated=utcnow(),
            )
        )
        result = await db.execute(stmt)
        if result.rowcount == 0:
            db.add(SystemStats(
                id=STATS_ROW_ID,
                total_invites=total,
                successful_invites=successful,
                failed_invites=failed,
            ))

    async def _get_row(self, db: AsyncSession, conversation_id: str) -> InvitationAttempt | None:
        stmt = select(InvitationAttempt).where(InvitationAttempt.conversation_id == conversation_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def _transition(
        self,
        conversation_id: str,
        values: dict,
        successful: int = 0,
        failed: int = 0,
    ) -> InvitationRecord | None:
        async with self._session() as db:
            stmt = (
                update(InvitationAttempt)
                .where(
                    InvitationAttempt.conversation_id == conversation_id,
                    InvitationAttempt.status.in_(list(ACTIVE_STATUSES)),
                )
                .values(updated_at=utcnow(), **values)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount != 1:
                await db.rollback()
                return None
            if successful or failed:
                await self._bump(db, successful=successful, failed=failed)
            await db.commit()
            row = await self._get_row(db, conversation_id)
            return _to_record(row) if row else None

    async def create_or_get(self, record):
        async with self._session() as db:
            row = InvitationAttempt(
                conversation_id=record.conversation_id,
                contact_id=record.contact_id,
                customer_email=record.customer_email,
                customer_name=record.customer_name,
                agent_name=record.agent_name,
                status=InvitationStatus.PENDING,
                retry_count=0,
            )
            db.add(row)
            try:
                await db.flush()
                await self._bump(db, total=1)
                await db.commit()
                return _to_record(row), True
            except IntegrityError:
                # lost the race (or redelivery): read the winner's row
                await db.rollback()

            existing = await self._get_row(db, record.conversation_id)
            if existing is None:
                raise StoreError(f"Attempt for {record.conversation_id} vanished after conflict")
            return _to_record(existing), False

    async def get(self, conversation_id):
        async with self._session() as db:
            row = await self._get_row(db, conversation_id)
            return _to_record(row) if row else None

    async def update_contact(self, conversation_id, email, name):
        return await self._transition(conversation_id, {"customer_email": email, "customer_name": name})

    async def mark_retrying(self, conversation_id, error_message, next_retry_at, response_log=None):
        return await self._transition(conversation_id, {
            "status": InvitationStatus.RETRYING,
            "retry_count": InvitationAttempt.retry_count + 1,
            "error_message": error_message,
            "next_retry_at": next_retry_at,
            "response_log": response_log,
        })

    async def mark_success(self, conversation_id, external_invitation_id, response_log=None):
        return await self._transition(
            conversation_id,
            {
                "status": InvitationStatus.SUCCESS,
                "external_invitation_id": external_invitation_id,
                "error_message": None,
                "next_retry_at": None,
                "response_log": response_log,
            },
            successful=1,
        )

    async def mark_failed(self, conversation_id, error_message, response_log=None, count_retry=False):
        values = {
            "status": InvitationStatus.FAILED,
            "error_message": error_message,
            "next_retry_at": None,
            "response_log": response_log,
        }
        if count_retry:
            values["retry_count"] = InvitationAttempt.retry_count + 1
        return await self._transition(conversation_id, values, failed=1)

    async def record_fallback(self, conversation_id, outcome):
        async with self._session() as db:
            row = await self._get_row(db, conversation_id)
            if row is None:
                return None
            row.response_log = _merge_fallback(row.response_log, outcome)
            row.updated_at = utcnow()
            await db.commit()
            return _to_record(row)

    async def list_attempts(self, limit=50, offset=0):
        async with self._session() as db:
            stmt = (
                select(InvitationAttempt)
                .order_by(InvitationAttempt.created_at.desc(), InvitationAttempt.id.desc())
                .limit(limit)
                .offset(offset)
            )
            result = await db.execute(stmt)
            return [_to_record(row) for row in result.scalars().all()]

    async def list_active(self):
        async with self._session() as db:
            stmt = (
                select(InvitationAttempt)
                .where(InvitationAttempt.status.in_(list(ACTIVE_STATUSES)))
                .order_by(InvitationAttempt.created_at.asc())
            )
            result = await db.execute(stmt)
            return [_to_record(row) for row in result.scalars().all()]

    async def get_stats(self):
        async with self._session() as db:
            row = await db.get(SystemStats, STATS_ROW_ID)
            if row is None:
                return StatsSnapshot()
            return StatsSnapshot(
                total_invites=row.total_invites,
                successful_invites=row.successful_invites,
                failed_invites=row.failed_invites,
                last_updated=_aware(row.last_updated),
            )

    async def ping(self):
        try:
            async with self._session() as db:
                await db.execute(text("SELECT 1"))
        except StoreError:
            return False
        return True
