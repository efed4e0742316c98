"""
Invitation task queue.

Every dispatch step (the first one and each retry) is a queued task
with an eligibility time. ArqRetryQueue hands tasks to the ARQ worker
through Redis, so scheduled retries survive a restart of the web
process. InMemoryRetryQueue keeps tasks in a heap and runs a polling
worker loop; it is used by tests and single-process deployments.
"""
import abc
import asyncio
import heapq
import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings

from app.errors import StoreError
from app.logging_config import get_logger
from app.models.base import utcnow
from app.sentry_config import capture_exception


PROCESS_FUNCTION = "process_invitation"

# Delay before a step that hit a store outage runs again
STORE_RETRY_DEFER = 5

log = get_logger(component="retry_queue")

TaskHandler = Callable[[str], Awaitable[object]]


def task_id(conversation_id: str, attempt: int) -> str:
    """Stable id so a re-enqueue of the same step is a no-op."""
    return f"invitation:{conversation_id}:{attempt}"


class RetryQueue(abc.ABC):
    """Queue of dispatch steps keyed by conversation."""

    @abc.abstractmethod
    async def enqueue(self, conversation_id: str, eligible_at: datetime, attempt: int = 0) -> bool:
        """Schedule a dispatch step. Returns False if it was already queued."""

    async def close(self) -> None:
        pass


class ArqRetryQueue(RetryQueue):
    """ARQ/Redis-backed queue consumed by app.worker.WorkerSettings."""

    def __init__(self, redis_url: str, pool: ArqRedis | None = None):
        self.redis_url = redis_url
        self._pool = pool
        # a pool handed in (e.g. by the ARQ worker) is closed by its owner
        self._owns_pool = pool is None

    async def get_pool(self) -> ArqRedis:
        if self._pool is None:
            self._pool = await create_pool(RedisSettings.from_dsn(self.redis_url))
        return self._pool

    async def enqueue(self, conversation_id, eligible_at, attempt=0):
        pool = await self.get_pool()
        job = await pool.enqueue_job(
            PROCESS_FUNCTION,
            conversation_id,
            _job_id=task_id(conversation_id, attempt),
            _defer_until=eligible_at,
        )
        if job is None:
            log.info("task_already_queued", conversation_id=conversation_id, attempt=attempt)
            return False
        log.info("task_enqueued", conversation_id=conversation_id, attempt=attempt, eligible_at=eligible_at.isoformat())
        return True

    async def close(self):
        if self._pool is not None and self._owns_pool:
            await self._pool.close()
            self._pool = None


@dataclass(order=True)
class QueuedTask:
    eligible_at: datetime
    sequence: int
    conversation_id: str = field(compare=False)
    attempt: int = field(compare=False, default=0)

    @property
    def id(self) -> str:
        return task_id(self.conversation_id, self.attempt)


class InMemoryRetryQueue(RetryQueue):
    """Heap of tasks ordered by eligibility time."""

    def __init__(self, clock: Callable[[], datetime] = utcnow, poll_interval: float = 0.5):
        self._clock = clock
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._heap: list[QueuedTask] = []
        self._ids: set[str] = set()
        self._sequence = itertools.count()
        self._wakeup: asyncio.Event | None = None

    async def enqueue(self, conversation_id, eligible_at, attempt=0):
        task = QueuedTask(eligible_at, next(self._sequence), conversation_id, attempt)
        with self._lock:
            if task.id in self._ids:
                return False
            self._ids.add(task.id)
            heapq.heappush(self._heap, task)
        if self._wakeup is not None:
            self._wakeup.set()
        log.info("task_enqueued", conversation_id=conversation_id, attempt=attempt, eligible_at=eligible_at.isoformat())
        return True

    def pending(self) -> list[QueuedTask]:
        """Snapshot of queued tasks, soonest first."""
        with self._lock:
            return sorted(self._heap)

    def pop_due(self, now: datetime | None = None) -> list[QueuedTask]:
        """Remove and return every task eligible at ``now``."""
        now = now or self._clock()
        due = []
        with self._lock:
            while self._heap and self._heap[0].eligible_at <= now:
                task = heapq.heappop(self._heap)
                self._ids.discard(task.id)
                due.append(task)
        return due

    async def run_due(self, handler: TaskHandler, now: datetime | None = None) -> int:
        """
        Run eligible tasks once. Returns the number executed.

        A task that hits a store outage is put back, eligible again after
        STORE_RETRY_DEFER seconds; any other exception drops the task.
        """
        now = now or self._clock()
        executed = 0
        for task in self.pop_due(now):
            try:
                await handler(task.conversation_id)
            except StoreError as e:
                log.error("task_store_unavailable", conversation_id=task.conversation_id, error=str(e))
                capture_exception(e, conversation_id=task.conversation_id)
                await self.enqueue(
                    task.conversation_id,
                    now + timedelta(seconds=STORE_RETRY_DEFER),
                    attempt=task.attempt,
                )
            except Exception:
                log.exception("task_failed", conversation_id=task.conversation_id, attempt=task.attempt)
            executed += 1
        return executed

    async def drain(self, handler: TaskHandler, max_rounds: int = 100) -> int:
        """
        Run tasks until the queue is empty, ignoring eligibility times.
        Retries enqueued by the handler are picked up in later rounds.
        """
        executed = 0
        for _ in range(max_rounds):
            with self._lock:
                if not self._heap:
                    break
                latest = max(task.eligible_at for task in self._heap)
            executed += await self.run_due(handler, now=latest)
        return executed

    async def run_forever(self, handler: TaskHandler) -> None:
        """Worker loop: execute tasks as they become eligible."""
        self._wakeup = asyncio.Event()
        log.info("memory_worker_started")
        while True:
            self._wakeup.clear()
            await self.run_due(handler)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
