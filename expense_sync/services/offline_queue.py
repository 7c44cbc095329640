"""
OfflineQueue - Durable, ordered queue of writes made while offline.

Lifecycle of a queued request:
- Queued: captured after a write failed with connectivity confirmed lost
- Replaying: sent again during a drain, in original insertion order
- Completed: replay succeeded, request removed
- Requeued: replay failed, request kept for the next drain
- Dropped: replay failed and the request is older than max_age

The queue is loaded once at startup and written back after every mutation.
"""

import asyncio
import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from expense_sync.datastore.storage import KeyValueStorage, StorageError
from expense_sync.services.connectivity import ConnectivityMonitor

QUEUE_KEY = "offline-request-queue"
DRAIN_JOB_ID = "offline_queue_drain"
WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return f"{time.time_ns()}-{uuid.uuid4().hex[:8]}"


class QueuedRequest(BaseModel):
    """Everything needed to replay a write later."""

    id: str
    timestamp: datetime
    method: str
    url: str
    body: Any = None
    headers: dict[str, str] = Field(default_factory=dict)

    def age(self, now: datetime) -> timedelta:
        return now - self.timestamp


class DrainError(BaseModel):
    id: str
    error: str
    dropped: bool = False


class DrainResult(BaseModel):
    processed: int = 0
    failed: int = 0
    errors: list[DrainError] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0


class SyncCompleted(BaseModel):
    """Notification emitted after a drain that did something."""

    processed: int
    failed: int


Executor = Callable[[QueuedRequest], Awaitable[Any]]
SyncListener = Callable[[SyncCompleted], Any]


class OfflineQueue:
    """
    Offline write queue.

    Usage:
        queue = OfflineQueue(storage, executor=client.replay)
        await queue.load()

        queue_id = await queue.enqueue("DELETE", "/expenses/id123")
        ...
        result = await queue.drain()
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        executor: Executor | None = None,
        max_age: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utcnow,
        debug: bool = False,
    ):
        self._storage = storage
        self._executor = executor
        self._max_age = max_age
        self._clock = clock
        self._debug = debug
        self._queue: list[QueuedRequest] = []
        self._listeners: list[SyncListener] = []
        self._drain_lock = asyncio.Lock()
        self._settle_delay = 2.0
        self._scheduler: AsyncIOScheduler | None = None

    def bind_executor(self, executor: Executor) -> None:
        self._executor = executor

    async def load(self) -> None:
        """Load the persisted queue."""
        raw = await self._storage.get(QUEUE_KEY)
        if not raw:
            self._queue = []
            return

        try:
            self._queue = [QueuedRequest.model_validate(item) for item in json.loads(raw)]
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.error(f"Error loading offline queue, starting empty: {e}")
            self._queue = []
            return

        if self._queue:
            logger.info(f"Loaded {len(self._queue)} queued offline requests")

    async def _save(self) -> None:
        payload = json.dumps([item.model_dump(mode="json") for item in self._queue])
        await self._storage.set(QUEUE_KEY, payload)

    async def enqueue(
        self,
        method: str,
        url: str,
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> str:
        """Persist a write for later replay. Returns its queue id."""
        method = method.upper()
        if method not in WRITE_METHODS:
            raise ValueError(f"Only writes can be queued, got {method}")

        item = QueuedRequest(
            id=_new_id(),
            timestamp=self._clock(),
            method=method,
            url=url,
            body=body,
            headers=dict(headers or {}),
        )
        self._queue.append(item)
        await self._save()

        logger.info(f"Request queued for offline sync: {method} {url} ({item.id})")
        return item.id

    async def remove(self, request_id: str) -> None:
        self._queue = [item for item in self._queue if item.id != request_id]
        await self._save()

    async def clear(self) -> None:
        self._queue = []
        await self._save()

    def get_queue(self) -> list[QueuedRequest]:
        return list(self._queue)

    @property
    def size(self) -> int:
        return len(self._queue)

    def has_queued_items(self) -> bool:
        return bool(self._queue)

    async def drain(self) -> DrainResult:
        """
        Replay every queued request in insertion order.

        A failed replay stays queued unless it is older than max_age, in
        which case it is dropped. Failures never stop the remaining replays.
        """
        if self._executor is None:
            raise RuntimeError("OfflineQueue has no executor. Call bind_executor() first.")

        async with self._drain_lock:
            result = DrainResult()
            if not self._queue:
                self._log("No offline requests to sync")
                return result

            logger.info(f"Processing {len(self._queue)} offline requests...")

            for item in list(self._queue):
                try:
                    await self._executor(item)
                except Exception as e:
                    result.failed += 1
                    dropped = item.age(self._clock()) > self._max_age
                    result.errors.append(
                        DrainError(id=item.id, error=str(e), dropped=dropped)
                    )
                    logger.error(f"Failed to sync {item.method} {item.url}: {e}")

                    if dropped:
                        await self._forget(item)
                        logger.warning(f"Removed old failed request: {item.id}")
                    continue

                await self._forget(item)
                result.processed += 1
                self._log(f"Synced offline request: {item.method} {item.url}")

            logger.info(
                f"Offline sync finished: {result.processed} processed, "
                f"{result.failed} failed"
            )

        if result.processed or result.failed:
            await self._notify(
                SyncCompleted(processed=result.processed, failed=result.failed)
            )
        return result

    async def _forget(self, item: QueuedRequest) -> None:
        """Remove a settled item; a failed write-back is retried on the next mutation."""
        try:
            await self.remove(item.id)
        except StorageError as e:
            logger.error(f"Could not persist removal of {item.id}: {e}")

    def subscribe(self, listener: SyncListener) -> Callable[[], None]:
        """Register a sync-completed listener. Returns a function that unregisters it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    async def _notify(self, event: SyncCompleted) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.exception(f"Sync listener failed: {e}")

    def attach(
        self,
        connectivity: ConnectivityMonitor,
        scheduler: AsyncIOScheduler,
        settle_delay: float = 2.0,
    ) -> None:
        """Drain after connectivity comes back and has stayed up for settle_delay."""
        self._scheduler = scheduler
        self._settle_delay = settle_delay
        connectivity.add_listener(self._on_connectivity_change)

    def _on_connectivity_change(self, online: bool) -> None:
        if self._scheduler is None:
            return

        if not online:
            if self._scheduler.get_job(DRAIN_JOB_ID):
                self._scheduler.remove_job(DRAIN_JOB_ID)
                logger.info("Connection dropped again, pending sync cancelled")
            return

        logger.info(
            f"Back online, syncing queued requests in {self._settle_delay}s"
        )
        self._scheduler.add_job(
            self.drain,
            trigger="date",
            run_date=datetime.now() + timedelta(seconds=self._settle_delay),
            id=DRAIN_JOB_ID,
            name="Offline Queue Drain",
            replace_existing=True,
        )

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[OfflineQueue] {message}")
