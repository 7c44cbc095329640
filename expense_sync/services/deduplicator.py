"""
Pending-request registry.

Reads that are identical (same method, path and parameters) and overlap in
time share a single network call. The registry maps a request key to the task
doing the work; it holds an entry only while that task is running.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class PendingRequest:
    """A registered task and the number of callers awaiting it."""

    key: str
    task: asyncio.Future[Any]
    waiters: int = 0


class RequestDeduplicator:
    """
    Collapses overlapping identical reads into one task.

    Usage:
        registry = RequestDeduplicator()
        summary = await registry.dedupe("GET:/summary", fetch_summary)

    Every caller waits on the shared task through asyncio.shield. A caller
    that is cancelled simply stops waiting; the task itself is cancelled
    only when nobody is left waiting for it.
    """

    def __init__(self, debug: bool = False):
        self._pending: dict[str, PendingRequest] = {}
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        """Return the result of the task registered under key, starting it if needed."""
        # No await between lookup and registration
        pending = self._pending.get(key)
        if pending is None:
            pending = self._register(key, request_fn)
        else:
            self._stats.joined += 1
            self._log(f"JOIN: {key[:50]} ({pending.waiters} already waiting)")

        pending.waiters += 1
        try:
            return await asyncio.shield(pending.task)
        finally:
            pending.waiters -= 1
            if not pending.waiters and not pending.task.done():
                self._stats.aborted += 1
                self._log(f"ABORT: no waiters left for {key[:50]}")
                # Unregister first so a later caller starts a fresh task
                if self._pending.get(key) is pending:
                    del self._pending[key]
                pending.task.cancel()

    def _register(
        self, key: str, request_fn: Callable[[], Awaitable[Any]]
    ) -> PendingRequest:
        pending = PendingRequest(key=key, task=asyncio.ensure_future(request_fn()))
        pending.task.add_done_callback(lambda _: self._settled(pending))
        self._pending[key] = pending
        self._stats.started += 1
        self._log(f"START: {key[:50]}")
        return pending

    def _settled(self, pending: PendingRequest) -> None:
        # A cancel() may already have replaced or dropped the entry
        if self._pending.get(pending.key) is pending:
            del self._pending[pending.key]
        if not pending.task.cancelled() and pending.task.exception() is not None:
            self._log(f"FAILED: {pending.key[:50]}")

    def cancel(self, key: str) -> bool:
        """Cancel the task registered under key, if any."""
        pending = self._pending.pop(key, None)
        if pending is None:
            return False
        pending.task.cancel()
        return True

    def cancel_all(self) -> int:
        """Cancel every registered task. Returns how many were cancelled."""
        pending, self._pending = list(self._pending.values()), {}
        for entry in pending:
            entry.task.cancel()
        if pending:
            logger.debug(f"Cancelled {len(pending)} pending requests")
        return len(pending)

    def get_in_flight_count(self) -> int:
        return len(self._pending)

    def get_stats(self) -> "DeduplicatorStats":
        self._stats.in_flight = len(self._pending)
        return self._stats

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[RequestDeduplicator] {message}")


@dataclass
class DeduplicatorStats:
    """Counters for the registry."""

    started: int = 0  # tasks actually created
    joined: int = 0  # callers that reused a running task
    aborted: int = 0  # tasks cancelled because every waiter left
    in_flight: int = 0

    @property
    def saved_ratio(self) -> float:
        calls = self.started + self.joined
        return self.joined / calls if calls else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started": self.started,
            "joined": self.joined,
            "aborted": self.aborted,
            "in_flight": self.in_flight,
            "saved_ratio": round(self.saved_ratio, 4),
        }
