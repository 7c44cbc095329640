"""
Request pipeline stages.

A request travels through one middleware chain, outermost first:

    Fallback -> Session -> Cache -> Dedup -> Retry -> Auth -> transport

Queue replays use the same chain without the Fallback stage, so a replay is
never queued again but a 401 still clears the session.

Each stage receives the shared RequestContext and the next stage, returns an
Ok (or Queued, from the fallback stage) and raises ServiceError subclasses.
Request-time and response-time cache handling live in the same stage, so
they cannot drift apart.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from functools import reduce
from typing import Any, Awaitable, Callable, Protocol

from loguru import logger

from expense_sync.datastore.storage import StorageError
from expense_sync.services.cache import CacheManager, CacheResult
from expense_sync.services.connectivity import ConnectivityMonitor
from expense_sync.services.credentials import CredentialStore
from expense_sync.services.deduplicator import RequestDeduplicator
from expense_sync.services.errors import (
    TRANSIENT_ERRORS,
    NetworkUnavailableError,
    RateLimitError,
    ServiceError,
    UnauthorizedError,
)
from expense_sync.services.offline_queue import WRITE_METHODS, OfflineQueue
from expense_sync.services.results import Ok, Queued


@dataclass
class RequestContext:
    """Everything the stages know about one logical request."""

    method: str
    path: str
    params: dict[str, Any] | None = None
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    use_cache: bool = True
    max_age: timedelta = timedelta(seconds=30)
    cache_key: str = ""
    attempts: int = 0
    authorization: str | None = None
    stale: CacheResult[Any] | None = None

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        if not self.cache_key:
            self.cache_key = CacheManager.generate_key(self.path, self.params)

    @property
    def is_write(self) -> bool:
        return self.method in WRITE_METHODS

    @property
    def dedup_key(self) -> str:
        return f"{self.method}:{self.cache_key}"


Handler = Callable[[RequestContext], Awaitable[Ok[Any] | Queued]]


class Middleware(Protocol):
    async def __call__(
        self, ctx: RequestContext, call_next: Handler
    ) -> Ok[Any] | Queued: ...


def build_chain(middlewares: list[Middleware], terminal: Handler) -> Handler:
    """Compose stages so that middlewares[0] runs first."""

    def wrap(inner: Handler, middleware: Middleware) -> Handler:
        async def handler(ctx: RequestContext) -> Ok[Any] | Queued:
            return await middleware(ctx, inner)

        return handler

    return reduce(wrap, reversed(middlewares), terminal)


class FallbackMiddleware:
    """Decides what a failure turns into once retries are exhausted."""

    def __init__(self, queue: OfflineQueue, connectivity: ConnectivityMonitor):
        self._queue = queue
        self._connectivity = connectivity

    async def __call__(
        self, ctx: RequestContext, call_next: Handler
    ) -> Ok[Any] | Queued:
        try:
            return await call_next(ctx)

        except NetworkUnavailableError as e:
            if not ctx.is_write:
                logger.error(f"Network error on {ctx.method} {ctx.path}: {e}")
                raise

            if not await self._connectivity.confirm_offline():
                logger.error(f"Write {ctx.method} {ctx.path} failed while online: {e}")
                raise

            try:
                queue_id = await self._queue.enqueue(
                    ctx.method, ctx.path, ctx.body, ctx.headers
                )
            except StorageError as storage_error:
                logger.error(f"Could not queue {ctx.method} {ctx.path}: {storage_error}")
                raise e from storage_error

            logger.warning(f"Offline, {ctx.method} {ctx.path} queued as {queue_id}")
            return Queued(queue_id=queue_id)

        except RateLimitError as e:
            if ctx.stale is not None and not ctx.is_write:
                logger.warning(
                    f"Rate limited on {ctx.path}, returning stale data: {e}"
                )
                return Ok(data=ctx.stale.data, from_cache="stale", is_stale=True)
            logger.error(f"Rate limited on {ctx.path}, no cached copy: {e}")
            raise

        except ServiceError as e:
            logger.error(f"{ctx.method} {ctx.path} failed: {e}")
            raise


class SessionMiddleware:
    """Clears stored credentials when the server rejects them."""

    def __init__(self, credentials: CredentialStore, session_check_path: str = "/auth/me"):
        self._credentials = credentials
        self._session_check_path = session_check_path

    async def __call__(
        self, ctx: RequestContext, call_next: Handler
    ) -> Ok[Any] | Queued:
        try:
            return await call_next(ctx)
        except UnauthorizedError:
            # A failed session check is how login state is probed
            if ctx.path != self._session_check_path:
                logger.warning(f"Unauthorized on {ctx.path}, clearing credentials")
                await self._credentials.clear()
            raise


class CacheMiddleware:
    """Serves fresh reads from cache, stores read results, invalidates on writes."""

    def __init__(self, cache: CacheManager, stale_max_age: timedelta):
        self._cache = cache
        self._stale_max_age = stale_max_age

    async def __call__(
        self, ctx: RequestContext, call_next: Handler
    ) -> Ok[Any] | Queued:
        if ctx.is_write:
            result = await call_next(ctx)
            removed = self._cache.invalidate_all()
            logger.debug(f"{ctx.method} {ctx.path} succeeded, {removed} cache entries invalidated")
            return result

        if not ctx.use_cache:
            return await call_next(ctx)

        cached = self._cache.lookup(ctx.cache_key, ctx.max_age, self._stale_max_age)
        if cached is not None and not cached.is_stale:
            return Ok(data=cached.data, from_cache=cached.from_cache)

        # Kept for the rate-limit fallback
        ctx.stale = cached

        result = await call_next(ctx)
        if isinstance(result, Ok):
            self._cache.set_key(ctx.cache_key, result.data)
        return result


class DedupMiddleware:
    """Collapses identical concurrent reads into one call."""

    def __init__(self, deduplicator: RequestDeduplicator):
        self._deduplicator = deduplicator

    async def __call__(
        self, ctx: RequestContext, call_next: Handler
    ) -> Ok[Any] | Queued:
        if ctx.is_write:
            return await call_next(ctx)
        return await self._deduplicator.dedupe(ctx.dedup_key, lambda: call_next(ctx))


class RetryMiddleware:
    """Retries transient failures a fixed number of times after a fixed delay."""

    def __init__(self, max_retries: int = 1, retry_delay: float = 1.0):
        self._max_retries = max_retries
        self._retry_delay = retry_delay

    async def __call__(
        self, ctx: RequestContext, call_next: Handler
    ) -> Ok[Any] | Queued:
        while True:
            ctx.attempts += 1
            try:
                return await call_next(ctx)
            except TRANSIENT_ERRORS as e:
                if ctx.attempts > self._max_retries:
                    raise
                logger.warning(
                    f"{ctx.method} {ctx.path} failed (attempt {ctx.attempts}), "
                    f"retrying in {self._retry_delay}s: {e}"
                )
                await asyncio.sleep(self._retry_delay)


class AuthMiddleware:
    """Attaches the bearer token."""

    def __init__(self, credentials: CredentialStore):
        self._credentials = credentials

    async def __call__(
        self, ctx: RequestContext, call_next: Handler
    ) -> Ok[Any] | Queued:
        token = self._credentials.token
        ctx.authorization = f"Bearer {token}" if token else None
        return await call_next(ctx)
