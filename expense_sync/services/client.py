"""
ApiClient - Resilient async HTTP client for the expense API.

Combines:
- CacheManager for response caching
- RequestDeduplicator for concurrent read collapsing
- Bounded retry of transient failures
- OfflineQueue for writes made while offline
- Stale-cache fallback when rate limited
"""

import asyncio
from datetime import timedelta
from typing import Any

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from expense_sync.datastore.storage import KeyValueStorage, SqlStorage
from expense_sync.services.cache import CacheManager
from expense_sync.services.connectivity import ConnectivityMonitor
from expense_sync.services.credentials import CredentialStore
from expense_sync.services.deduplicator import RequestDeduplicator
from expense_sync.services.errors import (
    ClientError,
    NetworkUnavailableError,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
    ServiceError,
    UnauthorizedError,
)
from expense_sync.services.offline_queue import OfflineQueue, QueuedRequest
from expense_sync.services.pipeline import (
    AuthMiddleware,
    CacheMiddleware,
    DedupMiddleware,
    FallbackMiddleware,
    RequestContext,
    RetryMiddleware,
    SessionMiddleware,
    build_chain,
)
from expense_sync.services.results import Err, Ok, Queued, RequestResult
from expense_sync.settings import Settings, global_settings

CACHE_SWEEP_JOB_ID = "cache_sweep"


class ApiClient:
    """
    Unified HTTP client with caching, deduplication, retry and offline queuing.

    Usage:
        async with ApiClient() as client:
            await client.start()

            # Tagged result, never raises for transport failures
            result = await client.send("GET", "/expenses", params={"page": 1})

            # Raises ServiceError subclasses instead
            ok = await client.get("/summary")
            queued = await client.delete("/expenses/id123")
    """

    def __init__(
        self,
        settings: Settings | None = None,
        storage: KeyValueStorage | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        cache: CacheManager | None = None,
        deduplicator: RequestDeduplicator | None = None,
        queue: OfflineQueue | None = None,
        connectivity: ConnectivityMonitor | None = None,
        credentials: CredentialStore | None = None,
        scheduler: AsyncIOScheduler | None = None,
    ):
        self._settings = settings or global_settings
        debug = self._settings.debug

        self._owns_storage = storage is None
        self._storage = (
            storage
            if storage is not None
            else SqlStorage(self._settings.storage_url, echo=self._settings.storage_echo)
        )
        self._transport = transport

        # Initialize components
        self._cache = (
            cache
            if cache is not None
            else CacheManager(
                max_size=self._settings.cache_max_size,
                max_entry_age=timedelta(seconds=self._settings.cache_max_entry_age),
                debug=debug,
            )
        )
        self._deduplicator = (
            deduplicator if deduplicator is not None else RequestDeduplicator(debug=debug)
        )
        self._credentials = (
            credentials if credentials is not None else CredentialStore(self._storage)
        )
        self._connectivity = (
            connectivity
            if connectivity is not None
            else ConnectivityMonitor(probe=self.probe)
        )
        self._queue = (
            queue
            if queue is not None
            else OfflineQueue(
                self._storage,
                max_age=timedelta(hours=self._settings.queue_max_age_hours),
                debug=debug,
            )
        )
        self._queue.bind_executor(self.replay)

        self._owns_scheduler = scheduler is None
        self._scheduler = scheduler

        # HTTP client (lazy initialization)
        self._http_client: httpx.AsyncClient | None = None

        # Dispatched writes, kept alive past caller cancellation
        self._writes: set[asyncio.Future[Any]] = set()

        stages = [
            SessionMiddleware(
                self._credentials,
                session_check_path=self._settings.session_check_path,
            ),
            CacheMiddleware(
                self._cache,
                stale_max_age=timedelta(seconds=self._settings.cache_stale_max_age),
            ),
            DedupMiddleware(self._deduplicator),
            RetryMiddleware(
                max_retries=self._settings.max_retries,
                retry_delay=self._settings.retry_delay,
            ),
            AuthMiddleware(self._credentials),
        ]
        fallback = FallbackMiddleware(self._queue, self._connectivity)
        self._chain = build_chain([fallback, *stages], self._execute_request)
        # Replays skip the fallback stage so they are never queued again
        self._replay_chain = build_chain(stages, self._execute_request)

    @property
    def cache(self) -> CacheManager:
        return self._cache

    @property
    def deduplicator(self) -> RequestDeduplicator:
        return self._deduplicator

    @property
    def queue(self) -> OfflineQueue:
        return self._queue

    @property
    def connectivity(self) -> ConnectivityMonitor:
        return self._connectivity

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    async def start(self) -> None:
        """Load persisted state and schedule background jobs."""
        await self._storage.init()
        await self._credentials.load()
        await self._queue.load()

        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler()

        self._scheduler.add_job(
            self._sweep_cache,
            trigger="interval",
            seconds=self._settings.cache_sweep_interval,
            id=CACHE_SWEEP_JOB_ID,
            name="Cache Sweep",
            replace_existing=True,
        )
        self._connectivity.start(self._scheduler, self._settings.probe_interval)
        self._queue.attach(
            self._connectivity,
            self._scheduler,
            settle_delay=self._settings.drain_settle_delay,
        )

        if not self._scheduler.running:
            self._scheduler.start()

        logger.info(
            f"ApiClient started against {self._settings.api_url} "
            f"({self._queue.size} queued offline requests)"
        )

    async def _sweep_cache(self) -> None:
        removed = self._cache.sweep()
        if removed:
            logger.debug(f"Cache sweep removed {removed} entries")

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._settings.api_url,
                timeout=httpx.Timeout(self._settings.request_timeout),
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._http_client

    async def send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
        headers: dict[str, str] | None = None,
        use_cache: bool = True,
        max_age: timedelta | None = None,
    ) -> RequestResult:
        """
        Make an HTTP request through the resilience pipeline.

        Args:
            method: HTTP method (GET, POST, etc.)
            path: Path relative to the API base URL
            params: Query parameters
            json_data: JSON body for writes
            headers: Additional headers
            use_cache: Set False to bypass the cache for this read
            max_age: Freshness bound for a cached read (default from settings)

        Returns:
            Ok with the decoded body, Queued for a write captured while
            offline, or Err describing the failure
        """
        ctx = RequestContext(
            method=method,
            path=path,
            params=params,
            body=json_data,
            headers=dict(headers or {}),
            use_cache=use_cache,
            max_age=(
                max_age
                if max_age is not None
                else timedelta(seconds=self._settings.cache_max_age)
            ),
        )

        try:
            if ctx.is_write:
                return await self._dispatch_write(ctx)
            return await self._chain(ctx)
        except ServiceError as e:
            return Err.from_error(e)

    async def _dispatch_write(self, ctx: RequestContext) -> Ok[Any] | Queued:
        """Run a write as a task the caller cannot cancel once dispatched."""
        task = asyncio.ensure_future(self._chain(ctx))
        self._writes.add(task)
        task.add_done_callback(self._write_done)
        return await asyncio.shield(task)

    def _write_done(self, task: asyncio.Future[Any]) -> None:
        self._writes.discard(task)
        if not task.cancelled():
            # Mark retrieved; the pipeline already logged any failure
            task.exception()

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
        headers: dict[str, str] | None = None,
        use_cache: bool = True,
        max_age: timedelta | None = None,
    ) -> Ok[Any] | Queued:
        """
        Same as send(), but raises on failure.

        Raises:
            NetworkUnavailableError: No response reached the client
            RequestTimeoutError: Request timed out
            ServerError: 5xx after retries
            UnauthorizedError: 401 (credentials were cleared)
            RateLimitError: 429 with no stale copy to fall back on
            ClientError: Any other 4xx
        """
        result = await self.send(
            method,
            path,
            params=params,
            json_data=json_data,
            headers=headers,
            use_cache=use_cache,
            max_age=max_age,
        )
        if isinstance(result, Err):
            assert result.error is not None
            raise result.error
        return result

    async def get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        use_cache: bool = True,
        max_age: timedelta | None = None,
    ) -> Ok[Any]:
        result = await self.request(
            "GET", path, params=params, use_cache=use_cache, max_age=max_age
        )
        assert isinstance(result, Ok)
        return result

    async def post(self, path: str, json_data: Any = None) -> Ok[Any] | Queued:
        return await self.request("POST", path, json_data=json_data)

    async def put(self, path: str, json_data: Any = None) -> Ok[Any] | Queued:
        return await self.request("PUT", path, json_data=json_data)

    async def patch(self, path: str, json_data: Any = None) -> Ok[Any] | Queued:
        return await self.request("PATCH", path, json_data=json_data)

    async def delete(self, path: str) -> Ok[Any] | Queued:
        return await self.request("DELETE", path)

    async def replay(self, item: QueuedRequest) -> Ok[Any]:
        """Send a queued write again. Raises ServiceError on failure."""
        ctx = RequestContext(
            method=item.method,
            path=item.url,
            body=item.body,
            headers=dict(item.headers),
            use_cache=False,
        )
        result = await self._replay_chain(ctx)
        assert isinstance(result, Ok)
        return result

    async def probe(self) -> bool:
        """Check whether the API answers at all."""
        client = await self._get_http_client()
        try:
            await client.get(
                self._settings.health_path, timeout=self._settings.probe_timeout
            )
        except httpx.TransportError as e:
            logger.debug(f"Connectivity probe failed: {e}")
            return False
        return True

    async def _execute_request(self, ctx: RequestContext) -> Ok[Any]:
        """Execute the actual HTTP request."""
        client = await self._get_http_client()

        headers = dict(ctx.headers)
        if ctx.authorization:
            headers["Authorization"] = ctx.authorization

        try:
            response = await client.request(
                method=ctx.method,
                url=ctx.path,
                params=ctx.params,
                headers=headers,
                json=ctx.body,
            )

        except httpx.TimeoutException as e:
            raise RequestTimeoutError(ctx.path, self._settings.request_timeout) from e

        except httpx.TransportError as e:
            raise NetworkUnavailableError(ctx.path, str(e)) from e

        if response.is_error:
            raise self._error_for(ctx, response)

        return Ok(data=_decode(response), status_code=response.status_code)

    def _error_for(self, ctx: RequestContext, response: httpx.Response) -> ServiceError:
        """Map an error response onto the error taxonomy."""
        status = response.status_code
        message = _server_message(response) or f"HTTP {status}: {response.text[:200]}"

        if status == 401:
            return UnauthorizedError(message, path=ctx.path)
        if status == 429:
            return RateLimitError(
                ctx.path, _parse_retry_after(response.headers.get("Retry-After"))
            )
        if status >= 500:
            return ServerError(message, path=ctx.path, status_code=status)
        return ClientError(message, path=ctx.path, status_code=status)

    async def close(self) -> None:
        """Finish dispatched writes and cleanup resources."""
        if self._writes:
            await asyncio.gather(*self._writes, return_exceptions=True)

        self._deduplicator.cancel_all()

        if self._scheduler is not None and self._owns_scheduler:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None

        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

        if self._owns_storage:
            await self._storage.close()

        logger.debug("ApiClient closed")

    async def __aenter__(self) -> "ApiClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    # Health and status methods

    def get_health_status(self) -> dict[str, Any]:
        """Get health status of the request layer."""
        return {
            "online": self._connectivity.is_online,
            "cache": self._cache.get_stats().to_dict(),
            "deduplicator": self._deduplicator.get_stats().to_dict(),
            "queued_requests": self._queue.size,
        }


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _server_message(response: httpx.Response) -> str | None:
    """Pull the server-provided error message out of a JSON body."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        for field in ("message", "error", "detail"):
            if isinstance(body.get(field), str):
                return body[field]
    return None


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
