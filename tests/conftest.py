"""Pytest configuration and fixtures for expense-sync tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
import pytest_asyncio

from expense_sync.datastore import MemoryStorage
from expense_sync.services import ApiClient, CacheManager
from expense_sync.settings import Settings

BASE_URL = "http://api.test/api"


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeApi:
    """
    Scripted backend for httpx.MockTransport.

    Each route holds a list of (status, body) responses consumed in order;
    the last one repeats. Unknown routes answer 404.
    """

    def __init__(self):
        self.online = True
        self.delay = 0.0
        self.fail_paths: set[str] = set()
        self.routes: dict[tuple[str, str], list[tuple[int, Any]]] = {}
        self.calls: list[httpx.Request] = []
        self.completed: list[tuple[str, str]] = []

    def add(self, method: str, path: str, *responses: tuple[int, Any]) -> None:
        self.routes[(method, path)] = list(responses)

    def count(self, method: str, path: str) -> int:
        return sum(
            1
            for request in self.calls
            if request.method == method and _relative(request) == path
        )

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if not self.online:
            raise httpx.ConnectError("Network is unreachable", request=request)

        path = _relative(request)
        if path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        if path in self.fail_paths:
            raise httpx.ConnectError("Connection reset", request=request)

        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)

        responses = self.routes.get((request.method, path))
        if not responses:
            return httpx.Response(404, json={"message": "Resource not found"})

        status, body = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(body, Exception):
            raise body
        self.completed.append((request.method, path))
        return httpx.Response(status, json=body)


def _relative(request: httpx.Request) -> str:
    return request.url.path.removeprefix("/api")


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, 0))


@pytest.fixture
def utc_clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def settings():
    return Settings(
        api_url=BASE_URL,
        retry_delay=0.0,
        drain_settle_delay=0.05,
        debug=True,
    )


@pytest.fixture
def fake_api():
    return FakeApi()


@pytest.fixture
def cache(clock):
    return CacheManager(clock=clock, debug=True)


@pytest_asyncio.fixture
async def client(settings, storage, fake_api, cache):
    api_client = ApiClient(
        settings,
        storage=storage,
        transport=httpx.MockTransport(fake_api),
        cache=cache,
    )
    yield api_client
    await api_client.close()
