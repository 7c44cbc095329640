"""Tests for the pending-request registry."""

import asyncio

import pytest

from expense_sync.services.deduplicator import RequestDeduplicator


class Backend:
    """Counts calls and resolves after a short delay."""

    def __init__(self, result=None, error: Exception | None = None, delay: float = 0.02):
        self.calls = 0
        self.cancelled = False
        self.result = result if result is not None else {"total": 42}
        self.error = error
        self.delay = delay

    async def fetch(self):
        self.calls += 1
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def dedup():
    return RequestDeduplicator(debug=True)


@pytest.mark.asyncio
async def test_concurrent_identical_requests_collapse(dedup):
    backend = Backend()

    a, b = await asyncio.gather(
        dedup.dedupe("GET:/summary", backend.fetch),
        dedup.dedupe("GET:/summary", backend.fetch),
    )

    assert backend.calls == 1
    assert a is b
    assert dedup.get_stats().joined == 1


@pytest.mark.asyncio
async def test_different_keys_run_separately(dedup):
    backend = Backend()

    await asyncio.gather(
        dedup.dedupe("GET:/summary", backend.fetch),
        dedup.dedupe("GET:/expenses", backend.fetch),
    )

    assert backend.calls == 2


@pytest.mark.asyncio
async def test_entry_removed_after_success(dedup):
    backend = Backend()

    await dedup.dedupe("GET:/summary", backend.fetch)
    await asyncio.sleep(0)

    assert dedup.get_in_flight_count() == 0
    await dedup.dedupe("GET:/summary", backend.fetch)
    assert backend.calls == 2


@pytest.mark.asyncio
async def test_failure_reaches_every_caller_and_does_not_poison_key(dedup):
    backend = Backend(error=RuntimeError("boom"))

    results = await asyncio.gather(
        dedup.dedupe("GET:/summary", backend.fetch),
        dedup.dedupe("GET:/summary", backend.fetch),
        return_exceptions=True,
    )

    assert backend.calls == 1
    assert all(isinstance(r, RuntimeError) for r in results)

    await asyncio.sleep(0)
    assert dedup.get_in_flight_count() == 0

    backend.error = None
    assert await dedup.dedupe("GET:/summary", backend.fetch) == {"total": 42}
    assert backend.calls == 2


@pytest.mark.asyncio
async def test_cancelling_one_waiter_keeps_request_for_others(dedup):
    backend = Backend(delay=0.05)

    first = asyncio.create_task(dedup.dedupe("GET:/summary", backend.fetch))
    second = asyncio.create_task(dedup.dedupe("GET:/summary", backend.fetch))
    await asyncio.sleep(0.01)

    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first

    assert await second == {"total": 42}
    assert backend.cancelled is False
    assert backend.calls == 1


@pytest.mark.asyncio
async def test_last_waiter_cancelling_aborts_request(dedup):
    backend = Backend(delay=0.5)

    first = asyncio.create_task(dedup.dedupe("GET:/summary", backend.fetch))
    second = asyncio.create_task(dedup.dedupe("GET:/summary", backend.fetch))
    await asyncio.sleep(0.01)

    first.cancel()
    second.cancel()
    await asyncio.gather(first, second, return_exceptions=True)
    await asyncio.sleep(0.01)

    assert backend.cancelled is True
    assert dedup.get_in_flight_count() == 0


@pytest.mark.asyncio
async def test_cancel_all(dedup):
    backend = Backend(delay=0.5)

    waiter = asyncio.create_task(dedup.dedupe("GET:/summary", backend.fetch))
    await asyncio.sleep(0.01)

    assert dedup.cancel_all() == 1
    with pytest.raises(asyncio.CancelledError):
        await waiter


@pytest.mark.asyncio
async def test_caller_after_abort_starts_fresh_request(dedup):
    backend = Backend(delay=0.05)

    first = asyncio.create_task(dedup.dedupe("GET:/summary", backend.fetch))
    await asyncio.sleep(0.01)
    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first

    # The aborted task may not have settled yet; it must not be joined
    assert dedup.get_in_flight_count() == 0
    assert await dedup.dedupe("GET:/summary", backend.fetch) == {"total": 42}
    assert backend.calls == 2
    assert dedup.get_stats().aborted == 1
