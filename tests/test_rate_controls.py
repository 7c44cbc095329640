"""Tests for throttle, debounce and batch."""

import asyncio

import pytest

from expense_sync.services.rate_controls import (
    Batcher,
    Debounce,
    Throttle,
    batch,
    debounce,
    throttle,
)


class Recorder:
    def __init__(self, delay: float = 0.0, fail: bool = False):
        self.calls: list[tuple] = []
        self.delay = delay
        self.fail = fail

    async def __call__(self, *args):
        self.calls.append(args)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ValueError("backend failed")
        return {"call": len(self.calls), "args": args}


class TestThrottle:
    @pytest.mark.asyncio
    async def test_calls_in_window_reuse_last_result(self):
        fn = Recorder()
        throttled = Throttle(fn, window=0.2)

        first = await throttled()
        second = await throttled()
        third = await throttled()

        assert len(fn.calls) == 1
        assert first == second == third
        assert throttled.cooling_down is True

    @pytest.mark.asyncio
    async def test_calls_after_window_run_again(self):
        fn = Recorder()
        throttled = Throttle(fn, window=0.05)

        await throttled()
        await asyncio.sleep(0.08)
        result = await throttled()

        assert len(fn.calls) == 2
        assert result["call"] == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_call(self):
        fn = Recorder(delay=0.02)
        throttled = Throttle(fn, window=0.2)

        results = await asyncio.gather(throttled(), throttled(), throttled())

        assert len(fn.calls) == 1
        assert results[0] is results[1] is results[2]

    @pytest.mark.asyncio
    async def test_failure_starts_no_cool_down(self):
        fn = Recorder(fail=True)
        throttled = Throttle(fn, window=1.0)

        with pytest.raises(ValueError):
            await throttled()

        fn.fail = False
        result = await throttled()

        assert len(fn.calls) == 2
        assert result["call"] == 2

    @pytest.mark.asyncio
    async def test_reset(self):
        fn = Recorder()
        throttled = Throttle(fn, window=10.0)

        await throttled()
        throttled.reset()
        await throttled()

        assert len(fn.calls) == 2

    @pytest.mark.asyncio
    async def test_decorator(self):
        calls = []

        @throttle(0.2)
        async def summary():
            calls.append(1)
            return {"total": 5}

        await summary()
        await summary()

        assert len(calls) == 1
        assert summary.__name__ == "summary"


class TestDebounce:
    @pytest.mark.asyncio
    async def test_burst_runs_once_with_latest_args(self):
        fn = Recorder()
        debounced = Debounce(fn, delay=0.03)

        results = await asyncio.gather(
            debounced("c"), debounced("co"), debounced("coffee")
        )

        assert fn.calls == [("coffee",)]
        assert results[0] == results[1] == results[2] == {"call": 1, "args": ("coffee",)}

    @pytest.mark.asyncio
    async def test_spaced_calls_each_run(self):
        fn = Recorder()
        debounced = Debounce(fn, delay=0.02)

        await debounced("a")
        await debounced("b")

        assert fn.calls == [("a",), ("b",)]

    @pytest.mark.asyncio
    async def test_newer_call_replaces_pending_timer(self):
        fn = Recorder()
        debounced = Debounce(fn, delay=0.05)

        first = asyncio.create_task(debounced("old"))
        await asyncio.sleep(0.03)
        second = asyncio.create_task(debounced("new"))
        await asyncio.sleep(0.03)

        # The first timer would have fired by now if it had not been replaced
        assert fn.calls == []

        assert await first == await second
        assert fn.calls == [("new",)]

    @pytest.mark.asyncio
    async def test_failure_reaches_every_caller(self):
        fn = Recorder(fail=True)
        debounced = Debounce(fn, delay=0.01)

        results = await asyncio.gather(
            debounced(1), debounced(2), return_exceptions=True
        )

        assert len(fn.calls) == 1
        assert all(isinstance(r, ValueError) for r in results)

    @pytest.mark.asyncio
    async def test_cancel_drops_pending_call(self):
        fn = Recorder()
        debounced = Debounce(fn, delay=0.05)

        waiter = asyncio.create_task(debounced("x"))
        await asyncio.sleep(0.01)
        assert debounced.pending is True

        debounced.cancel()

        with pytest.raises(asyncio.CancelledError):
            await waiter
        await asyncio.sleep(0.06)
        assert fn.calls == []

    @pytest.mark.asyncio
    async def test_decorator(self):
        seen = []

        @debounce(0.01)
        async def save(value):
            seen.append(value)
            return value

        assert await asyncio.gather(save(1), save(2)) == [2, 2]
        assert seen == [2]


class TestBatcher:
    @pytest.mark.asyncio
    async def test_items_are_batched_into_one_call(self):
        batches = []

        async def fetch_many(ids):
            batches.append(ids)
            return [f"expense-{i}" for i in ids]

        lookup = Batcher(fetch_many, delay=0.02)
        results = await asyncio.gather(lookup(1), lookup(2), lookup(3))

        assert batches == [[1, 2, 3]]
        assert results == ["expense-1", "expense-2", "expense-3"]

    @pytest.mark.asyncio
    async def test_failure_rejects_whole_batch(self):
        async def fetch_many(ids):
            raise RuntimeError("batch failed")

        lookup = Batcher(fetch_many, delay=0.01)
        results = await asyncio.gather(lookup(1), lookup(2), return_exceptions=True)

        assert all(isinstance(r, RuntimeError) for r in results)

    @pytest.mark.asyncio
    async def test_short_result_list_rejects_missing_items(self):
        @batch(0.01)
        async def fetch_many(ids):
            return ids[:1]

        results = await asyncio.gather(
            fetch_many("a"), fetch_many("b"), return_exceptions=True
        )

        assert results[0] == "a"
        assert isinstance(results[1], IndexError)
