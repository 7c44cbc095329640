"""
Call-shaping primitives for async functions.

- Throttle: bound call volume; calls in the cool-down window reuse the last result
- Debounce: only the latest call in a burst runs; every caller gets its result
- Batcher: collect items submitted close together into one call
"""

import asyncio
import functools
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

from loguru import logger

T = TypeVar("T")


class Throttle(Generic[T]):
    """
    Throttle an async function.

    Usage:
        summary = Throttle(fetch_summary, window=5.0)
        data = await summary()  # runs fetch_summary
        data = await summary()  # within 5s: previous result, no call

    Calls arriving while a real call is in flight share that call. A failed
    call starts no cool-down.
    """

    def __init__(self, fn: Callable[..., Awaitable[T]], window: float):
        self._fn = fn
        self._window = window
        self._cooling_until = 0.0
        self._has_result = False
        self._last_result: T | None = None
        self._in_flight: asyncio.Future[T] | None = None
        functools.update_wrapper(self, fn)

    async def __call__(self, *args: Any, **kwargs: Any) -> T:
        if self._in_flight is not None and not self._in_flight.done():
            return await asyncio.shield(self._in_flight)

        loop = asyncio.get_running_loop()
        if self._has_result and loop.time() < self._cooling_until:
            return self._last_result  # type: ignore[return-value]

        self._in_flight = asyncio.ensure_future(self._run(*args, **kwargs))
        return await asyncio.shield(self._in_flight)

    async def _run(self, *args: Any, **kwargs: Any) -> T:
        result = await self._fn(*args, **kwargs)
        self._last_result = result
        self._has_result = True
        self._cooling_until = asyncio.get_running_loop().time() + self._window
        return result

    @property
    def cooling_down(self) -> bool:
        try:
            now = asyncio.get_running_loop().time()
        except RuntimeError:
            return False
        return self._has_result and now < self._cooling_until

    def reset(self) -> None:
        """Forget the cached result and end the cool-down."""
        self._cooling_until = 0.0
        self._has_result = False
        self._last_result = None


class Debounce(Generic[T]):
    """
    Debounce an async function.

    Usage:
        search = Debounce(run_search, delay=0.3)
        results = await asyncio.gather(search("a"), search("ab"), search("abc"))
        # run_search("abc") ran once; all three callers got its result

    Each call replaces the pending timer, so an older timer never fires after
    a newer call.
    """

    def __init__(self, fn: Callable[..., Awaitable[T]], delay: float):
        self._fn = fn
        self._delay = delay
        self._timer: asyncio.TimerHandle | None = None
        self._waiting: asyncio.Future[T] | None = None
        self._tasks: set[asyncio.Future[T]] = set()
        functools.update_wrapper(self, fn)

    async def __call__(self, *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()

        if self._timer is not None:
            self._timer.cancel()
        if self._waiting is None:
            self._waiting = loop.create_future()

        waiting = self._waiting
        self._timer = loop.call_later(self._delay, self._fire, waiting, args, kwargs)
        return await asyncio.shield(waiting)

    def _fire(
        self,
        waiting: asyncio.Future[T],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> None:
        self._timer = None
        self._waiting = None

        task = asyncio.ensure_future(self._fn(*args, **kwargs))
        self._tasks.add(task)
        task.add_done_callback(functools.partial(self._settle, waiting))

    def _settle(self, waiting: asyncio.Future[T], task: asyncio.Future[T]) -> None:
        self._tasks.discard(task)
        if waiting.done():
            return
        if task.cancelled():
            waiting.cancel()
        elif task.exception() is not None:
            waiting.set_exception(task.exception())  # type: ignore[arg-type]
        else:
            waiting.set_result(task.result())

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def cancel(self) -> None:
        """Drop the pending call; its waiters are cancelled."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._waiting is not None and not self._waiting.done():
            self._waiting.cancel()
        self._waiting = None


class Batcher(Generic[T]):
    """
    Collect single items into one batched call.

    Usage:
        lookup = Batcher(fetch_many, delay=0.1)
        a, b = await asyncio.gather(lookup("id1"), lookup("id2"))
        # fetch_many(["id1", "id2"]) ran once

    fn must return one result per item, in order. A failure rejects every
    caller in the batch.
    """

    def __init__(
        self,
        fn: Callable[[list[Any]], Awaitable[Sequence[T]]],
        delay: float,
    ):
        self._fn = fn
        self._delay = delay
        self._batch: list[tuple[Any, asyncio.Future[T]]] = []
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Future[None]] = set()
        functools.update_wrapper(self, fn)

    async def __call__(self, item: Any) -> T:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        self._batch.append((item, future))

        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self._delay, self._flush)

        return await future

    def _flush(self) -> None:
        batch, self._batch = self._batch, []
        self._timer = None

        task = asyncio.ensure_future(self._run(batch))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, batch: list[tuple[Any, asyncio.Future[T]]]) -> None:
        try:
            results = await self._fn([item for item, _ in batch])
        except Exception as e:
            logger.warning(f"Batched call failed for {len(batch)} items: {e}")
            for _, future in batch:
                if not future.done():
                    future.set_exception(e)
            return

        for index, (_, future) in enumerate(batch):
            if future.done():
                continue
            if index < len(results):
                future.set_result(results[index])
            else:
                future.set_exception(
                    IndexError(f"Batched call returned no result for item {index}")
                )


def throttle(window: float) -> Callable[[Callable[..., Awaitable[T]]], Throttle[T]]:
    """Decorator form of Throttle."""
    return lambda fn: Throttle(fn, window)


def debounce(delay: float) -> Callable[[Callable[..., Awaitable[T]]], Debounce[T]]:
    """Decorator form of Debounce."""
    return lambda fn: Debounce(fn, delay)


def batch(
    delay: float,
) -> Callable[[Callable[[list[Any]], Awaitable[Sequence[T]]]], Batcher[T]]:
    """Decorator form of Batcher."""
    return lambda fn: Batcher(fn, delay)
