from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from collections.abc import Awaitable, Callable
from functools import partial
from typing import cast


class FlightCancelledError(RuntimeError):
    """Raised to waiters when the shared resolution task was cancelled."""


class SingleFlight[T]:
    """Coalesces concurrent resolutions of the same key into one shared task.

    Waiters hold a thread-safe future rather than the task itself, so callers on
    other event loops (or threads) can await the same outcome.  The resolution
    runs as its own task: cancelling any caller, the first one included, leaves
    the shared work running and the key is always released once it settles.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._inflight: dict[str, concurrent.futures.Future[T]] = {}
        self._tasks: set[asyncio.Task[T]] = set()

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._inflight

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        with self._lock:
            shared = self._inflight.get(key)
            leader = shared is None
            if shared is None:
                shared = concurrent.futures.Future()
                self._inflight[key] = shared

        if leader:
            try:
                task = asyncio.ensure_future(factory())
            except Exception as exc:
                self._release(key, shared)
                shared.set_exception(exc)
                raise
            self._tasks.add(task)
            task.add_done_callback(partial(self._settle, key, shared))

        return await asyncio.shield(asyncio.wrap_future(shared))

    def _release(self, key: str, shared: concurrent.futures.Future[T]) -> None:
        with self._lock:
            if self._inflight.get(key) is shared:
                del self._inflight[key]

    def _settle(
        self,
        key: str,
        shared: concurrent.futures.Future[T],
        task: asyncio.Task[T],
    ) -> None:
        self._tasks.discard(task)
        # Release first so callers woken by the result start a fresh flight.
        self._release(key, shared)
        if task.cancelled():
            shared.set_exception(
                FlightCancelledError(f"resolution for {key!r} was cancelled")
            )
            return
        exc = task.exception()
        if exc is not None:
            shared.set_exception(exc)
            return
        shared.set_result(task.result())


class ResolveOnce[T]:
    """Lazily resolves a value once and memoizes the first successful result."""

    def __init__(self, factory: Callable[[], Awaitable[T]], *, name: str = "value") -> None:
        self._factory = factory
        self._name = name
        self._flight: SingleFlight[T] = SingleFlight()
        self._lock = threading.Lock()
        self._resolved = False
        self._value: T | None = None

    @property
    def resolved(self) -> bool:
        return self._resolved

    def peek(self) -> T | None:
        return self._value

    async def get(self) -> T:
        if self._resolved:
            return cast(T, self._value)
        return await self._flight.run(self._name, self._resolve)

    async def _resolve(self) -> T:
        with self._lock:
            if self._resolved:
                return cast(T, self._value)
        value = await self._factory()
        with self._lock:
            if not self._resolved:
                self._value = value
                self._resolved = True
            return cast(T, self._value)

    def reset(self) -> None:
        with self._lock:
            self._resolved = False
            self._value = None
