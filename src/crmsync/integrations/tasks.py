"""In-process background work and keyed locks for the sync layer.

TaskQueue runs coroutines that must not block an HTTP response (CRM pushes,
the initial sync after an OAuth callback). It keeps strong references to
running tasks, logs their outcome, and lets shutdown and tests wait for
them with drain(). Call sites only depend on submit() returning an awaitable
task, so a durable queue or a retry policy can replace it later.

KeyedLocks serializes work on the same key (one CRM record, one
integration's token refresh) while unrelated keys run concurrently.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Coroutine, Hashable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class TaskQueue:
    """Fire-and-forget task runner with a drainable task set."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def submit(self, name: str, coro: Coroutine[Any, Any, T]) -> asyncio.Task[T]:
        """Schedule ``coro`` in the background and return its task.

        Exceptions are logged when the task finishes; awaiting the task
        still re-raises them.
        """
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug("task_queue.submitted", task=name, pending=len(self._tasks))
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("task_queue.cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "task_queue.failed",
                task=task.get_name(),
                error=str(exc),
                exc_info=exc,
            )
        else:
            logger.debug("task_queue.completed", task=task.get_name())

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every submitted task (including ones submitted meanwhile)."""
        while self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)
            if timeout is not None:
                break

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Give running tasks ``timeout`` seconds, then cancel the rest."""
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("task_queue.shutdown")


class KeyedLocks:
    """One asyncio.Lock per key, discarded once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
