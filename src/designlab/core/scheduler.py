"""Task scheduling for detached generation work.

The orchestrator never awaits the generation it starts.  It hands the
coroutine to a :class:`TaskScheduler`, which runs it independently of the
request that spawned it.  Injecting the scheduler keeps that decision
testable: tests can :meth:`~AsyncioTaskScheduler.drain` outstanding work
instead of sleeping.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class TaskScheduler(ABC):
    """Runs coroutines detached from their caller."""

    @abstractmethod
    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
        """Start *coro* and return without waiting for it."""

    @abstractmethod
    async def drain(self) -> None:
        """Wait until every spawned task has finished."""

    @property
    @abstractmethod
    def pending(self) -> int:
        """Number of spawned tasks still running."""


class AsyncioTaskScheduler(TaskScheduler):
    """Fire-and-forget scheduling on the running asyncio event loop.

    The event loop only keeps weak references to tasks, so the scheduler
    holds a strong reference to each one until it finishes.  Exceptions that
    escape a task are logged here.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("Task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Unhandled exception in task %s", task.get_name(), exc_info=exc
            )

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)
