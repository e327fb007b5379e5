"""Supervised background tasks.

Long-running work started from request handlers (import jobs) runs as an
asyncio task owned by a TaskSupervisor. The supervisor bounds how many run
at once, logs every failure, and drains or cancels what is left at shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)


class TaskLimitError(RuntimeError):
    """Raised when the supervisor already runs its maximum number of tasks."""


class TaskSupervisor:
    def __init__(self, max_tasks: int = 4) -> None:
        if max_tasks < 1:
            raise ValueError("max_tasks must be at least 1")
        self._max_tasks = max_tasks
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    @property
    def active(self) -> int:
        return len(self._tasks)

    def is_running(self, name: str) -> bool:
        return name in self._tasks

    def submit(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Start ``coro`` as a supervised task named ``name``.

        Raises:
            TaskLimitError: If ``max_tasks`` tasks are already running.
            ValueError: If a task with this name is still running.
        """
        if name in self._tasks:
            coro.close()
            raise ValueError(f"Task {name} is already running")
        if len(self._tasks) >= self._max_tasks:
            coro.close()
            raise TaskLimitError(f"Too many background tasks running ({self._max_tasks})")

        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks[name] = task
        task.add_done_callback(self._on_done)
        logger.info(f"Started background task {name} ({len(self._tasks)}/{self._max_tasks})")
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.pop(task.get_name(), None)
        if task.cancelled():
            logger.info(f"Background task {task.get_name()} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed", exc_info=exc)
        else:
            logger.info(f"Background task {task.get_name()} finished")

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for running tasks to finish. Returns False on timeout."""
        if not self._tasks:
            return True
        _done, pending = await asyncio.wait(list(self._tasks.values()), timeout=timeout)
        return not pending

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Drain for up to ``timeout`` seconds, then cancel whatever still runs."""
        if await self.drain(timeout):
            return
        remaining = list(self._tasks.values())
        logger.warning(f"Cancelling {len(remaining)} background tasks at shutdown")
        for task in remaining:
            task.cancel()
        await asyncio.gather(*remaining, return_exceptions=True)
