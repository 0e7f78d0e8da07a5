"""Lifecycle tracking for background asyncio tasks such as title generation."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Track named and anonymous background tasks so they can be awaited or cancelled."""

    def __init__(self) -> None:
        self._named: dict[str, asyncio.Task[Any]] = {}
        self._anonymous: set[asyncio.Task[Any]] = set()

    def spawn(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Schedule ``coro`` on the running loop and track the task.

        A named task replaces any prior task with the same name without
        cancelling it. Every task stops being tracked once it completes.
        """
        task = asyncio.create_task(coro, name=name)
        if name is not None:
            self._named[name] = task
            task.add_done_callback(lambda done: self._forget_named(name, done))
        else:
            self._anonymous.add(task)
            task.add_done_callback(self._anonymous.discard)
        task.add_done_callback(self._log_task_exception)
        return task

    def _forget_named(self, name: str, task: asyncio.Task[Any]) -> None:
        if self._named.get(name) is task:
            del self._named[name]

    def _log_task_exception(self, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning(
                "task.exception",
                extra={
                    "event": "task.exception",
                    "task": task.get_name(),
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    def _all_tasks(self) -> list[asyncio.Task[Any]]:
        return list(self._named.values()) + list(self._anonymous)

    async def cancel(self, name: str) -> None:
        """Cancel a named task and wait for it to finish."""
        task = self._named.pop(name, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def await_all(self) -> None:
        """Wait for every tracked task without cancelling it."""
        tasks = [task for task in self._all_tasks() if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
