"""Tests for the TaskManager lifecycle helper."""

from __future__ import annotations

import asyncio
import unittest

from ollama_orchestrator.task_manager import TaskManager


class TaskManagerTests(unittest.IsolatedAsyncioTestCase):
    """Validate named and anonymous task lifecycle management."""

    async def test_spawn_named_and_cancel_by_name(self) -> None:
        tm = TaskManager()
        cancelled: list[bool] = []

        async def _worker() -> None:
            try:
                await asyncio.sleep(9999)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        task = tm.spawn(_worker(), name="title:chat-1")
        await asyncio.sleep(0)  # Let the task start.
        self.assertFalse(task.done())

        await tm.cancel("title:chat-1")
        self.assertTrue(task.cancelled())
        self.assertTrue(cancelled)

    async def test_finished_named_task_is_not_cancelled_again(self) -> None:
        tm = TaskManager()

        async def _quick() -> int:
            return 1

        task = tm.spawn(_quick(), name="quick")
        self.assertEqual(await task, 1)
        await asyncio.sleep(0)  # Let done callbacks run.
        await tm.cancel("quick")
        self.assertFalse(task.cancelled())

    async def test_cancel_nonexistent_name_is_noop(self) -> None:
        tm = TaskManager()
        await tm.cancel("does_not_exist")

    async def test_same_name_replaces_without_cancelling(self) -> None:
        tm = TaskManager()
        gate = asyncio.Event()

        async def _worker() -> str:
            await gate.wait()
            return "done"

        first = tm.spawn(_worker(), name="title:chat-1")
        second = tm.spawn(_worker(), name="title:chat-1")
        await tm.cancel("title:chat-1")

        self.assertTrue(second.cancelled())
        self.assertFalse(first.done())
        gate.set()
        self.assertEqual(await first, "done")

    async def test_failed_task_is_logged(self) -> None:
        tm = TaskManager()

        async def _fail() -> None:
            raise ValueError("bad")

        with self.assertLogs("ollama_orchestrator.task_manager", level="WARNING") as logs:
            task = tm.spawn(_fail())
            with self.assertRaises(ValueError):
                await task
            await asyncio.sleep(0)
        self.assertTrue(any("task.exception" in line for line in logs.output))

    async def test_await_all_waits_without_cancelling(self) -> None:
        tm = TaskManager()
        finished: list[str] = []

        async def _worker(name: str) -> None:
            await asyncio.sleep(0.01)
            finished.append(name)

        tm.spawn(_worker("a"), name="a")
        tm.spawn(_worker("b"))
        await tm.await_all()
        self.assertEqual(sorted(finished), ["a", "b"])

    async def test_await_all_collects_failures(self) -> None:
        tm = TaskManager()

        async def _fail() -> None:
            raise ValueError("bad")

        with self.assertLogs("ollama_orchestrator.task_manager", level="WARNING"):
            task = tm.spawn(_fail(), name="broken")
            await tm.await_all()
            await asyncio.sleep(0)
        self.assertIsInstance(task.exception(), ValueError)


if __name__ == "__main__":
    unittest.main()
