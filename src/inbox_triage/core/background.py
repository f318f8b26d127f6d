"""Best-effort background work.

Rule match-count increments and LLM request logging must never block or
fail a classification. They are scheduled here instead of being awaited:
each coroutine runs as its own task, exceptions are logged and dropped.

Usage:
    from inbox_triage.core.background import BackgroundTasks

    tasks = BackgroundTasks()
    tasks.spawn(store.increment_rule_match(rule_id), name="rule_match_increment")

    # At the end of a cycle (or in tests) wait for outstanding work
    await tasks.drain()
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

from inbox_triage.core.logging import get_logger

logger = get_logger(__name__)


class BackgroundTasks:
    """Fire-and-forget task runner that keeps references and logs failures.

    The event loop only holds weak references to tasks, so the runner keeps
    each task in a set until it completes.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self.failures = 0

    @property
    def pending(self) -> int:
        """Number of tasks that have not finished yet."""
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        """Schedule a coroutine without awaiting it.

        Must be called from inside a running event loop.

        Args:
            coro: Coroutine to run
            name: Short label used in failure logs
        """
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failures += 1
            logger.warning(
                "background_task_failed",
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def drain(self, timeout: float | None = 10.0) -> None:
        """Wait for outstanding tasks, giving up after timeout seconds."""
        if not self._tasks:
            return
        _, still_pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if still_pending:
            logger.warning("background_tasks_not_drained", pending=len(still_pending))
