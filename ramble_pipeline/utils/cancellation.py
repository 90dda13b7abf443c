"""Cooperative cancellation for queue and webhook tasks.

A CancellationToken is handed to every task the queue spawns. When the
host is about to suspend or shut down it fires the token: attached tasks
are cancelled at their current suspension point, and any code that
checks the token afterwards raises WorkCancelledError. Owners release
their bookkeeping from task done callbacks, which also run for a task
cancelled before its first step.
"""

from __future__ import annotations

import asyncio
import logging

from ramble_pipeline.utils.errors import WorkCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """Tracks tasks belonging to one unit of background work."""

    def __init__(self) -> None:
        self._cancelled = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def attach(self, task: asyncio.Task) -> asyncio.Task:
        """Register a task so cancel() reaches it. Returns the task."""
        if self._cancelled:
            task.cancel()
            return task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def cancel(self) -> None:
        """Fire the token and cancel every attached task still running."""
        if self._cancelled:
            return
        self._cancelled = True
        pending = [task for task in self._tasks if not task.done()]
        if pending:
            logger.info("Cancelling %d in-flight task(s)", len(pending))
        for task in pending:
            task.cancel()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise WorkCancelledError("Work was cancelled")

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, then re-check the token."""
        self.raise_if_cancelled()
        if delay > 0:
            await asyncio.sleep(delay)
        self.raise_if_cancelled()
