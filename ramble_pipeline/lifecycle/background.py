"""Lifecycle glue: foreground resumes and budgeted background wakes.

The host process calls on_foreground() whenever it becomes active and
run_background_task() on each periodic wake. A background wake resumes
pending work and polls the queue's liveness signal until it goes idle or
the wall-clock budget runs out. Running out of budget only ends the wait;
the work keeps going. A host that is about to suspend the process calls
on_expiration() to cancel in-flight work, leaving persisted state for the
next wake to resume.
"""

from __future__ import annotations

import asyncio
import logging
import time

from ramble_pipeline.queue.transcription_queue import TranscriptionQueue

logger = logging.getLogger(__name__)

# 25s leaves margin under a 30s host-imposed execution limit
BACKGROUND_TASK_BUDGET_SECONDS = 25.0
POLL_INTERVAL_SECONDS = 1.0


class BackgroundTaskRunner:
    """Drives a TranscriptionQueue from host lifecycle events.

    Args:
        queue: The queue to resume and poll.
        budget_seconds: Wall-clock budget for one background wake.
        poll_interval: Seconds between liveness polls.
    """

    def __init__(
        self,
        queue: TranscriptionQueue,
        budget_seconds: float = BACKGROUND_TASK_BUDGET_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ) -> None:
        self.queue = queue
        self.budget_seconds = budget_seconds
        self.poll_interval = poll_interval
        self._running = False

    def on_foreground(self) -> None:
        """Resume pending work when the host becomes active."""
        self.queue.resume_pending_jobs()

    async def run_background_task(self) -> bool:
        """Run one budgeted background wake.

        Returns:
            True if the queue went idle within budget, False if the budget
            expired with work still in flight.
        """
        self.queue.resume_pending_jobs()

        deadline = time.monotonic() + self.budget_seconds
        while self.queue.has_active_work:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "Background budget of %.0fs expired with work in flight; "
                    "stopped waiting",
                    self.budget_seconds,
                )
                return False
            await asyncio.sleep(min(self.poll_interval, remaining))

        return True

    def on_expiration(self) -> None:
        """Cancel in-flight work before the host suspends the process."""
        logger.info("Background execution expiring; cancelling in-flight work")
        self.queue.cancel_active_work()

    async def run_forever(self, interval: float) -> None:
        """Run a background wake every ``interval`` seconds until stop()."""
        self._running = True
        logger.info("Background wake loop starting (every %.0fs)", interval)

        while self._running:
            try:
                completed = await self.run_background_task()
                if not completed:
                    logger.info("Background wake ended with work still pending")
            except Exception:
                logger.error("Unexpected error in background wake", exc_info=True)

            await asyncio.sleep(interval)

    def stop(self) -> None:
        """Signal the wake loop to stop."""
        self._running = False
        logger.info("Background wake loop stopping")
