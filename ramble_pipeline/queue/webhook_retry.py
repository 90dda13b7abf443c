"""Webhook delivery with two-phase automatic retry.

Each failed delivery bumps the recording's persisted retry counter and
schedules ``next_webhook_retry_at``. While the counter is inside the
in-app phase an in-process timer re-fires the delivery; past it the
schedule is only persisted, and the lifecycle host's next wake picks it
up through process_webhook_retries(). An in-memory table of live loops keeps
at most one retry loop per recording.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from ramble_pipeline.models import Recording, WebhookAttempt, utc_now
from ramble_pipeline.observability.metrics import WebhookMetrics, log_webhook_metrics
from ramble_pipeline.storage.record_store import RecordStore
from ramble_pipeline.utils.cancellation import CancellationToken
from ramble_pipeline.utils.errors import (
    RecordingNotFoundError,
    StorageError,
    WorkCancelledError,
)
from ramble_pipeline.utils.retry import WEBHOOK_POLICY, BackoffPolicy
from ramble_pipeline.webhook.sender import WebhookSender

logger = logging.getLogger(__name__)


class WebhookRetryTracker:
    """Sends webhooks and owns their retry timers.

    Args:
        record_store: Store holding the recordings' retry fields.
        sender: Webhook delivery collaborator.
        policy: Backoff policy; its ``max_autoscheduled_attempts`` marks
            the end of the in-app phase.
    """

    def __init__(
        self,
        record_store: RecordStore,
        sender: WebhookSender,
        policy: BackoffPolicy = WEBHOOK_POLICY,
    ) -> None:
        self.record_store = record_store
        self.sender = sender
        self.policy = policy
        self._loops: dict[str, asyncio.Task] = {}
        self._sending: set[str] = set()
        self._token = CancellationToken()
        self._tasks: set[asyncio.Task] = set()

    @property
    def active_ids(self) -> frozenset[str]:
        return frozenset(self._loops)

    @property
    def has_active_retries(self) -> bool:
        return bool(self._loops)

    def process_webhook_retries(self) -> int:
        """Fire every due retry that has no loop running yet.

        Returns:
            Number of retries scheduled.
        """
        now = utc_now()
        scheduled = 0
        for recording in self.record_store.load_all():
            if recording.id in self._loops or recording.id in self._sending:
                continue
            if recording.needs_webhook_retry(now, self.policy.max_attempts):
                if self.schedule_webhook_retry(recording.id, 0):
                    scheduled += 1
        if scheduled:
            logger.info("Resuming %d due webhook retr(ies)", scheduled)
        return scheduled

    def schedule_webhook_retry(self, recording_id: str, delay: float) -> bool:
        """Start a retry loop for ``recording_id`` after ``delay`` seconds.

        Must be called from the event loop. No-op when a loop for the
        recording is already active.

        Returns:
            True if a new retry loop was started.
        """
        if recording_id in self._loops:
            return False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "No running event loop; webhook retry left to the next wake",
                extra={"recording_id": recording_id},
            )
            return False

        token = self._token
        task = loop.create_task(self._run_retry_loop(recording_id, delay, token))
        token.attach(task)
        self._loops[recording_id] = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        # A task cancelled before its first step never enters its body
        task.add_done_callback(lambda t, rid=recording_id: self._release(rid, t))
        return True

    def _release(self, recording_id: str, task: asyncio.Task | None) -> None:
        if task is not None and self._loops.get(recording_id) is task:
            del self._loops[recording_id]

    async def _run_retry_loop(
        self, recording_id: str, delay: float, token: CancellationToken
    ) -> None:
        try:
            while True:
                await token.sleep(delay)
                recording = self.record_store.get(recording_id)
                if recording is None or recording.next_webhook_retry_at is None:
                    # Deleted, delivered, or reset by a manual retry meanwhile
                    return
                next_delay = await self._deliver(recording_id)
                if next_delay is None:
                    return
                delay = next_delay
        except WorkCancelledError:
            logger.info(
                "Webhook retry cancelled", extra={"recording_id": recording_id}
            )
        except StorageError:
            logger.error(
                "Webhook retry aborted by storage failure",
                extra={"recording_id": recording_id},
                exc_info=True,
            )
        finally:
            self._release(recording_id, asyncio.current_task())

    async def send_webhook_with_retry(self, recording_id: str) -> None:
        """Deliver now and arm an in-process retry if the delivery failed.

        While the send is in flight a resume sweep leaves the recording
        alone, so a due ``next_webhook_retry_at`` is not delivered twice.
        """
        self._sending.add(recording_id)
        try:
            next_delay = await self._deliver(recording_id)
        except StorageError:
            logger.error(
                "Webhook delivery aborted by storage failure",
                extra={"recording_id": recording_id},
                exc_info=True,
            )
            return
        finally:
            self._sending.discard(recording_id)
        if next_delay is not None:
            self.schedule_webhook_retry(recording_id, next_delay)

    async def retry_webhook(self, recording_id: str) -> bool:
        """Manual retry: reset the retry state and deliver immediately.

        Bypasses the quality gate on purpose; a manual retry is an
        explicit user override.

        Returns:
            False if the recording does not exist.
        """

        def reset(recording: Recording) -> None:
            recording.webhook_retry_count = 0
            recording.next_webhook_retry_at = None

        try:
            self.record_store.update(recording_id, reset)
        except RecordingNotFoundError:
            return False
        await self.send_webhook_with_retry(recording_id)
        return True

    def cancel_pending(self) -> None:
        """Cancel outstanding retry loops; persisted schedules survive."""
        self._token.cancel()
        self._token = CancellationToken()

    async def shutdown(self) -> None:
        """Cancel outstanding retry loops and wait for them to unwind."""
        self.cancel_pending()
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _deliver(self, recording_id: str) -> float | None:
        """Send once and persist the outcome.

        Returns:
            Delay before an in-process retry should fire, or None when no
            in-process retry is due (success, not configured, exhausted,
            background phase, or recording gone).
        """
        recording = self.record_store.get(recording_id)
        if recording is None:
            return None

        try:
            attempt = await self.sender.send_recording(recording)
        except Exception as exc:
            logger.error(
                "Webhook sender raised",
                extra={"recording_id": recording_id},
                exc_info=True,
            )
            attempt = WebhookAttempt(
                url="",
                timestamp=utc_now(),
                success=False,
                error_message=str(exc) or type(exc).__name__,
            )
        if attempt is None:
            if recording.next_webhook_retry_at is not None:
                self._clear_schedule(recording_id)
            return None

        scheduled_delay: float | None = None

        def record_attempt(current: Recording) -> None:
            nonlocal scheduled_delay
            current.webhook_attempts.append(attempt)
            if attempt.success:
                current.webhook_retry_count = 0
                current.next_webhook_retry_at = None
                return
            current.webhook_retry_count += 1
            if self.policy.is_exhausted(current.webhook_retry_count):
                current.next_webhook_retry_at = None
                return
            scheduled_delay = self.policy.delay_after_failures(
                current.webhook_retry_count
            )
            current.next_webhook_retry_at = utc_now() + timedelta(
                seconds=scheduled_delay
            )

        try:
            updated = self.record_store.update(recording_id, record_attempt)
        except RecordingNotFoundError:
            logger.info(
                "Recording deleted during webhook delivery",
                extra={"recording_id": recording_id},
            )
            return None

        retry_count = updated.webhook_retry_count
        log_webhook_metrics(
            WebhookMetrics(
                recording_id=recording_id,
                success=attempt.success,
                retry_count=retry_count,
                status_code=attempt.status_code,
                latency_ms=attempt.latency_ms,
                next_retry_in_seconds=scheduled_delay,
                error_message=attempt.error_message,
            )
        )

        if attempt.success:
            logger.info("Webhook delivered", extra={"recording_id": recording_id})
            return None

        if scheduled_delay is None:
            logger.warning(
                "All webhook retries exhausted",
                extra={"recording_id": recording_id, "retry_count": retry_count},
            )
            return None

        phase = self.policy.phase(retry_count)
        logger.info(
            "Webhook retry %d/%d (%s) in %ds",
            retry_count,
            self.policy.max_attempts,
            phase,
            int(scheduled_delay),
            extra={
                "recording_id": recording_id,
                "retry_count": retry_count,
                "delay_seconds": scheduled_delay,
            },
        )
        if self.policy.is_autoscheduled(retry_count):
            return scheduled_delay
        return None

    def _clear_schedule(self, recording_id: str) -> None:
        """Drop a pending delivery that has nowhere to go."""

        def clear(current: Recording) -> None:
            current.next_webhook_retry_at = None

        try:
            self.record_store.update(recording_id, clear)
        except RecordingNotFoundError:
            logger.debug(
                "Recording deleted before its schedule was cleared",
                extra={"recording_id": recording_id},
            )
