"""Backoff schedules for transcription and webhook retries.

Both schedules are pure: given a zero-based retry index they return the
number of seconds to wait. The webhook schedule has two phases. The
in-app phase is short and driven by in-process timers; past
``max_autoscheduled_attempts`` the background phase takes over with
wider spacing, driven by periodic lifecycle wake-ups.
"""

from __future__ import annotations

from dataclasses import dataclass

# Delays for retry index 0, 1, 2, ... The last entry is the cap.
IN_APP_DELAYS_SECONDS: tuple[float, ...] = (5.0, 15.0, 45.0, 90.0, 180.0)
BACKGROUND_DELAYS_SECONDS: tuple[float, ...] = (300.0, 600.0, 900.0, 1200.0, 1800.0)

MAX_TRANSCRIPTION_RETRIES = 5
MAX_IN_APP_WEBHOOK_RETRIES = 5
MAX_TOTAL_WEBHOOK_RETRIES = 15


def _lookup(delays: tuple[float, ...], index: int) -> float:
    if not delays:
        return 0.0
    return delays[min(max(index, 0), len(delays) - 1)]


@dataclass(frozen=True)
class BackoffPolicy:
    """Capped backoff schedule with an optional background phase.

    Attributes:
        max_attempts: Retry counter value at which retries are exhausted.
        delays: Per-index delays for the first phase; last entry is the cap.
        max_autoscheduled_attempts: Phase threshold. Retry indices at or
            above it use ``background_delays``; counters up to and
            including it are re-armed in-process. None disables the
            background phase entirely.
        background_delays: Per-phase-index delays for the background phase.
    """

    max_attempts: int
    delays: tuple[float, ...] = IN_APP_DELAYS_SECONDS
    max_autoscheduled_attempts: int | None = None
    background_delays: tuple[float, ...] = BACKGROUND_DELAYS_SECONDS

    def delay(self, retry_index: int) -> float:
        """Seconds to wait before the retry with the given zero-based index."""
        threshold = self.max_autoscheduled_attempts
        if threshold is not None and retry_index >= threshold:
            return _lookup(self.background_delays, retry_index - threshold)
        return _lookup(self.delays, retry_index)

    def delay_after_failures(self, retry_count: int) -> float:
        """Delay to schedule once ``retry_count`` consecutive failures happened."""
        return self.delay(retry_count - 1)

    def is_exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.max_attempts

    def is_autoscheduled(self, retry_count: int) -> bool:
        """Whether a retry after ``retry_count`` failures gets an in-process timer."""
        threshold = self.max_autoscheduled_attempts
        return threshold is None or retry_count <= threshold

    def phase(self, retry_count: int) -> str:
        return "in-app" if self.is_autoscheduled(retry_count) else "background"


TRANSCRIPTION_POLICY = BackoffPolicy(max_attempts=MAX_TRANSCRIPTION_RETRIES)

WEBHOOK_POLICY = BackoffPolicy(
    max_attempts=MAX_TOTAL_WEBHOOK_RETRIES,
    max_autoscheduled_attempts=MAX_IN_APP_WEBHOOK_RETRIES,
)


def transcription_retry_delay(retry_index: int) -> float:
    """Transcription backoff: 5, 15, 45, 90, then 180 seconds."""
    return TRANSCRIPTION_POLICY.delay(retry_index)


def webhook_retry_delay(retry_index: int) -> float:
    """Webhook backoff: in-app table below index 5, background table after."""
    return WEBHOOK_POLICY.delay(retry_index)
