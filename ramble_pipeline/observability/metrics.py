"""Per-attempt metrics collection and reporting.

Provides TranscriptionMetrics and WebhookMetrics dataclasses, a
StageTimer context manager for measuring wall-clock durations, and
log_*_metrics() helpers that emit each record as one JSON line on stdout.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

# Groq whisper pricing: ~$0.04 per hour of audio
TRANSCRIPTION_COST_PER_HOUR = 0.04


def estimate_transcription_cost(duration_seconds: float) -> float:
    """Estimated provider cost in USD for an audio duration."""
    return max(duration_seconds, 0.0) / 3600 * TRANSCRIPTION_COST_PER_HOUR


@dataclass
class TranscriptionMetrics:
    """Metrics for a single transcription attempt."""

    recording_id: str
    job_id: str
    status: str
    attempt: int
    audio_duration_seconds: float
    wall_time_seconds: float
    cost_estimate: float = 0.0
    no_speech_probability: float | None = None
    language: str | None = None
    error_message: str | None = None


@dataclass
class WebhookMetrics:
    """Metrics for a single webhook delivery attempt."""

    recording_id: str
    success: bool
    retry_count: int
    status_code: int | None = None
    latency_ms: int | None = None
    next_retry_in_seconds: float | None = None
    error_message: str | None = None


class StageTimer:
    """Context manager that records wall-clock duration of a stage.

    Usage:
        timer = StageTimer("transcribe")
        with timer:
            await do_work()
        print(timer.duration_seconds)
    """

    def __init__(self, stage_name: str) -> None:
        self.stage_name = stage_name
        self.start_time: datetime | None = None
        self.end_time: datetime | None = None
        self.duration_seconds: float = 0.0
        self._mono_start: float = 0.0

    def __enter__(self) -> StageTimer:
        self.start_time = datetime.now(UTC)
        self._mono_start = time.monotonic()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        elapsed = time.monotonic() - self._mono_start
        self.end_time = datetime.now(UTC)
        self.duration_seconds = elapsed


def _emit(metric_type: str, fields: dict[str, object]) -> None:
    entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "severity": "INFO",
        "metric_type": metric_type,
        **fields,
    }
    print(json.dumps(entry))


def log_transcription_metrics(metrics: TranscriptionMetrics) -> None:
    """Emit transcription attempt metrics as a single JSON line to stdout.

    Args:
        metrics: Populated TranscriptionMetrics dataclass.
    """
    _emit("transcription_attempt", asdict(metrics))


def log_webhook_metrics(metrics: WebhookMetrics) -> None:
    """Emit webhook attempt metrics as a single JSON line to stdout."""
    _emit("webhook_attempt", asdict(metrics))
