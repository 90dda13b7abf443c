"""Recording and transcription job data models.

Recordings and jobs are persisted as JSON documents. Decoding is lenient:
fields added over time default when absent so older documents keep
loading, and unknown keys are ignored.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ramble_pipeline.utils.retry import MAX_TOTAL_WEBHOOK_RETRIES

DEFAULT_QUALITY_THRESHOLD = 0.6


class TranscriptionStatus(str, Enum):
    """Transcription state of a recording."""

    PENDING = "pending"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def utc_now() -> datetime:
    return datetime.now(UTC)


def _format_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO 8601 string into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError(f"Invalid ISO 8601 timestamp: '{value}'") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _optional_float(value: Any) -> float | None:
    return None if value is None else float(value)


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


@dataclass
class WebhookAttempt:
    """One webhook delivery attempt. Attempts are only ever appended."""

    url: str
    timestamp: datetime
    success: bool
    status_code: int | None = None
    error_message: str | None = None
    latency_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "timestamp": _format_datetime(self.timestamp),
            "success": self.success,
            "status_code": self.status_code,
            "error_message": self.error_message,
            "latency_ms": self.latency_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WebhookAttempt:
        return cls(
            url=data.get("url", ""),
            timestamp=_parse_datetime(data.get("timestamp")) or utc_now(),
            success=bool(data.get("success", False)),
            status_code=_optional_int(data.get("status_code")),
            error_message=data.get("error_message"),
            latency_ms=_optional_int(data.get("latency_ms")),
        )


@dataclass
class Recording:
    """A captured audio artifact plus its transcription and delivery state.

    ``id``, ``created_at`` and ``audio_path`` never change after creation.
    ``version`` is owned by the record store and bumped on every write.
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)
    duration: float = 0.0
    audio_path: str = ""
    transcription_status: TranscriptionStatus = TranscriptionStatus.PENDING
    transcription: str | None = None
    last_transcription_error: str | None = None
    no_speech_probability: float | None = None
    transcription_language: str | None = None
    webhook_attempts: list[WebhookAttempt] = field(default_factory=list)
    webhook_retry_count: int = 0
    next_webhook_retry_at: datetime | None = None
    version: int = 0

    @property
    def last_webhook_attempt(self) -> WebhookAttempt | None:
        return self.webhook_attempts[-1] if self.webhook_attempts else None

    def needs_webhook_retry(
        self,
        now: datetime | None = None,
        max_retries: int = MAX_TOTAL_WEBHOOK_RETRIES,
    ) -> bool:
        """A retry is scheduled, due, and still under the total cap."""
        if self.next_webhook_retry_at is None:
            return False
        now = now or utc_now()
        return (
            self.next_webhook_retry_at <= now
            and self.webhook_retry_count < max_retries
        )

    def webhook_retries_exhausted(
        self, max_retries: int = MAX_TOTAL_WEBHOOK_RETRIES
    ) -> bool:
        """The last delivery failed and the total retry cap was reached."""
        last = self.last_webhook_attempt
        if last is None or last.success:
            return False
        return self.webhook_retry_count >= max_retries

    def is_quality_acceptable(
        self, threshold: float = DEFAULT_QUALITY_THRESHOLD
    ) -> bool:
        """Quality gate: no probability recorded, or it is under the threshold.

        Recordings transcribed before the metric existed carry no
        probability and are always acceptable.
        """
        return is_quality_acceptable(self.no_speech_probability, threshold)

    def to_payload(self) -> dict[str, Any]:
        """Webhook body for this recording."""
        return {
            "id": self.id,
            "createdAt": self.created_at.astimezone(UTC)
            .isoformat()
            .replace("+00:00", "Z"),
            "duration": float(self.duration),
            "transcript": self.transcription,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": _format_datetime(self.created_at),
            "duration": self.duration,
            "audio_path": self.audio_path,
            "transcription_status": self.transcription_status.value,
            "transcription": self.transcription,
            "last_transcription_error": self.last_transcription_error,
            "no_speech_probability": self.no_speech_probability,
            "transcription_language": self.transcription_language,
            "webhook_attempts": [a.to_dict() for a in self.webhook_attempts],
            "webhook_retry_count": self.webhook_retry_count,
            "next_webhook_retry_at": _format_datetime(self.next_webhook_retry_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Recording:
        """Deserialize a persisted recording document.

        Raises:
            ValueError: If ``id`` is missing or a field has an invalid value.
        """
        recording_id = data.get("id")
        if not recording_id or not isinstance(recording_id, str):
            raise ValueError("Missing or invalid 'id' in recording document")

        status = data.get("transcription_status", TranscriptionStatus.PENDING.value)
        try:
            transcription_status = TranscriptionStatus(status)
        except ValueError as exc:
            raise ValueError(
                f"Invalid 'transcription_status': '{status}'"
            ) from exc

        return cls(
            id=recording_id,
            created_at=_parse_datetime(data.get("created_at")) or utc_now(),
            duration=float(data.get("duration", 0.0) or 0.0),
            audio_path=data.get("audio_path", ""),
            transcription_status=transcription_status,
            transcription=data.get("transcription"),
            last_transcription_error=data.get("last_transcription_error"),
            no_speech_probability=_optional_float(data.get("no_speech_probability")),
            transcription_language=data.get("transcription_language"),
            webhook_attempts=[
                WebhookAttempt.from_dict(a) for a in data.get("webhook_attempts") or []
            ],
            webhook_retry_count=int(data.get("webhook_retry_count", 0) or 0),
            next_webhook_retry_at=_parse_datetime(data.get("next_webhook_retry_at")),
            version=int(data.get("version", 0) or 0),
        )


@dataclass
class TranscriptionJob:
    """Retry-tracking unit for getting one recording transcribed."""

    recording_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    retry_count: int = 0
    created_at: datetime = field(default_factory=utc_now)
    next_retry_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "recording_id": self.recording_id,
            "retry_count": self.retry_count,
            "created_at": _format_datetime(self.created_at),
            "next_retry_at": _format_datetime(self.next_retry_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TranscriptionJob:
        recording_id = data.get("recording_id")
        if not recording_id or not isinstance(recording_id, str):
            raise ValueError("Missing or invalid 'recording_id' in job")
        job_id = data.get("id")
        if not job_id or not isinstance(job_id, str):
            raise ValueError("Missing or invalid 'id' in job")
        return cls(
            recording_id=recording_id,
            id=job_id,
            retry_count=int(data.get("retry_count", 0) or 0),
            created_at=_parse_datetime(data.get("created_at")) or utc_now(),
            next_retry_at=_parse_datetime(data.get("next_retry_at")),
        )


def is_quality_acceptable(
    no_speech_probability: float | None,
    threshold: float = DEFAULT_QUALITY_THRESHOLD,
) -> bool:
    """True when there is no probability or it is strictly under the threshold."""
    if no_speech_probability is None:
        return True
    return no_speech_probability < threshold
