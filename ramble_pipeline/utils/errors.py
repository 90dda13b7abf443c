"""Custom exception hierarchy for the recording pipeline.

All exceptions inherit from PipelineError, enabling targeted handling
at the queue boundaries while preserving specific failure context.
"""


class PipelineError(Exception):
    """Base exception for all recording pipeline errors."""

    def __init__(self, message: str, recording_id: str | None = None) -> None:
        self.recording_id = recording_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.recording_id:
            return f"[recording={self.recording_id}] {super().__str__()}"
        return super().__str__()


class TranscriptionError(PipelineError):
    """Raised when the transcription provider fails or returns garbage."""

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        provider: str | None = None,
    ) -> None:
        self.provider = provider
        super().__init__(message, recording_id)


class StorageError(PipelineError):
    """Raised when reading or writing persisted state fails."""

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.operation = operation
        super().__init__(message, recording_id)


class RecordingNotFoundError(StorageError):
    """Raised when a recording document no longer exists.

    Callers in the queue treat this as a benign race (the user deleted
    the recording while work was in flight), not as a failure.
    """


class ConcurrentModificationError(StorageError):
    """Raised when a write carries a stale version of a recording."""

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(message, recording_id, operation="save")


class WorkCancelledError(PipelineError):
    """Raised at a suspension point once the cancellation token has fired."""
