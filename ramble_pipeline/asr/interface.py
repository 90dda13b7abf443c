"""Abstract transcription engine interface.

Defines the TranscriptionEngine ABC and the result model the queue
consumes. Concrete providers (e.g., Groq Whisper) subclass it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class TranscriptionResult:
    """Text and quality metadata returned by a provider."""

    text: str
    language: str | None = None
    no_speech_probability: float | None = None


class TranscriptionEngine(ABC):
    """Abstract base class for transcription providers.

    Subclasses must implement transcribe() and raise TranscriptionError
    on any failure.
    """

    provider_name: str = "unknown"

    @abstractmethod
    async def transcribe(self, audio_path: str) -> TranscriptionResult:
        """Transcribe an audio file.

        Args:
            audio_path: Path to the recorded audio file.

        Returns:
            TranscriptionResult with text and optional quality metadata.
        """
