"""Groq Whisper transcription client.

Uses the OpenAI-compatible ``/audio/transcriptions`` endpoint with the
``verbose_json`` response format, which carries the detected language
and per-segment ``no_speech_prob`` values used by the quality gate.
"""

import logging
import os

import httpx

from ramble_pipeline.asr.interface import TranscriptionEngine, TranscriptionResult
from ramble_pipeline.utils.errors import TranscriptionError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_MODEL = "whisper-large-v3-turbo"
PLACEHOLDER_API_KEY = "YOUR_GROQ_API_KEY_HERE"


class GroqWhisperEngine(TranscriptionEngine):
    """Groq-hosted Whisper transcription engine.

    Args:
        api_key: Groq API key for authentication.
        model: Whisper model name (default whisper-large-v3-turbo).
        base_url: API base URL (default production endpoint).
        timeout: Request timeout in seconds (default 120).
    """

    provider_name = "groq"

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 120.0,
    ) -> None:
        if not api_key or api_key == PLACEHOLDER_API_KEY:
            raise ValueError("api_key is required")
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def transcribe(self, audio_path: str) -> TranscriptionResult:
        """Upload an audio file and return the transcript.

        Raises:
            TranscriptionError: If the file is missing, the request fails,
                or the response is not a usable transcript.
        """
        if not os.path.isfile(audio_path):
            raise TranscriptionError(
                f"Audio file not found: '{audio_path}'", provider=self.provider_name
            )

        url = f"{self._base_url}/audio/transcriptions"
        headers = {"Authorization": f"Bearer {self._api_key}"}
        data = {"model": self._model, "response_format": "verbose_json"}

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                with open(audio_path, "rb") as audio_file:
                    files = {
                        "file": (
                            os.path.basename(audio_path),
                            audio_file,
                            "audio/m4a",
                        ),
                    }
                    response = await client.post(
                        url, headers=headers, data=data, files=files
                    )
        except (OSError, httpx.HTTPError) as exc:
            raise TranscriptionError(
                f"Transcription request failed: {exc}", provider=self.provider_name
            ) from exc

        if response.status_code != 200:
            raise TranscriptionError(
                f"Status {response.status_code}: {response.text}",
                provider=self.provider_name,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise TranscriptionError(
                "Invalid JSON in transcription response",
                provider=self.provider_name,
            ) from exc

        return self._convert_response(body)

    def _convert_response(self, body: dict) -> TranscriptionResult:
        """Convert a verbose_json body to a TranscriptionResult.

        The no-speech probability is the mean over segments; a body
        without segments yields None.
        """
        if not isinstance(body, dict) or not isinstance(body.get("text"), str):
            raise TranscriptionError(
                "No text in transcription response", provider=self.provider_name
            )

        probabilities = [
            float(segment["no_speech_prob"])
            for segment in body.get("segments") or []
            if isinstance(segment, dict) and segment.get("no_speech_prob") is not None
        ]
        no_speech_probability = (
            sum(probabilities) / len(probabilities) if probabilities else None
        )

        result = TranscriptionResult(
            text=body["text"].strip(),
            language=body.get("language"),
            no_speech_probability=no_speech_probability,
        )
        logger.info(
            "Groq transcription complete: %d chars, language=%s",
            len(result.text),
            result.language,
        )
        return result
