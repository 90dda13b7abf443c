"""Process configuration and user-editable settings.

PipelineConfig is read from environment variables, with explicit
constructor arguments taking precedence. Settings (webhook target, auth
token, quality threshold) are user data persisted in ``settings.json``
and re-read on every use so edits take effect without a restart.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ramble_pipeline.models import DEFAULT_QUALITY_THRESHOLD
from ramble_pipeline.storage.record_store import write_json_atomic

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = "settings.json"
DEFAULT_DATA_DIR = "ramble-data"
DEFAULT_BACKGROUND_TASK_BUDGET_SECONDS = 25.0
DEFAULT_BACKGROUND_WAKE_INTERVAL_SECONDS = 900.0


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid value for {name}: '{raw}'") from exc


@dataclass
class PipelineConfig:
    """Process-level configuration.

    Environment variables:
        RAMBLE_DATA_DIR, TRANSCRIPTION_PROVIDER, GROQ_API_KEY, GROQ_MODEL,
        GROQ_BASE_URL, BACKGROUND_TASK_BUDGET_SECONDS,
        BACKGROUND_WAKE_INTERVAL_SECONDS, PORT
    """

    data_dir: Path = Path(DEFAULT_DATA_DIR)
    transcription_provider: str = "groq"
    provider_options: dict[str, Any] = field(default_factory=dict)
    background_task_budget_seconds: float = DEFAULT_BACKGROUND_TASK_BUDGET_SECONDS
    background_wake_interval_seconds: float = DEFAULT_BACKGROUND_WAKE_INTERVAL_SECONDS
    port: int = 8080

    @classmethod
    def from_env(cls) -> PipelineConfig:
        provider_options: dict[str, Any] = {
            "api_key": os.environ.get("GROQ_API_KEY", ""),
        }
        if os.environ.get("GROQ_MODEL"):
            provider_options["model"] = os.environ["GROQ_MODEL"]
        if os.environ.get("GROQ_BASE_URL"):
            provider_options["base_url"] = os.environ["GROQ_BASE_URL"]

        return cls(
            data_dir=Path(os.environ.get("RAMBLE_DATA_DIR", DEFAULT_DATA_DIR)),
            transcription_provider=os.environ.get("TRANSCRIPTION_PROVIDER", "groq"),
            provider_options=provider_options,
            background_task_budget_seconds=_env_float(
                "BACKGROUND_TASK_BUDGET_SECONDS",
                DEFAULT_BACKGROUND_TASK_BUDGET_SECONDS,
            ),
            background_wake_interval_seconds=_env_float(
                "BACKGROUND_WAKE_INTERVAL_SECONDS",
                DEFAULT_BACKGROUND_WAKE_INTERVAL_SECONDS,
            ),
            port=int(os.environ.get("PORT", "8080")),
        )


@dataclass
class Settings:
    """User settings for webhook delivery and the quality gate."""

    webhook_url: str | None = None
    webhook_auth_token: str = field(default_factory=lambda: str(uuid.uuid4()))
    transcription_quality_threshold: float = DEFAULT_QUALITY_THRESHOLD

    def to_dict(self) -> dict[str, Any]:
        return {
            "webhook_url": self.webhook_url,
            "webhook_auth_token": self.webhook_auth_token,
            "transcription_quality_threshold": self.transcription_quality_threshold,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Settings:
        settings = cls(webhook_url=data.get("webhook_url") or None)
        if data.get("webhook_auth_token"):
            settings.webhook_auth_token = str(data["webhook_auth_token"])
        threshold = data.get("transcription_quality_threshold")
        if threshold is not None:
            settings.transcription_quality_threshold = float(threshold)
        return settings


class SettingsStore:
    """Loads and saves Settings as ``<data_dir>/settings.json``."""

    def __init__(self, data_dir: str | Path) -> None:
        self.path = Path(data_dir) / SETTINGS_FILENAME

    def load(self) -> Settings:
        """Load settings, creating and saving defaults when none exist."""
        try:
            with open(self.path, encoding="utf-8") as f:
                return Settings.from_dict(json.load(f))
        except FileNotFoundError:
            pass
        except (OSError, json.JSONDecodeError, ValueError, TypeError) as exc:
            logger.error("Failed to load settings from %s: %s", self.path, exc)

        settings = Settings()
        self.save(settings)
        return settings

    def save(self, settings: Settings) -> None:
        write_json_atomic(self.path, settings.to_dict())
