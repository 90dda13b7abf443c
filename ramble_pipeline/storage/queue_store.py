"""Persistence for the ordered transcription job queue."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from ramble_pipeline.models import TranscriptionJob
from ramble_pipeline.storage.record_store import write_json_atomic

logger = logging.getLogger(__name__)

QUEUE_FILENAME = "transcription_queue.json"


class QueueStore:
    """Stores the job queue as a single ordered JSON list."""

    def __init__(self, data_dir: str | Path) -> None:
        self.path = Path(data_dir) / QUEUE_FILENAME

    def load(self) -> list[TranscriptionJob]:
        """Load persisted jobs in enqueue order.

        A missing or unreadable file yields an empty queue; malformed
        entries are dropped individually.
        """
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return []
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Failed to load job queue from %s: %s", self.path, exc)
            return []

        if not isinstance(data, list):
            logger.error("Job queue file %s is not a list", self.path)
            return []

        jobs: list[TranscriptionJob] = []
        for entry in data:
            try:
                jobs.append(TranscriptionJob.from_dict(entry))
            except (ValueError, TypeError, AttributeError) as exc:
                logger.warning("Dropping malformed queued job: %s", exc)
        return jobs

    def save(self, jobs: list[TranscriptionJob]) -> None:
        """Persist the queue.

        Raises:
            StorageError: If the file cannot be written.
        """
        write_json_atomic(self.path, [job.to_dict() for job in jobs])
