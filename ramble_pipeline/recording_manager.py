"""Recording intake and deletion.

The capture side hands over a finished audio file and its duration;
the manager creates the Recording document and queues transcription.
Deletion removes queued jobs, the document, and the audio file.
"""

from __future__ import annotations

import logging
from datetime import datetime

from ramble_pipeline.models import Recording, utc_now
from ramble_pipeline.queue.transcription_queue import TranscriptionQueue
from ramble_pipeline.storage.record_store import RecordStore

logger = logging.getLogger(__name__)


class RecordingManager:
    def __init__(self, record_store: RecordStore, queue: TranscriptionQueue) -> None:
        self.record_store = record_store
        self.queue = queue

    def add_recording(
        self,
        audio_path: str,
        duration: float,
        recording_id: str | None = None,
        created_at: datetime | None = None,
    ) -> Recording:
        """Register a captured audio file and enqueue its transcription."""
        recording = Recording(
            audio_path=str(audio_path),
            duration=float(duration),
            created_at=created_at or utc_now(),
        )
        if recording_id:
            recording.id = recording_id

        self.record_store.insert(recording)
        logger.info(
            "Added recording (%.1fs)",
            recording.duration,
            extra={"recording_id": recording.id},
        )
        self.queue.enqueue(recording.id)
        return recording

    def delete_recording(self, recording_id: str) -> bool:
        """Delete a recording and its audio. Returns False if it did not exist."""
        self.queue.remove_jobs_for_recording(recording_id)
        deleted = self.record_store.delete(recording_id)
        if deleted is None:
            return False
        logger.info("Deleted recording", extra={"recording_id": recording_id})
        return True

    def delete_all_recordings(self) -> int:
        """Delete every recording. Returns how many were removed."""
        count = 0
        for recording in self.record_store.load_all():
            if self.delete_recording(recording.id):
                count += 1
        return count
