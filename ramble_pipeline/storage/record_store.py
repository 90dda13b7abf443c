"""Durable recording store: one JSON document per recording.

Documents live under ``<data_dir>/recordings/<id>.json`` and are written
atomically (temp file + rename). Every write is version-checked: a write
carrying a stale ``version`` raises ConcurrentModificationError instead
of clobbering a newer document, and ``update()`` refuses to resurrect a
recording that was deleted underneath it.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable
from pathlib import Path

from ramble_pipeline.models import Recording
from ramble_pipeline.utils.errors import (
    ConcurrentModificationError,
    RecordingNotFoundError,
    StorageError,
)

logger = logging.getLogger(__name__)


def write_json_atomic(path: Path, data: object) -> None:
    """Write ``data`` as JSON to ``path`` via a temp file in the same directory.

    Raises:
        StorageError: If the file cannot be written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_name, path)
    except OSError as exc:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise StorageError(
            f"Failed to write '{path}': {exc}", operation="write"
        ) from exc


class RecordStore:
    """Keyed store of Recording documents on the local filesystem.

    Args:
        data_dir: Root data directory; documents go in ``recordings/``.
    """

    def __init__(self, data_dir: str | Path) -> None:
        self.directory = Path(data_dir) / "recordings"
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, recording_id: str) -> Path:
        if not recording_id or "/" in recording_id or recording_id.startswith("."):
            raise StorageError(
                f"Invalid recording id: '{recording_id}'", operation="path"
            )
        return self.directory / f"{recording_id}.json"

    def _read(self, path: Path) -> Recording | None:
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(
                f"Failed to read '{path}': {exc}", operation="read"
            ) from exc
        try:
            return Recording.from_dict(data)
        except (ValueError, TypeError, AttributeError) as exc:
            raise StorageError(
                f"Malformed recording document '{path}': {exc}",
                operation="read",
            ) from exc

    def get(self, recording_id: str) -> Recording | None:
        """Return the recording, or None if it does not exist."""
        return self._read(self._path(recording_id))

    def load_all(self) -> list[Recording]:
        """Return every readable recording, newest first.

        Malformed documents are logged and skipped so one bad file does
        not hide the rest.
        """
        recordings: list[Recording] = []
        for path in self.directory.glob("*.json"):
            try:
                recording = self._read(path)
            except StorageError as exc:
                logger.warning("Skipping unreadable recording: %s", exc)
                continue
            if recording is not None:
                recordings.append(recording)
        recordings.sort(key=lambda r: r.created_at, reverse=True)
        return recordings

    def insert(self, recording: Recording) -> Recording:
        """Persist a new recording.

        Raises:
            StorageError: If a recording with the same id already exists.
        """
        path = self._path(recording.id)
        if path.exists():
            raise StorageError(
                "Recording already exists",
                recording_id=recording.id,
                operation="insert",
            )
        recording.version = 1
        write_json_atomic(path, recording.to_dict())
        return recording

    def save(self, recording: Recording) -> Recording:
        """Compare-and-swap write of a recording read earlier.

        The stored document must still carry ``recording.version``; on
        success the version is bumped on both the document and the object.

        Raises:
            RecordingNotFoundError: If the recording was deleted.
            ConcurrentModificationError: If someone else wrote it since.
        """
        path = self._path(recording.id)
        current = self._read(path)
        if current is None:
            raise RecordingNotFoundError(
                "Recording no longer exists", recording_id=recording.id
            )
        if current.version != recording.version:
            raise ConcurrentModificationError(
                f"Stale write: expected version {recording.version}, "
                f"found {current.version}",
                recording_id=recording.id,
                expected_version=recording.version,
                actual_version=current.version,
            )
        recording.version = current.version + 1
        write_json_atomic(path, recording.to_dict())
        return recording

    def update(
        self, recording_id: str, mutate: Callable[[Recording], None]
    ) -> Recording:
        """Re-read a recording, apply ``mutate`` to it, and write it back.

        Raises:
            RecordingNotFoundError: If the recording does not exist.
        """
        recording = self.get(recording_id)
        if recording is None:
            raise RecordingNotFoundError(
                "Recording no longer exists", recording_id=recording_id
            )
        mutate(recording)
        return self.save(recording)

    def delete(self, recording_id: str) -> Recording | None:
        """Remove a recording document and its audio file.

        Returns:
            The deleted recording, or None if it did not exist.
        """
        path = self._path(recording_id)
        recording = self._read(path)
        if recording is None:
            return None
        try:
            path.unlink()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(
                f"Failed to delete recording: {exc}",
                recording_id=recording_id,
                operation="delete",
            ) from exc

        if recording.audio_path:
            try:
                Path(recording.audio_path).unlink(missing_ok=True)
            except OSError:
                logger.warning(
                    "Could not delete audio file %s",
                    recording.audio_path,
                    extra={"recording_id": recording_id},
                    exc_info=True,
                )
        return recording
