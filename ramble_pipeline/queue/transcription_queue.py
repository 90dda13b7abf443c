"""Persisted transcription job queue with single-flight processing.

Jobs are processed strictly in enqueue order, one at a time. A failing
job stays at the head of the queue with its retry counter bumped and is
retried after a backoff sleep; after the final attempt its recording is
marked failed and the job is dropped. Completed transcriptions that pass
the quality gate are handed to the webhook retry tracker.

Every state transition is persisted before control returns, so a crash
or a cancelled background task leaves state that the next
resume_pending_jobs() call can pick up again.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from ramble_pipeline.asr.interface import TranscriptionEngine, TranscriptionResult
from ramble_pipeline.config import SettingsStore
from ramble_pipeline.models import (
    Recording,
    TranscriptionJob,
    TranscriptionStatus,
    is_quality_acceptable,
    utc_now,
)
from ramble_pipeline.observability.metrics import (
    StageTimer,
    TranscriptionMetrics,
    estimate_transcription_cost,
    log_transcription_metrics,
)
from ramble_pipeline.queue.webhook_retry import WebhookRetryTracker
from ramble_pipeline.storage.queue_store import QueueStore
from ramble_pipeline.storage.record_store import RecordStore
from ramble_pipeline.utils.cancellation import CancellationToken
from ramble_pipeline.utils.errors import (
    RecordingNotFoundError,
    StorageError,
    WorkCancelledError,
)
from ramble_pipeline.utils.retry import TRANSCRIPTION_POLICY, BackoffPolicy

logger = logging.getLogger(__name__)


class TranscriptionQueue:
    """FIFO transcription queue driving one transcription at a time.

    Args:
        record_store: Store of Recording documents.
        queue_store: Persistence for the ordered job list.
        engine: Transcription provider.
        webhook_tracker: Delivers completed transcriptions.
        settings_store: Source of the quality threshold.
        policy: Transcription backoff policy.
    """

    def __init__(
        self,
        record_store: RecordStore,
        queue_store: QueueStore,
        engine: TranscriptionEngine,
        webhook_tracker: WebhookRetryTracker,
        settings_store: SettingsStore,
        policy: BackoffPolicy = TRANSCRIPTION_POLICY,
    ) -> None:
        self.record_store = record_store
        self.queue_store = queue_store
        self.engine = engine
        self.webhook_tracker = webhook_tracker
        self.settings_store = settings_store
        self.policy = policy
        self._jobs: list[TranscriptionJob] = queue_store.load()
        self._processing_task: asyncio.Task | None = None
        self._token = CancellationToken()
        self._tasks: set[asyncio.Task] = set()

        if self._jobs:
            logger.info("Loaded %d pending transcription job(s)", len(self._jobs))

    @property
    def is_processing(self) -> bool:
        return self._processing_task is not None

    @property
    def has_active_work(self) -> bool:
        """True while a transcription runs or any webhook retry loop is live.

        A job sleeping out its backoff between attempts does not count.
        """
        return self.is_processing or self.webhook_tracker.has_active_retries

    @property
    def jobs(self) -> list[TranscriptionJob]:
        return list(self._jobs)

    def job_for_recording(self, recording_id: str) -> TranscriptionJob | None:
        return next((j for j in self._jobs if j.recording_id == recording_id), None)

    def enqueue(self, recording_id: str) -> TranscriptionJob:
        """Append a fresh job for a recording and kick processing.

        A recording has at most one live job; enqueueing it again returns
        the existing job.
        """
        existing = self.job_for_recording(recording_id)
        if existing is not None:
            logger.info(
                "Recording already queued",
                extra={"recording_id": recording_id, "job_id": existing.id},
            )
            self.process_next_if_needed()
            return existing

        job = TranscriptionJob(recording_id=recording_id)
        self._jobs.append(job)
        self._save_queue()
        logger.info(
            "Enqueued transcription job",
            extra={"recording_id": recording_id, "job_id": job.id},
        )
        self.process_next_if_needed()
        return job

    def process_next_if_needed(self) -> bool:
        """Start processing the head job unless one is already running.

        Returns:
            True if a processing task was started.
        """
        if self._processing_task is not None or not self._jobs:
            return False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; jobs stay queued until resume")
            return False

        job = self._jobs[0]
        token = self._token
        task = loop.create_task(self._process_job(job, token))
        token.attach(task)
        self._processing_task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        # A task cancelled before its first step never enters its body
        task.add_done_callback(self._release_processing)
        return True

    def _release_processing(self, task: asyncio.Task | None) -> None:
        if task is not None and task is self._processing_task:
            self._processing_task = None

    def resume_pending_jobs(self) -> None:
        """Resume transcription and due webhook retries. Safe to call repeatedly."""
        self.process_next_if_needed()
        self.webhook_tracker.process_webhook_retries()

    def retry_transcription(self, recording_id: str) -> TranscriptionJob | None:
        """Manually send a recording back through transcription.

        Resets the recording to pending, clears its last error, and
        enqueues a new job with a zero retry count.

        Returns:
            The queued job, or None if the recording does not exist.
        """

        def reset(recording: Recording) -> None:
            recording.transcription_status = TranscriptionStatus.PENDING
            recording.last_transcription_error = None

        try:
            self.record_store.update(recording_id, reset)
        except RecordingNotFoundError:
            return None
        return self.enqueue(recording_id)

    def remove_jobs_for_recording(self, recording_id: str) -> int:
        """Drop every queued job for a recording. Returns how many were removed."""
        before = len(self._jobs)
        self._jobs = [j for j in self._jobs if j.recording_id != recording_id]
        removed = before - len(self._jobs)
        if removed:
            self._save_queue()
        return removed

    def cancel_active_work(self) -> None:
        """Cancel in-flight transcription and webhook retry tasks.

        Jobs stay queued and recordings keep their in-progress status;
        the next resume_pending_jobs() restarts the attempt from upload.
        """
        self._token.cancel()
        self._token = CancellationToken()
        self.webhook_tracker.cancel_pending()

    async def drain(self) -> None:
        """Wait until no processing task (including retry sleeps) is outstanding."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _process_job(self, job: TranscriptionJob, token: CancellationToken) -> None:
        retry_delay: float | None = None
        try:
            retry_delay = await self._run_job(job, token)
        except WorkCancelledError:
            logger.info(
                "Transcription cancelled",
                extra={"recording_id": job.recording_id, "job_id": job.id},
            )
            return
        except StorageError:
            # Job stays queued; the next resume retries it
            logger.error(
                "Storage failure while processing job",
                extra={"recording_id": job.recording_id, "job_id": job.id},
                exc_info=True,
            )
            return
        finally:
            self._release_processing(asyncio.current_task())

        if retry_delay is not None:
            try:
                await token.sleep(retry_delay)
            except WorkCancelledError:
                return
        self.process_next_if_needed()

    async def _run_job(
        self, job: TranscriptionJob, token: CancellationToken
    ) -> float | None:
        """Run one attempt for ``job``.

        Returns:
            Seconds to wait before the next attempt, or None to continue
            with the next job immediately.
        """
        recording = self.record_store.get(job.recording_id)
        if recording is None:
            logger.info(
                "Dropping job for deleted recording",
                extra={"recording_id": job.recording_id, "job_id": job.id},
            )
            self._remove_job(job)
            return None

        try:
            self._set_status(job.recording_id, TranscriptionStatus.UPLOADING)
            token.raise_if_cancelled()
            recording = self._set_status(
                job.recording_id, TranscriptionStatus.PROCESSING
            )
        except RecordingNotFoundError:
            self._remove_job(job)
            return None

        logger.info(
            "Transcribing recording (attempt %d)",
            job.retry_count + 1,
            extra={
                "recording_id": job.recording_id,
                "job_id": job.id,
                "stage": "transcribe",
            },
        )
        timer = StageTimer("transcribe")
        try:
            with timer:
                result = await self.engine.transcribe(recording.audio_path)
        except (WorkCancelledError, asyncio.CancelledError):
            raise
        except Exception as exc:
            return self._handle_failure(job, recording, exc, timer.duration_seconds)

        token.raise_if_cancelled()
        await self._handle_success(job, recording, result, timer.duration_seconds)
        return None

    async def _handle_success(
        self,
        job: TranscriptionJob,
        recording: Recording,
        result: TranscriptionResult,
        wall_time: float,
    ) -> None:
        threshold = self.settings_store.load().transcription_quality_threshold
        deliver = is_quality_acceptable(result.no_speech_probability, threshold)

        def complete(current: Recording) -> None:
            current.transcription = result.text
            current.transcription_status = TranscriptionStatus.COMPLETED
            current.last_transcription_error = None
            current.no_speech_probability = result.no_speech_probability
            current.transcription_language = result.language
            if deliver:
                # Persisted as due so a resume sweep re-sends it if this
                # task is cancelled before the delivery is recorded
                current.next_webhook_retry_at = utc_now()

        try:
            self.record_store.update(job.recording_id, complete)
        except RecordingNotFoundError:
            logger.info(
                "Recording deleted during transcription",
                extra={"recording_id": job.recording_id, "job_id": job.id},
            )
            self._remove_job(job)
            return

        self._remove_job(job)
        log_transcription_metrics(
            TranscriptionMetrics(
                recording_id=job.recording_id,
                job_id=job.id,
                status="completed",
                attempt=job.retry_count + 1,
                audio_duration_seconds=recording.duration,
                wall_time_seconds=wall_time,
                cost_estimate=estimate_transcription_cost(recording.duration),
                no_speech_probability=result.no_speech_probability,
                language=result.language,
            )
        )

        if deliver:
            await self.webhook_tracker.send_webhook_with_retry(job.recording_id)
        else:
            logger.info(
                "Skipping webhook for low-quality transcription "
                "(no_speech_prob: %.2f)",
                result.no_speech_probability or 0.0,
                extra={"recording_id": job.recording_id, "job_id": job.id},
            )

    def _handle_failure(
        self,
        job: TranscriptionJob,
        recording: Recording,
        exc: Exception,
        wall_time: float,
    ) -> float | None:
        error_message = str(exc) or type(exc).__name__
        job.retry_count += 1
        exhausted = self.policy.is_exhausted(job.retry_count)
        delay = None if exhausted else self.policy.delay_after_failures(job.retry_count)

        def record_failure(current: Recording) -> None:
            current.last_transcription_error = error_message
            if exhausted:
                current.transcription_status = TranscriptionStatus.FAILED
            else:
                current.transcription_status = TranscriptionStatus.PENDING

        log_transcription_metrics(
            TranscriptionMetrics(
                recording_id=job.recording_id,
                job_id=job.id,
                status="failed" if exhausted else "retrying",
                attempt=job.retry_count,
                audio_duration_seconds=recording.duration,
                wall_time_seconds=wall_time,
                error_message=error_message,
            )
        )

        try:
            self.record_store.update(job.recording_id, record_failure)
        except RecordingNotFoundError:
            self._remove_job(job)
            return None

        if exhausted:
            logger.warning(
                "Transcription failed permanently after %d attempts: %s",
                job.retry_count,
                error_message,
                extra={
                    "recording_id": job.recording_id,
                    "job_id": job.id,
                    "retry_count": job.retry_count,
                    "error": error_message,
                },
            )
            self._remove_job(job)
            return None

        job.next_retry_at = utc_now() + timedelta(seconds=delay)
        self._update_job(job)
        logger.warning(
            "Transcription retry %d/%d in %ds: %s",
            job.retry_count,
            self.policy.max_attempts,
            int(delay),
            error_message,
            extra={
                "recording_id": job.recording_id,
                "job_id": job.id,
                "retry_count": job.retry_count,
                "delay_seconds": delay,
                "error": error_message,
            },
        )
        return delay

    def _set_status(self, recording_id: str, status: TranscriptionStatus) -> Recording:
        def apply(recording: Recording) -> None:
            recording.transcription_status = status

        return self.record_store.update(recording_id, apply)

    def _remove_job(self, job: TranscriptionJob) -> None:
        self._jobs = [j for j in self._jobs if j.id != job.id]
        self._save_queue()

    def _update_job(self, job: TranscriptionJob) -> None:
        for index, queued in enumerate(self._jobs):
            if queued.id == job.id:
                self._jobs[index] = job
                self._save_queue()
                return

    def _save_queue(self) -> None:
        self.queue_store.save(self._jobs)
