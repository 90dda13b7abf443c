"""Pipeline daemon entry point.

Builds the stores, provider, queue, and webhook tracker from the
environment, resumes pending work, and runs periodic background wakes
alongside a lightweight HTTP status endpoint reporting the liveness
signal. Handles SIGTERM/SIGINT by cancelling in-flight work, which
leaves persisted state for the next start to resume.
"""

import asyncio
import json
import logging
import signal
from asyncio import StreamReader, StreamWriter
from dataclasses import dataclass

from ramble_pipeline.asr.registry import get_transcription_engine
from ramble_pipeline.config import PipelineConfig, SettingsStore
from ramble_pipeline.lifecycle.background import BackgroundTaskRunner
from ramble_pipeline.observability.logger import configure_logging
from ramble_pipeline.queue.transcription_queue import TranscriptionQueue
from ramble_pipeline.queue.webhook_retry import WebhookRetryTracker
from ramble_pipeline.recording_manager import RecordingManager
from ramble_pipeline.storage.queue_store import QueueStore
from ramble_pipeline.storage.record_store import RecordStore
from ramble_pipeline.webhook.sender import WebhookSender

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 25


@dataclass
class Pipeline:
    """All wired components of a running pipeline."""

    config: PipelineConfig
    record_store: RecordStore
    settings_store: SettingsStore
    queue: TranscriptionQueue
    webhook_tracker: WebhookRetryTracker
    recordings: RecordingManager
    runner: BackgroundTaskRunner


def build_pipeline(config: PipelineConfig) -> Pipeline:
    """Construct every component with explicit dependencies."""
    config.data_dir.mkdir(parents=True, exist_ok=True)
    record_store = RecordStore(config.data_dir)
    settings_store = SettingsStore(config.data_dir)
    engine = get_transcription_engine(
        config.transcription_provider, **config.provider_options
    )
    tracker = WebhookRetryTracker(record_store, WebhookSender(settings_store))
    queue = TranscriptionQueue(
        record_store=record_store,
        queue_store=QueueStore(config.data_dir),
        engine=engine,
        webhook_tracker=tracker,
        settings_store=settings_store,
    )
    return Pipeline(
        config=config,
        record_store=record_store,
        settings_store=settings_store,
        queue=queue,
        webhook_tracker=tracker,
        recordings=RecordingManager(record_store, queue),
        runner=BackgroundTaskRunner(
            queue, budget_seconds=config.background_task_budget_seconds
        ),
    )


def _status_body(queue: TranscriptionQueue) -> str:
    return json.dumps(
        {
            "is_processing": queue.is_processing,
            "has_active_work": queue.has_active_work,
            "queued_jobs": len(queue.jobs),
        }
    )


def _make_status_handler(queue: TranscriptionQueue):
    async def _status_handler(reader: StreamReader, writer: StreamWriter) -> None:
        """Minimal HTTP handler returning the queue's liveness as JSON."""
        await reader.read(4096)
        body = _status_body(queue)
        response = (
            "HTTP/1.1 200 OK\r\n"
            "Content-Type: application/json\r\n"
            f"Content-Length: {len(body.encode())}\r\n"
            "\r\n"
            f"{body}"
        )
        writer.write(response.encode())
        await writer.drain()
        writer.close()

    return _status_handler


async def _run(pipeline: Pipeline) -> None:
    """Run the status server and background wake loop until signalled."""
    config = pipeline.config
    server = await asyncio.start_server(
        _make_status_handler(pipeline.queue), "0.0.0.0", config.port
    )
    logger.info("Status server listening on port %d", config.port)

    pipeline.runner.on_foreground()
    wake_task = asyncio.create_task(
        pipeline.runner.run_forever(config.background_wake_interval_seconds)
    )

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _shutdown() -> None:
        logger.info("Received shutdown signal")
        pipeline.runner.stop()
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown)

    await stop_event.wait()

    pipeline.runner.on_expiration()
    wake_task.cancel()
    await asyncio.gather(wake_task, return_exceptions=True)
    try:
        await asyncio.wait_for(pipeline.queue.drain(), timeout=SHUTDOWN_TIMEOUT_SECONDS)
    except TimeoutError:
        logger.warning(
            "In-flight work did not stop within %ds", SHUTDOWN_TIMEOUT_SECONDS
        )
    await pipeline.webhook_tracker.shutdown()
    server.close()
    await server.wait_closed()


def main() -> None:
    """Start the pipeline daemon."""
    configure_logging()
    logger.info("Ramble pipeline starting")

    pipeline = build_pipeline(PipelineConfig.from_env())
    asyncio.run(_run(pipeline))


if __name__ == "__main__":
    main()
