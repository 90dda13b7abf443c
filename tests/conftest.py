"""Shared fixtures and fake collaborators for pipeline tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from ramble_pipeline.asr.interface import TranscriptionEngine, TranscriptionResult
from ramble_pipeline.config import Settings, SettingsStore
from ramble_pipeline.models import Recording, WebhookAttempt, utc_now
from ramble_pipeline.queue.transcription_queue import TranscriptionQueue
from ramble_pipeline.queue.webhook_retry import WebhookRetryTracker
from ramble_pipeline.storage.queue_store import QueueStore
from ramble_pipeline.storage.record_store import RecordStore
from ramble_pipeline.utils.retry import BackoffPolicy

WEBHOOK_URL = "https://hooks.example.com/ramble"

# Same caps and phase threshold as production, without the waiting
FAST_TRANSCRIPTION_POLICY = BackoffPolicy(max_attempts=5, delays=(0.0,))
FAST_WEBHOOK_POLICY = BackoffPolicy(
    max_attempts=15,
    delays=(0.0,),
    max_autoscheduled_attempts=5,
    background_delays=(0.0,),
)


class FakeEngine(TranscriptionEngine):
    """Scripted transcription engine.

    Each call pops the next outcome: a TranscriptionResult is returned,
    an exception is raised. With no outcomes left it returns "ok".
    """

    provider_name = "fake"

    def __init__(self, outcomes: list | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0
        self.blocking = False
        self.release = asyncio.Event()
        self.on_call: Callable[[str], None] | None = None

    async def transcribe(self, audio_path: str) -> TranscriptionResult:
        self.calls.append(audio_path)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.on_call is not None:
                self.on_call(audio_path)
            if self.blocking:
                await self.release.wait()
            else:
                await asyncio.sleep(0.001)
            outcome = (
                self.outcomes.pop(0) if self.outcomes else TranscriptionResult(text="ok")
            )
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        finally:
            self.active -= 1


class FakeSender:
    """Scripted webhook sender.

    Outcomes are WebhookAttempt, None (not configured), or an exception.
    With no outcomes left, ``default`` is used. With ``blocking`` set, each
    send hangs until ``release`` is set.
    """

    def __init__(self, outcomes: list | None = None, default: str = "success") -> None:
        self.outcomes = list(outcomes or [])
        self.default = default
        self.sent: list[str] = []
        self.blocking = False
        self.release = asyncio.Event()

    async def send_recording(self, recording: Recording) -> WebhookAttempt | None:
        self.sent.append(recording.id)
        if self.blocking:
            await self.release.wait()
        else:
            await asyncio.sleep(0)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
        else:
            outcome = make_attempt(self.default == "success", 200 if self.default == "success" else 500)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def make_attempt(success: bool, status_code: int | None = None) -> WebhookAttempt:
    return WebhookAttempt(
        url=WEBHOOK_URL,
        timestamp=utc_now(),
        success=success,
        status_code=status_code,
        error_message=None if success else f"HTTP {status_code}",
        latency_ms=12,
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds or time runs out."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def record_store(data_dir):
    return RecordStore(data_dir)


@pytest.fixture
def queue_store(data_dir):
    return QueueStore(data_dir)


@pytest.fixture
def settings_store(data_dir):
    store = SettingsStore(data_dir)
    store.save(Settings(webhook_url=WEBHOOK_URL, webhook_auth_token="test-token"))
    return store


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
async def make_queue(record_store, queue_store, settings_store):
    """Factory wiring a queue and tracker around fake collaborators."""
    created: list[TranscriptionQueue] = []

    def _make(
        engine: FakeEngine,
        sender: FakeSender,
        transcription_policy: BackoffPolicy = FAST_TRANSCRIPTION_POLICY,
        webhook_policy: BackoffPolicy = FAST_WEBHOOK_POLICY,
    ) -> TranscriptionQueue:
        tracker = WebhookRetryTracker(record_store, sender, policy=webhook_policy)
        queue = TranscriptionQueue(
            record_store=record_store,
            queue_store=queue_store,
            engine=engine,
            webhook_tracker=tracker,
            settings_store=settings_store,
            policy=transcription_policy,
        )
        created.append(queue)
        return queue

    yield _make

    for queue in created:
        queue.cancel_active_work()
        await queue.drain()
        await queue.webhook_tracker.shutdown()


@pytest.fixture
def add_recording(record_store, tmp_path):
    """Insert a recording with an audio file on disk."""

    def _add(**fields) -> Recording:
        recording = Recording(**fields)
        if not recording.audio_path:
            audio = tmp_path / f"{recording.id}.m4a"
            audio.write_bytes(b"fake-audio")
            recording.audio_path = str(audio)
        if not recording.duration:
            recording.duration = 12.5
        return record_store.insert(recording)

    return _add
