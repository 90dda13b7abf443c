"""Tests for webhook delivery and its two-phase retry schedule."""

import asyncio
from datetime import timedelta

import pytest

from conftest import FAST_WEBHOOK_POLICY, FakeSender, make_attempt, wait_until
from ramble_pipeline.models import TranscriptionStatus, utc_now
from ramble_pipeline.queue.webhook_retry import WebhookRetryTracker
from ramble_pipeline.utils.retry import WEBHOOK_POLICY


@pytest.fixture
async def make_tracker(record_store):
    created: list[WebhookRetryTracker] = []

    def _make(sender, policy=FAST_WEBHOOK_POLICY) -> WebhookRetryTracker:
        tracker = WebhookRetryTracker(record_store, sender, policy=policy)
        created.append(tracker)
        return tracker

    yield _make

    for tracker in created:
        await tracker.shutdown()


@pytest.fixture
def completed(add_recording):
    return add_recording(
        transcription_status=TranscriptionStatus.COMPLETED,
        transcription="Call the dentist",
        no_speech_probability=0.1,
    )


class TestDelivery:
    """Tests for single deliveries."""

    async def test_success_resets_retry_state(
        self, make_tracker, record_store, completed
    ) -> None:
        record_store.update(completed.id, lambda r: setattr(r, "webhook_retry_count", 3))
        tracker = make_tracker(FakeSender([make_attempt(True, 200)]))

        await tracker.send_webhook_with_retry(completed.id)

        stored = record_store.get(completed.id)
        assert stored.webhook_retry_count == 0
        assert stored.next_webhook_retry_at is None
        assert len(stored.webhook_attempts) == 1
        assert stored.webhook_attempts[0].success
        assert not tracker.has_active_retries

    async def test_first_failure_schedules_in_app_retry(
        self, make_tracker, record_store, completed
    ) -> None:
        tracker = make_tracker(FakeSender([make_attempt(False, 500)]), WEBHOOK_POLICY)
        before = utc_now()

        await tracker.send_webhook_with_retry(completed.id)

        stored = record_store.get(completed.id)
        assert stored.webhook_retry_count == 1
        assert len(stored.webhook_attempts) == 1
        assert stored.webhook_attempts[0].status_code == 500
        expected = before + timedelta(seconds=5)
        assert abs((stored.next_webhook_retry_at - expected).total_seconds()) < 1
        assert tracker.active_ids == frozenset({completed.id})

    async def test_not_configured_leaves_recording_untouched(
        self, make_tracker, record_store, completed
    ) -> None:
        tracker = make_tracker(FakeSender([None]))

        await tracker.send_webhook_with_retry(completed.id)

        stored = record_store.get(completed.id)
        assert stored.webhook_attempts == []
        assert stored.webhook_retry_count == 0
        assert stored.version == completed.version

    async def test_not_configured_clears_due_delivery(
        self, make_tracker, record_store, completed
    ) -> None:
        record_store.update(
            completed.id, lambda r: setattr(r, "next_webhook_retry_at", utc_now())
        )
        tracker = make_tracker(FakeSender([None]))

        assert tracker.process_webhook_retries() == 1
        await wait_until(lambda: not tracker.has_active_retries)

        stored = record_store.get(completed.id)
        assert stored.next_webhook_retry_at is None
        assert stored.webhook_attempts == []
        assert tracker.process_webhook_retries() == 0

    async def test_sender_exception_counts_as_failure(
        self, make_tracker, record_store, completed
    ) -> None:
        sender = FakeSender([RuntimeError("socket closed")], default="success")
        tracker = make_tracker(sender)

        await tracker.send_webhook_with_retry(completed.id)
        await wait_until(lambda: not tracker.has_active_retries)

        stored = record_store.get(completed.id)
        assert [a.success for a in stored.webhook_attempts] == [False, True]
        assert stored.webhook_attempts[0].error_message == "socket closed"
        assert stored.webhook_retry_count == 0

    async def test_missing_recording_is_ignored(self, make_tracker) -> None:
        sender = FakeSender()
        tracker = make_tracker(sender)

        await tracker.send_webhook_with_retry("gone")

        assert sender.sent == []


class TestRetrySchedule:
    """Tests for the in-app and background phases."""

    async def test_in_app_phase_runs_to_sixth_attempt(
        self, make_tracker, record_store, completed
    ) -> None:
        sender = FakeSender(default="failure")
        tracker = make_tracker(sender)

        await tracker.send_webhook_with_retry(completed.id)
        await wait_until(lambda: not tracker.has_active_retries)

        stored = record_store.get(completed.id)
        assert len(sender.sent) == 6
        assert stored.webhook_retry_count == 6
        assert stored.next_webhook_retry_at is not None
        assert len(stored.webhook_attempts) == 6

    async def test_background_wakes_run_until_exhausted(
        self, make_tracker, record_store, completed
    ) -> None:
        sender = FakeSender(default="failure")
        tracker = make_tracker(sender)
        await tracker.send_webhook_with_retry(completed.id)
        await wait_until(lambda: not tracker.has_active_retries)

        for expected_count in range(7, 16):
            assert tracker.process_webhook_retries() == 1
            await wait_until(lambda: not tracker.has_active_retries)
            assert record_store.get(completed.id).webhook_retry_count == expected_count

        stored = record_store.get(completed.id)
        assert stored.webhook_retries_exhausted()
        assert stored.next_webhook_retry_at is None
        assert len(stored.webhook_attempts) == 15
        assert tracker.process_webhook_retries() == 0

    async def test_manual_retry_after_exhaustion(
        self, make_tracker, record_store, completed
    ) -> None:
        def exhaust(recording) -> None:
            recording.webhook_attempts.append(make_attempt(False, 503))
            recording.webhook_retry_count = 15

        record_store.update(completed.id, exhaust)
        tracker = make_tracker(FakeSender([make_attempt(True, 200)]))

        assert await tracker.retry_webhook(completed.id)

        stored = record_store.get(completed.id)
        assert stored.webhook_retry_count == 0
        assert stored.next_webhook_retry_at is None
        assert stored.last_webhook_attempt.success
        assert len(stored.webhook_attempts) == 2

    async def test_manual_retry_failure_restarts_schedule(
        self, make_tracker, record_store, completed
    ) -> None:
        record_store.update(completed.id, lambda r: setattr(r, "webhook_retry_count", 15))
        tracker = make_tracker(FakeSender([make_attempt(False, 500)]), WEBHOOK_POLICY)

        await tracker.retry_webhook(completed.id)

        assert record_store.get(completed.id).webhook_retry_count == 1

    async def test_manual_retry_missing_recording(self, make_tracker) -> None:
        tracker = make_tracker(FakeSender())
        assert not await tracker.retry_webhook("gone")

    async def test_process_skips_recordings_not_due(
        self, make_tracker, record_store, completed
    ) -> None:
        def schedule_later(recording) -> None:
            recording.webhook_retry_count = 2
            recording.next_webhook_retry_at = utc_now() + timedelta(minutes=5)

        record_store.update(completed.id, schedule_later)
        tracker = make_tracker(FakeSender())

        assert tracker.process_webhook_retries() == 0

    async def test_one_loop_per_recording(
        self, make_tracker, record_store, completed
    ) -> None:
        tracker = make_tracker(FakeSender(), WEBHOOK_POLICY)

        assert tracker.schedule_webhook_retry(completed.id, 60)
        assert not tracker.schedule_webhook_retry(completed.id, 0)
        assert tracker.active_ids == frozenset({completed.id})

    async def test_deleted_recording_stops_loop(
        self, make_tracker, record_store, completed
    ) -> None:
        sender = FakeSender([make_attempt(False, 500)])
        tracker = make_tracker(sender)
        record_store.delete(completed.id)

        assert tracker.schedule_webhook_retry(completed.id, 0)
        await wait_until(lambda: not tracker.has_active_retries)

        assert sender.sent == []
        assert record_store.get(completed.id) is None


class TestCancellation:
    """Tests for cancelling pending retry loops."""

    async def test_shutdown_keeps_persisted_schedule(
        self, make_tracker, record_store, completed
    ) -> None:
        tracker = make_tracker(FakeSender([make_attempt(False, 500)]), WEBHOOK_POLICY)
        await tracker.send_webhook_with_retry(completed.id)

        await tracker.shutdown()

        assert not tracker.has_active_retries
        stored = record_store.get(completed.id)
        assert stored.webhook_retry_count == 1
        assert stored.next_webhook_retry_at is not None

    async def test_new_loops_allowed_after_cancel(
        self, make_tracker, completed
    ) -> None:
        tracker = make_tracker(FakeSender(), WEBHOOK_POLICY)
        tracker.schedule_webhook_retry(completed.id, 60)

        await tracker.shutdown()

        assert tracker.schedule_webhook_retry(completed.id, 60)

    async def test_cancel_before_loop_starts_releases_recording(
        self, make_tracker, completed
    ) -> None:
        tracker = make_tracker(FakeSender())
        assert tracker.schedule_webhook_retry(completed.id, 0)

        tracker.cancel_pending()
        await tracker.shutdown()

        assert completed.id not in tracker.active_ids
        assert not tracker.has_active_retries
        assert tracker.schedule_webhook_retry(completed.id, 60)

    async def test_sweep_skips_recording_with_send_in_flight(
        self, make_tracker, record_store, completed
    ) -> None:
        record_store.update(
            completed.id, lambda r: setattr(r, "next_webhook_retry_at", utc_now())
        )
        sender = FakeSender()
        sender.blocking = True
        tracker = make_tracker(sender)

        send = asyncio.create_task(tracker.send_webhook_with_retry(completed.id))
        await wait_until(lambda: sender.sent == [completed.id])

        assert tracker.process_webhook_retries() == 0

        sender.release.set()
        await send

        assert sender.sent == [completed.id]
        assert record_store.get(completed.id).next_webhook_retry_at is None
