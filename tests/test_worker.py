"""Tests for the worker pool: retries, failures, cancellation and recovery.

Runs the real SQLite store and queue with FakeCodec standing in for ffmpeg.
Backoff is zero in the test config, so retried messages are redelivered
within the same drain.
"""

import time

import pytest

from mediaproc.catalog import VideoStatus
from mediaproc.errors import (
    ArtifactStoreError,
    CodecError,
    InvalidSource,
    InvalidTransition,
    JobInterrupted,
    UnsupportedResolution,
)
from mediaproc.queue import JobStatus, classify_error
from mediaproc.queue.models import ErrorKind, ThumbnailSettings, TranscodeSettings
from mediaproc.queue.worker import Outcome


@pytest.fixture
def submit(service, video, source_video):
    """Create one thumbnail and one 720p transcode; returns (thumbnail_id, transcode_id)."""

    def _submit(**transcode_overrides):
        requests = [
            {"job_type": "thumbnail", "settings": ThumbnailSettings(count=2)},
            {
                "job_type": "transcode",
                "settings": TranscodeSettings(resolution="720p"),
                **transcode_overrides,
            },
        ]
        return service.create_jobs(video.id, "user-1", source_video, requests)

    return _submit


@pytest.fixture
def pool(service):
    return service.build_pool(concurrency=1)


class TestRetry:
    def test_transient_failure_retried_then_succeeds(self, service, pool, submit, fake_codec):
        _, transcode_id = submit()
        fake_codec.fail("transcode", CodecError("ffmpeg killed by signal 9", kind="transient"))

        stats = pool.run_until_idle()

        job = service.get_job(transcode_id)
        assert job.status == JobStatus.COMPLETED
        assert job.retry_count == 1
        assert "ffmpeg killed" in job.last_error
        assert stats.get(Outcome.RETRIED) == 1
        assert stats.get(Outcome.COMPLETED) == 2
        assert len(fake_codec.calls_of("transcode")) == 2

    def test_retries_exhausted(self, service, pool, submit, fake_codec):
        _, transcode_id = submit()
        fake_codec.fail(
            "transcode", *[CodecError("Connection reset", kind="transient") for _ in range(4)]
        )

        pool.run_until_idle()

        job = service.get_job(transcode_id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 3
        assert job.error_kind == ErrorKind.TRANSIENT
        assert job.last_error.startswith("Retries exhausted (3/3).")
        assert job.completed_at is not None
        assert len(fake_codec.calls_of("transcode")) == 4
        assert service.queue.get_message(transcode_id)["state"] == "dead"

        # The only transcode failed, so the video fails
        assert service.catalog.get_video("vid-1").status == VideoStatus.FAILED

    def test_max_retries_zero_fails_on_first_error(self, service, pool, submit, fake_codec):
        _, transcode_id = submit(max_retries=0)
        fake_codec.fail("transcode", ArtifactStoreError("upload timed out"))

        pool.run_until_idle()

        job = service.get_job(transcode_id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 0
        assert job.last_error.startswith("Retries exhausted (0/0).")

    def test_permanent_failure_not_retried(self, service, pool, submit, fake_codec):
        _, transcode_id = submit()
        fake_codec.fail(
            "transcode", CodecError("Invalid data found when processing input", kind="permanent")
        )

        stats = pool.run_until_idle()

        job = service.get_job(transcode_id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 0
        assert job.error_kind == ErrorKind.PERMANENT
        assert "Invalid data" in job.last_error
        assert stats.get(Outcome.RETRIED) == 0
        assert len(fake_codec.calls_of("transcode")) == 1

    def test_thumbnail_timestamp_past_the_end_fails_permanently(
        self, service, pool, video, source_video, fake_codec
    ):
        [job_id] = service.create_jobs(
            video.id, "user-1", source_video,
            [{"job_type": "thumbnail", "settings": ThumbnailSettings(timestamps=[5.0, 45.0])}],
        )

        pool.run_until_idle()

        job = service.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_kind == ErrorKind.PERMANENT
        assert job.retry_count == 0
        assert "45.0" in job.last_error
        assert fake_codec.calls_of("extract_frame") == []
        assert service.catalog.get_video("vid-1").status == VideoStatus.FAILED


class TestCancellation:
    def test_cancel_pending_job(self, service, pool, submit, fake_codec):
        thumbnail_id, transcode_id = submit()

        cancelled = service.cancel_job(transcode_id)
        assert cancelled.status == JobStatus.CANCELLED
        assert service.queue.get_message(transcode_id) is None

        stats = pool.run_until_idle()
        assert stats.processed == 1
        assert fake_codec.calls_of("transcode") == []
        assert service.get_job(thumbnail_id).status == JobStatus.COMPLETED

    def test_cancel_running_job(self, service, pool, submit, fake_codec, artifacts):
        _, transcode_id = submit()
        fake_codec.hooks["transcode"] = lambda _token: service.cancel_job(transcode_id)

        stats = pool.run_until_idle()

        job = service.get_job(transcode_id)
        assert job.status == JobStatus.CANCELLED
        assert job.completed_at is not None
        assert stats.get(Outcome.CANCELLED) == 1
        assert not any(key.startswith("processed/") for key in artifacts.objects)
        assert service.queue.get_message(transcode_id)["state"] == "acked"

    def test_cancelled_record_wins_over_late_result(self, service, pool, submit, fake_codec):
        """An operator cancel landing while the handler finishes discards the result."""
        _, transcode_id = submit()
        fake_codec.hooks["transcode"] = lambda _token: service.store.mark_cancelled(transcode_id)

        stats = pool.run_until_idle()

        assert service.get_job(transcode_id).status == JobStatus.CANCELLED
        assert stats.get(Outcome.CANCELLED) == 1
        assert stats.get(Outcome.COMPLETED) == 1

    @pytest.mark.parametrize(
        "error",
        [
            CodecError("Connection reset by peer", kind="transient"),
            CodecError("Invalid data found when processing input", kind="permanent"),
            JobInterrupted("Worker shutting down"),
        ],
        ids=["transient", "permanent", "interrupted"],
    )
    def test_cancel_during_failing_encode(self, service, pool, submit, fake_codec, error):
        """A record cancelled while the encode was failing ends cancelled, not retried or failed."""
        _, transcode_id = submit()

        def cancel_then_fail(_token):
            service.store.mark_cancelled(transcode_id)
            raise error

        fake_codec.hooks["transcode"] = cancel_then_fail

        stats = pool.run_until_idle()

        job = service.get_job(transcode_id)
        assert job.status == JobStatus.CANCELLED
        assert job.retry_count == 0
        assert stats.get(Outcome.CANCELLED) == 1
        assert stats.get(Outcome.RETRIED) == 0
        assert service.queue.get_message(transcode_id)["state"] == "acked"
        assert len(fake_codec.calls_of("transcode")) == 1
        # The thumbnail completed and the only transcode was cancelled
        assert service.catalog.get_video("vid-1").status == VideoStatus.READY

    def test_cancel_terminal_job_rejected(self, service, pool, submit):
        thumbnail_id, _ = submit()
        pool.run_until_idle()

        with pytest.raises(InvalidTransition):
            service.cancel_job(thumbnail_id)


class TestRecovery:
    def test_redelivered_processing_job_recovered(self, service, pool, submit):
        """A job left processing by a dead worker is re-run without consuming a retry."""
        submit()
        handle = service.queue.dequeue("dead-worker")
        service.store.mark_processing(handle.job_id, "dead-worker")

        # Jump past the visibility timeout
        service.queue.clock = lambda: time.time() + service.config.queue.visibility_timeout_s + 1

        stats = pool.run_until_idle()

        job = service.get_job(handle.job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.retry_count == 0
        assert stats.get(Outcome.COMPLETED) == 2
        to_states = [t.to_state for t in service.store.get_transitions(handle.job_id)]
        assert to_states == ["pending", "processing", "pending", "processing", "completed"]

    def test_interrupt_returns_job_to_queue(self, service, pool, submit, fake_codec):
        _, transcode_id = submit()
        fake_codec.hooks["transcode"] = lambda _token: pool.stop(wait=False, interrupt=True)

        stats = pool.run_until_idle()

        job = service.get_job(transcode_id)
        assert job.status == JobStatus.PENDING
        assert job.retry_count == 0
        assert stats.get(Outcome.REQUEUED) == 1
        assert service.queue.get_message(transcode_id)["state"] == "ready"

        # The next drain picks it up again
        fake_codec.hooks.clear()
        pool.run_until_idle()
        assert service.get_job(transcode_id).status == JobStatus.COMPLETED

    def test_stale_message_for_terminal_job_skipped(self, service, pool, submit):
        thumbnail_id, _ = submit()
        pool.run_until_idle()

        service.queue.enqueue(thumbnail_id, priority=10)
        stats = pool.run_until_idle()

        assert stats.get(Outcome.SKIPPED) == 1
        assert service.get_job(thumbnail_id).status == JobStatus.COMPLETED


class TestPoolLifecycle:
    def test_background_threads_process_jobs(self, service, submit):
        thumbnail_id, transcode_id = submit()

        with service.build_pool(concurrency=2) as pool:
            deadline = time.time() + 10
            while time.time() < deadline:
                statuses = {service.get_job(j).status for j in (thumbnail_id, transcode_id)}
                if statuses == {JobStatus.COMPLETED}:
                    break
                time.sleep(0.05)

        assert pool.stats.get(Outcome.COMPLETED) == 2
        assert service.catalog.get_video("vid-1").status == VideoStatus.READY

    @pytest.mark.parametrize("background", [False, True], ids=["drain", "background"])
    def test_thread_connections_released(self, service, source_video, fake_codec, background):
        """Connections opened by short-lived pool threads are closed when those threads exit."""
        job_ids = []
        for n in range(5):
            video = service.catalog.create_video(
                f"vid-{n}", user_id="user-1", source=source_video, status=VideoStatus.UPLOADING
            )
            requests = [
                {"job_type": "thumbnail", "settings": ThumbnailSettings(count=1)},
                {"job_type": "transcode", "settings": TranscodeSettings(resolution="480p")},
            ]
            job_ids += service.create_jobs(video.id, "user-1", source_video, requests)

        def slow(_token):
            # Outlast a few heartbeat ticks so every job opens a heartbeat connection
            time.sleep(0.12)

        fake_codec.hooks["transcode"] = slow
        fake_codec.hooks["extract_frame"] = slow

        if background:
            with service.build_pool(concurrency=2):
                deadline = time.time() + 20
                while time.time() < deadline:
                    if all(service.get_job(j).status == JobStatus.COMPLETED for j in job_ids):
                        break
                    time.sleep(0.05)
        else:
            service.build_pool(concurrency=2).run_until_idle()

        assert all(service.get_job(j).status == JobStatus.COMPLETED for j in job_ids)
        # Only the test thread's own connections remain
        assert service.store.conn.open_connections == 1
        assert service.queue.conn.open_connections == 1
        assert service.catalog.conn.open_connections == 1

    def test_double_start_rejected(self, pool):
        pool.start()
        try:
            with pytest.raises(RuntimeError):
                pool.start()
        finally:
            pool.stop()


class TestClassifyError:
    @pytest.mark.parametrize(
        "exc,expected",
        [
            (CodecError("x", kind="transient"), ErrorKind.TRANSIENT),
            (CodecError("x", kind="permanent"), ErrorKind.PERMANENT),
            (InvalidSource("corrupt"), ErrorKind.PERMANENT),
            (UnsupportedResolution("999p"), ErrorKind.PERMANENT),
            (FileNotFoundError("gone"), ErrorKind.PERMANENT),
            (ValueError("bad"), ErrorKind.PERMANENT),
            (ArtifactStoreError("timeout"), ErrorKind.TRANSIENT),
            (OSError(28, "No space left on device"), ErrorKind.TRANSIENT),
            (RuntimeError("unexpected"), ErrorKind.TRANSIENT),
        ],
    )
    def test_classification(self, exc, expected):
        assert classify_error(exc) == expected
