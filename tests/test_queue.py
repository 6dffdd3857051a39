"""Unit tests for the SQLite delivery queue.

Tests cover:
- Priority ordering and idempotent enqueue
- Visibility timeout redelivery
- Backoff delays on nack
- Stale handle rejection
- Depth counters and purge
"""

import tempfile
from pathlib import Path

import pytest

from mediaproc.models import QueueConfig
from mediaproc.queue import SQLiteQueue


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def temp_db():
    """Create temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test_queue.db"
        yield str(db_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(temp_db, clock):
    """SQLiteQueue with a controllable clock and no jitter."""
    q = SQLiteQueue(
        temp_db,
        visibility_timeout_s=60.0,
        backoff_base_s=5.0,
        backoff_cap_s=300.0,
        jitter_s=0.0,
        clock=clock,
    )
    yield q
    q.close()


class TestQueueOperations:
    """Test enqueue/dequeue semantics."""

    def test_enqueue_dequeue(self, queue):
        assert queue.enqueue("job-1", priority=50)

        handle = queue.dequeue("worker-a")
        assert handle is not None
        assert handle.job_id == "job-1"
        assert handle.worker_id == "worker-a"
        assert handle.deliveries == 1
        assert not handle.is_redelivery

    def test_dequeue_empty_queue(self, queue):
        assert queue.dequeue("worker-a") is None

    def test_priority_order(self, queue, clock):
        """Lower priority number is served first; ties go FIFO."""
        queue.enqueue("transcode-1", priority=50)
        clock.advance(1)
        queue.enqueue("thumbnail", priority=10)
        clock.advance(1)
        queue.enqueue("transcode-2", priority=50)

        order = [queue.dequeue("w").job_id for _ in range(3)]
        assert order == ["thumbnail", "transcode-1", "transcode-2"]

    def test_enqueue_idempotent(self, queue):
        """A job has at most one live message."""
        assert queue.enqueue("job-1", priority=50)
        assert not queue.enqueue("job-1", priority=50)

        assert queue.depth().waiting == 1

    def test_delayed_message_not_deliverable_early(self, queue, clock):
        queue.enqueue("job-1", priority=50, delay_s=10)

        assert queue.dequeue("w") is None
        clock.advance(10)
        assert queue.dequeue("w").job_id == "job-1"

    def test_jitter_added_on_enqueue(self, temp_db, clock):
        q = SQLiteQueue(temp_db, jitter_s=2.0, clock=clock, rng=lambda: 0.5)
        q.enqueue("job-1", priority=50)

        message = q.get_message("job-1")
        assert message["available_at"] == pytest.approx(clock.now + 1.0)
        q.close()


class TestVisibility:
    """Test crash recovery through the visibility timeout."""

    def test_unacked_message_redelivered_after_timeout(self, queue, clock):
        queue.enqueue("job-1", priority=50)
        first = queue.dequeue("worker-a")

        # Hidden while in flight
        assert queue.dequeue("worker-b") is None

        clock.advance(61)
        second = queue.dequeue("worker-b")
        assert second is not None
        assert second.job_id == "job-1"
        assert second.deliveries == 2
        assert second.is_redelivery
        assert first.message_id == second.message_id

    def test_touch_extends_visibility(self, queue, clock):
        queue.enqueue("job-1", priority=50)
        handle = queue.dequeue("worker-a")

        clock.advance(50)
        assert queue.touch(handle)
        clock.advance(50)

        assert queue.dequeue("worker-b") is None

    def test_stale_handle_rejected(self, queue, clock):
        """After redelivery the first holder can no longer settle the message."""
        queue.enqueue("job-1", priority=50)
        stale = queue.dequeue("worker-a")
        clock.advance(61)
        current = queue.dequeue("worker-b")

        assert not queue.ack(stale)
        assert not queue.touch(stale)
        assert queue.ack(current)

    def test_acked_message_never_redelivered(self, queue, clock):
        queue.enqueue("job-1", priority=50)
        handle = queue.dequeue("worker-a")
        assert queue.ack(handle)

        clock.advance(3600)
        assert queue.dequeue("worker-b") is None


class TestBackoff:
    """Test nack delays."""

    @pytest.mark.parametrize(
        "retry_count,expected",
        [(0, 0.0), (1, 5.0), (2, 10.0), (3, 20.0), (7, 300.0), (12, 300.0)],
    )
    def test_backoff_delay(self, queue, retry_count, expected):
        assert queue.backoff_delay(retry_count) == expected

    def test_nack_delays_redelivery(self, queue, clock):
        queue.enqueue("job-1", priority=50)
        handle = queue.dequeue("worker-a")

        assert queue.nack(handle, queue.backoff_delay(2))
        clock.advance(9)
        assert queue.dequeue("worker-a") is None
        clock.advance(1)

        again = queue.dequeue("worker-a")
        assert again.job_id == "job-1"
        assert again.deliveries == 2

    def test_from_config(self, temp_db):
        q = SQLiteQueue.from_config(
            temp_db, QueueConfig(backoff_base_s=2.0, backoff_cap_s=7.0, jitter_s=0.0)
        )
        assert q.backoff_delay(1) == 2.0
        assert q.backoff_delay(3) == 7.0
        q.close()


class TestDepth:
    """Test depth counters and purge."""

    def test_depth_counts_each_state(self, queue):
        for job_id in ("a", "b", "c", "d"):
            queue.enqueue(job_id, priority=50)

        done = queue.dequeue("w")
        dead = queue.dequeue("w")
        queue.dequeue("w")  # stays in flight
        queue.ack(done)
        queue.dead_letter(dead, "boom")

        depth = queue.depth()
        assert depth.waiting == 1
        assert depth.active == 1
        assert depth.completed == 1
        assert depth.failed == 1
        assert depth.total == 4

    def test_dead_letter_records_reason(self, queue):
        queue.enqueue("job-1", priority=50)
        handle = queue.dequeue("w")
        queue.dead_letter(handle, "x" * 1000)

        message = queue.get_message("job-1")
        assert message["state"] == "dead"
        assert len(message["last_error"]) == 500

    def test_purge_removes_messages(self, queue):
        queue.enqueue("job-1", priority=50)

        assert queue.purge("job-1") == 1
        assert queue.dequeue("w") is None
        assert queue.get_message("job-1") is None

    def test_enqueue_after_terminal_message(self, queue):
        """Only live messages block a new enqueue."""
        queue.enqueue("job-1", priority=50)
        queue.ack(queue.dequeue("w"))

        assert queue.enqueue("job-1", priority=50)
