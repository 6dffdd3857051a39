"""Abstract base classes for the job record store and the delivery queue.

The job store holds the authoritative ``ProcessingJob`` records and enforces the
job state machine. The queue holds delivery messages (one live message per job)
and is the sole authority on which worker currently holds a job. The SQLite
implementations live in ``sqlite_backend``; a distributed broker could replace
the queue without touching the store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from ..progress import ProgressEvent
    from .models import (
        ErrorKind,
        JobResult,
        JobStatus,
        ProcessingJob,
        QueueDepth,
        QueueHandle,
        StateTransition,
    )


class JobStore(ABC):
    """Persistence for job records with conditional state transitions.

    Every transition method is an ``UPDATE ... WHERE status IN (expected)``;
    when no row matches it raises ``InvalidTransition`` and changes nothing.
    Every successful transition is appended to the audit log.
    """

    @abstractmethod
    def create_jobs(self, jobs: List["ProcessingJob"]) -> None:
        """Insert new job records atomically (all or none)."""
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> "ProcessingJob":
        """Load one job.

        Raises:
            JobNotFound: If the id is unknown
        """
        pass

    @abstractmethod
    def list_jobs(
        self,
        video_id: Optional[str] = None,
        status: Optional["JobStatus"] = None,
    ) -> List["ProcessingJob"]:
        """Query jobs, optionally filtered by video and/or status.

        Implementation notes:
        - Ordered by created_at, then priority
        - O(n) scans are acceptable; used by inspection and reconciliation
        """
        pass

    @abstractmethod
    def mark_processing(self, job_id: str, worker_id: str) -> "ProcessingJob":
        """pending -> processing. Sets started_at on the first dequeue only."""
        pass

    @abstractmethod
    def mark_completed(self, job_id: str, result: "JobResult", worker_id: str) -> None:
        """processing -> completed, persisting ``result`` and completed_at."""
        pass

    @abstractmethod
    def mark_failed(
        self,
        job_id: str,
        error: str,
        error_kind: "ErrorKind",
        worker_id: Optional[str] = None,
    ) -> None:
        """processing -> failed (terminal). Error truncated to 500 chars."""
        pass

    @abstractmethod
    def mark_retry(self, job_id: str, error: str, worker_id: Optional[str] = None) -> int:
        """processing -> pending after a transient failure.

        Increments retry_count and resets progress.

        Returns:
            The new retry_count
        """
        pass

    @abstractmethod
    def mark_requeued(self, job_id: str, reason: str, worker_id: Optional[str] = None) -> None:
        """processing -> pending without touching retry_count.

        Used for crash recovery (redelivered message) and graceful interrupt.
        """
        pass

    @abstractmethod
    def mark_cancelled(self, job_id: str, worker_id: Optional[str] = None) -> "JobStatus":
        """pending/processing -> cancelled.

        Returns:
            The status the job was in before cancellation
        """
        pass

    @abstractmethod
    def request_cancel(self, job_id: str) -> bool:
        """Flag a processing job for cancellation by whichever worker holds it.

        Returns:
            True if the flag was set (job is processing)
        """
        pass

    @abstractmethod
    def is_cancel_requested(self, job_id: str) -> bool:
        """True if the job was flagged, or already cancelled by an operator."""
        pass

    @abstractmethod
    def update_progress(self, event: "ProgressEvent") -> None:
        """Persist a progress event for a processing job.

        Implementation notes:
        - percent never decreases within an attempt (MAX in SQL)
        - ignored when the job is no longer processing
        """
        pass

    @abstractmethod
    def supersede(self, job_id: str, replacement_id: str) -> None:
        """Point a failed job at the job that replaces it (operator retry)."""
        pass

    @abstractmethod
    def delete_terminal_before(self, status: "JobStatus", cutoff: datetime) -> List[str]:
        """Delete jobs in terminal ``status`` completed before ``cutoff``.

        Returns:
            Deleted job ids
        """
        pass

    @abstractmethod
    def get_transitions(self, job_id: str) -> List["StateTransition"]:
        """Audit trail for one job, oldest first."""
        pass

    def release_thread(self) -> None:
        """Drop resources held for the calling thread before it exits."""


class JobQueue(ABC):
    """Durable, prioritized, at-least-once delivery queue.

    Implementations must provide:
    - Atomic dequeue (no two workers receive the same live message)
    - Idempotent enqueue (at most one ready/inflight message per job)
    - Visibility timeout: an unacknowledged in-flight message is redelivered
    - Heartbeat support (``touch``) for long-running jobs
    """

    @abstractmethod
    def enqueue(self, job_id: str, priority: int, delay_s: float = 0.0) -> bool:
        """Make ``job_id`` deliverable after ``delay_s`` seconds.

        Returns:
            False if the job already has a live message (no-op)
        """
        pass

    @abstractmethod
    def dequeue(self, worker_id: str) -> Optional["QueueHandle"]:
        """Atomically claim the next deliverable message.

        Implementation notes:
        - Lowest priority value first, then FIFO by enqueue time
        - Only messages whose available_at has passed
        - Expired in-flight messages count as deliverable (crash recovery)
        - Increments the delivery counter and sets visible_until
        """
        pass

    @abstractmethod
    def ack(self, handle: "QueueHandle") -> bool:
        """Finish the message. Returns False if the handle is stale."""
        pass

    @abstractmethod
    def nack(self, handle: "QueueHandle", retry_after_s: float) -> bool:
        """Release the message for redelivery after ``retry_after_s``."""
        pass

    @abstractmethod
    def dead_letter(self, handle: "QueueHandle", reason: str) -> bool:
        """Park the message permanently (retries exhausted or permanent error)."""
        pass

    @abstractmethod
    def touch(self, handle: "QueueHandle") -> bool:
        """Extend visibility of an in-flight message (heartbeat).

        Returns:
            False if the message is no longer held by this handle
        """
        pass

    @abstractmethod
    def depth(self) -> "QueueDepth":
        """Message counts: waiting, active, completed, failed."""
        pass

    @abstractmethod
    def purge(self, job_id: str) -> int:
        """Remove every message for ``job_id``. Returns count removed."""
        pass

    def backoff_delay(self, retry_count: int) -> float:
        """Delay before redelivery after the ``retry_count``-th transient failure."""
        return 0.0

    def release_thread(self) -> None:
        """Drop resources held for the calling thread before it exits."""
