"""SQLite implementations of JobStore and JobQueue.

This module provides the local-first, crash-safe job store and queue using:
- sqlite-utils for schema management and row access
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic dequeue and state transitions
- Exponential backoff retry for database lock handling
- A partial unique index enforcing one live queue message per job
"""

import json
import logging
import random
import sqlite3
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..db import ThreadLocalDatabase, immediate_transaction, retry_on_lock
from ..errors import InvalidTransition, JobNotFound
from .backends import JobQueue, JobStore
from .models import (
    ErrorKind,
    JobProgress,
    JobResult,
    JobStatus,
    ProcessingJob,
    QueueDepth,
    QueueHandle,
    StateTransition,
)

logger = logging.getLogger(__name__)

ERROR_MAX_CHARS = 500
AUDIT_ERROR_MAX_CHARS = 200


# SQLite schema SQL
SCHEMA_SQL = """
-- Job records
CREATE TABLE IF NOT EXISTS processing_jobs (
    job_id TEXT PRIMARY KEY,
    video_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 50,
    input_file TEXT NOT NULL,
    settings TEXT NOT NULL,
    progress_percent INTEGER NOT NULL DEFAULT 0,
    progress_step TEXT NOT NULL DEFAULT 'waiting',
    progress_message TEXT NOT NULL DEFAULT '',
    progress_eta REAL,
    progress_processed_bytes INTEGER,
    progress_total_bytes INTEGER,
    progress_start_time TEXT,
    progress_end_time TEXT,
    result TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    last_error TEXT,
    error_kind TEXT,
    cancel_requested INTEGER NOT NULL DEFAULT 0,
    superseded_by TEXT,
    worker_id TEXT,
    scheduled_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_video ON processing_jobs(video_id, status);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON processing_jobs(status, completed_at);

-- Delivery messages (the queue)
CREATE TABLE IF NOT EXISTS queue_messages (
    message_id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    priority INTEGER NOT NULL,
    enqueued_at REAL NOT NULL,
    available_at REAL NOT NULL,
    state TEXT NOT NULL,
    worker_id TEXT,
    visible_until REAL,
    deliveries INTEGER NOT NULL DEFAULT 0,
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_queue_ready
    ON queue_messages(state, priority, enqueued_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_live_job
    ON queue_messages(job_id) WHERE state IN ('ready', 'inflight');

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);
"""


def _now() -> str:
    return datetime.now().isoformat()


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteJobStore(JobStore):
    """SQLite-backed job records with guarded state transitions.

    Features:
    - Conditional transitions inside BEGIN IMMEDIATE (read + write under one lock)
    - started_at / completed_at written once via COALESCE
    - Monotonic progress via MAX(progress_percent, ?)
    - Automatic state transition logging
    """

    def __init__(self, db_path: str, lock_retries: int = 3):
        """Initialize job store.

        Args:
            db_path: Path to SQLite database file
            lock_retries: Retry attempts on 'database is locked'

        Creates schema if database doesn't exist.
        """
        self.db_path = str(db_path)
        self.lock_retries = lock_retries
        self.conn = ThreadLocalDatabase(self.db_path)
        self.conn.executescript(SCHEMA_SQL)

    @property
    def db(self):
        return self.conn.db

    def close(self) -> None:
        self.conn.close()

    def release_thread(self) -> None:
        self.conn.release()

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    def create_jobs(self, jobs: List[ProcessingJob]) -> None:
        rows = [self._job_to_row(job) for job in jobs]

        def _insert():
            with immediate_transaction(self.db) as conn:
                for row in rows:
                    columns = ", ".join(row.keys())
                    placeholders = ", ".join("?" for _ in row)
                    conn.execute(
                        f"INSERT INTO processing_jobs ({columns}) VALUES ({placeholders})",
                        tuple(row.values()),
                    )
                    self._log_transition(conn, row["job_id"], None, JobStatus.PENDING.value)

        retry_on_lock(_insert, self.lock_retries)

    def get_job(self, job_id: str) -> ProcessingJob:
        rows = list(self.db["processing_jobs"].rows_where("job_id = ?", [job_id]))
        if not rows:
            raise JobNotFound(f"Job not found: {job_id}")
        return self._row_to_job(rows[0])

    def list_jobs(self, video_id=None, status=None) -> List[ProcessingJob]:
        clauses, params = [], []
        if video_id is not None:
            clauses.append("video_id = ?")
            params.append(video_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(JobStatus(status).value)

        rows = self.db["processing_jobs"].rows_where(
            " AND ".join(clauses) if clauses else None,
            params,
            order_by="created_at, priority, job_id",
        )
        return [self._row_to_job(row) for row in rows]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def mark_processing(self, job_id: str, worker_id: str) -> ProcessingJob:
        now = _now()
        self._transition(
            job_id,
            expected={JobStatus.PENDING},
            target=JobStatus.PROCESSING,
            assignments=(
                "started_at = COALESCE(started_at, ?), worker_id = ?, "
                "progress_step = 'starting', progress_message = '', progress_start_time = ?"
            ),
            params=(now, worker_id, now),
            worker_id=worker_id,
        )
        return self.get_job(job_id)

    def mark_completed(self, job_id: str, result: JobResult, worker_id: str) -> None:
        now = _now()
        self._transition(
            job_id,
            expected={JobStatus.PROCESSING},
            target=JobStatus.COMPLETED,
            assignments=(
                "result = ?, completed_at = COALESCE(completed_at, ?), "
                "progress_percent = 100, progress_step = 'complete', progress_message = '', "
                "progress_eta = NULL, progress_end_time = ?"
            ),
            params=(result.model_dump_json(), now, now),
            worker_id=worker_id,
        )

    def mark_failed(self, job_id, error, error_kind, worker_id=None) -> None:
        now = _now()
        snippet = error[:ERROR_MAX_CHARS] if error else None
        self._transition(
            job_id,
            expected={JobStatus.PROCESSING},
            target=JobStatus.FAILED,
            assignments=(
                "last_error = ?, error_kind = ?, completed_at = COALESCE(completed_at, ?), "
                "progress_step = 'failed', progress_eta = NULL, progress_end_time = ?"
            ),
            params=(snippet, ErrorKind(error_kind).value, now, now),
            worker_id=worker_id,
            error=snippet,
        )

    def mark_retry(self, job_id, error, worker_id=None) -> int:
        snippet = error[:ERROR_MAX_CHARS] if error else None
        self._transition(
            job_id,
            expected={JobStatus.PROCESSING},
            target=JobStatus.PENDING,
            assignments=(
                "retry_count = retry_count + 1, last_error = ?, error_kind = ?, worker_id = NULL, "
                "progress_percent = 0, progress_step = 'waiting', "
                "progress_message = 'Retry scheduled', progress_eta = NULL"
            ),
            params=(snippet, ErrorKind.TRANSIENT.value),
            worker_id=worker_id,
            error=snippet,
        )
        row = self.db.execute(
            "SELECT retry_count FROM processing_jobs WHERE job_id = ?", [job_id]
        ).fetchone()
        return row[0]

    def mark_requeued(self, job_id, reason, worker_id=None) -> None:
        self._transition(
            job_id,
            expected={JobStatus.PROCESSING},
            target=JobStatus.PENDING,
            assignments=(
                "worker_id = NULL, progress_percent = 0, progress_step = 'waiting', "
                "progress_message = ?, progress_eta = NULL"
            ),
            params=(reason,),
            worker_id=worker_id,
            error=reason,
        )

    def mark_cancelled(self, job_id, worker_id=None) -> JobStatus:
        now = _now()
        previous = self._transition(
            job_id,
            expected={JobStatus.PENDING, JobStatus.PROCESSING},
            target=JobStatus.CANCELLED,
            assignments=(
                "completed_at = COALESCE(completed_at, ?), progress_step = 'cancelled', "
                "progress_eta = NULL, progress_end_time = ?"
            ),
            params=(now, now),
            worker_id=worker_id,
        )
        return previous

    def request_cancel(self, job_id: str) -> bool:
        with self.db.conn:
            cursor = self.db.conn.execute(
                "UPDATE processing_jobs SET cancel_requested = 1, updated_at = ? "
                "WHERE job_id = ? AND status = ?",
                (_now(), job_id, JobStatus.PROCESSING.value),
            )
        return cursor.rowcount > 0

    def is_cancel_requested(self, job_id: str) -> bool:
        row = self.db.execute(
            "SELECT cancel_requested, status FROM processing_jobs WHERE job_id = ?", [job_id]
        ).fetchone()
        if row is None:
            return False
        return bool(row[0]) or row[1] == JobStatus.CANCELLED.value

    def update_progress(self, event) -> None:
        percent = max(0, min(100, int(event.percent)))
        with self.db.conn:
            self.db.conn.execute(
                """
                UPDATE processing_jobs
                SET progress_percent = MAX(progress_percent, ?),
                    progress_step = ?,
                    progress_message = ?,
                    progress_eta = ?,
                    progress_processed_bytes = COALESCE(?, progress_processed_bytes),
                    progress_total_bytes = COALESCE(?, progress_total_bytes),
                    updated_at = ?
                WHERE job_id = ? AND status = ?
                """,
                (
                    percent,
                    event.current_step,
                    event.message,
                    event.estimated_time_left,
                    event.processed_bytes,
                    event.total_bytes,
                    _now(),
                    event.job_id,
                    JobStatus.PROCESSING.value,
                ),
            )

    def supersede(self, job_id: str, replacement_id: str) -> None:
        with self.db.conn:
            self.db.conn.execute(
                "UPDATE processing_jobs SET superseded_by = ?, updated_at = ? WHERE job_id = ?",
                (replacement_id, _now(), job_id),
            )

    def delete_terminal_before(self, status, cutoff) -> List[str]:
        status = JobStatus(status)
        if not status.is_terminal:
            raise ValueError(f"Refusing to delete non-terminal jobs ({status.value})")

        def _delete():
            with immediate_transaction(self.db) as conn:
                rows = conn.execute(
                    "DELETE FROM processing_jobs WHERE status = ? AND completed_at < ? "
                    "RETURNING job_id",
                    (status.value, cutoff.isoformat()),
                ).fetchall()
                job_ids = [r[0] for r in rows]
                for job_id in job_ids:
                    conn.execute("DELETE FROM state_transitions WHERE job_id = ?", (job_id,))
                return job_ids

        return retry_on_lock(_delete, self.lock_retries)

    def get_transitions(self, job_id: str) -> List[StateTransition]:
        rows = self.db["state_transitions"].rows_where(
            "job_id = ?", [job_id], order_by="id"
        )
        return [
            StateTransition(
                id=row["id"],
                job_id=row["job_id"],
                from_state=row["from_state"],
                to_state=row["to_state"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                worker_id=row["worker_id"],
                error_snippet=row["error_snippet"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(
        self,
        job_id: str,
        expected: Iterable[JobStatus],
        target: JobStatus,
        assignments: str,
        params: tuple,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> JobStatus:
        """Apply a guarded transition and log it.

        Returns:
            The status the job had before the transition

        Raises:
            JobNotFound: Unknown job id
            InvalidTransition: Current status not in ``expected``
        """
        expected_values = sorted(JobStatus(s).value for s in expected)

        def _apply() -> JobStatus:
            with immediate_transaction(self.db) as conn:
                row = conn.execute(
                    "SELECT status FROM processing_jobs WHERE job_id = ?", (job_id,)
                ).fetchone()
                if row is None:
                    raise JobNotFound(f"Job not found: {job_id}")
                current = row[0]
                if current not in expected_values:
                    raise InvalidTransition(job_id, expected_values, target.value, current)

                cursor = conn.execute(
                    f"UPDATE processing_jobs SET status = ?, updated_at = ?, {assignments} "
                    f"WHERE job_id = ? AND status = ?",
                    (target.value, _now(), *params, job_id, current),
                )
                if cursor.rowcount == 0:
                    raise InvalidTransition(job_id, expected_values, target.value, current)

                self._log_transition(conn, job_id, current, target.value, worker_id, error)
                return JobStatus(current)

        previous = retry_on_lock(_apply, self.lock_retries)
        logger.debug("Job %s: %s -> %s", job_id, previous.value, target.value)
        return previous

    @staticmethod
    def _log_transition(
        conn: sqlite3.Connection,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Log state transition to audit trail (inside the caller's transaction)."""
        conn.execute(
            "INSERT INTO state_transitions "
            "(job_id, from_state, to_state, timestamp, worker_id, error_snippet) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                job_id,
                from_state,
                to_state,
                _now(),
                worker_id,
                error[:AUDIT_ERROR_MAX_CHARS] if error else None,
            ),
        )

    @staticmethod
    def _job_to_row(job: ProcessingJob) -> Dict[str, Any]:
        progress = job.progress
        return {
            "job_id": job.job_id,
            "video_id": job.video_id,
            "user_id": job.user_id,
            "job_type": job.job_type.value,
            "status": job.status.value,
            "priority": job.priority,
            "input_file": job.input_file,
            "settings": job.settings.model_dump_json(),
            "progress_percent": progress.percent,
            "progress_step": progress.current_step,
            "progress_message": progress.message,
            "progress_eta": progress.estimated_time_left,
            "progress_processed_bytes": progress.processed_bytes,
            "progress_total_bytes": progress.total_bytes,
            "progress_start_time": progress.start_time.isoformat() if progress.start_time else None,
            "progress_end_time": progress.end_time.isoformat() if progress.end_time else None,
            "result": job.result.model_dump_json() if job.result else None,
            "retry_count": job.retry_count,
            "max_retries": job.max_retries,
            "last_error": job.last_error,
            "error_kind": job.error_kind.value if job.error_kind else None,
            "cancel_requested": int(job.cancel_requested),
            "superseded_by": job.superseded_by,
            "scheduled_at": job.scheduled_at.isoformat(),
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "completed_at": job.completed_at.isoformat() if job.completed_at else None,
            "created_at": job.created_at.isoformat(),
            "updated_at": job.updated_at.isoformat() if job.updated_at else None,
        }

    @staticmethod
    def _row_to_job(row: Dict[str, Any]) -> ProcessingJob:
        return ProcessingJob(
            job_id=row["job_id"],
            video_id=row["video_id"],
            user_id=row["user_id"],
            job_type=row["job_type"],
            status=JobStatus(row["status"]),
            priority=row["priority"],
            input_file=row["input_file"],
            settings=json.loads(row["settings"]),
            progress=JobProgress(
                percent=row["progress_percent"],
                current_step=row["progress_step"],
                message=row["progress_message"] or "",
                estimated_time_left=row["progress_eta"],
                processed_bytes=row["progress_processed_bytes"],
                total_bytes=row["progress_total_bytes"],
                start_time=_parse_dt(row["progress_start_time"]),
                end_time=_parse_dt(row["progress_end_time"]),
            ),
            result=JobResult.model_validate_json(row["result"]) if row["result"] else None,
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            last_error=row["last_error"],
            error_kind=ErrorKind(row["error_kind"]) if row["error_kind"] else None,
            cancel_requested=bool(row["cancel_requested"]),
            superseded_by=row["superseded_by"],
            scheduled_at=datetime.fromisoformat(row["scheduled_at"]),
            started_at=_parse_dt(row["started_at"]),
            completed_at=_parse_dt(row["completed_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )


class SQLiteQueue(JobQueue):
    """SQLite-based delivery queue with atomic dequeue operations.

    Features:
    - Atomic dequeue via UPDATE...RETURNING with BEGIN IMMEDIATE
    - Exponential backoff retry for database lock contention
    - Visibility timeout redelivery for crashed workers
    - Delivery counter so stale handles cannot ack a redelivered message

    Message states:
        ready    -> waiting for available_at
        inflight -> held by worker_id until visible_until
        acked    -> finished (completed or cancelled job)
        dead     -> dead-lettered (failed job)
    """

    def __init__(
        self,
        db_path: str,
        visibility_timeout_s: float = 600.0,
        backoff_base_s: float = 5.0,
        backoff_cap_s: float = 300.0,
        jitter_s: float = 1.0,
        lock_retries: int = 3,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ):
        """Initialize queue backend.

        Args:
            db_path: Path to SQLite database (may be shared with the job store)
            visibility_timeout_s: Seconds an unacknowledged message stays hidden
            backoff_base_s: First nack delay
            backoff_cap_s: Maximum nack delay
            jitter_s: Upper bound of random delay added on enqueue
            lock_retries: Retry attempts on 'database is locked'
            clock: Time source in epoch seconds
            rng: Uniform [0, 1) source for jitter
        """
        self.db_path = str(db_path)
        self.visibility_timeout_s = visibility_timeout_s
        self.backoff_base_s = backoff_base_s
        self.backoff_cap_s = backoff_cap_s
        self.jitter_s = jitter_s
        self.lock_retries = lock_retries
        self.clock = clock
        self.rng = rng
        self.conn = ThreadLocalDatabase(self.db_path)
        self.conn.executescript(SCHEMA_SQL)

    @classmethod
    def from_config(cls, db_path: str, queue_config, **kwargs) -> "SQLiteQueue":
        return cls(
            db_path,
            visibility_timeout_s=queue_config.visibility_timeout_s,
            backoff_base_s=queue_config.backoff_base_s,
            backoff_cap_s=queue_config.backoff_cap_s,
            jitter_s=queue_config.jitter_s,
            lock_retries=queue_config.lock_retries,
            **kwargs,
        )

    @property
    def db(self):
        return self.conn.db

    def close(self) -> None:
        self.conn.close()

    def release_thread(self) -> None:
        self.conn.release()

    def backoff_delay(self, retry_count: int) -> float:
        """min(base * 2**(retry_count - 1), cap); 0 before the first retry."""
        if retry_count <= 0:
            return 0.0
        return min(self.backoff_base_s * (2 ** (retry_count - 1)), self.backoff_cap_s)

    def enqueue(self, job_id: str, priority: int, delay_s: float = 0.0) -> bool:
        """Add a message for ``job_id`` (no-op if one is already live).

        available_at = now + delay_s + uniform(0, jitter_s)
        """
        now = self.clock()
        available_at = now + max(0.0, delay_s) + self.rng() * self.jitter_s

        def _insert() -> bool:
            with self.db.conn:
                cursor = self.db.conn.execute(
                    """
                    INSERT OR IGNORE INTO queue_messages
                        (message_id, job_id, priority, enqueued_at, available_at, state, deliveries)
                    VALUES (?, ?, ?, ?, ?, 'ready', 0)
                    """,
                    (uuid.uuid4().hex, job_id, priority, now, available_at),
                )
            return cursor.rowcount > 0

        inserted = retry_on_lock(_insert, self.lock_retries)
        if not inserted:
            logger.debug("Job %s already has a live message; enqueue skipped", job_id)
        return inserted

    def dequeue(self, worker_id: str) -> Optional[QueueHandle]:
        """Atomically claim the next message.

        Atomicity: Uses BEGIN IMMEDIATE + UPDATE...RETURNING
        Retry logic: Exponential backoff on database lock
        """
        def _claim() -> Optional[QueueHandle]:
            now = self.clock()
            visible_until = now + self.visibility_timeout_s
            with immediate_transaction(self.db) as conn:
                # CRITICAL: BEGIN IMMEDIATE ensures write lock immediately
                # Without this, multiple workers can select same message before update
                rows = conn.execute(
                    """
                    UPDATE queue_messages
                    SET state = 'inflight',
                        worker_id = ?,
                        visible_until = ?,
                        deliveries = deliveries + 1
                    WHERE message_id = (
                        SELECT message_id FROM queue_messages
                        WHERE (state = 'ready' AND available_at <= ?)
                           OR (state = 'inflight' AND visible_until <= ?)
                        ORDER BY priority ASC, enqueued_at ASC
                        LIMIT 1
                    )
                    RETURNING message_id, job_id, priority, deliveries, visible_until
                    """,
                    (worker_id, visible_until, now, now),
                ).fetchall()
            row = rows[0] if rows else None

            if row is None:
                return None

            message_id, job_id, priority, deliveries, until = row
            if deliveries > 1:
                logger.info("Redelivering job %s (delivery #%d)", job_id, deliveries)
            return QueueHandle(
                message_id=message_id,
                job_id=job_id,
                worker_id=worker_id,
                priority=priority,
                deliveries=deliveries,
                visible_until=datetime.fromtimestamp(until),
            )

        return retry_on_lock(_claim, self.lock_retries)

    def ack(self, handle: QueueHandle) -> bool:
        return self._settle(handle, "state = 'acked', visible_until = NULL", ())

    def nack(self, handle: QueueHandle, retry_after_s: float) -> bool:
        available_at = self.clock() + max(0.0, retry_after_s)
        return self._settle(
            handle,
            "state = 'ready', worker_id = NULL, visible_until = NULL, available_at = ?",
            (available_at,),
        )

    def dead_letter(self, handle: QueueHandle, reason: str) -> bool:
        return self._settle(
            handle,
            "state = 'dead', visible_until = NULL, last_error = ?",
            ((reason or "")[:ERROR_MAX_CHARS],),
        )

    def touch(self, handle: QueueHandle) -> bool:
        return self._settle(
            handle,
            "visible_until = ?",
            (self.clock() + self.visibility_timeout_s,),
        )

    def depth(self) -> QueueDepth:
        counts = dict(
            self.db.execute(
                "SELECT state, COUNT(*) FROM queue_messages GROUP BY state"
            ).fetchall()
        )
        return QueueDepth(
            waiting=counts.get("ready", 0),
            active=counts.get("inflight", 0),
            completed=counts.get("acked", 0),
            failed=counts.get("dead", 0),
        )

    def purge(self, job_id: str) -> int:
        def _delete() -> int:
            with self.db.conn:
                cursor = self.db.conn.execute(
                    "DELETE FROM queue_messages WHERE job_id = ?", (job_id,)
                )
            return cursor.rowcount

        return retry_on_lock(_delete, self.lock_retries)

    def get_message(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Most recent message for a job (inspection and tests)."""
        rows = list(
            self.db["queue_messages"].rows_where(
                "job_id = ?", [job_id], order_by="enqueued_at DESC", limit=1
            )
        )
        return rows[0] if rows else None

    def _settle(self, handle: QueueHandle, assignments: str, params: tuple) -> bool:
        """Update an in-flight message only while ``handle`` still owns it."""

        def _update() -> bool:
            with self.db.conn:
                cursor = self.db.conn.execute(
                    f"UPDATE queue_messages SET {assignments} "
                    f"WHERE message_id = ? AND state = 'inflight' "
                    f"AND worker_id = ? AND deliveries = ?",
                    (*params, handle.message_id, handle.worker_id, handle.deliveries),
                )
            return cursor.rowcount > 0

        owned = retry_on_lock(_update, self.lock_retries)
        if not owned:
            logger.warning(
                "Stale queue handle for job %s (message %s, delivery %d)",
                handle.job_id, handle.message_id, handle.deliveries,
            )
        return owned
