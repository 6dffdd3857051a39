"""Worker pool that drains the job queue with a fixed number of threads.

This module provides parallel job execution with:
- One thread per slot, each with its own SQLite connections
- Heartbeat threads that extend message visibility and poll for cancel requests
- Error classification (permanent vs transient) and retry with backoff
- Crash recovery for redelivered messages
- Cooperative cancellation and graceful interrupt on shutdown
- Inline video reconciliation after every terminal transition
"""

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError
from tqdm import tqdm

from ..errors import (
    CodecError,
    InvalidTransition,
    JobCancelled,
    JobInterrupted,
    JobNotFound,
    PermanentError,
)
from ..progress import CancelToken, ProgressChannel
from .backends import JobQueue, JobStore
from .models import ErrorKind, JobResult, JobStatus, ProcessingJob, QueueHandle

logger = logging.getLogger(__name__)

# execute(job, cancel_token, progress_channel) -> JobResult
Executor = Callable[[ProcessingJob, CancelToken, Optional[ProgressChannel]], JobResult]


def classify_error(exc: BaseException) -> ErrorKind:
    """Classify a handler failure for retry logic.

    Permanent (no retry): PermanentError subclasses, codec errors classified
    permanent, FileNotFoundError, PermissionError, ValueError and pydantic
    ValidationError.
    Transient (retry): everything else, including OSError (disk full, I/O).
    """
    if isinstance(exc, CodecError):
        return ErrorKind.PERMANENT if exc.is_permanent else ErrorKind.TRANSIENT
    if isinstance(exc, (PermanentError, FileNotFoundError, PermissionError, ValidationError, ValueError)):
        return ErrorKind.PERMANENT
    return ErrorKind.TRANSIENT


def describe_error(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class Outcome:
    COMPLETED = "completed"
    FAILED = "failed"
    RETRIED = "retried"
    CANCELLED = "cancelled"
    REQUEUED = "requeued"
    SKIPPED = "skipped"


@dataclass
class JobOutcome:
    job_id: str
    outcome: str
    error: Optional[str] = None


@dataclass
class PoolStats:
    """Per-outcome counters for one pool lifetime."""
    counts: Dict[str, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, outcome: JobOutcome) -> None:
        with self._lock:
            self.counts[outcome.outcome] = self.counts.get(outcome.outcome, 0) + 1

    def get(self, outcome: str) -> int:
        return self.counts.get(outcome, 0)

    @property
    def processed(self) -> int:
        return sum(v for k, v in self.counts.items() if k != Outcome.SKIPPED)


class ProcessingWorkerPool:
    """Thread-based worker pool over a shared JobQueue.

    Features:
    - Pool-wide concurrency bound (one job per slot)
    - Drain mode (``run_until_idle``) with a tqdm progress bar for the CLI and tests
    - Context manager for start/stop

    Example:
        >>> pool = ProcessingWorkerPool(store, queue, execute, concurrency=4)
        >>> stats = pool.run_until_idle(show_progress=True)
        >>> stats.get(Outcome.COMPLETED)
    """

    def __init__(
        self,
        store: JobStore,
        queue: JobQueue,
        execute: Executor,
        on_terminal: Optional[Callable[[str], None]] = None,
        on_thread_exit: Optional[Callable[[], None]] = None,
        concurrency: int = 2,
        poll_interval_s: float = 1.0,
        heartbeat_interval_s: float = 30.0,
        progress_buffer: int = 32,
    ):
        """Initialize worker pool.

        Args:
            store: Job record store
            queue: Delivery queue
            execute: Runs a job's handler and returns its result
            on_terminal: Called with the video id after every terminal transition
            on_thread_exit: Called on each pool-owned thread before it exits, after
                the store and queue have released that thread's resources
            concurrency: Number of worker threads
            poll_interval_s: Sleep when the queue is empty; also the cancel poll interval
            heartbeat_interval_s: Visibility extension interval
            progress_buffer: Capacity of the progress channel
        """
        self.store = store
        self.queue = queue
        self.execute = execute
        self.on_terminal = on_terminal
        self.on_thread_exit = on_thread_exit
        self.concurrency = concurrency
        self.poll_interval_s = poll_interval_s
        self.heartbeat_interval_s = heartbeat_interval_s

        self.channel = ProgressChannel(
            sink=store.update_progress, maxsize=progress_buffer, on_exit=self._release_thread
        )
        self.stats = PoolStats()

        self._active: Dict[str, CancelToken] = {}
        self._active_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._interrupting = False
        self._threads: List[threading.Thread] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        # Ctrl-C interrupts running encodes so their jobs go straight back to the queue
        self.stop(wait=True, interrupt=exc_type is not None)

    def start(self, concurrency: Optional[int] = None) -> None:
        """Spawn worker threads that poll until ``stop``."""
        if self._threads:
            raise RuntimeError("Worker pool already started")
        if concurrency is not None:
            self.concurrency = concurrency

        self._stop_event.clear()
        self._interrupting = False
        self.channel.start()
        for slot in range(self.concurrency):
            thread = threading.Thread(
                target=self._run_loop,
                args=(self._worker_id(slot),),
                name=f"mediaproc-worker-{slot}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Worker pool started with %d worker(s)", self.concurrency)

    def stop(self, wait: bool = True, interrupt: bool = False) -> None:
        """Stop polling; optionally interrupt in-flight jobs.

        Args:
            wait: Join worker threads before returning
            interrupt: Kill running encodes; their jobs return to pending
                without consuming a retry
        """
        self._stop_event.set()
        if interrupt:
            self._interrupting = True
            with self._active_lock:
                for token in self._active.values():
                    token.interrupt()

        if wait:
            for thread in self._threads:
                thread.join()
            self._threads = []
            self.channel.close()
        logger.info("Worker pool stopped")

    def cancel(self, job_id: str) -> bool:
        """Signal an in-process running job to cancel.

        Returns:
            True if this pool is currently executing the job
        """
        with self._active_lock:
            token = self._active.get(job_id)
        if token is None:
            return False
        token.cancel()
        return True

    @property
    def active_jobs(self) -> List[str]:
        with self._active_lock:
            return list(self._active)

    def run_until_idle(self, max_jobs: Optional[int] = None, show_progress: bool = False) -> PoolStats:
        """Process deliverable messages until the queue is empty (drain mode).

        Messages delayed by backoff are not waited for. Returns early once
        ``stop`` is called.

        Args:
            max_jobs: Stop after this many deliveries
            show_progress: Display a tqdm bar

        Returns:
            PoolStats for this drain
        """
        stats = PoolStats()
        budget = {"left": max_jobs}
        budget_lock = threading.Lock()
        bar = tqdm(
            total=max_jobs or self.queue.depth().waiting,
            desc="Processing jobs",
            unit="job",
            disable=not show_progress,
        )

        def claim() -> bool:
            with budget_lock:
                if budget["left"] is None:
                    return True
                if budget["left"] <= 0:
                    return False
                budget["left"] -= 1
                return True

        def release() -> None:
            with budget_lock:
                if budget["left"] is not None:
                    budget["left"] += 1

        def drain(worker_id: str) -> None:
            while not self._stop_event.is_set() and claim():
                outcome = self.process_next(worker_id)
                if outcome is None:
                    release()
                    return
                stats.record(outcome)
                bar.update(1)

        def drain_thread(worker_id: str) -> None:
            try:
                drain(worker_id)
            finally:
                self._release_thread()

        started_channel = not self._threads
        if started_channel:
            self._stop_event.clear()
            self._interrupting = False
            self.channel.start()
        try:
            if self.concurrency == 1:
                drain(self._worker_id(0))
            else:
                with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
                    futures = [
                        executor.submit(drain_thread, self._worker_id(slot))
                        for slot in range(self.concurrency)
                    ]
                    for future in futures:
                        future.result()
        finally:
            bar.close()
            if started_channel:
                self.channel.close()

        return stats

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    def process_next(self, worker_id: str) -> Optional[JobOutcome]:
        """Dequeue and fully process one message.

        Returns:
            JobOutcome, or None if nothing was deliverable
        """
        handle = self.queue.dequeue(worker_id)
        if handle is None:
            return None

        outcome = self._process(handle, worker_id)
        self.stats.record(outcome)
        return outcome

    def _process(self, handle: QueueHandle, worker_id: str) -> JobOutcome:
        job_id = handle.job_id

        try:
            job = self.store.get_job(job_id)
        except JobNotFound:
            logger.warning("Message for unknown job %s; dropping", job_id)
            self.queue.ack(handle)
            return JobOutcome(job_id, Outcome.SKIPPED)

        if job.is_terminal:
            # Stale message: the record already reached its final state
            self.queue.ack(handle)
            return JobOutcome(job_id, Outcome.SKIPPED)

        if job.status == JobStatus.PROCESSING:
            # Previous holder crashed or lost visibility; does not consume a retry
            logger.warning(
                "Job %s found processing on delivery #%d; recovering",
                job_id, handle.deliveries,
            )
            self.store.mark_requeued(job_id, "Recovered after worker loss", worker_id)

        if job.cancel_requested:
            self.store.mark_cancelled(job_id, worker_id)
            self.queue.ack(handle)
            self._after_terminal(job.video_id)
            return JobOutcome(job_id, Outcome.CANCELLED)

        try:
            job = self.store.mark_processing(job_id, worker_id)
        except InvalidTransition as e:
            # Cancelled between dequeue and claim
            logger.info("Skipping job %s: %s", job_id, e)
            self.queue.ack(handle)
            return JobOutcome(job_id, Outcome.SKIPPED)

        token = CancelToken()
        with self._active_lock:
            self._active[job_id] = token
        if self._interrupting:
            token.interrupt()

        logger.info(
            "Worker %s processing job %s (%s, attempt %d/%d)",
            worker_id, job_id, job.job_type.value, job.retry_count + 1, job.max_retries + 1,
        )
        heartbeat = self._start_heartbeat(handle, token)

        try:
            result = self.execute(job, token, self.channel)
        except Exception as e:
            return self._on_failure(job, handle, token, e, worker_id)
        finally:
            self._stop_heartbeat(heartbeat)
            with self._active_lock:
                self._active.pop(job_id, None)

        try:
            self.store.mark_completed(job_id, result, worker_id)
        except InvalidTransition as e:
            # Cancelled by an operator while the handler was finishing
            return self._settle_cancelled(job, handle, e)
        self.queue.ack(handle)
        logger.info("Job %s completed", job_id)
        self._after_terminal(job.video_id)
        return JobOutcome(job_id, Outcome.COMPLETED)

    def _on_failure(
        self,
        job: ProcessingJob,
        handle: QueueHandle,
        token: CancelToken,
        exc: Exception,
        worker_id: str,
    ) -> JobOutcome:
        job_id = job.job_id

        cancelled = isinstance(exc, JobCancelled) or token.reason == CancelToken.CANCEL
        interrupted = isinstance(exc, JobInterrupted) or token.reason == CancelToken.INTERRUPT

        if cancelled:
            try:
                self.store.mark_cancelled(job_id, worker_id)
            except InvalidTransition:
                logger.debug("Job %s already cancelled", job_id)
            self.queue.ack(handle)
            logger.info("Job %s cancelled", job_id)
            self._after_terminal(job.video_id)
            return JobOutcome(job_id, Outcome.CANCELLED)

        if interrupted:
            try:
                self.store.mark_requeued(job_id, "Interrupted by worker shutdown", worker_id)
            except InvalidTransition as e:
                return self._settle_cancelled(job, handle, e)
            self.queue.nack(handle, 0)
            logger.info("Job %s interrupted; returned to queue", job_id)
            return JobOutcome(job_id, Outcome.REQUEUED)

        kind = classify_error(exc)
        message = describe_error(exc)

        if kind == ErrorKind.TRANSIENT and job.retries_remaining:
            try:
                retry_count = self.store.mark_retry(job_id, message, worker_id)
            except InvalidTransition as e:
                return self._settle_cancelled(job, handle, e)
            delay = self.queue.backoff_delay(retry_count)
            self.queue.nack(handle, delay)
            logger.warning(
                "Job %s failed (transient), retry %d/%d in %.0fs: %s",
                job_id, retry_count, job.max_retries, delay, message,
            )
            return JobOutcome(job_id, Outcome.RETRIED, message)

        if kind == ErrorKind.TRANSIENT:
            message = f"Retries exhausted ({job.retry_count}/{job.max_retries}). {message}"

        try:
            self.store.mark_failed(job_id, message, kind, worker_id)
        except InvalidTransition as e:
            return self._settle_cancelled(job, handle, e)
        self.queue.dead_letter(handle, message)
        logger.error("Job %s failed (%s): %s", job_id, kind.value, message, exc_info=exc)
        self._after_terminal(job.video_id)
        return JobOutcome(job_id, Outcome.FAILED, message)

    def _settle_cancelled(
        self, job: ProcessingJob, handle: QueueHandle, error: InvalidTransition
    ) -> JobOutcome:
        """Finish a job whose record was cancelled while it was running.

        Re-raises ``error`` if the record is in any other state.
        """
        current = self.store.get_job(job.job_id)
        if current.status != JobStatus.CANCELLED:
            raise error
        logger.info("Job %s was cancelled while running; discarding its outcome", job.job_id)
        self.queue.ack(handle)
        self._after_terminal(job.video_id)
        return JobOutcome(job.job_id, Outcome.CANCELLED)

    def _after_terminal(self, video_id: str) -> None:
        if self.on_terminal is None:
            return
        try:
            self.on_terminal(video_id)
        except Exception:
            # Reconciliation is re-run on the next terminal job or by the operator
            logger.exception("Reconciliation failed for video %s", video_id)

    def _run_loop(self, worker_id: str) -> None:
        try:
            while not self._stop_event.is_set():
                try:
                    outcome = self.process_next(worker_id)
                except Exception:
                    # Message stays in flight and is redelivered after its visibility timeout
                    logger.exception("Worker %s loop error", worker_id)
                    outcome = None
                if outcome is None:
                    self._stop_event.wait(self.poll_interval_s)
        finally:
            self._release_thread()

    def _release_thread(self) -> None:
        """Close this thread's database connections before it exits."""
        try:
            self.store.release_thread()
            self.queue.release_thread()
            if self.on_thread_exit is not None:
                self.on_thread_exit()
        except Exception as e:
            logger.warning("Failed to release thread resources: %s", e)

    def _start_heartbeat(self, handle: QueueHandle, token: CancelToken):
        """Start background thread that extends visibility and polls for cancel.

        Returns:
            Tuple of (thread, stop_event) for cleanup

        Each tick checks the job's cancel flag; every heartbeat_interval_s it
        also touches the queue message so long encodes are not redelivered.
        """
        stop_event = threading.Event()

        def heartbeat_loop():
            elapsed = 0.0
            try:
                while not stop_event.wait(self.poll_interval_s):
                    elapsed += self.poll_interval_s
                    try:
                        if self.store.is_cancel_requested(handle.job_id):
                            token.cancel()
                        if elapsed >= self.heartbeat_interval_s:
                            elapsed = 0.0
                            if not self.queue.touch(handle):
                                logger.warning("Lost ownership of job %s", handle.job_id)
                    except Exception as e:
                        # Log but don't crash thread
                        logger.warning("Heartbeat failed for %s: %s", handle.job_id, e)
            finally:
                self._release_thread()

        thread = threading.Thread(
            target=heartbeat_loop, name=f"heartbeat-{handle.job_id[:8]}", daemon=True
        )
        thread.start()
        return (thread, stop_event)

    @staticmethod
    def _stop_heartbeat(heartbeat_data) -> None:
        thread, stop_event = heartbeat_data
        stop_event.set()
        thread.join(timeout=5)

    @staticmethod
    def _worker_id(slot: int) -> str:
        return f"worker-{os.getpid()}-{slot}"
