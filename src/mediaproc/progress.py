"""Bounded progress channel and cooperative cancellation.

Handlers publish progress without ever blocking on persistence: events go into
a bounded in-memory channel and a single consumer thread writes them to the job
store. When the channel is full the oldest event is dropped; only the newest
progress for a job matters.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import JobCancelled, JobInterrupted

logger = logging.getLogger(__name__)


@dataclass
class ProgressEvent:
    """One progress update for a running job."""

    job_id: str
    percent: int
    current_step: str = "processing"
    message: str = ""
    estimated_time_left: Optional[float] = None
    processed_bytes: Optional[int] = None
    total_bytes: Optional[int] = None


class ProgressChannel:
    """Bounded, drop-oldest channel drained by a persisting consumer thread.

    Example:
        >>> channel = ProgressChannel(sink=job_store.update_progress, maxsize=32)
        >>> channel.start()
        >>> channel.publish(ProgressEvent(job_id="abc", percent=40))
        >>> channel.close()
    """

    _STOP = object()

    def __init__(
        self,
        sink: Callable[[ProgressEvent], None],
        maxsize: int = 32,
        on_exit: Optional[Callable[[], None]] = None,
    ):
        self.sink = sink
        self.on_exit = on_exit
        self.maxsize = maxsize
        self.dropped = 0
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "ProgressChannel":
        if self._thread is None:
            self._thread = threading.Thread(
                target=self._consume, name="progress-consumer", daemon=True
            )
            self._thread.start()
        return self

    def publish(self, event: ProgressEvent) -> None:
        """Enqueue an event without blocking; evicts the oldest when full."""
        with self._lock:
            while True:
                try:
                    self._queue.put_nowait(event)
                    return
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                        self.dropped += 1
                    except queue.Empty:
                        pass

    def flush(self) -> None:
        """Persist everything currently buffered on the calling thread."""
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            if item is not self._STOP:
                self._deliver(item)

    def close(self, timeout: float = 5.0) -> None:
        """Stop the consumer after it drains pending events."""
        if self._thread is None:
            self.flush()
            return
        with self._lock:
            while True:
                try:
                    self._queue.put_nowait(self._STOP)
                    break
                except queue.Full:
                    # Make room for the sentinel; the dropped event is stale anyway
                    try:
                        self._queue.get_nowait()
                        self.dropped += 1
                    except queue.Empty:
                        pass
        self._thread.join(timeout=timeout)
        self._thread = None

    def _consume(self) -> None:
        try:
            while True:
                item = self._queue.get()
                if item is self._STOP:
                    return
                self._deliver(item)
        finally:
            if self.on_exit is not None:
                self.on_exit()

    def _deliver(self, event: ProgressEvent) -> None:
        try:
            self.sink(event)
        except Exception as e:
            # Progress persistence is fire-and-forget
            logger.warning("Progress write failed for job %s: %s", event.job_id, e)


class CancelToken:
    """Cooperative stop signal shared by a worker, its heartbeat and the encoder.

    ``cancel()`` ends the job as cancelled; ``interrupt()`` returns it to the
    queue (graceful shutdown). The first reason set wins.
    """

    CANCEL = "cancel"
    INTERRUPT = "interrupt"

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._lock = threading.Lock()

    def cancel(self) -> None:
        self._set(self.CANCEL)

    def interrupt(self) -> None:
        self._set(self.INTERRUPT)

    def _set(self, reason: str) -> None:
        with self._lock:
            if self._reason is None:
                self._reason = reason
            self._event.set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_set(self) -> None:
        """Raise JobCancelled or JobInterrupted when the token has fired."""
        if not self._event.is_set():
            return
        if self._reason == self.INTERRUPT:
            raise JobInterrupted("Worker shutting down")
        raise JobCancelled("Job cancelled")
