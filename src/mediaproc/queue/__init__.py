"""Job records, delivery queue and worker pool for crash-safe processing."""

from .backends import JobQueue, JobStore
from .models import (
    JobRequest,
    JobResult,
    JobStatus,
    JobType,
    ProcessingJob,
    QueueDepth,
    QueueHandle,
)
from .sqlite_backend import SQLiteJobStore, SQLiteQueue
from .worker import ProcessingWorkerPool, classify_error

__all__ = [
    "JobQueue",
    "JobStore",
    "JobRequest",
    "JobResult",
    "JobStatus",
    "JobType",
    "ProcessingJob",
    "QueueDepth",
    "QueueHandle",
    "SQLiteJobStore",
    "SQLiteQueue",
    "ProcessingWorkerPool",
    "classify_error",
]
