"""Exception hierarchy for the media-processing pipeline.

The worker classifies every handler failure into one of three outcomes:
- transient: retried through queue backoff until max_retries is exhausted
- permanent: failed immediately, no retry
- cancellation/interruption: not an error, terminal (cancel) or requeued (interrupt)
"""

from typing import Optional


class MediaProcError(Exception):
    """Base class for all pipeline errors."""


class TransientError(MediaProcError):
    """Retryable infrastructure or codec hiccup (process crash, I/O stall, upload timeout)."""


class PermanentError(MediaProcError):
    """Non-retryable failure caused by the input or the job configuration."""


class UnsupportedResolution(PermanentError):
    """Requested transcode resolution has no configured preset."""

    def __init__(self, label: str):
        super().__init__(f"Unsupported resolution: {label}")
        self.label = label


class InvalidSource(PermanentError):
    """Source file is missing, empty, corrupt or has no usable stream."""


class CodecError(MediaProcError):
    """Encoding/probing failure reported by the codec adapter.

    ``kind`` is ``"permanent"`` or ``"transient"`` as classified from ffmpeg stderr.
    """

    def __init__(self, message: str, kind: str = "transient", stderr: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.stderr = stderr

    @property
    def is_permanent(self) -> bool:
        return self.kind == "permanent"


class ArtifactStoreError(TransientError):
    """Artifact upload failed (network, timeout, temporary disk exhaustion)."""


class JobCancelled(MediaProcError):
    """Raised inside a handler when the job's cancel token fires."""


class JobInterrupted(MediaProcError):
    """Raised inside a handler when the pool is shutting down with interrupt=True."""


class InvalidTransition(MediaProcError):
    """A job record was not in the expected state for the requested transition."""

    def __init__(self, job_id: str, expected, target: str, actual: Optional[str] = None):
        expected_str = ", ".join(sorted(str(s) for s in expected))
        message = f"Job {job_id}: cannot move to {target} (expected {expected_str}"
        if actual is not None:
            message += f", found {actual}"
        super().__init__(message + ")")
        self.job_id = job_id
        self.target = target
        self.actual = actual


class JobNotFound(MediaProcError):
    """No job record exists for the given id."""


class VideoNotFound(MediaProcError):
    """No catalog entry exists for the given video id."""
