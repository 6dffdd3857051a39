"""Pydantic models for processing jobs and queue messages.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class JobStatus(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        pending → processing     (worker dequeues)
        processing → completed   (handler succeeds)
        processing → pending     (transient failure with retries left, or crash recovery)
        processing → failed      (permanent failure or retries exhausted)
        pending → cancelled      (operator cancel)
        processing → cancelled   (operator cancel, encode process terminated)
    """

    PENDING = "pending"  # Queued, waiting for a worker
    PROCESSING = "processing"  # Held by exactly one worker
    COMPLETED = "completed"  # Handler succeeded, result persisted
    FAILED = "failed"  # Permanent failure or retries exhausted
    CANCELLED = "cancelled"  # Operator/user cancel

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})


class JobType(str, Enum):
    """Kinds of media-processing work. Immutable after job creation."""

    TRANSCODE = "transcode"
    THUMBNAIL = "thumbnail"
    PREVIEW = "preview"
    AUDIO_EXTRACT = "audio_extract"
    WATERMARK = "watermark"
    COMPRESS = "compress"


class ErrorKind(str, Enum):
    """Failure classification recorded on the job's error channel."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


# ---------------------------------------------------------------------------
# Per-job-type settings (tagged union on ``kind``)
# ---------------------------------------------------------------------------


class TranscodeSettings(BaseModel):
    """Target rendition for a transcode job."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["transcode"] = "transcode"
    resolution: str = Field(..., description="Preset label, e.g. '720p'")
    bitrate_kbps: int = Field(default=2500, ge=100, description="Target video bitrate in kbps")
    fps: int = Field(default=30, ge=1, le=120, description="Target frame rate")
    container: Literal["mp4", "webm", "mkv"] = Field(default="mp4", description="Output container")


class ThumbnailSettings(BaseModel):
    """Poster frame extraction settings."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["thumbnail"] = "thumbnail"
    count: int = Field(default=5, ge=1, le=20, description="Evenly spaced frames to extract")
    size: str = Field(default="320x180", pattern=r"^\d+x\d+$", description="Output WxH")
    timestamps: Optional[List[float]] = Field(
        default=None, description="Explicit timestamps in seconds (overrides count)"
    )

    @field_validator("timestamps")
    @classmethod
    def timestamps_valid(cls, v: Optional[List[float]]) -> Optional[List[float]]:
        if v is None:
            return v
        if not v:
            raise ValueError("timestamps must not be empty when given")
        if any(t < 0 for t in v):
            raise ValueError("timestamps must be non-negative")
        return v

    @property
    def dimensions(self) -> tuple:
        width, height = self.size.split("x")
        return int(width), int(height)


class PreviewSettings(BaseModel):
    """Short muted teaser clip."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["preview"] = "preview"
    duration_s: float = Field(default=6.0, gt=0.0, le=60.0, description="Clip length in seconds")
    start_fraction: float = Field(
        default=0.1, ge=0.0, lt=1.0, description="Clip start as a fraction of source duration"
    )
    width: int = Field(default=480, ge=16, description="Output width (height follows aspect)")


class AudioExtractSettings(BaseModel):
    """Audio-only extract."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["audio_extract"] = "audio_extract"
    codec: Literal["mp3", "aac"] = Field(default="mp3", description="Audio codec")
    bitrate_kbps: int = Field(default=192, ge=32, le=512, description="Audio bitrate in kbps")


class WatermarkSettings(BaseModel):
    """Image overlay burned into a full re-encode."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["watermark"] = "watermark"
    image: str = Field(..., min_length=1, description="Watermark image path")
    position: Literal["top-left", "top-right", "bottom-left", "bottom-right", "center"] = Field(
        default="bottom-right"
    )
    opacity: float = Field(default=0.8, ge=0.0, le=1.0)


class CompressSettings(BaseModel):
    """Storage-saving re-encode at a higher compression preset."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["compress"] = "compress"
    crf: int = Field(default=28, ge=0, le=51)
    preset: Literal[
        "ultrafast", "superfast", "veryfast", "faster", "fast",
        "medium", "slow", "slower", "veryslow",
    ] = Field(default="slower")
    container: Literal["mp4"] = "mp4"


JobSettings = Annotated[
    Union[
        TranscodeSettings,
        ThumbnailSettings,
        PreviewSettings,
        AudioExtractSettings,
        WatermarkSettings,
        CompressSettings,
    ],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Progress and results
# ---------------------------------------------------------------------------


class JobProgress(BaseModel):
    """Authoritative per-job progress. Only the executing worker writes it."""

    percent: int = Field(default=0, ge=0, le=100)
    current_step: str = Field(default="waiting")
    message: str = Field(default="")
    estimated_time_left: Optional[float] = Field(default=None, description="Seconds")
    processed_bytes: Optional[int] = Field(default=None, ge=0)
    total_bytes: Optional[int] = Field(default=None, ge=0)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class OutputFile(BaseModel):
    """One uploaded artifact produced by a job."""

    url: str
    type: Literal["video", "audio", "image"]
    size: int = Field(ge=0)
    resolution: Optional[str] = None
    bitrate: Optional[int] = None
    checksum: Optional[str] = Field(default=None, description="SHA-256 of the uploaded bytes")


class VideoInfo(BaseModel):
    """Probed media metadata."""

    duration: float = Field(ge=0.0)
    width: int = Field(ge=0)
    height: int = Field(ge=0)
    fps: float = Field(default=0.0, ge=0.0)
    bitrate: int = Field(default=0, ge=0)
    format: str = "unknown"


class JobResult(BaseModel):
    """Success-only payload. Failures go to the job's error channel instead."""

    output_files: List[OutputFile] = Field(default_factory=list)
    video_info: Optional[VideoInfo] = None
    thumbnails: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Job record
# ---------------------------------------------------------------------------


class ProcessingJob(BaseModel):
    """Persisted job entity, the central record of the pipeline."""

    job_id: str = Field(..., description="Unique job identifier (UUID)")
    video_id: str
    user_id: str
    job_type: JobType
    status: JobStatus = JobStatus.PENDING
    priority: int = Field(default=50, ge=0, le=100, description="Lower = served first")
    input_file: str
    settings: JobSettings
    progress: JobProgress = Field(default_factory=JobProgress)
    result: Optional[JobResult] = None
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0, le=10)
    last_error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    cancel_requested: bool = False
    superseded_by: Optional[str] = Field(
        default=None, description="Replacement job created by an operator retry"
    )
    scheduled_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def settings_match_type(self) -> "ProcessingJob":
        if self.settings.kind != self.job_type.value:
            raise ValueError(
                f"settings kind '{self.settings.kind}' does not match job_type '{self.job_type.value}'"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def retries_remaining(self) -> bool:
        return self.retry_count < self.max_retries


class JobRequest(BaseModel):
    """One job the upload collaborator asks the core to run."""

    job_type: JobType
    settings: JobSettings
    priority: Optional[int] = Field(default=None, ge=0, le=100)
    max_retries: Optional[int] = Field(default=None, ge=0, le=10)

    @model_validator(mode="before")
    @classmethod
    def default_settings_kind(cls, data):
        # Let callers pass settings without repeating the discriminator
        if isinstance(data, dict):
            settings = data.get("settings")
            job_type = data.get("job_type")
            if isinstance(settings, dict) and "kind" not in settings and job_type is not None:
                kind = job_type.value if isinstance(job_type, JobType) else str(job_type)
                data = {**data, "settings": {**settings, "kind": kind}}
        return data

    @model_validator(mode="after")
    def settings_match_type(self) -> "JobRequest":
        if self.settings.kind != self.job_type.value:
            raise ValueError(
                f"settings kind '{self.settings.kind}' does not match job_type '{self.job_type.value}'"
            )
        return self


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


class QueueHandle(BaseModel):
    """Delivery receipt returned by dequeue; required for ack/nack/dead_letter."""

    message_id: str
    job_id: str
    worker_id: str
    priority: int
    deliveries: int = Field(ge=1, description="1 on first delivery, >1 on redelivery")
    visible_until: datetime

    @property
    def is_redelivery(self) -> bool:
        return self.deliveries > 1


class QueueDepth(BaseModel):
    """Message counts per delivery state."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str
    from_state: Optional[str] = None
    to_state: str
    timestamp: datetime = Field(default_factory=datetime.now)
    worker_id: Optional[str] = None
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")
