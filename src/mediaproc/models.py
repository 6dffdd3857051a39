"""Pydantic models for pipeline configuration."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .queue.models import JobType


class DatabaseConfig(BaseModel):
    """SQLite database holding jobs, queue messages and the video catalog."""

    path: str = Field(default="mediaproc.db", description="SQLite database file")


class StorageConfig(BaseModel):
    """Local artifact store settings."""

    root: str = Field(default="artifacts", description="Directory artifacts are written under")
    base_url: str = Field(default="/media", description="URL prefix returned for stored artifacts")


class QueueConfig(BaseModel):
    """Delivery, visibility and backoff settings."""

    visibility_timeout_s: float = Field(
        default=600.0, gt=0.0, description="In-flight message becomes visible again after this"
    )
    backoff_base_s: float = Field(default=5.0, ge=0.0, description="First retry delay")
    backoff_cap_s: float = Field(default=300.0, ge=0.0, description="Maximum retry delay")
    jitter_s: float = Field(
        default=1.0, ge=0.0, description="Random delay added at initial enqueue"
    )
    poll_interval_s: float = Field(
        default=1.0, gt=0.0, description="Worker sleep when the queue is empty"
    )
    heartbeat_interval_s: float = Field(
        default=30.0, gt=0.0, description="Visibility extension / cancel poll interval"
    )
    lock_retries: int = Field(default=3, ge=1, description="Retries on 'database is locked'")


class WorkerConfig(BaseModel):
    """Worker pool settings."""

    concurrency: int = Field(default=2, ge=1, description="Pool-wide concurrent jobs")
    work_dir: str = Field(default="/tmp/mediaproc", description="Scratch directory for encodes")
    progress_buffer: int = Field(
        default=32, ge=1, description="Bounded progress channel capacity"
    )


class FfmpegConfig(BaseModel):
    """FFmpeg runner settings."""

    global_timeout_s: int = Field(
        default=3600, gt=0, description="Maximum duration for any FFmpeg operation in seconds"
    )
    no_progress_timeout_s: int = Field(
        default=120, gt=0, description="Timeout if no progress update in N seconds"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    save_artifacts_on_failure: bool = Field(
        default=True, description="Save FFmpeg logs and commands on failure for debugging"
    )
    ffmpeg_loglevel: str = Field(
        default="info", description="FFmpeg log level: error, warning, info, verbose"
    )
    temp_dir: Optional[str] = Field(
        default=None, description="Directory for failure artifacts (None = worker temp dir)"
    )


class TranscodePreset(BaseModel):
    """Bounding box and default rates for one rendition label."""

    width: int = Field(gt=0)
    height: int = Field(gt=0)
    video_bitrate_kbps: int = Field(gt=0)
    audio_bitrate_kbps: int = Field(default=128, gt=0)
    fps: int = Field(default=30, gt=0)


def _default_presets() -> Dict[str, TranscodePreset]:
    return {
        "240p": TranscodePreset(width=426, height=240, video_bitrate_kbps=400, audio_bitrate_kbps=64),
        "360p": TranscodePreset(width=640, height=360, video_bitrate_kbps=800, audio_bitrate_kbps=96),
        "480p": TranscodePreset(width=854, height=480, video_bitrate_kbps=1500, audio_bitrate_kbps=128),
        "720p": TranscodePreset(width=1280, height=720, video_bitrate_kbps=2500, audio_bitrate_kbps=192),
        "1080p": TranscodePreset(width=1920, height=1080, video_bitrate_kbps=5000, audio_bitrate_kbps=192),
        "1440p": TranscodePreset(
            width=2560, height=1440, video_bitrate_kbps=9000, audio_bitrate_kbps=192, fps=60
        ),
        "2160p": TranscodePreset(
            width=3840, height=2160, video_bitrate_kbps=18000, audio_bitrate_kbps=192, fps=60
        ),
    }


def _default_priorities() -> Dict[JobType, int]:
    # Cheap jobs first so a video gets a poster before its renditions land
    return {
        JobType.THUMBNAIL: 10,
        JobType.PREVIEW: 20,
        JobType.TRANSCODE: 50,
        JobType.AUDIO_EXTRACT: 60,
        JobType.WATERMARK: 70,
        JobType.COMPRESS: 80,
    }


class JobDefaultsConfig(BaseModel):
    """Defaults applied when a job request leaves them unset."""

    max_retries: int = Field(default=3, ge=0, le=10)
    priorities: Dict[JobType, int] = Field(default_factory=_default_priorities)

    @field_validator("priorities")
    @classmethod
    def priorities_in_range(cls, v: Dict[JobType, int]) -> Dict[JobType, int]:
        for job_type, priority in v.items():
            if not 0 <= priority <= 100:
                raise ValueError(f"priority for {job_type.value} must be within 0-100")
        return {**_default_priorities(), **v}


class ReadinessConfig(BaseModel):
    """Policy deciding when a video's job set makes it ready or failed."""

    mandatory_job_types: List[JobType] = Field(
        default_factory=lambda: [JobType.THUMBNAIL],
        description="Job types whose failure fails the video",
    )
    min_completed_transcodes: int = Field(
        default=1,
        ge=0,
        description="Completed transcodes required when transcodes were requested",
    )


class PipelineConfig(BaseModel):
    """Complete application configuration with validation."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    ffmpeg: FfmpegConfig = Field(default_factory=FfmpegConfig)
    jobs: JobDefaultsConfig = Field(default_factory=JobDefaultsConfig)
    readiness: ReadinessConfig = Field(default_factory=ReadinessConfig)
    transcode_presets: Dict[str, TranscodePreset] = Field(default_factory=_default_presets)

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "PipelineConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db") is not None:
            config_dict["database"]["path"] = cli_args["db"]
        if cli_args.get("workers") is not None:
            config_dict["worker"]["concurrency"] = cli_args["workers"]
        if cli_args.get("work_dir") is not None:
            config_dict["worker"]["work_dir"] = cli_args["work_dir"]
        if cli_args.get("storage_root") is not None:
            config_dict["storage"]["root"] = cli_args["storage_root"]
        if cli_args.get("base_url") is not None:
            config_dict["storage"]["base_url"] = cli_args["base_url"]
        if cli_args.get("max_retries") is not None:
            config_dict["jobs"]["max_retries"] = cli_args["max_retries"]

        return PipelineConfig.from_dict(config_dict)
