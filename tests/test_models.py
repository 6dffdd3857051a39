"""Tests for Pydantic models and validation."""

import pytest
from pydantic import ValidationError

from mediaproc.models import JobDefaultsConfig, PipelineConfig, QueueConfig
from mediaproc.queue.models import (
    JobRequest,
    JobStatus,
    JobType,
    ProcessingJob,
    QueueDepth,
    ThumbnailSettings,
    TranscodeSettings,
)


def test_job_request_infers_settings_kind():
    """Test settings may omit the discriminator when job_type is given."""
    request = JobRequest.model_validate(
        {"job_type": "transcode", "settings": {"resolution": "1080p", "bitrate_kbps": 5000}}
    )
    assert isinstance(request.settings, TranscodeSettings)
    assert request.settings.resolution == "1080p"
    assert request.settings.fps == 30


def test_job_request_settings_mismatch():
    """Test settings of another job type are rejected."""
    with pytest.raises(ValidationError):
        JobRequest(job_type=JobType.TRANSCODE, settings=ThumbnailSettings())


def test_job_request_unknown_setting_rejected():
    with pytest.raises(ValidationError):
        JobRequest.model_validate(
            {"job_type": "thumbnail", "settings": {"count": 3, "quality": "high"}}
        )


def test_job_request_priority_range():
    with pytest.raises(ValidationError):
        JobRequest(job_type=JobType.THUMBNAIL, settings=ThumbnailSettings(), priority=101)


@pytest.mark.parametrize("size", ["320", "320x", "x180", "320*180"])
def test_thumbnail_size_format(size):
    with pytest.raises(ValidationError):
        ThumbnailSettings(size=size)


def test_thumbnail_explicit_timestamps():
    settings = ThumbnailSettings(timestamps=[0.0, 12.5])
    assert settings.timestamps == [0.0, 12.5]
    assert settings.dimensions == (320, 180)

    with pytest.raises(ValidationError):
        ThumbnailSettings(timestamps=[])
    with pytest.raises(ValidationError):
        ThumbnailSettings(timestamps=[-1.0])


def test_processing_job_defaults():
    job = ProcessingJob(
        job_id="job-1",
        video_id="vid-1",
        user_id="user-1",
        job_type=JobType.THUMBNAIL,
        input_file="/uploads/a.mp4",
        settings=ThumbnailSettings(),
    )
    assert job.status == JobStatus.PENDING
    assert job.progress.percent == 0
    assert job.retry_count == 0
    assert job.retries_remaining
    assert not job.is_terminal
    assert job.result is None


def test_processing_job_round_trips_through_json():
    job = ProcessingJob(
        job_id="job-1",
        video_id="vid-1",
        user_id="user-1",
        job_type=JobType.TRANSCODE,
        input_file="/uploads/a.mp4",
        settings=TranscodeSettings(resolution="480p"),
    )
    loaded = ProcessingJob.model_validate_json(job.model_dump_json())
    assert loaded == job


def test_terminal_statuses():
    assert {s for s in JobStatus if s.is_terminal} == {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    }


def test_queue_depth_total():
    assert QueueDepth(waiting=2, active=1, completed=5, failed=1).total == 9


def test_pipeline_config_defaults():
    """Test all defaults are valid."""
    config = PipelineConfig()
    assert config.queue.visibility_timeout_s == 600
    assert config.worker.concurrency == 2
    assert config.readiness.mandatory_job_types == [JobType.THUMBNAIL]
    assert set(config.transcode_presets) >= {"240p", "360p", "480p", "720p", "1080p"}


def test_pipeline_config_from_dict():
    config = PipelineConfig.from_dict(
        {"queue": {"backoff_base_s": 1}, "transcode_presets": {"720p": {
            "width": 1280, "height": 720, "video_bitrate_kbps": 3000}}}
    )
    assert config.queue.backoff_base_s == 1
    assert config.transcode_presets["720p"].video_bitrate_kbps == 3000
    # A custom preset table replaces the built-in one
    assert "1080p" not in config.transcode_presets


def test_partial_priorities_keep_defaults():
    defaults = JobDefaultsConfig(priorities={JobType.TRANSCODE: 40})
    assert defaults.priorities[JobType.TRANSCODE] == 40
    assert defaults.priorities[JobType.THUMBNAIL] == 10


def test_priority_out_of_range():
    with pytest.raises(ValidationError):
        JobDefaultsConfig(priorities={JobType.COMPRESS: 150})


def test_queue_config_rejects_zero_visibility():
    with pytest.raises(ValidationError) as exc_info:
        QueueConfig(visibility_timeout_s=0)
    assert "visibility_timeout_s" in str(exc_info.value)


def test_merge_cli_overrides_returns_new_instance():
    config = PipelineConfig()
    updated = config.merge_cli_overrides({"workers": 5, "work_dir": "/scratch"})
    assert updated.worker.concurrency == 5
    assert updated.worker.work_dir == "/scratch"
    assert config.worker.concurrency == 2
