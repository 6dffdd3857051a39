"""End-to-end and operator tests for ProcessingService."""

from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from mediaproc.catalog import VideoStatus
from mediaproc.errors import CodecError, UnsupportedResolution, VideoNotFound
from mediaproc.queue import JobStatus, JobType
from mediaproc.queue.models import ThumbnailSettings, TranscodeSettings
from mediaproc.reconcile import Decision


class TestEndToEnd:
    def test_upload_to_ready(self, service, video, source_video, fake_codec):
        """1080p 30s upload with the default 720p rendition and three thumbnails."""
        requests = service.default_requests(renditions=["720p"], thumbnail_count=3)
        job_ids = service.create_jobs(video.id, "user-1", source_video, requests)

        assert service.catalog.get_video("vid-1").status == VideoStatus.PROCESSING

        stats = service.build_pool(concurrency=1).run_until_idle()
        assert stats.processed == 2

        jobs = [service.get_job(job_id) for job_id in job_ids]
        assert all(job.status == JobStatus.COMPLETED for job in jobs)
        assert all(job.progress.percent == 100 for job in jobs)

        assert [call[1] for call in fake_codec.calls_of("extract_frame")] == [7.5, 15.0, 22.5]
        spec = fake_codec.calls_of("transcode")[0][1]
        assert (spec.width, spec.height) == (1280, 720)

        video = service.catalog.get_video("vid-1")
        assert video.status == VideoStatus.READY
        assert len(video.thumbnails) == 3
        assert [r.label for r in video.renditions] == ["720p"]
        assert video.processing_progress.percent == 100

    def test_thumbnails_run_before_transcodes(self, service, video, source_video, fake_codec):
        requests = service.default_requests(renditions=["720p", "480p"], thumbnail_count=1)
        service.create_jobs(video.id, "user-1", source_video, requests)

        service.build_pool(concurrency=1).run_until_idle()

        operations = [call[0] for call in fake_codec.calls if call[0] != "probe"]
        assert operations == ["extract_frame", "transcode", "transcode"]

    def test_failed_rendition_does_not_block_ready(self, service, video, source_video, fake_codec):
        requests = service.default_requests(renditions=["720p", "1080p"], thumbnail_count=1)
        service.create_jobs(video.id, "user-1", source_video, requests)
        fake_codec.fail("transcode", CodecError("Invalid argument", kind="permanent"))

        service.build_pool(concurrency=1).run_until_idle()

        video = service.catalog.get_video("vid-1")
        assert video.status == VideoStatus.READY
        assert len(video.renditions) == 1


class TestCreateJobs:
    def test_priorities_and_retries_from_config(self, service, video, source_video):
        requests = service.default_requests(renditions=["720p"], thumbnail_count=2)
        thumbnail_id, transcode_id = service.create_jobs(video.id, "user-1", source_video, requests)

        thumbnail = service.get_job(thumbnail_id)
        transcode = service.get_job(transcode_id)
        assert thumbnail.priority == 10
        assert transcode.priority == 50
        assert transcode.max_retries == 3
        assert transcode.settings.bitrate_kbps == 2500
        assert service.get_queue_depth().waiting == 2

    def test_video_processing_before_jobs_deliverable(self, service, video, source_video, monkeypatch):
        statuses_at_enqueue = []
        enqueue = service.queue.enqueue

        def recording_enqueue(job_id, priority, delay_s=0.0):
            statuses_at_enqueue.append(service.catalog.get_video(video.id).status)
            return enqueue(job_id, priority, delay_s)

        monkeypatch.setattr(service.queue, "enqueue", recording_enqueue)
        service.create_jobs(
            video.id, "user-1", source_video, service.default_requests(["720p"], thumbnail_count=1)
        )

        assert statuses_at_enqueue == [VideoStatus.PROCESSING, VideoStatus.PROCESSING]
        assert service.catalog.get_video(video.id).processing_progress.current_step == "queued"

    def test_request_overrides(self, service, video, source_video):
        requests = [
            {
                "job_type": "thumbnail",
                "settings": {"count": 4},
                "priority": 0,
                "max_retries": 1,
            }
        ]
        (job_id,) = service.create_jobs(video.id, "user-1", source_video, requests)

        job = service.get_job(job_id)
        assert job.settings.count == 4
        assert job.priority == 0
        assert job.max_retries == 1

    def test_unknown_resolution_creates_nothing(self, service, video, source_video):
        requests = [
            {"job_type": "thumbnail", "settings": ThumbnailSettings()},
            {"job_type": "transcode", "settings": TranscodeSettings(resolution="4320p")},
        ]
        with pytest.raises(UnsupportedResolution):
            service.create_jobs(video.id, "user-1", source_video, requests)

        assert service.list_jobs(video_id="vid-1") == []
        assert service.get_queue_depth().total == 0
        assert service.catalog.get_video("vid-1").status == VideoStatus.UPLOADING

    def test_malformed_settings_rejected(self, service, video, source_video):
        requests = [{"job_type": "thumbnail", "settings": {"count": 0}}]
        with pytest.raises(ValidationError):
            service.create_jobs(video.id, "user-1", source_video, requests)
        assert service.list_jobs() == []

    def test_unknown_video(self, service, source_video):
        with pytest.raises(VideoNotFound):
            service.create_jobs(
                "missing", "user-1", source_video, service.default_requests(thumbnail_count=1)
            )
        assert service.list_jobs() == []

    def test_empty_request_list(self, service, video, source_video):
        with pytest.raises(ValueError):
            service.create_jobs(video.id, "user-1", source_video, [])

    def test_default_requests_rejects_unknown_label(self, service):
        with pytest.raises(UnsupportedResolution):
            service.default_requests(renditions=["8k"])


class TestRetryFailed:
    def test_failed_job_replaced(self, service, video, source_video, fake_codec):
        requests = service.default_requests(renditions=["720p"], thumbnail_count=1)
        _, transcode_id = service.create_jobs(video.id, "user-1", source_video, requests)
        fake_codec.fail("transcode", CodecError("Invalid data", kind="permanent"))

        pool = service.build_pool(concurrency=1)
        pool.run_until_idle()
        assert service.catalog.get_video("vid-1").status == VideoStatus.FAILED

        (new_id,) = service.retry_failed("vid-1")

        original = service.get_job(transcode_id)
        replacement = service.get_job(new_id)
        assert original.status == JobStatus.FAILED
        assert original.superseded_by == new_id
        assert replacement.status == JobStatus.PENDING
        assert replacement.retry_count == 0
        assert replacement.last_error is None
        assert replacement.settings == original.settings
        assert service.catalog.get_video("vid-1").status == VideoStatus.PROCESSING

        pool.run_until_idle()
        assert service.get_job(new_id).status == JobStatus.COMPLETED
        assert service.catalog.get_video("vid-1").status == VideoStatus.READY

    def test_nothing_to_retry(self, service, video):
        assert service.retry_failed() == []

    def test_superseded_jobs_not_retried_twice(self, service, video, source_video, fake_codec):
        requests = service.default_requests(renditions=["720p"], thumbnail_count=1)
        service.create_jobs(video.id, "user-1", source_video, requests)
        fake_codec.fail(
            "transcode",
            CodecError("Invalid data", kind="permanent"),
            CodecError("Invalid data", kind="permanent"),
        )
        pool = service.build_pool(concurrency=1)
        pool.run_until_idle()

        first = service.retry_failed()
        pool.run_until_idle()
        second = service.retry_failed()

        assert len(first) == 1 and len(second) == 1
        assert second != first
        assert service.retry_failed() == []


class TestCleanup:
    def _age(self, service, job_id, days):
        completed_at = (datetime.now() - timedelta(days=days)).isoformat()
        with service.store.db.conn:
            service.store.db.conn.execute(
                "UPDATE processing_jobs SET completed_at = ? WHERE job_id = ?",
                (completed_at, job_id),
            )

    def test_cleanup_by_age(self, service, video, source_video, fake_codec):
        requests = service.default_requests(renditions=["720p", "480p"], thumbnail_count=1)
        service.create_jobs(video.id, "user-1", source_video, requests)
        fake_codec.fail("transcode", CodecError("Invalid data", kind="permanent"))
        service.build_pool(concurrency=1).run_until_idle()

        (thumbnail_id,) = [j.job_id for j in service.list_jobs(status=JobStatus.COMPLETED)
                           if j.job_type == JobType.THUMBNAIL]
        (ok_id,) = [j.job_id for j in service.list_jobs(status=JobStatus.COMPLETED)
                    if j.job_type == JobType.TRANSCODE]
        (failed_id,) = [j.job_id for j in service.list_jobs(status=JobStatus.FAILED)]

        self._age(service, thumbnail_id, 40)
        self._age(service, ok_id, 10)
        self._age(service, failed_id, 8)

        deleted = service.cleanup(older_than_days=30, failed_older_than_days=7)

        assert deleted == {"completed": 1, "cancelled": 0, "failed": 1}
        assert [job.job_id for job in service.list_jobs()] == [ok_id]
        assert service.queue.get_message(thumbnail_id) is None


class TestReconcileOperation:
    def test_manual_reconcile_after_cancel(self, service, video, source_video):
        requests = service.default_requests(renditions=["720p"], thumbnail_count=1)
        job_ids = service.create_jobs(video.id, "user-1", source_video, requests)
        for job_id in job_ids:
            service.cancel_job(job_id)

        outcome = service.reconcile("vid-1")
        assert outcome.decision == Decision.UNDECIDED
        assert all(service.get_job(j).status == JobStatus.CANCELLED for j in job_ids)


class TestProgressPersistence:
    def test_progress_rollup_written_while_processing(self, service, video, source_video, fake_codec):
        """The executing worker persists handler progress through the channel."""
        requests = service.default_requests(renditions=["720p"], thumbnail_count=1)
        _, transcode_id = service.create_jobs(video.id, "user-1", source_video, requests)

        seen = []

        def snapshot(_token):
            pool.channel.flush()
            seen.append(service.get_job(transcode_id).progress.percent)

        fake_codec.hooks["transcode"] = snapshot
        pool = service.build_pool(concurrency=1)
        pool.run_until_idle()

        assert seen and 0 < seen[0] < 100
        job = service.get_job(transcode_id)
        assert job.progress.percent == 100
        assert job.error_kind is None
        assert job.job_type == JobType.TRANSCODE

