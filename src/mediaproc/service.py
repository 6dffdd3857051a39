"""Processing service: the surface the upload collaborator, CLI and API use.

Wires the job store, delivery queue, catalog, artifact store and codec
together, and owns the operator operations (cancel, retry, cleanup,
reconcile) that must touch more than one of them.
"""

import logging
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from .catalog import SQLiteVideoCatalog, VideoCatalog, VideoStatus
from .codec import FfmpegCodec, MediaCodec
from .errors import InvalidTransition, UnsupportedResolution
from .handlers import HandlerContext, dispatch
from .models import PipelineConfig
from .progress import CancelToken, ProgressChannel
from .queue.backends import JobQueue, JobStore
from .queue.models import (
    JobProgress,
    JobRequest,
    JobResult,
    JobStatus,
    JobType,
    ProcessingJob,
    QueueDepth,
    ThumbnailSettings,
    TranscodeSettings,
)
from .queue.sqlite_backend import SQLiteJobStore, SQLiteQueue
from .queue.worker import ProcessingWorkerPool
from .reconcile import ReadinessPolicy, ReconcileOutcome, VideoReconciler
from .storage import ArtifactStore, LocalArtifactStore

logger = logging.getLogger(__name__)

DEFAULT_RENDITIONS = ("720p",)
DEFAULT_THUMBNAIL_SIZE = "320x180"


class ProcessingService:
    """Facade over the pipeline's components."""

    def __init__(
        self,
        config: PipelineConfig,
        store: JobStore,
        queue: JobQueue,
        catalog: VideoCatalog,
        artifacts: ArtifactStore,
        codec: MediaCodec,
    ):
        self.config = config
        self.store = store
        self.queue = queue
        self.catalog = catalog
        self.artifacts = artifacts
        self.codec = codec
        self.reconciler = VideoReconciler(
            store, catalog, ReadinessPolicy.from_config(config.readiness)
        )
        self._pool: Optional[ProcessingWorkerPool] = None

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        codec: Optional[MediaCodec] = None,
        artifacts: Optional[ArtifactStore] = None,
    ) -> "ProcessingService":
        """Build the SQLite-backed service described by ``config``."""
        db_path = config.database.path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        return cls(
            config=config,
            store=SQLiteJobStore(db_path, lock_retries=config.queue.lock_retries),
            queue=SQLiteQueue.from_config(db_path, config.queue),
            catalog=SQLiteVideoCatalog(db_path, lock_retries=config.queue.lock_retries),
            artifacts=artifacts
            or LocalArtifactStore(config.storage.root, base_url=config.storage.base_url),
            codec=codec or FfmpegCodec(config.ffmpeg),
        )

    def close(self) -> None:
        for component in (self.store, self.queue, self.catalog):
            close = getattr(component, "close", None)
            if close is not None:
                close()

    # ------------------------------------------------------------------
    # Job creation
    # ------------------------------------------------------------------

    def default_requests(
        self,
        renditions: Iterable[str] = DEFAULT_RENDITIONS,
        thumbnail_count: int = 5,
    ) -> List[JobRequest]:
        """One thumbnail job plus one transcode per rendition label.

        Raises:
            UnsupportedResolution: If a label has no configured preset
        """
        requests = [
            JobRequest(
                job_type=JobType.THUMBNAIL,
                settings=ThumbnailSettings(count=thumbnail_count, size=DEFAULT_THUMBNAIL_SIZE),
            )
        ]
        for label in renditions:
            preset = self.config.transcode_presets.get(label)
            if preset is None:
                raise UnsupportedResolution(label)
            requests.append(
                JobRequest(
                    job_type=JobType.TRANSCODE,
                    settings=TranscodeSettings(
                        resolution=label,
                        bitrate_kbps=preset.video_bitrate_kbps,
                        fps=30,
                        container="mp4",
                    ),
                )
            )
        return requests

    def create_jobs(
        self,
        video_id: str,
        user_id: str,
        source: str,
        requests: Iterable[Union[JobRequest, dict]],
    ) -> List[str]:
        """Persist and enqueue one job per request; move the video to processing.

        Every request is validated before anything is written, so a bad
        request creates no jobs at all.

        Returns:
            New job ids, in request order

        Raises:
            pydantic.ValidationError: Malformed request or settings
            UnsupportedResolution: Transcode label without a preset
            VideoNotFound: Unknown video
        """
        parsed = [
            r if isinstance(r, JobRequest) else JobRequest.model_validate(r) for r in requests
        ]
        if not parsed:
            raise ValueError("At least one job request is required")

        for request in parsed:
            if request.job_type == JobType.TRANSCODE:
                label = request.settings.resolution
                if label not in self.config.transcode_presets:
                    raise UnsupportedResolution(label)

        # Raises VideoNotFound before any job exists
        self.catalog.get_video(video_id)

        now = datetime.now()
        defaults = self.config.jobs
        jobs = [
            ProcessingJob(
                job_id=str(uuid.uuid4()),
                video_id=video_id,
                user_id=user_id,
                job_type=request.job_type,
                priority=(
                    request.priority
                    if request.priority is not None
                    else defaults.priorities[request.job_type]
                ),
                input_file=source,
                settings=request.settings,
                max_retries=(
                    request.max_retries
                    if request.max_retries is not None
                    else defaults.max_retries
                ),
                scheduled_at=now,
                created_at=now,
            )
            for request in parsed
        ]

        self.store.create_jobs(jobs)
        # The video leaves uploading before any job is deliverable
        self.catalog.set_status(video_id, VideoStatus.PROCESSING, {VideoStatus.UPLOADING})
        self.catalog.set_progress_rollup(video_id, 0, "queued", f"{len(jobs)} job(s) queued")
        for job in jobs:
            self.queue.enqueue(job.job_id, job.priority)
        logger.info("Created %d job(s) for video %s", len(jobs), video_id)
        return [job.job_id for job in jobs]

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def list_jobs(
        self, video_id: Optional[str] = None, status: Optional[JobStatus] = None
    ) -> List[ProcessingJob]:
        return self.store.list_jobs(video_id=video_id, status=status)

    def get_job(self, job_id: str) -> ProcessingJob:
        return self.store.get_job(job_id)

    def get_queue_depth(self) -> QueueDepth:
        return self.queue.depth()

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def cancel_job(self, job_id: str) -> ProcessingJob:
        """Cancel a pending job now, or ask the worker holding it to stop.

        A processing job reaches ``cancelled`` once its worker observes the
        request (in-process immediately, otherwise on the next heartbeat).

        Raises:
            JobNotFound: Unknown job
            InvalidTransition: Job is already terminal
        """
        job = self.store.get_job(job_id)

        if job.status == JobStatus.PENDING:
            previous = self.store.mark_cancelled(job_id)
            self.queue.purge(job_id)
            if previous == JobStatus.PROCESSING and self._pool is not None:
                # A worker claimed it in between; the cancelled record stops it
                self._pool.cancel(job_id)
            logger.info("Cancelled pending job %s", job_id)
            self.reconciler.reconcile(job.video_id)
            return self.store.get_job(job_id)

        if job.status == JobStatus.PROCESSING:
            self.store.request_cancel(job_id)
            if self._pool is not None:
                self._pool.cancel(job_id)
            logger.info("Cancellation requested for running job %s", job_id)
            return self.store.get_job(job_id)

        raise InvalidTransition(
            job_id,
            expected=[JobStatus.PENDING.value, JobStatus.PROCESSING.value],
            target=JobStatus.CANCELLED.value,
            actual=job.status.value,
        )

    def retry_failed(self, video_id: Optional[str] = None) -> List[str]:
        """Re-queue failed jobs as fresh jobs with retry_count 0.

        The failed record stays failed and points at its replacement
        (``superseded_by``); readiness only looks at the replacement.

        Returns:
            Ids of the replacement jobs
        """
        failed = [
            job
            for job in self.store.list_jobs(video_id=video_id, status=JobStatus.FAILED)
            if job.superseded_by is None
        ]

        new_ids: List[str] = []
        reopened = set()
        for job in failed:
            now = datetime.now()
            clone = job.model_copy(
                update={
                    "job_id": str(uuid.uuid4()),
                    "status": JobStatus.PENDING,
                    "progress": JobProgress(),
                    "result": None,
                    "retry_count": 0,
                    "last_error": None,
                    "error_kind": None,
                    "cancel_requested": False,
                    "superseded_by": None,
                    "scheduled_at": now,
                    "started_at": None,
                    "completed_at": None,
                    "created_at": now,
                    "updated_at": None,
                }
            )
            self.store.create_jobs([clone])
            self.store.supersede(job.job_id, clone.job_id)
            self.queue.enqueue(clone.job_id, clone.priority)
            new_ids.append(clone.job_id)
            logger.info("Retrying job %s as %s", job.job_id, clone.job_id)

            if job.video_id not in reopened:
                reopened.add(job.video_id)
                self.catalog.set_status(
                    job.video_id,
                    VideoStatus.PROCESSING,
                    {VideoStatus.FAILED, VideoStatus.UPLOADING},
                )

        return new_ids

    def cleanup(self, older_than_days: int = 30, failed_older_than_days: int = 7) -> Dict[str, int]:
        """Delete old terminal jobs and their queue messages.

        Returns:
            Deleted counts per status
        """
        now = datetime.now()
        cutoffs = {
            JobStatus.COMPLETED: now - timedelta(days=older_than_days),
            JobStatus.CANCELLED: now - timedelta(days=older_than_days),
            JobStatus.FAILED: now - timedelta(days=failed_older_than_days),
        }

        deleted: Dict[str, int] = {}
        for status, cutoff in cutoffs.items():
            job_ids = self.store.delete_terminal_before(status, cutoff)
            for job_id in job_ids:
                self.queue.purge(job_id)
            deleted[status.value] = len(job_ids)

        logger.info("Cleanup removed %s", deleted)
        return deleted

    def reconcile(self, video_id: str) -> ReconcileOutcome:
        return self.reconciler.reconcile(video_id)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def execute(
        self,
        job: ProcessingJob,
        cancel_token: CancelToken,
        channel: Optional[ProgressChannel] = None,
    ) -> JobResult:
        """Run the handler for ``job`` (the worker pool's executor)."""
        ctx = HandlerContext(
            job=job,
            codec=self.codec,
            store=self.artifacts,
            catalog=self.catalog,
            config=self.config,
            work_dir=Path(self.config.worker.work_dir),
            cancel_token=cancel_token,
            channel=channel,
        )
        return dispatch(ctx)

    def build_pool(self, concurrency: Optional[int] = None) -> ProcessingWorkerPool:
        """Worker pool wired to this service; ``cancel_job`` reaches its running jobs."""
        worker = self.config.worker
        self._pool = ProcessingWorkerPool(
            store=self.store,
            queue=self.queue,
            execute=self.execute,
            on_terminal=self.reconciler.reconcile,
            on_thread_exit=self.catalog.release_thread,
            concurrency=concurrency or worker.concurrency,
            poll_interval_s=self.config.queue.poll_interval_s,
            heartbeat_interval_s=self.config.queue.heartbeat_interval_s,
            progress_buffer=worker.progress_buffer,
        )
        return self._pool
