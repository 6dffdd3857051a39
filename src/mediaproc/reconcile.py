"""Video reconciliation: decide a video's readiness from its job set.

Runs inline after every terminal job transition. The decision is a pure
function of the job snapshot (``decide``), and the catalog write is conditional
on the video still being uploading/processing, so concurrent invocations for
the same video converge on the same result.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Tuple

from .catalog import VideoCatalog, VideoStatus
from .errors import VideoNotFound
from .models import ReadinessConfig
from .queue.backends import JobStore
from .queue.models import ACTIVE_STATUSES, JobStatus, JobType, ProcessingJob

logger = logging.getLogger(__name__)

# Reconciliation may only move a video out of these states
OPEN_VIDEO_STATUSES = frozenset({VideoStatus.PROCESSING})


class Decision(str, Enum):
    PENDING = "pending"      # jobs still queued or running
    READY = "ready"
    FAILED = "failed"
    UNDECIDED = "undecided"  # everything relevant was cancelled; leave the video alone


@dataclass(frozen=True)
class ReadinessPolicy:
    """Which job outcomes make a video ready or failed.

    mandatory_job_types: a failed job of one of these types fails the video.
    min_completed_transcodes: when transcodes were requested (and not all
        cancelled), at least this many must complete, capped at the number
        requested.
    """

    mandatory_job_types: FrozenSet[JobType] = field(
        default_factory=lambda: frozenset({JobType.THUMBNAIL})
    )
    min_completed_transcodes: int = 1

    @classmethod
    def from_config(cls, config: ReadinessConfig) -> "ReadinessPolicy":
        return cls(
            mandatory_job_types=frozenset(config.mandatory_job_types),
            min_completed_transcodes=config.min_completed_transcodes,
        )


def decide(
    jobs: Iterable[ProcessingJob],
    policy: Optional[ReadinessPolicy] = None,
) -> Tuple[Decision, str]:
    """Readiness decision for one video's job snapshot.

    Jobs replaced by an operator retry are ignored.

    Returns:
        (decision, human readable reason)
    """
    policy = policy or ReadinessPolicy()
    live = [job for job in jobs if job.superseded_by is None]

    if not live:
        return Decision.UNDECIDED, "no jobs"

    outstanding = [job for job in live if job.status in ACTIVE_STATUSES]
    if outstanding:
        return Decision.PENDING, f"{len(outstanding)} job(s) outstanding"

    failed_mandatory = sorted(
        {
            job.job_type.value
            for job in live
            if job.job_type in policy.mandatory_job_types and job.status == JobStatus.FAILED
        }
    )
    if failed_mandatory:
        return Decision.FAILED, f"mandatory job failed: {', '.join(failed_mandatory)}"

    transcodes = [
        job for job in live
        if job.job_type == JobType.TRANSCODE and job.status != JobStatus.CANCELLED
    ]
    if transcodes:
        required = min(policy.min_completed_transcodes, len(transcodes))
        completed = sum(1 for job in transcodes if job.status == JobStatus.COMPLETED)
        if completed < required:
            return (
                Decision.FAILED,
                f"{completed}/{len(transcodes)} transcodes completed, {required} required",
            )

    if all(job.status == JobStatus.CANCELLED for job in live):
        return Decision.UNDECIDED, "all jobs cancelled"

    for job_type in policy.mandatory_job_types:
        of_type = [job for job in live if job.job_type == job_type]
        if of_type and all(job.status == JobStatus.CANCELLED for job in of_type):
            return Decision.UNDECIDED, f"all {job_type.value} jobs cancelled"

    return Decision.READY, "all required jobs completed"


@dataclass
class ReconcileOutcome:
    video_id: str
    decision: Decision
    reason: str
    status_changed: bool = False


class VideoReconciler:
    """Applies ``decide`` to the catalog."""

    def __init__(
        self,
        store: JobStore,
        catalog: VideoCatalog,
        policy: Optional[ReadinessPolicy] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.policy = policy or ReadinessPolicy()

    def reconcile(self, video_id: str) -> ReconcileOutcome:
        jobs = self.store.list_jobs(video_id=video_id)
        decision, reason = decide(jobs, self.policy)
        outcome = ReconcileOutcome(video_id=video_id, decision=decision, reason=reason)

        if decision == Decision.PENDING:
            logger.debug("Video %s: %s", video_id, reason)
            return outcome

        if decision == Decision.UNDECIDED:
            logger.info("Video %s left unchanged: %s", video_id, reason)
            return outcome

        target = VideoStatus.READY if decision == Decision.READY else VideoStatus.FAILED
        outcome.status_changed = self.catalog.set_status(video_id, target, OPEN_VIDEO_STATUSES)

        try:
            current = self.catalog.get_video(video_id).status
        except VideoNotFound:
            logger.warning("Video %s vanished during reconciliation", video_id)
            return outcome

        if current == target:
            step = "complete" if decision == Decision.READY else "failed"
            self.catalog.set_progress_rollup(video_id, 100, step, reason)
            if outcome.status_changed:
                logger.info("Video %s is %s (%s)", video_id, target.value, reason)
        else:
            logger.info(
                "Video %s is %s; not overriding with %s", video_id, current.value, target.value
            )

        return outcome
