"""Shared execution context for job handlers.

A handler is a plain function ``handle(ctx: HandlerContext) -> JobResult``. It
reads the job's settings, drives the codec, uploads artifacts under
deterministic keys and records them on the video. The context owns the
cross-cutting parts: progress publishing, cancellation checkpoints, scratch
file cleanup and upload bookkeeping.
"""

import logging
import shutil
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from ..catalog import VideoCatalog
from ..codec import MediaCodec, MediaInfo
from ..hashing import compute_output_hash
from ..models import PipelineConfig
from ..progress import CancelToken, ProgressChannel, ProgressEvent
from ..queue.models import OutputFile, ProcessingJob
from ..storage import ArtifactStore

logger = logging.getLogger(__name__)

# Encode work fills progress up to here; the rest is upload and bookkeeping
ENCODE_PROGRESS_CAP = 90


@dataclass
class HandlerContext:
    job: ProcessingJob
    codec: MediaCodec
    store: ArtifactStore
    catalog: VideoCatalog
    config: PipelineConfig
    work_dir: Path
    cancel_token: CancelToken = field(default_factory=CancelToken)
    channel: Optional[ProgressChannel] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def video_id(self) -> str:
        return self.job.video_id

    @property
    def job_id(self) -> str:
        return self.job.job_id

    def report(
        self,
        percent: int,
        step: str,
        message: str = "",
        estimated_time_left: Optional[float] = None,
    ) -> None:
        """Publish progress without blocking."""
        if self.channel is None:
            return
        self.channel.publish(
            ProgressEvent(
                job_id=self.job_id,
                percent=int(percent),
                current_step=step,
                message=message,
                estimated_time_left=estimated_time_left,
            )
        )

    def encode_progress(
        self, step: str, start: int = 0, end: int = ENCODE_PROGRESS_CAP
    ) -> Callable[[float], None]:
        """Map an encoder's completed fraction onto ``[start, end]`` percent."""
        span = end - start

        def on_progress(fraction: float) -> None:
            fraction = max(0.0, min(1.0, fraction))
            self.report(start + int(fraction * span), step, f"{fraction:.0%}")

        return on_progress

    def checkpoint(self) -> None:
        """Raise JobCancelled/JobInterrupted if the cancel token fired."""
        self.cancel_token.raise_if_set()

    def probe(self) -> MediaInfo:
        self.checkpoint()
        self.report(2, "probing", "Reading source metadata")
        return self.codec.probe(self.job.input_file)

    def warn(self, message: str) -> None:
        logger.warning("Job %s: %s", self.job_id, message)
        self.warnings.append(message)

    def upload(
        self,
        local_path: Path,
        key: str,
        content_type: str,
        output_type: str,
        resolution: Optional[str] = None,
        bitrate: Optional[int] = None,
    ) -> OutputFile:
        """Checksum ``local_path``, store it under ``key`` and describe the result."""
        self.checkpoint()
        checksum = compute_output_hash(str(local_path))
        size = Path(local_path).stat().st_size
        url = self.store.store_file(str(local_path), key, content_type)
        logger.debug("Job %s uploaded %s (%d bytes)", self.job_id, key, size)
        return OutputFile(
            url=url,
            type=output_type,
            size=size,
            resolution=resolution,
            bitrate=bitrate,
            checksum=checksum,
        )

    @contextmanager
    def temp_file(self, name: str) -> Iterator[Path]:
        """Scratch file under work_dir, removed on exit whatever happens."""
        self.work_dir.mkdir(parents=True, exist_ok=True)
        path = self.work_dir / name
        try:
            yield path
        finally:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove temp file %s: %s", path, e)

    @contextmanager
    def temp_dir(self, name: str) -> Iterator[Path]:
        """Scratch directory under work_dir, removed on exit whatever happens."""
        path = self.work_dir / name
        path.mkdir(parents=True, exist_ok=True)
        try:
            yield path
        finally:
            shutil.rmtree(path, ignore_errors=True)
