"""Job handlers, one per job type."""

from typing import Callable, Dict

from ..queue.models import JobResult, JobType
from . import audio, compress, preview, thumbnail, transcode, watermark
from .base import HandlerContext

Handler = Callable[[HandlerContext], JobResult]

HANDLERS: Dict[JobType, Handler] = {
    JobType.TRANSCODE: transcode.handle,
    JobType.THUMBNAIL: thumbnail.handle,
    JobType.PREVIEW: preview.handle,
    JobType.AUDIO_EXTRACT: audio.handle,
    JobType.WATERMARK: watermark.handle,
    JobType.COMPRESS: compress.handle,
}


def get_handler(job_type: JobType) -> Handler:
    try:
        return HANDLERS[JobType(job_type)]
    except KeyError:
        raise ValueError(f"No handler for job type: {job_type}")


def dispatch(ctx: HandlerContext) -> JobResult:
    """Run the handler matching ``ctx.job.job_type``."""
    return get_handler(ctx.job.job_type)(ctx)


__all__ = ["HANDLERS", "Handler", "HandlerContext", "dispatch", "get_handler"]
