"""Audio-extract handler: drop the video stream, keep a standalone audio file."""

from ..errors import InvalidSource
from ..queue.models import JobResult
from .base import ENCODE_PROGRESS_CAP, HandlerContext

CONTENT_TYPES = {"mp3": "audio/mpeg", "aac": "audio/aac"}
EXTENSIONS = {"mp3": "mp3", "aac": "m4a"}


def handle(ctx: HandlerContext) -> JobResult:
    settings = ctx.job.settings
    info = ctx.probe()
    if not info.has_audio:
        raise InvalidSource(f"Source has no audio stream: {ctx.job.input_file}")

    ext = EXTENSIONS[settings.codec]
    key = f"processed/{ctx.video_id}_audio.{ext}"

    with ctx.temp_file(f"audio_{ctx.job_id}.{ext}") as out:
        ctx.report(5, "extracting_audio")
        ctx.codec.extract_audio(
            ctx.job.input_file,
            str(out),
            codec=settings.codec,
            bitrate_kbps=settings.bitrate_kbps,
            on_progress=ctx.encode_progress("extracting_audio", 5, ENCODE_PROGRESS_CAP),
            cancel_token=ctx.cancel_token,
            duration=info.duration,
        )
        ctx.report(ENCODE_PROGRESS_CAP, "uploading")
        output = ctx.upload(
            out, key, CONTENT_TYPES[settings.codec], "audio", bitrate=settings.bitrate_kbps
        )

    return JobResult(
        output_files=[output],
        video_info=info.to_video_info(),
        warnings=list(ctx.warnings),
    )
