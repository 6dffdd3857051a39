"""Compress handler: storage-saving re-encode at source resolution."""

import os

from ..queue.models import JobResult
from .base import ENCODE_PROGRESS_CAP, HandlerContext


def handle(ctx: HandlerContext) -> JobResult:
    settings = ctx.job.settings
    info = ctx.probe()
    key = f"processed/{ctx.video_id}_compressed.{settings.container}"

    with ctx.temp_file(f"compress_{ctx.job_id}.{settings.container}") as out:
        ctx.report(5, "compressing", f"crf {settings.crf}, preset {settings.preset}")
        ctx.codec.compress(
            ctx.job.input_file,
            str(out),
            crf=settings.crf,
            preset=settings.preset,
            on_progress=ctx.encode_progress("compressing", 5, ENCODE_PROGRESS_CAP),
            cancel_token=ctx.cancel_token,
            duration=info.duration,
        )
        ctx.report(ENCODE_PROGRESS_CAP, "uploading")
        output = ctx.upload(
            out, key, "video/mp4", "video", resolution=f"{info.width}x{info.height}"
        )

    if output.size >= os.path.getsize(ctx.job.input_file):
        ctx.warn("Compressed output is not smaller than the source")

    return JobResult(
        output_files=[output],
        video_info=info.to_video_info(),
        warnings=list(ctx.warnings),
    )
