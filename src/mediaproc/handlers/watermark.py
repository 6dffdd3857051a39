"""Watermark handler: burn an image overlay into a full re-encode."""

import os

from ..errors import InvalidSource
from ..queue.models import JobResult
from .base import ENCODE_PROGRESS_CAP, HandlerContext


def handle(ctx: HandlerContext) -> JobResult:
    settings = ctx.job.settings
    if not os.path.isfile(settings.image):
        raise InvalidSource(f"Watermark image not found: {settings.image}")

    info = ctx.probe()
    key = f"processed/{ctx.video_id}_watermarked.mp4"

    with ctx.temp_file(f"watermark_{ctx.job_id}.mp4") as out:
        ctx.report(5, "watermarking", settings.position)
        ctx.codec.overlay(
            ctx.job.input_file,
            settings.image,
            str(out),
            position=settings.position,
            opacity=settings.opacity,
            on_progress=ctx.encode_progress("watermarking", 5, ENCODE_PROGRESS_CAP),
            cancel_token=ctx.cancel_token,
            duration=info.duration,
        )
        ctx.report(ENCODE_PROGRESS_CAP, "uploading")
        output = ctx.upload(
            out, key, "video/mp4", "video", resolution=f"{info.width}x{info.height}"
        )

    return JobResult(
        output_files=[output],
        video_info=info.to_video_info(),
        warnings=list(ctx.warnings),
    )
