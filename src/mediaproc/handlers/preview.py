"""Preview handler: short muted teaser clip for hover/autoplay."""

from ..queue.models import JobResult
from .base import ENCODE_PROGRESS_CAP, HandlerContext


def preview_window(duration: float, start_fraction: float, clip_s: float):
    """Start and length of the clip, kept inside the source.

    Example:
        >>> preview_window(60.0, 0.1, 6.0)
        (6.0, 6.0)
        >>> preview_window(4.0, 0.5, 6.0)
        (0.0, 4.0)
    """
    length = min(clip_s, duration)
    start = min(duration * start_fraction, duration - length)
    return max(0.0, start), length


def handle(ctx: HandlerContext) -> JobResult:
    settings = ctx.job.settings
    info = ctx.probe()
    start, length = preview_window(info.duration, settings.start_fraction, settings.duration_s)
    key = f"previews/{ctx.video_id}_preview.mp4"

    with ctx.temp_file(f"preview_{ctx.job_id}.mp4") as out:
        ctx.report(5, "rendering_preview", f"{length:.1f}s from {start:.1f}s")
        ctx.codec.clip(
            ctx.job.input_file,
            str(out),
            start=start,
            duration=length,
            width=settings.width,
            on_progress=ctx.encode_progress("rendering_preview", 5, ENCODE_PROGRESS_CAP),
            cancel_token=ctx.cancel_token,
        )
        ctx.report(ENCODE_PROGRESS_CAP, "uploading")
        output = ctx.upload(out, key, "video/mp4", "video")

    return JobResult(
        output_files=[output],
        video_info=info.to_video_info(),
        warnings=list(ctx.warnings),
    )
