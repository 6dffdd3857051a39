"""Thumbnail handler: evenly spaced poster frames, first one becomes primary."""

import logging
from typing import List

from ..errors import InvalidSource
from ..queue.models import JobResult
from .base import ENCODE_PROGRESS_CAP, HandlerContext

logger = logging.getLogger(__name__)


def generate_thumbnail_timestamps(duration: float, count: int) -> List[float]:
    """``count`` points strictly inside (0, duration): i * duration / (count + 1).

    Example:
        >>> generate_thumbnail_timestamps(30.0, 3)
        [7.5, 15.0, 22.5]
    """
    if duration <= 0:
        raise ValueError(f"Cannot place thumbnails in a {duration}s video")
    if count < 1:
        raise ValueError("count must be >= 1")
    return [i * duration / (count + 1) for i in range(1, count + 1)]


def handle(ctx: HandlerContext) -> JobResult:
    settings = ctx.job.settings
    info = ctx.probe()

    if settings.timestamps:
        timestamps = list(settings.timestamps)
        late = [t for t in timestamps if t >= info.duration]
        if late:
            raise InvalidSource(
                f"Thumbnail timestamps {late} are not inside the {info.duration:.2f}s source"
            )
    else:
        timestamps = generate_thumbnail_timestamps(info.duration, settings.count)

    size = settings.dimensions
    total = len(timestamps)
    urls: List[str] = []
    outputs = []

    with ctx.temp_dir(f"thumbnails_{ctx.job_id}") as tmp:
        for i, ts in enumerate(timestamps):
            ctx.checkpoint()
            frame_path = tmp / f"thumb_{i}.jpg"
            ctx.codec.extract_frame(
                ctx.job.input_file, ts, size, str(frame_path), cancel_token=ctx.cancel_token
            )

            output = ctx.upload(
                frame_path,
                f"thumbnails/{ctx.video_id}_thumb_{i}.jpg",
                "image/jpeg",
                "image",
                resolution=settings.size,
            )
            outputs.append(output)
            urls.append(output.url)

            ctx.report(
                round((i + 1) / total * ENCODE_PROGRESS_CAP),
                "extracting_thumbnails",
                f"Thumbnail {i + 1}/{total}",
            )

    ctx.catalog.set_thumbnails(ctx.video_id, urls[0], urls)
    logger.info("Job %s: %d thumbnails for video %s", ctx.job_id, total, ctx.video_id)

    return JobResult(
        output_files=outputs,
        video_info=info.to_video_info(),
        thumbnails=urls,
        warnings=list(ctx.warnings),
    )
