"""Transcode handler: one rendition per job, fitted inside the preset's box."""

import logging
from typing import Tuple

from ..catalog import Rendition
from ..codec import TranscodeSpec
from ..errors import InvalidSource, UnsupportedResolution
from ..queue.models import JobResult
from .base import ENCODE_PROGRESS_CAP, HandlerContext

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mkv": "video/x-matroska",
}

# x264 parameters shared by every rendition
X264_PRESET = "medium"
X264_CRF = 23


def _even(value: int) -> int:
    """Round down to an even number (yuv420p needs even dimensions), minimum 2."""
    return max(2, value - value % 2)


def compute_output_dimensions(
    source_width: int,
    source_height: int,
    box_width: int,
    box_height: int,
) -> Tuple[int, int]:
    """Fit the source inside ``box_width``x``box_height`` keeping its aspect ratio.

    The limiting side takes the box dimension, the other side is scaled and
    rounded; both are then rounded down to even.

    Example:
        >>> compute_output_dimensions(1920, 1080, 1280, 720)
        (1280, 720)
        >>> compute_output_dimensions(1080, 1920, 1280, 720)
        (404, 720)
    """
    if source_width <= 0 or source_height <= 0:
        raise InvalidSource(f"Source has no usable dimensions ({source_width}x{source_height})")

    aspect = source_width / source_height
    box_aspect = box_width / box_height

    if aspect > box_aspect:
        width = box_width
        height = round(box_width / aspect)
    else:
        height = box_height
        width = round(box_height * aspect)

    return _even(width), _even(height)


def handle(ctx: HandlerContext) -> JobResult:
    settings = ctx.job.settings
    label = settings.resolution

    preset = ctx.config.transcode_presets.get(label)
    if preset is None:
        raise UnsupportedResolution(label)

    info = ctx.probe()
    width, height = compute_output_dimensions(info.width, info.height, preset.width, preset.height)
    if height > info.height:
        ctx.warn(f"Upscaling {info.width}x{info.height} source to {label}")

    spec = TranscodeSpec(
        width=width,
        height=height,
        video_bitrate_kbps=settings.bitrate_kbps,
        audio_bitrate_kbps=preset.audio_bitrate_kbps,
        fps=settings.fps,
        container=settings.container,
        preset=X264_PRESET,
        crf=X264_CRF,
    )
    key = f"processed/{ctx.video_id}_{label}.{settings.container}"

    logger.info(
        "Job %s: transcoding %s -> %s %dx%d @ %dk",
        ctx.job_id, ctx.job.input_file, label, width, height, settings.bitrate_kbps,
    )

    with ctx.temp_file(f"transcode_{ctx.job_id}_{label}.{settings.container}") as out:
        ctx.report(5, "transcoding", f"Encoding {label}")
        ctx.codec.transcode(
            ctx.job.input_file,
            spec,
            str(out),
            on_progress=ctx.encode_progress("transcoding", 5, ENCODE_PROGRESS_CAP),
            cancel_token=ctx.cancel_token,
            duration=info.duration,
        )

        ctx.report(ENCODE_PROGRESS_CAP, "uploading", f"Uploading {label}")
        output = ctx.upload(
            out,
            key,
            CONTENT_TYPES.get(settings.container, "application/octet-stream"),
            "video",
            resolution=f"{width}x{height}",
            bitrate=settings.bitrate_kbps,
        )

    ctx.catalog.append_rendition(
        ctx.video_id,
        Rendition(
            label=label,
            bitrate=settings.bitrate_kbps,
            size=output.size,
            url=output.url,
            format=settings.container,
        ),
    )

    return JobResult(
        output_files=[output],
        video_info=info.to_video_info(),
        warnings=list(ctx.warnings),
    )
