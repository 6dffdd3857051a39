"""Media codec adapter: probe and encode operations behind one narrow contract.

Handlers depend on ``MediaCodec`` only. ``FfmpegCodec`` is the production
implementation; tests substitute a fake that writes placeholder files.
"""

import json
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple

from .errors import CodecError, InvalidSource
from .ffmpeg_runner import (
    FfmpegErrorType,
    FfmpegProgress,
    FfmpegResult,
    FfmpegRunner,
    classify_ffmpeg_error,
    get_ffprobe_exe,
)
from .models import FfmpegConfig
from .queue.models import VideoInfo

logger = logging.getLogger(__name__)

# Called with the completed fraction of the current encode (0.0 - 1.0)
ProgressFn = Callable[[float], None]


@dataclass
class MediaInfo:
    """Probed source metadata."""
    duration: float
    width: int
    height: int
    fps: float = 0.0
    bitrate: int = 0
    format: str = "unknown"
    video_codec: str = "unknown"
    audio_codec: Optional[str] = None

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 0.0

    @property
    def has_audio(self) -> bool:
        return self.audio_codec is not None

    def to_video_info(self) -> VideoInfo:
        return VideoInfo(
            duration=self.duration,
            width=self.width,
            height=self.height,
            fps=self.fps,
            bitrate=self.bitrate,
            format=self.format,
        )


@dataclass
class TranscodeSpec:
    """Fully resolved encode parameters for one rendition."""
    width: int
    height: int
    video_bitrate_kbps: int
    audio_bitrate_kbps: int = 128
    fps: int = 30
    container: str = "mp4"
    preset: str = "medium"
    crf: int = 23


class MediaCodec(ABC):
    """Encode/probe capability consumed by the job handlers.

    Implementations raise:
    - InvalidSource: missing, empty or unreadable input (permanent)
    - CodecError: encode failure, ``kind`` says whether a retry can help
    - JobCancelled / JobInterrupted: the cancel token fired mid-encode
    """

    @abstractmethod
    def probe(self, path: str) -> MediaInfo:
        """Read duration, dimensions and stream info from ``path``."""

    @abstractmethod
    def transcode(
        self,
        path: str,
        spec: TranscodeSpec,
        output: str,
        on_progress: Optional[ProgressFn] = None,
        cancel_token=None,
        duration: Optional[float] = None,
    ) -> None:
        """Encode ``path`` into ``output`` per ``spec``."""

    @abstractmethod
    def extract_frame(
        self,
        path: str,
        timestamp: float,
        size: Tuple[int, int],
        output: str,
        cancel_token=None,
    ) -> None:
        """Write one JPEG frame taken at ``timestamp`` seconds."""

    @abstractmethod
    def extract_audio(
        self,
        path: str,
        output: str,
        codec: str = "mp3",
        bitrate_kbps: int = 192,
        on_progress: Optional[ProgressFn] = None,
        cancel_token=None,
        duration: Optional[float] = None,
    ) -> None:
        """Write the audio track only."""

    @abstractmethod
    def compress(
        self,
        path: str,
        output: str,
        crf: int = 28,
        preset: str = "slower",
        on_progress: Optional[ProgressFn] = None,
        cancel_token=None,
        duration: Optional[float] = None,
    ) -> None:
        """Re-encode at source resolution for storage savings."""

    @abstractmethod
    def clip(
        self,
        path: str,
        output: str,
        start: float,
        duration: float,
        width: int,
        on_progress: Optional[ProgressFn] = None,
        cancel_token=None,
    ) -> None:
        """Cut a muted clip of ``duration`` seconds starting at ``start``."""

    @abstractmethod
    def overlay(
        self,
        path: str,
        image: str,
        output: str,
        position: str = "bottom-right",
        opacity: float = 0.8,
        on_progress: Optional[ProgressFn] = None,
        cancel_token=None,
        duration: Optional[float] = None,
    ) -> None:
        """Burn ``image`` over the video."""


def _fraction_to_float(rate_str: str) -> float:
    """Convert '60/1' or '30000/1001' to float."""
    try:
        num, denom = rate_str.split("/")
        return float(num) / float(denom) if float(denom) != 0 else 0.0
    except (ValueError, ZeroDivisionError):
        return 0.0


def check_source(path: str) -> None:
    """Reject sources that cannot possibly decode.

    Raises:
        InvalidSource: If the file is missing, unreadable or empty
    """
    if not os.path.exists(path):
        raise InvalidSource(f"Source file not found: {path}")
    if not os.access(path, os.R_OK):
        raise InvalidSource(f"Cannot read source file: {path}")
    if os.path.getsize(path) == 0:
        raise InvalidSource(f"Source file is empty: {path}")


def probe_media(path: str, timeout_s: int = 30) -> MediaInfo:
    """Probe a media file using ffprobe.

    Args:
        path: Path to media file
        timeout_s: ffprobe timeout

    Returns:
        MediaInfo for the first video stream.

    Raises:
        InvalidSource: Missing/empty/corrupt input or no video stream
        CodecError: ffprobe could not run (transient)
    """
    check_source(path)

    cmd = [
        get_ffprobe_exe(),
        "-v", "error",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        path,
    ]

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            check=True,
            text=True,
            timeout=timeout_s,
        )
        data = json.loads(result.stdout)
    except subprocess.CalledProcessError as e:
        stderr = e.stderr or ""
        if classify_ffmpeg_error(stderr) == FfmpegErrorType.PERMANENT:
            raise InvalidSource(f"ffprobe rejected {path}: {stderr.strip()[:300]}")
        raise CodecError(f"ffprobe failed: {stderr.strip()[:300]}", kind="transient", stderr=stderr)
    except json.JSONDecodeError as e:
        raise CodecError(f"ffprobe output parsing failed: {e}", kind="transient")
    except subprocess.TimeoutExpired:
        raise CodecError(f"ffprobe timed out after {timeout_s}s", kind="transient")
    except OSError as e:
        raise CodecError(f"ffprobe could not start: {e}", kind="transient")

    video_stream = None
    audio_stream = None
    for stream in data.get("streams", []):
        if stream.get("codec_type") == "video" and video_stream is None:
            video_stream = stream
        elif stream.get("codec_type") == "audio" and audio_stream is None:
            audio_stream = stream

    if not video_stream:
        raise InvalidSource(f"No video stream found in {path}")

    format_info = data.get("format", {})
    duration = float(format_info.get("duration") or video_stream.get("duration") or 0)
    if duration <= 0:
        raise InvalidSource(f"Source has no measurable duration: {path}")

    avg_fps = _fraction_to_float(video_stream.get("avg_frame_rate", "0/1"))
    r_fps = _fraction_to_float(video_stream.get("r_frame_rate", "0/1"))

    return MediaInfo(
        duration=duration,
        width=int(video_stream.get("width", 0)),
        height=int(video_stream.get("height", 0)),
        fps=avg_fps if avg_fps > 0 else r_fps,
        bitrate=int(format_info.get("bit_rate") or 0),
        format=format_info.get("format_name", "unknown"),
        video_codec=video_stream.get("codec_name", "unknown"),
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
    )


class FfmpegCodec(MediaCodec):
    """MediaCodec backed by the bundled ffmpeg/ffprobe binaries."""

    def __init__(self, config: Optional[FfmpegConfig] = None):
        self.config = config or FfmpegConfig()

    def probe(self, path: str) -> MediaInfo:
        return probe_media(path)

    def transcode(self, path, spec, output, on_progress=None, cancel_token=None, duration=None):
        runner = self._runner(on_progress, cancel_token)
        result = runner.transcode(
            source_path=path,
            output_path=output,
            width=spec.width,
            height=spec.height,
            video_bitrate_kbps=spec.video_bitrate_kbps,
            audio_bitrate_kbps=spec.audio_bitrate_kbps,
            fps=spec.fps,
            container=spec.container,
            preset=spec.preset,
            crf=spec.crf,
            expected_duration=duration,
        )
        self._check(result, output, cancel_token, "transcode")

    def extract_frame(self, path, timestamp, size, output, cancel_token=None):
        width, height = size
        runner = self._runner(None, cancel_token)
        result = runner.extract_frame(path, timestamp, output, width, height)
        self._check(result, output, cancel_token, f"frame extract at {timestamp:.3f}s")

    def extract_audio(self, path, output, codec="mp3", bitrate_kbps=192,
                      on_progress=None, cancel_token=None, duration=None):
        runner = self._runner(on_progress, cancel_token)
        result = runner.extract_audio(path, output, codec, bitrate_kbps, expected_duration=duration)
        self._check(result, output, cancel_token, "audio extract")

    def compress(self, path, output, crf=28, preset="slower",
                 on_progress=None, cancel_token=None, duration=None):
        runner = self._runner(on_progress, cancel_token)
        result = runner.compress(path, output, crf=crf, preset=preset, expected_duration=duration)
        self._check(result, output, cancel_token, "compress")

    def clip(self, path, output, start, duration, width, on_progress=None, cancel_token=None):
        runner = self._runner(on_progress, cancel_token)
        result = runner.clip(path, output, start=start, duration=duration, width=width)
        self._check(result, output, cancel_token, "preview clip")

    def overlay(self, path, image, output, position="bottom-right", opacity=0.8,
                on_progress=None, cancel_token=None, duration=None):
        runner = self._runner(on_progress, cancel_token)
        result = runner.overlay(
            path, image, output, position=position, opacity=opacity, expected_duration=duration
        )
        self._check(result, output, cancel_token, "watermark")

    def _runner(self, on_progress: Optional[ProgressFn], cancel_token) -> FfmpegRunner:
        callback = None
        if on_progress is not None:
            def callback(progress: FfmpegProgress):
                on_progress(progress.fraction)

        return FfmpegRunner(
            global_timeout_s=self.config.global_timeout_s,
            no_progress_timeout_s=self.config.no_progress_timeout_s,
            kill_grace_period_s=self.config.kill_grace_period_s,
            save_artifacts_on_failure=self.config.save_artifacts_on_failure,
            ffmpeg_loglevel=self.config.ffmpeg_loglevel,
            temp_dir=self.config.temp_dir,
            progress_callback=callback,
            cancel_token=cancel_token,
        )

    @staticmethod
    def _check(result: FfmpegResult, output: str, cancel_token, operation: str) -> None:
        """Translate a runner result into the codec exception contract."""
        if result.error_type == FfmpegErrorType.PROCESS_KILLED and cancel_token is not None:
            cancel_token.raise_if_set()

        if not result.success:
            tail = result.stderr.strip()[-500:] if result.stderr else "Unknown error"
            message = f"FFmpeg {operation} failed ({result.error_type.value}): {tail}"
            if result.artifacts_saved:
                message += f"\nArtifacts: {[str(p) for p in result.artifacts_saved]}"
            kind = "permanent" if result.error_type == FfmpegErrorType.PERMANENT else "transient"
            raise CodecError(message, kind=kind, stderr=result.stderr)

        out = Path(output)
        if not out.exists() or out.stat().st_size == 0:
            raise CodecError(f"FFmpeg {operation} produced no output: {output}", kind="transient")
