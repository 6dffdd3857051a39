"""Supervised ffmpeg invocations for the media handlers.

Every encode (rendition, frame grab, audio track, clip, overlay, recompress)
runs as a child process watched by a monitor thread. The runner:

- kills the whole process tree when the job is cancelled or the worker stops
- enforces an overall deadline and a stalled-output deadline
- turns ``time=`` lines on stderr into a 0..1 fraction for job progress
- sorts failures into permanent and transient ones for the retry policy
- keeps the stderr tail and a replayable command script when an encode fails
"""

import logging
import os
import re
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import imageio_ffmpeg
import psutil

logger = logging.getLogger(__name__)

# Seconds between process polls in the supervision loop
POLL_INTERVAL_S = 0.2

VIDEO_CODECS = {
    "mp4": ("libx264", "aac"),
    "mkv": ("libx264", "aac"),
    "webm": ("libvpx-vp9", "libopus"),
}

OVERLAY_POSITIONS = {
    "top-left": "10:10",
    "top-right": "main_w-overlay_w-10:10",
    "bottom-left": "10:main_h-overlay_h-10",
    "bottom-right": "main_w-overlay_w-10:main_h-overlay_h-10",
    "center": "(main_w-overlay_w)/2:(main_h-overlay_h)/2",
}


class FfmpegErrorType(Enum):
    """FFmpeg error classification for retry logic."""
    PERMANENT = "permanent"     # File not found, invalid format, codec error
    TRANSIENT = "transient"     # Disk I/O stall, resource exhaustion
    TIMEOUT = "timeout"         # Process timeout (global or no-progress)
    PROCESS_KILLED = "killed"   # Cancel token fired, process tree terminated


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0      # Current position in seconds
    total_duration_s: float = 0.0    # Total duration (if known)
    fps: float = 0.0                 # Current FPS
    bitrate_kbps: float = 0.0        # Current bitrate
    speed: float = 0.0               # Processing speed multiplier (e.g., 2.5x)
    frame: int = 0                   # Current frame number
    total_size: int = 0              # Bytes written so far
    last_update: float = 0.0         # Timestamp of last update

    @property
    def fraction(self) -> float:
        """Completed share of the expected duration, clamped to [0, 1]."""
        if self.total_duration_s <= 0:
            return 0.0
        return max(0.0, min(1.0, self.current_time_s / self.total_duration_s))

    @property
    def eta_s(self) -> Optional[float]:
        """Estimated seconds remaining, if speed is known."""
        if self.speed <= 0 or self.total_duration_s <= 0:
            return None
        remaining = max(0.0, self.total_duration_s - self.current_time_s)
        return remaining / self.speed


@dataclass
class FfmpegResult:
    """Result of FFmpeg execution."""
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    final_progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)


def get_ffmpeg_exe() -> str:
    """Get FFmpeg executable path."""
    return imageio_ffmpeg.get_ffmpeg_exe()


def get_ffprobe_exe() -> str:
    """ffprobe lives next to the ffmpeg binary."""
    return get_ffmpeg_exe().replace("ffmpeg", "ffprobe")


def ffmpeg_version() -> Optional[str]:
    """Return the first line of ``ffmpeg -version``, or None when unavailable."""
    try:
        out = subprocess.run(
            [get_ffmpeg_exe(), "-version"],
            capture_output=True,
            text=True,
            timeout=10,
            check=True,
        )
    except (OSError, RuntimeError, subprocess.SubprocessError) as e:
        logger.debug("ffmpeg not available: %s", e)
        return None
    lines = out.stdout.splitlines()
    return lines[0] if lines else None


def classify_ffmpeg_error(stderr: str) -> FfmpegErrorType:
    """Classify FFmpeg error for retry logic.

    Args:
        stderr: FFmpeg stderr output

    Returns:
        FfmpegErrorType for retry decision
    """
    stderr_lower = stderr.lower()

    # Permanent errors (no retry)
    permanent_patterns = [
        "no such file or directory",
        "invalid data found",
        "invalid argument",
        "permission denied",
        "unsupported codec",
        "invalid codec",
        "moov atom not found",
        "does not contain any stream",
        "could not find codec parameters",
        "end of file",
        "corrupt",
    ]

    for pattern in permanent_patterns:
        if pattern in stderr_lower:
            return FfmpegErrorType.PERMANENT

    # Transient errors (retry)
    transient_patterns = [
        "i/o error",
        "connection refused",
        "connection timeout",
        "resource temporarily unavailable",
        "no space left on device",
        "disk full",
    ]

    for pattern in transient_patterns:
        if pattern in stderr_lower:
            return FfmpegErrorType.TRANSIENT

    # Default: treat as transient (retry)
    return FfmpegErrorType.TRANSIENT


class FfmpegRunner:
    """Runs one ffmpeg encode under timeout, cancel and process-tree supervision.

    One runner supervises one process at a time; create a runner per operation
    when encoding from several threads.

    Example:
        >>> from mediaproc.ffmpeg_runner import FfmpegRunner, FfmpegProgress
        >>>
        >>> def progress_cb(progress: FfmpegProgress):
        ...     print(f"Progress: {progress.fraction:.0%} @ {progress.fps}fps")
        >>>
        >>> runner = FfmpegRunner(
        ...     global_timeout_s=1800,
        ...     no_progress_timeout_s=120,
        ...     progress_callback=progress_cb
        ... )
        >>>
        >>> result = runner.transcode(
        ...     source_path="input.mp4",
        ...     output_path="output_720p.mp4",
        ...     width=1280,
        ...     height=720,
        ...     video_bitrate_kbps=2500,
        ...     expected_duration=30.0,
        ... )
        >>>
        >>> if not result.success:
        ...     print(f"Error: {result.error_type}")
        ...     print(f"Artifacts: {result.artifacts_saved}")
    """

    def __init__(
        self,
        global_timeout_s: int = 3600,
        no_progress_timeout_s: int = 120,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = True,
        ffmpeg_loglevel: str = "info",
        temp_dir: Optional[str] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
        cancel_token=None,
        progress_interval_s: float = 0.5,
    ):
        """Initialize FFmpeg runner.

        Args:
            global_timeout_s: Maximum duration for any FFmpeg operation
            no_progress_timeout_s: Timeout if no progress update in N seconds
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Save logs and commands on failure
            ffmpeg_loglevel: FFmpeg log level (error, warning, info, verbose)
            temp_dir: Directory for failure artifacts (None = TMPDIR or /tmp)
            progress_callback: Optional callback for progress updates
            cancel_token: Object with ``is_set()``; when it fires the process
                tree is killed and the result reports PROCESS_KILLED
            progress_interval_s: Minimum seconds between progress callbacks
        """
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.temp_dir = temp_dir
        self.progress_callback = progress_callback
        self.cancel_token = cancel_token
        self.progress_interval_s = progress_interval_s

        self._process: Optional[subprocess.Popen] = None
        self._progress = FfmpegProgress()
        self._stderr_lines: List[str] = []
        self._monitor_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def transcode(
        self,
        source_path: str,
        output_path: str,
        width: int,
        height: int,
        video_bitrate_kbps: int,
        audio_bitrate_kbps: int = 128,
        fps: int = 30,
        container: str = "mp4",
        preset: str = "medium",
        crf: int = 23,
        expected_duration: Optional[float] = None,
    ) -> FfmpegResult:
        """Encode a rendition scaled to an exact output size.

        Args:
            source_path: Input video file
            output_path: Output file path
            width: Output width (even)
            height: Output height (even)
            video_bitrate_kbps: Target video bitrate
            audio_bitrate_kbps: Target audio bitrate
            fps: Output frame rate (CFR)
            container: mp4, mkv or webm
            preset: x264 encoding preset
            crf: Constant Rate Factor (0-51, lower = better quality)
            expected_duration: Source duration for progress calculation

        Returns:
            FfmpegResult with success status and metadata
        """
        video_codec, audio_codec = VIDEO_CODECS.get(container, VIDEO_CODECS["mp4"])

        cmd = [
            get_ffmpeg_exe(),
            "-y",
            "-i", source_path,
            "-c:v", video_codec,
            "-b:v", f"{video_bitrate_kbps}k",
            "-vf", f"scale={width}:{height}",
            "-r", str(fps),
            "-c:a", audio_codec,
            "-b:a", f"{audio_bitrate_kbps}k",
        ]

        if video_codec == "libx264":
            cmd.extend([
                "-preset", preset,
                "-crf", str(crf),
                "-pix_fmt", "yuv420p",
            ])
            if container == "mp4":
                cmd.extend(["-movflags", "+faststart"])

        cmd.extend(self._progress_args())
        cmd.append(output_path)

        return self._run_ffmpeg(cmd, expected_duration=expected_duration)

    def compress(
        self,
        source_path: str,
        output_path: str,
        crf: int = 28,
        preset: str = "slower",
        expected_duration: Optional[float] = None,
    ) -> FfmpegResult:
        """Re-encode at source resolution with a storage-oriented preset."""
        cmd = [
            get_ffmpeg_exe(),
            "-y",
            "-i", source_path,
            "-c:v", "libx264",
            "-preset", preset,
            "-crf", str(crf),
            "-pix_fmt", "yuv420p",
            "-c:a", "aac",
            "-b:a", "128k",
            "-movflags", "+faststart",
        ]
        cmd.extend(self._progress_args())
        cmd.append(output_path)

        return self._run_ffmpeg(cmd, expected_duration=expected_duration)

    def extract_frame(
        self,
        source_path: str,
        timestamp: float,
        output_path: str,
        width: int,
        height: int,
    ) -> FfmpegResult:
        """Extract a single JPEG frame at ``timestamp`` scaled to ``width``x``height``.

        Uses fast seek before input (-ss before -i).
        """
        cmd = [
            get_ffmpeg_exe(),
            "-y",
            "-ss", f"{timestamp:.3f}",
            "-i", source_path,
            "-frames:v", "1",
            "-vf", f"scale={width}:{height}",
            "-q:v", "2",
            "-loglevel", self.ffmpeg_loglevel,
            output_path,
        ]

        return self._run_ffmpeg(cmd)

    def extract_audio(
        self,
        source_path: str,
        output_path: str,
        codec: str = "mp3",
        bitrate_kbps: int = 192,
        expected_duration: Optional[float] = None,
    ) -> FfmpegResult:
        """Strip the video stream and encode audio only."""
        encoder = "libmp3lame" if codec == "mp3" else "aac"

        cmd = [
            get_ffmpeg_exe(),
            "-y",
            "-i", source_path,
            "-vn",
            "-c:a", encoder,
            "-b:a", f"{bitrate_kbps}k",
        ]
        cmd.extend(self._progress_args())
        cmd.append(output_path)

        return self._run_ffmpeg(cmd, expected_duration=expected_duration)

    def clip(
        self,
        source_path: str,
        output_path: str,
        start: float,
        duration: float,
        width: int,
    ) -> FfmpegResult:
        """Cut a short muted clip scaled to ``width`` (height follows aspect, even)."""
        cmd = [
            get_ffmpeg_exe(),
            "-y",
            "-ss", f"{start:.3f}",
            "-i", source_path,
            "-t", f"{duration:.3f}",
            "-an",
            "-vf", f"scale={width}:-2",
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-pix_fmt", "yuv420p",
            "-movflags", "+faststart",
        ]
        cmd.extend(self._progress_args())
        cmd.append(output_path)

        return self._run_ffmpeg(cmd, expected_duration=duration)

    def overlay(
        self,
        source_path: str,
        image_path: str,
        output_path: str,
        position: str = "bottom-right",
        opacity: float = 0.8,
        expected_duration: Optional[float] = None,
    ) -> FfmpegResult:
        """Burn an image overlay into a full re-encode."""
        xy = OVERLAY_POSITIONS.get(position, OVERLAY_POSITIONS["bottom-right"])
        filter_graph = (
            f"[1:v]format=rgba,colorchannelmixer=aa={opacity:.2f}[wm];"
            f"[0:v][wm]overlay={xy}"
        )

        cmd = [
            get_ffmpeg_exe(),
            "-y",
            "-i", source_path,
            "-i", image_path,
            "-filter_complex", filter_graph,
            "-c:v", "libx264",
            "-preset", "medium",
            "-crf", "23",
            "-pix_fmt", "yuv420p",
            "-c:a", "copy",
            "-movflags", "+faststart",
        ]
        cmd.extend(self._progress_args())
        cmd.append(output_path)

        return self._run_ffmpeg(cmd, expected_duration=expected_duration)

    # ------------------------------------------------------------------
    # Process supervision
    # ------------------------------------------------------------------

    def _progress_args(self) -> List[str]:
        return ["-progress", "pipe:2", "-loglevel", self.ffmpeg_loglevel]

    def _run_ffmpeg(
        self,
        cmd: List[str],
        expected_duration: Optional[float] = None
    ) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement, cancellation and progress monitoring.

        Args:
            cmd: FFmpeg command as list
            expected_duration: Expected output duration for progress calculation

        Returns:
            FfmpegResult with execution details
        """
        start_time = time.time()
        self._progress = FfmpegProgress(
            total_duration_s=expected_duration or 0.0,
            last_update=start_time,
        )
        self._stderr_lines = []

        logger.debug("Running: %s", " ".join(cmd))

        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1  # Line buffered for real-time progress
            )

            self._monitor_thread = threading.Thread(
                target=self._monitor_progress,
                args=(self._process.stderr,),
                daemon=True
            )
            self._monitor_thread.start()

            error_type = None
            while True:
                returncode = self._process.poll()
                if returncode is not None:
                    break

                now = time.time()
                if self.cancel_token is not None and self.cancel_token.is_set():
                    error_type = FfmpegErrorType.PROCESS_KILLED
                elif now - start_time > self.global_timeout_s:
                    logger.warning("FFmpeg exceeded global timeout (%ss)", self.global_timeout_s)
                    error_type = FfmpegErrorType.TIMEOUT
                elif now - self._progress.last_update > self.no_progress_timeout_s:
                    logger.warning(
                        "FFmpeg made no progress for %ss", self.no_progress_timeout_s
                    )
                    error_type = FfmpegErrorType.TIMEOUT

                if error_type is not None:
                    self._kill_process_tree()
                    returncode = -1
                    break

                time.sleep(POLL_INTERVAL_S)

            # Wait for monitor thread to drain stderr
            if self._monitor_thread:
                self._monitor_thread.join(timeout=2)

            stderr = "".join(self._stderr_lines)
            duration = time.time() - start_time

            if error_type is None and returncode != 0:
                error_type = classify_ffmpeg_error(stderr)

            # Save artifacts on failure (a cancel is not a failure)
            artifacts = []
            if (
                returncode != 0
                and error_type != FfmpegErrorType.PROCESS_KILLED
                and self.save_artifacts_on_failure
            ):
                artifacts = self._save_failure_artifacts(cmd, stderr)

            return FfmpegResult(
                success=(returncode == 0),
                returncode=returncode,
                stderr=stderr,
                duration_s=duration,
                error_type=error_type,
                final_progress=self._progress,
                artifacts_saved=artifacts
            )

        except BaseException:
            # Unexpected error - ensure cleanup
            self._kill_process_tree()
            raise

        finally:
            self._process = None

    def _monitor_progress(self, stderr_stream) -> None:
        """Monitor FFmpeg stderr for progress updates.

        Parses FFmpeg progress output and invokes callback.
        Updates self._progress for timeout detection.

        FFmpeg progress format:
            frame=  123
            fps=25.00
            bitrate=1234.5kbits/s
            total_size=1048576
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue
        """
        last_callback = 0.0

        try:
            for line in stderr_stream:
                self._stderr_lines.append(line)

                if "out_time=" in line:
                    match = re.search(r'out_time=(\d+):(\d+):(\d+(?:\.\d+)?)', line)
                    if match:
                        h, m, s = match.groups()
                        self._progress.current_time_s = int(h) * 3600 + int(m) * 60 + float(s)
                        self._progress.last_update = time.time()

                if "frame=" in line:
                    match = re.search(r'frame=\s*(\d+)', line)
                    if match:
                        self._progress.frame = int(match.group(1))
                        self._progress.last_update = time.time()

                if "fps=" in line:
                    match = re.search(r'fps=\s*([\d.]+)', line)
                    if match:
                        self._progress.fps = float(match.group(1))

                if "bitrate=" in line:
                    match = re.search(r'bitrate=\s*([\d.]+)kbits/s', line)
                    if match:
                        self._progress.bitrate_kbps = float(match.group(1))

                if "total_size=" in line:
                    match = re.search(r'total_size=\s*(\d+)', line)
                    if match:
                        self._progress.total_size = int(match.group(1))

                if "speed=" in line:
                    match = re.search(r'speed=\s*([\d.]+)x', line)
                    if match:
                        self._progress.speed = float(match.group(1))

                now = time.time()
                if self.progress_callback and now - last_callback >= self.progress_interval_s:
                    last_callback = now
                    try:
                        self.progress_callback(self._progress)
                    except Exception as e:
                        # Don't crash monitor thread on callback errors
                        logger.warning("Progress callback error: %s", e)
        except (OSError, ValueError) as e:
            # Stream closed underneath us after a kill
            logger.debug("Progress monitoring stopped: %s", e)

    def _kill_process_tree(self) -> None:
        """Kill FFmpeg process and all children.

        Kill sequence:
        1. Send SIGTERM to the process and its children
        2. Wait grace period (default 5s)
        3. Send SIGKILL to survivors
        """
        if not self._process:
            return

        try:
            parent = psutil.Process(self._process.pid)
        except psutil.NoSuchProcess:
            return

        children = parent.children(recursive=True)

        for proc in children + [parent]:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        gone, alive = psutil.wait_procs(
            [parent] + children,
            timeout=self.kill_grace_period_s
        )

        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            self._process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.error("FFmpeg process %s did not exit after SIGKILL", self._process.pid)

    def _save_failure_artifacts(self, cmd: List[str], stderr: str) -> List[Path]:
        """Save debugging artifacts on FFmpeg failure.

        Creates:
        - ffmpeg_error_{timestamp}.log: Command + stderr
        - ffmpeg_cmd_{timestamp}.sh: Reproducible command script

        Returns:
            List of saved artifact paths
        """
        artifacts = []
        temp_dir = self._get_temp_dir()
        stamp = f"{int(time.time())}_{os.getpid()}_{threading.get_ident()}"

        log_path = temp_dir / f"ffmpeg_error_{stamp}.log"
        try:
            with open(log_path, "w") as f:
                f.write("=" * 80 + "\n")
                f.write("FFmpeg Error Log\n")
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write(f"PID: {os.getpid()}\n")
                f.write("=" * 80 + "\n\n")

                f.write("COMMAND:\n")
                f.write(" ".join(cmd) + "\n\n")

                f.write("STDERR:\n")
                f.write(stderr or "(empty)\n")

            artifacts.append(log_path)
        except OSError as e:
            logger.warning("Failed to save error log: %s", e)

        script_path = temp_dir / f"ffmpeg_cmd_{stamp}.sh"
        try:
            with open(script_path, "w") as f:
                f.write("#!/bin/bash\n")
                f.write("# Reproducible FFmpeg command\n")
                f.write("# Generated: " + time.ctime() + "\n\n")

                escaped_cmd = []
                for arg in cmd:
                    if ' ' in arg or any(c in arg for c in ['$', '`', '"', '\\', ';', '[']):
                        escaped_cmd.append(f"'{arg}'")
                    else:
                        escaped_cmd.append(arg)

                f.write(" \\\n  ".join(escaped_cmd) + "\n")

            script_path.chmod(0o755)
            artifacts.append(script_path)
        except OSError as e:
            logger.warning("Failed to save command script: %s", e)

        if artifacts:
            logger.info("FFmpeg failure artifacts saved: %s", [str(p) for p in artifacts])
        return artifacts

    def _get_temp_dir(self) -> Path:
        """Get directory for failure artifacts."""
        if self.temp_dir:
            temp_dir = Path(self.temp_dir)
        elif 'TMPDIR' in os.environ:
            temp_dir = Path(os.environ['TMPDIR'])
        else:
            temp_dir = Path("/tmp")

        temp_dir.mkdir(parents=True, exist_ok=True)
        return temp_dir
