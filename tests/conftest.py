from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from mediaproc.catalog import VideoStatus
from mediaproc.codec import MediaCodec, MediaInfo
from mediaproc.models import DatabaseConfig, PipelineConfig, QueueConfig, StorageConfig, WorkerConfig
from mediaproc.service import ProcessingService
from mediaproc.storage import ArtifactStore, validate_key


class FakeCodec(MediaCodec):
    """Writes small placeholder files instead of running ffmpeg.

    ``fail(op, *errors)`` queues exceptions raised by the next calls of ``op``;
    ``hooks[op]`` is called with the cancel token before the output is written.
    """

    def __init__(self, info: Optional[MediaInfo] = None):
        self.info = info or MediaInfo(
            duration=30.0,
            width=1920,
            height=1080,
            fps=30.0,
            bitrate=5_000_000,
            format="mov,mp4,m4a,3gp,3g2,mj2",
            video_codec="h264",
            audio_codec="aac",
        )
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.hooks: Dict[str, Callable] = {}

    def fail(self, operation: str, *errors: Exception) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def calls_of(self, operation: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == operation]

    def _run(self, operation: str, output: Optional[str], cancel_token=None, payload=b"media"):
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)
        hook = self.hooks.get(operation)
        if hook is not None:
            hook(cancel_token)
        if output is not None:
            Path(output).parent.mkdir(parents=True, exist_ok=True)
            Path(output).write_bytes(payload)

    def probe(self, path):
        self.calls.append(("probe", path))
        self._run("probe", None)
        return self.info

    def transcode(self, path, spec, output, on_progress=None, cancel_token=None, duration=None):
        self.calls.append(("transcode", spec, output))
        if on_progress:
            on_progress(0.5)
            on_progress(1.0)
        self._run("transcode", output, cancel_token, f"{spec.width}x{spec.height}".encode())

    def extract_frame(self, path, timestamp, size, output, cancel_token=None):
        self.calls.append(("extract_frame", timestamp, size, output))
        self._run("extract_frame", output, cancel_token, b"\xff\xd8jpeg")

    def extract_audio(self, path, output, codec="mp3", bitrate_kbps=192,
                      on_progress=None, cancel_token=None, duration=None):
        self.calls.append(("extract_audio", codec, bitrate_kbps, output))
        self._run("extract_audio", output, cancel_token, b"audio")

    def compress(self, path, output, crf=28, preset="slower",
                 on_progress=None, cancel_token=None, duration=None):
        self.calls.append(("compress", crf, preset, output))
        self._run("compress", output, cancel_token, b"small")

    def clip(self, path, output, start, duration, width, on_progress=None, cancel_token=None):
        self.calls.append(("clip", start, duration, width, output))
        self._run("clip", output, cancel_token, b"clip")

    def overlay(self, path, image, output, position="bottom-right", opacity=0.8,
                on_progress=None, cancel_token=None, duration=None):
        self.calls.append(("overlay", image, position, opacity, output))
        self._run("overlay", output, cancel_token, b"watermarked")


class InMemoryArtifactStore(ArtifactStore):
    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.writes = 0

    def store(self, data, key, content_type="application/octet-stream"):
        key = validate_key(key)
        self.objects[key] = data
        self.content_types[key] = content_type
        self.writes += 1
        return self.url_for(key)

    def delete(self, key):
        self.objects.pop(key, None)

    def exists(self, key):
        return key in self.objects

    def url_for(self, key):
        return f"mem://{key}"


@pytest.fixture
def config(tmp_path):
    """Pipeline config rooted in tmp_path with no enqueue jitter or retry backoff."""
    return PipelineConfig(
        database=DatabaseConfig(path=str(tmp_path / "pipeline.db")),
        storage=StorageConfig(root=str(tmp_path / "artifacts")),
        queue=QueueConfig(jitter_s=0.0, backoff_base_s=0.0, poll_interval_s=0.05),
        worker=WorkerConfig(concurrency=1, work_dir=str(tmp_path / "work")),
    )


@pytest.fixture
def fake_codec():
    return FakeCodec()


@pytest.fixture
def artifacts():
    return InMemoryArtifactStore()


@pytest.fixture
def service(config, fake_codec, artifacts):
    svc = ProcessingService.from_config(config, codec=fake_codec, artifacts=artifacts)
    yield svc
    svc.close()


@pytest.fixture
def source_video(tmp_path):
    path = tmp_path / "upload.mp4"
    path.write_bytes(b"\x00" * 4096)
    return str(path)


@pytest.fixture
def video(service, source_video):
    """A freshly uploaded video registered in the catalog."""
    return service.catalog.create_video(
        "vid-1", user_id="user-1", title="Test upload", source=source_video,
        status=VideoStatus.UPLOADING,
    )
