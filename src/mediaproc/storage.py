"""Artifact store contract and local filesystem backend.

Keys are deterministic per job output (``processed/{video_id}_720p.mp4``), so a
redelivered job overwrites its own earlier upload instead of creating a new one.
"""

import logging
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath

from .errors import ArtifactStoreError

logger = logging.getLogger(__name__)


class ArtifactStore(ABC):
    """Abstract base class for artifact storage backends."""

    @abstractmethod
    def store(self, data: bytes, key: str, content_type: str = "application/octet-stream") -> str:
        """Persist ``data`` under ``key`` and return its public URL.

        Raises:
            ArtifactStoreError: On any backend failure (transient)
        """

    def store_file(self, path: str, key: str, content_type: str = "application/octet-stream") -> str:
        """Upload a local file. Backends may override to stream instead of buffering."""
        with open(path, "rb") as f:
            return self.store(f.read(), key, content_type)

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``. Best-effort: never raises."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if an artifact exists."""

    @abstractmethod
    def url_for(self, key: str) -> str:
        """Public URL for ``key``."""


def validate_key(key: str) -> str:
    """Reject keys that would escape the store root."""
    pure = PurePosixPath(key)
    if not key or pure.is_absolute() or ".." in pure.parts:
        raise ValueError(f"Invalid artifact key: {key!r}")
    return str(pure)


class LocalArtifactStore(ArtifactStore):
    """Local filesystem storage backend.

    Writes go to a sibling temp file first and are moved into place, so a
    reader never observes a half-written artifact.
    """

    def __init__(self, root: str, base_url: str = "/media"):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")

    def path_for(self, key: str) -> Path:
        return self.root / validate_key(key)

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{validate_key(key)}"

    def store(self, data: bytes, key: str, content_type: str = "application/octet-stream") -> str:
        dest = self.path_for(key)
        tmp = dest.with_name(f".{dest.name}.{os.getpid()}.part")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as f:
                f.write(data)
            os.replace(tmp, dest)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise ArtifactStoreError(f"Failed to store {key}: {e}") from e

        logger.debug("Stored %s (%d bytes, %s)", key, len(data), content_type)
        return self.url_for(key)

    def store_file(self, path: str, key: str, content_type: str = "application/octet-stream") -> str:
        dest = self.path_for(key)
        tmp = dest.with_name(f".{dest.name}.{os.getpid()}.part")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(path, tmp)
            os.replace(tmp, dest)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise ArtifactStoreError(f"Failed to store {key}: {e}") from e

        logger.debug("Stored %s from %s (%s)", key, path, content_type)
        return self.url_for(key)

    def delete(self, key: str) -> None:
        try:
            self.path_for(key).unlink(missing_ok=True)
        except (OSError, ValueError) as e:
            logger.warning("Failed to delete artifact %s: %s", key, e)

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists()
