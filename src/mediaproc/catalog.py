"""Video catalog: the subset of the video record the processing pipeline reads and writes.

The catalog is owned by the surrounding platform. The pipeline only:
- moves a video uploading -> processing when jobs are created
- moves it processing -> ready/failed during reconciliation
- appends renditions, sets thumbnails and the coarse progress rollup

``blocked`` and ``deleted`` are set by moderation/owners and are never
overridden; status writes are conditional on the current status.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field

from .db import ThreadLocalDatabase, immediate_transaction, retry_on_lock
from .errors import VideoNotFound

logger = logging.getLogger(__name__)


class VideoStatus(str, Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"
    BLOCKED = "blocked"
    DELETED = "deleted"


class Rendition(BaseModel):
    """One playable output of a transcode job."""

    label: str
    bitrate: int = Field(ge=0, description="Video bitrate in kbps")
    size: int = Field(ge=0, description="Bytes")
    url: str
    format: str = "mp4"


class ProcessingRollup(BaseModel):
    """Coarse per-video progress shown to the owner."""

    percent: int = Field(default=0, ge=0, le=100)
    current_step: str = "waiting"
    message: str = ""
    updated_at: Optional[datetime] = None


class Video(BaseModel):
    id: str
    user_id: Optional[str] = None
    title: Optional[str] = None
    status: VideoStatus = VideoStatus.UPLOADING
    source: Optional[str] = None
    renditions: List[Rendition] = Field(default_factory=list)
    thumbnail: Optional[str] = None
    thumbnails: List[str] = Field(default_factory=list)
    processing_progress: ProcessingRollup = Field(default_factory=ProcessingRollup)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None


class VideoCatalog(ABC):
    """Abstract video catalog interface."""

    @abstractmethod
    def create_video(
        self,
        video_id: str,
        user_id: Optional[str] = None,
        title: Optional[str] = None,
        source: Optional[str] = None,
        status: VideoStatus = VideoStatus.UPLOADING,
    ) -> Video:
        """Register a video (upload collaborator and tests)."""

    @abstractmethod
    def get_video(self, video_id: str) -> Video:
        """Fetch a video.

        Raises:
            VideoNotFound: If no entry exists
        """

    @abstractmethod
    def append_rendition(self, video_id: str, rendition: Rendition) -> None:
        """Add a rendition, replacing an existing entry with the same label in place."""

    @abstractmethod
    def set_thumbnails(self, video_id: str, primary: str, all_urls: List[str]) -> None:
        """Set the primary thumbnail and the full thumbnail list."""

    @abstractmethod
    def set_status(
        self,
        video_id: str,
        status: VideoStatus,
        expected: Iterable[VideoStatus],
    ) -> bool:
        """Conditionally move the video to ``status``.

        Returns:
            True if the current status was in ``expected`` and the write happened
        """

    @abstractmethod
    def set_progress_rollup(
        self,
        video_id: str,
        percent: int,
        current_step: str,
        message: str = "",
    ) -> None:
        """Overwrite the coarse progress rollup."""

    def release_thread(self) -> None:
        """Drop resources held for the calling thread before it exits."""


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS videos (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    title TEXT,
    status TEXT NOT NULL,
    source TEXT,
    renditions TEXT NOT NULL DEFAULT '[]',
    thumbnail TEXT,
    thumbnails TEXT NOT NULL DEFAULT '[]',
    processing_progress TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_videos_status ON videos(status);
"""


class SQLiteVideoCatalog(VideoCatalog):
    """Catalog stored in the pipeline's SQLite database."""

    def __init__(self, db_path: str, lock_retries: int = 3):
        self.conn = ThreadLocalDatabase(db_path)
        self.lock_retries = lock_retries
        self.conn.executescript(SCHEMA_SQL)

    @property
    def db(self):
        return self.conn.db

    def close(self) -> None:
        self.conn.close()

    def release_thread(self) -> None:
        self.conn.release()

    def create_video(self, video_id, user_id=None, title=None, source=None,
                     status=VideoStatus.UPLOADING) -> Video:
        video = Video(id=video_id, user_id=user_id, title=title, source=source, status=status)
        self.db["videos"].insert(self._to_row(video), pk="id", replace=True)
        return video

    def get_video(self, video_id: str) -> Video:
        rows = list(self.db["videos"].rows_where("id = ?", [video_id]))
        if not rows:
            raise VideoNotFound(f"Video not found: {video_id}")
        return self._from_row(rows[0])

    def append_rendition(self, video_id: str, rendition: Rendition) -> None:
        def _append():
            with immediate_transaction(self.db) as conn:
                row = conn.execute(
                    "SELECT renditions FROM videos WHERE id = ?", (video_id,)
                ).fetchone()
                if row is None:
                    raise VideoNotFound(f"Video not found: {video_id}")

                renditions = json.loads(row[0] or "[]")
                entry = rendition.model_dump()
                for i, existing in enumerate(renditions):
                    if existing.get("label") == rendition.label:
                        renditions[i] = entry
                        break
                else:
                    renditions.append(entry)

                conn.execute(
                    "UPDATE videos SET renditions = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(renditions), datetime.now().isoformat(), video_id),
                )

        retry_on_lock(_append, self.lock_retries)

    def set_thumbnails(self, video_id: str, primary: str, all_urls: List[str]) -> None:
        with self.db.conn:
            cursor = self.db.conn.execute(
                "UPDATE videos SET thumbnail = ?, thumbnails = ?, updated_at = ? WHERE id = ?",
                (primary, json.dumps(list(all_urls)), datetime.now().isoformat(), video_id),
            )
        if cursor.rowcount == 0:
            raise VideoNotFound(f"Video not found: {video_id}")

    def set_status(self, video_id: str, status: VideoStatus, expected: Iterable[VideoStatus]) -> bool:
        expected_values = [VideoStatus(s).value for s in expected]
        if not expected_values:
            return False
        placeholders = ", ".join("?" for _ in expected_values)

        with self.db.conn:
            cursor = self.db.conn.execute(
                f"UPDATE videos SET status = ?, updated_at = ? "
                f"WHERE id = ? AND status IN ({placeholders})",
                (VideoStatus(status).value, datetime.now().isoformat(), video_id, *expected_values),
            )

        changed = cursor.rowcount > 0
        if changed:
            logger.info("Video %s -> %s", video_id, VideoStatus(status).value)
        else:
            logger.debug(
                "Video %s status not changed to %s (expected one of %s)",
                video_id, VideoStatus(status).value, expected_values,
            )
        return changed

    def set_progress_rollup(self, video_id: str, percent: int, current_step: str, message: str = "") -> None:
        rollup = ProcessingRollup(
            percent=percent,
            current_step=current_step,
            message=message,
            updated_at=datetime.now(),
        )
        with self.db.conn:
            self.db.conn.execute(
                "UPDATE videos SET processing_progress = ?, updated_at = ? WHERE id = ?",
                (rollup.model_dump_json(), datetime.now().isoformat(), video_id),
            )

    @staticmethod
    def _to_row(video: Video) -> dict:
        return {
            "id": video.id,
            "user_id": video.user_id,
            "title": video.title,
            "status": video.status.value,
            "source": video.source,
            "renditions": json.dumps([r.model_dump() for r in video.renditions]),
            "thumbnail": video.thumbnail,
            "thumbnails": json.dumps(video.thumbnails),
            "processing_progress": video.processing_progress.model_dump_json(),
            "created_at": video.created_at.isoformat(),
            "updated_at": video.updated_at.isoformat() if video.updated_at else None,
        }

    @staticmethod
    def _from_row(row: dict) -> Video:
        progress = row.get("processing_progress")
        return Video(
            id=row["id"],
            user_id=row.get("user_id"),
            title=row.get("title"),
            status=VideoStatus(row["status"]),
            source=row.get("source"),
            renditions=[Rendition(**r) for r in json.loads(row.get("renditions") or "[]")],
            thumbnail=row.get("thumbnail"),
            thumbnails=json.loads(row.get("thumbnails") or "[]"),
            processing_progress=(
                ProcessingRollup.model_validate_json(progress) if progress else ProcessingRollup()
            ),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]) if row.get("updated_at") else None,
        )
