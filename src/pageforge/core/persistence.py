"""Durable storage for generated pages.

Two collaborators sit behind the :class:`PersistenceAdapter`:

- an :class:`ObjectStorage` that holds the image bytes
  (:class:`LocalObjectStorage` writes them under a directory tree)
- a :class:`ProjectRecordsDB` that records which image belongs to which
  project page, with the prompt that produced it

:meth:`PersistenceAdapter.save` raises on any failure.  Callers that treat
persistence as best-effort (the batch scheduler) wrap it and record a
:class:`~pageforge.core.models.PersistenceOutcome` instead.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from pageforge.core.models import Artifact

logger = logging.getLogger(__name__)

_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}


def _check_segment(value: str, label: str) -> str:
    if not _SAFE_SEGMENT.match(value) or ".." in value:
        raise ValueError(f"Invalid {label}: {value!r}")
    return value


class ObjectStorage(ABC):
    """Binary object store keyed by storage path."""

    @abstractmethod
    async def upload(
        self, project_id: str, artifact_id: str, data: bytes, mime_type: str = "image/png"
    ) -> str:
        """Store ``data`` and return its storage key."""

    @abstractmethod
    async def download(self, storage_key: str) -> bytes | None:
        """Return the bytes stored under ``storage_key``, or ``None``."""


class LocalObjectStorage(ObjectStorage):
    """File-system object storage rooted at a directory.

    Objects are written to ``<root>/projects/<project_id>/<artifact_id>.<ext>``
    and the storage key is that path relative to ``root``.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, storage_key: str) -> Path:
        path = (self.root / storage_key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Storage key escapes storage root: {storage_key!r}")
        return path

    def _write(self, storage_key: str, data: bytes) -> None:
        path = self._resolve(storage_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write to a temp file first so readers never see a partial image
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)

    def _read(self, storage_key: str) -> bytes | None:
        path = self._resolve(storage_key)
        if not path.exists():
            return None
        return path.read_bytes()

    async def upload(
        self, project_id: str, artifact_id: str, data: bytes, mime_type: str = "image/png"
    ) -> str:
        _check_segment(project_id, "project id")
        _check_segment(artifact_id, "artifact id")
        extension = _EXTENSIONS.get(mime_type, "bin")
        storage_key = f"projects/{project_id}/{artifact_id}.{extension}"
        await asyncio.to_thread(self._write, storage_key, data)
        logger.debug(f"Uploaded {len(data)} bytes to {storage_key}")
        return storage_key

    async def download(self, storage_key: str) -> bytes | None:
        try:
            return await asyncio.to_thread(self._read, storage_key)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read {storage_key}: {e}")
            return None


@dataclass(frozen=True)
class ImageRecord:
    id: str
    project_id: str
    storage_path: str
    type: str
    mime_type: str
    generation_prompt: str
    page_index: int | None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""


class ProjectRecordsDB:
    """SQLite records of projects and their generated images.

    Write methods raise :class:`sqlite3.Error` so the persistence adapter can
    report the failure.  Query methods log errors and return empty results.
    """

    def __init__(self, db_path: Path):
        """Initialize the records database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()
        logger.info(f"Initialized project records database at {self.db_path}")

    def _initialize_db(self) -> None:
        """Create database schema if it doesn't exist."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
                """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS images (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    storage_path TEXT NOT NULL,
                    type TEXT NOT NULL DEFAULT 'page',
                    mime_type TEXT NOT NULL DEFAULT 'image/png',
                    generation_prompt TEXT,
                    page_index INTEGER,
                    metadata TEXT,
                    created_at TIMESTAMP NOT NULL
                )
                """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_images_project_page
                ON images(project_id, page_index)
                """)

            conn.commit()

    def record_artifact(
        self,
        storage_key: str,
        project_id: str,
        page_index: int | None,
        prompt: str,
        metadata: dict[str, Any] | None = None,
        *,
        artifact_id: str | None = None,
        mime_type: str = "image/png",
        image_type: str = "page",
    ) -> str:
        """Insert an image row and return its id."""
        image_id = artifact_id or uuid.uuid4().hex
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO images
                    (id, project_id, storage_path, type, mime_type,
                     generation_prompt, page_index, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    image_id,
                    project_id,
                    storage_key,
                    image_type,
                    mime_type,
                    prompt,
                    page_index,
                    json.dumps(metadata or {}),
                    datetime.now().isoformat(),
                ),
            )
            conn.commit()
        return image_id

    def touch_project(self, project_id: str) -> None:
        """Create the project row if needed and bump its ``updated_at``."""
        now = datetime.now().isoformat()
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO projects (id, created_at, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET updated_at = excluded.updated_at
                """,
                (project_id, now, now),
            )
            conn.commit()

    def get_project_images(self, project_id: str) -> list[ImageRecord]:
        """List a project's images ordered by page index, then age."""
        try:
            with sqlite3.connect(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    SELECT * FROM images
                    WHERE project_id = ?
                    ORDER BY page_index ASC, created_at ASC, rowid ASC
                    """,
                    (project_id,),
                )
                return [self._to_record(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            logger.error(f"Error listing images for project {project_id}: {e}")
            return []

    def find_image(self, artifact_id: str) -> ImageRecord | None:
        try:
            with sqlite3.connect(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT * FROM images WHERE id = ?", (artifact_id,))
                row = cursor.fetchone()
                return self._to_record(row) if row else None
        except sqlite3.Error as e:
            logger.error(f"Error looking up image {artifact_id}: {e}")
            return None

    def find_page(self, project_id: str, page_index: int) -> ImageRecord | None:
        """Return the most recent image recorded for a project page."""
        try:
            with sqlite3.connect(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    SELECT * FROM images
                    WHERE project_id = ? AND page_index = ?
                    ORDER BY created_at DESC, rowid DESC
                    LIMIT 1
                    """,
                    (project_id, page_index),
                )
                row = cursor.fetchone()
                return self._to_record(row) if row else None
        except sqlite3.Error as e:
            logger.error(f"Error looking up page {page_index} of project {project_id}: {e}")
            return None

    def project_exists(self, project_id: str) -> bool:
        try:
            with sqlite3.connect(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,))
                return cursor.fetchone() is not None
        except sqlite3.Error as e:
            logger.error(f"Error checking project {project_id}: {e}")
            return False

    @staticmethod
    def _to_record(row: tuple) -> ImageRecord:
        (
            image_id,
            project_id,
            storage_path,
            image_type,
            mime_type,
            prompt,
            page_index,
            metadata,
            created_at,
        ) = row
        try:
            parsed = json.loads(metadata) if metadata else {}
        except json.JSONDecodeError:
            parsed = {}
        return ImageRecord(
            id=image_id,
            project_id=project_id,
            storage_path=storage_path,
            type=image_type,
            mime_type=mime_type,
            generation_prompt=prompt or "",
            page_index=page_index,
            metadata=parsed,
            created_at=created_at,
        )


class PersistenceAdapter:
    """Writes artifacts through to object storage and the records database."""

    def __init__(self, storage: ObjectStorage, records: ProjectRecordsDB):
        self.storage = storage
        self.records = records

    async def save(
        self,
        project_id: str,
        artifact: Artifact,
        origin_prompt: str,
        page_index: int | None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Persist one artifact and return its storage key.

        Raises:
            Exception: Any storage or database failure
        """
        storage_key = await self.storage.upload(
            project_id, artifact.artifact_id, artifact.data, artifact.mime_type
        )
        record_metadata = {"size_bytes": artifact.size_bytes, **(metadata or {})}
        await asyncio.to_thread(
            self.records.record_artifact,
            storage_key,
            project_id,
            page_index,
            origin_prompt,
            record_metadata,
            artifact_id=artifact.artifact_id,
            mime_type=artifact.mime_type,
        )
        await asyncio.to_thread(self.records.touch_project, project_id)
        logger.info(f"Saved page {page_index} of project {project_id} to {storage_key}")
        return storage_key
