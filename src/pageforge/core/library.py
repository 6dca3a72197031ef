"""Cache-first retrieval of stored page images."""

from __future__ import annotations

import asyncio
import logging

from pageforge.core.cache import ArtifactCache
from pageforge.core.persistence import ObjectStorage, ProjectRecordsDB

logger = logging.getLogger(__name__)


class ArtifactLibrary:
    """Looks images up in the cache, then falls back to object storage.

    A storage hit is written back to the cache so the next lookup is local.
    """

    def __init__(self, cache: ArtifactCache, storage: ObjectStorage, records: ProjectRecordsDB):
        self.cache = cache
        self.storage = storage
        self.records = records

    async def fetch(self, artifact_id: str) -> tuple[bytes, str] | None:
        """Return ``(data, mime_type)`` for ``artifact_id``, or ``None`` if unknown."""
        handle = await self.cache.get(artifact_id)
        if handle is not None:
            with handle:
                return handle.read(), handle.mime_type

        record = await asyncio.to_thread(self.records.find_image, artifact_id)
        if record is None:
            return None

        data = await self.storage.download(record.storage_path)
        if data is None:
            logger.warning(f"Image {artifact_id} is recorded but missing from storage")
            return None

        await self.cache.put(artifact_id, data, record.storage_path, record.mime_type)
        return data, record.mime_type

    async def get_image(self, artifact_id: str) -> bytes | None:
        """Return the image bytes for ``artifact_id``, or ``None`` if unknown."""
        found = await self.fetch(artifact_id)
        return found[0] if found else None

    async def preload(self, artifact_id: str) -> bool:
        """Warm the cache for ``artifact_id``.

        Returns:
            True if the image is cached afterwards
        """
        if await self.cache.has(artifact_id):
            return True
        return await self.fetch(artifact_id) is not None
