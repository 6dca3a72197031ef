"""Tests for pageforge.core.library: cache-first image retrieval."""

from __future__ import annotations

import pytest

from pageforge.core.library import ArtifactLibrary
from pageforge.core.models import Artifact


@pytest.fixture
def library(artifact_cache, object_storage, records_db) -> ArtifactLibrary:
    return ArtifactLibrary(artifact_cache, object_storage, records_db)


class TestArtifactLibrary:
    async def test_cache_hit(self, library, artifact_cache):
        await artifact_cache.put("a", b"cached", "generated/a")
        assert await library.get_image("a") == b"cached"

    async def test_cache_only_entry_keeps_its_mime_type(self, library, artifact_cache):
        await artifact_cache.put("a", b"jpeg-bytes", "generated/a", "image/jpeg")
        assert await library.fetch("a") == (b"jpeg-bytes", "image/jpeg")

    async def test_falls_back_to_storage_and_backfills(self, library, persistence, artifact_cache):
        await persistence.save("book", Artifact("a", b"stored", mime_type="image/jpeg"), "fox", 0)
        assert not await artifact_cache.has("a")

        assert await library.fetch("a") == (b"stored", "image/jpeg")
        handle = await artifact_cache.get("a")
        assert handle.mime_type == "image/jpeg"

    async def test_unknown_artifact(self, library):
        assert await library.get_image("nope") is None
        assert await library.fetch("nope") is None

    async def test_recorded_but_missing_file(self, library, records_db):
        records_db.record_artifact("projects/book/gone.png", "book", 0, "x", artifact_id="gone")
        assert await library.get_image("gone") is None

    async def test_preload(self, library, persistence, artifact_cache):
        await persistence.save("book", Artifact("a", b"stored"), "fox", 0)
        assert await library.preload("a")
        assert await artifact_cache.has("a")
        assert not await library.preload("missing")
