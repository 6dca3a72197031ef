"""Shared pytest fixtures for pageforge tests."""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from pageforge.core.backend import BackendResult, EnhanceResult, GenerationBackend, PromptEnhancer
from pageforge.core.cache import ArtifactCache, ArtifactStore
from pageforge.core.cancellation import GenerationCancelled
from pageforge.core.config import PageforgeConfig
from pageforge.core.orchestrator import GenerationOrchestrator, PipelineConfig
from pageforge.core.persistence import LocalObjectStorage, PersistenceAdapter, ProjectRecordsDB
from pageforge.core.quality import QualityReport
from pageforge.core.scheduler import BatchScheduler
from pageforge.core.usage import UsageTracker

# ============================================================================
# Test doubles
# ============================================================================


class FakeBackend(GenerationBackend):
    """Backend that returns ``b"image:<prompt>"`` and records every call.

    Attributes
    ----------
    calls : list[dict]
        Keyword arguments of each ``generate`` call, plus the prompt
    results : list[BackendResult]
        Scripted results consumed before falling back to success
    failing_prompts : dict[str, BackendResult]
        Prompts that always produce the given result
    cancel_on_call : int | None
        1-based call number that raises ``GenerationCancelled``
    """

    name = "fake"
    description = "Scripted test backend"

    def __init__(
        self,
        *,
        configured: bool = True,
        results: list[BackendResult] | None = None,
        failing_prompts: dict[str, BackendResult] | None = None,
        cancel_on_call: int | None = None,
        latency_s: float = 0.0,
    ):
        self.configured = configured
        self.results = list(results or [])
        self.failing_prompts = dict(failing_prompts or {})
        self.cancel_on_call = cancel_on_call
        self.latency_s = latency_s
        self.calls: list[dict] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def generate(self, prompt: str, **kwargs) -> BackendResult:
        self.calls.append({"prompt": prompt, **kwargs})
        if self.cancel_on_call is not None and len(self.calls) >= self.cancel_on_call:
            raise GenerationCancelled()

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.latency_s:
                await asyncio.sleep(self.latency_s)
        finally:
            self.in_flight -= 1

        if self.results:
            return self.results.pop(0)
        if prompt in self.failing_prompts:
            return self.failing_prompts[prompt]
        return BackendResult(success=True, data=f"image:{prompt}".encode(), prompt_used=prompt)

    async def aclose(self) -> None:
        self.closed = True


class FakeEnhancer(PromptEnhancer):
    """Enhancer that prefixes prompts, or fails/raises on request."""

    name = "fake"

    def __init__(self, *, fail: bool = False, raise_error: Exception | None = None):
        self.fail = fail
        self.raise_error = raise_error
        self.calls: list[dict] = []

    async def enhance(self, prompt: str, **kwargs) -> EnhanceResult:
        self.calls.append({"prompt": prompt, **kwargs})
        if self.raise_error is not None:
            raise self.raise_error
        if self.fail:
            return EnhanceResult(success=False, error="enhancer unavailable")
        return EnhanceResult(success=True, enhanced_prompt=f"enhanced {prompt}")


class MappingGrader:
    """Grader returning preset reports keyed by image bytes (score 100 otherwise)."""

    def __init__(self, reports: dict[bytes, QualityReport] | None = None):
        self.reports = dict(reports or {})

    def check(self, data: bytes) -> QualityReport:
        return self.reports.get(data, QualityReport(score=100.0))


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path, monkeypatch) -> PageforgeConfig:
    """Create a test configuration with temporary directories.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        PageforgeConfig instance for testing
    """
    for name in ("PAGEFORGE_BACKEND", "PAGEFORGE_GEMINI_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    return PageforgeConfig(
        _env_file=None,
        backend="placeholder",
        data_dir=temp_dir / "data",
        storage_dir=temp_dir / "storage",
        enable_enhancement=False,
        delay_between_items=0.0,
        retry_delay_s=0.0,
    )


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def make_backend() -> type[FakeBackend]:
    """Factory for scripted backends, e.g. ``make_backend(cancel_on_call=2)``."""
    return FakeBackend


@pytest.fixture
def make_enhancer() -> type[FakeEnhancer]:
    return FakeEnhancer


@pytest.fixture
def make_grader() -> type[MappingGrader]:
    """Factory for graders keyed by image bytes."""
    return MappingGrader


@pytest.fixture
def artifact_store(temp_dir: Path) -> ArtifactStore:
    return ArtifactStore(temp_dir / "cache.db")


@pytest.fixture
def artifact_cache(artifact_store: ArtifactStore) -> ArtifactCache:
    return ArtifactCache(artifact_store)


@pytest.fixture
def object_storage(temp_dir: Path) -> LocalObjectStorage:
    return LocalObjectStorage(temp_dir / "storage")


@pytest.fixture
def records_db(temp_dir: Path) -> ProjectRecordsDB:
    return ProjectRecordsDB(temp_dir / "projects.db")


@pytest.fixture
def persistence(object_storage: LocalObjectStorage, records_db: ProjectRecordsDB) -> PersistenceAdapter:
    return PersistenceAdapter(object_storage, records_db)


@pytest.fixture
def usage_tracker() -> UsageTracker:
    return UsageTracker()


@pytest.fixture
def make_scheduler(artifact_cache, persistence, usage_tracker):
    """Factory building a scheduler around a given backend and grader."""

    def _make(
        backend: GenerationBackend,
        grader: MappingGrader | None = None,
        *,
        persistence_adapter: PersistenceAdapter | None = None,
        quality_threshold: float = 85.0,
        pipeline_config: PipelineConfig | None = None,
    ) -> BatchScheduler:
        orchestrator = GenerationOrchestrator(backend, grader=grader or MappingGrader())
        return BatchScheduler(
            orchestrator,
            artifact_cache,
            persistence_adapter or persistence,
            usage_tracker,
            quality_threshold=quality_threshold,
            pipeline_config=pipeline_config or PipelineConfig(enable_enhancement=False),
        )

    return _make


@pytest.fixture
def test_client(test_config: PageforgeConfig, monkeypatch) -> Generator[TestClient, None, None]:
    """FastAPI TestClient running the app against the placeholder backend.

    The lifespan builds its runtime from the module-level ``config``, which
    is swapped for the temporary test configuration.
    """
    from pageforge.api import main as api_main

    monkeypatch.setattr(api_main, "config", test_config)
    with TestClient(api_main.app) as client:
        yield client
