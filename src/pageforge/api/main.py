"""pageforge FastAPI application.

This module is the HTTP entry point.  It defines the FastAPI ``app``
instance, the REST routes, and the ``main()`` CLI function that launches the
uvicorn server.

Architecture
------------
- **Settings** come from :data:`pageforge.core.config.config`.
- **Collaborators** (artifact cache, object storage, project records, the
  generation backend, orchestrator, batch scheduler and usage tracker) are
  built once by :func:`build_runtime` in the lifespan handler and kept on
  ``app.state.runtime``.  Nothing else is global.
- **Book runs** are awaited inside the request.  A client that supplies a
  ``job_id`` can stop the run from another request with
  ``POST /api/jobs/{job_id}/cancel``; the book request then answers 409
  with the pages finished so far.

Endpoints
---------
========  ===================================================  ==============================
Method    Path                                                 Purpose
========  ===================================================  ==============================
GET       ``/api/config``                                      Backends and vocabularies
POST      ``/api/pages/generate``                              Generate one page
POST      ``/api/books/generate``                              Generate a whole book
POST      ``/api/jobs/{job_id}/cancel``                        Cancel a running book
POST      ``/api/projects/{pid}/pages/{index}/regenerate``     Regenerate a stored page
GET       ``/api/artifacts/{id}``                              Image bytes (cache first)
POST      ``/api/artifacts/{id}/preload``                      Warm the cache
DELETE    ``/api/artifacts/{id}/cache``                        Drop one cache entry
GET       ``/api/cache``                                       Cache statistics
DELETE    ``/api/cache``                                       Clear the cache
GET       ``/api/usage``                                       Usage statistics
DELETE    ``/api/usage``                                       Reset usage statistics
GET       ``/api/cost/estimate``                               Book cost estimate
========  ===================================================  ==============================

Usage
-----
CLI (installed entry point)::

    pageforge

Direct invocation::

    python -m pageforge.api.main
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field, replace

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from pageforge import __version__
from pageforge.api.models import (
    BookGenerateRequest,
    BookResultModel,
    GenerationResultModel,
    PageGenerateRequest,
    PageResultModel,
    PersistenceModel,
    RegenerateRequest,
)
from pageforge.core.backend import GenerationBackend, backend_registry
from pageforge.core.cache import ArtifactCache, ArtifactStore
from pageforge.core.cancellation import CancellationToken, GenerationCancelled
from pageforge.core.config import PageforgeConfig, config
from pageforge.core.costs import (
    DEFAULT_EXPECTED_ATTEMPTS,
    estimate_batch_cost,
    resolution_for,
)
from pageforge.core.library import ArtifactLibrary
from pageforge.core.models import BatchItem, BatchJob, GenerationRequest, PageOutcome
from pageforge.core.orchestrator import GenerationOrchestrator, PipelineConfig
from pageforge.core.persistence import (
    LocalObjectStorage,
    PersistenceAdapter,
    ProjectRecordsDB,
)
from pageforge.core.prompts import (
    AUDIENCES,
    COMPLEXITY_ORDER,
    PAGE_SIZE_RATIOS,
    STYLES,
    aspect_ratio_for_page_size,
)
from pageforge.core.quality import GrayscaleChecker
from pageforge.core.scheduler import BatchScheduler
from pageforge.core.usage import UsageTracker

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Runtime wiring.
# ---------------------------------------------------------------------------


@dataclass
class Runtime:
    """Everything the routes need, built once per application lifetime."""

    config: PageforgeConfig
    backend: GenerationBackend
    cache: ArtifactCache
    records: ProjectRecordsDB
    persistence: PersistenceAdapter
    usage: UsageTracker
    orchestrator: GenerationOrchestrator
    scheduler: BatchScheduler
    library: ArtifactLibrary
    jobs: dict[str, CancellationToken] = field(default_factory=dict)


def build_runtime(settings: PageforgeConfig) -> Runtime:
    """Construct the collaborator graph from ``settings``.

    Raises:
        KeyError: If ``settings.backend`` is not a registered backend
    """
    backend = backend_registry.instantiate(settings.backend, settings)
    if not backend.is_configured:
        logger.warning(
            f"Backend '{backend.name}' is not configured; generation requests will fail"
        )

    cache = ArtifactCache(
        ArtifactStore(settings.cache_db_path),
        max_bytes=settings.cache_max_bytes,
        low_water_ratio=settings.cache_low_water_ratio,
    )
    storage = LocalObjectStorage(settings.storage_dir)
    records = ProjectRecordsDB(settings.records_db_path)
    persistence = PersistenceAdapter(storage, records)
    usage = UsageTracker()
    orchestrator = GenerationOrchestrator(
        backend, enhancer=backend.create_enhancer(), grader=GrayscaleChecker()
    )
    pipeline_config = PipelineConfig(
        enable_enhancement=settings.enable_enhancement,
        enable_logging=True,
        max_attempts=settings.max_attempts,
        retry_delay_s=settings.retry_delay_s,
    )
    scheduler = BatchScheduler(
        orchestrator,
        cache,
        persistence,
        usage,
        quality_threshold=settings.quality_threshold,
        pipeline_config=pipeline_config,
    )
    return Runtime(
        config=settings,
        backend=backend,
        cache=cache,
        records=records,
        persistence=persistence,
        usage=usage,
        orchestrator=orchestrator,
        scheduler=scheduler,
        library=ArtifactLibrary(cache, storage, records),
    )


# ---------------------------------------------------------------------------
# Application lifecycle.
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the runtime on startup and release the backend on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        Control back to the application for the duration of its lifetime.
    """
    # --- Startup -----------------------------------------------------------
    app.state.runtime = build_runtime(config)
    logger.info(f"pageforge {__version__} started with backend '{config.backend}'")

    yield

    # --- Shutdown ----------------------------------------------------------
    runtime: Runtime = app.state.runtime
    for token in runtime.jobs.values():
        token.cancel()
    await runtime.backend.aclose()
    logger.info("Backend closed on shutdown.")


# ---------------------------------------------------------------------------
# FastAPI application instance.
# ---------------------------------------------------------------------------
app = FastAPI(
    title="pageforge",
    description="Coloring-book page generation API with batch scheduling and caching.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _runtime() -> Runtime:
    return app.state.runtime


def _pipeline_config(runtime: Runtime, enable_enhancement: bool | None) -> PipelineConfig:
    base = runtime.scheduler.pipeline_config
    if enable_enhancement is None:
        return base
    return replace(base, enable_enhancement=enable_enhancement)


def _with_enhancement(scheduler: BatchScheduler, enable_enhancement: bool) -> BatchScheduler:
    """Return a scheduler sharing ``scheduler``'s collaborators with enhancement overridden."""
    return BatchScheduler(
        scheduler.orchestrator,
        scheduler.cache,
        scheduler.persistence,
        scheduler.usage,
        quality_threshold=scheduler.quality_threshold,
        disqualifying_tags=scheduler.disqualifying_tags,
        pipeline_config=replace(scheduler.pipeline_config, enable_enhancement=enable_enhancement),
    )


def _page_response(outcome: PageOutcome) -> dict:
    return PageResultModel(
        result=GenerationResultModel.from_result(outcome.result),
        persistence=PersistenceModel.from_outcome(outcome.persistence),
    ).model_dump()


# ---------------------------------------------------------------------------
# Configuration.
# ---------------------------------------------------------------------------


@app.get("/api/config")
async def get_config() -> dict:
    """Return the active backend and the prompt vocabularies."""
    runtime = _runtime()
    return {
        "version": __version__,
        "backend": runtime.backend.get_backend_info(),
        "available_backends": backend_registry.list_available(),
        "styles": list(STYLES),
        "complexities": list(COMPLEXITY_ORDER),
        "audiences": {
            name: {"max_complexity": audience.max_complexity}
            for name, audience in AUDIENCES.items()
        },
        "page_sizes": dict(PAGE_SIZE_RATIOS),
        "enable_enhancement": runtime.config.enable_enhancement,
        "quality_threshold": runtime.config.quality_threshold,
        "default_concurrency": runtime.config.default_concurrency,
    }


# ---------------------------------------------------------------------------
# Generation.
# ---------------------------------------------------------------------------


@app.post("/api/pages/generate")
async def generate_page(req: PageGenerateRequest) -> dict:
    """Generate one page; persisted when ``project_id`` is set, always cached.

    Generation failures are reported in the body (``result.success`` false),
    not as HTTP errors.
    """
    runtime = _runtime()
    request = GenerationRequest(
        prompt=req.prompt,
        style=req.style,
        complexity=req.complexity,
        audience=req.audience,
        aspect_ratio=aspect_ratio_for_page_size(req.page_size),
        project_id=req.project_id,
        page_index=req.page_index,
        requires_text=req.requires_text,
        hero_name=req.hero_name,
    )
    outcome = await runtime.scheduler.generate_page(
        request, pipeline_config=_pipeline_config(runtime, req.enable_enhancement)
    )
    return _page_response(outcome)


@app.post("/api/books/generate")
async def generate_book(req: BookGenerateRequest) -> dict:
    """Generate every page of a book.

    Raises:
        HTTPException: 409 if the run was cancelled (``detail`` carries the
            partial result) or the ``job_id`` is already running.
    """
    runtime = _runtime()
    if req.job_id is not None and req.job_id in runtime.jobs:
        raise HTTPException(status_code=409, detail=f"Job already running: {req.job_id}")

    token = CancellationToken()
    job = BatchJob(
        project_id=req.project_id,
        items=tuple(
            BatchItem(
                prompt=page.prompt,
                page_index=page.page_index,
                requires_text=page.requires_text,
            )
            for page in req.pages
        ),
        style=req.style,
        complexity=req.complexity,
        audience=req.audience,
        aspect_ratio=aspect_ratio_for_page_size(req.page_size),
        concurrency=req.concurrency or runtime.config.default_concurrency,
        delay_between_items=(
            req.delay_between_items
            if req.delay_between_items is not None
            else runtime.config.delay_between_items
        ),
        auto_consistency=req.auto_consistency,
        cancel_token=token,
    )

    scheduler = runtime.scheduler
    if req.enable_enhancement is not None:
        scheduler = _with_enhancement(scheduler, req.enable_enhancement)

    if req.job_id is not None:
        runtime.jobs[req.job_id] = token
    try:
        result = await scheduler.run(job)
    except GenerationCancelled as e:
        partial = BookResultModel.from_batch(e.partial).model_dump() if e.partial else None
        raise HTTPException(
            status_code=409,
            detail={"message": "Generation cancelled", "partial": partial},
        ) from e
    finally:
        if req.job_id is not None:
            runtime.jobs.pop(req.job_id, None)

    return BookResultModel.from_batch(result).model_dump()


@app.post("/api/jobs/{job_id}/cancel")
async def cancel_job(job_id: str) -> dict:
    """Cancel a running book.

    Raises:
        HTTPException: 404 if no running book has this ``job_id``.
    """
    token = _runtime().jobs.get(job_id)
    if token is None:
        raise HTTPException(status_code=404, detail=f"No running job: {job_id}")
    token.cancel()
    logger.info(f"Cancellation requested for job {job_id}")
    return {"job_id": job_id, "cancelled": True}


@app.post("/api/projects/{project_id}/pages/{page_index}/regenerate")
async def regenerate_page(project_id: str, page_index: int, req: RegenerateRequest) -> dict:
    """Generate a fresh version of a stored page.

    Raises:
        HTTPException: 404 if no prompt is given and none is recorded.
    """
    runtime = _runtime()
    try:
        outcome = await runtime.scheduler.regenerate_page(
            project_id,
            page_index,
            style=req.style,
            complexity=req.complexity,
            audience=req.audience,
            prompt=req.prompt,
            aspect_ratio=aspect_ratio_for_page_size(req.page_size),
        )
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return _page_response(outcome)


# ---------------------------------------------------------------------------
# Artifacts and cache.
# ---------------------------------------------------------------------------


@app.get("/api/artifacts/{artifact_id}")
async def get_artifact(artifact_id: str) -> Response:
    """Return image bytes from the cache, falling back to object storage.

    Raises:
        HTTPException: 404 if the artifact is neither cached nor stored.
    """
    found = await _runtime().library.fetch(artifact_id)
    if found is None:
        raise HTTPException(status_code=404, detail=f"Artifact not found: {artifact_id}")
    data, mime_type = found
    return Response(content=data, media_type=mime_type)


@app.post("/api/artifacts/{artifact_id}/preload")
async def preload_artifact(artifact_id: str) -> dict:
    cached = await _runtime().library.preload(artifact_id)
    if not cached:
        raise HTTPException(status_code=404, detail=f"Artifact not found: {artifact_id}")
    return {"artifact_id": artifact_id, "cached": True}


@app.delete("/api/artifacts/{artifact_id}/cache")
async def invalidate_artifact(artifact_id: str) -> dict:
    await _runtime().cache.invalidate(artifact_id)
    return {"artifact_id": artifact_id, "invalidated": True}


@app.get("/api/cache")
async def get_cache_stats() -> dict:
    runtime = _runtime()
    stats = await runtime.cache.stats()
    return {
        "count": stats.count,
        "total_bytes": stats.total_bytes,
        "max_bytes": runtime.cache.max_bytes,
    }


@app.delete("/api/cache")
async def clear_cache() -> dict:
    await _runtime().cache.clear()
    return {"cleared": True}


# ---------------------------------------------------------------------------
# Usage and costs.
# ---------------------------------------------------------------------------


@app.get("/api/usage")
async def get_usage() -> dict:
    return asdict(_runtime().usage.get_usage_stats())


@app.delete("/api/usage")
async def reset_usage() -> dict:
    _runtime().usage.reset_usage_stats()
    return {"reset": True}


@app.get("/api/cost/estimate")
async def cost_estimate(
    page_count: int = Query(..., ge=0),
    complexity: str = Query("Moderate"),
    expected_attempts: float = Query(DEFAULT_EXPECTED_ATTEMPTS, gt=0),
) -> dict:
    """Estimate what a book will cost before generating it."""
    return {
        "page_count": page_count,
        "complexity": complexity,
        "resolution": resolution_for(complexity),
        "expected_attempts": expected_attempts,
        "estimated_cost": estimate_batch_cost(page_count, complexity, expected_attempts),
    }


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~pageforge.core.config.config` (which
    loads from ``PAGEFORGE_SERVER_HOST`` and ``PAGEFORGE_SERVER_PORT``
    environment variables).  Defaults to ``0.0.0.0:7860``.

    This function is registered as the ``pageforge`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "pageforge.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
