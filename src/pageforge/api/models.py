"""Pydantic request and response models for the pageforge API.

FastAPI uses these for request validation, serialisation and the OpenAPI
schema.

Models
------
PageGenerateRequest
    Payload for ``POST /api/pages/generate``.
RegenerateRequest
    Payload for regenerating a stored page.
BookGenerateRequest
    Payload for ``POST /api/books/generate``: shared settings plus one
    :class:`BookPage` per page.
GenerationResultModel / PersistenceModel / BookResultModel
    Response bodies.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from pageforge.core.models import BatchResult, GenerationResult, PersistenceOutcome


class PageSettings(BaseModel):
    """Fields shared by single-page and whole-book requests."""

    project_id: str | None = Field(
        default=None,
        description="Project the pages belong to. Pages are only persisted when set.",
    )
    style: str = Field(..., description="Art style id (e.g. 'Cozy', 'Mandala').")
    complexity: str = Field(..., description="Complexity label (e.g. 'Moderate').")
    audience: str = Field(..., description="Audience id (e.g. 'kids', 'adults').")
    page_size: str = Field(
        default="square",
        description="Named page size ('square', 'letter', ...) or ratio string ('3:4').",
    )
    enable_enhancement: bool | None = Field(
        default=None,
        description="Override the server's prompt enhancement setting.",
    )


class PageGenerateRequest(PageSettings):
    """Request body for ``POST /api/pages/generate``."""

    prompt: str = Field(..., min_length=1, description="Scene description.")
    page_index: int | None = Field(default=None, ge=0)
    requires_text: bool = False
    hero_name: str | None = None


class BookPage(BaseModel):
    prompt: str = Field(..., min_length=1)
    page_index: int = Field(..., ge=0)
    requires_text: bool = False


class RegenerateRequest(BaseModel):
    """Request body for ``POST /api/projects/{project_id}/pages/{page_index}/regenerate``.

    When ``prompt`` is omitted the prompt recorded for the page is reused.
    """

    style: str
    complexity: str
    audience: str
    page_size: str = "square"
    prompt: str | None = Field(default=None, min_length=1)


class BookGenerateRequest(PageSettings):
    """Request body for ``POST /api/books/generate``.

    Attributes:
        pages: Pages to generate; ``page_index`` values must be unique.
        concurrency: Pages in flight at once (1 = strict sequential).
        delay_between_items: Seconds between pages or chunks.
        auto_consistency: Promote the first high-quality page to session
            reference (sequential runs only).
        job_id: Client-chosen id usable with ``POST /api/jobs/{job_id}/cancel``.
    """

    project_id: str = Field(..., description="Project the book belongs to.")
    pages: list[BookPage] = Field(..., min_length=1)
    concurrency: int | None = Field(default=None, ge=1, le=16)
    delay_between_items: float | None = Field(default=None, ge=0)
    auto_consistency: bool = True
    job_id: str | None = None

    @field_validator("pages")
    @classmethod
    def _unique_page_indexes(cls, pages: list[BookPage]) -> list[BookPage]:
        indexes = [page.page_index for page in pages]
        if len(indexes) != len(set(indexes)):
            raise ValueError("page_index values must be unique")
        return pages


class PersistenceModel(BaseModel):
    saved: bool
    storage_key: str | None = None
    error: str | None = None

    @classmethod
    def from_outcome(cls, outcome: PersistenceOutcome) -> PersistenceModel:
        return cls(saved=outcome.saved, storage_key=outcome.storage_key, error=outcome.error)


class GenerationResultModel(BaseModel):
    success: bool
    artifact_id: str | None = None
    image_url: str | None = None
    page_index: int | None = None
    quality_score: float
    is_publishable: bool
    attempts: int
    duration_ms: float
    estimated_cost: float
    error: str | None = None
    prompt_used: str
    enhanced_prompt: str | None = None
    qa_tags: list[str] = Field(default_factory=list)
    summary: str = ""

    @classmethod
    def from_result(cls, result: GenerationResult) -> GenerationResultModel:
        artifact = result.artifact
        return cls(
            success=result.success,
            artifact_id=artifact.artifact_id if artifact else None,
            image_url=f"/api/artifacts/{artifact.artifact_id}" if artifact else None,
            page_index=artifact.page_index if artifact else None,
            quality_score=result.quality_score,
            is_publishable=result.is_publishable,
            attempts=result.attempts,
            duration_ms=result.duration_ms,
            estimated_cost=result.estimated_cost,
            error=result.error,
            prompt_used=result.prompt_used,
            enhanced_prompt=result.enhanced_prompt,
            qa_tags=list(result.qa_tags),
            summary=result.summary,
        )


class PageResultModel(BaseModel):
    result: GenerationResultModel
    persistence: PersistenceModel


class BookResultModel(BaseModel):
    """Response body for ``POST /api/books/generate``.

    ``pages`` is keyed by page index (as a string, JSON object keys) and has
    one entry per started page, failed pages included.
    """

    success_count: int
    failure_count: int
    total_cost: float
    total_duration_ms: float
    artifact_ids: list[str]
    pages: dict[str, PageResultModel]
    has_session_reference: bool
    persistence_warnings: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_batch(cls, batch: BatchResult) -> BookResultModel:
        return cls(
            success_count=batch.success_count,
            failure_count=batch.failure_count,
            total_cost=batch.total_cost,
            total_duration_ms=batch.total_duration_ms,
            artifact_ids=[artifact.artifact_id for artifact in batch.artifacts],
            pages={
                str(index): PageResultModel(
                    result=GenerationResultModel.from_result(result),
                    persistence=PersistenceModel.from_outcome(batch.persistence[index]),
                )
                for index, result in sorted(batch.page_results.items())
            },
            has_session_reference=batch.session_reference is not None,
            persistence_warnings={
                str(index): warning for index, warning in batch.persistence_warnings.items()
            },
        )
