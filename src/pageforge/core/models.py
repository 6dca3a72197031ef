"""Domain data models for page generation, batching and usage tracking.

Requests and results are immutable values: a request is built per call by
its owner and never changed afterwards, and a result is produced exactly
once per request.  Helpers such as :meth:`GenerationRequest.with_reference`
return modified copies instead of mutating.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Literal

from pageforge.core.cancellation import CancellationToken


ResolutionTier = Literal["1K", "2K", "4K"]


class Phase(str, Enum):
    """Orchestrator phases reported through progress callbacks."""

    INITIALIZING = "initializing"
    ENHANCING = "enhancing"
    GENERATING = "generating"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class ReferenceImage:
    """An image passed to the backend as a style anchor."""

    data: bytes
    mime_type: str = "image/png"

    def __repr__(self) -> str:
        return f"ReferenceImage(mime_type={self.mime_type!r}, size={len(self.data)})"


@dataclass(frozen=True)
class GenerationRequest:
    """Everything needed to generate a single page.

    ``resolution`` is derived from ``complexity`` when left unset (see
    :func:`pageforge.core.costs.resolution_for`).
    """

    prompt: str
    style: str
    complexity: str
    audience: str
    aspect_ratio: str = "1:1"
    resolution: ResolutionTier | None = None
    reference_images: tuple[ReferenceImage, ...] = ()
    cancel_token: CancellationToken | None = None
    project_id: str | None = None
    page_index: int | None = None
    requires_text: bool = False
    hero_name: str | None = None

    def with_reference(self, reference: ReferenceImage) -> GenerationRequest:
        """Return a copy of this request with ``reference`` appended."""
        return replace(self, reference_images=(*self.reference_images, reference))


@dataclass(frozen=True)
class Artifact:
    """A generated image payload plus identifying metadata."""

    artifact_id: str
    data: bytes
    mime_type: str = "image/png"
    page_index: int | None = None
    prompt: str = ""

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    def as_reference(self) -> ReferenceImage:
        return ReferenceImage(data=self.data, mime_type=self.mime_type)

    def __repr__(self) -> str:
        return (
            f"Artifact(id={self.artifact_id!r}, page_index={self.page_index}, "
            f"size={self.size_bytes})"
        )


@dataclass(frozen=True)
class GenerationResult:
    """Outcome of one generation request.

    Attributes:
        success: Whether an artifact was produced.
        artifact: The generated artifact, ``None`` on failure.
        quality_score: 0-100; 100 when no independent grading exists.
        is_publishable: Whether the page is fit to print as-is.
        attempts: Backend calls made (0 for configuration errors).
        duration_ms: Wall-clock time from orchestrator entry to result.
        estimated_cost: Cost in USD for all attempts.
        error: Failure description, if any.
        prompt_used: Literal text sent to the backend.
        enhanced_prompt: Enhancer output, when enhancement succeeded.
        qa_tags: Defect tags reported by the quality grader.
        request_id: Identifier used in logs.
        summary: Human-readable one-line outcome.
    """

    success: bool
    artifact: Artifact | None = None
    quality_score: float = 100.0
    is_publishable: bool = False
    attempts: int = 0
    duration_ms: float = 0.0
    estimated_cost: float = 0.0
    error: str | None = None
    prompt_used: str = ""
    enhanced_prompt: str | None = None
    qa_tags: tuple[str, ...] = ()
    request_id: str = ""
    summary: str = ""


@dataclass(frozen=True)
class ProgressEvent:
    """Progress update delivered to UI callbacks."""

    phase: Phase
    message: str
    percent_complete: float
    item_index: int | None = None


@dataclass(frozen=True)
class BatchItem:
    """One page of a book: its prompt and position."""

    prompt: str
    page_index: int
    requires_text: bool = False


@dataclass(frozen=True)
class BatchJob:
    """A "generate the whole book" action.

    ``concurrency`` of 1 means strict sequential processing.  The optional
    ``session_reference`` pre-seeds the style anchor for every page.
    """

    project_id: str
    items: tuple[BatchItem, ...]
    style: str
    complexity: str
    audience: str
    aspect_ratio: str = "1:1"
    concurrency: int = 1
    delay_between_items: float = 1.0
    session_reference: ReferenceImage | None = None
    auto_consistency: bool = True
    cancel_token: CancellationToken | None = None

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.delay_between_items < 0:
            raise ValueError(
                f"delay_between_items must be >= 0, got {self.delay_between_items}"
            )
        indexes = [item.page_index for item in self.items]
        if len(indexes) != len(set(indexes)):
            raise ValueError("page_index values must be unique within a batch")

    def request_for(self, item: BatchItem) -> GenerationRequest:
        """Build the per-page request for ``item``."""
        return GenerationRequest(
            prompt=item.prompt,
            style=self.style,
            complexity=self.complexity,
            audience=self.audience,
            aspect_ratio=self.aspect_ratio,
            cancel_token=self.cancel_token,
            project_id=self.project_id,
            page_index=item.page_index,
            requires_text=item.requires_text,
        )


@dataclass(frozen=True)
class PersistenceOutcome:
    """Result of the best-effort write-through to durable storage.

    Kept apart from :class:`GenerationResult` so a storage failure can never
    turn a successful generation into a failed one.
    """

    saved: bool
    storage_key: str | None = None
    error: str | None = None

    @classmethod
    def skipped(cls) -> PersistenceOutcome:
        return cls(saved=False)


@dataclass(frozen=True)
class PageOutcome:
    """A single page's generation result paired with its persistence outcome."""

    result: GenerationResult
    persistence: PersistenceOutcome

    @property
    def success(self) -> bool:
        return self.result.success


@dataclass
class BatchResult:
    """Aggregate outcome of a batch run.

    ``page_results`` has exactly one entry per started item, failed ones
    included.  ``artifacts`` lists successful artifacts in page order.
    """

    artifacts: list[Artifact] = field(default_factory=list)
    page_results: dict[int, GenerationResult] = field(default_factory=dict)
    persistence: dict[int, PersistenceOutcome] = field(default_factory=dict)
    success_count: int = 0
    failure_count: int = 0
    total_cost: float = 0.0
    total_duration_ms: float = 0.0
    session_reference: ReferenceImage | None = None

    def record(self, page_index: int, outcome: PageOutcome) -> None:
        """Add one page's outcome to the running totals."""
        result = outcome.result
        self.page_results[page_index] = result
        self.persistence[page_index] = outcome.persistence

        if result.success and result.artifact is not None:
            self.artifacts.append(result.artifact)
            self.success_count += 1
        else:
            self.failure_count += 1

        self.total_cost += result.estimated_cost

    def sort_artifacts(self) -> None:
        """Order artifacts by page index (completion order may differ)."""
        self.artifacts.sort(
            key=lambda a: a.page_index if a.page_index is not None else -1
        )

    @property
    def persistence_warnings(self) -> dict[int, str]:
        """Pages that generated fine but could not be saved."""
        return {
            index: outcome.error or "not saved"
            for index, outcome in self.persistence.items()
            if not outcome.saved and self.page_results[index].success
        }


@dataclass(frozen=True)
class UsageStats:
    """Snapshot of process-lifetime generation usage."""

    total_generations: int = 0
    total_cost: float = 0.0
    success_rate: float = 0.0
    average_duration_ms: float = 0.0
    average_attempts: float = 0.0
    by_style: dict[str, int] = field(default_factory=dict)
    by_complexity: dict[str, int] = field(default_factory=dict)
