"""Batch scheduler: generates a whole book of pages.

Execution Modes
---------------
- **Sequential** (``concurrency == 1``): items run strictly in order.  The
  cancellation token is checked before each item, the quality gate is
  evaluated after each item, and the configured delay is applied between
  items.
- **Bounded-concurrent** (``concurrency > 1``): items are split into
  consecutive chunks of ``concurrency`` and each chunk runs with
  :func:`asyncio.gather`.  The token is checked before each chunk and the
  delay is applied between chunks.

Session Reference
-----------------
The first sequential item that succeeds with a score of at least
``quality_threshold`` and none of the disqualifying tags becomes the session
reference, held in a write-once :class:`ReferenceSlot`.  Every later item in
the batch receives it as an extra reference image.

Bounded-concurrent mode only ever *reads* a reference pre-seeded on the job;
it never sets one.  Items of a chunk start together, so "first qualifying
result wins" would depend on completion order and race between writers.

Side Effects
------------
For every successful item the artifact is saved through the
:class:`~pageforge.core.persistence.PersistenceAdapter` and then written to
the :class:`~pageforge.core.cache.ArtifactCache`.  Both are best-effort: a
failure is logged and reported in the item's
:class:`~pageforge.core.models.PersistenceOutcome`, never in its
:class:`~pageforge.core.models.GenerationResult`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

from pageforge.core.cache import ArtifactCache
from pageforge.core.cancellation import (
    CancellationToken,
    GenerationCancelled,
    cancellable_sleep,
)
from pageforge.core.models import (
    BatchItem,
    BatchJob,
    BatchResult,
    GenerationRequest,
    GenerationResult,
    PageOutcome,
    PersistenceOutcome,
    ProgressEvent,
    ReferenceImage,
)
from pageforge.core.orchestrator import GenerationOrchestrator, PipelineConfig
from pageforge.core.persistence import PersistenceAdapter
from pageforge.core.quality import DISQUALIFYING_TAGS
from pageforge.core.usage import UsageTracker

logger = logging.getLogger(__name__)

DEFAULT_QUALITY_THRESHOLD = 85.0


class ReferenceSlot:
    """A value cell that can be written at most once."""

    def __init__(self, initial: ReferenceImage | None = None) -> None:
        self._value = initial

    @property
    def value(self) -> ReferenceImage | None:
        return self._value

    @property
    def is_set(self) -> bool:
        return self._value is not None

    def set_once(self, value: ReferenceImage) -> bool:
        """Store ``value`` if the slot is empty.

        Returns:
            True if the value was stored, False if the slot was already set
        """
        if self._value is not None:
            return False
        self._value = value
        return True


@dataclass(frozen=True)
class BatchConfig:
    """Per-run scheduler settings; ``None`` falls back to the job's values.

    Attributes:
        concurrency: Pages in flight at once.
        delay_between_items: Seconds between items (sequential) or chunks.
        on_item_complete: ``(page_index, result)`` after each item.
        on_batch_progress: ``(completed, total, current_page_index)``.
        on_item_progress: ``(page_index, event)`` for orchestrator progress.
    """

    concurrency: int | None = None
    delay_between_items: float | None = None
    on_item_complete: Callable[[int, GenerationResult], None] | None = None
    on_batch_progress: Callable[[int, int, int], None] | None = None
    on_item_progress: Callable[[int, ProgressEvent], None] | None = None


def _safe_call(callback: Callable | None, *args) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.exception("Batch callback raised; ignoring")


class BatchScheduler:
    """Runs batch jobs through the orchestrator with best-effort side effects.

    Args:
        orchestrator: Per-page pipeline
        cache: Artifact cache written after each successful page
        persistence: Durable storage adapter
        usage: Process-wide usage tracker
        quality_threshold: Minimum score for the session reference
        disqualifying_tags: Tags that bar a page from becoming the reference
        pipeline_config: Orchestrator settings shared by every page
    """

    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        cache: ArtifactCache,
        persistence: PersistenceAdapter,
        usage: UsageTracker,
        *,
        quality_threshold: float = DEFAULT_QUALITY_THRESHOLD,
        disqualifying_tags: frozenset[str] = DISQUALIFYING_TAGS,
        pipeline_config: PipelineConfig | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.cache = cache
        self.persistence = persistence
        self.usage = usage
        self.quality_threshold = quality_threshold
        self.disqualifying_tags = frozenset(disqualifying_tags)
        self.pipeline_config = pipeline_config or PipelineConfig()

    # ------------------------------------------------------------------
    # Batch runs
    # ------------------------------------------------------------------

    async def run(self, job: BatchJob, config: BatchConfig | None = None) -> BatchResult:
        """Generate every page of ``job``.

        Returns:
            Aggregated results, artifacts sorted by page index

        Raises:
            GenerationCancelled: If the job's token is cancelled; the
                exception's ``partial`` holds the pages finished so far
            ValueError: If ``config.concurrency`` is below 1
        """
        config = config or BatchConfig()
        concurrency = config.concurrency if config.concurrency is not None else job.concurrency
        delay = (
            config.delay_between_items
            if config.delay_between_items is not None
            else job.delay_between_items
        )
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")

        result = BatchResult()
        slot = ReferenceSlot(job.session_reference)
        start = time.perf_counter()
        total = len(job.items)
        mode = "sequential" if concurrency == 1 else f"concurrent x{concurrency}"
        logger.info(f"Starting batch for project {job.project_id}: {total} pages ({mode})")

        try:
            if concurrency == 1:
                await self._run_sequential(job, config, delay, slot, result)
            else:
                await self._run_chunked(job, config, concurrency, delay, slot, result)
        except GenerationCancelled as e:
            self._finish(result, slot, start)
            logger.info(
                f"Batch for project {job.project_id} cancelled after "
                f"{len(result.page_results)}/{total} pages"
            )
            raise GenerationCancelled(str(e) or "Generation cancelled", partial=result) from e

        self._finish(result, slot, start)
        logger.info(
            f"Batch for project {job.project_id} finished: {result.success_count} succeeded, "
            f"{result.failure_count} failed, ${result.total_cost:.2f}"
        )
        return result

    async def _run_sequential(
        self,
        job: BatchJob,
        config: BatchConfig,
        delay: float,
        slot: ReferenceSlot,
        result: BatchResult,
    ) -> None:
        total = len(job.items)
        for position, item in enumerate(job.items):
            if job.cancel_token is not None:
                job.cancel_token.raise_if_cancelled()
            if position > 0:
                await cancellable_sleep(delay, job.cancel_token)

            _safe_call(config.on_batch_progress, position, total, item.page_index)
            outcome = await self._process_item(job, item, slot.value, config)
            self._record(result, item, outcome, config)

            if job.auto_consistency and self._qualifies(outcome.result):
                if slot.set_once(outcome.result.artifact.as_reference()):
                    logger.info(
                        f"Page {item.page_index} (score {outcome.result.quality_score:.0f}) "
                        f"set as session reference"
                    )

        _safe_call(config.on_batch_progress, total, total, -1)

    async def _run_chunked(
        self,
        job: BatchJob,
        config: BatchConfig,
        concurrency: int,
        delay: float,
        slot: ReferenceSlot,
        result: BatchResult,
    ) -> None:
        items = list(job.items)
        total = len(items)
        # Read once: this mode never writes the slot
        reference = slot.value
        for chunk_start in range(0, total, concurrency):
            if job.cancel_token is not None:
                job.cancel_token.raise_if_cancelled()
            if chunk_start > 0:
                await cancellable_sleep(delay, job.cancel_token)

            chunk = items[chunk_start : chunk_start + concurrency]
            _safe_call(config.on_batch_progress, chunk_start, total, chunk[0].page_index)

            outcomes = await asyncio.gather(
                *(self._process_item(job, item, reference, config) for item in chunk),
                return_exceptions=True,
            )

            cancelled: GenerationCancelled | None = None
            for item, outcome in zip(chunk, outcomes):
                if isinstance(outcome, GenerationCancelled):
                    cancelled = cancelled or outcome
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    self._record(result, item, outcome, config)
            if cancelled is not None:
                raise cancelled

        _safe_call(config.on_batch_progress, total, total, -1)

    def _qualifies(self, generation: GenerationResult) -> bool:
        return (
            generation.success
            and generation.artifact is not None
            and generation.quality_score >= self.quality_threshold
            and not (set(generation.qa_tags) & self.disqualifying_tags)
        )

    def _record(
        self,
        result: BatchResult,
        item: BatchItem,
        outcome: PageOutcome,
        config: BatchConfig,
    ) -> None:
        result.record(item.page_index, outcome)
        _safe_call(config.on_item_complete, item.page_index, outcome.result)

    @staticmethod
    def _finish(result: BatchResult, slot: ReferenceSlot, start: float) -> None:
        result.sort_artifacts()
        result.session_reference = slot.value
        result.total_duration_ms = (time.perf_counter() - start) * 1000

    async def _process_item(
        self,
        job: BatchJob,
        item: BatchItem,
        reference: ReferenceImage | None,
        config: BatchConfig,
    ) -> PageOutcome:
        request = job.request_for(item)
        if reference is not None:
            request = request.with_reference(reference)

        pipeline_config = self.pipeline_config
        if config.on_item_progress is not None:
            on_item_progress = config.on_item_progress
            pipeline_config = replace(
                pipeline_config,
                on_progress=lambda event: on_item_progress(item.page_index, event),
            )

        return await self._generate_and_store(request, pipeline_config)

    # ------------------------------------------------------------------
    # Single pages
    # ------------------------------------------------------------------

    async def generate_page(
        self,
        request: GenerationRequest,
        *,
        pipeline_config: PipelineConfig | None = None,
    ) -> PageOutcome:
        """Generate one page with the same side effects as a batch item."""
        return await self._generate_and_store(request, pipeline_config or self.pipeline_config)

    async def regenerate_page(
        self,
        project_id: str,
        page_index: int,
        *,
        style: str,
        complexity: str,
        audience: str,
        prompt: str | None = None,
        aspect_ratio: str = "1:1",
        reference: ReferenceImage | None = None,
        cancel_token: CancellationToken | None = None,
        pipeline_config: PipelineConfig | None = None,
    ) -> PageOutcome:
        """Generate a fresh version of an existing page.

        When ``prompt`` is omitted the prompt recorded for the page is reused.

        Raises:
            LookupError: If no prompt is given and none is recorded
        """
        if prompt is None:
            record = await asyncio.to_thread(
                self.persistence.records.find_page, project_id, page_index
            )
            if record is None or not record.generation_prompt:
                raise LookupError(f"No recorded prompt for page {page_index} of {project_id}")
            prompt = record.generation_prompt

        request = GenerationRequest(
            prompt=prompt,
            style=style,
            complexity=complexity,
            audience=audience,
            aspect_ratio=aspect_ratio,
            reference_images=(reference,) if reference is not None else (),
            cancel_token=cancel_token,
            project_id=project_id,
            page_index=page_index,
        )
        return await self.generate_page(request, pipeline_config=pipeline_config)

    async def _generate_and_store(
        self, request: GenerationRequest, pipeline_config: PipelineConfig
    ) -> PageOutcome:
        generation = await self.orchestrator.run(request, pipeline_config)
        self.usage.track(generation, request.style, request.complexity)

        if not generation.success or generation.artifact is None:
            return PageOutcome(result=generation, persistence=PersistenceOutcome.skipped())

        artifact = generation.artifact
        persistence = PersistenceOutcome.skipped()
        if request.project_id is not None:
            try:
                storage_key = await self.persistence.save(
                    request.project_id, artifact, request.prompt, request.page_index
                )
                persistence = PersistenceOutcome(saved=True, storage_key=storage_key)
            except Exception as e:
                logger.warning(
                    f"Failed to persist page {request.page_index} of project "
                    f"{request.project_id}: {e}"
                )
                persistence = PersistenceOutcome(saved=False, error=str(e) or type(e).__name__)

        origin_key = persistence.storage_key or f"generated/{artifact.artifact_id}"
        await self.cache.put(artifact.artifact_id, artifact.data, origin_key, artifact.mime_type)

        return PageOutcome(result=generation, persistence=persistence)
