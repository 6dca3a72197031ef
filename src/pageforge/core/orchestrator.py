"""Single-request generation orchestrator.

Drives one page through a linear pipeline::

    initializing -> [enhancing] -> generating -> complete | failed

Enhancement is optional and best-effort: if it fails for any reason other
than cancellation the original prompt is used.  Generation is mandatory;
ordinary upstream failures are captured into
:attr:`GenerationResult.error` rather than raised.  Cancellation is the one
condition that propagates, as
:class:`~pageforge.core.cancellation.GenerationCancelled`.

The orchestrator has no side effects beyond calling the backend, the
enhancer and the progress callback.  Persisting and caching the artifact is
the batch scheduler's job.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace

from pageforge.core.backend import BackendResult, GenerationBackend, PromptEnhancer
from pageforge.core.cancellation import GenerationCancelled, cancellable_sleep
from pageforge.core.costs import estimate_cost, resolution_for
from pageforge.core.models import (
    Artifact,
    GenerationRequest,
    GenerationResult,
    Phase,
    ProgressEvent,
)
from pageforge.core.quality import DISQUALIFYING_TAGS, GrayscaleChecker, QualityReport

logger = logging.getLogger(__name__)

PHASE_PERCENT = {
    Phase.INITIALIZING: 0.0,
    Phase.ENHANCING: 10.0,
    Phase.GENERATING: 30.0,
    Phase.COMPLETE: 100.0,
    Phase.FAILED: 100.0,
}


@dataclass(frozen=True)
class PipelineConfig:
    """Per-call orchestrator settings.

    Attributes:
        enable_enhancement: Run the enhancing phase when an enhancer exists.
        on_progress: Called with a :class:`ProgressEvent` at each phase entry.
        enable_logging: Emit per-request INFO logs tagged with the request id.
        max_attempts: Backend calls allowed when failures are retryable.
        retry_delay_s: Delay before the first retry.
        retry_backoff: Multiplier applied to the delay after each retry.
        min_publishable_score: Lowest quality score considered publishable.
    """

    enable_enhancement: bool = True
    on_progress: Callable[[ProgressEvent], None] | None = None
    enable_logging: bool = False
    max_attempts: int = 1
    retry_delay_s: float = 2.0
    retry_backoff: float = 2.0
    min_publishable_score: float = 70.0


class GenerationOrchestrator:
    """Runs the enhance-then-generate pipeline for a single request.

    Args:
        backend: Generation capability
        enhancer: Optional prompt enhancer
        grader: Optional quality grader (anything with ``check(bytes) -> QualityReport``)
    """

    def __init__(
        self,
        backend: GenerationBackend,
        enhancer: PromptEnhancer | None = None,
        grader: GrayscaleChecker | None = None,
    ) -> None:
        self.backend = backend
        self.enhancer = enhancer
        self.grader = grader

    async def run(
        self, request: GenerationRequest, config: PipelineConfig | None = None
    ) -> GenerationResult:
        """Generate one page.

        Args:
            request: What to generate
            config: Pipeline settings (defaults when omitted)

        Returns:
            The generation result, successful or not

        Raises:
            GenerationCancelled: If the request's token is cancelled
        """
        config = config or PipelineConfig()
        start = time.perf_counter()
        request_id = f"gen_{uuid.uuid4().hex[:10]}"
        token = request.cancel_token
        resolution = request.resolution or resolution_for(request.complexity)
        last_percent = 0.0

        def elapsed_ms() -> float:
            return (time.perf_counter() - start) * 1000

        def log(message: str) -> None:
            if config.enable_logging:
                logger.info(f"[{request_id}] {message}")

        def report(phase: Phase, message: str) -> None:
            nonlocal last_percent
            last_percent = max(last_percent, PHASE_PERCENT[phase])
            if config.on_progress is None:
                return
            event = ProgressEvent(
                phase=phase,
                message=message,
                percent_complete=last_percent,
                item_index=request.page_index,
            )
            try:
                config.on_progress(event)
            except Exception:
                logger.exception(f"[{request_id}] Progress callback raised; ignoring")

        log(f"Starting generation: {request.style} / {request.complexity} / {request.audience}")
        report(Phase.INITIALIZING, "Initializing...")

        if not self.backend.is_configured:
            error = f"Backend '{self.backend.name}' is not configured"
            log(error)
            report(Phase.FAILED, error)
            return GenerationResult(
                success=False,
                quality_score=0.0,
                attempts=0,
                duration_ms=elapsed_ms(),
                estimated_cost=0.0,
                error=error,
                prompt_used=request.prompt,
                request_id=request_id,
                summary="Configuration error",
            )

        working_prompt = request.prompt
        enhanced_prompt = None
        if config.enable_enhancement and self.enhancer is not None:
            report(Phase.ENHANCING, "Enhancing prompt...")
            enhanced_prompt = await self._enhance(request, log)
            if enhanced_prompt:
                working_prompt = enhanced_prompt

        if token is not None:
            token.raise_if_cancelled()

        report(Phase.GENERATING, "Generating image...")
        backend_result, attempts = await self._generate(
            replace(request, prompt=working_prompt), resolution, config, log
        )
        cost = estimate_cost(resolution, attempts)
        prompt_used = backend_result.prompt_used or working_prompt

        if not backend_result.success or not backend_result.data:
            error = backend_result.error or "Generation failed"
            log(f"Generation failed: {error}")
            report(Phase.FAILED, error)
            return GenerationResult(
                success=False,
                quality_score=0.0,
                attempts=attempts,
                duration_ms=elapsed_ms(),
                estimated_cost=cost,
                error=error,
                prompt_used=prompt_used,
                enhanced_prompt=enhanced_prompt,
                request_id=request_id,
                summary="Generation failed",
            )

        artifact = Artifact(
            artifact_id=uuid.uuid4().hex,
            data=backend_result.data,
            mime_type=backend_result.mime_type,
            page_index=request.page_index,
            prompt=request.prompt,
        )

        quality = await self._grade(artifact.data)
        is_publishable = quality.score >= config.min_publishable_score and not (
            set(quality.tags) & DISQUALIFYING_TAGS
        )

        duration = elapsed_ms()
        log(f"Image generated in {duration:.0f}ms after {attempts} attempt(s)")
        report(Phase.COMPLETE, "Generation complete")

        return GenerationResult(
            success=True,
            artifact=artifact,
            quality_score=quality.score,
            is_publishable=is_publishable,
            attempts=attempts,
            duration_ms=duration,
            estimated_cost=cost,
            prompt_used=prompt_used,
            enhanced_prompt=enhanced_prompt,
            qa_tags=quality.tags,
            request_id=request_id,
            summary=f"Generated successfully in {duration:.0f}ms",
        )

    async def _enhance(self, request: GenerationRequest, log: Callable[[str], None]) -> str | None:
        hints = {"Hero": request.hero_name} if request.hero_name else None
        try:
            result = await self.enhancer.enhance(
                request.prompt,
                style=request.style,
                complexity=request.complexity,
                audience=request.audience,
                hints=hints,
                cancel_token=request.cancel_token,
            )
        except GenerationCancelled:
            raise
        except Exception as e:
            logger.warning(f"Prompt enhancement raised, using original prompt: {e}")
            return None

        if request.cancel_token is not None:
            request.cancel_token.raise_if_cancelled()

        if not result.success or not result.enhanced_prompt:
            log(f"Enhancement failed, using original prompt: {result.error}")
            return None

        log(f"Prompt enhanced: {result.enhanced_prompt[:100]!r}")
        return result.enhanced_prompt

    async def _generate(
        self,
        request: GenerationRequest,
        resolution: str,
        config: PipelineConfig,
        log: Callable[[str], None],
    ) -> tuple[BackendResult, int]:
        """Call the backend, retrying retryable failures.

        Returns:
            The last backend result and the number of calls made
        """
        delay = config.retry_delay_s
        attempts = 0
        result = BackendResult.failure("Generation not attempted")

        while attempts < max(1, config.max_attempts):
            if request.cancel_token is not None:
                request.cancel_token.raise_if_cancelled()

            attempts += 1
            try:
                result = await self.backend.generate(
                    request.prompt,
                    style=request.style,
                    complexity=request.complexity,
                    audience=request.audience,
                    aspect_ratio=request.aspect_ratio,
                    resolution=resolution,
                    reference_images=request.reference_images,
                    requires_text=request.requires_text,
                    hero_name=request.hero_name,
                    cancel_token=request.cancel_token,
                )
            except GenerationCancelled:
                raise
            except Exception as e:
                logger.error(f"Backend '{self.backend.name}' raised: {e}", exc_info=True)
                result = BackendResult.failure(str(e) or type(e).__name__)

            if result.success or not result.retryable:
                break
            if attempts < config.max_attempts:
                log(f"Attempt {attempts} failed ({result.error}), retrying in {delay:.1f}s")
                await cancellable_sleep(delay, request.cancel_token)
                delay *= config.retry_backoff

        return result, attempts

    async def _grade(self, data: bytes) -> QualityReport:
        if self.grader is None:
            return QualityReport(score=100.0)
        try:
            return await asyncio.to_thread(self.grader.check, data)
        except Exception as e:
            logger.warning(f"Quality grading failed, assuming clean: {e}")
            return QualityReport(score=100.0)


async def quick_generate(
    orchestrator: GenerationOrchestrator,
    request: GenerationRequest,
    config: PipelineConfig | None = None,
) -> GenerationResult:
    """Run ``request`` with enhancement disabled (for previews)."""
    config = replace(config or PipelineConfig(), enable_enhancement=False)
    return await orchestrator.run(request, config)
