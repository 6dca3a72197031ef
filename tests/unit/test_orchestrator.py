"""Tests for pageforge.core.orchestrator: the single-page pipeline."""

from __future__ import annotations

import pytest

from pageforge.core.backend import BackendResult
from pageforge.core.cancellation import CancellationToken, GenerationCancelled
from pageforge.core.models import GenerationRequest, Phase, ReferenceImage
from pageforge.core.orchestrator import (
    PHASE_PERCENT,
    GenerationOrchestrator,
    PipelineConfig,
    quick_generate,
)
from pageforge.core.quality import GRAYSCALE_TAG, QualityReport


def _request(**overrides) -> GenerationRequest:
    fields = {
        "prompt": "a fox",
        "style": "Cozy",
        "complexity": "Moderate",
        "audience": "kids",
        "page_index": 3,
    }
    fields.update(overrides)
    return GenerationRequest(**fields)


class TestSuccessfulRun:
    async def test_produces_artifact(self, fake_backend):
        result = await GenerationOrchestrator(fake_backend).run(_request())

        assert result.success
        assert result.artifact.data == b"image:a fox"
        assert result.artifact.page_index == 3
        assert result.artifact.prompt == "a fox"
        assert result.attempts == 1
        assert result.estimated_cost == pytest.approx(0.04)
        assert result.quality_score == 100.0
        assert result.is_publishable
        assert result.request_id.startswith("gen_")

    async def test_artifact_ids_are_unique(self, fake_backend):
        orchestrator = GenerationOrchestrator(fake_backend)
        first = await orchestrator.run(_request())
        second = await orchestrator.run(_request())
        assert first.artifact.artifact_id != second.artifact.artifact_id

    async def test_resolution_follows_complexity(self, fake_backend):
        result = await GenerationOrchestrator(fake_backend).run(_request(complexity="Extreme Detail"))
        assert fake_backend.calls[0]["resolution"] == "4K"
        assert result.estimated_cost == pytest.approx(0.08)

    async def test_forwards_request_fields(self, fake_backend):
        reference = ReferenceImage(b"ref")
        await GenerationOrchestrator(fake_backend).run(
            _request(reference_images=(reference,), requires_text=True, hero_name="Pip", aspect_ratio="3:4")
        )
        call = fake_backend.calls[0]
        assert call["reference_images"] == (reference,)
        assert call["requires_text"] is True
        assert call["hero_name"] == "Pip"
        assert call["aspect_ratio"] == "3:4"


class TestEnhancement:
    async def test_enhanced_prompt_is_used(self, fake_backend, make_enhancer):
        enhancer = make_enhancer()
        result = await GenerationOrchestrator(fake_backend, enhancer).run(_request(hero_name="Pip"))

        assert fake_backend.calls[0]["prompt"] == "enhanced a fox"
        assert result.enhanced_prompt == "enhanced a fox"
        assert result.artifact.prompt == "a fox"
        assert enhancer.calls[0]["hints"] == {"Hero": "Pip"}

    async def test_failed_enhancement_falls_back(self, fake_backend, make_enhancer):
        orchestrator = GenerationOrchestrator(fake_backend, make_enhancer(fail=True))
        result = await orchestrator.run(_request())
        assert result.success
        assert fake_backend.calls[0]["prompt"] == "a fox"
        assert result.enhanced_prompt is None

    async def test_raising_enhancer_falls_back(self, fake_backend, make_enhancer):
        orchestrator = GenerationOrchestrator(fake_backend, make_enhancer(raise_error=RuntimeError("boom")))
        result = await orchestrator.run(_request())
        assert result.success
        assert fake_backend.calls[0]["prompt"] == "a fox"

    async def test_enhancer_cancellation_propagates(self, fake_backend, make_enhancer):
        orchestrator = GenerationOrchestrator(fake_backend, make_enhancer(raise_error=GenerationCancelled()))
        with pytest.raises(GenerationCancelled):
            await orchestrator.run(_request())
        assert fake_backend.calls == []

    async def test_enhancement_can_be_disabled(self, fake_backend, make_enhancer):
        enhancer = make_enhancer()
        await GenerationOrchestrator(fake_backend, enhancer).run(
            _request(), PipelineConfig(enable_enhancement=False)
        )
        assert enhancer.calls == []

    async def test_quick_generate_skips_enhancement(self, fake_backend, make_enhancer):
        enhancer = make_enhancer()
        result = await quick_generate(GenerationOrchestrator(fake_backend, enhancer), _request())
        assert result.success
        assert enhancer.calls == []


class TestFailures:
    async def test_unconfigured_backend(self, make_backend):
        backend = make_backend(configured=False)
        result = await GenerationOrchestrator(backend).run(_request())

        assert not result.success
        assert result.attempts == 0
        assert result.estimated_cost == 0.0
        assert "not configured" in result.error
        assert backend.calls == []

    async def test_backend_failure_is_captured(self, make_backend):
        backend = make_backend(results=[BackendResult.failure("quota")])
        result = await GenerationOrchestrator(backend).run(_request())

        assert not result.success
        assert result.error == "quota"
        assert result.quality_score == 0.0
        assert result.attempts == 1
        assert result.estimated_cost == pytest.approx(0.04)

    async def test_backend_exception_is_captured(self, monkeypatch, fake_backend):
        async def boom(prompt, **kwargs):
            raise ConnectionError("socket closed")

        monkeypatch.setattr(fake_backend, "generate", boom)
        result = await GenerationOrchestrator(fake_backend).run(_request())
        assert not result.success
        assert "socket closed" in result.error

    async def test_success_without_data_is_failure(self, make_backend):
        backend = make_backend(results=[BackendResult(success=True, data=None)])
        result = await GenerationOrchestrator(backend).run(_request())
        assert not result.success


class TestRetries:
    async def test_retryable_failures_are_retried(self, make_backend):
        backend = make_backend(
            results=[BackendResult.failure("429", retryable=True), BackendResult.failure("503", retryable=True)]
        )
        config = PipelineConfig(max_attempts=3, retry_delay_s=0.0)
        result = await GenerationOrchestrator(backend).run(_request(), config)

        assert result.success
        assert result.attempts == 3
        assert result.estimated_cost == pytest.approx(0.12)

    async def test_non_retryable_failure_stops(self, make_backend):
        backend = make_backend(results=[BackendResult.failure("refused")])
        config = PipelineConfig(max_attempts=3, retry_delay_s=0.0)
        result = await GenerationOrchestrator(backend).run(_request(), config)
        assert not result.success
        assert result.attempts == 1

    async def test_gives_up_after_max_attempts(self, make_backend):
        backend = make_backend(results=[BackendResult.failure("busy", retryable=True)] * 5)
        config = PipelineConfig(max_attempts=2, retry_delay_s=0.0)
        result = await GenerationOrchestrator(backend).run(_request(), config)
        assert not result.success
        assert result.attempts == 2


class TestCancellation:
    async def test_cancelled_before_start(self, fake_backend):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(GenerationCancelled):
            await GenerationOrchestrator(fake_backend).run(_request(cancel_token=token))
        assert fake_backend.calls == []

    async def test_backend_cancellation_propagates(self, make_backend):
        backend = make_backend(cancel_on_call=1)
        with pytest.raises(GenerationCancelled):
            await GenerationOrchestrator(backend).run(_request())


class TestProgress:
    async def test_phase_sequence(self, fake_backend, make_enhancer):
        events = []
        config = PipelineConfig(on_progress=events.append)
        await GenerationOrchestrator(fake_backend, make_enhancer()).run(_request(), config)

        assert [event.phase for event in events] == [
            Phase.INITIALIZING,
            Phase.ENHANCING,
            Phase.GENERATING,
            Phase.COMPLETE,
        ]
        assert [event.percent_complete for event in events] == [0.0, 10.0, 30.0, 100.0]
        assert all(event.item_index == 3 for event in events)

    async def test_failure_reports_failed_phase(self, make_backend):
        events = []
        backend = make_backend(results=[BackendResult.failure("nope")])
        await GenerationOrchestrator(backend).run(_request(), PipelineConfig(on_progress=events.append))
        assert events[-1].phase == Phase.FAILED
        assert events[-1].percent_complete == 100.0

    async def test_percent_never_decreases(self, fake_backend):
        events = []
        await GenerationOrchestrator(fake_backend).run(_request(), PipelineConfig(on_progress=events.append))
        percents = [event.percent_complete for event in events]
        assert percents == sorted(percents)

    async def test_raising_callback_is_ignored(self, fake_backend):
        def explode(event):
            raise RuntimeError("ui gone")

        result = await GenerationOrchestrator(fake_backend).run(_request(), PipelineConfig(on_progress=explode))
        assert result.success

    def test_phase_percent_table(self):
        assert PHASE_PERCENT[Phase.GENERATING] == 30.0


class TestGrading:
    async def test_grader_report_is_applied(self, fake_backend, make_grader):
        grader = make_grader({b"image:a fox": QualityReport(score=40.0, tags=(GRAYSCALE_TAG,))})
        result = await GenerationOrchestrator(fake_backend, grader=grader).run(_request())

        assert result.success
        assert result.quality_score == 40.0
        assert result.qa_tags == (GRAYSCALE_TAG,)
        assert not result.is_publishable

    async def test_disqualifying_tag_blocks_publishable(self, fake_backend, make_grader):
        grader = make_grader({b"image:a fox": QualityReport(score=95.0, tags=("mockup_style",))})
        result = await GenerationOrchestrator(fake_backend, grader=grader).run(_request())
        assert not result.is_publishable

    async def test_grader_exception_assumes_clean(self, fake_backend):
        class Broken:
            def check(self, data):
                raise ValueError("bad image")

        result = await GenerationOrchestrator(fake_backend, grader=Broken()).run(_request())
        assert result.quality_score == 100.0
