from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from research_reflection.agents.orchestrator import ReflectionOrchestrator
from research_reflection.config import ReflectionConfig
from research_reflection.models.evaluation import (
    Claim,
    ClaimConfidence,
    ConfidenceResult,
    Source,
)
from research_reflection.models.interfaces import ChatResponse
from research_reflection.models.reflection import (
    Gap,
    ReflectionContext,
    ReflectionStatus,
    RefinementResult,
    SelfCritique,
)
from research_reflection.services.working_memory import InMemoryWorkingMemoryStore


CRITIQUE = SelfCritique(
    overall_assessment="Reasonable answer, lacks citations.",
    strengths=["Clear"],
    weaknesses=["Uncited"],
    critical_issues=[],
    suggested_improvements=["Cite sources"],
    confidence=0.75,
)


def _gap(gap_id: str, severity: str = "major") -> Gap:
    return Gap(
        id=gap_id,
        type="missing_info",
        severity=severity,
        description=f"gap {gap_id}",
        suggested_action=f"fix {gap_id}",
        confidence=0.7,
    )


def _confidence(value: float, claim_ids: tuple[str, ...] = ()) -> ConfidenceResult:
    return ConfidenceResult(
        overall_confidence=value,
        level="medium",
        claim_confidences=[
            ClaimConfidence(claim_id=cid, claim_text=cid, confidence=value, supporting_sources=1)
            for cid in claim_ids
        ],
    )


def _refine(answer, critique, gaps, sources, query, session_id=None):
    return RefinementResult(
        final_answer=f"{answer} +",
        total_improvement=0.5,
        gaps_resolved=0,
        gaps_remaining=len(gaps),
    )


def _build(scores: list, *, gaps=None, working_memory=None):
    gap_detector = MagicMock()
    gap_detector.detect_gaps = AsyncMock(return_value=gaps if gaps is not None else [_gap("g1")])
    critique_engine = MagicMock()
    critique_engine.critique_synthesis = AsyncMock(return_value=CRITIQUE)
    refinement_engine = MagicMock()
    refinement_engine.refine_answer = AsyncMock(side_effect=_refine)
    scorer = MagicMock()
    scorer.score_confidence = AsyncMock(
        side_effect=[s if isinstance(s, Exception) else _confidence(s) for s in scores]
    )
    sink = MagicMock()
    sink.emit = AsyncMock()
    orchestrator = ReflectionOrchestrator(
        scorer,
        event_sink=sink,
        working_memory=working_memory,
        gap_detector=gap_detector,
        critique_engine=critique_engine,
        refinement_engine=refinement_engine,
    )
    return orchestrator, scorer, sink, gap_detector, refinement_engine


class TestTermination:
    @pytest.mark.asyncio
    async def test_zero_iterations_short_circuits_without_collaborators(self):
        orchestrator, scorer, sink, gap_detector, refinement_engine = _build([])

        result = await orchestrator.reflect("sess-1", "draft", ReflectionConfig(max_iterations=0))

        assert result.iteration_count == 0
        assert result.final_answer == "draft"
        assert result.final_confidence == 0.0
        assert result.reflection_trace == []
        assert result.status == ReflectionStatus.STOPPED_MAX_ITERATIONS
        scorer.score_confidence.assert_not_awaited()
        gap_detector.detect_gaps.assert_not_awaited()
        refinement_engine.refine_answer.assert_not_awaited()
        sink.emit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stops_on_quality_target(self):
        orchestrator, scorer, *_ = _build([0.7, 0.92, 0.95])
        config = ReflectionConfig(max_iterations=5, quality_target_threshold=0.9)

        result = await orchestrator.reflect("sess-1", "draft", config)

        assert result.iteration_count == 2
        assert result.status == ReflectionStatus.STOPPED_QUALITY_TARGET
        assert result.final_answer == "draft + +"
        assert result.final_confidence == 0.92
        assert scorer.score_confidence.await_count == 2

    @pytest.mark.asyncio
    async def test_stops_on_diminishing_returns_keeping_latest_answer(self):
        orchestrator, *_ = _build([0.5, 0.52, 0.8])
        config = ReflectionConfig(max_iterations=3, min_improvement_threshold=0.05)

        result = await orchestrator.reflect("sess-1", "draft", config)

        assert result.iteration_count == 2
        assert result.status == ReflectionStatus.STOPPED_DIMINISHING_RETURNS
        assert result.final_answer == "draft + +"
        assert result.final_confidence == 0.52
        assert result.improvements == pytest.approx([0.5, 0.02])

    @pytest.mark.asyncio
    async def test_small_first_improvement_does_not_stop(self):
        orchestrator, *_ = _build([0.01, 0.3])
        config = ReflectionConfig(max_iterations=2, min_improvement_threshold=0.05)

        result = await orchestrator.reflect("sess-1", "draft", config)

        assert result.iteration_count == 2
        assert result.status == ReflectionStatus.STOPPED_MAX_ITERATIONS

    @pytest.mark.asyncio
    async def test_failure_keeps_last_completed_iteration(self):
        orchestrator, _, sink, *_ = _build([0.6, RuntimeError("scorer unavailable")])
        config = ReflectionConfig(max_iterations=3)

        result = await orchestrator.reflect("sess-1", "draft", config)

        assert result.status == ReflectionStatus.STOPPED_ERROR
        assert result.error == "scorer unavailable"
        assert result.iteration_count == 1
        assert result.final_answer == "draft +"
        assert result.final_confidence == 0.6
        assert len(result.reflection_trace) == 1
        name, payload = sink.emit.call_args_list[-1].args[1:]
        assert name == "reflection_completed"
        assert payload["status"] == "stopped_error"
        assert payload["error"] == "scorer unavailable"

    @pytest.mark.asyncio
    async def test_failure_in_first_iteration_returns_initial_answer(self):
        orchestrator, *_ = _build([RuntimeError("boom")])

        result = await orchestrator.reflect("sess-1", "draft", ReflectionConfig(max_iterations=2))

        assert result.status == ReflectionStatus.STOPPED_ERROR
        assert result.iteration_count == 0
        assert result.final_answer == "draft"
        assert result.final_confidence == 0.0


class TestIterationWiring:
    @pytest.mark.asyncio
    async def test_threads_context_and_previous_confidence(self):
        orchestrator, scorer, _, gap_detector, _ = _build([0.5, 0.6])
        claims = [Claim(id="c1", text="claim")]
        sources = [Source(id="s1", url="https://s.example")]
        initial = _confidence(0.4, ("c1",))
        context = ReflectionContext(
            query="What is TS?",
            sources=sources,
            claims=claims,
            initial_confidence=initial,
        )
        scorer.score_confidence = AsyncMock(
            side_effect=[_confidence(0.5, ("c1", "c2")), _confidence(0.6)]
        )

        result = await orchestrator.reflect(
            "sess-1", "draft", ReflectionConfig(max_iterations=2), context
        )

        first_call, second_call = gap_detector.detect_gaps.call_args_list
        assert first_call.args == ("draft", sources, claims, initial.claim_confidences, [], "What is TS?", "sess-1")
        assert [c.claim_id for c in second_call.args[3]] == ["c1", "c2"]
        assert second_call.args[0] == "draft +"
        assert result.reflection_trace[0].confidence_before == 0.4
        assert result.reflection_trace[0].improvement == pytest.approx(0.1)
        assert result.reflection_trace[1].confidence_before == 0.5
        assert scorer.score_confidence.call_args_list[0].args == ("draft +", sources, "sess-1")

    @pytest.mark.asyncio
    async def test_trace_and_gap_accumulation(self):
        orchestrator, *_ = _build([0.5, 0.7], gaps=[_gap("g1", "critical"), _gap("g2")])

        result = await orchestrator.reflect("sess-1", "draft", ReflectionConfig(max_iterations=2))

        assert [g.id for g in result.identified_gaps] == ["g1", "g2", "g1", "g2"]
        step = result.reflection_trace[0]
        assert step.iteration == 1
        assert step.critique == CRITIQUE.overall_assessment
        assert step.confidence_after == 0.5

    @pytest.mark.asyncio
    async def test_gaps_forwarded_to_working_memory(self):
        memory = InMemoryWorkingMemoryStore()
        memory.initialize("sess-1", "What is TS?")
        orchestrator, *_ = _build([0.95], gaps=[_gap("g1", "critical")], working_memory=memory)

        await orchestrator.reflect("sess-1", "draft", ReflectionConfig(max_iterations=2))

        stored = memory.get("sess-1").identified_gaps
        assert [(g.description, g.severity, g.suggested_action) for g in stored] == [
            ("gap g1", "critical", "fix g1")
        ]

    @pytest.mark.asyncio
    async def test_working_memory_errors_do_not_stop_reflection(self):
        memory = InMemoryWorkingMemoryStore()  # session never initialized
        orchestrator, *_ = _build([0.5, 0.95], working_memory=memory)

        result = await orchestrator.reflect("sess-1", "draft", ReflectionConfig(max_iterations=2))

        assert result.status == ReflectionStatus.STOPPED_QUALITY_TARGET
        assert result.iteration_count == 2

    @pytest.mark.asyncio
    async def test_event_sequence(self):
        orchestrator, _, sink, *_ = _build([0.5, 0.7])
        config = ReflectionConfig(max_iterations=2, quality_target_threshold=0.9)

        await orchestrator.reflect("sess-1", "draft", config)

        events = [c.args[1:] for c in sink.emit.call_args_list]
        assert [name for name, _ in events] == [
            "reflection_started",
            "reflection_iteration",
            "reflection_iteration",
            "reflection_completed",
        ]
        assert events[0][1] == {
            "max_iterations": 2,
            "quality_target_threshold": 0.9,
            "min_improvement_threshold": 0.05,
        }
        iteration = events[2][1]
        assert iteration["iteration"] == 2
        assert iteration["confidence_before"] == 0.5
        assert iteration["confidence_after"] == 0.7
        assert iteration["critique_confidence"] == 0.75
        assert iteration["gaps_found"] == 1
        assert events[3][1]["iteration_count"] == 2
        assert events[3][1]["status"] == "stopped_max_iterations"


class ScriptedChatClient:
    """Answers critique and refinement prompts with canned text."""

    def __init__(self):
        self.calls: list[list[dict[str, str]]] = []

    async def chat(self, messages, tools=None):
        self.calls.append(messages)
        system = messages[0]["content"]
        if "critical evaluator" in system:
            return ChatResponse(
                content=json.dumps(
                    {
                        "overallAssessment": "Accurate overview that needs more detail.",
                        "strengths": ["Explains static typing clearly"],
                        "weaknesses": ["No mention of tooling"],
                        "criticalIssues": ["Release year is missing"],
                        "suggestedImprovements": ["Add the release year and tooling details"],
                    }
                )
            )
        answer = messages[1]["content"].split("):\n", 1)[1].split("\n\nCRITIQUE:", 1)[0]
        return ChatResponse(content=f"{answer} It was released in 2012 [1].")


@pytest.mark.asyncio
async def test_full_loop_runs_all_iterations_below_target():
    answer = (
        "TypeScript adds static typing to JavaScript, which helps developers catch errors "
        "early during development. It compiles to plain JavaScript and runs anywhere JavaScript "
        "runs. Many large projects adopt it for maintainability and better editor tooling, "
        "including autocompletion and refactoring support across modern code editors."
    )
    assert len(answer.split()) == 44
    gaps = [_gap("g1", "critical"), _gap("g2", "major"), _gap("g3", "minor")]
    sources = [
        Source(id=f"s{i}", url=f"https://{i}.example", title=f"Source {i}", content="TypeScript")
        for i in range(1, 4)
    ]
    gap_detector = MagicMock()
    gap_detector.detect_gaps = AsyncMock(return_value=gaps)
    scorer = MagicMock()
    scorer.score_confidence = AsyncMock(side_effect=[_confidence(0.6), _confidence(0.75)])
    chat = ScriptedChatClient()
    orchestrator = ReflectionOrchestrator(scorer, chat_client=chat, gap_detector=gap_detector)
    config = ReflectionConfig(max_iterations=2, quality_target_threshold=0.9)
    context = ReflectionContext(query="What does TypeScript add?", sources=sources)

    result = await orchestrator.reflect("sess-ts", answer, config, context)

    assert result.iteration_count == 2
    assert result.status == ReflectionStatus.STOPPED_MAX_ITERATIONS
    assert result.final_confidence == 0.75
    assert result.improvements == pytest.approx([0.6, 0.15])
    assert result.final_answer.startswith(answer)
    # One critique plus three refinement passes per iteration.
    assert len(chat.calls) == 8
    assert result.final_answer.count("It was released in 2012 [1].") == 6
    assert len(result.identified_gaps) == 6
    assert result.reflection_trace[0].critique == "Accurate overview that needs more detail."
