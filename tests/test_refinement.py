from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from research_reflection.agents.refinement import (
    MAX_REFINEMENT_PASSES,
    RefinementEngine,
    calculate_improvement,
    calculate_total_improvement,
    count_keyword_matches,
    extract_keywords,
    identify_addressed_gaps,
)
from research_reflection.models.evaluation import Source
from research_reflection.models.interfaces import ChatResponse
from research_reflection.models.reflection import Gap, RefinementAttempt, SelfCritique


CRITIQUE = SelfCritique(
    overall_assessment="Needs dates.",
    strengths=["Clear intro"],
    weaknesses=["No dates"],
    critical_issues=["Missing release year"],
    suggested_improvements=["Add the release year"],
    confidence=0.8,
)
SOURCES = [Source(id="s1", url="https://ts.example", title="TS Docs")]
ORIGINAL = "TypeScript is a language."


def _gap(gap_id: str, severity: str = "major", description: str = "Missing release date information") -> Gap:
    return Gap(
        id=gap_id,
        type="missing_info",
        severity=severity,
        description=description,
        suggested_action="Mention release date",
        confidence=0.7,
    )


def _engine(*responses) -> tuple[RefinementEngine, MagicMock, MagicMock]:
    client = MagicMock()
    client.chat = AsyncMock(
        side_effect=[r if isinstance(r, Exception) else ChatResponse(content=r) for r in responses]
    )
    sink = MagicMock()
    sink.emit = AsyncMock()
    return RefinementEngine(client, sink), client, sink


class TestHeuristics:
    def test_extract_keywords_keeps_long_words_with_duplicates(self):
        assert extract_keywords("Add the DATE, add the date!") == ["date", "date"]

    def test_count_keyword_matches_is_substring_based(self):
        assert count_keyword_matches("It was released", ["release", "date"]) == 1

    def test_gap_addressed_when_keywords_grow_by_more_than_one(self):
        gap = _gap("g1")
        after = "TypeScript was released with date information in 2012 [1]."
        assert identify_addressed_gaps(ORIGINAL, after, [gap]) == ["g1"]

    def test_gap_not_addressed_for_single_extra_match(self):
        gap = Gap(
            id="g1",
            type="weak_claim",
            severity="minor",
            description="year",
            suggested_action="",
            confidence=0.4,
        )
        assert identify_addressed_gaps("plain", "plain year", [gap]) == []

    def test_calculate_improvement_weights(self):
        # gap 0.5*0.6 + length ratio 1.4 -> 0.6*0.2 + more citations 1.0*0.2
        assert calculate_improvement("abcdefghij", "abcdefghij [1]", 1, 2) == pytest.approx(0.62)

    def test_calculate_improvement_without_gaps(self):
        assert calculate_improvement("same text", "same text", 0, 0) == pytest.approx(0.3)

    def test_calculate_improvement_drastic_shrink(self):
        assert calculate_improvement("a" * 100, "a" * 10, 0, 1) == pytest.approx(0.1 + 0.2 * 0.1)

    def test_calculate_improvement_from_empty_answer(self):
        assert calculate_improvement("", "", 0, 0) == pytest.approx(0.3)
        assert calculate_improvement("", "new text", 0, 0) == pytest.approx(0.1)

    def test_total_improvement_weights_earlier_passes_more(self):
        history = [
            RefinementAttempt(iteration=1, refined_answer="a", improvement=0.9),
            RefinementAttempt(iteration=2, refined_answer="b", improvement=0.3),
        ]
        assert calculate_total_improvement(history) == pytest.approx(0.7)
        assert calculate_total_improvement([]) == 0.0


class TestRefineAnswer:
    @pytest.mark.asyncio
    async def test_no_gaps_runs_single_pass(self):
        engine, client, _ = _engine("TypeScript is a typed language.")

        result = await engine.refine_answer(ORIGINAL, CRITIQUE, [], SOURCES, "q")

        assert client.chat.await_count == 1
        assert result.final_answer == "TypeScript is a typed language."
        assert result.gaps_resolved == 0
        assert result.gaps_remaining == 0
        assert len(result.refinement_history) == 1

    @pytest.mark.asyncio
    async def test_stops_once_all_gaps_addressed(self):
        refined = "  TypeScript was released with date information in 2012 [1].  "
        engine, client, _ = _engine(refined)
        gaps = [_gap("g1")]

        result = await engine.refine_answer(ORIGINAL, CRITIQUE, gaps, SOURCES, "q")

        assert client.chat.await_count == 1
        assert result.final_answer == refined.strip()
        assert result.gaps_resolved == 1
        assert result.gaps_remaining == 0
        assert result.refinement_history[0].addressed_gaps == ["g1"]

    @pytest.mark.asyncio
    async def test_runs_at_most_three_passes(self):
        engine, client, sink = _engine("Pass one text.", "Pass two text.", "Pass 3 a text.", "unused")
        gaps = [_gap("g1"), _gap("g2", "critical")]

        result = await engine.refine_answer(ORIGINAL, CRITIQUE, gaps, SOURCES, "q", "sess-1")

        assert client.chat.await_count == MAX_REFINEMENT_PASSES
        assert [a.iteration for a in result.refinement_history] == [1, 2, 3]
        assert result.gaps_resolved + result.gaps_remaining == len(gaps)
        assert result.final_answer == "Pass 3 a text."
        names = [c.args[1] for c in sink.emit.call_args_list]
        assert names == [
            "refinement_started",
            "refinement_pass",
            "refinement_pass",
            "refinement_pass",
            "refinement_completed",
        ]
        assert sink.emit.call_args_list[0].args[2]["critical_gap_count"] == 1

    @pytest.mark.asyncio
    async def test_stops_after_low_improvement_beyond_first_pass(self):
        engine, client, _ = _engine("one", "two", "three")

        with patch(
            "research_reflection.agents.refinement.calculate_improvement",
            side_effect=[0.05, 0.05, 0.9],
        ):
            result = await engine.refine_answer(ORIGINAL, CRITIQUE, [_gap("g1")], SOURCES, "q")

        assert client.chat.await_count == 2
        assert result.final_answer == "two"
        assert result.total_improvement == pytest.approx(0.05)

    @pytest.mark.asyncio
    async def test_first_pass_failure_returns_fallback(self):
        engine, _, sink = _engine(RuntimeError("model offline"))
        gaps = [_gap("g1"), _gap("g2")]

        result = await engine.refine_answer(ORIGINAL, CRITIQUE, gaps, SOURCES, "q", "sess-1")

        assert result.final_answer == ORIGINAL
        assert result.refinement_history == []
        assert result.total_improvement == 0.0
        assert result.gaps_resolved == 0
        assert result.gaps_remaining == 2
        name, payload = sink.emit.call_args_list[-1].args[1:]
        assert name == "refinement_failed"
        assert payload["error"] == "model offline"

    @pytest.mark.asyncio
    async def test_later_pass_failure_keeps_completed_passes(self):
        engine, _, sink = _engine("First rewrite.", RuntimeError("rate limited"))
        gaps = [_gap("g1"), _gap("g2")]

        result = await engine.refine_answer(ORIGINAL, CRITIQUE, gaps, SOURCES, "q", "sess-1")

        assert result.final_answer == "First rewrite."
        assert len(result.refinement_history) == 1
        assert result.gaps_resolved + result.gaps_remaining == 2
        assert sink.emit.call_args_list[-1].args[1] == "refinement_completed"

    @pytest.mark.asyncio
    async def test_prompts_label_passes_and_summarize_history(self):
        engine, client, _ = _engine("Same size text.", "Same size text!", "Same size text?")
        gaps = [_gap("g1", "minor", "Minor wording"), _gap("g2", "critical", "Critical hole")]

        await engine.refine_answer("Same size text..", CRITIQUE, gaps, SOURCES, "What is TS?")

        first = client.chat.call_args_list[0].args[0][1]["content"]
        second = client.chat.call_args_list[1].args[0][1]["content"]
        assert "CURRENT ANSWER (Original):" in first
        assert "PREVIOUS REFINEMENT ATTEMPTS" not in first
        assert first.index("[CRITICAL] missing_info: Critical hole") < first.index(
            "[MINOR] missing_info: Minor wording"
        )
        assert "1. Missing release year" in first
        assert "[1] TS Docs (https://ts.example)" in first
        assert "CURRENT ANSWER (After Pass 1):" in second
        assert "Pass 1: Addressed 0 gaps, 30.0% improvement" in second
