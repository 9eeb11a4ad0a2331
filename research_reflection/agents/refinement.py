from __future__ import annotations

import re
import time

from loguru import logger

from research_reflection.config import settings
from research_reflection.llm_client import client as llm_client
from research_reflection.llm_client import get_model
from research_reflection.models.evaluation import Source
from research_reflection.models.interfaces import ChatClient, EventSink
from research_reflection.models.reflection import (
    Gap,
    RefinementAttempt,
    RefinementResult,
    SelfCritique,
    sort_by_severity,
)
from research_reflection.services import logger as log_service
from research_reflection.services import streaming
from research_reflection.services.event_sink import emit_event
from research_reflection.services.prompt_store import render_prompt


MAX_REFINEMENT_PASSES = 3
MIN_PASS_IMPROVEMENT = 0.1

_WORD_SPLIT_RE = re.compile(r"\W+")
_CITATION_RE = re.compile(r"\[\d+\]")


def extract_keywords(text: str) -> list[str]:
    return [word for word in _WORD_SPLIT_RE.split(text.lower()) if len(word) > 3]


def count_keyword_matches(text: str, keywords: list[str]) -> int:
    lowered = text.lower()
    return sum(1 for keyword in keywords if keyword in lowered)


def identify_addressed_gaps(before: str, after: str, gaps: list[Gap]) -> list[str]:
    """Ids of gaps whose keywords show up at least twice more often after the rewrite."""
    addressed: list[str] = []
    for gap in gaps:
        keywords = extract_keywords(f"{gap.description} {gap.suggested_action}")
        if count_keyword_matches(after, keywords) > count_keyword_matches(before, keywords) + 1:
            addressed.append(gap.id)
    return addressed


def calculate_improvement(before: str, after: str, addressed_count: int, total_gaps: int) -> float:
    gap_factor = addressed_count / total_gaps if total_gaps > 0 else 0.0

    if before:
        length_ratio = len(after) / len(before)
    else:
        length_ratio = 1.0 if not after else float("inf")
    if 0.9 <= length_ratio <= 1.3:
        length_factor = 1.0
    else:
        length_factor = max(0.0, 1 - abs(1 - length_ratio))

    structural_factor = (
        1.0 if len(_CITATION_RE.findall(after)) > len(_CITATION_RE.findall(before)) else 0.5
    )

    improvement = gap_factor * 0.6 + length_factor * 0.2 + structural_factor * 0.2
    return min(max(improvement, 0.0), 1.0)


def calculate_total_improvement(history: list[RefinementAttempt]) -> float:
    """Weighted mean of pass improvements; pass i (1-indexed) weighs 1/i."""
    if not history:
        return 0.0
    weights = [1 / (idx + 1) for idx in range(len(history))]
    weighted = sum(attempt.improvement * weight for attempt, weight in zip(history, weights))
    return weighted / sum(weights)


def fallback_result(original_answer: str, gaps: list[Gap]) -> RefinementResult:
    return RefinementResult(
        final_answer=original_answer,
        refinement_history=[],
        total_improvement=0.0,
        gaps_resolved=0,
        gaps_remaining=len(gaps),
    )


def _numbered(items: list[str]) -> str:
    return "\n".join(f"{idx}. {item}" for idx, item in enumerate(items, 1))


def _format_critique(critique: SelfCritique) -> str:
    return (
        f"Strengths:\n{_numbered(critique.strengths)}\n\n"
        f"Weaknesses:\n{_numbered(critique.weaknesses)}\n\n"
        f"Critical Issues:\n{_numbered(critique.critical_issues)}\n\n"
        f"Suggested Improvements:\n{_numbered(critique.suggested_improvements)}"
    )


def _format_gaps(gaps: list[Gap]) -> str:
    return "\n\n".join(
        f"{idx}. [{gap.severity.upper()}] {gap.type}: {gap.description}\n"
        f"   Suggested Action: {gap.suggested_action}"
        for idx, gap in enumerate(sort_by_severity(gaps), 1)
    )


def _format_previous_attempts(history: list[RefinementAttempt]) -> str:
    if not history:
        return ""
    lines = "\n".join(
        f"Pass {attempt.iteration}: Addressed {len(attempt.addressed_gaps)} gaps, "
        f"{attempt.improvement * 100:.1f}% improvement"
        for attempt in history
    )
    return f"\nPREVIOUS REFINEMENT ATTEMPTS:\n{lines}\n"


class RefinementEngine:
    """Rewrites an answer in up to three passes against a critique and its gaps."""

    name = "refinement"

    def __init__(self, chat_client: ChatClient | None = None, event_sink: EventSink | None = None):
        self.client = chat_client
        self.event_sink = event_sink

    def build_prompt(
        self,
        current_answer: str,
        critique: SelfCritique,
        gaps: list[Gap],
        sources: list[Source],
        query: str,
        iteration: int,
        history: list[RefinementAttempt],
    ) -> str:
        sources_text = "\n".join(
            f"[{idx}] {source.title or 'Untitled'} ({source.url})"
            for idx, source in enumerate(sources, 1)
        )
        return render_prompt(
            "refinement.user",
            query=query,
            answer_label="Original" if iteration == 1 else f"After Pass {iteration - 1}",
            current_answer=current_answer,
            critique_text=_format_critique(critique),
            gap_count=len(gaps),
            gaps_text=_format_gaps(gaps),
            source_count=len(sources),
            sources_text=sources_text,
            previous_attempts_text=_format_previous_attempts(history),
        )

    async def _refinement_pass(
        self,
        current_answer: str,
        critique: SelfCritique,
        gaps: list[Gap],
        sources: list[Source],
        query: str,
        iteration: int,
        history: list[RefinementAttempt],
    ) -> RefinementAttempt:
        active_client = self.client or llm_client(
            model=get_model(settings.refinement_model), caller=self.name
        )
        response = await active_client.chat(
            [
                {"role": "system", "content": render_prompt("refinement.system")},
                {
                    "role": "user",
                    "content": self.build_prompt(
                        current_answer, critique, gaps, sources, query, iteration, history
                    ),
                },
            ]
        )
        refined_answer = response.content.strip()
        addressed = identify_addressed_gaps(current_answer, refined_answer, gaps)
        return RefinementAttempt(
            iteration=iteration,
            refined_answer=refined_answer,
            improvement=calculate_improvement(
                current_answer, refined_answer, len(addressed), len(gaps)
            ),
            addressed_gaps=addressed,
            remaining_gaps=[gap.id for gap in gaps if gap.id not in addressed],
        )

    async def refine_answer(
        self,
        original_answer: str,
        critique: SelfCritique,
        gaps: list[Gap],
        sources: list[Source],
        query: str,
        session_id: str | None = None,
    ) -> RefinementResult:
        t0 = time.monotonic()
        critical_gap_count = sum(1 for gap in gaps if gap.severity == "critical")
        if session_id:
            await emit_event(
                self.event_sink,
                streaming.refinement_started(
                    session_id,
                    original_answer_length=len(original_answer),
                    gap_count=len(gaps),
                    critical_gap_count=critical_gap_count,
                    source_count=len(sources),
                ),
            )
        log_service.log_reflection_step(
            session_id,
            self.name,
            "started",
            {"original_answer_length": len(original_answer), "gap_count": len(gaps)},
        )

        history: list[RefinementAttempt] = []
        current_answer = original_answer
        remaining_gaps = list(gaps)

        for iteration in range(1, MAX_REFINEMENT_PASSES + 1):
            if session_id:
                await emit_event(
                    self.event_sink,
                    streaming.refinement_pass(
                        session_id, iteration=iteration, remaining_gaps=len(remaining_gaps)
                    ),
                )
            try:
                attempt = await self._refinement_pass(
                    current_answer, critique, remaining_gaps, sources, query, iteration, history
                )
            except Exception as exc:
                if not history:
                    return await self._fail(original_answer, gaps, exc, t0, session_id)
                logger.warning(f"Refinement pass {iteration} failed, keeping {len(history)} passes: {exc}")
                break

            history.append(attempt)
            current_answer = attempt.refined_answer
            addressed = set(attempt.addressed_gaps)
            remaining_gaps = [gap for gap in remaining_gaps if gap.id not in addressed]
            logger.debug(
                f"Refinement pass {iteration}: {len(addressed)} gaps addressed, "
                f"{len(remaining_gaps)} remaining"
            )

            if not remaining_gaps:
                break
            if iteration > 1 and attempt.improvement < MIN_PASS_IMPROVEMENT:
                logger.info(f"Stopping refinement early: improvement {attempt.improvement:.3f}")
                break

        result = RefinementResult(
            final_answer=current_answer,
            refinement_history=history,
            total_improvement=calculate_total_improvement(history),
            gaps_resolved=len(gaps) - len(remaining_gaps),
            gaps_remaining=len(remaining_gaps),
        )

        execution_time_ms = int((time.monotonic() - t0) * 1000)
        log_service.log_reflection_step(
            session_id,
            self.name,
            "completed",
            {
                "pass_count": len(history),
                "gaps_resolved": result.gaps_resolved,
                "gaps_remaining": result.gaps_remaining,
                "total_improvement": round(result.total_improvement, 3),
                "execution_time_ms": execution_time_ms,
            },
        )
        if session_id:
            await emit_event(
                self.event_sink,
                streaming.refinement_completed(session_id, result, execution_time_ms),
            )
        return result

    async def _fail(
        self,
        original_answer: str,
        gaps: list[Gap],
        exc: Exception,
        t0: float,
        session_id: str | None,
    ) -> RefinementResult:
        execution_time_ms = int((time.monotonic() - t0) * 1000)
        log_service.log_reflection_step(
            session_id,
            self.name,
            "error",
            {"error": str(exc), "execution_time_ms": execution_time_ms},
        )
        if session_id:
            await emit_event(
                self.event_sink,
                streaming.refinement_failed(session_id, str(exc), execution_time_ms),
            )
        logger.warning(f"Returning original answer after refinement failure: {exc}")
        return fallback_result(original_answer, gaps)
