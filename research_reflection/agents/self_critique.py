from __future__ import annotations

import time
from typing import Sequence

from loguru import logger

from research_reflection.config import settings
from research_reflection.llm_client import client as llm_client
from research_reflection.llm_client import get_model
from research_reflection.models.evaluation import ConfidenceResult, Source
from research_reflection.models.interfaces import ChatClient, EventSink
from research_reflection.models.reflection import Gap, SelfCritique, sort_by_severity
from research_reflection.services import logger as log_service
from research_reflection.services import streaming
from research_reflection.services.event_sink import emit_event
from research_reflection.services.llm_parsing import parse_critique_payload
from research_reflection.services.prompt_store import render_prompt


FALLBACK_CONFIDENCE = 0.3
SOURCE_EXCERPT_CHARS = 200


def truncate(text: str | None, max_length: int) -> str:
    if not text:
        return ""
    return text[:max_length] + "..." if len(text) > max_length else text


def calculate_critique_confidence(
    strengths: Sequence[str],
    weaknesses: Sequence[str],
    critical_issues: Sequence[str],
    suggested_improvements: Sequence[str],
    *,
    gap_count: int,
    source_count: int,
) -> float:
    """Score how much the critique itself can be trusted, in [0, 1].

    Additive over a 0.5 baseline:
      +0.3  strengths, weaknesses and suggested improvements all present
      +0.15 average item length above 50 chars, else +0.1 above 30
      +0.2  both strengths and weaknesses present
      +0.1  gaps were found and critical issues reported, else +0.05 when neither
      +0.1  at least one source was available
    """
    confidence = 0.5

    if strengths and weaknesses and suggested_improvements:
        confidence += 0.3

    item_count = len(strengths) + len(weaknesses) + len(suggested_improvements)
    if item_count:
        avg_length = (
            len(" ".join(strengths))
            + len(" ".join(weaknesses))
            + len(" ".join(suggested_improvements))
        ) / item_count
        if avg_length > 50:
            confidence += 0.15
        elif avg_length > 30:
            confidence += 0.1

    if strengths and weaknesses:
        confidence += 0.2

    if gap_count > 0 and critical_issues:
        confidence += 0.1
    elif gap_count == 0 and not critical_issues:
        confidence += 0.05

    if source_count > 0:
        confidence += 0.1

    return min(max(confidence, 0.0), 1.0)


def fallback_critique(reason: str) -> SelfCritique:
    return SelfCritique(
        overall_assessment=f"Unable to generate comprehensive critique: {reason}",
        strengths=["Answer was generated successfully"],
        weaknesses=["Automated critique could not be completed"],
        critical_issues=["Self-critique system failure - manual review recommended"],
        suggested_improvements=[
            "Retry self-critique process",
            "Perform manual quality review",
            "Verify LLM service availability",
        ],
        confidence=FALLBACK_CONFIDENCE,
    )


def _format_sources(sources: list[Source]) -> str:
    return "\n".join(
        f"[{idx}] {source.title or 'Untitled'} ({source.url})\n"
        f"   {truncate(source.content, SOURCE_EXCERPT_CHARS)}"
        for idx, source in enumerate(sources, 1)
    )


def _format_gaps(gaps: list[Gap]) -> str:
    return "\n".join(
        f"[{idx}] {gap.severity.upper()}: {gap.type} - {gap.description}"
        for idx, gap in enumerate(sort_by_severity(gaps), 1)
    )


def _format_confidence(confidence_result: ConfidenceResult) -> str:
    return (
        f"Overall: {confidence_result.overall_confidence:.3f} ({confidence_result.level})\n"
        f"Claim-level confidences: {len(confidence_result.claim_confidences)} claims analyzed\n"
        f"Low confidence claims: {len(confidence_result.low_confidence_claims())}"
    )


class SelfCritiqueEngine:
    """Asks the model for a structured critique of an answer.

    Never raises: any model or parsing failure yields `fallback_critique`.
    """

    name = "self_critique"

    def __init__(self, chat_client: ChatClient | None = None, event_sink: EventSink | None = None):
        self.client = chat_client
        self.event_sink = event_sink

    def build_prompt(
        self,
        answer: str,
        sources: list[Source],
        query: str,
        confidence_result: ConfidenceResult,
        gaps: list[Gap],
    ) -> str:
        return render_prompt(
            "self_critique.user",
            query=query,
            answer=answer,
            source_count=len(sources),
            sources_text=_format_sources(sources),
            gap_count=len(gaps),
            gaps_text=_format_gaps(gaps),
            confidence_text=_format_confidence(confidence_result),
        )

    async def critique_synthesis(
        self,
        answer: str,
        sources: list[Source],
        query: str,
        confidence_result: ConfidenceResult,
        gaps: list[Gap],
        session_id: str | None = None,
    ) -> SelfCritique:
        t0 = time.monotonic()
        if session_id:
            await emit_event(
                self.event_sink,
                streaming.self_critique_started(
                    session_id,
                    answer_length=len(answer),
                    source_count=len(sources),
                    gap_count=len(gaps),
                ),
            )
        log_service.log_reflection_step(
            session_id,
            self.name,
            "started",
            {"answer_length": len(answer), "source_count": len(sources), "gap_count": len(gaps)},
        )

        try:
            active_client = self.client or llm_client(
                model=get_model(settings.critique_model), caller=self.name
            )
            response = await active_client.chat(
                [
                    {"role": "system", "content": render_prompt("self_critique.system")},
                    {
                        "role": "user",
                        "content": self.build_prompt(answer, sources, query, confidence_result, gaps),
                    },
                ]
            )
            payload = parse_critique_payload(response.content)
        except Exception as exc:
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
                    streaming.self_critique_failed(session_id, str(exc), execution_time_ms),
                )
            logger.warning(f"Falling back to default critique: {exc}")
            return fallback_critique(str(exc))

        critique = SelfCritique(
            overall_assessment=payload.overall_assessment,
            strengths=payload.strengths,
            weaknesses=payload.weaknesses,
            critical_issues=payload.critical_issues,
            suggested_improvements=payload.suggested_improvements,
            confidence=calculate_critique_confidence(
                payload.strengths,
                payload.weaknesses,
                payload.critical_issues,
                payload.suggested_improvements,
                gap_count=len(gaps),
                source_count=len(sources),
            ),
        )

        execution_time_ms = int((time.monotonic() - t0) * 1000)
        log_service.log_reflection_step(
            session_id,
            self.name,
            "completed",
            {
                "confidence": round(critique.confidence, 3),
                "strengths": len(critique.strengths),
                "weaknesses": len(critique.weaknesses),
                "critical_issues": len(critique.critical_issues),
                "execution_time_ms": execution_time_ms,
            },
        )
        if session_id:
            await emit_event(
                self.event_sink,
                streaming.self_critique_completed(session_id, critique, execution_time_ms),
            )
        return critique

    async def generate_critique(self, answer: str, gaps: list[Gap], session_id: str) -> str:
        """Deprecated: use `critique_synthesis`. Returns only the overall assessment."""
        logger.warning("generate_critique is deprecated, use critique_synthesis instead")
        neutral = ConfidenceResult(overall_confidence=0.5, level="medium")
        critique = await self.critique_synthesis(answer, [], "", neutral, gaps, session_id)
        return critique.overall_assessment
