from __future__ import annotations

import asyncio
import time
from typing import Any
from uuid import uuid4

from loguru import logger

from research_reflection.config import settings
from research_reflection.llm_client import client as llm_client
from research_reflection.models.evaluation import (
    Claim,
    ClaimConfidence,
    EntailmentResult,
    Source,
)
from research_reflection.models.interfaces import ChatClient, EventSink
from research_reflection.models.reflection import GAP_TYPES, Gap, StrategyOutcome
from research_reflection.services import logger as log_service
from research_reflection.services import streaming
from research_reflection.services.event_sink import emit_event
from research_reflection.services.llm_parsing import LLMParseError, parse_gap_suggestions
from research_reflection.services.prompt_store import render_prompt


WEAK_CLAIM_THRESHOLD = 0.5
MISSING_INFO_CONFIDENCE = 0.7
COVERAGE_GAP_CONFIDENCE = 0.95
CONTRADICTION_CONFIDENCE = 0.9


class GapDetector:
    """Finds weaknesses in an answer with four independent strategies.

    Strategies:
      1. Weak claims: per-claim confidence below 0.5
      2. Missing information: one LLM pass over query, answer and source titles
      3. Source coverage: claims with neither counted nor entailment-level support
      4. Contradictions: claims an entailment check marked as contradicted

    The strategies run concurrently; results are concatenated in the order
    above so gap ordering and emitted events do not depend on timing.
    """

    name = "gap_detector"

    def __init__(
        self,
        chat_client: ChatClient | None = None,
        event_sink: EventSink | None = None,
        *,
        max_sources: int | None = None,
    ):
        self.client = chat_client
        self.event_sink = event_sink
        limit = settings.missing_info_max_sources if max_sources is None else max_sources
        self.max_sources = max(int(limit), 0)

    async def detect_gaps(
        self,
        answer: str,
        sources: list[Source],
        claims: list[Claim],
        claim_confidences: list[ClaimConfidence],
        entailment_results: list[EntailmentResult],
        query: str,
        session_id: str | None = None,
    ) -> list[Gap]:
        t0 = time.monotonic()
        if session_id:
            await emit_event(
                self.event_sink,
                streaming.gap_detection_started(
                    session_id,
                    query=query,
                    claims_count=len(claims),
                    sources_count=len(sources),
                ),
            )
        log_service.log_reflection_step(
            session_id,
            self.name,
            "started",
            {"query": query, "claims_count": len(claims), "sources_count": len(sources)},
        )

        try:
            outcomes: list[StrategyOutcome] = list(
                await asyncio.gather(
                    self._detect_weak_claims(claim_confidences, claims),
                    self._detect_missing_information(answer, sources, query),
                    self._detect_source_coverage_gaps(claims, claim_confidences, entailment_results),
                    self._detect_contradictions(claims, entailment_results),
                )
            )
        except Exception as exc:
            duration_ms = int((time.monotonic() - t0) * 1000)
            log_service.log_reflection_step(
                session_id, self.name, "error", {"error": str(exc), "duration_ms": duration_ms}
            )
            if session_id:
                await emit_event(
                    self.event_sink,
                    streaming.gap_detection_completed(
                        session_id, duration_ms=duration_ms, error=str(exc)
                    ),
                )
            raise

        gaps: list[Gap] = []
        for outcome in outcomes:
            if outcome.error:
                logger.warning(f"Gap strategy {outcome.name} produced no gaps: {outcome.error}")
            gaps.extend(outcome.gaps)

        if session_id:
            for outcome in outcomes:
                for gap in outcome.gaps:
                    await emit_event(
                        self.event_sink,
                        streaming.gap_detected(
                            session_id, gap, **outcome_event_fields(outcome, gap)
                        ),
                    )

        duration_ms = int((time.monotonic() - t0) * 1000)
        critical_gaps = sum(1 for gap in gaps if gap.severity == "critical")
        gap_types = self.aggregate_gap_types(gaps)
        log_service.log_reflection_step(
            session_id,
            self.name,
            "completed",
            {
                "total_gaps": len(gaps),
                "critical_gaps": critical_gaps,
                "gap_types": gap_types,
                "duration_ms": duration_ms,
            },
        )
        if session_id:
            await emit_event(
                self.event_sink,
                streaming.gap_detection_completed(
                    session_id,
                    duration_ms=duration_ms,
                    total_gaps=len(gaps),
                    critical_gaps=critical_gaps,
                    gap_types=gap_types,
                ),
            )
        return gaps

    async def _detect_weak_claims(
        self,
        claim_confidences: list[ClaimConfidence],
        claims: list[Claim],
    ) -> StrategyOutcome:
        outcome = StrategyOutcome(name="weak_claims")
        claims_by_id = {claim.id: claim for claim in claims}
        for claim_confidence in claim_confidences:
            if claim_confidence.confidence >= WEAK_CLAIM_THRESHOLD:
                continue
            related_claim = claims_by_id.get(claim_confidence.claim_id) or Claim(
                id=claim_confidence.claim_id, text=claim_confidence.claim_text
            )
            gap = Gap(
                id=str(uuid4()),
                type="weak_claim",
                severity="major",
                description=(
                    f"Claim has low confidence ({claim_confidence.confidence * 100:.1f}%): "
                    f'"{claim_confidence.claim_text[:100]}..."'
                ),
                suggested_action=(
                    "Find additional sources to support this claim or rephrase with "
                    "appropriate uncertainty qualifiers"
                ),
                confidence=claim_confidence.confidence,
                related_claim=related_claim,
            )
            outcome.gaps.append(gap)
            outcome.event_fields[gap.id] = {
                "claim_id": claim_confidence.claim_id,
                "confidence": claim_confidence.confidence,
            }
        return outcome

    async def _detect_missing_information(
        self,
        answer: str,
        sources: list[Source],
        query: str,
    ) -> StrategyOutcome:
        outcome = StrategyOutcome(name="missing_information")
        source_titles = [source.label() for source in sources[: self.max_sources]]
        active_client = self.client or llm_client(caller=f"{self.name}.missing_information")
        try:
            response = await active_client.chat(
                [
                    {"role": "system", "content": render_prompt("gap_detector.missing_info_system")},
                    {
                        "role": "user",
                        "content": render_prompt(
                            "gap_detector.missing_info_user",
                            query=query,
                            answer=answer,
                            source_titles=", ".join(source_titles),
                        ),
                    },
                ]
            )
            suggestions = parse_gap_suggestions(response.content.strip())
        except LLMParseError as exc:
            outcome.error = f"unparseable response: {exc}"
            return outcome
        except Exception as exc:
            outcome.error = f"model call failed: {exc}"
            return outcome

        for suggestion in suggestions:
            gap = Gap(
                id=str(uuid4()),
                type="missing_info",
                severity=suggestion.severity,
                description=suggestion.description,
                suggested_action=suggestion.suggested_action,
                confidence=MISSING_INFO_CONFIDENCE,
            )
            outcome.gaps.append(gap)
            outcome.event_fields[gap.id] = {"description": gap.description}
        return outcome

    async def _detect_source_coverage_gaps(
        self,
        claims: list[Claim],
        claim_confidences: list[ClaimConfidence],
        entailment_results: list[EntailmentResult],
    ) -> StrategyOutcome:
        outcome = StrategyOutcome(name="source_coverage")
        for claim in claims:
            claim_confidence = next(
                (cc for cc in claim_confidences if cc.claim_id == claim.id), None
            )
            supporting_count = claim_confidence.supporting_sources if claim_confidence else 0

            entailment = next((er for er in entailment_results if er.claim.id == claim.id), None)
            # Entailment-level support overrides the plain counter.
            has_entailment_support = entailment is not None and len(entailment.supporting_sources) > 0

            if supporting_count == 0 and not has_entailment_support:
                gap = Gap(
                    id=str(uuid4()),
                    type="incomplete_coverage",
                    severity="critical",
                    description=f'Claim lacks supporting sources: "{claim.text[:100]}..."',
                    suggested_action=(
                        "Search for credible sources that support this claim or remove it "
                        "from the answer"
                    ),
                    confidence=COVERAGE_GAP_CONFIDENCE,
                    related_claim=claim,
                )
                outcome.gaps.append(gap)
                outcome.event_fields[gap.id] = {"claim_id": claim.id}
        return outcome

    async def _detect_contradictions(
        self,
        claims: list[Claim],
        entailment_results: list[EntailmentResult],
    ) -> StrategyOutcome:
        outcome = StrategyOutcome(name="contradictions")
        claims_by_id = {claim.id: claim for claim in claims}
        for entailment in entailment_results:
            if entailment.verdict != "contradicted":
                continue
            contradicting_urls = ", ".join(
                evidence.source_url for evidence in entailment.contradicting_sources
            )
            gap = Gap(
                id=str(uuid4()),
                type="contradiction",
                severity="critical",
                description=f'Claim contradicted by sources: "{entailment.claim.text[:100]}..."',
                suggested_action=(
                    f"Review contradicting sources ({contradicting_urls}) and revise or "
                    "remove this claim"
                ),
                confidence=CONTRADICTION_CONFIDENCE,
                related_claim=claims_by_id.get(entailment.claim.id, entailment.claim),
            )
            outcome.gaps.append(gap)
            outcome.event_fields[gap.id] = {
                "claim_id": entailment.claim.id,
                "contradicting_sources": len(entailment.contradicting_sources),
            }
        return outcome

    @staticmethod
    def aggregate_gap_types(gaps: list[Gap]) -> dict[str, int]:
        aggregated = {gap_type: 0 for gap_type in GAP_TYPES}
        for gap in gaps:
            aggregated[gap.type] = aggregated.get(gap.type, 0) + 1
        return aggregated


def outcome_event_fields(outcome: StrategyOutcome, gap: Gap) -> dict[str, Any]:
    return dict(outcome.event_fields.get(gap.id, {}))
