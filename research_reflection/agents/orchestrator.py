from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from research_reflection.agents.gap_detector import GapDetector
from research_reflection.agents.refinement import RefinementEngine
from research_reflection.agents.self_critique import SelfCritiqueEngine
from research_reflection.config import ReflectionConfig
from research_reflection.models.evaluation import ConfidenceResult
from research_reflection.models.interfaces import (
    ChatClient,
    ConfidenceScorer,
    EventSink,
    WorkingMemory,
)
from research_reflection.models.reflection import (
    Gap,
    ReflectionContext,
    ReflectionResult,
    ReflectionStatus,
    ReflectionStep,
)
from research_reflection.services import logger as log_service
from research_reflection.services import streaming
from research_reflection.services.event_sink import emit_event


@dataclass(slots=True)
class IterationOutcome:
    step: ReflectionStep
    refined_answer: str
    confidence: ConfidenceResult
    critique_confidence: float
    gaps_resolved: int


class ReflectionOrchestrator:
    """Drives the detect -> critique -> refine -> score loop for one answer.

    Stops on the first of:
      1. new confidence reaching `quality_target_threshold`
      2. improvement below `min_improvement_threshold` after the first iteration
      3. `max_iterations` completed iterations
      4. any failure inside an iteration (keeps the last completed iteration)

    `reflect` never raises for collaborator failures; the terminal state is
    reported in `ReflectionResult.status`.
    """

    name = "reflection"

    def __init__(
        self,
        confidence_scorer: ConfidenceScorer,
        *,
        chat_client: ChatClient | None = None,
        event_sink: EventSink | None = None,
        working_memory: WorkingMemory | None = None,
        gap_detector: GapDetector | None = None,
        critique_engine: SelfCritiqueEngine | None = None,
        refinement_engine: RefinementEngine | None = None,
    ):
        self.confidence_scorer = confidence_scorer
        self.event_sink = event_sink
        self.working_memory = working_memory
        self.gap_detector = gap_detector or GapDetector(chat_client, event_sink)
        self.critique_engine = critique_engine or SelfCritiqueEngine(chat_client, event_sink)
        self.refinement_engine = refinement_engine or RefinementEngine(chat_client, event_sink)

    async def reflect(
        self,
        session_id: str,
        initial_answer: str,
        config: ReflectionConfig | None = None,
        context: ReflectionContext | None = None,
    ) -> ReflectionResult:
        config = config or ReflectionConfig.from_settings()
        context = context or ReflectionContext()

        if config.max_iterations == 0:
            logger.info(f"Reflection skipped for {session_id}: max_iterations is 0")
            return ReflectionResult(
                iteration_count=0,
                improvements=[],
                identified_gaps=[],
                final_answer=initial_answer,
                final_confidence=0.0,
                reflection_trace=[],
                status=ReflectionStatus.STOPPED_MAX_ITERATIONS,
            )

        log_service.log_reflection_step(
            session_id,
            self.name,
            "started",
            {
                "max_iterations": config.max_iterations,
                "quality_target_threshold": config.quality_target_threshold,
                "min_improvement_threshold": config.min_improvement_threshold,
            },
        )
        await emit_event(
            self.event_sink,
            streaming.reflection_started(
                session_id,
                max_iterations=config.max_iterations,
                quality_target_threshold=config.quality_target_threshold,
                min_improvement_threshold=config.min_improvement_threshold,
            ),
        )

        current_answer = initial_answer
        confidence_result = context.initial_confidence or ConfidenceResult.empty()
        current_confidence = (
            context.initial_confidence.overall_confidence if context.initial_confidence else 0.0
        )
        improvements: list[float] = []
        identified_gaps: list[Gap] = []
        trace: list[ReflectionStep] = []
        status = ReflectionStatus.RUNNING
        error: str | None = None

        for iteration in range(1, config.max_iterations + 1):
            try:
                outcome = await self._run_iteration(
                    session_id,
                    iteration,
                    current_answer,
                    confidence_result,
                    current_confidence,
                    context,
                )
            except Exception as exc:
                status = ReflectionStatus.STOPPED_ERROR
                error = str(exc)
                log_service.log_reflection_step(
                    session_id,
                    self.name,
                    "error",
                    {"iteration": iteration, "error": error, "completed_iterations": len(trace)},
                )
                break

            step = outcome.step
            trace.append(step)
            improvements.append(step.improvement)
            identified_gaps.extend(step.gaps_found)
            current_answer = outcome.refined_answer
            confidence_result = outcome.confidence
            current_confidence = step.confidence_after

            self._remember_gaps(session_id, step.gaps_found)
            await emit_event(
                self.event_sink,
                streaming.reflection_iteration(
                    session_id,
                    iteration,
                    gaps_found=len(step.gaps_found),
                    confidence_before=step.confidence_before,
                    confidence_after=step.confidence_after,
                    improvement=step.improvement,
                    critique_confidence=outcome.critique_confidence,
                    gaps_resolved=outcome.gaps_resolved,
                ),
            )

            if step.confidence_after >= config.quality_target_threshold:
                status = ReflectionStatus.STOPPED_QUALITY_TARGET
                break
            if iteration > 1 and step.improvement < config.min_improvement_threshold:
                status = ReflectionStatus.STOPPED_DIMINISHING_RETURNS
                break

        if status is ReflectionStatus.RUNNING:
            status = ReflectionStatus.STOPPED_MAX_ITERATIONS

        result = ReflectionResult(
            iteration_count=len(trace),
            improvements=improvements,
            identified_gaps=identified_gaps,
            final_answer=current_answer,
            final_confidence=current_confidence,
            reflection_trace=trace,
            status=status,
            error=error,
        )
        log_service.log_reflection_step(
            session_id,
            self.name,
            "completed",
            {
                "status": status.value,
                "iteration_count": result.iteration_count,
                "final_confidence": round(result.final_confidence, 3),
                "total_gaps": len(identified_gaps),
            },
        )
        await emit_event(
            self.event_sink,
            streaming.reflection_completed(
                session_id,
                status=status.value,
                iteration_count=result.iteration_count,
                final_confidence=result.final_confidence,
                error=error,
            ),
        )
        return result

    async def _run_iteration(
        self,
        session_id: str,
        iteration: int,
        answer: str,
        confidence_result: ConfidenceResult,
        confidence_before: float,
        context: ReflectionContext,
    ) -> IterationOutcome:
        logger.info(f"Reflection iteration {iteration} for {session_id}")
        gaps = await self.gap_detector.detect_gaps(
            answer,
            context.sources,
            context.claims,
            confidence_result.claim_confidences,
            context.entailment_results,
            context.query,
            session_id,
        )
        critique = await self.critique_engine.critique_synthesis(
            answer, context.sources, context.query, confidence_result, gaps, session_id
        )
        refinement = await self.refinement_engine.refine_answer(
            answer, critique, gaps, context.sources, context.query, session_id
        )
        scored = await self.confidence_scorer.score_confidence(
            refinement.final_answer, context.sources, session_id
        )
        confidence_after = scored.overall_confidence
        step = ReflectionStep(
            iteration=iteration,
            critique=critique.overall_assessment,
            gaps_found=gaps,
            confidence_before=confidence_before,
            confidence_after=confidence_after,
            improvement=confidence_after - confidence_before,
        )
        return IterationOutcome(
            step=step,
            refined_answer=refinement.final_answer,
            confidence=scored,
            critique_confidence=critique.confidence,
            gaps_resolved=refinement.gaps_resolved,
        )

    def _remember_gaps(self, session_id: str, gaps: list[Gap]) -> None:
        if self.working_memory is None:
            return
        for gap in gaps:
            try:
                self.working_memory.add_gap(
                    session_id,
                    {
                        "description": gap.description,
                        "severity": gap.severity,
                        "suggested_action": gap.suggested_action,
                    },
                )
            except Exception as exc:
                logger.warning(f"Could not record gap {gap.id} for {session_id}: {exc}")
