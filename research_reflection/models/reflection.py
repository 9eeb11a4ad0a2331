from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal

from research_reflection.models.evaluation import (
    Claim,
    ConfidenceResult,
    EntailmentResult,
    Source,
)


GapType = Literal["weak_claim", "missing_info", "incomplete_coverage", "contradiction"]
GapSeverity = Literal["critical", "major", "minor"]

GAP_TYPES: tuple[GapType, ...] = (
    "missing_info",
    "weak_claim",
    "contradiction",
    "incomplete_coverage",
)
SEVERITY_ORDER: dict[str, int] = {"critical": 0, "major": 1, "minor": 2}


class ReflectionStatus(StrEnum):
    RUNNING = "running"
    STOPPED_QUALITY_TARGET = "stopped_quality_target"
    STOPPED_DIMINISHING_RETURNS = "stopped_diminishing_returns"
    STOPPED_MAX_ITERATIONS = "stopped_max_iterations"
    STOPPED_ERROR = "stopped_error"


@dataclass(slots=True, frozen=True)
class Gap:
    id: str
    type: GapType
    severity: GapSeverity
    description: str
    suggested_action: str
    confidence: float
    related_claim: Claim | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "description": self.description,
            "suggested_action": self.suggested_action,
            "confidence": self.confidence,
            "related_claim": self.related_claim.to_dict() if self.related_claim else None,
        }


def sort_by_severity(gaps: list[Gap]) -> list[Gap]:
    return sorted(gaps, key=lambda gap: SEVERITY_ORDER.get(gap.severity, len(SEVERITY_ORDER)))


@dataclass(slots=True)
class StrategyOutcome:
    """Gaps produced by one detection strategy, or the reason it produced none."""

    name: str
    gaps: list[Gap] = field(default_factory=list)
    error: str | None = None
    # Extra `gap_detected` payload keys, by gap id.
    event_fields: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class SelfCritique:
    overall_assessment: str
    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)
    critical_issues: list[str] = field(default_factory=list)
    suggested_improvements: list[str] = field(default_factory=list)
    # Confidence in the critique itself, not in the answer.
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_assessment": self.overall_assessment,
            "strengths": list(self.strengths),
            "weaknesses": list(self.weaknesses),
            "critical_issues": list(self.critical_issues),
            "suggested_improvements": list(self.suggested_improvements),
            "confidence": self.confidence,
        }


@dataclass(slots=True, frozen=True)
class RefinementAttempt:
    iteration: int
    refined_answer: str
    improvement: float
    addressed_gaps: list[str] = field(default_factory=list)
    remaining_gaps: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "refined_answer_length": len(self.refined_answer),
            "improvement": self.improvement,
            "addressed_gaps": list(self.addressed_gaps),
            "remaining_gaps": list(self.remaining_gaps),
        }


@dataclass(slots=True)
class RefinementResult:
    final_answer: str
    refinement_history: list[RefinementAttempt] = field(default_factory=list)
    total_improvement: float = 0.0
    gaps_resolved: int = 0
    gaps_remaining: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "final_answer_length": len(self.final_answer),
            "refinement_history": [attempt.to_dict() for attempt in self.refinement_history],
            "total_improvement": self.total_improvement,
            "gaps_resolved": self.gaps_resolved,
            "gaps_remaining": self.gaps_remaining,
        }


@dataclass(slots=True, frozen=True)
class ReflectionStep:
    iteration: int
    critique: str
    gaps_found: list[Gap]
    confidence_before: float
    confidence_after: float
    improvement: float


@dataclass(slots=True)
class ReflectionResult:
    iteration_count: int
    improvements: list[float]
    identified_gaps: list[Gap]
    final_answer: str
    final_confidence: float
    reflection_trace: list[ReflectionStep]
    status: ReflectionStatus = ReflectionStatus.STOPPED_MAX_ITERATIONS
    error: str | None = None


@dataclass(slots=True)
class ReflectionContext:
    """Upstream pipeline state the reflection loop analyzes against."""

    query: str = ""
    sources: list[Source] = field(default_factory=list)
    claims: list[Claim] = field(default_factory=list)
    entailment_results: list[EntailmentResult] = field(default_factory=list)
    initial_confidence: ConfidenceResult | None = None
