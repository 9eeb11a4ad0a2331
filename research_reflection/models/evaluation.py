from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal


ClaimType = Literal["factual", "comparative", "temporal", "causal", "opinion"]
ConfidenceLevel = Literal["high", "medium", "low", "very_low"]
EntailmentVerdict = Literal["entailed", "neutral", "contradicted"]


@dataclass(slots=True)
class Source:
    id: str
    url: str
    content: str = ""
    title: str | None = None

    def label(self) -> str:
        return self.title or self.url


@dataclass(slots=True)
class Claim:
    id: str
    text: str
    type: ClaimType = "factual"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SourceEvidence:
    source_id: str
    source_url: str
    relevant_text: str = ""
    similarity: float = 0.0


@dataclass(slots=True)
class EntailmentResult:
    claim: Claim
    verdict: EntailmentVerdict
    score: float = 0.0
    supporting_sources: list[SourceEvidence] = field(default_factory=list)
    contradicting_sources: list[SourceEvidence] = field(default_factory=list)
    reasoning: str = ""


@dataclass(slots=True)
class ClaimConfidence:
    claim_id: str
    claim_text: str
    confidence: float
    level: ConfidenceLevel = "medium"
    entailment_score: float = 0.0
    su_score: float = 0.0
    supporting_sources: int = 0


@dataclass(slots=True)
class ConfidenceMethodology:
    entailment_weight: float = 0.5
    su_score_weight: float = 0.3
    source_count_weight: float = 0.2


@dataclass(slots=True)
class ConfidenceResult:
    """Output of the external confidence scorer for one answer."""

    overall_confidence: float
    level: ConfidenceLevel
    claim_confidences: list[ClaimConfidence] = field(default_factory=list)
    methodology: ConfidenceMethodology = field(default_factory=ConfidenceMethodology)
    recommendations: list[str] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "ConfidenceResult":
        return cls(overall_confidence=0.0, level="very_low")

    def low_confidence_claims(self) -> list[ClaimConfidence]:
        return [c for c in self.claim_confidences if c.level in ("low", "very_low")]
