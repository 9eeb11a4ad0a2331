from __future__ import annotations

from typing import Any

from research_reflection.models.events import EventType, ReflectionEvent
from research_reflection.models.reflection import Gap, RefinementResult, SelfCritique


def gap_detection_started(
    session_id: str, *, query: str, claims_count: int, sources_count: int
) -> ReflectionEvent:
    return ReflectionEvent(
        session_id=session_id,
        event=EventType.GAP_DETECTION_STARTED,
        data={"query": query, "claims_count": claims_count, "sources_count": sources_count},
    )


def gap_detected(session_id: str, gap: Gap, **kwargs: Any) -> ReflectionEvent:
    data: dict[str, Any] = {"gap_id": gap.id, "type": gap.type, "severity": gap.severity}
    data.update(kwargs)
    return ReflectionEvent(session_id=session_id, event=EventType.GAP_DETECTED, data=data)


def gap_detection_completed(
    session_id: str,
    *,
    duration_ms: int,
    total_gaps: int | None = None,
    critical_gaps: int | None = None,
    gap_types: dict[str, int] | None = None,
    error: str | None = None,
) -> ReflectionEvent:
    data: dict[str, Any] = {"duration_ms": duration_ms}
    if error is not None:
        data["error"] = error
    else:
        data["total_gaps"] = total_gaps
        data["critical_gaps"] = critical_gaps
        data["gap_types"] = gap_types or {}
    return ReflectionEvent(
        session_id=session_id, event=EventType.GAP_DETECTION_COMPLETED, data=data
    )


def self_critique_started(
    session_id: str, *, answer_length: int, source_count: int, gap_count: int
) -> ReflectionEvent:
    return ReflectionEvent(
        session_id=session_id,
        event=EventType.SELF_CRITIQUE_STARTED,
        data={
            "answer_length": answer_length,
            "source_count": source_count,
            "gap_count": gap_count,
        },
    )


def self_critique_completed(
    session_id: str, critique: SelfCritique, execution_time_ms: int
) -> ReflectionEvent:
    return ReflectionEvent(
        session_id=session_id,
        event=EventType.SELF_CRITIQUE_COMPLETED,
        data={"critique": critique.to_dict(), "execution_time_ms": execution_time_ms},
    )


def self_critique_failed(session_id: str, error: str, execution_time_ms: int) -> ReflectionEvent:
    return ReflectionEvent(
        session_id=session_id,
        event=EventType.SELF_CRITIQUE_FAILED,
        data={"error": error, "execution_time_ms": execution_time_ms},
    )


def refinement_started(
    session_id: str,
    *,
    original_answer_length: int,
    gap_count: int,
    critical_gap_count: int,
    source_count: int,
) -> ReflectionEvent:
    return ReflectionEvent(
        session_id=session_id,
        event=EventType.REFINEMENT_STARTED,
        data={
            "original_answer_length": original_answer_length,
            "gap_count": gap_count,
            "critical_gap_count": critical_gap_count,
            "source_count": source_count,
        },
    )


def refinement_pass(session_id: str, *, iteration: int, remaining_gaps: int) -> ReflectionEvent:
    return ReflectionEvent(
        session_id=session_id,
        event=EventType.REFINEMENT_PASS,
        data={"iteration": iteration, "remaining_gaps": remaining_gaps},
    )


def refinement_completed(
    session_id: str, result: RefinementResult, execution_time_ms: int
) -> ReflectionEvent:
    return ReflectionEvent(
        session_id=session_id,
        event=EventType.REFINEMENT_COMPLETED,
        data={"result": result.to_dict(), "execution_time_ms": execution_time_ms},
    )


def refinement_failed(session_id: str, error: str, execution_time_ms: int) -> ReflectionEvent:
    return ReflectionEvent(
        session_id=session_id,
        event=EventType.REFINEMENT_FAILED,
        data={"error": error, "execution_time_ms": execution_time_ms},
    )


def reflection_started(session_id: str, **kwargs: Any) -> ReflectionEvent:
    return ReflectionEvent(session_id=session_id, event=EventType.REFLECTION_STARTED, data=kwargs)


def reflection_iteration(session_id: str, iteration: int, **kwargs: Any) -> ReflectionEvent:
    return ReflectionEvent(
        session_id=session_id,
        event=EventType.REFLECTION_ITERATION,
        data={"iteration": iteration, **kwargs},
    )


def reflection_completed(session_id: str, **kwargs: Any) -> ReflectionEvent:
    return ReflectionEvent(
        session_id=session_id, event=EventType.REFLECTION_COMPLETED, data=kwargs
    )
