from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class EventType(StrEnum):
    GAP_DETECTION_STARTED = "gap_detection_started"
    GAP_DETECTED = "gap_detected"
    GAP_DETECTION_COMPLETED = "gap_detection_completed"
    SELF_CRITIQUE_STARTED = "self_critique_started"
    SELF_CRITIQUE_COMPLETED = "self_critique_completed"
    SELF_CRITIQUE_FAILED = "self_critique_failed"
    REFINEMENT_STARTED = "refinement_started"
    REFINEMENT_PASS = "refinement_pass"
    REFINEMENT_COMPLETED = "refinement_completed"
    REFINEMENT_FAILED = "refinement_failed"
    REFLECTION_STARTED = "reflection_started"
    REFLECTION_ITERATION = "reflection_iteration"
    REFLECTION_COMPLETED = "reflection_completed"


@dataclass
class ReflectionEvent:
    session_id: str
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.data, default=str)}\n\n"
