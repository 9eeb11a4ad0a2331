from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4


SubGoalStatus = Literal["pending", "in_progress", "completed", "blocked"]


@dataclass(slots=True)
class SubGoal:
    id: str
    description: str
    status: SubGoalStatus = "pending"
    priority: int = 0
    dependencies: list[str] = field(default_factory=list)


@dataclass(slots=True)
class GatheredInfo:
    id: str
    content: str
    source: str
    relevance: float
    added_at: str


@dataclass(slots=True)
class MemoryGap:
    id: str
    description: str
    severity: str
    suggested_action: str


@dataclass(slots=True)
class WorkingMemoryRecord:
    session_id: str
    query: str
    started_at: str
    primary_goal: str
    current_phase: str = "initialization"
    current_step: int = 0
    sub_goals: list[SubGoal] = field(default_factory=list)
    gathered_information: list[GatheredInfo] = field(default_factory=list)
    identified_gaps: list[MemoryGap] = field(default_factory=list)
    scratch_pad: dict[str, Any] = field(default_factory=dict)


class InMemoryWorkingMemoryStore:
    """Per-session working memory keyed by session id.

    Every access holds one lock, so sessions driven from different threads
    or event loops never observe each other's partial writes. Reads hand out
    deep copies.
    """

    def __init__(self) -> None:
        self._memories: dict[str, WorkingMemoryRecord] = {}
        self._lock = threading.Lock()

    def initialize(self, session_id: str, query: str) -> WorkingMemoryRecord:
        record = WorkingMemoryRecord(
            session_id=session_id,
            query=query,
            started_at=datetime.now(timezone.utc).isoformat(),
            primary_goal=f'Answer the query: "{query}"',
        )
        with self._lock:
            self._memories[session_id] = record
            return copy.deepcopy(record)

    def get(self, session_id: str) -> WorkingMemoryRecord | None:
        with self._lock:
            record = self._memories.get(session_id)
            return copy.deepcopy(record) if record else None

    def _require(self, session_id: str) -> WorkingMemoryRecord:
        record = self._memories.get(session_id)
        if record is None:
            raise KeyError(f"No working memory for session: {session_id}")
        return record

    def update_phase(self, session_id: str, phase: str, step: int) -> None:
        with self._lock:
            record = self._memories.get(session_id)
            if record:
                record.current_phase = phase
                record.current_step = step

    def add_sub_goal(
        self,
        session_id: str,
        description: str,
        *,
        priority: int = 0,
        dependencies: list[str] | None = None,
    ) -> str:
        with self._lock:
            record = self._require(session_id)
            goal = SubGoal(
                id=str(uuid4()),
                description=description,
                priority=priority,
                dependencies=list(dependencies or []),
            )
            record.sub_goals.append(goal)
            return goal.id

    def update_sub_goal_status(self, session_id: str, goal_id: str, status: SubGoalStatus) -> None:
        with self._lock:
            record = self._memories.get(session_id)
            if not record:
                return
            for goal in record.sub_goals:
                if goal.id == goal_id:
                    goal.status = status
                    return

    def add_gathered_info(
        self, session_id: str, content: str, source: str, relevance: float = 0.0
    ) -> str:
        with self._lock:
            record = self._require(session_id)
            info = GatheredInfo(
                id=str(uuid4()),
                content=content,
                source=source,
                relevance=relevance,
                added_at=datetime.now(timezone.utc).isoformat(),
            )
            record.gathered_information.append(info)
            return info.id

    def add_gap(self, session_id: str, gap: dict[str, str]) -> str:
        """Record a gap; raises KeyError when the session was never initialized."""
        with self._lock:
            record = self._require(session_id)
            memory_gap = MemoryGap(
                id=str(uuid4()),
                description=str(gap.get("description", "")),
                severity=str(gap.get("severity", "minor")),
                suggested_action=str(gap.get("suggested_action", "")),
            )
            record.identified_gaps.append(memory_gap)
            return memory_gap.id

    def resolve_gap(self, session_id: str, gap_id: str) -> None:
        with self._lock:
            record = self._memories.get(session_id)
            if not record:
                return
            record.identified_gaps = [g for g in record.identified_gaps if g.id != gap_id]

    def set_scratch_value(self, session_id: str, key: str, value: Any) -> None:
        with self._lock:
            record = self._memories.get(session_id)
            if record:
                record.scratch_pad[key] = value

    def get_scratch_value(self, session_id: str, key: str) -> Any:
        with self._lock:
            record = self._memories.get(session_id)
            return copy.deepcopy(record.scratch_pad.get(key)) if record else None

    def get_context(self, session_id: str) -> str:
        with self._lock:
            record = self._memories.get(session_id)
            if not record:
                return ""
            recent_info = record.gathered_information[-5:]
            active_gaps = [g for g in record.identified_gaps if g.severity != "minor"]

            goals = "\n".join(f"- [{g.status}] {g.description}" for g in record.sub_goals) or "- None"
            info = (
                "\n".join(f"- {i.content[:100]}..." for i in recent_info) or "- None yet"
            )
            gaps = "\n".join(f"- [{g.severity}] {g.description}" for g in active_gaps) or "- None"
            return (
                f"Current Phase: {record.current_phase} (Step {record.current_step})\n"
                f"Primary Goal: {record.primary_goal}\n\n"
                f"Sub-goals:\n{goals}\n\n"
                f"Gathered Information ({len(record.gathered_information)} items):\n{info}\n\n"
                f"Identified Gaps:\n{gaps}"
            )

    def get_statistics(self, session_id: str) -> dict[str, int] | None:
        with self._lock:
            record = self._memories.get(session_id)
            if not record:
                return None
            return {
                "sub_goals_total": len(record.sub_goals),
                "sub_goals_completed": sum(1 for g in record.sub_goals if g.status == "completed"),
                "gathered_info_count": len(record.gathered_information),
                "gaps_count": len(record.identified_gaps),
                "critical_gaps": sum(1 for g in record.identified_gaps if g.severity == "critical"),
            }

    def cleanup(self, session_id: str) -> None:
        with self._lock:
            self._memories.pop(session_id, None)

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._memories)
