"""Collaborator contracts the reflection loop depends on.

Concrete implementations are wired at process start and passed to the
agents' constructors.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from research_reflection.models.evaluation import ConfidenceResult, Source


@dataclass(slots=True)
class ChatResponse:
    content: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


class ChatClient(Protocol):
    async def chat(
        self,
        messages: list[dict[str, str]],
        tools: list[dict[str, Any]] | None = None,
    ) -> ChatResponse: ...


class ConfidenceScorer(Protocol):
    async def score_confidence(
        self,
        answer: str,
        sources: list[Source],
        session_id: str | None = None,
    ) -> ConfidenceResult: ...


class WorkingMemory(Protocol):
    def add_gap(self, session_id: str, gap: dict[str, str]) -> str | None: ...


class EventSink(Protocol):
    async def emit(self, session_id: str, event_name: str, payload: dict[str, Any]) -> None: ...
