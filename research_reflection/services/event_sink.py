from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any

from loguru import logger

from research_reflection.models.events import EventType, ReflectionEvent
from research_reflection.models.interfaces import EventSink
from research_reflection.services import logger as log_service


async def emit_event(sink: EventSink | None, event: ReflectionEvent) -> None:
    """Deliver an event without letting sink failures reach the caller."""
    if sink is None:
        return
    try:
        await sink.emit(event.session_id, event.event.value, event.data)
    except Exception as exc:
        logger.warning(f"Failed to emit {event.event.value} for {event.session_id}: {exc}")


class QueueEventSink:
    """Fans events out to per-session queues, e.g. for an SSE response."""

    def __init__(self, maxsize: int = 0):
        self._maxsize = maxsize
        self._queues: dict[str, list[asyncio.Queue[ReflectionEvent | None]]] = defaultdict(list)

    def subscribe(self, session_id: str) -> asyncio.Queue[ReflectionEvent | None]:
        queue: asyncio.Queue[ReflectionEvent | None] = asyncio.Queue(maxsize=self._maxsize)
        self._queues[session_id].append(queue)
        return queue

    async def emit(self, session_id: str, event_name: str, payload: dict[str, Any]) -> None:
        event = ReflectionEvent(session_id=session_id, event=EventType(event_name), data=payload)
        for queue in list(self._queues.get(session_id, [])):
            if queue.full():
                logger.warning(f"Dropping {event_name} for {session_id}: subscriber queue full")
                continue
            queue.put_nowait(event)

    def close(self, session_id: str) -> None:
        """Signal end-of-stream to every subscriber and forget the session."""
        for queue in self._queues.pop(session_id, []):
            if not queue.full():
                queue.put_nowait(None)


class LoggingEventSink:
    async def emit(self, session_id: str, event_name: str, payload: dict[str, Any]) -> None:
        log_service.log_event(event_name, f"reflection event for {session_id}", session_id=session_id, data=payload)
