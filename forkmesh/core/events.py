"""Append-only event history with a pluggable structured sink."""
from __future__ import annotations

from collections import deque
from typing import Any, Deque, List, Optional, Protocol

import structlog

from forkmesh.core.models import OrchestratorEvent


class EventSink(Protocol):
    def __call__(self, event: OrchestratorEvent) -> None: ...


class StructlogSink:
    """Default sink writing each event as one structured log line."""

    def __init__(self, logger: Optional[Any] = None) -> None:
        self._logger = logger or structlog.get_logger("forkmesh.events")

    def __call__(self, event: OrchestratorEvent) -> None:
        self._logger.info(
            "orchestrator_event",
            event_type=event.type,
            agent_id=event.agent_id,
            **event.data,
        )


class EventLog:
    """Ring buffer of recent events, forwarded to a sink as they arrive."""

    def __init__(self, sink: Optional[EventSink] = None, max_events: int = 1000) -> None:
        self._events: Deque[OrchestratorEvent] = deque(maxlen=max_events)
        self._sink = sink if sink is not None else StructlogSink()

    def emit(self, event_type: str, *, agent_id: Optional[str] = None, **data: Any) -> OrchestratorEvent:
        event = OrchestratorEvent(type=event_type, agent_id=agent_id, data=data)
        self._events.append(event)
        self._sink(event)
        return event

    def recent(self, limit: int = 100) -> List[OrchestratorEvent]:
        if limit <= 0:
            return []
        return list(self._events)[-limit:]

    def __len__(self) -> int:
        return len(self._events)
