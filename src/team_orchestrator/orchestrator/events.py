"""Structured orchestration events.

One event per cycle start/end, wave start/end, node completion or failure,
degraded scheduling and state change. Events go to an
:class:`OrchestrationObserver`; delivery is fire-and-forget so a broken
dashboard never disrupts a cycle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Callable

from ulid import ULID

from team_orchestrator.orchestrator.config import AgentType
from team_orchestrator.orchestrator.interfaces import OrchestrationObserver
from team_orchestrator.orchestrator.models import utcnow

logger = logging.getLogger(__name__)


class OrchestrationEventType(StrEnum):
    CYCLE_STARTED = "CYCLE_STARTED"
    CYCLE_COMPLETED = "CYCLE_COMPLETED"
    CYCLE_FAILED = "CYCLE_FAILED"
    WAVE_STARTED = "WAVE_STARTED"
    WAVE_COMPLETED = "WAVE_COMPLETED"
    NODE_COMPLETED = "NODE_COMPLETED"
    NODE_FAILED = "NODE_FAILED"
    SCHEDULING_DEGRADED = "SCHEDULING_DEGRADED"
    STATE_CHANGED = "STATE_CHANGED"


@dataclass(frozen=True)
class OrchestrationEvent:
    """Single observable orchestration event."""

    event_id: str
    event_type: OrchestrationEventType
    team_id: str
    created_at: str  # ISO 8601
    wave_index: int | None = None
    agent_type: AgentType | None = None
    agents: tuple[AgentType, ...] = ()
    summary: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": str(self.event_type),
            "team_id": self.team_id,
            "created_at": self.created_at,
            "wave_index": self.wave_index,
            "agent_type": str(self.agent_type) if self.agent_type else None,
            "agents": [str(a) for a in self.agents],
            "summary": self.summary,
            "payload": dict(self.payload),
        }


class EventEmitter:
    """Builds events for one team and hands them to an observer.

    Handles ID generation and timestamps (from *clock*). Observer failures
    are logged and swallowed.
    """

    def __init__(
        self,
        observer: OrchestrationObserver | None,
        team_id: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._observer = observer
        self._team_id = team_id
        self._clock = clock

    @property
    def team_id(self) -> str:
        return self._team_id

    def emit(
        self,
        event_type: OrchestrationEventType,
        *,
        wave_index: int | None = None,
        agent_type: AgentType | None = None,
        agents: tuple[AgentType, ...] = (),
        summary: str = "",
        payload: dict[str, Any] | None = None,
    ) -> OrchestrationEvent:
        event = OrchestrationEvent(
            event_id=str(ULID()),
            event_type=event_type,
            team_id=self._team_id,
            created_at=self._clock().isoformat(),
            wave_index=wave_index,
            agent_type=agent_type,
            agents=agents,
            summary=summary,
            payload=payload or {},
        )
        if self._observer is not None:
            try:
                self._observer.emit(event)
            except Exception as e:
                logger.warning(
                    f"Observer failed to accept {event_type} for team {self._team_id}: {e}"
                )
        return event

    def wave_started(self, wave_index: int, agents: tuple[AgentType, ...]) -> None:
        self.emit(
            OrchestrationEventType.WAVE_STARTED,
            wave_index=wave_index,
            agents=agents,
            summary=", ".join(agents),
        )

    def wave_completed(
        self, wave_index: int, agents: tuple[AgentType, ...], failed: int
    ) -> None:
        self.emit(
            OrchestrationEventType.WAVE_COMPLETED,
            wave_index=wave_index,
            agents=agents,
            payload={"failed": failed},
        )

    def node_completed(self, wave_index: int, agent_type: AgentType, duration_ms: int) -> None:
        self.emit(
            OrchestrationEventType.NODE_COMPLETED,
            wave_index=wave_index,
            agent_type=agent_type,
            payload={"duration_ms": duration_ms},
        )

    def node_failed(
        self, wave_index: int, agent_type: AgentType, error: str, duration_ms: int
    ) -> None:
        self.emit(
            OrchestrationEventType.NODE_FAILED,
            wave_index=wave_index,
            agent_type=agent_type,
            summary=error[:500],
            payload={"duration_ms": duration_ms},
        )

    def scheduling_degraded(self, stuck_node_ids: list[str]) -> None:
        self.emit(
            OrchestrationEventType.SCHEDULING_DEGRADED,
            summary="Unresolvable dependencies; remaining nodes forced into a final wave",
            payload={"node_ids": list(stuck_node_ids)},
        )

    def state_changed(self, trigger: str, source: str, dest: str) -> None:
        self.emit(
            OrchestrationEventType.STATE_CHANGED,
            summary=f"{source} -> {dest}",
            payload={"trigger": trigger, "source": source, "dest": dest},
        )


class RecordingObserver(OrchestrationObserver):
    """Keeps events in memory, e.g. for a dashboard feed or tests."""

    def __init__(self) -> None:
        self.events: list[OrchestrationEvent] = []

    def emit(self, event: OrchestrationEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: OrchestrationEventType) -> list[OrchestrationEvent]:
        return [e for e in self.events if e.event_type == event_type]


class LoggingObserver(OrchestrationObserver):
    """Writes one log line per event."""

    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    def emit(self, event: OrchestrationEvent) -> None:
        level = self._level
        if event.event_type in (
            OrchestrationEventType.NODE_FAILED,
            OrchestrationEventType.SCHEDULING_DEGRADED,
            OrchestrationEventType.CYCLE_FAILED,
        ):
            level = logging.WARNING
        wave = f" wave={event.wave_index + 1}" if event.wave_index is not None else ""
        detail = f" {event.agent_type or ''} {event.summary}".rstrip()
        logger.log(level, f"[{event.team_id}] {event.event_type}{wave}{detail}")


__all__ = [
    "EventEmitter",
    "LoggingObserver",
    "OrchestrationEvent",
    "OrchestrationEventType",
    "RecordingObserver",
]
