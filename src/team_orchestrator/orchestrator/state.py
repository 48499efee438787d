"""Execution state machine for a team's control loop.

This module handles:
    - The idle/running/paused/stopped lifecycle, built on ``transitions``
    - Timestamp bookkeeping for each transition
    - Resetting cycle counts and detection caches on restart after a stop
    - Persisting the state record through the TeamStore

Every trigger re-reads the persisted record first, so a pause or stop
issued elsewhere (a dashboard, another CLI) is respected. Concurrent writers
resolve as last-writer-wins.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from transitions import Machine, MachineError

from team_orchestrator.orchestrator.config import ExecutionStatus
from team_orchestrator.orchestrator.events import EventEmitter
from team_orchestrator.orchestrator.interfaces import InvalidTransitionError, TeamStore
from team_orchestrator.orchestrator.models import ExecutionState, utcnow

logger = logging.getLogger(__name__)

TRANSITIONS: list[dict[str, Any]] = [
    {
        "trigger": "start",
        "source": [ExecutionStatus.IDLE.value, ExecutionStatus.STOPPED.value],
        "dest": ExecutionStatus.RUNNING.value,
        "before": "on_start",
    },
    {
        "trigger": "pause",
        "source": ExecutionStatus.RUNNING.value,
        "dest": ExecutionStatus.PAUSED.value,
        "before": "on_pause",
    },
    {
        "trigger": "resume",
        "source": ExecutionStatus.PAUSED.value,
        "dest": ExecutionStatus.RUNNING.value,
        "before": "on_resume",
    },
    {
        "trigger": "stop",
        "source": [ExecutionStatus.RUNNING.value, ExecutionStatus.PAUSED.value],
        "dest": ExecutionStatus.STOPPED.value,
        "before": "on_stop",
    },
]


class ExecutionModel:
    """Model object the Machine attaches ``state`` and trigger methods to.

    Holds the persisted record that callbacks update.
    """

    def __init__(
        self,
        record: ExecutionState,
        clock: Callable[[], datetime],
        on_restart: Callable[[], None],
    ) -> None:
        self.record = record
        self._clock = clock
        self._on_restart = on_restart
        # Machine sets this to the initial state during construction.
        self.state: str = record.status.value

    def on_start(self, event: Any) -> None:
        now = self._clock()
        if event.transition.source == ExecutionStatus.STOPPED.value:
            self.record.total_cycles = 0
            self.record.stopped_at = None
            self._on_restart()
        self.record.started_at = now
        self.record.last_activity_at = now
        self.record.paused_at = None

    def on_pause(self, event: Any) -> None:
        self.record.paused_at = self._clock()

    def on_resume(self, event: Any) -> None:
        self.record.paused_at = None
        self.record.last_activity_at = self._clock()

    def on_stop(self, event: Any) -> None:
        self.record.stopped_at = self._clock()
        self.record.process_id = None


class ExecutionStateMachine:
    """Owns one team's ExecutionState and gates the cycle controller.

    Args:
        team_id: Team whose state this machine manages.
        store: Persistence for the state record.
        on_restart: Hook called with the team id on ``start`` after a
            ``stop``; clears detection caches and other per-run memory.
        emitter: Optional event emitter for STATE_CHANGED events.
        clock: Time source.
    """

    def __init__(
        self,
        team_id: str,
        store: TeamStore,
        on_restart: Callable[[str], None] | None = None,
        emitter: EventEmitter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._team_id = team_id
        self._store = store
        self._on_restart = on_restart
        self._emitter = emitter
        self._clock = clock

        self._model = ExecutionModel(
            store.get_execution_state(team_id), clock, self._handle_restart
        )
        self._machine = Machine(
            model=self._model,
            states=[status.value for status in ExecutionStatus],
            transitions=TRANSITIONS,
            initial=self._model.record.status.value,
            auto_transitions=False,
            send_event=True,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def team_id(self) -> str:
        return self._team_id

    @property
    def record(self) -> ExecutionState:
        """Last loaded state record (call :meth:`refresh` for a fresh read)."""
        return self._model.record

    @property
    def status(self) -> ExecutionStatus:
        return ExecutionStatus(self._model.state)

    def refresh(self) -> ExecutionState:
        """Reload the persisted record and sync the machine to it."""
        record = self._store.get_execution_state(self._team_id)
        self._model.record = record
        self._machine.set_state(record.status.value, model=self._model)
        return record

    def is_running(self) -> bool:
        return self.refresh().status == ExecutionStatus.RUNNING

    def allowed_triggers(self) -> list[str]:
        return list(self._machine.get_triggers(self._model.state))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(self) -> ExecutionState:
        return self._fire("start")

    def pause(self) -> ExecutionState:
        return self._fire("pause")

    def resume(self) -> ExecutionState:
        return self._fire("resume")

    def stop(self) -> ExecutionState:
        return self._fire("stop")

    def record_cycle(self) -> ExecutionState:
        """Count a finished cycle and touch ``last_activity_at``."""
        record = self.refresh()
        record.total_cycles += 1
        record.last_activity_at = self._clock()
        self._persist(record)
        return record

    def _fire(self, trigger: str) -> ExecutionState:
        record = self.refresh()
        source = self._model.state
        try:
            getattr(self._model, trigger)()
        except MachineError as e:
            raise InvalidTransitionError(trigger, source) from e

        record.status = ExecutionStatus(self._model.state)
        self._persist(record)
        logger.info(f"Team {self._team_id} execution {source} -> {record.status} ({trigger})")
        if self._emitter is not None:
            self._emitter.state_changed(trigger, source, record.status.value)
        return record

    def _handle_restart(self) -> None:
        if self._on_restart is not None:
            self._on_restart(self._team_id)

    def _persist(self, record: ExecutionState) -> None:
        try:
            self._store.update_execution_state(self._team_id, record)
        except Exception as e:
            logger.warning(f"Failed to persist execution state for team {self._team_id}: {e}")


__all__ = [
    "ExecutionModel",
    "ExecutionStateMachine",
    "TRANSITIONS",
]
