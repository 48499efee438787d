"""Dict-backed TeamStore.

Holds one mutable TeamContext per team. Reads and writes can be made to fail
on demand, per team and per operation, to exercise fail-soft paths.
"""

from __future__ import annotations

import copy
import dataclasses
from datetime import datetime
from typing import Any

from team_orchestrator.orchestrator.interfaces import TeamNotFoundError, TeamStore
from team_orchestrator.orchestrator.models import (
    ExecutionState,
    OrchestrationSummary,
    TeamContext,
    TeamRecord,
)

# Operation names accepted by inject_failure, besides the context sources.
EXECUTION_STATE_WRITE = "execution_state_write"
CYCLE_SUMMARY_WRITE = "cycle_summary_write"


class InMemoryTeamStore(TeamStore):
    """TeamStore kept entirely in memory."""

    def __init__(self) -> None:
        self._contexts: dict[str, TeamContext] = {}
        self._states: dict[str, ExecutionState] = {}
        self._summaries: dict[str, list[OrchestrationSummary]] = {}
        self._failures: dict[tuple[str, str], Exception] = {}

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def add_team(
        self,
        team_id: str,
        *,
        name: str = "",
        phase: str = "active",
        created_at: datetime | None = None,
        todos: list[dict[str, Any]] | None = None,
        messages: list[dict[str, Any]] | None = None,
        user_messages: list[dict[str, Any]] | None = None,
        artifact: dict[str, Any] | None = None,
        project_idea: dict[str, Any] | None = None,
        agent_memory: dict[str, dict[str, Any]] | None = None,
    ) -> TeamContext:
        context = TeamContext(
            team=TeamRecord(
                team_id=team_id, name=name or team_id, phase=phase, created_at=created_at
            ),
            todos=list(todos or []),
            messages=list(messages or []),
            user_messages=list(user_messages or []),
            artifact=artifact,
            project_idea=project_idea,
            agent_memory=dict(agent_memory or {}),
        )
        self._contexts[team_id] = context
        return context

    def remove_team(self, team_id: str) -> None:
        self._contexts.pop(team_id, None)

    def context(self, team_id: str) -> TeamContext:
        """The live, mutable context for *team_id*."""
        return self._require(team_id)

    def set_phase(self, team_id: str, phase: str) -> None:
        context = self._require(team_id)
        context.team = dataclasses.replace(context.team, phase=phase)

    def list_teams(self) -> list[str]:
        return sorted(self._contexts)

    def inject_failure(self, team_id: str, operation: str, error: Exception) -> None:
        """Make *operation* (a context source or write name) raise *error*."""
        self._failures[(team_id, operation)] = error

    def clear_failures(self) -> None:
        self._failures.clear()

    # ------------------------------------------------------------------
    # TeamStore
    # ------------------------------------------------------------------

    def get_team(self, team_id: str) -> TeamRecord:
        return self._require(team_id).team

    def get_todos(self, team_id: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self._read(team_id, "todos").todos)

    def get_unread_messages(self, team_id: str) -> list[dict[str, Any]]:
        messages = self._read(team_id, "messages").messages
        return [copy.deepcopy(m) for m in messages if not m.get("read_by")]

    def get_user_messages(self, team_id: str) -> list[dict[str, Any]]:
        messages = self._read(team_id, "user_messages").user_messages
        return [copy.deepcopy(m) for m in messages if not m.get("processed")]

    def get_latest_artifact(self, team_id: str) -> dict[str, Any] | None:
        return copy.deepcopy(self._read(team_id, "artifact").artifact)

    def get_project_idea(self, team_id: str) -> dict[str, Any] | None:
        return copy.deepcopy(self._read(team_id, "project_idea").project_idea)

    def get_agent_memory(self, team_id: str) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._read(team_id, "agent_memory").agent_memory)

    def get_execution_state(self, team_id: str) -> ExecutionState:
        state = self._states.get(team_id)
        return dataclasses.replace(state) if state is not None else ExecutionState()

    def update_execution_state(self, team_id: str, state: ExecutionState) -> None:
        self._raise_injected(team_id, EXECUTION_STATE_WRITE)
        self._states[team_id] = dataclasses.replace(state)

    def record_cycle_summary(self, team_id: str, summary: OrchestrationSummary) -> None:
        self._raise_injected(team_id, CYCLE_SUMMARY_WRITE)
        self._summaries.setdefault(team_id, []).append(summary)

    def list_cycle_summaries(
        self, team_id: str, limit: int | None = None
    ) -> list[OrchestrationSummary]:
        summaries = list(reversed(self._summaries.get(team_id, [])))
        return summaries[:limit] if limit is not None else summaries

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, team_id: str) -> TeamContext:
        context = self._contexts.get(team_id)
        if context is None:
            raise TeamNotFoundError(team_id)
        return context

    def _read(self, team_id: str, source: str) -> TeamContext:
        context = self._require(team_id)
        self._raise_injected(team_id, source)
        return context

    def _raise_injected(self, team_id: str, operation: str) -> None:
        error = self._failures.get((team_id, operation))
        if error is not None:
            raise error


__all__ = [
    "CYCLE_SUMMARY_WRITE",
    "EXECUTION_STATE_WRITE",
    "InMemoryTeamStore",
]
