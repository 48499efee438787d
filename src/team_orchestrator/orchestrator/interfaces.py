"""Collaborator ports consumed by the orchestration core.

The core never talks to a database, an LLM or a dashboard directly. It goes
through these abstract base classes, which adapters in
``team_orchestrator.store`` and ``team_orchestrator.orchestrator.agents``
implement.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from team_orchestrator.orchestrator.config import AgentType
    from team_orchestrator.orchestrator.events import OrchestrationEvent
    from team_orchestrator.orchestrator.models import (
        ExecutionState,
        OrchestrationSummary,
        TeamRecord,
    )


# =============================================================================
# Exceptions
# =============================================================================


class OrchestrationError(Exception):
    """Base exception for orchestration errors."""


class TeamNotFoundError(OrchestrationError):
    """Raised when the team record does not exist (fatal to a cycle)."""

    def __init__(self, team_id: str):
        super().__init__(f"Team not found: {team_id}")
        self.team_id = team_id


class InvalidTransitionError(OrchestrationError):
    """Raised when an execution state trigger is not valid from the current state."""

    def __init__(self, trigger: str, current: str):
        super().__init__(f"Cannot {trigger} execution while {current}")
        self.trigger = trigger
        self.current = current


class AgentExecutionError(OrchestrationError):
    """Raised by agent collaborators; always absorbed into a failed node."""


# =============================================================================
# Ports
# =============================================================================


class TeamStore(ABC):
    """Persistence port for team data, execution state and cycle summaries.

    Source readers (todos, messages, ...) may raise anything; the work
    detector isolates each source. ``get_team`` must raise
    :class:`TeamNotFoundError` for unknown teams.
    """

    @abstractmethod
    def list_teams(self) -> list[str]:
        """Ids of every team the store holds, sorted."""

    @abstractmethod
    def get_team(self, team_id: str) -> TeamRecord:
        """Return the team record.

        Raises:
            TeamNotFoundError: If the team does not exist.
        """

    @abstractmethod
    def get_todos(self, team_id: str) -> list[dict[str, Any]]:
        """All todos for the team (any status)."""

    @abstractmethod
    def get_unread_messages(self, team_id: str) -> list[dict[str, Any]]:
        """Agent messages from other teams that are not yet read."""

    @abstractmethod
    def get_user_messages(self, team_id: str) -> list[dict[str, Any]]:
        """User messages that have not been processed yet."""

    @abstractmethod
    def get_latest_artifact(self, team_id: str) -> dict[str, Any] | None:
        """Most recent artifact, or None."""

    @abstractmethod
    def get_project_idea(self, team_id: str) -> dict[str, Any] | None:
        """Active project idea, or None."""

    @abstractmethod
    def get_agent_memory(self, team_id: str) -> dict[str, dict[str, Any]]:
        """Per-role memory keyed by role name."""

    @abstractmethod
    def get_execution_state(self, team_id: str) -> ExecutionState:
        """Persisted execution state; a fresh idle state if none was saved.

        Execution state outlives the team record so a halted run can still
        be recorded as stopped after its team disappears.
        """

    @abstractmethod
    def update_execution_state(self, team_id: str, state: ExecutionState) -> None:
        """Persist *state* (last writer wins)."""

    @abstractmethod
    def record_cycle_summary(self, team_id: str, summary: OrchestrationSummary) -> None:
        """Append one cycle summary."""

    @abstractmethod
    def list_cycle_summaries(
        self, team_id: str, limit: int | None = None
    ) -> list[OrchestrationSummary]:
        """Recorded summaries, newest first."""


class AgentExecutor(ABC):
    """Port for running one role's reasoning for a team.

    Implementations enforce their own timeout; the orchestrator never cancels
    an in-flight call.
    """

    @abstractmethod
    async def execute_agent(self, agent_type: AgentType, team_id: str) -> str:
        """Run *agent_type* for *team_id* and return its output text.

        Raises:
            Exception: Any failure; the wave executor records it on the node.
        """


class OrchestrationObserver(ABC):
    """Read-only sink for structured orchestration events."""

    @abstractmethod
    def emit(self, event: OrchestrationEvent) -> None:
        """Deliver one event (best effort)."""


__all__ = [
    "AgentExecutionError",
    "AgentExecutor",
    "InvalidTransitionError",
    "OrchestrationError",
    "OrchestrationObserver",
    "TeamNotFoundError",
    "TeamStore",
]
