"""Shared fixtures for orchestrator tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from team_orchestrator.orchestrator.config import AgentType, OrchestratorConfig
from team_orchestrator.orchestrator.events import RecordingObserver
from team_orchestrator.orchestrator.interfaces import AgentExecutor
from team_orchestrator.store.memory import InMemoryTeamStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable wall clock."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeAgents(AgentExecutor):
    """Agent executor that records calls and can fail or block per role."""

    def __init__(self) -> None:
        self.calls: list[tuple[AgentType, str]] = []
        self.failures: dict[AgentType, Exception] = {}
        self.outputs: dict[AgentType, str] = {}
        self.hooks: dict[AgentType, AsyncMock] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    async def execute_agent(self, agent_type: AgentType, team_id: str) -> str:
        self.calls.append((agent_type, team_id))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            # Yield so siblings in the same wave overlap.
            await asyncio.sleep(0)
            hook = self.hooks.get(agent_type)
            if hook is not None:
                await hook(team_id)
            if agent_type in self.failures:
                raise self.failures[agent_type]
            return self.outputs.get(agent_type, f"{agent_type} done")
        finally:
            self.in_flight -= 1

    @property
    def roles_called(self) -> list[AgentType]:
        return [role for role, _ in self.calls]


def seed_idle_team(store: InMemoryTeamStore, team_id: str = "alpha", **overrides):
    """A team where no role has work."""
    fields = dict(
        name="Alpha",
        created_at=NOW - timedelta(minutes=1),
        project_idea={"title": "Recipe planner"},
        todos=[{"id": "t1", "status": "pending", "priority": 0}],
        agent_memory={"planner": {"last_planning_time": (NOW - timedelta(minutes=1)).isoformat()}},
    )
    fields.update(overrides)
    return store.add_team(team_id, **fields)


def seed_busy_team(store: InMemoryTeamStore, team_id: str = "alpha", **overrides):
    """A team where builder, communicator and reviewer have work."""
    fields = dict(
        name="Alpha",
        created_at=NOW - timedelta(minutes=1),
        project_idea={"title": "Recipe planner"},
        todos=[
            {"id": "t1", "status": "pending", "priority": 5},
            {"id": "t2", "status": "pending", "priority": 1},
        ],
        user_messages=[{"id": "m1", "content": "How is it going?"}],
        artifact={"id": "a1", "created_at": (NOW - timedelta(seconds=30)).isoformat()},
        agent_memory={"planner": {"last_planning_time": (NOW - timedelta(minutes=1)).isoformat()}},
    )
    fields.update(overrides)
    return store.add_team(team_id, **fields)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> OrchestratorConfig:
    return OrchestratorConfig(inter_wave_delay=0.0)


@pytest.fixture
def store() -> InMemoryTeamStore:
    return InMemoryTeamStore()


@pytest.fixture
def agents() -> FakeAgents:
    return FakeAgents()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def no_sleep() -> AsyncMock:
    return AsyncMock()
