"""Data model for orchestration cycles.

Defines the per-cycle types (work status, execution graph, agent outcomes,
decisions, summaries) and the persisted ExecutionState record. Types that
cross the persistence boundary provide ``to_dict``/``from_dict``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from team_orchestrator.orchestrator.config import (
    AGENT_ORDER,
    AgentType,
    DecisionAction,
    ExecutionStatus,
    NodeStatus,
)

MIN_PRIORITY = 0
MAX_PRIORITY = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_datetime(value: Any) -> datetime | None:
    """Coerce a stored timestamp into an aware datetime.

    Accepts datetimes, ISO 8601 strings and epoch milliseconds.
    Naive datetimes are assumed to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError(f"Unsupported timestamp value: {value!r}")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _ms_between(start: datetime | None, end: datetime | None) -> int:
    if start is None or end is None:
        return 0
    return int((end - start).total_seconds() * 1000)


# =============================================================================
# Work detection
# =============================================================================


@dataclass(frozen=True)
class AgentWorkStatus:
    """Whether one role has work this cycle, and why."""

    has_work: bool
    priority: int = 0
    reason: str = ""
    dependencies: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not MIN_PRIORITY <= self.priority <= MAX_PRIORITY:
            raise ValueError(
                f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {self.priority}"
            )

    @classmethod
    def no_work(cls, reason: str) -> AgentWorkStatus:
        return cls(has_work=False, priority=0, reason=reason)

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_work": self.has_work,
            "priority": self.priority,
            "reason": self.reason,
            "dependencies": list(self.dependencies),
        }


@dataclass(frozen=True)
class WorkStatus:
    """Aggregate work status of every role for one team."""

    team_id: str
    statuses: dict[AgentType, AgentWorkStatus]
    computed_at: datetime = field(default_factory=utcnow)

    def get(self, agent_type: AgentType) -> AgentWorkStatus:
        """Status for *agent_type*; roles that were never evaluated have no work."""
        return self.statuses.get(
            agent_type, AgentWorkStatus.no_work(f"{agent_type} was not evaluated")
        )

    def items(self) -> list[tuple[AgentType, AgentWorkStatus]]:
        """(role, status) pairs in role enumeration order."""
        return [(agent_type, self.get(agent_type)) for agent_type in AGENT_ORDER]

    @property
    def has_any_work(self) -> bool:
        return any(status.has_work for _, status in self.items())

    @property
    def max_priority(self) -> int:
        return max(status.priority for _, status in self.items())

    def reasons(self) -> dict[str, str]:
        return {str(agent_type): status.reason for agent_type, status in self.items()}


# =============================================================================
# Team context (read-only input to detection)
# =============================================================================


@dataclass(frozen=True)
class TeamRecord:
    """The team ("stack") itself; nothing can be scheduled without it."""

    team_id: str
    name: str = ""
    phase: str = "active"
    created_at: datetime | None = None


@dataclass
class TeamContext:
    """Everything the work detector reads for one team.

    ``unavailable`` maps a source name to the error raised while reading it;
    roles that depend on such a source report no work.
    """

    team: TeamRecord
    todos: list[dict[str, Any]] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)
    user_messages: list[dict[str, Any]] = field(default_factory=list)
    artifact: dict[str, Any] | None = None
    project_idea: dict[str, Any] | None = None
    agent_memory: dict[str, dict[str, Any]] = field(default_factory=dict)
    unavailable: dict[str, str] = field(default_factory=dict)

    @property
    def team_id(self) -> str:
        return self.team.team_id

    def memory_for(self, agent_type: AgentType) -> dict[str, Any]:
        return self.agent_memory.get(str(agent_type)) or {}


# =============================================================================
# Execution graph
# =============================================================================


@dataclass
class GraphNode:
    """One agent invocation inside an execution graph."""

    id: str
    agent_type: AgentType
    priority: int
    dependencies: list[str] = field(default_factory=list)
    status: NodeStatus = NodeStatus.PENDING
    result: str | None = None
    error: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def duration_ms(self) -> int:
        return _ms_between(self.start_time, self.end_time)

    @property
    def is_settled(self) -> bool:
        return self.status in (NodeStatus.COMPLETED, NodeStatus.FAILED)


@dataclass
class GraphMetadata:
    team_id: str
    created_at: datetime
    completed_at: datetime | None = None


@dataclass
class ExecutionGraph:
    """Nodes for one cycle; owned by the cycle that built it."""

    nodes: list[GraphNode]
    metadata: GraphMetadata

    @property
    def team_id(self) -> str:
        return self.metadata.team_id

    @property
    def is_empty(self) -> bool:
        return not self.nodes

    def node_ids(self) -> set[str]:
        return {node.id for node in self.nodes}

    def get_node(self, node_id: str) -> GraphNode | None:
        return next((node for node in self.nodes if node.id == node_id), None)


@dataclass(frozen=True)
class AgentSuccess:
    """Agent call returned output text."""

    node_id: str
    agent_type: AgentType
    output: str


@dataclass(frozen=True)
class AgentFailure:
    """Agent call raised; ``error`` describes the failure."""

    node_id: str
    agent_type: AgentType
    error: str


AgentOutcome = AgentSuccess | AgentFailure


# =============================================================================
# Decisions and summaries
# =============================================================================


@dataclass(frozen=True)
class OrchestratorDecision:
    """What the driver should do after a cycle."""

    action: DecisionAction
    reason: str
    duration_ms: int | None = None
    next_poll_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": str(self.action),
            "reason": self.reason,
            "duration_ms": self.duration_ms,
            "next_poll_time": _iso(self.next_poll_time),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrchestratorDecision:
        return cls(
            action=DecisionAction(data["action"]),
            reason=data.get("reason", ""),
            duration_ms=data.get("duration_ms"),
            next_poll_time=to_datetime(data.get("next_poll_time")),
        )


@dataclass(frozen=True)
class NodeFailure:
    agent_type: AgentType
    node_id: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"agent_type": str(self.agent_type), "node_id": self.node_id, "error": self.error}


@dataclass(frozen=True)
class OrchestrationSummary:
    """Outcome of one cycle, as recorded and shown to operators.

    ``degraded_scheduling`` is set when the scheduler gave up on dependency
    order and forced the remaining nodes into a final wave.
    """

    team_id: str
    cycle_number: int
    decision: OrchestratorDecision
    agents_run: tuple[AgentType, ...] = ()
    waves: int = 0
    wave_agents: tuple[tuple[AgentType, ...], ...] = ()
    parallel_executions: int = 0
    total_duration_ms: int = 0
    success_count: int = 0
    failure_count: int = 0
    failures: tuple[NodeFailure, ...] = ()
    degraded_scheduling: bool = False
    work_reasons: dict[str, str] = field(default_factory=dict)
    fatal_error: str | None = None
    started_at: datetime = field(default_factory=utcnow)

    @property
    def is_fatal(self) -> bool:
        return self.fatal_error is not None

    @property
    def is_idle(self) -> bool:
        return not self.agents_run and not self.is_fatal

    def to_dict(self) -> dict[str, Any]:
        return {
            "team_id": self.team_id,
            "cycle_number": self.cycle_number,
            "decision": self.decision.to_dict(),
            "agents_run": [str(a) for a in self.agents_run],
            "waves": self.waves,
            "wave_agents": [[str(a) for a in wave] for wave in self.wave_agents],
            "parallel_executions": self.parallel_executions,
            "total_duration_ms": self.total_duration_ms,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "failures": [f.to_dict() for f in self.failures],
            "degraded_scheduling": self.degraded_scheduling,
            "work_reasons": dict(self.work_reasons),
            "fatal_error": self.fatal_error,
            "started_at": _iso(self.started_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrchestrationSummary:
        return cls(
            team_id=data["team_id"],
            cycle_number=data["cycle_number"],
            decision=OrchestratorDecision.from_dict(data["decision"]),
            agents_run=tuple(AgentType(a) for a in data.get("agents_run", [])),
            waves=data.get("waves", 0),
            wave_agents=tuple(
                tuple(AgentType(a) for a in wave) for wave in data.get("wave_agents", [])
            ),
            parallel_executions=data.get("parallel_executions", 0),
            total_duration_ms=data.get("total_duration_ms", 0),
            success_count=data.get("success_count", 0),
            failure_count=data.get("failure_count", 0),
            failures=tuple(
                NodeFailure(
                    agent_type=AgentType(f["agent_type"]),
                    node_id=f["node_id"],
                    error=f["error"],
                )
                for f in data.get("failures", [])
            ),
            degraded_scheduling=data.get("degraded_scheduling", False),
            work_reasons=data.get("work_reasons", {}),
            fatal_error=data.get("fatal_error"),
            started_at=to_datetime(data.get("started_at")) or utcnow(),
        )


@dataclass(frozen=True)
class HistoryStats:
    """Aggregate view of the cycles a team ran within a time window.

    Fatal cycles count as failed; every other recorded cycle counts as
    completed. Averages and decision counts cover completed cycles only.
    """

    team_id: str
    since: datetime | None
    total_cycles: int = 0
    completed_cycles: int = 0
    failed_cycles: int = 0
    avg_cycle_duration_ms: int = 0
    continue_decisions: int = 0
    pause_decisions: int = 0
    stop_decisions: int = 0
    avg_parallel_executions: float = 0.0
    degraded_cycles: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "team_id": self.team_id,
            "since": _iso(self.since),
            "total_cycles": self.total_cycles,
            "completed_cycles": self.completed_cycles,
            "failed_cycles": self.failed_cycles,
            "avg_cycle_duration_ms": self.avg_cycle_duration_ms,
            "continue_decisions": self.continue_decisions,
            "pause_decisions": self.pause_decisions,
            "stop_decisions": self.stop_decisions,
            "avg_parallel_executions": self.avg_parallel_executions,
            "degraded_cycles": self.degraded_cycles,
        }


# =============================================================================
# Persisted execution state
# =============================================================================


@dataclass
class ExecutionState:
    """Run state of one team's control loop (persisted)."""

    status: ExecutionStatus = ExecutionStatus.IDLE
    started_at: datetime | None = None
    paused_at: datetime | None = None
    stopped_at: datetime | None = None
    last_activity_at: datetime | None = None
    total_cycles: int = 0
    process_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "started_at": _iso(self.started_at),
            "paused_at": _iso(self.paused_at),
            "stopped_at": _iso(self.stopped_at),
            "last_activity_at": _iso(self.last_activity_at),
            "total_cycles": self.total_cycles,
            "process_id": self.process_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionState:
        return cls(
            status=ExecutionStatus(data.get("status", ExecutionStatus.IDLE)),
            started_at=to_datetime(data.get("started_at")),
            paused_at=to_datetime(data.get("paused_at")),
            stopped_at=to_datetime(data.get("stopped_at")),
            last_activity_at=to_datetime(data.get("last_activity_at")),
            total_cycles=int(data.get("total_cycles", 0)),
            process_id=data.get("process_id"),
        )
