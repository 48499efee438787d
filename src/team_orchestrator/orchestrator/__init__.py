"""Orchestration core for multi-agent teams.

Each cycle decides which agent roles (planner, builder, communicator,
reviewer) have work for a team, builds a dependency graph of those agents,
runs independent agents concurrently in waves, and decides whether the
control loop continues, pauses or stops.

Core Components:
    - Work Detector: per-role heuristics over the team's data
    - Graph Builder / Wave Scheduler: dependency-ordered waves
    - Wave Executor: concurrent execution with per-node failure isolation
    - Cycle Controller: one cycle plus the decision policy
    - Execution State Machine: idle/running/paused/stopped lifecycle

Usage:
    from team_orchestrator.orchestrator import (
        CycleController,
        OrchestrationDriver,
        load_config,
    )

    config = load_config(root / "orchestrator.yaml")
    controller = CycleController(store, agents, config)
    summaries = await OrchestrationDriver(controller, store).run(team_id, auto_start=True)
"""

from team_orchestrator.orchestrator.agents import AgentRegistry, CommandAgentExecutor
from team_orchestrator.orchestrator.config import (
    AGENT_ORDER,
    AgentType,
    ConfigValidationError,
    DecisionAction,
    ExecutionStatus,
    NodeStatus,
    OrchestratorConfig,
    config_from_dict,
    load_config,
)
from team_orchestrator.orchestrator.detection import WorkDetectionCache, WorkDetector
from team_orchestrator.orchestrator.events import (
    EventEmitter,
    LoggingObserver,
    OrchestrationEvent,
    OrchestrationEventType,
    RecordingObserver,
)
from team_orchestrator.orchestrator.executor import WaveExecutor
from team_orchestrator.orchestrator.integration import (
    CycleController,
    DecisionPolicy,
    OrchestrationDriver,
    summarize_history,
)
from team_orchestrator.orchestrator.interfaces import (
    AgentExecutionError,
    AgentExecutor,
    InvalidTransitionError,
    OrchestrationError,
    OrchestrationObserver,
    TeamNotFoundError,
    TeamStore,
)
from team_orchestrator.orchestrator.models import (
    AgentWorkStatus,
    ExecutionGraph,
    ExecutionState,
    GraphNode,
    HistoryStats,
    OrchestrationSummary,
    OrchestratorDecision,
    TeamContext,
    TeamRecord,
    WorkStatus,
)
from team_orchestrator.orchestrator.scheduler import (
    WavePlan,
    build_execution_graph,
    compute_waves,
    plan_waves,
)
from team_orchestrator.orchestrator.state import ExecutionStateMachine

__all__ = [
    # Enums
    "AGENT_ORDER",
    "AgentType",
    "DecisionAction",
    "ExecutionStatus",
    "NodeStatus",
    # Config
    "OrchestratorConfig",
    "config_from_dict",
    "load_config",
    # Models
    "AgentWorkStatus",
    "ExecutionGraph",
    "ExecutionState",
    "GraphNode",
    "HistoryStats",
    "OrchestrationSummary",
    "OrchestratorDecision",
    "TeamContext",
    "TeamRecord",
    "WorkStatus",
    # Components
    "WorkDetectionCache",
    "WorkDetector",
    "WavePlan",
    "build_execution_graph",
    "compute_waves",
    "plan_waves",
    "WaveExecutor",
    "CycleController",
    "DecisionPolicy",
    "OrchestrationDriver",
    "summarize_history",
    "ExecutionStateMachine",
    # Collaborators
    "AgentExecutor",
    "AgentRegistry",
    "CommandAgentExecutor",
    "OrchestrationObserver",
    "TeamStore",
    # Events
    "EventEmitter",
    "LoggingObserver",
    "OrchestrationEvent",
    "OrchestrationEventType",
    "RecordingObserver",
    # Exceptions
    "AgentExecutionError",
    "ConfigValidationError",
    "InvalidTransitionError",
    "OrchestrationError",
    "TeamNotFoundError",
]
