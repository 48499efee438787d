"""Configuration and shared enums for the team orchestrator.

This module handles:
    - Agent role, node status, execution state and decision enums
    - OrchestratorConfig dataclass with the cycle tuning knobs
    - Loading and validating configuration from a YAML file
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================


class AgentType(StrEnum):
    """Schedulable agent roles, in tie-break order."""

    PLANNER = "planner"
    BUILDER = "builder"
    COMMUNICATOR = "communicator"
    REVIEWER = "reviewer"


# Enumeration order doubles as the deterministic tie-breaker for equal priorities.
AGENT_ORDER: tuple[AgentType, ...] = tuple(AgentType)


class NodeStatus(StrEnum):
    """Lifecycle of a node inside one execution graph."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionStatus(StrEnum):
    """Run state of a team's control loop."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class DecisionAction(StrEnum):
    """What the driver does after a cycle."""

    CONTINUE = "continue"
    PAUSE = "pause"
    STOP = "stop"


# =============================================================================
# Configuration
# =============================================================================


class ConfigValidationError(ValueError):
    """Raised when an orchestrator configuration file is invalid."""


DEFAULT_TERMINAL_PHASES: tuple[str, ...] = ("completed", "archived")


@dataclass
class OrchestratorConfig:
    """Tuning knobs for detection, scheduling and the decision policy.

    Attributes:
        inter_wave_delay: Seconds to wait before every wave but the first.
        cycle_interval: Extra seconds the driver waits after a continue decision.
        idle_pause_base: Pause (seconds) after the first idle cycle.
        idle_pause_max: Upper bound (seconds) for the idle backoff.
        detection_cache_ttl: Lifetime (seconds) of memoized work detection.
        planner_min_pending_todos: Planner has work below this many pending todos.
        planner_interval: Seconds between periodic planning checks.
        reviewer_interval: Seconds between periodic review checks.
        reviewer_completed_threshold: Completed todos since last review that
            warrant a review.
        terminal_phases: Team lifecycle phases that end the control loop.
        max_cycles: Optional bound on cycles per run.
        agent_timeout: Seconds an agent-execution collaborator allows per call.
        agents: Role -> shell command used by CommandAgentExecutor.
    """

    inter_wave_delay: float = 5.0
    cycle_interval: float = 0.0
    idle_pause_base: float = 5.0
    idle_pause_max: float = 30.0
    detection_cache_ttl: float = 5.0
    planner_min_pending_todos: int = 1
    planner_interval: float = 300.0
    reviewer_interval: float = 180.0
    reviewer_completed_threshold: int = 2
    terminal_phases: tuple[str, ...] = DEFAULT_TERMINAL_PHASES
    max_cycles: int | None = None
    agent_timeout: float = 300.0
    agents: dict[AgentType, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigValidationError: If any value is out of range.
        """
        non_negative = (
            "inter_wave_delay",
            "cycle_interval",
            "detection_cache_ttl",
            "planner_interval",
            "reviewer_interval",
        )
        for name in non_negative:
            if getattr(self, name) < 0:
                raise ConfigValidationError(f"{name} must be >= 0, got {getattr(self, name)}")

        if self.idle_pause_base <= 0:
            raise ConfigValidationError(
                f"idle_pause_base must be > 0, got {self.idle_pause_base}"
            )
        if self.idle_pause_max < self.idle_pause_base:
            raise ConfigValidationError(
                "idle_pause_max must be >= idle_pause_base "
                f"({self.idle_pause_max} < {self.idle_pause_base})"
            )
        if self.max_cycles is not None and self.max_cycles <= 0:
            raise ConfigValidationError(f"max_cycles must be positive, got {self.max_cycles}")
        if self.agent_timeout <= 0:
            raise ConfigValidationError(f"agent_timeout must be > 0, got {self.agent_timeout}")
        if self.planner_min_pending_todos < 0:
            raise ConfigValidationError("planner_min_pending_todos must be >= 0")
        if self.reviewer_completed_threshold < 1:
            raise ConfigValidationError("reviewer_completed_threshold must be >= 1")


def _parse_agents(raw: Any) -> dict[AgentType, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigValidationError("agents must be a mapping of role -> command")

    agents: dict[AgentType, str] = {}
    for role, command in raw.items():
        try:
            agent_type = AgentType(str(role).strip().lower())
        except ValueError:
            valid = ", ".join(AGENT_ORDER)
            raise ConfigValidationError(
                f"Unknown agent role in agents: {role}. Valid roles: {valid}"
            ) from None
        if not isinstance(command, str) or not command.strip():
            raise ConfigValidationError(f"agents.{agent_type} must be a non-empty command")
        agents[agent_type] = command.strip()
    return agents


def config_from_dict(data: dict[str, Any]) -> OrchestratorConfig:
    """Build an OrchestratorConfig from a parsed mapping.

    Unknown keys are ignored with a warning so older files keep loading.

    Raises:
        ConfigValidationError: If a value has the wrong type or range.
    """
    known = set(OrchestratorConfig.__dataclass_fields__)
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            logger.warning(f"Ignoring unknown config key: {key}")
            continue
        kwargs[key] = value

    if "agents" in kwargs:
        kwargs["agents"] = _parse_agents(kwargs["agents"])
    if "terminal_phases" in kwargs:
        phases = kwargs["terminal_phases"]
        if isinstance(phases, str):
            phases = [phases]
        kwargs["terminal_phases"] = tuple(str(p) for p in phases)

    try:
        return OrchestratorConfig(**kwargs)
    except TypeError as e:
        raise ConfigValidationError(f"Invalid configuration value: {e}") from e


def load_config(config_path: Path) -> OrchestratorConfig:
    """Load orchestrator configuration from YAML.

    Args:
        config_path: Path to the YAML file.

    Returns:
        Parsed configuration (defaults if the file does not exist).

    Raises:
        ConfigValidationError: If the file cannot be parsed or is invalid.
    """
    if not config_path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return OrchestratorConfig()

    yaml = YAML(typ="safe")
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.load(f) or {}
    except YAMLError as e:
        raise ConfigValidationError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigValidationError(f"Expected a mapping at top level of {config_path}")

    # Accept either a bare mapping or one nested under "orchestrator".
    section = data.get("orchestrator", data)
    if not isinstance(section, dict):
        raise ConfigValidationError("orchestrator section must be a mapping")
    return config_from_dict(section)


__all__ = [
    "AGENT_ORDER",
    "AgentType",
    "ConfigValidationError",
    "DecisionAction",
    "ExecutionStatus",
    "NodeStatus",
    "OrchestratorConfig",
    "config_from_dict",
    "load_config",
]
