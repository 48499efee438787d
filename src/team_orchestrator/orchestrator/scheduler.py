"""Execution graph construction and wave scheduling.

This module handles:
    - Building one graph node per role that has work
    - Resolving role-name dependencies to node ids within the graph
    - Partitioning nodes into dependency-respecting waves
    - Forcing a final wave when dependencies cannot be resolved
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterator

from team_orchestrator.orchestrator.config import AGENT_ORDER
from team_orchestrator.orchestrator.models import (
    ExecutionGraph,
    GraphMetadata,
    GraphNode,
    WorkStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Graph Builder
# =============================================================================


def make_node_id(agent_type: str, created_at: datetime) -> str:
    return f"{agent_type}-{int(created_at.timestamp() * 1000)}"


def build_execution_graph(
    work_status: WorkStatus, clock: Callable[[], datetime] = utcnow
) -> ExecutionGraph:
    """Build the execution graph for one cycle.

    Roles without work get no node. Nodes are ordered by priority, highest
    first, with ties broken by role order. The order only makes visiting
    deterministic; correctness comes from the dependencies.

    Dependencies naming a role are resolved to that role's node id. Anything
    that matches no node is kept verbatim and later treated as satisfied.
    """
    created_at = clock()

    with_work = [
        (agent_type, status) for agent_type, status in work_status.items() if status.has_work
    ]
    role_to_id = {str(agent_type): make_node_id(agent_type, created_at) for agent_type, _ in with_work}

    nodes = [
        GraphNode(
            id=role_to_id[str(agent_type)],
            agent_type=agent_type,
            priority=status.priority,
            dependencies=[role_to_id.get(dep, dep) for dep in status.dependencies],
        )
        for agent_type, status in with_work
    ]
    nodes.sort(key=lambda n: (-n.priority, AGENT_ORDER.index(n.agent_type)))

    return ExecutionGraph(
        nodes=nodes,
        metadata=GraphMetadata(team_id=work_status.team_id, created_at=created_at),
    )


# =============================================================================
# Wave Scheduler
# =============================================================================


@dataclass
class WavePlan:
    """Ordered waves plus whether dependency order had to be abandoned."""

    waves: list[list[GraphNode]] = field(default_factory=list)
    degraded: bool = False
    forced_node_ids: list[str] = field(default_factory=list)

    def __iter__(self) -> Iterator[list[GraphNode]]:
        return iter(self.waves)

    def __len__(self) -> int:
        return len(self.waves)

    @property
    def max_width(self) -> int:
        return max((len(wave) for wave in self.waves), default=0)

    def wave_index_of(self, node_id: str) -> int | None:
        for index, wave in enumerate(self.waves):
            if any(node.id == node_id for node in wave):
                return index
        return None


def plan_waves(nodes: list[GraphNode]) -> WavePlan:
    """Partition *nodes* into waves.

    Each wave holds every not-yet-scheduled node whose dependencies are
    scheduled in an earlier wave or are not in *nodes* at all. When a pass
    selects nothing while nodes remain (a cycle or otherwise unsatisfiable
    chain), all remaining nodes are forced into one final wave and the plan
    is marked degraded.
    """
    all_ids = {node.id for node in nodes}
    scheduled: set[str] = set()
    remaining = list(nodes)
    plan = WavePlan()

    while remaining:
        wave = [
            node
            for node in remaining
            if all(dep in scheduled or dep not in all_ids for dep in node.dependencies)
        ]

        if not wave:
            stuck = [node.id for node in remaining]
            logger.warning(
                f"Cannot resolve dependencies for remaining nodes {stuck}; "
                "forcing them into a final wave"
            )
            plan.waves.append(remaining)
            plan.degraded = True
            plan.forced_node_ids = stuck
            break

        plan.waves.append(wave)
        scheduled.update(node.id for node in wave)
        remaining = [node for node in remaining if node.id not in scheduled]

    return plan


def compute_waves(nodes: list[GraphNode]) -> list[list[GraphNode]]:
    """Ordered waves for *nodes* (see :func:`plan_waves`)."""
    return plan_waves(nodes).waves


__all__ = [
    "WavePlan",
    "build_execution_graph",
    "compute_waves",
    "make_node_id",
    "plan_waves",
]
