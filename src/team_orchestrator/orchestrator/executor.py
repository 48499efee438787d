"""Wave executor for running agent nodes.

This module handles:
    - Running waves in order, with a fixed delay before every wave but the first
    - Launching every node of a wave concurrently with asyncio
    - Waiting for the whole wave to settle before the next one starts
    - Recording per-node results and errors without aborting the cycle

Each concurrent task owns its node's outcome and returns it; results are
merged back into the graph only after the wave's join barrier.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable

from team_orchestrator.orchestrator.config import NodeStatus, OrchestratorConfig
from team_orchestrator.orchestrator.events import EventEmitter
from team_orchestrator.orchestrator.interfaces import AgentExecutor
from team_orchestrator.orchestrator.models import (
    AgentFailure,
    AgentOutcome,
    AgentSuccess,
    ExecutionGraph,
    GraphNode,
    utcnow,
)
from team_orchestrator.orchestrator.scheduler import WavePlan, plan_waves

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


def describe_error(error: BaseException) -> str:
    """Human-readable failure text for a node."""
    message = str(error).strip()
    return f"{type(error).__name__}: {message}" if message else type(error).__name__


class WaveExecutor:
    """Runs an execution graph wave by wave against an agent executor."""

    def __init__(
        self,
        agent_executor: AgentExecutor,
        config: OrchestratorConfig | None = None,
        emitter: EventEmitter | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._agents = agent_executor
        self._config = config or OrchestratorConfig()
        self._emitter = emitter
        self._sleep = sleep
        self._clock = clock

    async def execute(
        self, graph: ExecutionGraph, plan: WavePlan | None = None
    ) -> ExecutionGraph:
        """Execute *graph* in place and return it.

        Args:
            graph: Graph for this cycle; nodes are mutated.
            plan: Precomputed waves (computed from the graph if omitted).

        Returns:
            The same graph with every node settled and ``completed_at`` set.
        """
        if plan is None:
            plan = plan_waves(graph.nodes)

        team_id = graph.team_id
        logger.info(
            f"Executing {len(graph.nodes)} agents in {len(plan)} waves for team {team_id}"
        )
        if plan.degraded and self._emitter is not None:
            self._emitter.scheduling_degraded(plan.forced_node_ids)

        for index, wave in enumerate(plan.waves):
            if index > 0 and self._config.inter_wave_delay > 0:
                logger.info(
                    f"Waiting {self._config.inter_wave_delay}s before wave {index + 1} "
                    "to avoid rate limits"
                )
                await self._sleep(self._config.inter_wave_delay)

            await self._run_wave(index, len(plan), wave, team_id)

        graph.metadata.completed_at = self._clock()
        elapsed_ms = int(
            (graph.metadata.completed_at - graph.metadata.created_at).total_seconds() * 1000
        )
        logger.info(f"Graph execution for team {team_id} completed in {elapsed_ms}ms")
        return graph

    async def _run_wave(
        self, index: int, total: int, wave: list[GraphNode], team_id: str
    ) -> None:
        agents = tuple(node.agent_type for node in wave)
        logger.info(f"Wave {index + 1}/{total}: {', '.join(agents)}")
        if self._emitter is not None:
            self._emitter.wave_started(index, agents)

        for node in wave:
            node.status = NodeStatus.RUNNING
            node.start_time = self._clock()

        settled = await asyncio.gather(
            *(self._run_node(node, team_id) for node in wave),
            return_exceptions=True,
        )

        failed = 0
        for node, outcome in zip(wave, settled):
            if isinstance(outcome, BaseException):
                outcome = AgentFailure(node.id, node.agent_type, describe_error(outcome))
            node.end_time = self._clock()
            self._apply_outcome(index, node, outcome)
            if node.status == NodeStatus.FAILED:
                failed += 1

        if self._emitter is not None:
            self._emitter.wave_completed(index, agents, failed)

    async def _run_node(self, node: GraphNode, team_id: str) -> AgentOutcome:
        try:
            output = await self._agents.execute_agent(node.agent_type, team_id)
        except Exception as e:
            return AgentFailure(node.id, node.agent_type, describe_error(e))
        return AgentSuccess(node.id, node.agent_type, "" if output is None else str(output))

    def _apply_outcome(self, index: int, node: GraphNode, outcome: AgentOutcome) -> None:
        match outcome:
            case AgentSuccess(output=output):
                node.status = NodeStatus.COMPLETED
                node.result = output
                logger.info(f"{node.agent_type} completed in {node.duration_ms}ms")
                if self._emitter is not None:
                    self._emitter.node_completed(index, node.agent_type, node.duration_ms)
            case AgentFailure(error=error):
                node.status = NodeStatus.FAILED
                node.error = error
                logger.error(f"{node.agent_type} failed after {node.duration_ms}ms: {error}")
                if self._emitter is not None:
                    self._emitter.node_failed(
                        index, node.agent_type, error, node.duration_ms
                    )


__all__ = [
    "WaveExecutor",
    "describe_error",
]
