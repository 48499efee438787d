"""Agent-execution collaborators.

Two ways to run a role's agent for a team:
    - AgentRegistry: in-process async callables, one per role
    - CommandAgentExecutor: an external command per role, run as a subprocess

Both bound every call with the configured agent timeout. The orchestrator
never cancels an agent call itself; the timeout here is the only bound.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from typing import Awaitable, Callable

from team_orchestrator.orchestrator.config import AgentType, OrchestratorConfig
from team_orchestrator.orchestrator.interfaces import AgentExecutionError, AgentExecutor

logger = logging.getLogger(__name__)

AgentFn = Callable[[str], Awaitable[str]]

# Grace period for a terminated process before it is killed
TERMINATE_GRACE_SECONDS = 5.0


# =============================================================================
# In-process registry
# =============================================================================


class AgentRegistry(AgentExecutor):
    """Maps roles to async callables taking a team id and returning text."""

    def __init__(
        self,
        agents: dict[AgentType, AgentFn] | None = None,
        timeout: float | None = None,
    ) -> None:
        self._agents: dict[AgentType, AgentFn] = dict(agents or {})
        self._timeout = timeout

    def register(self, agent_type: AgentType, fn: AgentFn) -> None:
        self._agents[AgentType(agent_type)] = fn

    def roles(self) -> list[AgentType]:
        return [role for role in AgentType if role in self._agents]

    def __contains__(self, agent_type: object) -> bool:
        return agent_type in self._agents

    async def execute_agent(self, agent_type: AgentType, team_id: str) -> str:
        fn = self._agents.get(agent_type)
        if fn is None:
            raise AgentExecutionError(f"No agent registered for role {agent_type}")

        try:
            if self._timeout:
                return await asyncio.wait_for(fn(team_id), timeout=self._timeout)
            return await fn(team_id)
        except asyncio.TimeoutError as e:
            raise AgentExecutionError(
                f"{agent_type} agent timed out after {self._timeout}s"
            ) from e


# =============================================================================
# Subprocess commands
# =============================================================================


class CommandAgentExecutor(AgentExecutor):
    """Runs a configured shell command per role.

    The command receives ``TEAM_ID`` and ``AGENT_TYPE`` in its environment.
    Its stripped stdout is the agent's result.

    Args:
        commands: Role to command line (split with shlex).
        timeout: Seconds before the process is terminated.
        env: Base environment (defaults to the current process environment).
    """

    def __init__(
        self,
        commands: dict[AgentType, str],
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self._commands = {AgentType(role): cmd for role, cmd in commands.items()}
        self._timeout = timeout
        self._env = env

    @classmethod
    def from_config(cls, config: OrchestratorConfig) -> CommandAgentExecutor:
        return cls(config.agents, timeout=config.agent_timeout)

    async def execute_agent(self, agent_type: AgentType, team_id: str) -> str:
        command = self._commands.get(agent_type)
        if not command:
            raise AgentExecutionError(f"No command configured for role {agent_type}")

        argv = shlex.split(command)
        env = dict(self._env if self._env is not None else os.environ)
        env["TEAM_ID"] = team_id
        env["AGENT_TYPE"] = str(agent_type)

        logger.debug(f"Running {agent_type} agent for team {team_id}: {argv}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise AgentExecutionError(f"Could not start {agent_type} agent: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            await self._shutdown(proc)
            raise AgentExecutionError(
                f"{agent_type} agent timed out after {self._timeout}s"
            ) from e
        except asyncio.CancelledError:
            logger.warning(f"{agent_type} agent for team {team_id} cancelled, terminating")
            await self._shutdown(proc)
            raise

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise AgentExecutionError(
                f"{agent_type} agent exited with code {proc.returncode}"
                + (f": {detail}" if detail else "")
            )

        return stdout.decode("utf-8", errors="replace").strip()

    @staticmethod
    async def _shutdown(proc: asyncio.subprocess.Process) -> None:
        # Graceful shutdown: terminate first, then kill
        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()


__all__ = [
    "AgentFn",
    "AgentRegistry",
    "CommandAgentExecutor",
]
