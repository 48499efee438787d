"""Integration module tying the orchestration components together.

This module handles:
    - One detect -> build -> schedule -> execute -> analyze cycle
    - The continue/pause/stop decision policy with idle backoff
    - The per-team driver loop gated by the execution state machine
    - A supervisor that polls every team and drives the running ones
    - Aggregate stats over recorded cycle history
    - Rich rendering of work status, cycle summaries, stats and execution state
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from team_orchestrator.orchestrator.config import (
    DecisionAction,
    ExecutionStatus,
    NodeStatus,
    OrchestratorConfig,
)
from team_orchestrator.orchestrator.detection import WorkDetector
from team_orchestrator.orchestrator.events import EventEmitter, OrchestrationEventType
from team_orchestrator.orchestrator.executor import WaveExecutor, describe_error
from team_orchestrator.orchestrator.interfaces import (
    AgentExecutor,
    InvalidTransitionError,
    OrchestrationObserver,
    TeamStore,
)
from team_orchestrator.orchestrator.models import (
    ExecutionState,
    HistoryStats,
    NodeFailure,
    OrchestrationSummary,
    OrchestratorDecision,
    WorkStatus,
    utcnow,
)
from team_orchestrator.orchestrator.scheduler import build_execution_graph, plan_waves
from team_orchestrator.orchestrator.state import ExecutionStateMachine

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


# =============================================================================
# Decision Policy
# =============================================================================


class DecisionPolicy:
    """Maps a cycle's outcome to continue, pause or stop.

    Tracks consecutive idle cycles per team. The pause after the n-th idle
    cycle in a row is ``idle_pause_base * 2**(n-1)`` seconds, capped at
    ``idle_pause_max``. Any cycle that ran an agent resets the count.
    """

    def __init__(
        self, config: OrchestratorConfig, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self._config = config
        self._clock = clock
        self._idle_counts: dict[str, int] = {}

    def idle_count(self, team_id: str) -> int:
        return self._idle_counts.get(team_id, 0)

    def reset(self, team_id: str) -> None:
        self._idle_counts.pop(team_id, None)

    def idle_pause_seconds(self, idle_count: int) -> float:
        exponent = max(idle_count - 1, 0)
        return min(
            self._config.idle_pause_base * (2**exponent), self._config.idle_pause_max
        )

    def decide(
        self,
        team_id: str,
        *,
        phase: str | None,
        cycle_number: int,
        agents_run: int,
        failure_count: int,
        fatal_error: str | None = None,
    ) -> OrchestratorDecision:
        if fatal_error is not None:
            return OrchestratorDecision(
                action=DecisionAction.STOP,
                reason=f"Execution halted after a fatal cycle error: {fatal_error}",
            )

        if agents_run:
            self.reset(team_id)
        else:
            self._idle_counts[team_id] = self.idle_count(team_id) + 1

        if phase in self._config.terminal_phases:
            return OrchestratorDecision(
                action=DecisionAction.STOP,
                reason=f"Team is in terminal phase '{phase}', nothing left to orchestrate",
            )

        max_cycles = self._config.max_cycles
        if max_cycles is not None and cycle_number >= max_cycles:
            return OrchestratorDecision(
                action=DecisionAction.STOP,
                reason=f"Reached the requested bound of {max_cycles} cycles",
            )

        if not agents_run:
            idle = self.idle_count(team_id)
            return self._pause(
                self.idle_pause_seconds(idle),
                f"No agent had work ({idle} idle cycle{'s' if idle != 1 else ''} in a row), "
                "backing off before polling again",
            )

        if failure_count == agents_run:
            return self._pause(
                self._config.idle_pause_base,
                f"All {agents_run} agents failed, pausing before retry",
            )

        return OrchestratorDecision(
            action=DecisionAction.CONTINUE,
            reason=(
                f"{agents_run} agents ran ({failure_count} failed), "
                "more work may be waiting"
            ),
        )

    def _pause(self, seconds: float, reason: str) -> OrchestratorDecision:
        duration_ms = int(seconds * 1000)
        return OrchestratorDecision(
            action=DecisionAction.PAUSE,
            reason=reason,
            duration_ms=duration_ms,
            next_poll_time=self._clock() + timedelta(milliseconds=duration_ms),
        )


# =============================================================================
# Cycle Controller
# =============================================================================


class CycleController:
    """Runs single orchestration cycles for teams.

    Args:
        store: Team data and persistence collaborator.
        agent_executor: Runs one agent role for a team.
        config: Orchestrator settings.
        detector: Work detector (built from *store* and *config* if omitted).
        observer: Receives structured events; delivery is best-effort.
        sleep: Async sleep used for inter-wave delays.
        clock: Time source.
    """

    def __init__(
        self,
        store: TeamStore,
        agent_executor: AgentExecutor,
        config: OrchestratorConfig | None = None,
        detector: WorkDetector | None = None,
        observer: OrchestrationObserver | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._agents = agent_executor
        self._config = config or OrchestratorConfig()
        self._detector = detector or WorkDetector(store, self._config, clock=clock)
        self._observer = observer
        self._sleep = sleep
        self._clock = clock
        self._policy = DecisionPolicy(self._config, clock)
        self._cycle_counts: dict[str, int] = {}

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def detector(self) -> WorkDetector:
        return self._detector

    @property
    def policy(self) -> DecisionPolicy:
        return self._policy

    @property
    def observer(self) -> OrchestrationObserver | None:
        return self._observer

    @property
    def clock(self) -> Callable[[], datetime]:
        return self._clock

    def reset_team(self, team_id: str) -> None:
        """Forget cached detection, idle backoff and cycle numbering for *team_id*."""
        self._detector.invalidate(team_id)
        self._policy.reset(team_id)
        self._cycle_counts.pop(team_id, None)

    async def run_cycle(
        self, team_id: str, cycle_number: int | None = None
    ) -> OrchestrationSummary:
        """Run one full cycle for *team_id* and decide what happens next.

        Agent failures are captured in the summary. Any other error (the team
        record missing, a store failure outside a single source) produces a
        fatal summary whose decision is ``stop``.

        Args:
            team_id: Team to orchestrate.
            cycle_number: 1-based cycle number within the current run; an
                internal per-team counter is used when omitted.

        Returns:
            The cycle summary, including the decision.
        """
        if cycle_number is None:
            cycle_number = self._cycle_counts.get(team_id, 0) + 1
        self._cycle_counts[team_id] = cycle_number

        emitter = EventEmitter(self._observer, team_id, clock=self._clock)
        started_at = self._clock()
        emitter.emit(
            OrchestrationEventType.CYCLE_STARTED,
            summary=f"Cycle {cycle_number}",
            payload={"cycle_number": cycle_number},
        )

        try:
            summary = await self._run(team_id, cycle_number, emitter, started_at)
        except Exception as e:
            error = describe_error(e)
            logger.error(f"Cycle {cycle_number} for team {team_id} failed: {error}")
            decision = self._policy.decide(
                team_id,
                phase=None,
                cycle_number=cycle_number,
                agents_run=0,
                failure_count=0,
                fatal_error=error,
            )
            summary = OrchestrationSummary(
                team_id=team_id,
                cycle_number=cycle_number,
                decision=decision,
                fatal_error=error,
                started_at=started_at,
            )
            emitter.emit(
                OrchestrationEventType.CYCLE_FAILED,
                summary=error,
                payload=summary.to_dict(),
            )
            return summary

        logger.info(
            f"Cycle {cycle_number} for team {team_id}: {summary.decision.action} "
            f"({summary.decision.reason})"
        )
        emitter.emit(
            OrchestrationEventType.CYCLE_COMPLETED,
            summary=summary.decision.reason,
            payload=summary.to_dict(),
        )
        return summary

    async def _run(
        self,
        team_id: str,
        cycle_number: int,
        emitter: EventEmitter,
        started_at: datetime,
    ) -> OrchestrationSummary:
        team = self._store.get_team(team_id)
        work_status = self._detector.detect(team_id)

        graph = build_execution_graph(work_status, clock=self._clock)
        plan = plan_waves(graph.nodes)

        if graph.is_empty:
            graph.metadata.completed_at = self._clock()
        else:
            executor = WaveExecutor(
                self._agents, self._config, emitter, sleep=self._sleep, clock=self._clock
            )
            await executor.execute(graph, plan)
            # Agents changed the team's data; stale detections must not survive.
            self._detector.invalidate(team_id)

        failures = tuple(
            NodeFailure(node.agent_type, node.id, node.error or "Unknown error")
            for node in graph.nodes
            if node.status == NodeStatus.FAILED
        )
        agents_run = tuple(node.agent_type for node in graph.nodes)
        total_ms = int(
            (graph.metadata.completed_at - graph.metadata.created_at).total_seconds() * 1000
        )

        decision = self._policy.decide(
            team_id,
            phase=team.phase,
            cycle_number=cycle_number,
            agents_run=len(agents_run),
            failure_count=len(failures),
        )

        return OrchestrationSummary(
            team_id=team_id,
            cycle_number=cycle_number,
            decision=decision,
            agents_run=agents_run,
            waves=len(plan),
            wave_agents=tuple(tuple(node.agent_type for node in wave) for wave in plan),
            parallel_executions=plan.max_width,
            total_duration_ms=total_ms,
            success_count=sum(1 for n in graph.nodes if n.status == NodeStatus.COMPLETED),
            failure_count=len(failures),
            failures=failures,
            degraded_scheduling=plan.degraded,
            work_reasons=work_status.reasons(),
            started_at=started_at,
        )


# =============================================================================
# Driver Loop
# =============================================================================


class OrchestrationDriver:
    """Sequential control loop for teams.

    One loop per team: cycles never overlap for the same team. Pause and
    stop requests made elsewhere take effect at the next cycle boundary,
    because the persisted state is re-read before every cycle.
    """

    def __init__(
        self,
        controller: CycleController,
        store: TeamStore,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._controller = controller
        self._store = store
        self._sleep = sleep

    def state_machine(self, team_id: str) -> ExecutionStateMachine:
        return ExecutionStateMachine(
            team_id,
            self._store,
            on_restart=self._controller.reset_team,
            emitter=EventEmitter(
                self._controller.observer, team_id, clock=self._controller.clock
            ),
            clock=self._controller.clock,
        )

    async def run(
        self, team_id: str, *, auto_start: bool = False
    ) -> list[OrchestrationSummary]:
        """Drive *team_id* until its state leaves ``running``.

        Args:
            team_id: Team to drive.
            auto_start: Start (or resume) execution first if not running.

        Returns:
            Summaries of every cycle run by this call, oldest first.
        """
        machine = self.state_machine(team_id)
        if auto_start:
            if machine.status == ExecutionStatus.PAUSED:
                machine.resume()
            elif machine.status != ExecutionStatus.RUNNING:
                machine.start()

        summaries: list[OrchestrationSummary] = []
        cycle_number = 0

        while machine.is_running():
            cycle_number += 1
            summary = await self._controller.run_cycle(team_id, cycle_number=cycle_number)
            summaries.append(summary)
            self._record_summary(team_id, summary)
            machine.record_cycle()

            decision = summary.decision
            if decision.action == DecisionAction.STOP:
                if summary.is_fatal:
                    logger.error(f"Execution halted for team {team_id}: {summary.fatal_error}")
                self._stop(machine)
                break

            if decision.action == DecisionAction.PAUSE:
                delay = (decision.duration_ms or 0) / 1000
                logger.info(f"Team {team_id} idle, next poll in {delay:.1f}s")
            else:
                delay = self._controller.config.cycle_interval

            if delay > 0:
                await self._sleep(delay)

        logger.info(f"Driver for team {team_id} exiting after {len(summaries)} cycles")
        return summaries

    async def run_many(
        self, team_ids: list[str], *, auto_start: bool = False
    ) -> dict[str, list[OrchestrationSummary] | BaseException]:
        """Drive several independent teams concurrently.

        A failing team does not affect the others; its exception is returned
        in place of its summaries.
        """
        results = await asyncio.gather(
            *(self.run(team_id, auto_start=auto_start) for team_id in team_ids),
            return_exceptions=True,
        )
        for team_id, result in zip(team_ids, results):
            if isinstance(result, BaseException):
                logger.error(f"Driver for team {team_id} failed: {describe_error(result)}")
        return dict(zip(team_ids, results))

    async def supervise(
        self,
        *,
        poll_interval: float = 2.0,
        max_polls: int | None = None,
    ) -> dict[str, list[OrchestrationSummary]]:
        """Watch every team and drive the ones whose state is ``running``.

        Each poll lists the store's teams and starts a driver loop for every
        running team that has none. Loops end on their own once their team
        is paused or stopped; a team started again later gets a new loop on
        the next poll. A failing store read is logged and retried on the
        next poll.

        Args:
            poll_interval: Seconds between polls.
            max_polls: Stop polling after this many polls (forever if None).
                Loops already started are awaited before returning.

        Returns:
            Summaries of every cycle run, per team, oldest first.
        """
        active: dict[str, asyncio.Task[list[OrchestrationSummary]]] = {}
        results: dict[str, list[OrchestrationSummary]] = {}
        polls = 0

        try:
            while max_polls is None or polls < max_polls:
                polls += 1
                self._reap(active, results)
                try:
                    self._start_running_teams(active)
                except Exception as e:
                    logger.error(f"Supervisor poll failed: {describe_error(e)}")
                if max_polls is None or polls < max_polls:
                    await self._sleep(poll_interval)
        except asyncio.CancelledError:
            for task in active.values():
                task.cancel()
            raise

        if active:
            await asyncio.wait(active.values())
        self._reap(active, results)
        return results

    def _start_running_teams(
        self, active: dict[str, asyncio.Task[list[OrchestrationSummary]]]
    ) -> None:
        for team_id in self._store.list_teams():
            if team_id in active:
                continue
            if self._store.get_execution_state(team_id).status != ExecutionStatus.RUNNING:
                continue
            logger.info(f"Starting driver loop for team {team_id}")
            active[team_id] = asyncio.create_task(self.run(team_id))

    @staticmethod
    def _reap(
        active: dict[str, asyncio.Task[list[OrchestrationSummary]]],
        results: dict[str, list[OrchestrationSummary]],
    ) -> None:
        for team_id, task in list(active.items()):
            if not task.done():
                continue
            del active[team_id]
            error = task.exception()
            if error is not None:
                logger.error(f"Driver for team {team_id} failed: {describe_error(error)}")
                continue
            results.setdefault(team_id, []).extend(task.result())

    def _record_summary(self, team_id: str, summary: OrchestrationSummary) -> None:
        try:
            self._store.record_cycle_summary(team_id, summary)
        except Exception as e:
            logger.warning(f"Failed to record cycle summary for team {team_id}: {e}")

    @staticmethod
    def _stop(machine: ExecutionStateMachine) -> None:
        try:
            machine.stop()
        except InvalidTransitionError as e:
            # Already stopped by another caller.
            logger.info(f"Stop for team {machine.team_id} skipped: {e}")


# =============================================================================
# History Stats
# =============================================================================


def summarize_history(
    team_id: str,
    summaries: list[OrchestrationSummary],
    since: datetime | None = None,
) -> HistoryStats:
    """Aggregate recorded cycles started at or after *since*.

    Args:
        team_id: Team the summaries belong to.
        summaries: Recorded cycle summaries, in any order.
        since: Start of the window; all summaries when None.

    Returns:
        Cycle counts, decision counts and averages over the window.
    """
    window = [s for s in summaries if since is None or s.started_at >= since]
    completed = [s for s in window if not s.is_fatal]

    def _count(action: DecisionAction) -> int:
        return sum(1 for s in completed if s.decision.action == action)

    avg_duration = 0
    avg_parallel = 0.0
    if completed:
        avg_duration = round(sum(s.total_duration_ms for s in completed) / len(completed))
        avg_parallel = round(sum(s.parallel_executions for s in completed) / len(completed), 1)

    return HistoryStats(
        team_id=team_id,
        since=since,
        total_cycles=len(window),
        completed_cycles=len(completed),
        failed_cycles=len(window) - len(completed),
        avg_cycle_duration_ms=avg_duration,
        continue_decisions=_count(DecisionAction.CONTINUE),
        pause_decisions=_count(DecisionAction.PAUSE),
        stop_decisions=_count(DecisionAction.STOP),
        avg_parallel_executions=avg_parallel,
        degraded_cycles=sum(1 for s in completed if s.degraded_scheduling),
    )


# =============================================================================
# Rendering
# =============================================================================

DECISION_STYLES = {
    DecisionAction.CONTINUE: "green",
    DecisionAction.PAUSE: "yellow",
    DecisionAction.STOP: "red",
}

STATUS_STYLES = {
    ExecutionStatus.IDLE: "[dim]idle[/dim]",
    ExecutionStatus.RUNNING: "[green]running[/green]",
    ExecutionStatus.PAUSED: "[yellow]paused[/yellow]",
    ExecutionStatus.STOPPED: "[red]stopped[/red]",
}


def format_duration_ms(duration_ms: int) -> str:
    seconds = duration_ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"
    return f"{int(seconds // 3600)}h {int((seconds % 3600) // 60)}m"


def create_work_table(work_status: WorkStatus) -> Table:
    """Create a table of per-role work status.

    Args:
        work_status: Detected work for one team.

    Returns:
        Rich Table with one row per role.
    """
    table = Table(
        title=f"[bold]Work status: {work_status.team_id}[/bold]",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Role", style="cyan", width=14)
    table.add_column("Work", width=6)
    table.add_column("Priority", justify="right", width=8)
    table.add_column("Depends on", style="magenta")
    table.add_column("Reason")

    for agent_type, status in work_status.items():
        table.add_row(
            str(agent_type),
            "[green]yes[/green]" if status.has_work else "[dim]no[/dim]",
            str(status.priority) if status.has_work else "-",
            ", ".join(status.dependencies) or "-",
            status.reason,
        )
    return table


def create_summary_panel(summary: OrchestrationSummary) -> Panel:
    """Create a panel describing one cycle, with failures shown inline."""
    decision = summary.decision
    color = DECISION_STYLES.get(decision.action, "white")

    if summary.is_fatal:
        content = (
            f"[bold red]EXECUTION HALTED[/bold red]\n\n"
            f"[bold]Error:[/bold] {summary.fatal_error}"
        )
        return Panel(
            content,
            title=f"Cycle {summary.cycle_number}: {summary.team_id}",
            border_style="red",
        )

    lines = [
        f"[bold {color}]{str(decision.action).upper()}[/bold {color}] {decision.reason}",
        "",
        f"[bold]Agents Run:[/bold] {', '.join(summary.agents_run) or 'None'}",
        f"[bold]Waves:[/bold] {summary.waves}",
    ]
    for index, agents in enumerate(summary.wave_agents):
        lines.append(f"  {index + 1}. {', '.join(agents)}")
    lines += [
        f"[bold]Parallel Executions:[/bold] {summary.parallel_executions}",
        f"[bold]Duration:[/bold] {format_duration_ms(summary.total_duration_ms)}",
        f"[bold]Succeeded:[/bold] {summary.success_count}  "
        f"[bold]Failed:[/bold] {summary.failure_count}",
    ]
    content = "\n".join(lines)
    if summary.degraded_scheduling:
        content += (
            "\n\n[yellow]Scheduling degraded: dependencies could not be resolved, "
            "remaining agents ran in a forced final wave[/yellow]"
        )
    if summary.failures:
        content += "\n\n[red]Failures:[/red]"
        for failure in summary.failures:
            error = failure.error
            if len(error) > 80:
                error = error[:80] + "..."
            content += f"\n  {failure.agent_type}: {error}"

    return Panel(
        content,
        title=f"Cycle {summary.cycle_number}: {summary.team_id}",
        border_style=color,
    )


def print_summary(summary: OrchestrationSummary, console: Console) -> None:
    console.print(create_summary_panel(summary))


def create_state_table(team_id: str, state: ExecutionState) -> Table:
    """Create a two-column table of a team's execution state."""
    table = Table(
        title=f"[bold]Execution: {team_id}[/bold]",
        show_header=False,
    )
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    def _ts(value: datetime | None) -> str:
        return value.isoformat() if value else "-"

    table.add_row("State", STATUS_STYLES.get(state.status, str(state.status)))
    table.add_row("Total cycles", str(state.total_cycles))
    table.add_row("Started", _ts(state.started_at))
    table.add_row("Paused", _ts(state.paused_at))
    table.add_row("Stopped", _ts(state.stopped_at))
    table.add_row("Last activity", _ts(state.last_activity_at))
    return table


def create_history_table(team_id: str, summaries: list[OrchestrationSummary]) -> Table:
    """Create a table of recent cycle summaries, newest first."""
    table = Table(
        title=f"[bold]Cycle history: {team_id}[/bold]",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Cycle", justify="right", width=6)
    table.add_column("Started", style="dim")
    table.add_column("Agents", style="green")
    table.add_column("Waves", justify="right", width=6)
    table.add_column("Failed", justify="right", width=6)
    table.add_column("Decision")

    for summary in summaries:
        action = summary.decision.action
        color = DECISION_STYLES.get(action, "white")
        failed = str(summary.failure_count)
        if summary.failure_count:
            failed = f"[red]{failed}[/red]"
        agents = ", ".join(summary.agents_run) or "-"
        if summary.is_fatal:
            agents = f"[red]{summary.fatal_error}[/red]"
        table.add_row(
            str(summary.cycle_number),
            summary.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            agents,
            str(summary.waves),
            failed,
            f"[{color}]{action}[/{color}]",
        )
    return table


def create_stats_table(stats: HistoryStats) -> Table:
    """Create a two-column table of aggregated cycle stats."""
    window = f"since {stats.since.isoformat()}" if stats.since else "all time"
    table = Table(
        title=f"[bold]Cycle stats: {stats.team_id}[/bold] [dim]({window})[/dim]",
        show_header=False,
    )
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    failed = str(stats.failed_cycles)
    if stats.failed_cycles:
        failed = f"[red]{failed}[/red]"
    table.add_row("Total cycles", str(stats.total_cycles))
    table.add_row("Completed", str(stats.completed_cycles))
    table.add_row("Failed", failed)
    table.add_row("Avg duration", format_duration_ms(stats.avg_cycle_duration_ms))
    table.add_row("Continue", f"[green]{stats.continue_decisions}[/green]")
    table.add_row("Pause", f"[yellow]{stats.pause_decisions}[/yellow]")
    table.add_row("Stop", f"[red]{stats.stop_decisions}[/red]")
    table.add_row("Avg parallel", f"{stats.avg_parallel_executions:.1f}")
    table.add_row("Degraded", str(stats.degraded_cycles))
    return table


__all__ = [
    "CycleController",
    "DecisionPolicy",
    "OrchestrationDriver",
    "create_history_table",
    "create_state_table",
    "create_stats_table",
    "create_summary_panel",
    "create_work_table",
    "format_duration_ms",
    "print_summary",
    "summarize_history",
]
