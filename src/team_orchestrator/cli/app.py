"""``team-orchestrator`` command.

Commands:
    - run: drive one or more teams until they stop or are paused
    - watch: supervise every team and drive the ones that are running
    - start / pause / resume / stop: execution state transitions
    - status: execution state and the most recent cycle
    - detect: per-role work status without running anything
    - history: recent cycle summaries
    - stats: aggregate counts and averages over recorded cycles
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from team_orchestrator import __version__
from team_orchestrator.orchestrator.agents import CommandAgentExecutor
from team_orchestrator.orchestrator.config import (
    ConfigValidationError,
    OrchestratorConfig,
    load_config,
)
from team_orchestrator.orchestrator.detection import WorkDetector
from team_orchestrator.orchestrator.events import OrchestrationEvent, OrchestrationEventType
from team_orchestrator.orchestrator.integration import (
    CycleController,
    OrchestrationDriver,
    create_history_table,
    create_state_table,
    create_stats_table,
    create_work_table,
    print_summary,
    summarize_history,
)
from team_orchestrator.orchestrator.interfaces import (
    InvalidTransitionError,
    OrchestrationError,
    OrchestrationObserver,
)
from team_orchestrator.orchestrator.models import OrchestrationSummary, utcnow
from team_orchestrator.orchestrator.state import ExecutionStateMachine
from team_orchestrator.store.filesystem import FilesystemTeamStore

logger = logging.getLogger(__name__)

console = Console()

CONFIG_FILE = "orchestrator.yaml"


# =============================================================================
# App Definition
# =============================================================================


app = typer.Typer(
    name="team-orchestrator",
    help="""
    Run wave-scheduled agent cycles for teams.

    Each cycle detects which roles (planner, builder, communicator, reviewer)
    have work, runs independent agents in parallel waves, and decides whether
    to continue, back off or stop.

    \b
    USAGE EXAMPLES:
      team-orchestrator run alpha --root ./teams
      team-orchestrator detect alpha
      team-orchestrator pause alpha
      team-orchestrator history alpha --limit 5
      team-orchestrator watch --root ./teams
    """,
    add_completion=False,
    no_args_is_help=True,
)

RootOption = typer.Option(
    Path("teams"),
    "--root",
    envvar="TEAM_ORCHESTRATOR_ROOT",
    help="Directory holding one subdirectory per team",
)
ConfigOption = typer.Option(
    None,
    "--config",
    help=f"Orchestrator YAML config (default: <root>/{CONFIG_FILE})",
)


# =============================================================================
# Helper Functions
# =============================================================================


class ConsoleObserver(OrchestrationObserver):
    """Prints wave progress and cycle summaries as they happen."""

    def __init__(self, console: Console) -> None:
        self._console = console

    def emit(self, event: OrchestrationEvent) -> None:
        if event.event_type == OrchestrationEventType.WAVE_STARTED:
            self._console.print(
                f"[dim]{event.team_id}: wave {(event.wave_index or 0) + 1} "
                f"-> {', '.join(event.agents)}[/dim]"
            )
        elif event.event_type == OrchestrationEventType.SCHEDULING_DEGRADED:
            self._console.print(f"[yellow]{event.team_id}: {event.summary}[/yellow]")
        elif event.event_type in (
            OrchestrationEventType.CYCLE_COMPLETED,
            OrchestrationEventType.CYCLE_FAILED,
        ):
            print_summary(OrchestrationSummary.from_dict(event.payload), self._console)
        elif event.event_type == OrchestrationEventType.STATE_CHANGED:
            self._console.print(f"[cyan]{event.team_id}: {event.summary}[/cyan]")


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )


def resolve_config(root: Path, config_path: Optional[Path]) -> OrchestratorConfig:
    try:
        return load_config(config_path or root / CONFIG_FILE)
    except ConfigValidationError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(1)


def require_team(store: FilesystemTeamStore, team_id: str) -> None:
    try:
        store.get_team(team_id)
    except OrchestrationError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


def build_driver(
    root: Path,
    config_path: Optional[Path],
    max_cycles: Optional[int],
    no_delay: bool,
) -> tuple[OrchestrationDriver, FilesystemTeamStore]:
    config = resolve_config(root, config_path)
    overrides: dict[str, object] = {}
    if max_cycles is not None:
        overrides["max_cycles"] = max_cycles
    if no_delay:
        overrides["inter_wave_delay"] = 0.0
        overrides["cycle_interval"] = 0.0
    if overrides:
        config = dataclasses.replace(config, **overrides)

    store = FilesystemTeamStore(root)
    controller = CycleController(
        store,
        CommandAgentExecutor.from_config(config),
        config,
        observer=ConsoleObserver(console),
    )
    return OrchestrationDriver(controller, store), store


def transition(team_id: str, root: Path, trigger: str) -> None:
    store = FilesystemTeamStore(root)
    require_team(store, team_id)
    machine = ExecutionStateMachine(team_id, store)
    before = machine.status
    try:
        state = getattr(machine, trigger)()
    except InvalidTransitionError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(f"[green]{team_id}:[/green] {before} -> {state.status}")


# =============================================================================
# Commands
# =============================================================================


@app.command()
def run(
    team_ids: list[str] = typer.Argument(..., help="Team(s) to drive"),
    root: Path = RootOption,
    config_path: Optional[Path] = ConfigOption,
    max_cycles: Optional[int] = typer.Option(
        None, "--max-cycles", min=1, help="Stop after this many cycles"
    ),
    no_delay: bool = typer.Option(
        False, "--no-delay", help="Skip inter-wave and inter-cycle delays"
    ),
    start: bool = typer.Option(
        True, "--start/--no-start", help="Start (or resume) execution before driving"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Drive teams until they stop, are paused, or hit --max-cycles."""
    configure_logging(verbose)
    driver, store = build_driver(root, config_path, max_cycles, no_delay)
    for team_id in team_ids:
        require_team(store, team_id)

    try:
        results = asyncio.run(driver.run_many(team_ids, auto_start=start))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted; in-flight agents were abandoned[/yellow]")
        raise typer.Exit(130)

    failed = False
    for team_id, result in results.items():
        if isinstance(result, BaseException):
            failed = True
            console.print(f"[red]{team_id}: {result}[/red]")
        elif not result:
            console.print(f"[yellow]{team_id}: execution is not running, nothing to do[/yellow]")
        else:
            console.print(f"[bold]{team_id}:[/bold] {len(result)} cycle(s)")
    if failed:
        raise typer.Exit(1)


@app.command()
def watch(
    root: Path = RootOption,
    config_path: Optional[Path] = ConfigOption,
    poll_interval: float = typer.Option(
        2.0, "--poll-interval", min=0.0, help="Seconds between checks for running teams"
    ),
    once: bool = typer.Option(
        False, "--once", help="Check once, drive whatever is running, then exit"
    ),
    max_cycles: Optional[int] = typer.Option(
        None, "--max-cycles", min=1, help="Stop each team after this many cycles"
    ),
    no_delay: bool = typer.Option(
        False, "--no-delay", help="Skip inter-wave and inter-cycle delays"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Supervise all teams under --root.

    Teams are driven while their execution state is running. Use ``start``,
    ``pause`` and ``stop`` from another shell to control them.
    """
    configure_logging(verbose)
    driver, _ = build_driver(root, config_path, max_cycles, no_delay)

    try:
        results = asyncio.run(
            driver.supervise(poll_interval=poll_interval, max_polls=1 if once else None)
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted; in-flight agents were abandoned[/yellow]")
        raise typer.Exit(130)

    if not results:
        console.print("[dim]No running teams[/dim]")
        return
    for team_id, summaries in sorted(results.items()):
        console.print(f"[bold]{team_id}:[/bold] {len(summaries)} cycle(s)")


@app.command("start")
def start_cmd(team_id: str = typer.Argument(...), root: Path = RootOption) -> None:
    """Start execution (resets the cycle count after a stop)."""
    transition(team_id, root, "start")


@app.command()
def pause(team_id: str = typer.Argument(...), root: Path = RootOption) -> None:
    """Pause a running team at its next cycle boundary."""
    transition(team_id, root, "pause")


@app.command()
def resume(team_id: str = typer.Argument(...), root: Path = RootOption) -> None:
    """Resume a paused team."""
    transition(team_id, root, "resume")


@app.command()
def stop(team_id: str = typer.Argument(...), root: Path = RootOption) -> None:
    """Stop a running or paused team."""
    transition(team_id, root, "stop")


@app.command()
def status(
    team_id: str = typer.Argument(...),
    root: Path = RootOption,
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Show execution state and the most recent cycle."""
    store = FilesystemTeamStore(root)
    require_team(store, team_id)
    state = store.get_execution_state(team_id)
    latest = store.list_cycle_summaries(team_id, limit=1)

    if as_json:
        payload = {
            "team_id": team_id,
            "execution_state": state.to_dict(),
            "last_cycle": latest[0].to_dict() if latest else None,
        }
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    console.print(create_state_table(team_id, state))
    if latest:
        print_summary(latest[0], console)


@app.command()
def detect(
    team_id: str = typer.Argument(...),
    root: Path = RootOption,
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Show which roles have work right now, and why."""
    config = resolve_config(root, config_path)
    store = FilesystemTeamStore(root)
    require_team(store, team_id)
    work_status = WorkDetector(store, config).detect(team_id, use_cache=False)
    console.print(create_work_table(work_status))


@app.command()
def history(
    team_id: str = typer.Argument(...),
    root: Path = RootOption,
    limit: int = typer.Option(10, "--limit", "-n", min=1, help="Cycles to show"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Show recent cycle summaries, newest first."""
    store = FilesystemTeamStore(root)
    require_team(store, team_id)
    summaries = store.list_cycle_summaries(team_id, limit=limit)

    if as_json:
        typer.echo(json.dumps([s.to_dict() for s in summaries], indent=2, sort_keys=True))
        return

    if not summaries:
        console.print(f"[dim]No cycles recorded for {team_id}[/dim]")
        return
    console.print(create_history_table(team_id, summaries))


@app.command()
def stats(
    team_id: str = typer.Argument(...),
    root: Path = RootOption,
    hours: float = typer.Option(24.0, "--hours", min=0.0, help="Window size in hours"),
    all_time: bool = typer.Option(False, "--all-time", help="Ignore --hours"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Aggregate cycle counts, decisions and averages for a team."""
    store = FilesystemTeamStore(root)
    require_team(store, team_id)
    since = None if all_time else utcnow() - timedelta(hours=hours)
    result = summarize_history(team_id, store.list_cycle_summaries(team_id), since=since)

    if as_json:
        typer.echo(json.dumps(result.to_dict(), indent=2, sort_keys=True))
        return
    console.print(create_stats_table(result))


@app.command()
def version() -> None:
    """Print the installed version."""
    console.print(f"team-orchestrator {__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
