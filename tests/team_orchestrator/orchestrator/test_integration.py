"""Tests for the cycle controller, decision policy and driver loop."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from team_orchestrator.orchestrator.config import (
    AgentType,
    DecisionAction,
    ExecutionStatus,
    OrchestratorConfig,
)
from team_orchestrator.orchestrator.detection import WorkDetector
from team_orchestrator.orchestrator.events import OrchestrationEventType, RecordingObserver
from team_orchestrator.orchestrator.integration import (
    CycleController,
    DecisionPolicy,
    OrchestrationDriver,
    format_duration_ms,
    summarize_history,
)
from team_orchestrator.orchestrator.interfaces import AgentExecutionError
from team_orchestrator.orchestrator.models import (
    AgentWorkStatus,
    OrchestrationSummary,
    OrchestratorDecision,
    WorkStatus,
)
from team_orchestrator.store.memory import CYCLE_SUMMARY_WRITE, InMemoryTeamStore
from tests.team_orchestrator.conftest import (
    NOW,
    FakeAgents,
    FakeClock,
    seed_busy_team,
    seed_idle_team,
)


def make_controller(
    store: InMemoryTeamStore,
    agents: FakeAgents,
    config: OrchestratorConfig,
    clock: FakeClock,
    observer: RecordingObserver | None = None,
) -> CycleController:
    return CycleController(store, agents, config, observer=observer, sleep=AsyncMock(), clock=clock)


class TestDecisionPolicy:
    def test_idle_backoff_doubles_and_caps(self, clock: FakeClock) -> None:
        policy = DecisionPolicy(OrchestratorConfig(idle_pause_base=5, idle_pause_max=30), clock)

        durations = [
            policy.decide(
                "alpha", phase="active", cycle_number=n, agents_run=0, failure_count=0
            ).duration_ms
            for n in range(1, 6)
        ]

        assert durations == [5000, 10000, 20000, 30000, 30000]

    def test_work_resets_idle_count(self, clock: FakeClock) -> None:
        policy = DecisionPolicy(OrchestratorConfig(), clock)
        for n in range(3):
            policy.decide("alpha", phase="active", cycle_number=n + 1, agents_run=0, failure_count=0)

        decision = policy.decide(
            "alpha", phase="active", cycle_number=4, agents_run=2, failure_count=0
        )

        assert decision.action == DecisionAction.CONTINUE
        assert decision.duration_ms is None
        assert policy.idle_count("alpha") == 0

    def test_idle_pause_sets_next_poll_time(self, clock: FakeClock) -> None:
        policy = DecisionPolicy(OrchestratorConfig(), clock)

        decision = policy.decide(
            "alpha", phase="active", cycle_number=1, agents_run=0, failure_count=0
        )

        assert decision.action == DecisionAction.PAUSE
        assert decision.next_poll_time == NOW + timedelta(seconds=5)

    def test_all_failed_pauses_with_base_duration(self, clock: FakeClock) -> None:
        policy = DecisionPolicy(OrchestratorConfig(idle_pause_base=3, idle_pause_max=9), clock)

        decision = policy.decide(
            "alpha", phase="active", cycle_number=1, agents_run=2, failure_count=2
        )

        assert decision.action == DecisionAction.PAUSE
        assert decision.duration_ms == 3000
        assert "failed" in decision.reason

    def test_partial_failure_continues(self, clock: FakeClock) -> None:
        policy = DecisionPolicy(OrchestratorConfig(), clock)

        decision = policy.decide(
            "alpha", phase="active", cycle_number=1, agents_run=3, failure_count=1
        )

        assert decision.action == DecisionAction.CONTINUE

    def test_stop_conditions_take_precedence(self, clock: FakeClock) -> None:
        policy = DecisionPolicy(OrchestratorConfig(max_cycles=2), clock)

        fatal = policy.decide(
            "alpha",
            phase="active",
            cycle_number=1,
            agents_run=0,
            failure_count=0,
            fatal_error="TeamNotFoundError: Team not found: alpha",
        )
        terminal = policy.decide(
            "alpha", phase="completed", cycle_number=1, agents_run=0, failure_count=0
        )
        bounded = policy.decide(
            "alpha", phase="active", cycle_number=2, agents_run=1, failure_count=1
        )

        assert fatal.action == terminal.action == bounded.action == DecisionAction.STOP
        assert "halted" in fatal.reason
        assert "completed" in terminal.reason
        assert "2 cycles" in bounded.reason


class TestCycleController:
    @pytest.mark.asyncio
    async def test_busy_cycle_summary(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        config: OrchestratorConfig,
        clock: FakeClock,
    ) -> None:
        seed_busy_team(store)

        summary = await make_controller(store, agents, config, clock).run_cycle("alpha")

        assert summary.cycle_number == 1
        assert summary.agents_run == (
            AgentType.COMMUNICATOR,
            AgentType.BUILDER,
            AgentType.REVIEWER,
        )
        assert summary.waves == 2
        assert summary.wave_agents == (
            (AgentType.COMMUNICATOR, AgentType.BUILDER),
            (AgentType.REVIEWER,),
        )
        assert summary.parallel_executions == 2
        assert (summary.success_count, summary.failure_count) == (3, 0)
        assert not summary.degraded_scheduling
        assert summary.decision.action == DecisionAction.CONTINUE
        assert "no project idea" not in summary.work_reasons["planner"]

    @pytest.mark.asyncio
    async def test_idle_cycle_pauses(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        config: OrchestratorConfig,
        clock: FakeClock,
    ) -> None:
        seed_idle_team(store)

        summary = await make_controller(store, agents, config, clock).run_cycle("alpha")

        assert summary.is_idle
        assert summary.waves == 0
        assert summary.decision.action == DecisionAction.PAUSE
        assert summary.decision.duration_ms > 0
        assert agents.calls == []

    @pytest.mark.asyncio
    async def test_failures_are_reported_per_node(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        config: OrchestratorConfig,
        clock: FakeClock,
    ) -> None:
        seed_busy_team(store)
        agents.failures[AgentType.BUILDER] = AgentExecutionError("exit code 2")

        summary = await make_controller(store, agents, config, clock).run_cycle("alpha")

        assert summary.failure_count == 1
        assert summary.success_count == 2
        assert summary.failures[0].agent_type == AgentType.BUILDER
        assert "exit code 2" in summary.failures[0].error
        assert summary.decision.action == DecisionAction.CONTINUE

    @pytest.mark.asyncio
    async def test_every_agent_failing_pauses(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        config: OrchestratorConfig,
        clock: FakeClock,
    ) -> None:
        seed_busy_team(store)
        for role in AgentType:
            agents.failures[role] = RuntimeError("upstream unavailable")

        summary = await make_controller(store, agents, config, clock).run_cycle("alpha")

        assert summary.failure_count == 3
        assert summary.decision.action == DecisionAction.PAUSE
        assert summary.decision.duration_ms == 5000

    @pytest.mark.asyncio
    async def test_terminal_phase_stops(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        config: OrchestratorConfig,
        clock: FakeClock,
    ) -> None:
        seed_idle_team(store, phase="archived")

        summary = await make_controller(store, agents, config, clock).run_cycle("alpha")

        assert summary.decision.action == DecisionAction.STOP
        assert summary.fatal_error is None

    @pytest.mark.asyncio
    async def test_missing_team_is_fatal(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        config: OrchestratorConfig,
        clock: FakeClock,
    ) -> None:
        observer = RecordingObserver()

        summary = await make_controller(store, agents, config, clock, observer).run_cycle(
            "ghost"
        )

        assert summary.is_fatal
        assert summary.fatal_error == "TeamNotFoundError: Team not found: ghost"
        assert summary.decision.action == DecisionAction.STOP
        assert len(observer.of_type(OrchestrationEventType.CYCLE_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_unreadable_source_is_not_fatal(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        config: OrchestratorConfig,
        clock: FakeClock,
    ) -> None:
        seed_busy_team(store)
        store.inject_failure("alpha", "user_messages", ConnectionError("timeout"))

        summary = await make_controller(store, agents, config, clock).run_cycle("alpha")

        assert not summary.is_fatal
        assert AgentType.COMMUNICATOR not in summary.agents_run
        assert "user_messages" in summary.work_reasons["communicator"]

    @pytest.mark.asyncio
    async def test_cycle_events_carry_summary(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        config: OrchestratorConfig,
        clock: FakeClock,
    ) -> None:
        seed_busy_team(store)
        observer = RecordingObserver()

        await make_controller(store, agents, config, clock, observer).run_cycle("alpha")

        types = [e.event_type for e in observer.events]
        assert types[0] == OrchestrationEventType.CYCLE_STARTED
        assert types[-1] == OrchestrationEventType.CYCLE_COMPLETED
        assert observer.events[-1].payload["wave_agents"] == [
            ["communicator", "builder"],
            ["reviewer"],
        ]

    @pytest.mark.asyncio
    async def test_running_agents_invalidates_detection_cache(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        config: OrchestratorConfig,
        clock: FakeClock,
    ) -> None:
        seed_busy_team(store)
        controller = make_controller(store, agents, config, clock)

        await controller.run_cycle("alpha")

        assert "alpha" not in controller.detector.cache

    @pytest.mark.asyncio
    async def test_cycle_numbers_count_up_per_team(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        config: OrchestratorConfig,
        clock: FakeClock,
    ) -> None:
        seed_idle_team(store)
        controller = make_controller(store, agents, config, clock)

        first = await controller.run_cycle("alpha")
        second = await controller.run_cycle("alpha")

        assert (first.cycle_number, second.cycle_number) == (1, 2)
        assert second.decision.duration_ms == 2 * first.decision.duration_ms

    @pytest.mark.asyncio
    async def test_dependency_cycle_runs_in_forced_wave_and_is_flagged(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        config: OrchestratorConfig,
        clock: FakeClock,
    ) -> None:
        seed_idle_team(store)
        detector = MagicMock(spec=WorkDetector)
        detector.detect.return_value = WorkStatus(
            team_id="alpha",
            statuses={
                AgentType.BUILDER: AgentWorkStatus(True, 6, "todos", ("reviewer",)),
                AgentType.REVIEWER: AgentWorkStatus(True, 5, "artifact", ("builder",)),
            },
            computed_at=NOW,
        )
        observer = RecordingObserver()
        controller = CycleController(
            store,
            agents,
            config,
            detector=detector,
            observer=observer,
            sleep=AsyncMock(),
            clock=clock,
        )

        summary = await controller.run_cycle("alpha")

        assert summary.degraded_scheduling is True
        assert summary.waves == 1
        assert summary.wave_agents == ((AgentType.BUILDER, AgentType.REVIEWER),)
        assert (summary.success_count, summary.failure_count) == (2, 0)
        assert observer.of_type(OrchestrationEventType.SCHEDULING_DEGRADED)
        [completed] = observer.of_type(OrchestrationEventType.CYCLE_COMPLETED)
        assert completed.payload["degraded_scheduling"] is True
        assert {e.created_at for e in observer.events} == {NOW.isoformat()}
        detector.invalidate.assert_called_once_with("alpha")


class TestOrchestrationDriver:
    def make_driver(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        config: OrchestratorConfig,
        clock: FakeClock,
        sleep: AsyncMock,
    ) -> OrchestrationDriver:
        controller = make_controller(store, agents, config, clock)
        return OrchestrationDriver(controller, store, sleep=sleep)

    @pytest.mark.asyncio
    async def test_does_nothing_unless_running(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        config: OrchestratorConfig,
        clock: FakeClock,
        no_sleep: AsyncMock,
    ) -> None:
        seed_busy_team(store)

        summaries = await self.make_driver(store, agents, config, clock, no_sleep).run("alpha")

        assert summaries == []
        assert agents.calls == []

    @pytest.mark.asyncio
    async def test_runs_until_cycle_bound_then_stops(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        clock: FakeClock,
        no_sleep: AsyncMock,
    ) -> None:
        seed_busy_team(store)
        config = OrchestratorConfig(inter_wave_delay=0, cycle_interval=1.5, max_cycles=3)

        summaries = await self.make_driver(store, agents, config, clock, no_sleep).run(
            "alpha", auto_start=True
        )

        state = store.get_execution_state("alpha")
        assert [s.cycle_number for s in summaries] == [1, 2, 3]
        assert summaries[-1].decision.action == DecisionAction.STOP
        assert state.status == ExecutionStatus.STOPPED
        assert state.total_cycles == 3
        assert [s.cycle_number for s in store.list_cycle_summaries("alpha")] == [3, 2, 1]
        assert no_sleep.await_args_list == [call(1.5), call(1.5)]

    @pytest.mark.asyncio
    async def test_idle_pause_is_a_timed_backoff(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        clock: FakeClock,
        no_sleep: AsyncMock,
    ) -> None:
        seed_idle_team(store)
        config = OrchestratorConfig(inter_wave_delay=0, max_cycles=3)

        await self.make_driver(store, agents, config, clock, no_sleep).run(
            "alpha", auto_start=True
        )

        assert no_sleep.await_args_list == [call(5.0), call(10.0)]

    @pytest.mark.asyncio
    async def test_external_pause_is_observed_at_cycle_boundary(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        config: OrchestratorConfig,
        clock: FakeClock,
        no_sleep: AsyncMock,
    ) -> None:
        seed_busy_team(store)
        driver = self.make_driver(store, agents, config, clock, no_sleep)

        async def pause_mid_cycle(team_id: str) -> None:
            driver.state_machine(team_id).pause()

        agents.hooks[AgentType.BUILDER] = AsyncMock(side_effect=pause_mid_cycle)

        summaries = await driver.run("alpha", auto_start=True)

        state = store.get_execution_state("alpha")
        assert len(summaries) == 1
        # The in-flight wave still finished.
        assert summaries[0].success_count == 3
        assert state.status == ExecutionStatus.PAUSED
        assert state.total_cycles == 1

    @pytest.mark.asyncio
    async def test_fatal_cycle_halts_execution(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        config: OrchestratorConfig,
        clock: FakeClock,
        no_sleep: AsyncMock,
    ) -> None:
        seed_busy_team(store)
        driver = self.make_driver(store, agents, config, clock, no_sleep)

        async def team_vanishes(team_id: str) -> None:
            store.remove_team(team_id)

        agents.hooks[AgentType.REVIEWER] = AsyncMock(side_effect=team_vanishes)

        summaries = await driver.run("alpha", auto_start=True)

        assert [s.is_fatal for s in summaries] == [False, True]
        assert store.get_execution_state("alpha").status == ExecutionStatus.STOPPED

    @pytest.mark.asyncio
    async def test_summary_write_failure_does_not_stop_the_loop(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        clock: FakeClock,
        no_sleep: AsyncMock,
    ) -> None:
        seed_idle_team(store)
        store.inject_failure("alpha", CYCLE_SUMMARY_WRITE, OSError("read-only"))
        config = OrchestratorConfig(max_cycles=2)

        summaries = await self.make_driver(store, agents, config, clock, no_sleep).run(
            "alpha", auto_start=True
        )

        assert len(summaries) == 2
        assert store.list_cycle_summaries("alpha") == []

    @pytest.mark.asyncio
    async def test_auto_start_resumes_paused_team(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        clock: FakeClock,
        no_sleep: AsyncMock,
    ) -> None:
        seed_idle_team(store)
        config = OrchestratorConfig(max_cycles=1)
        driver = self.make_driver(store, agents, config, clock, no_sleep)
        machine = driver.state_machine("alpha")
        machine.start()
        machine.pause()

        summaries = await driver.run("alpha", auto_start=True)

        assert len(summaries) == 1

    @pytest.mark.asyncio
    async def test_run_many_isolates_teams(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        clock: FakeClock,
        no_sleep: AsyncMock,
    ) -> None:
        seed_busy_team(store, "alpha")
        seed_idle_team(store, "beta")
        config = OrchestratorConfig(inter_wave_delay=0, max_cycles=1)

        results = await self.make_driver(store, agents, config, clock, no_sleep).run_many(
            ["alpha", "beta", "ghost"], auto_start=True
        )

        assert len(results["alpha"]) == 1
        assert results["beta"][0].is_idle
        # A missing team fails its first cycle and halts; others are unaffected.
        assert results["ghost"][0].is_fatal
        assert {team for _, team in agents.calls} == {"alpha"}

    @pytest.mark.asyncio
    async def test_restart_after_stop_resets_idle_backoff(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        clock: FakeClock,
        no_sleep: AsyncMock,
    ) -> None:
        seed_idle_team(store)
        config = OrchestratorConfig(inter_wave_delay=0, max_cycles=3)
        driver = self.make_driver(store, agents, config, clock, no_sleep)

        first = await driver.run("alpha", auto_start=True)
        second = await driver.run("alpha", auto_start=True)

        assert first[-1].decision.action == DecisionAction.STOP
        assert [s.cycle_number for s in second] == [1, 2, 3]
        assert second[0].decision.duration_ms == int(config.idle_pause_base * 1000)
        assert "(1 idle cycle in a row)" in second[0].decision.reason
        assert store.get_execution_state("alpha").total_cycles == 3

    @pytest.mark.asyncio
    async def test_supervisor_drives_only_running_teams(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        clock: FakeClock,
        no_sleep: AsyncMock,
    ) -> None:
        for team_id in ("alpha", "beta", "gamma"):
            seed_idle_team(store, team_id)
        config = OrchestratorConfig(inter_wave_delay=0, max_cycles=1)
        driver = self.make_driver(store, agents, config, clock, no_sleep)
        driver.state_machine("alpha").start()
        gamma = driver.state_machine("gamma")
        gamma.start()
        gamma.stop()

        results = await driver.supervise(poll_interval=2.0, max_polls=1)

        assert list(results) == ["alpha"]
        assert len(results["alpha"]) == 1
        assert store.get_execution_state("alpha").status == ExecutionStatus.STOPPED
        assert store.get_execution_state("beta").status == ExecutionStatus.IDLE
        assert store.get_execution_state("gamma").total_cycles == 0

    @pytest.mark.asyncio
    async def test_supervisor_picks_up_team_started_between_polls(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        clock: FakeClock,
    ) -> None:
        seed_idle_team(store, "alpha")
        seed_idle_team(store, "beta")
        config = OrchestratorConfig(inter_wave_delay=0, max_cycles=1)

        async def start_beta(seconds: float) -> None:
            if store.get_execution_state("beta").status == ExecutionStatus.IDLE:
                driver.state_machine("beta").start()

        sleep = AsyncMock(side_effect=start_beta)
        driver = self.make_driver(store, agents, config, clock, sleep)
        driver.state_machine("alpha").start()

        results = await driver.supervise(poll_interval=2.0, max_polls=2)

        assert sorted(results) == ["alpha", "beta"]
        assert sleep.await_args_list == [call(2.0)]
        assert store.get_execution_state("beta").status == ExecutionStatus.STOPPED

    @pytest.mark.asyncio
    async def test_supervisor_survives_failed_poll(
        self,
        store: InMemoryTeamStore,
        agents: FakeAgents,
        clock: FakeClock,
        no_sleep: AsyncMock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        seed_idle_team(store)
        config = OrchestratorConfig(inter_wave_delay=0, max_cycles=1)
        driver = self.make_driver(store, agents, config, clock, no_sleep)
        driver.state_machine("alpha").start()
        store.list_teams = MagicMock(side_effect=[OSError("disk unavailable"), ["alpha"]])

        results = await driver.supervise(poll_interval=0.5, max_polls=2)

        assert len(results["alpha"]) == 1
        assert "Supervisor poll failed" in caplog.text
        assert "disk unavailable" in caplog.text


def test_format_duration_ms() -> None:
    assert format_duration_ms(1500) == "1.5s"
    assert format_duration_ms(125_000) == "2m 5s"
    assert format_duration_ms(7_260_000) == "2h 1m"


def make_summary(
    cycle: int,
    action: DecisionAction,
    *,
    minutes_ago: int = 0,
    duration_ms: int = 1000,
    parallel: int = 1,
    fatal_error: str | None = None,
) -> OrchestrationSummary:
    return OrchestrationSummary(
        team_id="alpha",
        cycle_number=cycle,
        decision=OrchestratorDecision(action, "test"),
        parallel_executions=parallel,
        total_duration_ms=duration_ms,
        fatal_error=fatal_error,
        started_at=NOW - timedelta(minutes=minutes_ago),
    )


class TestSummarizeHistory:
    def test_counts_and_averages(self) -> None:
        summaries = [
            make_summary(1, DecisionAction.CONTINUE, duration_ms=1000, parallel=2),
            make_summary(2, DecisionAction.CONTINUE, duration_ms=3000, parallel=1),
            make_summary(3, DecisionAction.PAUSE, duration_ms=2000, parallel=0),
            make_summary(4, DecisionAction.STOP, fatal_error="TeamNotFoundError: gone"),
        ]

        stats = summarize_history("alpha", summaries)

        assert stats.total_cycles == 4
        assert (stats.completed_cycles, stats.failed_cycles) == (3, 1)
        assert stats.avg_cycle_duration_ms == 2000
        assert (stats.continue_decisions, stats.pause_decisions) == (2, 1)
        assert stats.stop_decisions == 0
        assert stats.avg_parallel_executions == 1.0

    def test_window_excludes_older_cycles(self) -> None:
        summaries = [
            make_summary(1, DecisionAction.PAUSE, minutes_ago=120),
            make_summary(2, DecisionAction.CONTINUE, minutes_ago=10, parallel=3),
        ]

        stats = summarize_history("alpha", summaries, since=NOW - timedelta(hours=1))

        assert stats.total_cycles == 1
        assert stats.pause_decisions == 0
        assert stats.avg_parallel_executions == 3.0
        assert stats.to_dict()["since"] == (NOW - timedelta(hours=1)).isoformat()

    def test_empty_history(self) -> None:
        stats = summarize_history("alpha", [])

        assert stats.total_cycles == 0
        assert stats.avg_cycle_duration_ms == 0
        assert stats.avg_parallel_executions == 0.0
