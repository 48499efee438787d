"""Tests for structured event emission."""

from __future__ import annotations

import logging
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from team_orchestrator.orchestrator.config import AgentType
from team_orchestrator.orchestrator.events import (
    EventEmitter,
    LoggingObserver,
    OrchestrationEventType,
    RecordingObserver,
)
from tests.team_orchestrator.conftest import NOW, FakeClock


class TestEventEmitter:
    def test_fills_identity_and_timestamp(self) -> None:
        observer = RecordingObserver()
        emitter = EventEmitter(observer, "alpha")

        emitter.wave_started(0, (AgentType.BUILDER,))
        emitter.wave_started(1, (AgentType.REVIEWER,))

        first, second = observer.events
        assert first.team_id == "alpha"
        assert first.event_id != second.event_id
        assert first.created_at.endswith("+00:00")
        assert first.to_dict()["agents"] == ["builder"]

    def test_observer_failure_is_swallowed(self, caplog: pytest.LogCaptureFixture) -> None:
        observer = MagicMock()
        observer.emit.side_effect = RuntimeError("dashboard offline")
        emitter = EventEmitter(observer, "alpha")

        event = emitter.emit(OrchestrationEventType.CYCLE_STARTED, payload={"cycle_number": 1})

        assert event.payload == {"cycle_number": 1}
        assert "dashboard offline" in caplog.text

    def test_no_observer_is_allowed(self) -> None:
        event = EventEmitter(None, "alpha").emit(OrchestrationEventType.CYCLE_STARTED)

        assert event.event_type == OrchestrationEventType.CYCLE_STARTED

    def test_timestamps_come_from_injected_clock(self, clock: FakeClock) -> None:
        observer = RecordingObserver()
        emitter = EventEmitter(observer, "alpha", clock=clock)

        emitter.emit(OrchestrationEventType.CYCLE_STARTED)
        clock.advance(90)
        emitter.emit(OrchestrationEventType.CYCLE_COMPLETED)

        assert [e.created_at for e in observer.events] == [
            NOW.isoformat(),
            (NOW + timedelta(seconds=90)).isoformat(),
        ]


class TestObservers:
    def test_recording_observer_filters_by_type(self) -> None:
        observer = RecordingObserver()
        emitter = EventEmitter(observer, "alpha")

        emitter.node_completed(0, AgentType.BUILDER, 120)
        emitter.node_failed(0, AgentType.REVIEWER, "RuntimeError: x", 80)

        failed = observer.of_type(OrchestrationEventType.NODE_FAILED)
        assert [e.agent_type for e in failed] == [AgentType.REVIEWER]

    def test_logging_observer_warns_on_failures(self, caplog: pytest.LogCaptureFixture) -> None:
        emitter = EventEmitter(LoggingObserver(), "alpha")

        with caplog.at_level(logging.INFO):
            emitter.node_failed(1, AgentType.BUILDER, "RuntimeError: boom", 10)

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert "NODE_FAILED" in record.getMessage()
        assert "wave=2" in record.getMessage()
        assert record.msg == "[alpha] NODE_FAILED wave=2 builder RuntimeError: boom"
        assert not record.args
