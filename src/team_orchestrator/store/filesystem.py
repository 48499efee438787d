"""Filesystem-backed TeamStore.

Layout under the store root::

    <root>/<team_id>/team.yaml             team record and context sources
    <root>/<team_id>/execution-state.json  persisted ExecutionState
    <root>/<team_id>/cycles.jsonl          one OrchestrationSummary per line

``team.yaml`` is re-read on every access so agents (or people) editing it
between cycles are picked up by the next detection pass.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from team_orchestrator.orchestrator.interfaces import (
    OrchestrationError,
    TeamNotFoundError,
    TeamStore,
)
from team_orchestrator.orchestrator.models import (
    ExecutionState,
    OrchestrationSummary,
    TeamRecord,
    to_datetime,
)

logger = logging.getLogger(__name__)

TEAM_FILE = "team.yaml"
STATE_FILE = "execution-state.json"
CYCLES_FILE = "cycles.jsonl"


class TeamFileError(OrchestrationError):
    """Raised when a team file exists but cannot be parsed."""


class FilesystemTeamStore(TeamStore):
    """TeamStore reading team directories under *root*.

    Args:
        root: Directory containing one subdirectory per team.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._yaml = YAML(typ="safe")

    @property
    def root(self) -> Path:
        return self._root

    def team_dir(self, team_id: str) -> Path:
        return self._root / team_id

    def list_teams(self) -> list[str]:
        if not self._root.is_dir():
            return []
        return sorted(
            path.name for path in self._root.iterdir() if (path / TEAM_FILE).is_file()
        )

    # ------------------------------------------------------------------
    # Team data
    # ------------------------------------------------------------------

    def _load(self, team_id: str) -> dict[str, Any]:
        path = self.team_dir(team_id) / TEAM_FILE
        if not path.is_file():
            raise TeamNotFoundError(team_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = self._yaml.load(f) or {}
        except YAMLError as e:
            raise TeamFileError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise TeamFileError(f"Expected a mapping at top level of {path}")
        return data

    def _section(self, team_id: str, key: str, expected: type) -> Any:
        value = self._load(team_id).get(key)
        if value is None:
            return expected()
        if not isinstance(value, expected):
            raise TeamFileError(f"'{key}' in team {team_id} must be a {expected.__name__}")
        return value

    def get_team(self, team_id: str) -> TeamRecord:
        data = self._load(team_id)
        return TeamRecord(
            team_id=team_id,
            name=str(data.get("name") or team_id),
            phase=str(data.get("phase") or "active"),
            created_at=to_datetime(data.get("created_at")),
        )

    def get_todos(self, team_id: str) -> list[dict[str, Any]]:
        return self._section(team_id, "todos", list)

    def get_unread_messages(self, team_id: str) -> list[dict[str, Any]]:
        messages = self._section(team_id, "messages", list)
        return [m for m in messages if not m.get("read_by")]

    def get_user_messages(self, team_id: str) -> list[dict[str, Any]]:
        messages = self._section(team_id, "user_messages", list)
        return [m for m in messages if not m.get("processed")]

    def get_latest_artifact(self, team_id: str) -> dict[str, Any] | None:
        artifacts = self._section(team_id, "artifacts", list)
        if not artifacts:
            return None
        # Undated artifacts sort before dated ones; ties keep file order.
        return max(
            enumerate(artifacts),
            key=lambda item: (
                to_datetime(item[1].get("created_at")) is not None,
                to_datetime(item[1].get("created_at")) or 0,
                item[0],
            ),
        )[1]

    def get_project_idea(self, team_id: str) -> dict[str, Any] | None:
        idea = self._load(team_id).get("project_idea")
        if idea is None:
            return None
        if isinstance(idea, str):
            return {"description": idea}
        if not isinstance(idea, dict):
            raise TeamFileError(f"'project_idea' in team {team_id} must be a mapping")
        return idea

    def get_agent_memory(self, team_id: str) -> dict[str, dict[str, Any]]:
        return self._section(team_id, "agent_memory", dict)

    # ------------------------------------------------------------------
    # Execution state
    # ------------------------------------------------------------------

    def get_execution_state(self, team_id: str) -> ExecutionState:
        path = self.team_dir(team_id) / STATE_FILE
        if not path.exists():
            return ExecutionState()
        try:
            return ExecutionState.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Corrupt execution state {path}, starting idle: {e}")
            return ExecutionState()

    def update_execution_state(self, team_id: str, state: ExecutionState) -> None:
        path = self.team_dir(team_id) / STATE_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps(state.to_dict(), indent=2, sort_keys=True), encoding="utf-8"
        )

    # ------------------------------------------------------------------
    # Cycle summaries
    # ------------------------------------------------------------------

    def record_cycle_summary(self, team_id: str, summary: OrchestrationSummary) -> None:
        path = self.team_dir(team_id) / CYCLES_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(summary.to_dict(), sort_keys=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def list_cycle_summaries(
        self, team_id: str, limit: int | None = None
    ) -> list[OrchestrationSummary]:
        path = self.team_dir(team_id) / CYCLES_FILE
        if not path.exists():
            return []

        summaries: list[OrchestrationSummary] = []
        skipped = 0
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    summaries.append(OrchestrationSummary.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    skipped += 1
                    logger.warning(f"Skipping malformed cycle line: {str(e)[:100]}")

        if skipped:
            logger.warning(f"Skipped {skipped} malformed line(s) in {path}")

        summaries.reverse()
        return summaries[:limit] if limit is not None else summaries


__all__ = [
    "CYCLES_FILE",
    "FilesystemTeamStore",
    "STATE_FILE",
    "TEAM_FILE",
    "TeamFileError",
]
