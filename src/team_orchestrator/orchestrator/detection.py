"""Work detection for each agent role.

This module handles:
    - Reading a team's context sources, isolating failures per source
    - Role heuristics that decide has-work, priority and the reason
    - Short-lived memoization of results per team

Detection is need-based: a role only gets a node in the execution graph
when its heuristic finds something to do. Reasons are shown to operators,
so they explain the situation rather than restate the rule.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from team_orchestrator.orchestrator.config import (
    AGENT_ORDER,
    AgentType,
    OrchestratorConfig,
)
from team_orchestrator.orchestrator.interfaces import TeamStore
from team_orchestrator.orchestrator.models import (
    AgentWorkStatus,
    TeamContext,
    WorkStatus,
    to_datetime,
    utcnow,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Context loading
# =============================================================================

SOURCE_TODOS = "todos"
SOURCE_MESSAGES = "messages"
SOURCE_USER_MESSAGES = "user_messages"
SOURCE_ARTIFACT = "artifact"
SOURCE_PROJECT_IDEA = "project_idea"
SOURCE_AGENT_MEMORY = "agent_memory"

# Sources each role's heuristic reads; an unreadable one disables the role.
ROLE_SOURCES: dict[AgentType, tuple[str, ...]] = {
    AgentType.PLANNER: (
        SOURCE_PROJECT_IDEA,
        SOURCE_TODOS,
        SOURCE_AGENT_MEMORY,
        SOURCE_USER_MESSAGES,
    ),
    AgentType.BUILDER: (SOURCE_TODOS,),
    AgentType.COMMUNICATOR: (SOURCE_USER_MESSAGES, SOURCE_MESSAGES),
    AgentType.REVIEWER: (SOURCE_TODOS, SOURCE_ARTIFACT, SOURCE_AGENT_MEMORY),
}


def load_team_context(store: TeamStore, team_id: str) -> TeamContext:
    """Read every context source for *team_id*.

    The team record is mandatory. Every other source is read on its own;
    a failure is logged and recorded in ``TeamContext.unavailable``.

    Raises:
        TeamNotFoundError: If the team record does not exist.
    """
    team = store.get_team(team_id)

    readers: dict[str, Callable[[str], Any]] = {
        SOURCE_TODOS: store.get_todos,
        SOURCE_MESSAGES: store.get_unread_messages,
        SOURCE_USER_MESSAGES: store.get_user_messages,
        SOURCE_ARTIFACT: store.get_latest_artifact,
        SOURCE_PROJECT_IDEA: store.get_project_idea,
        SOURCE_AGENT_MEMORY: store.get_agent_memory,
    }

    values: dict[str, Any] = {}
    unavailable: dict[str, str] = {}
    for source, reader in readers.items():
        try:
            values[source] = reader(team_id)
        except Exception as e:
            logger.warning(f"Could not read {source} for team {team_id}: {e}")
            unavailable[source] = f"{type(e).__name__}: {e}"

    return TeamContext(
        team=team,
        todos=list(values.get(SOURCE_TODOS) or []),
        messages=list(values.get(SOURCE_MESSAGES) or []),
        user_messages=list(values.get(SOURCE_USER_MESSAGES) or []),
        artifact=values.get(SOURCE_ARTIFACT),
        project_idea=values.get(SOURCE_PROJECT_IDEA),
        agent_memory=dict(values.get(SOURCE_AGENT_MEMORY) or {}),
        unavailable=unavailable,
    )


# =============================================================================
# Role heuristics
# =============================================================================

STRATEGIC_KEYWORDS = ("feature", "add", "change project", "different", "instead", "modify")
STRATEGIC_MESSAGE_LENGTH = 100


def _minutes(seconds: float) -> int:
    return int(seconds // 60)


def _pending_todos(todos: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [t for t in todos if t.get("status") == "pending"]


def _is_strategic(message: dict[str, Any]) -> bool:
    content = str(message.get("content", "")).lower()
    return (
        any(keyword in content for keyword in STRATEGIC_KEYWORDS)
        or len(content) > STRATEGIC_MESSAGE_LENGTH
    )


def detect_planner_work(
    context: TeamContext, config: OrchestratorConfig, now: datetime
) -> AgentWorkStatus:
    """Planner runs to set direction: no idea, a thin backlog, advice or user requests."""
    if not context.project_idea:
        return AgentWorkStatus(
            has_work=True,
            priority=10,
            reason="The team has no project idea yet, so nothing can be built until one is planned",
        )

    pending = _pending_todos(context.todos)
    if len(pending) < config.planner_min_pending_todos:
        return AgentWorkStatus(
            has_work=True,
            priority=9,
            reason=(
                f"Only {len(pending)} pending todo(s) remain (minimum {config.planner_min_pending_todos}); "
                "the builder will run out of tasks without a fresh plan"
            ),
        )

    memory = context.memory_for(AgentType.PLANNER)
    recommendations = memory.get("reviewer_recommendations") or []
    if recommendations:
        return AgentWorkStatus(
            has_work=True,
            priority=8,
            reason=(
                f"The reviewer left {len(recommendations)} recommendation(s) "
                "that should be folded into the plan"
            ),
        )

    strategic = [m for m in context.user_messages if _is_strategic(m)]
    if strategic:
        return AgentWorkStatus(
            has_work=True,
            priority=7,
            reason=(
                f"{len(strategic)} user message(s) ask for feature or direction changes "
                "that need re-planning"
            ),
        )

    last_planning = to_datetime(memory.get("last_planning_time")) or context.team.created_at
    if last_planning is None or (now - last_planning).total_seconds() > config.planner_interval:
        since = (
            "the plan has never been revisited"
            if last_planning is None
            else f"{_minutes((now - last_planning).total_seconds())} min have passed since the last planning pass"
        )
        return AgentWorkStatus(
            has_work=True,
            priority=4,
            reason=f"Periodic planning check: {since}",
        )

    return AgentWorkStatus.no_work(
        "Todos are queued and the plan was revisited recently, so there is nothing to re-plan"
    )


def detect_builder_work(
    context: TeamContext, config: OrchestratorConfig, now: datetime
) -> AgentWorkStatus:
    """Builder runs whenever prioritized pending todos exist."""
    actionable = [t for t in _pending_todos(context.todos) if (t.get("priority") or 0) > 0]
    if not actionable:
        return AgentWorkStatus.no_work(
            "No prioritized pending todos, so the builder would have nothing to work on"
        )

    high_priority = sum(1 for t in actionable if (t.get("priority") or 0) >= 3)
    return AgentWorkStatus(
        has_work=True,
        priority=8 if high_priority else 6,
        reason=(
            f"{len(actionable)} pending todo(s) are waiting to be built"
            f" ({high_priority} of them high priority)"
        ),
    )


def detect_communicator_work(
    context: TeamContext, config: OrchestratorConfig, now: datetime
) -> AgentWorkStatus:
    """Communicator answers users first, then other teams."""
    if context.user_messages:
        return AgentWorkStatus(
            has_work=True,
            priority=10,
            reason=(
                f"{len(context.user_messages)} user message(s) are waiting for a reply; "
                "users are answered one at a time"
            ),
        )

    unread = [m for m in context.messages if not m.get("read_by")]
    if unread:
        return AgentWorkStatus(
            has_work=True,
            priority=7,
            reason=f"{len(unread)} message(s) from other teams have not been read yet",
        )

    return AgentWorkStatus.no_work("Inbox is empty: no user or team messages to answer")


def detect_reviewer_work(
    context: TeamContext, config: OrchestratorConfig, now: datetime
) -> AgentWorkStatus:
    """Reviewer checks fresh output from the builder, or reviews periodically."""
    memory = context.memory_for(AgentType.REVIEWER)
    last_review = to_datetime(memory.get("last_review_time"))

    completed_since = [
        t
        for t in context.todos
        if t.get("status") == "completed"
        and (
            last_review is None
            or (to_datetime(t.get("completed_at")) or last_review) > last_review
        )
    ]
    if len(completed_since) >= config.reviewer_completed_threshold:
        return AgentWorkStatus(
            has_work=True,
            priority=6,
            reason=(
                f"{len(completed_since)} todo(s) were finished since the last review "
                "and have not been checked"
            ),
            dependencies=(str(AgentType.BUILDER),),
        )

    artifact = context.artifact
    if artifact:
        created = to_datetime(artifact.get("created_at"))
        if last_review is None or (created is not None and created > last_review):
            return AgentWorkStatus(
                has_work=True,
                priority=6,
                reason="A new artifact was produced and nobody has reviewed it yet",
                dependencies=(str(AgentType.BUILDER),),
            )

    if last_review is not None:
        elapsed = (now - last_review).total_seconds()
        if elapsed > config.reviewer_interval:
            return AgentWorkStatus(
                has_work=True,
                priority=4,
                reason=f"Periodic review check: {_minutes(elapsed)} min since the last review",
            )
        return AgentWorkStatus.no_work(
            "Nothing new has been produced since the last review"
        )

    return AgentWorkStatus.no_work("No artifact or completed work exists to review yet")


ROLE_DETECTORS: dict[
    AgentType, Callable[[TeamContext, OrchestratorConfig, datetime], AgentWorkStatus]
] = {
    AgentType.PLANNER: detect_planner_work,
    AgentType.BUILDER: detect_builder_work,
    AgentType.COMMUNICATOR: detect_communicator_work,
    AgentType.REVIEWER: detect_reviewer_work,
}


def evaluate_role(
    agent_type: AgentType,
    context: TeamContext,
    config: OrchestratorConfig,
    now: datetime,
) -> AgentWorkStatus:
    """Run one role's heuristic, degrading to no-work on any data problem."""
    missing = [s for s in ROLE_SOURCES[agent_type] if s in context.unavailable]
    if missing:
        details = "; ".join(f"{s} ({context.unavailable[s]})" for s in missing)
        return AgentWorkStatus.no_work(
            f"Skipping {agent_type} this cycle because its data could not be read: {details}"
        )

    try:
        return ROLE_DETECTORS[agent_type](context, config, now)
    except Exception as e:
        logger.warning(f"Work detection for {agent_type} on team {context.team_id} failed: {e}")
        return AgentWorkStatus.no_work(
            f"Skipping {agent_type} this cycle because its data was malformed: "
            f"{type(e).__name__}: {e}"
        )


# =============================================================================
# Cache
# =============================================================================


@dataclass
class _CacheEntry:
    status: WorkStatus
    expires_at: float


class WorkDetectionCache:
    """Per-team memoization of WorkStatus with a fixed time-to-live."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}

    def get(self, team_id: str) -> WorkStatus | None:
        entry = self._entries.get(team_id)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[team_id]
            return None
        return entry.status

    def put(self, status: WorkStatus) -> None:
        if self._ttl <= 0:
            return
        self._entries[status.team_id] = _CacheEntry(status, self._clock() + self._ttl)

    def invalidate(self, team_id: str) -> None:
        """Drop any cached result for *team_id*."""
        if self._entries.pop(team_id, None) is not None:
            logger.debug(f"Invalidated work detection cache for team {team_id}")

    def __contains__(self, team_id: object) -> bool:
        return isinstance(team_id, str) and self.get(team_id) is not None


# =============================================================================
# Detector
# =============================================================================


class WorkDetector:
    """Produces a WorkStatus for a team from its persisted context."""

    def __init__(
        self,
        store: TeamStore,
        config: OrchestratorConfig | None = None,
        cache: WorkDetectionCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._config = config or OrchestratorConfig()
        self._cache = cache if cache is not None else WorkDetectionCache(
            self._config.detection_cache_ttl
        )
        self._clock = clock

    @property
    def cache(self) -> WorkDetectionCache:
        return self._cache

    def invalidate(self, team_id: str) -> None:
        self._cache.invalidate(team_id)

    def detect(self, team_id: str, *, use_cache: bool = True) -> WorkStatus:
        """Detect work for every role of *team_id*.

        Raises:
            TeamNotFoundError: If the team record does not exist.
        """
        if use_cache:
            # Existence is checked even on a cache hit.
            self._store.get_team(team_id)
            cached = self._cache.get(team_id)
            if cached is not None:
                logger.debug(f"Using cached work status for team {team_id}")
                return cached

        context = load_team_context(self._store, team_id)
        status = self.detect_from_context(context)
        self._cache.put(status)
        return status

    def detect_from_context(self, context: TeamContext) -> WorkStatus:
        """Evaluate all role heuristics against an already-loaded context."""
        now = self._clock()
        statuses = {
            agent_type: evaluate_role(agent_type, context, self._config, now)
            for agent_type in AGENT_ORDER
        }
        return WorkStatus(team_id=context.team_id, statuses=statuses, computed_at=now)


__all__ = [
    "ROLE_SOURCES",
    "WorkDetectionCache",
    "WorkDetector",
    "detect_builder_work",
    "detect_communicator_work",
    "detect_planner_work",
    "detect_reviewer_work",
    "evaluate_role",
    "load_team_context",
]
