"""TeamStore adapters: in-memory for tests and embedding, filesystem for the CLI."""

from team_orchestrator.store.filesystem import FilesystemTeamStore
from team_orchestrator.store.memory import InMemoryTeamStore

__all__ = [
    "FilesystemTeamStore",
    "InMemoryTeamStore",
]
