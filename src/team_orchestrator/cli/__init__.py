"""Command-line interface for the team orchestrator."""

from team_orchestrator.cli.app import app, main

__all__ = ["app", "main"]
