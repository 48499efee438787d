"""Team orchestrator: wave-scheduled execution of cooperating agent roles."""

__version__ = "0.1.0"
