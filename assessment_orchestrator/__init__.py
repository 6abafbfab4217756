"""Assessment orchestrator: submit analysis jobs and follow them to a result."""

__version__ = "0.1.0"
