"""Auto mode orchestrator: implement, verify and commit backlog features with a coding agent."""

__version__ = "0.1.0"
