"""Local orchestrator for the ElizaOS agent runtime."""

__version__ = "0.1.0"
