"""Utility helpers for the Eliza orchestrator."""

from .logging import get_logger, redact_env, setup_logging

__all__ = ["get_logger", "redact_env", "setup_logging"]
