"""Configuration module for the Eliza orchestrator."""

from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
