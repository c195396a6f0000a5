"""Configuration package."""

from knowledge_architect.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
