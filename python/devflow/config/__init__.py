"""Environment-driven configuration."""

from devflow.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
