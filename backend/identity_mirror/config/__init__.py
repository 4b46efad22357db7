"""Environment-driven configuration."""

from identity_mirror.config.settings import MirrorSettings, get_settings

__all__ = ["MirrorSettings", "get_settings"]
