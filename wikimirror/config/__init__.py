"""Configuration module -- exports Settings, load_config, build_settings, and a module-level singleton."""

from wikimirror.config.loader import build_settings, load_config
from wikimirror.config.settings import Settings

settings = Settings()

__all__ = ["Settings", "build_settings", "load_config", "settings"]
