"""Environment-driven application settings."""

from payrelay.config.settings import AppConfig, get_config

__all__ = ["AppConfig", "get_config"]
