"""Configuration module."""

from relaybot.core.config.loader import load_config
from relaybot.core.config.schema import Config

__all__ = ["Config", "load_config"]
