"""Locate and read the YAML config file, then let pydantic-settings layer env on top."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from relaybot.core.config.schema import Config

CONFIG_ENV = "RELAYBOT_CONFIG"
DEFAULT_CONFIG_FILE = Path("config.yaml")


def load_config(config_path: str | Path | None = None) -> Config:
    """Build the effective :class:`Config`.

    The file comes from ``config_path``, else ``$RELAYBOT_CONFIG``, else
    ``./config.yaml``. A missing file is not an error. Environment variables
    (``RELAYBOT_<SECTION>__<KEY>``) and ``.env`` still override YAML values.
    """
    candidate = config_path or os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG_FILE
    path = Path(candidate)
    if not path.is_file():
        if config_path or os.environ.get(CONFIG_ENV):
            logger.warning(f"Config file {path} not found, using defaults and env")
        return Config()
    return Config(**read_yaml(path))


def read_yaml(path: Path) -> dict[str, Any]:
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    logger.debug(f"Loaded config sections from {path}: {sorted(data)}")
    return data
