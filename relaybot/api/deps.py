"""FastAPI dependency injection: pull singletons from app.state."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

from relaybot.core.config.schema import Config
from relaybot.memory.store import MemoryStore

if TYPE_CHECKING:
    from relaybot.pipeline.registry import BotRegistry


def get_config(request: Request) -> Config:
    """Get Config singleton from app state."""
    return request.app.state.config


def get_db(request: Request) -> MemoryStore:
    """Get MemoryStore singleton from app state."""
    return request.app.state.db


def get_registry(request: Request) -> BotRegistry:
    """Get BotRegistry singleton from app state."""
    return request.app.state.registry
