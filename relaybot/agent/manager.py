"""AgentManager: owns the agents and every per-user interaction flag."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

from langchain_core.messages import BaseMessage
from loguru import logger

from relaybot.agent.base import BaseAgent
from relaybot.agent.conversation import ConversationAgent
from relaybot.agent.game import GameAgent
from relaybot.agent.models import EnhancedResponse, GameState
from relaybot.agent.rag import RAGAgent
from relaybot.core.providers.litellm import setup_provider

if TYPE_CHECKING:
    from relaybot.core.channels.context import ContextAdapter
    from relaybot.core.config.schema import Config

PATTERN_KEYBOARD_TTL_S = 300


class AgentManager:
    """Agent lookup plus the mode state the router reads each turn.

    Holds the RAG on/off flag per user, delegates game state to the
    game agent, and keeps a short-lived cache of pattern keyboards that
    the composer consumes once.
    """

    def __init__(self, config: Config, agents: dict[str, BaseAgent] | None = None):
        self.config = config
        self.agents: dict[str, BaseAgent] = agents or {
            "conversation": ConversationAgent(config),
            "rag": RAGAgent(config),
            "game": GameAgent(config),
        }
        self._rag_enabled: dict[str, bool] = {}
        self._pattern_keyboards: dict[str, tuple[dict[str, Any], float]] = {}
        self.ready = False

    async def initialize(self) -> None:
        setup_provider(self.config)
        self.ready = True
        logger.info(f"AgentManager ready: {', '.join(self.agents)} ({self.config.bot.model})")

    def get_agent(self, name: str) -> BaseAgent:
        agent = self.agents.get(name)
        if agent is None:
            logger.warning(f"Unknown agent {name!r}, using conversation")
            return self.agents["conversation"]
        return agent

    async def generate(
        self,
        name: str,
        input: str,
        history: list[BaseMessage],
        user_id: str,
        adapter: ContextAdapter | None = None,
    ) -> EnhancedResponse:
        response = await self.get_agent(name).generate(input, history, user_id, adapter)
        keyboard = (response.pattern_metadata or {}).get("keyboard")
        if keyboard:
            self.set_pattern_keyboard(user_id, keyboard)
        return response

    # ── RAG mode ────────────────────────────────────────────

    def is_rag_enabled(self, user_id: str) -> bool:
        return self._rag_enabled.get(user_id, False)

    def toggle_rag(self, user_id: str, enabled: bool | None = None) -> bool:
        """Set (or flip when ``enabled`` is None) RAG mode. Returns the new value."""
        value = (not self.is_rag_enabled(user_id)) if enabled is None else enabled
        self._rag_enabled[user_id] = value
        logger.info(f"RAG mode {'enabled' if value else 'disabled'} for {user_id}")
        return value

    # ── Game ────────────────────────────────────────────────

    @property
    def game(self) -> GameAgent | None:
        agent = self.agents.get("game")
        return agent if isinstance(agent, GameAgent) else None

    def get_game_state(self, user_id: str) -> GameState | None:
        return self.game.get_state(user_id) if self.game else None

    def is_game_active(self, user_id: str) -> bool:
        state = self.get_game_state(user_id)
        return bool(state and state.is_active)

    def initialize_game(self, user_id: str) -> GameState | None:
        return self.game.initialize(user_id) if self.game else None

    def end_game(self, user_id: str) -> GameState | None:
        return self.game.end(user_id) if self.game else None

    # ── Pattern keyboards ───────────────────────────────────

    def set_pattern_keyboard(self, user_id: str, keyboard: dict[str, Any]) -> None:
        self._pattern_keyboards[user_id] = (keyboard, time.monotonic() + PATTERN_KEYBOARD_TTL_S)

    def pop_pattern_keyboard(self, user_id: str) -> dict[str, Any] | None:
        """Return and forget the pending keyboard, if it has not expired."""
        entry = self._pattern_keyboards.pop(user_id, None)
        if entry is None:
            return None
        keyboard, expires_at = entry
        return keyboard if time.monotonic() < expires_at else None
