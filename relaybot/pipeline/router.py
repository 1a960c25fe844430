"""InteractionRouter: pick game, RAG or plain chat for a turn."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from langchain_core.messages import BaseMessage
from loguru import logger

from relaybot.agent.game import game_keyboard
from relaybot.agent.manager import AgentManager
from relaybot.agent.models import EnhancedResponse, GameMetadata

if TYPE_CHECKING:
    from relaybot.core.channels.context import ContextAdapter

RAG_DISABLED_REPLY = (
    "RAG mode has been disabled. You can re-enable it anytime with the /ragmode command."
)
RAG_KEPT_REPLY = "RAG mode remains enabled. Feel free to continue your conversation!"


class Mode(str, Enum):
    GAME = "game"
    RAG = "rag"
    PLAIN = "plain"


_AGENT_FOR_MODE = {
    Mode.GAME: "game",
    Mode.RAG: "rag",
    Mode.PLAIN: "conversation",
}


class InteractionRouter:
    """Stateless dispatcher: mode flags are read fresh from the AgentManager on every turn."""

    def __init__(self, agents: AgentManager):
        self.agents = agents

    def resolve_mode(self, user_id: str) -> Mode:
        """Precedence: active game > RAG enabled > plain."""
        if self.agents.is_game_active(user_id):
            return Mode.GAME
        if self.agents.is_rag_enabled(user_id):
            return Mode.RAG
        return Mode.PLAIN

    def is_rag_confirmation(self, user_id: str, text: str) -> bool:
        """A bare yes/no while RAG mode is on answers the "keep RAG mode?" question."""
        return self.agents.is_rag_enabled(user_id) and text.strip().lower() in ("yes", "no")

    async def handle_rag_confirmation(
        self, adapter: ContextAdapter, user_id: str, text: str
    ) -> str:
        if text.strip().lower() == "yes":
            self.agents.toggle_rag(user_id, False)
            reply = RAG_DISABLED_REPLY
        else:
            reply = RAG_KEPT_REPLY
        await adapter.send(reply)
        return reply

    async def route(
        self,
        adapter: ContextAdapter,
        text: str,
        history: list[BaseMessage],
        user_id: str,
    ) -> tuple[Mode, EnhancedResponse]:
        mode = self.resolve_mode(user_id)
        logger.debug(f"Routing {user_id} → {mode.value}")
        response = await self.agents.generate(_AGENT_FOR_MODE[mode], text, history, user_id, adapter)

        if mode is Mode.GAME and response.game_metadata is None:
            state = self.agents.get_game_state(user_id)
            if state is not None:
                response = response.model_copy(
                    update={"game_metadata": GameMetadata(game_state=state, keyboard=game_keyboard(state))}
                )
        return mode, response
