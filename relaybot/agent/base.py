"""Agent base class: one LiteLLM call per turn, returns EnhancedResponse."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, ClassVar

from langchain_core.messages import AIMessage, BaseMessage

from relaybot.agent.models import EnhancedResponse
from relaybot.core.providers import litellm as llm_provider

if TYPE_CHECKING:
    from relaybot.core.channels.context import ContextAdapter
    from relaybot.core.config.schema import Config


class BaseAgent(ABC):
    """Common LLM plumbing for the conversation, RAG and game agents."""

    name: ClassVar[str]

    def __init__(self, config: Config):
        self.config = config

    @abstractmethod
    async def generate(
        self,
        input: str,
        history: list[BaseMessage],
        user_id: str,
        adapter: ContextAdapter | None = None,
    ) -> EnhancedResponse: ...

    async def _complete(
        self, system_prompt: str, history: list[BaseMessage], user_input: str
    ) -> AIMessage:
        bot = self.config.bot
        messages = llm_provider.to_chat_messages(system_prompt, history, user_input)
        return await llm_provider.achat(
            messages,
            model=bot.model,
            temperature=bot.temperature,
            max_tokens=bot.max_tokens,
            api_base=self.config.get_api_base(),
        )

    @staticmethod
    def _usage(message: AIMessage) -> int:
        return message.response_metadata.get("usage", {}).get("total_tokens", 0)
