"""ResponseComposer: turn an EnhancedResponse into outbound messages."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from loguru import logger

from relaybot.agent.manager import AgentManager
from relaybot.agent.models import EnhancedResponse
from relaybot.core.channels.context import ContextAdapter, Source
from relaybot.core.channels.telegram import html_chunks, split_message
from relaybot.pipeline.pagination import PaginationManager, SetKind

if TYPE_CHECKING:
    from relaybot.core.channels.base import Identity

APOLOGY = "I'm sorry, but I encountered an error while processing your message. Please try again later."


class ProgressReporter:
    """Edits a placeholder message with stage updates. Failures are only logged."""

    def __init__(self, adapter: ContextAdapter, message_id: int | None):
        self.adapter = adapter
        self.message_id = message_id

    async def update(self, stage: str) -> None:
        if self.message_id is None or not self.adapter.interactive:
            return
        try:
            await self.adapter.edit(self.message_id, stage)
        except Exception as e:
            logger.warning(f"Progress update failed: {e}")


class ResponseComposer:
    """Delivery precedence: game view, pending pattern keyboard, then chunked text with extras."""

    def __init__(self, agents: AgentManager, pagination: PaginationManager):
        self.agents = agents
        self.pagination = pagination

    async def deliver(
        self,
        adapter: ContextAdapter,
        response: EnhancedResponse,
        identity: Identity,
        progress: ProgressReporter | None = None,
    ) -> int | None:
        """Send ``response`` through ``adapter``. Returns the id of the main message.

        Any delivery error is answered with an apology and yields None.
        """
        try:
            game = response.game_metadata
            if game is not None:
                if game.game_state.response_already_sent:
                    return game.game_state.last_message_id
                return await self.send_chunks(adapter, [response.text], reply_markup=game.keyboard)

            keyboard = self.agents.pop_pattern_keyboard(identity.user_id)
            if progress is not None:
                await progress.update("✍️ Composing the answer...")
            message_id = await self.send_chunks(adapter, response.response, reply_markup=keyboard)
            await self._send_extras(adapter, response)
            return message_id
        except Exception as e:
            logger.exception(f"Delivery failed for {identity.user_id}: {e}")
            try:
                await adapter.send(APOLOGY)
            except Exception as send_error:
                logger.error(f"Could not send apology: {send_error}")
            return None

    async def send_chunks(
        self,
        adapter: ContextAdapter,
        segments: list[str],
        reply_markup: dict[str, Any] | None = None,
    ) -> int | None:
        """Send each segment split to the platform limit. Returns the first message id.

        ``reply_markup`` goes on the last chunk only, below the end of the answer.
        """
        chunks = [
            chunk
            for segment in segments
            if segment and segment.strip()
            for chunk in self._chunks(adapter, segment)
        ]
        first_id: int | None = None
        for n, chunk in enumerate(chunks, start=1):
            sent = await adapter.send(
                chunk,
                reply_markup=reply_markup if n == len(chunks) else None,
                parse_mode=self._parse_mode(adapter),
            )
            if first_id is None:
                first_id = sent.message_id
        return first_id

    async def _send_extras(self, adapter: ContextAdapter, response: EnhancedResponse) -> None:
        # Paginated views only on platforms with button callbacks
        if adapter.interactive:
            chat_key = adapter.context.chat_key
            if response.source_citations:
                await self.pagination.open(adapter, SetKind.CITATION, response.source_citations, chat_key)
            if response.follow_up_questions:
                await self.pagination.open(adapter, SetKind.QUESTION, response.follow_up_questions, chat_key)
        if response.external_agent_suggestion:
            await adapter.send(f"💡 {response.external_agent_suggestion}")

    @staticmethod
    def _chunks(adapter: ContextAdapter, text: str) -> list[str]:
        # Telegram chunks are rendered to HTML and must fit after rendering
        return html_chunks(text) if adapter.source is Source.TELEGRAM else split_message(text)

    @staticmethod
    def _parse_mode(adapter: ContextAdapter) -> str | None:
        return "HTML" if adapter.source is Source.TELEGRAM else None
