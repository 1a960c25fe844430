"""Channel-agnostic message context and per-source output adapters.

Every inbound event (Telegram update, API call, webapp call) becomes one
immutable :class:`MessageContext`.  The pipeline talks back through a
:class:`ContextAdapter`, so routing and composition never branch on the
source themselves.  The only per-source decision left is how the finished
turn is returned to the caller, handled by :func:`format_reply`.
"""

from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, ClassVar

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from relaybot.agent.models import EnhancedResponse
from relaybot.memory.models import (
    ApiReply,
    PlatformReply,
    Reply,
    ReplyMetadata,
    TokenStats,
    WebappReply,
)

if TYPE_CHECKING:
    from relaybot.core.channels.telegram import TelegramClient


class Source(str, Enum):
    TELEGRAM = "telegram"
    API = "api"
    WEBAPP = "webapp"


class ReplyRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    message_id: int
    text: str = ""
    from_id: str | None = None
    from_is_bot: bool = False


class MessageContext(BaseModel):
    """One normalized inbound event. Never mutated after construction."""

    model_config = ConfigDict(frozen=True)

    source: Source
    chat_id: str
    user_id: str
    message_id: int | None = None
    input: str = ""
    chat_type: str = "private"
    username: str | None = None
    first_name: str | None = None
    is_bot: bool = False
    reply_to: ReplyRef | None = None
    callback_data: str | None = None
    callback_id: str | None = None
    session_hint: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_private(self) -> bool:
        return self.chat_type == "private"

    @property
    def is_command(self) -> bool:
        return self.input.startswith("/")

    @property
    def is_reply(self) -> bool:
        return self.reply_to is not None

    @property
    def is_callback(self) -> bool:
        return self.callback_data is not None

    @property
    def chat_key(self) -> str:
        """Key for per-chat UI state: the user in private chats, else the chat."""
        return self.user_id if self.is_private else self.chat_id


class SentMessage(BaseModel):
    message_id: int | None = None
    chat_id: str = ""
    text: str = ""


class TurnResult(BaseModel):
    """What a processed turn leaves behind for the caller-facing reply."""

    text: str = ""
    message_id: int | None = None
    mode: str | None = None
    user_id: str = ""
    session_id: str = ""
    response: EnhancedResponse | None = None


# ════════════════════════════════════════════════════════════
# ADAPTERS
# ════════════════════════════════════════════════════════════


class ContextAdapter(ABC):
    """Uniform outbound surface over a single inbound event."""

    source: ClassVar[Source]
    # Only platforms with message editing get progress placeholders and paginated views.
    interactive: ClassVar[bool] = False

    def __init__(self, context: MessageContext):
        self.context = context

    @abstractmethod
    async def send(
        self,
        text: str,
        reply_markup: dict[str, Any] | None = None,
        parse_mode: str | None = None,
        reply_to: int | None = None,
    ) -> SentMessage: ...

    @abstractmethod
    async def edit(
        self,
        message_id: int,
        text: str,
        reply_markup: dict[str, Any] | None = None,
        parse_mode: str | None = None,
    ) -> bool: ...

    @abstractmethod
    async def delete(self, message_id: int) -> bool: ...

    async def answer_interaction(self, text: str | None = None) -> None:
        """Acknowledge a button press. No-op outside interactive platforms."""

    async def send_typing(self) -> None:
        """Show a typing indicator where the platform has one."""


class TelegramAdapter(ContextAdapter):
    source = Source.TELEGRAM
    interactive = True

    def __init__(self, context: MessageContext, client: TelegramClient):
        super().__init__(context)
        self.client = client

    async def send(self, text, reply_markup=None, parse_mode=None, reply_to=None):
        message_id = await self.client.send_message(
            self.context.chat_id,
            text,
            reply_markup=reply_markup,
            parse_mode=parse_mode,
            reply_to=reply_to,
        )
        return SentMessage(message_id=message_id, chat_id=self.context.chat_id, text=text)

    async def edit(self, message_id, text, reply_markup=None, parse_mode=None):
        return await self.client.edit_message(
            self.context.chat_id, message_id, text, reply_markup=reply_markup, parse_mode=parse_mode
        )

    async def delete(self, message_id):
        return await self.client.delete_message(self.context.chat_id, message_id)

    async def answer_interaction(self, text=None):
        if self.context.callback_id:
            await self.client.answer_callback(self.context.callback_id, text)

    async def send_typing(self):
        await self.client.send_chat_action(self.context.chat_id, "typing")


class CollectingAdapter(ContextAdapter):
    """Request/response channels: outbound messages are kept and returned to the caller."""

    _ids = itertools.count(1)

    def __init__(self, context: MessageContext):
        super().__init__(context)
        self.outbox: dict[int, SentMessage] = {}

    async def send(self, text, reply_markup=None, parse_mode=None, reply_to=None):
        message_id = next(self._ids)
        sent = SentMessage(message_id=message_id, chat_id=self.context.chat_id, text=text)
        self.outbox[message_id] = sent
        return sent

    async def edit(self, message_id, text, reply_markup=None, parse_mode=None):
        if message_id not in self.outbox:
            return False
        self.outbox[message_id] = self.outbox[message_id].model_copy(update={"text": text})
        return True

    async def delete(self, message_id):
        return self.outbox.pop(message_id, None) is not None

    @property
    def transcript(self) -> str:
        return "\n\n".join(m.text for m in self.outbox.values() if m.text)


class ApiAdapter(CollectingAdapter):
    source = Source.API


class WebappAdapter(CollectingAdapter):
    source = Source.WEBAPP


# ════════════════════════════════════════════════════════════
# CONTEXT BUILDERS
# ════════════════════════════════════════════════════════════


def api_context(
    message: str, user_id: str, session_id: str | None = None
) -> MessageContext:
    return MessageContext(
        source=Source.API,
        chat_id=user_id,
        user_id=user_id,
        input=message,
        session_hint=session_id,
    )


def webapp_context(question: str, chat_id: str, message_id: int | None = None) -> MessageContext:
    """Raw webapp event. The composite ``chat_id`` is parsed by the identity normalizer."""
    return MessageContext(
        source=Source.WEBAPP,
        chat_id=chat_id,
        user_id=chat_id,
        message_id=message_id,
        input=question,
    )


# ════════════════════════════════════════════════════════════
# REPLY FORMATTING (one function per source)
# ════════════════════════════════════════════════════════════


def _format_platform(adapter: ContextAdapter, result: TurnResult, token_stats: dict | None) -> Reply:
    return PlatformReply(message_id=result.message_id)


def _format_api(adapter: ContextAdapter, result: TurnResult, token_stats: dict | None) -> Reply:
    response = result.response or EnhancedResponse()
    return ApiReply(
        text=_reply_text(adapter, result),
        user_id=result.user_id,
        session_id=result.session_id,
        mode=result.mode,
        message_id=result.message_id,
        source_citations=response.source_citations,
        follow_up_questions=response.follow_up_questions,
    )


def _format_webapp(adapter: ContextAdapter, result: TurnResult, token_stats: dict | None) -> Reply:
    response = result.response or EnhancedResponse()
    text = _reply_text(adapter, result)
    return WebappReply(
        text=text,
        content=text,
        question=adapter.context.input,
        chat_id=adapter.context.chat_id,
        chat_message_id=str(result.message_id) if result.message_id is not None else None,
        session_id=result.session_id,
        metadata=ReplyMetadata(
            source=Source.WEBAPP.value,
            timestamp=datetime.now(timezone.utc).isoformat(),
            token_stats=TokenStats(**token_stats) if token_stats else None,
        ),
        source_citations=response.source_citations,
        follow_up_questions=response.follow_up_questions,
    )


_FORMATTERS: dict[Source, Callable[[ContextAdapter, TurnResult, dict | None], Reply]] = {
    Source.TELEGRAM: _format_platform,
    Source.API: _format_api,
    Source.WEBAPP: _format_webapp,
}


def format_reply(
    adapter: ContextAdapter, result: TurnResult, token_stats: dict | None = None
) -> Reply:
    """Shape a finished turn for the caller of ``adapter``'s source."""
    formatter = _FORMATTERS[adapter.source]
    logger.debug(f"Formatting {adapter.source.value} reply for {result.user_id}")
    return formatter(adapter, result, token_stats)


def _reply_text(adapter: ContextAdapter, result: TurnResult) -> str:
    if isinstance(adapter, CollectingAdapter) and adapter.outbox:
        return adapter.transcript
    return result.text
