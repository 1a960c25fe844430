"""ConversationMemory: persist each turn as chunked human/AI entries and rebuild history."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Literal

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from loguru import logger
from pydantic import BaseModel

from relaybot.agent.manager import AgentManager
from relaybot.agent.models import EnhancedResponse
from relaybot.memory.store import MemoryStore

if TYPE_CHECKING:
    from relaybot.core.channels.base import Identity
    from relaybot.core.channels.context import MessageContext


def split_text(text: str, max_length: int = 1000) -> list[str]:
    """Split at the last newline before ``max_length``, else the last space, else hard-cut."""
    chunks: list[str] = []
    remaining = text.strip()
    while len(remaining) > max_length:
        cut = remaining.rfind("\n", 0, max_length)
        if cut <= 0:
            cut = remaining.rfind(" ", 0, max_length)
        if cut <= 0:
            cut = max_length
        chunks.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].strip()
    if remaining:
        chunks.append(remaining)
    return chunks


class MemoryEntry(BaseModel):
    user_id: str
    session_id: str
    role: Literal["human", "ai"]
    content: str
    turn_id: str
    chunk_index: int = 0
    chunk_count: int = 1
    timestamp: str
    message_id: int | None = None
    reply_to_message_id: int | None = None
    related_to_message_id: int | None = None
    is_reply: bool = False
    is_follow_up: bool = False
    mode: str | None = None


class ConversationMemory:
    """Writes turns through the store. Never raises on storage failure."""

    def __init__(self, db: MemoryStore, agents: AgentManager, chunk_size: int = 1000, history_limit: int = 50):
        self.db = db
        self.agents = agents
        self.chunk_size = chunk_size
        self.history_limit = history_limit

    def build_entries(
        self,
        identity: Identity,
        context: MessageContext,
        input_text: str,
        response: EnhancedResponse,
        response_message_id: int | None = None,
        is_follow_up: bool = False,
        mode: str | None = None,
    ) -> list[MemoryEntry]:
        """Human chunks first, then AI chunks, all sharing one turn id."""
        turn_id = uuid.uuid4().hex[:12]
        timestamp = datetime.now(timezone.utc).isoformat()
        base = {"user_id": identity.user_id, "session_id": identity.session_id, "turn_id": turn_id, "timestamp": timestamp}

        human_chunks = split_text(input_text, self.chunk_size)
        ai_chunks = split_text(response.text, self.chunk_size)
        entries = [
            MemoryEntry(
                **base,
                role="human",
                content=chunk,
                chunk_index=i,
                chunk_count=len(human_chunks),
                message_id=context.message_id,
                reply_to_message_id=context.reply_to.message_id if context.reply_to else None,
                is_reply=context.is_reply,
                is_follow_up=is_follow_up,
            )
            for i, chunk in enumerate(human_chunks)
        ]
        entries += [
            MemoryEntry(
                **base,
                role="ai",
                content=chunk,
                chunk_index=i,
                chunk_count=len(ai_chunks),
                message_id=response_message_id,
                related_to_message_id=context.message_id,
                is_follow_up=is_follow_up,
                mode=mode,
            )
            for i, chunk in enumerate(ai_chunks)
        ]
        return entries

    def commit(
        self,
        identity: Identity,
        context: MessageContext,
        input_text: str,
        response: EnhancedResponse,
        response_message_id: int | None = None,
        is_follow_up: bool = False,
        mode: str | None = None,
    ) -> bool:
        """Store the turn. Returns False when skipped (active game) or when storage failed."""
        if self.agents.is_game_active(identity.user_id):
            logger.debug(f"Game active for {identity.user_id}, turn not stored")
            return False

        entries = self.build_entries(
            identity, context, input_text, response, response_message_id, is_follow_up, mode
        )
        try:
            self.db.append_messages([e.model_dump() for e in entries])
            if response.token_usage:
                self.db.record_usage(identity.user_id, response.token_usage)
        except Exception as e:
            logger.error(f"Memory write failed for {identity.session_id}: {e}")
            return False
        return True

    def history(self, identity: Identity) -> list[BaseMessage]:
        """Stored turns as LangChain messages, chunks of one message re-joined."""
        try:
            rows = self.db.get_messages(identity.user_id, identity.session_id, limit=self.history_limit)
        except Exception as e:
            logger.error(f"History read failed for {identity.session_id}: {e}")
            return []
        messages: list[BaseMessage] = []
        current_key: tuple[str, str] | None = None
        parts: list[str] = []
        meta: dict = {}

        def flush() -> None:
            if current_key is None:
                return
            cls = HumanMessage if current_key[1] == "human" else AIMessage
            messages.append(cls(content="\n".join(parts), additional_kwargs=meta))

        for row in rows:
            key = (row["metadata"].get("turn_id", str(row["id"])), row["role"])
            if key != current_key:
                flush()
                current_key, parts, meta = key, [], dict(row["metadata"])
            parts.append(row["content"])
        flush()
        return messages

    def clear(self, identity: Identity) -> int:
        return self.db.clear_messages(identity.user_id, identity.session_id)
