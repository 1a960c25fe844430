"""Pydantic data models: API requests and per-channel reply shapes."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from relaybot.agent.models import SourceCitation


# ════════════════════════════════════════════════════════════
# API REQUEST
# ════════════════════════════════════════════════════════════


class ChatRequest(BaseModel):
    message: str
    user_id: str | None = None
    session_id: str | None = None
    deployment: str | None = None


class WebappChatRequest(BaseModel):
    """Webapp turn. ``chat_id`` is ``webapp|<telegramUserId>|<firstName>|<sessionId>``."""

    question: str
    chat_id: str
    message_id: int | None = None
    deployment: str | None = None


class TelegramAuthRequest(BaseModel):
    """Payload of the Telegram Login Widget."""

    id: int
    first_name: str = ""
    last_name: str | None = None
    username: str | None = None
    photo_url: str | None = None
    auth_date: int
    hash: str


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    user_id: str
    access_token: str
    refresh_token: str | None = None
    expires_at: str


class HealthResponse(BaseModel):
    status: str
    version: str = ""
    deployments: int = 0


# ════════════════════════════════════════════════════════════
# REPLIES (one variant per channel)
# ════════════════════════════════════════════════════════════


class TokenStats(BaseModel):
    quota: int = 25_000
    used: int = 0
    remaining: int = 25_000
    messages: int = 0
    subscription: str = "free"


class ReplyMetadata(BaseModel):
    source: str
    timestamp: str
    token_stats: TokenStats | None = None


class PlatformReply(BaseModel):
    """Telegram: the answer went out through the Bot API, the webhook only acknowledges."""

    kind: Literal["platform"] = "platform"
    ok: bool = True
    message_id: int | None = None


class ApiReply(BaseModel):
    kind: Literal["api"] = "api"
    text: str
    user_id: str
    session_id: str
    mode: str | None = None
    message_id: int | None = None
    source_citations: list[SourceCitation] = Field(default_factory=list)
    follow_up_questions: list[str] = Field(default_factory=list)


class WebappReply(BaseModel):
    kind: Literal["webapp"] = "webapp"
    text: str
    content: str
    question: str
    chat_id: str
    chat_message_id: str | None = None
    session_id: str
    metadata: ReplyMetadata
    source_citations: list[SourceCitation] = Field(default_factory=list)
    follow_up_questions: list[str] = Field(default_factory=list)


class AuthRequiredReply(BaseModel):
    kind: Literal["auth_required"] = "auth_required"
    error: str = "Invalid or expired token"
    require_auth: bool = True
    chat_id: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


Reply = PlatformReply | ApiReply | WebappReply | AuthRequiredReply
