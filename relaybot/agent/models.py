"""Agent output envelope and interaction-state models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class SourceCitation(BaseModel):
    """One retrieved source backing a RAG answer."""

    title: str = ""
    file_name: str = ""
    author: str = ""
    relevance: float | None = None
    content: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class GameState(BaseModel):
    """Per-user quiz state. ``is_active`` puts the router in game mode."""

    is_active: bool = False
    phase: str = "idle"  # idle | asking | finished
    level: int = 0
    score: int = 0
    current_question: str = ""
    options: list[str] = Field(default_factory=list)
    response_already_sent: bool = False
    last_message_id: int | None = None


class GameMetadata(BaseModel):
    game_state: GameState
    keyboard: dict[str, Any] | None = None


class EnhancedResponse(BaseModel):
    """What every agent returns: text segments plus optional interactive parts."""

    response: list[str] = Field(default_factory=list)
    source_citations: list[SourceCitation] = Field(default_factory=list)
    follow_up_questions: list[str] = Field(default_factory=list)
    game_metadata: GameMetadata | None = None
    pattern_metadata: dict[str, Any] | None = None
    external_agent_suggestion: str | None = None
    token_usage: int = 0

    @property
    def text(self) -> str:
        return "\n\n".join(s for s in self.response if s)

    @classmethod
    def from_text(cls, text: str, **kwargs: Any) -> EnhancedResponse:
        return cls(response=[text] if text else [], **kwargs)
