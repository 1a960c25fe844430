"""Retrieval-augmented agent: answers from indexed sources, returns citations and follow-ups."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from loguru import logger

from relaybot.agent.base import BaseAgent
from relaybot.agent.models import EnhancedResponse, SourceCitation

if TYPE_CHECKING:
    from relaybot.core.config.schema import Config
    from relaybot.rag.retriever import SemanticRetriever

_QUESTION_LINE = re.compile(r"^\s*(?:[-*]\s*)?Q:\s*(.+?)\s*$", re.MULTILINE)
MAX_FOLLOW_UPS = 3


def split_follow_ups(text: str) -> tuple[str, list[str]]:
    """Separate ``Q: ...`` lines from the answer body."""
    questions = [q for q in _QUESTION_LINE.findall(text) if q][:MAX_FOLLOW_UPS]
    body = _QUESTION_LINE.sub("", text).strip()
    return body, questions


class RAGAgent(BaseAgent):
    name = "rag"

    def __init__(self, config: Config, retriever: SemanticRetriever | None = None):
        super().__init__(config)
        self._retriever = retriever
        self._retriever_failed = False

    def _get_retriever(self) -> SemanticRetriever | None:
        if self._retriever is None and self.config.rag and not self._retriever_failed:
            try:
                from relaybot.rag.retriever import SemanticRetriever

                self._retriever = SemanticRetriever(self.config.rag)
            except Exception as e:
                logger.error(f"RAG retriever unavailable: {e}")
                self._retriever_failed = True
        return self._retriever

    async def generate(self, input, history, user_id, adapter=None) -> EnhancedResponse:
        retriever = self._get_retriever()
        citations: list[SourceCitation] = []
        if retriever is not None:
            citations = retriever.search(input)

        if citations:
            sources = "\n\n".join(
                f"[{i}] {c.title}\n{c.content}" for i, c in enumerate(citations, 1)
            )
            prompt = f"{self.config.bot.rag_system_prompt}\n\nSources:\n{sources}"
        else:
            prompt = (
                f"{self.config.bot.rag_system_prompt}\n\n"
                "No sources matched this question. Say so briefly before answering."
            )

        message = await self._complete(prompt, history, input)
        body, questions = split_follow_ups(str(message.content))
        logger.debug(f"RAG answer for {user_id}: {len(citations)} sources, {len(questions)} follow-ups")
        return EnhancedResponse.from_text(
            body,
            source_citations=citations,
            follow_up_questions=questions,
            token_usage=self._usage(message),
        )
