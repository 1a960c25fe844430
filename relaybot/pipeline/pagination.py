"""PaginationManager: browsable citation and follow-up question sets.

Each set is rendered as one Telegram message with inline buttons and lives
for ``expiry_s`` seconds.  Expiry is enforced twice: lazily on every button
press, and by a one-shot APScheduler job that deletes the message and forgets
the set even if nobody touches it again.
"""

from __future__ import annotations

import html
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from loguru import logger

from relaybot.agent.models import SourceCitation

if TYPE_CHECKING:
    from relaybot.core.channels.context import ContextAdapter

COOLDOWN_NOTICE = "Please wait a moment before your next action."


class SetKind(str, Enum):
    CITATION = "citation"
    QUESTION = "question"


# callback prefix → (kind, action)
CALLBACK_ACTIONS: dict[str, tuple[SetKind, str]] = {
    "prev_citation": (SetKind.CITATION, "prev"),
    "next_citation": (SetKind.CITATION, "next"),
    "close_citations": (SetKind.CITATION, "close"),
    "prev_question": (SetKind.QUESTION, "prev"),
    "next_question": (SetKind.QUESTION, "next"),
    "select_question": (SetKind.QUESTION, "select"),
}


def parse_callback(data: str) -> tuple[SetKind, str, str] | None:
    """``"next_citation:1712345"`` → (CITATION, "next", "1712345")."""
    prefix, _, set_id = data.partition(":")
    if prefix not in CALLBACK_ACTIONS or not set_id:
        return None
    kind, action = CALLBACK_ACTIONS[prefix]
    return kind, action, set_id


@dataclass
class PaginatedSession:
    kind: SetKind
    chat_key: str
    set_id: str
    chat_id: str
    items: list[Any]
    current_page: int = 0
    created_at: float = field(default_factory=time.time)
    expires_at: float = 0.0
    message_id: int | None = None
    last_action_at: float = 0.0
    delete: Callable[[int], Awaitable[bool]] | None = None

    @property
    def job_id(self) -> str:
        return f"{self.kind.value}:{self.chat_key}:{self.set_id}"

    def is_expired(self, now: float | None = None) -> bool:
        return (now or time.time()) >= self.expires_at

    def step(self, delta: int) -> int:
        n = len(self.items)
        self.current_page = (self.current_page + delta + n) % n
        return self.current_page


@dataclass
class PaginationOutcome:
    handled: bool = True
    notice: str | None = None
    selected: str | None = None


class PaginationManager:
    """Owns every open set, keyed by kind, chat key and set id.

    Parameters
    ----------
    expiry_s : float
        Lifetime of a set (default 48 hours).
    cooldown_s : float
        Minimum spacing between two button presses on the same set.
    """

    def __init__(self, expiry_s: float = 48 * 3600, cooldown_s: float = 0.5):
        self.expiry_s = expiry_s
        self.cooldown_s = cooldown_s
        self._sessions: dict[tuple[SetKind, str], dict[str, PaginatedSession]] = {}
        self._scheduler = AsyncIOScheduler(job_defaults={"coalesce": True, "max_instances": 1})

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()

    def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._sessions.clear()

    @property
    def count(self) -> int:
        return sum(len(sets) for sets in self._sessions.values())

    def get(self, kind: SetKind, chat_key: str, set_id: str) -> PaginatedSession | None:
        return self._sessions.get((kind, chat_key), {}).get(set_id)

    # ── Opening ─────────────────────────────────────────────

    async def open(
        self, adapter: ContextAdapter, kind: SetKind, items: list[Any], chat_key: str
    ) -> PaginatedSession | None:
        """Send page one of a new set and schedule its cleanup."""
        if not items:
            return None
        now = time.time()
        session = PaginatedSession(
            kind=kind,
            chat_key=chat_key,
            set_id=uuid.uuid4().hex[:12],
            chat_id=adapter.context.chat_id,
            items=list(items),
            created_at=now,
            expires_at=now + self.expiry_s,
            delete=adapter.delete,
        )
        text, keyboard = self.render(session)
        sent = await adapter.send(text, reply_markup=keyboard, parse_mode="HTML")
        session.message_id = sent.message_id

        self._sessions.setdefault((kind, chat_key), {})[session.set_id] = session
        self._scheduler.add_job(
            self.cleanup,
            trigger=DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=self.expiry_s)),
            id=session.job_id,
            args=[kind, chat_key, session.set_id],
            replace_existing=True,
        )
        logger.debug(f"Opened {kind.value} set {session.set_id} ({len(items)} items) for {chat_key}")
        return session

    # ── Interaction ─────────────────────────────────────────

    async def handle(
        self, adapter: ContextAdapter, kind: SetKind, action: str, set_id: str, chat_key: str
    ) -> PaginationOutcome:
        session = self.get(kind, chat_key, set_id)
        if session is None:
            notice = f"This {kind.value} set is no longer available."
            await adapter.answer_interaction(notice)
            return PaginationOutcome(notice=notice)

        now = time.time()
        if session.is_expired(now):
            notice = f"This {kind.value} set has expired. Please ask your question again."
            await adapter.answer_interaction(notice)
            await self.cleanup(kind, chat_key, set_id)
            return PaginationOutcome(notice=notice)

        if now - session.last_action_at < self.cooldown_s:
            await adapter.answer_interaction(COOLDOWN_NOTICE)
            return PaginationOutcome(notice=COOLDOWN_NOTICE)
        session.last_action_at = now

        if action == "close":
            await self.cleanup(kind, chat_key, set_id)
            await adapter.answer_interaction("Citations closed.")
            return PaginationOutcome()

        if action == "select":
            await adapter.answer_interaction()
            return PaginationOutcome(selected=str(session.items[session.current_page]))

        session.step(-1 if action == "prev" else 1)
        text, keyboard = self.render(session)
        if session.message_id is not None:
            await adapter.edit(session.message_id, text, reply_markup=keyboard, parse_mode="HTML")
        await adapter.answer_interaction()
        return PaginationOutcome()

    async def cleanup(self, kind: SetKind, chat_key: str, set_id: str) -> None:
        """Delete the rendered message and forget the set. Safe to call repeatedly."""
        sets = self._sessions.get((kind, chat_key))
        session = sets.pop(set_id, None) if sets else None
        if sets is not None and not sets:
            del self._sessions[(kind, chat_key)]

        try:
            self._scheduler.remove_job(f"{kind.value}:{chat_key}:{set_id}")
        except JobLookupError:
            pass

        if session is None:
            return
        if session.delete is not None and session.message_id is not None:
            try:
                await session.delete(session.message_id)
            except Exception as e:
                logger.warning(f"Could not delete {kind.value} message {session.message_id}: {e}")
        logger.debug(f"Cleaned up {kind.value} set {set_id} for {chat_key}")

    async def purge_chat(self, chat_key: str) -> int:
        """Clean up every set of one chat. Returns how many were open."""
        targets = [
            (kind, set_id)
            for (kind, key), sets in self._sessions.items()
            if key == chat_key
            for set_id in sets
        ]
        for kind, set_id in targets:
            await self.cleanup(kind, chat_key, set_id)
        return len(targets)

    # ── Rendering ───────────────────────────────────────────

    def render(self, session: PaginatedSession) -> tuple[str, dict[str, Any]]:
        if session.kind is SetKind.CITATION:
            return self._render_citation(session)
        return self._render_question(session)

    @staticmethod
    def _nav_row(session: PaginatedSession) -> list[list[dict[str, str]]]:
        if len(session.items) < 2:
            return []
        kind = session.kind.value
        return [
            [
                {"text": "⬅️ Previous", "callback_data": f"prev_{kind}:{session.set_id}"},
                {"text": "Next ➡️", "callback_data": f"next_{kind}:{session.set_id}"},
            ]
        ]

    def _render_citation(self, session: PaginatedSession) -> tuple[str, dict[str, Any]]:
        citation: SourceCitation = session.items[session.current_page]
        lines = [
            f"📚 <b>Source Citation {session.current_page + 1} of {len(session.items)}:</b>",
            "",
        ]
        if citation.title:
            lines.append(f"<b>Title:</b> {html.escape(citation.title)}")
        if citation.file_name:
            lines.append(f"<b>File:</b> {html.escape(citation.file_name)}")
        if citation.author:
            lines.append(f"<b>Author:</b> {html.escape(citation.author)}")
        if citation.relevance is not None:
            lines.append(f"<b>Relevance:</b> {citation.relevance:.3f}")
        if citation.content:
            lines += ["", html.escape(citation.content)]

        keyboard = self._nav_row(session) + [
            [{"text": "❌ Close Citations", "callback_data": f"close_citations:{session.set_id}"}]
        ]
        return "\n".join(lines), {"inline_keyboard": keyboard}

    def _render_question(self, session: PaginatedSession) -> tuple[str, dict[str, Any]]:
        question = str(session.items[session.current_page])
        text = (
            f"💡 <b>Follow-up Question {session.current_page + 1} of {len(session.items)}:</b>"
            f"\n\n{html.escape(question)}"
        )
        keyboard = self._nav_row(session) + [
            [{"text": "✅ Select This Question", "callback_data": f"select_question:{session.set_id}"}],
            [{"text": "🔄 Toggle RAG mode", "callback_data": "toggle_rag"}],
        ]
        return text, {"inline_keyboard": keyboard}
