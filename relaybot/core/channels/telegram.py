"""Telegram channel: Bot API client, update parsing and webhook endpoint."""

from __future__ import annotations

import copy
import html
import re
from typing import Any, Iterator

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from loguru import logger

from relaybot.api.deps import get_registry
from relaybot.core.channels.context import MessageContext, ReplyRef, Source

router = APIRouter(tags=["telegram"])

TELEGRAM_API = "{base}/bot{token}"


@router.post("/webhooks/telegram/{deployment}")
async def telegram_webhook(deployment: str, request: Request, registry=Depends(get_registry)):
    """Handle incoming Telegram webhook updates for one bot deployment.

    Message fragments are buffered inside the orchestrator, so this returns
    before the turn is processed.
    """
    body = await request.json()
    try:
        orchestrator = await registry.get_or_create(deployment)
    except Exception as e:
        logger.error(f"Telegram: bot {deployment} unavailable: {e}")
        return JSONResponse({"ok": False, "error": "Bot unavailable"}, status_code=503)

    await orchestrator.handle_telegram_update(body)
    return JSONResponse({"ok": True})


class TelegramClient:
    """Async client for the Telegram Bot API.

    Parameters
    ----------
    token : str
        Bot token from BotFather.
    api_base : str
        API root, overridable for local Bot API servers.
    """

    def __init__(self, token: str, api_base: str = "https://api.telegram.org") -> None:
        self.token = token
        self.base_url = TELEGRAM_API.format(base=api_base.rstrip("/"), token=token)

    async def send_message(
        self,
        chat_id: str | int,
        text: str,
        reply_markup: dict[str, Any] | None = None,
        parse_mode: str | None = None,
        reply_to: int | None = None,
    ) -> int | None:
        """Send a message. Returns its message_id, or None on failure.

        If Telegram rejects the formatted text, it is re-sent as plain text.
        """
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_markup:
            payload["reply_markup"] = reply_markup
        if reply_to:
            payload["reply_parameters"] = {"message_id": reply_to, "allow_sending_without_reply": True}
        if parse_mode:
            result = await self._call("sendMessage", {**payload, "parse_mode": parse_mode})
            if result is None:
                result = await self._call("sendMessage", {**payload, "text": _strip_html(text)})
        else:
            result = await self._call("sendMessage", payload)
        return result.get("message_id") if isinstance(result, dict) else None

    async def edit_message(
        self,
        chat_id: str | int,
        message_id: int,
        text: str,
        reply_markup: dict[str, Any] | None = None,
        parse_mode: str | None = None,
    ) -> bool:
        payload: dict[str, Any] = {"chat_id": chat_id, "message_id": message_id, "text": text}
        if reply_markup:
            payload["reply_markup"] = reply_markup
        if parse_mode:
            payload["parse_mode"] = parse_mode
        return await self._call("editMessageText", payload) is not None

    async def delete_message(self, chat_id: str | int, message_id: int) -> bool:
        return bool(await self._call("deleteMessage", {"chat_id": chat_id, "message_id": message_id}))

    async def answer_callback(self, callback_id: str, text: str | None = None) -> None:
        payload: dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            payload["text"] = text
        await self._call("answerCallbackQuery", payload)

    async def send_chat_action(self, chat_id: str | int, action: str = "typing") -> None:
        await self._call("sendChatAction", {"chat_id": chat_id, "action": action})

    async def get_me(self) -> dict[str, Any] | None:
        return await self._call("getMe", {})

    async def _call(self, method: str, payload: dict[str, Any]) -> Any:
        """POST one Bot API method. Returns ``result`` or None when Telegram says not ok."""
        url = f"{self.base_url}/{method}"
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(30.0)) as client:
                resp = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Telegram {method} request failed: {e}")
            return None
        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            logger.warning(f"Telegram {method} returned non-JSON ({resp.status_code}): {resp.text[:200]}")
            return None
        if resp.status_code != 200 or not data.get("ok"):
            logger.warning(
                f"Telegram {method} failed ({resp.status_code}): {data.get('description', resp.text[:200])}"
            )
            return None
        return data.get("result")


# ════════════════════════════════════════════════════════════
# UPDATE PARSING
# ════════════════════════════════════════════════════════════


def update_message(update: dict[str, Any]) -> dict[str, Any] | None:
    return update.get("message") or update.get("edited_message")


def update_text(update: dict[str, Any]) -> str | None:
    """Text (or caption) of a message update, None for anything else."""
    message = update_message(update)
    if not message:
        return None
    return message.get("text") or message.get("caption")


def with_text(update: dict[str, Any], text: str) -> dict[str, Any]:
    """Copy of ``update`` whose message text is replaced. The original is left untouched."""
    rewritten = copy.deepcopy(update)
    message = update_message(rewritten)
    if message is not None:
        if "text" in message or "caption" not in message:
            message["text"] = text
        else:
            message["caption"] = text
    return rewritten


def buffer_key(update: dict[str, Any]) -> str | None:
    """``"{chat_id}:{user_id}"`` for message updates."""
    message = update_message(update)
    if not message or "chat" not in message:
        return None
    sender = message.get("from") or {}
    return f"{message['chat']['id']}:{sender.get('id', message['chat']['id'])}"


def context_from_update(update: dict[str, Any]) -> MessageContext | None:
    """Build a MessageContext from a Telegram update (message or callback_query)."""
    callback = update.get("callback_query")
    if callback:
        message = callback.get("message") or {}
        chat = message.get("chat") or {}
        sender = callback.get("from") or {}
        return MessageContext(
            source=Source.TELEGRAM,
            chat_id=str(chat.get("id", sender.get("id", ""))),
            user_id=str(sender.get("id", "")),
            message_id=message.get("message_id"),
            chat_type=chat.get("type", "private"),
            username=sender.get("username"),
            first_name=sender.get("first_name"),
            is_bot=bool(sender.get("is_bot")),
            callback_data=callback.get("data", ""),
            callback_id=callback.get("id"),
            raw=update,
        )

    message = update_message(update)
    if not message:
        return None
    chat = message.get("chat") or {}
    sender = message.get("from") or {}
    reply = message.get("reply_to_message")
    reply_ref = None
    if reply:
        reply_from = reply.get("from") or {}
        reply_ref = ReplyRef(
            message_id=reply["message_id"],
            text=reply.get("text") or reply.get("caption") or "",
            from_id=str(reply_from["id"]) if "id" in reply_from else None,
            from_is_bot=bool(reply_from.get("is_bot")),
        )
    return MessageContext(
        source=Source.TELEGRAM,
        chat_id=str(chat.get("id", "")),
        user_id=str(sender.get("id", chat.get("id", ""))),
        message_id=message.get("message_id"),
        input=(message.get("text") or message.get("caption") or "").strip(),
        chat_type=chat.get("type", "private"),
        username=sender.get("username"),
        first_name=sender.get("first_name"),
        is_bot=bool(sender.get("is_bot")),
        reply_to=reply_ref,
        raw=update,
    )


# ════════════════════════════════════════════════════════════
# FORMATTING
# ════════════════════════════════════════════════════════════

TELEGRAM_TEXT_LIMIT = 4096

_FENCE = re.compile(r"```(?:\w*\n)?(.*?)```", re.DOTALL)
_INLINE_CODE = re.compile(r"`([^`\n]+)`")
_INLINE_MARKUP = (
    (re.compile(r"\*\*(.+?)\*\*"), r"<b>\1</b>"),
    (re.compile(r"(?<!\w)\*(?!\s)(.+?)(?<!\s)\*(?!\w)"), r"<i>\1</i>"),
    (re.compile(r"\[([^\]]+)\]\(([^)\s]+)\)"), r'<a href="\2">\1</a>'),
)
_TAG = re.compile(r"<[^>]+>")


def _escape(text: str) -> str:
    return html.escape(text, quote=False)


def _inline_to_html(text: str) -> str:
    # re.split with one group: odd indexes are the code spans
    parts = _INLINE_CODE.split(text)
    out = []
    for i, part in enumerate(parts):
        if i % 2:
            out.append(f"<code>{_escape(part)}</code>")
            continue
        part = _escape(part)
        for pattern, replacement in _INLINE_MARKUP:
            part = pattern.sub(replacement, part)
        out.append(part)
    return "".join(out)


def md_to_html(text: str) -> str:
    """Render the markdown subset LLMs emit as Telegram ``parse_mode=HTML``.

    Fenced blocks become ``<pre>``, inline code ``<code>``; ``**bold**``,
    ``*italic*`` and ``[label](url)`` are converted outside code only.
    """
    parts = _FENCE.split(text)
    return "".join(
        f"<pre>{_escape(part)}</pre>" if i % 2 else _inline_to_html(part)
        for i, part in enumerate(parts)
    )


def _message_pieces(text: str, limit: int) -> Iterator[tuple[str, str]]:
    """Yield ``(piece, joiner)``: whole paragraphs, else lines, else hard cuts."""
    for paragraph in text.split("\n\n"):
        if len(paragraph) <= limit:
            yield paragraph, "\n\n"
            continue
        for n, line in enumerate(paragraph.split("\n")):
            joiner = "\n\n" if n == 0 else "\n"
            for start in range(0, max(len(line), 1), limit):
                yield line[start : start + limit], joiner
                joiner = ""


def split_message(text: str, max_length: int = TELEGRAM_TEXT_LIMIT) -> list[str]:
    """Break text into sendable chunks, preferring paragraph then line boundaries.

    Parameters
    ----------
    text : str
        Outgoing text.
    max_length : int
        Per-message ceiling; the Bot API rejects anything above 4096.

    Returns
    -------
    list[str]
        Non-empty chunks, each at most ``max_length`` characters.
    """
    if len(text) <= max_length:
        return [text]

    chunks: list[str] = []
    current = ""
    for piece, joiner in _message_pieces(text, max_length):
        joined = f"{current}{joiner}{piece}" if current else piece
        if len(joined) <= max_length:
            current = joined
            continue
        if current.strip():
            chunks.append(current.strip())
        current = piece
    if current.strip():
        chunks.append(current.strip())
    return chunks


def html_chunks(text: str, max_length: int = TELEGRAM_TEXT_LIMIT) -> list[str]:
    """Split markdown so that every chunk still fits once rendered by :func:`md_to_html`.

    Escaping and tags make the HTML longer than its source. A chunk that grew
    past the limit is split again at half the size.
    """
    chunks: list[str] = []
    for raw in split_message(text, max_length):
        rendered = md_to_html(raw)
        if len(rendered) <= TELEGRAM_TEXT_LIMIT:
            chunks.append(rendered)
        else:
            chunks.extend(html_chunks(raw, max_length // 2))
    return chunks


def _strip_html(text: str) -> str:
    return html.unescape(_TAG.sub("", text))
