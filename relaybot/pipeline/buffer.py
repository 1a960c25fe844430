"""UpdateBuffer: debounce rapid Telegram fragments into one turn.

Telegram clients split long pastes into several messages that arrive
within milliseconds of each other.  Fragments from the same chat and
sender are held until no new one arrived for ``window_s`` seconds (or
``max_updates`` piled up), then re-joined and forwarded as a single update.
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from loguru import logger

from relaybot.core.channels.telegram import buffer_key, update_text, with_text

Update = dict[str, Any]
UpdateHandler = Callable[[Update], Awaitable[None]]

_TRAILING_MARKER = re.compile(r"(\.\.\.|…|---)$")
_LEADING_MARKER = re.compile(r"^(\.\.\.|…|---)")


def join_message_parts(parts: list[str]) -> str:
    """Join fragments with a blank line, dropping continuation markers.

    Trailing ``...``/``…``/``---`` are removed from every part but the
    last, leading ones from every part but the first.
    """
    if len(parts) == 1:
        return parts[0]

    cleaned: list[str] = []
    last = len(parts) - 1
    for i, part in enumerate(parts):
        text = part.strip()
        if i < last:
            text = _TRAILING_MARKER.sub("", text).rstrip()
        if i > 0:
            text = _LEADING_MARKER.sub("", text).lstrip()
        cleaned.append(text)
    return "\n\n".join(cleaned)


@dataclass
class BufferEntry:
    updates: list[Update] = field(default_factory=list)
    last_update: float = 0.0
    timer: asyncio.Task | None = None


class UpdateBuffer:
    """Per-key fragment buffer with a resettable debounce timer.

    Parameters
    ----------
    handler : callable
        ``async handler(update)`` receiving the joined (or bypassing) update.
    window_s : float
        Quiet period after the last fragment before flushing.
    max_updates : int
        Fragment count that forces an immediate flush.
    """

    def __init__(self, handler: UpdateHandler, window_s: float = 1.0, max_updates: int = 15):
        self.handler = handler
        self.window_s = window_s
        self.max_updates = max_updates
        self._entries: dict[str, BufferEntry] = {}
        self._timers: set[asyncio.Task] = set()

    def pending(self, key: str) -> int:
        entry = self._entries.get(key)
        return len(entry.updates) if entry else 0

    @property
    def keys(self) -> list[str]:
        return list(self._entries)

    async def ingest(self, update: Update, key: str | None = None) -> None:
        """Buffer a text fragment, or forward commands and non-text updates at once."""
        text = update_text(update)
        key = key or buffer_key(update)
        if text is None or text.startswith("/") or key is None:
            await self.handler(update)
            return

        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = BufferEntry()
        entry.updates.append(update)
        entry.last_update = time.monotonic()
        logger.debug(f"Buffered fragment {len(entry.updates)} for {key}")

        if len(entry.updates) >= self.max_updates:
            logger.info(f"Buffer cap reached for {key}, flushing {len(entry.updates)} fragments")
            await self.flush(key)
            return

        if entry.timer is not None:
            entry.timer.cancel()
        entry.timer = asyncio.create_task(self._flush_later(key))
        self._timers.add(entry.timer)
        entry.timer.add_done_callback(self._timers.discard)

    async def flush(self, key: str) -> None:
        """Join and forward everything buffered under ``key``."""
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        if entry.timer is not None and entry.timer is not asyncio.current_task():
            entry.timer.cancel()

        first = entry.updates[0]
        try:
            parts = [t for t in (update_text(u) for u in entry.updates) if t]
            joined = join_message_parts(parts)
            if len(entry.updates) > 1:
                logger.info(f"Joined {len(entry.updates)} fragments for {key} ({len(joined)} chars)")
            await self.handler(with_text(first, joined))
        except Exception as e:
            logger.exception(f"Buffered turn failed for {key}, forwarding first fragment: {e}")
            try:
                await self.handler(first)
            except Exception as fallback_error:
                logger.error(f"Fallback forward failed for {key}: {fallback_error}")

    async def close(self) -> None:
        """Cancel all pending timers without forwarding."""
        for key, entry in list(self._entries.items()):
            if entry.timer is not None:
                entry.timer.cancel()
            logger.debug(f"Dropped {len(entry.updates)} buffered fragments for {key}")
        self._entries.clear()

    async def _flush_later(self, key: str) -> None:
        await asyncio.sleep(self.window_s)
        await self.flush(key)
