"""Plain conversation agent."""

from __future__ import annotations

from relaybot.agent.base import BaseAgent
from relaybot.agent.models import EnhancedResponse

# Follow-up actions offered under long answers (callback data ``pattern:<key>``)
PATTERNS: dict[str, tuple[str, str]] = {
    "summarize": ("📝 Summarize", "Summarize your previous answer in a few sentences."),
    "key_points": ("🔑 Key points", "List the key points of your previous answer as short bullets."),
}
PATTERN_MIN_LENGTH = 1200


def pattern_keyboard() -> dict:
    return {
        "inline_keyboard": [
            [{"text": label, "callback_data": f"pattern:{key}"} for key, (label, _) in PATTERNS.items()]
        ]
    }


class ConversationAgent(BaseAgent):
    name = "conversation"

    async def generate(self, input, history, user_id, adapter=None) -> EnhancedResponse:
        message = await self._complete(self.config.bot.system_prompt, history, input)
        text = str(message.content)
        pattern = None
        if adapter is not None and adapter.interactive and len(text) >= PATTERN_MIN_LENGTH:
            pattern = {"keyboard": pattern_keyboard()}
        return EnhancedResponse.from_text(
            text, pattern_metadata=pattern, token_usage=self._usage(message)
        )


def pattern_prompt(key: str) -> str | None:
    entry = PATTERNS.get(key)
    return entry[1] if entry else None

