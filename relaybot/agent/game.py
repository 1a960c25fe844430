"""Quiz game agent: multiple-choice questions with a 15-step ladder."""

from __future__ import annotations

import re

from loguru import logger

from relaybot.agent.base import BaseAgent
from relaybot.agent.models import EnhancedResponse, GameMetadata, GameState

MAX_LEVEL = 15
QUIT_WORDS = frozenset({"stop", "quit", "exit", "/quit"})

_OPTION_LINE = re.compile(r"^\s*([A-D])[\).:]\s*(.+?)\s*$", re.MULTILINE)


def game_keyboard(state: GameState) -> dict | None:
    """Answer buttons for the current question (callback data ``game:<choice>``)."""
    if not state.is_active:
        return None
    letters = [opt[0] for opt in state.options] or ["A", "B", "C", "D"]
    return {
        "inline_keyboard": [
            [{"text": letter, "callback_data": f"game:{letter}"} for letter in letters],
            [{"text": "🏳️ Quit game", "callback_data": "game:quit"}],
        ]
    }


class GameAgent(BaseAgent):
    """Owns per-user quiz state. ``is_active`` is what routes a user into game mode."""

    name = "game"

    def __init__(self, config):
        super().__init__(config)
        self._states: dict[str, GameState] = {}

    def get_state(self, user_id: str) -> GameState | None:
        return self._states.get(user_id)

    def initialize(self, user_id: str) -> GameState:
        state = GameState(is_active=True, phase="asking", level=1)
        self._states[user_id] = state
        logger.info(f"Quiz started for {user_id}")
        return state

    def end(self, user_id: str) -> GameState | None:
        state = self._states.get(user_id)
        if state is None:
            return None
        ended = state.model_copy(update={"is_active": False, "phase": "finished", "options": []})
        self._states[user_id] = ended
        logger.info(f"Quiz ended for {user_id} at level {ended.level}, score {ended.score}")
        return ended

    async def generate(self, input, history, user_id, adapter=None) -> EnhancedResponse:
        state = self._states.get(user_id) or self.initialize(user_id)

        if input.strip().lower() in QUIT_WORDS:
            ended = self.end(user_id) or state
            return self._envelope(f"🏁 Game over! You reached level {ended.level} with {ended.score} correct answers.", ended)

        prompt = (
            f"{self.config.bot.game_system_prompt}\n\n"
            f"Current level: {state.level} of {MAX_LEVEL}. Score: {state.score}.\n"
            "When judging an answer, start your reply with CORRECT or WRONG. "
            "List options on their own lines as 'A) ...'."
        )
        if state.current_question:
            prompt += f"\n\nThe question being answered:\n{state.current_question}"

        message = await self._complete(prompt, history, input)
        text = str(message.content)

        verdict = text.lstrip().upper()
        score, level = state.score, state.level
        if state.current_question and verdict.startswith("CORRECT"):
            score += 1
            level += 1

        if level > MAX_LEVEL:
            self._states[user_id] = state.model_copy(update={"score": score, "level": MAX_LEVEL})
            ended = self.end(user_id)
            return self._envelope(f"{text}\n\n🏆 You climbed all {MAX_LEVEL} levels!", ended, self._usage(message))

        options = [f"{m.group(1)}) {m.group(2)}" for m in _OPTION_LINE.finditer(text)]
        updated = state.model_copy(
            update={
                "score": score,
                "level": level,
                "current_question": text if options else state.current_question,
                "options": options or state.options,
                "response_already_sent": False,
                "last_message_id": None,
            }
        )
        self._states[user_id] = updated
        return self._envelope(text, updated, self._usage(message))

    def _envelope(self, text: str, state: GameState, usage: int = 0) -> EnhancedResponse:
        return EnhancedResponse.from_text(
            text,
            game_metadata=GameMetadata(game_state=state, keyboard=game_keyboard(state)),
            token_usage=usage,
        )
