"""Tests for relaybot.pipeline.orchestrator (end-to-end turns with mocked agents)."""

import asyncio
import itertools
import time
from unittest.mock import AsyncMock, patch

import pytest
from langchain_core.messages import AIMessage

from relaybot.agent.base import BaseAgent
from relaybot.agent.game import GameAgent
from relaybot.agent.manager import AgentManager
from relaybot.agent.models import EnhancedResponse, SourceCitation
from relaybot.core.channels.context import (
    ApiAdapter,
    MessageContext,
    Source,
    TelegramAdapter,
    WebappAdapter,
    api_context,
    webapp_context,
)
from relaybot.core.config import Config
from relaybot.core.errors import InitializationError
from relaybot.memory.models import ApiReply, AuthRequiredReply, WebappReply
from relaybot.memory.store import MemoryStore
from relaybot.pipeline.composer import APOLOGY
from relaybot.pipeline.orchestrator import (
    CONFIRMATION_MESSAGES,
    IDLE_REPLY,
    MALFORMED_REPLY,
    NOT_READY_REPLY,
    UNKNOWN_ACTION_REPLY,
    UNKNOWN_COMMAND_REPLY,
    BotOrchestrator,
)
from relaybot.pipeline.router import RAG_DISABLED_REPLY

DEPLOYMENT = "flow-abc123"


class ScriptedAgent(BaseAgent):
    def __init__(self, config, name, response=None):
        super().__init__(config)
        self.name = name
        self.response = response or EnhancedResponse.from_text(f"{name} answer")
        self.calls = []
        self.histories = []

    async def generate(self, input, history, user_id, adapter=None):
        self.calls.append(input)
        self.histories.append(history)
        return self.response


RAG_RESPONSE = EnhancedResponse.from_text(
    "From the docs.",
    source_citations=[SourceCitation(title="Guide", content="Step one."), SourceCitation(title="FAQ")],
    follow_up_questions=["What about step two?", "Is there a video?"],
)


@pytest.fixture
def config():
    return Config(
        bot={"confirmation_lifetime_s": 0.01, "welcome_message": "Welcome!"},
        buffer={"window_ms": 50},
        pagination={"cooldown_ms": 0},
        channels={"telegram": {"token": "123:abc", "bot_username": "relay_bot"}},
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(str(tmp_path / "test.db"))


@pytest.fixture
def telegram():
    client = AsyncMock()
    ids = itertools.count(100)
    client.send_message.side_effect = lambda *a, **kw: next(ids)
    client.edit_message.return_value = True
    client.delete_message.return_value = True
    client.get_me.return_value = {"username": "relay_bot"}
    return client


@pytest.fixture
def agents(config):
    return AgentManager(
        config,
        agents={
            "conversation": ScriptedAgent(config, "conversation"),
            "rag": ScriptedAgent(config, "rag", RAG_RESPONSE),
            "game": GameAgent(config),
        },
    )


@pytest.fixture
async def bot(config, store, agents, telegram):
    orchestrator = BotOrchestrator(DEPLOYMENT, config, store, agents=agents, telegram=telegram)
    await orchestrator.initialize()
    yield orchestrator
    await orchestrator.stop()


def _update(text, message_id=1, chat_id=42, chat_type="private", user_id=42, is_bot=False):
    return {
        "update_id": message_id,
        "message": {
            "message_id": message_id,
            "chat": {"id": chat_id, "type": chat_type},
            "from": {"id": user_id, "first_name": "Ann", "is_bot": is_bot},
            "text": text,
        },
    }


def _callback(data, message_id=500):
    return {
        "update_id": 900,
        "callback_query": {
            "id": "cb1",
            "from": {"id": 42, "first_name": "Ann"},
            "message": {"message_id": message_id, "chat": {"id": 42, "type": "private"}},
            "data": data,
        },
    }


def _tg_adapter(telegram, text, chat_type="private", chat_id="42"):
    ctx = MessageContext(
        source=Source.TELEGRAM, chat_id=chat_id, user_id="42", message_id=1, input=text, chat_type=chat_type
    )
    return TelegramAdapter(ctx, telegram)


def _sent_texts(telegram):
    return [c.args[1] for c in telegram.send_message.await_args_list]


# ── Lifecycle ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_not_ready_reply(config, store, agents):
    orchestrator = BotOrchestrator(DEPLOYMENT, config, store, agents=agents)
    reply = await orchestrator.handle_request(ApiAdapter(api_context("hello", "svc")))
    assert reply.text == NOT_READY_REPLY
    assert agents.agents["conversation"].calls == []


@pytest.mark.asyncio
async def test_concurrent_initialize_runs_once(config, store, agents):
    agents.initialize = AsyncMock()
    orchestrator = BotOrchestrator(DEPLOYMENT, config, store, agents=agents)
    await asyncio.gather(orchestrator.initialize(), orchestrator.initialize(), orchestrator.initialize())
    agents.initialize.assert_awaited_once()
    assert orchestrator.ready
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_initialize_failure_can_retry(config, store, agents):
    agents.initialize = AsyncMock(side_effect=[RuntimeError("no model"), None])
    orchestrator = BotOrchestrator(DEPLOYMENT, config, store, agents=agents)
    with pytest.raises(InitializationError):
        await orchestrator.initialize()
    assert not orchestrator.ready

    await orchestrator.initialize()
    assert orchestrator.ready
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_bot_username_from_get_me(store, agents, telegram):
    config = Config(channels={"telegram": {"token": "123:abc"}})
    orchestrator = BotOrchestrator(DEPLOYMENT, config, store, agents=agents, telegram=telegram)
    await orchestrator.initialize()
    assert orchestrator.bot_username == "relay_bot"
    await orchestrator.stop()


# ── API turns ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_api_turn(bot, agents, store):
    reply = await bot.handle_request(ApiAdapter(api_context("hello", "svc")))
    assert isinstance(reply, ApiReply)
    assert reply.text == "conversation answer"
    assert reply.user_id == "api_svc"
    assert reply.session_id == "api-api_svc_cf-abc123"
    assert reply.mode == "plain"

    rows = store.get_messages("api_svc", reply.session_id)
    assert [(r["role"], r["content"]) for r in rows] == [("human", "hello"), ("ai", "conversation answer")]


@pytest.mark.asyncio
async def test_history_carried_between_turns(bot, agents):
    await bot.handle_request(ApiAdapter(api_context("first", "svc")))
    await bot.handle_request(ApiAdapter(api_context("second", "svc")))
    second_history = agents.agents["conversation"].histories[1]
    assert [m.content for m in second_history] == ["first", "conversation answer"]


@pytest.mark.asyncio
async def test_api_rag_turn_returns_structured_extras(bot, agents):
    agents.toggle_rag("api_svc", True)
    reply = await bot.handle_request(ApiAdapter(api_context("how?", "svc")))
    assert reply.mode == "rag"
    assert [c.title for c in reply.source_citations] == ["Guide", "FAQ"]
    assert reply.follow_up_questions == ["What about step two?", "Is there a video?"]
    assert bot.pagination.count == 0


@pytest.mark.asyncio
async def test_rag_yes_disables_rag_mode(bot, agents):
    await bot.handle_request(ApiAdapter(api_context("/ragmode", "svc")))
    assert agents.is_rag_enabled("api_svc")

    reply = await bot.handle_request(ApiAdapter(api_context("yes", "svc")))
    assert reply.text == RAG_DISABLED_REPLY
    assert not agents.is_rag_enabled("api_svc")
    assert agents.agents["rag"].calls == []
    assert agents.agents["conversation"].calls == []


@pytest.mark.asyncio
async def test_idle_timeout(bot, agents):
    bot.config.bot.idle_timeout_s = 60
    bot._last_activity["api_svc"] = time.monotonic() - 120

    reply = await bot.handle_request(ApiAdapter(api_context("hello", "svc")))
    assert reply.text == IDLE_REPLY
    assert agents.agents["conversation"].calls == []

    # The expired turn refreshed the clock
    reply = await bot.handle_request(ApiAdapter(api_context("hello", "svc")))
    assert reply.text == "conversation answer"


@pytest.mark.asyncio
async def test_agent_failure_apologizes(bot, agents):
    agents.agents["conversation"].generate = AsyncMock(side_effect=RuntimeError("llm down"))
    reply = await bot.handle_request(ApiAdapter(api_context("hello", "svc")))
    assert reply.text == APOLOGY


@pytest.mark.asyncio
async def test_unknown_command(bot):
    reply = await bot.handle_request(ApiAdapter(api_context("/dance", "svc")))
    assert reply.text == UNKNOWN_COMMAND_REPLY


@pytest.mark.asyncio
async def test_clear_command(bot, store):
    first = await bot.handle_request(ApiAdapter(api_context("hello", "svc")))
    await bot.handle_request(ApiAdapter(api_context("/clear", "svc")))
    assert store.get_messages("api_svc", first.session_id) == []


# ── Webapp turns ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_webapp_turn_shares_telegram_session(bot, store):
    reply = await bot.handle_request(WebappAdapter(webapp_context("hi", "webapp|42|Ann|w-1")))
    assert isinstance(reply, WebappReply)
    assert reply.session_id == "telegram-private-tg_42_cf-abc123"
    assert reply.question == "hi"
    assert reply.metadata.token_stats is not None
    assert store.get_session(reply.session_id)["metadata"]["webapp_session_id"] == "w-1"


@pytest.mark.asyncio
async def test_webapp_auth_required(bot, agents):
    bot.config.auth.jwt_secret_key = "test-secret"
    reply = await bot.handle_request(WebappAdapter(webapp_context("hi", "webapp|42|Ann|w-1")))
    assert isinstance(reply, AuthRequiredReply)
    assert reply.chat_id == "webapp|42|Ann|w-1"
    assert agents.agents["conversation"].calls == []


@pytest.mark.asyncio
async def test_webapp_malformed_chat_id(bot, agents):
    reply = await bot.handle_request(WebappAdapter(webapp_context("hi", "not-a-webapp-id")))
    assert reply.text == MALFORMED_REPLY
    assert agents.agents["conversation"].calls == []


# ── Telegram turns ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_fragments_become_one_turn(bot, agents, telegram):
    for i, text in enumerate(["Hello...", "...continued...", "...world"], start=1):
        await bot.handle_telegram_update(_update(text, message_id=i))
    await asyncio.sleep(0.3)

    assert agents.agents["conversation"].calls == ["Hello\n\ncontinued\n\nworld"]
    texts = _sent_texts(telegram)
    assert texts[0] in CONFIRMATION_MESSAGES
    assert texts[1] == "conversation answer"
    telegram.send_chat_action.assert_awaited()
    # Placeholder removed after its lifetime
    telegram.delete_message.assert_awaited_with("42", 100)


@pytest.mark.asyncio
async def test_start_command_bypasses_buffer(bot, telegram):
    await bot.handle_telegram_update(_update("/start"))
    assert _sent_texts(telegram) == ["Welcome!"]


@pytest.mark.asyncio
async def test_bot_senders_ignored(bot, agents, telegram):
    await bot.handle_message(
        TelegramAdapter(
            MessageContext(source=Source.TELEGRAM, chat_id="42", user_id="9", input="hi", is_bot=True),
            telegram,
        )
    )
    telegram.send_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_allowlist_blocks_sender(bot, agents, telegram):
    bot.config.channels.telegram.allow_from = ["7"]
    await bot.handle_message(_tg_adapter(telegram, "hello"))
    assert agents.agents["conversation"].calls == []
    telegram.send_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_group_needs_mention(bot, agents, telegram):
    await bot.handle_message(_tg_adapter(telegram, "just chatting", chat_type="group", chat_id="-100"))
    assert agents.agents["conversation"].calls == []

    await bot.handle_message(_tg_adapter(telegram, "@relay_bot what's up", chat_type="group", chat_id="-100"))
    assert agents.agents["conversation"].calls == ["what's up"]

    agents.toggle_rag("tg_42", True)
    await bot.handle_message(_tg_adapter(telegram, "any docs on this?", chat_type="group", chat_id="-100"))
    assert agents.agents["rag"].calls == ["any docs on this?"]


@pytest.mark.asyncio
async def test_rag_turn_opens_pagination_and_follow_up(bot, agents, telegram):
    agents.toggle_rag("tg_42", True)
    await bot.handle_message(_tg_adapter(telegram, "how do I start?"))
    assert bot.pagination.count == 2

    select = next(
        button["callback_data"]
        for call in telegram.send_message.await_args_list
        for row in (call.kwargs.get("reply_markup") or {}).get("inline_keyboard", [])
        for button in row
        if button["callback_data"].startswith("select_question:")
    )
    await bot.handle_telegram_update(_callback(select))
    assert agents.agents["rag"].calls == ["how do I start?", "What about step two?"]


@pytest.mark.asyncio
async def test_toggle_rag_callback(bot, agents, telegram):
    await bot.handle_telegram_update(_callback("toggle_rag"))
    assert agents.is_rag_enabled("tg_42")
    telegram.answer_callback.assert_awaited_with("cb1", "RAG mode enabled.")


@pytest.mark.asyncio
async def test_unknown_callback(bot, telegram):
    await bot.handle_telegram_update(_callback("mystery"))
    telegram.answer_callback.assert_awaited_with("cb1", UNKNOWN_ACTION_REPLY)


@pytest.mark.asyncio
async def test_expired_set_callback(bot, telegram):
    await bot.handle_telegram_update(_callback("next_citation:deadbeef"))
    telegram.answer_callback.assert_awaited_with("cb1", "This citation set is no longer available.")


@pytest.mark.asyncio
async def test_quiz_flow(bot, agents, telegram, store):
    question = "Largest planet?\nA) Mars\nB) Jupiter\nC) Venus\nD) Earth"
    reply = AIMessage(content=question, response_metadata={"usage": {"total_tokens": 5}})
    with patch("relaybot.core.providers.litellm.achat", new_callable=AsyncMock, return_value=reply):
        await bot.handle_telegram_update(_update("/quiz"))
    assert agents.is_game_active("tg_42")
    keyboard = telegram.send_message.await_args.kwargs["reply_markup"]
    assert keyboard["inline_keyboard"][0][1]["callback_data"] == "game:B"

    verdict = AIMessage(content="CORRECT!\n" + question, response_metadata={})
    with patch("relaybot.core.providers.litellm.achat", new_callable=AsyncMock, return_value=verdict):
        await bot.handle_telegram_update(_callback("game:B"))
    assert agents.get_game_state("tg_42").score == 1

    # Quiz turns are not written to conversation memory
    assert store.get_messages("tg_42", "telegram-private-tg_42_cf-abc123") == []
