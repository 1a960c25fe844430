"""Tests for relaybot.pipeline.router (mode precedence and RAG confirmation)."""

from unittest.mock import AsyncMock

import pytest

from relaybot.agent.base import BaseAgent
from relaybot.agent.game import GameAgent
from relaybot.agent.manager import AgentManager
from relaybot.agent.models import EnhancedResponse
from relaybot.core.channels.context import ApiAdapter, api_context
from relaybot.core.config import Config
from relaybot.pipeline.router import (
    RAG_DISABLED_REPLY,
    RAG_KEPT_REPLY,
    InteractionRouter,
    Mode,
)


class EchoAgent(BaseAgent):
    def __init__(self, config, name):
        super().__init__(config)
        self.name = name
        self.calls = []

    async def generate(self, input, history, user_id, adapter=None):
        self.calls.append(input)
        return EnhancedResponse.from_text(f"{self.name}: {input}")


@pytest.fixture
def agents():
    config = Config()
    return AgentManager(
        config,
        agents={
            "conversation": EchoAgent(config, "conversation"),
            "rag": EchoAgent(config, "rag"),
            "game": GameAgent(config),
        },
    )


@pytest.fixture
def router(agents):
    return InteractionRouter(agents)


@pytest.fixture
def adapter():
    return ApiAdapter(api_context("hi", "u"))


# ── Mode resolution ─────────────────────────────────────────


def test_plain_by_default(router):
    assert router.resolve_mode("u") is Mode.PLAIN


def test_rag_when_enabled(router, agents):
    agents.toggle_rag("u", True)
    assert router.resolve_mode("u") is Mode.RAG


def test_game_beats_rag(router, agents):
    agents.toggle_rag("u", True)
    agents.initialize_game("u")
    assert router.resolve_mode("u") is Mode.GAME


def test_modes_are_per_user(router, agents):
    agents.toggle_rag("a", True)
    assert router.resolve_mode("b") is Mode.PLAIN


@pytest.mark.asyncio
async def test_route_dispatches_to_agent(router, agents, adapter):
    mode, response = await router.route(adapter, "hello", [], "u")
    assert mode is Mode.PLAIN
    assert response.text == "conversation: hello"

    agents.toggle_rag("u", True)
    mode, response = await router.route(adapter, "hello", [], "u")
    assert mode is Mode.RAG
    assert agents.agents["rag"].calls == ["hello"]


@pytest.mark.asyncio
async def test_route_game_attaches_state(agents, adapter):
    game = agents.agents["game"]
    game.generate = AsyncMock(return_value=EnhancedResponse.from_text("Question?"))
    agents.initialize_game("u")

    mode, response = await InteractionRouter(agents).route(adapter, "go", [], "u")
    assert mode is Mode.GAME
    assert response.game_metadata is not None
    assert response.game_metadata.game_state.is_active
    assert response.game_metadata.keyboard is not None


# ── RAG confirmation ────────────────────────────────────────


@pytest.mark.parametrize("text", ["yes", "No", "  YES "])
def test_confirmation_detected_in_rag_mode(router, agents, text):
    agents.toggle_rag("u", True)
    assert router.is_rag_confirmation("u", text)


def test_confirmation_ignored_outside_rag(router):
    assert not router.is_rag_confirmation("u", "yes")


def test_confirmation_requires_bare_word(router, agents):
    agents.toggle_rag("u", True)
    assert not router.is_rag_confirmation("u", "yes please")


@pytest.mark.asyncio
async def test_yes_disables_rag(router, agents, adapter):
    agents.toggle_rag("u", True)
    reply = await router.handle_rag_confirmation(adapter, "u", "yes")
    assert reply == RAG_DISABLED_REPLY
    assert not agents.is_rag_enabled("u")
    assert adapter.transcript == RAG_DISABLED_REPLY


@pytest.mark.asyncio
async def test_no_keeps_rag(router, agents, adapter):
    agents.toggle_rag("u", True)
    reply = await router.handle_rag_confirmation(adapter, "u", "no")
    assert reply == RAG_KEPT_REPLY
    assert agents.is_rag_enabled("u")
