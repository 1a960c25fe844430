"""Tests for relaybot.api (HTTP surface)."""

import hashlib
import hmac
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from relaybot.agent.base import BaseAgent
from relaybot.agent.manager import AgentManager
from relaybot.agent.models import EnhancedResponse
from relaybot.api.app import create_app
from relaybot.api.auth import decode_token, verify_telegram_login
from relaybot.core.config import Config
from relaybot.memory.models import TelegramAuthRequest
from relaybot.memory.store import MemoryStore
from relaybot.pipeline.orchestrator import BotOrchestrator
from relaybot.pipeline.registry import BotRegistry

BOT_TOKEN = "123:abc"
SECRET = "test-secret"


class FixedAgent(BaseAgent):
    name = "fixed"

    async def generate(self, input, history, user_id, adapter=None):
        return EnhancedResponse.from_text(f"echo: {input}", follow_up_questions=["More?"])


def _build_app(config, tmp_path):
    application = create_app()
    db = MemoryStore(str(tmp_path / "test.db"))

    def factory(key):
        agent = FixedAgent(config)
        agents = AgentManager(config, agents={"conversation": agent, "rag": agent})
        return BotOrchestrator(key, config, db, agents=agents)

    # Override lifespan state manually
    application.state.config = config
    application.state.db = db
    application.state.registry = BotRegistry(config, db, factory=factory)
    return application


@pytest.fixture
def app(tmp_path):
    config = Config(
        channels={"telegram": {"token": BOT_TOKEN, "bot_username": "relay_bot"}},
        database={"path": str(tmp_path / "test.db")},
    )
    return _build_app(config, tmp_path)


@pytest.fixture
def auth_app(tmp_path):
    config = Config(
        channels={"telegram": {"token": BOT_TOKEN, "bot_username": "relay_bot"}},
        auth={"jwt_secret_key": SECRET},
        database={"path": str(tmp_path / "test.db")},
    )
    return _build_app(config, tmp_path)


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    await app.state.registry.stop_all()


@pytest.fixture
async def auth_client(auth_app):
    async with AsyncClient(transport=ASGITransport(app=auth_app), base_url="http://test") as c:
        yield c
    await auth_app.state.registry.stop_all()


def _signed_login(user_id=42, auth_date=None):
    fields = {"id": user_id, "first_name": "Ann", "auth_date": auth_date or int(time.time())}
    data_check = "\n".join(f"{k}={fields[k]}" for k in sorted(fields))
    secret = hashlib.sha256(BOT_TOKEN.encode()).digest()
    fields["hash"] = hmac.new(secret, data_check.encode(), hashlib.sha256).hexdigest()
    return fields


# --- Health ---


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.json()["deployments"] == 0


# --- Chat ---


@pytest.mark.asyncio
async def test_chat(client):
    resp = await client.post("/chat", json={"message": "hello", "user_id": "svc"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["text"] == "echo: hello"
    assert data["user_id"] == "api_svc"
    assert data["follow_up_questions"] == ["More?"]

    resp = await client.get("/deployments")
    assert resp.json()["deployments"][0]["key"] == "default"


@pytest.mark.asyncio
async def test_chat_named_deployment(client, app):
    resp = await client.post("/chat", json={"message": "hi", "user_id": "svc", "deployment": "flow-xyz789"})
    assert resp.json()["session_id"] == "api-api_svc_cf-xyz789"
    assert "flow-xyz789" in app.state.registry


@pytest.mark.asyncio
async def test_chat_allowlist(client, app):
    app.state.config.channels.api.allow_from = ["partner"]
    resp = await client.post("/chat", json={"message": "hi", "user_id": "svc"})
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_chat_bot_unavailable(client, app):
    app.state.registry.get_or_create = AsyncMock(side_effect=RuntimeError("init failed"))
    resp = await client.post("/chat", json={"message": "hi"})
    assert resp.status_code == 503


# --- Webapp ---


@pytest.mark.asyncio
async def test_webapp_chat(client):
    resp = await client.post("/webapp/chat", json={"question": "hi", "chat_id": "webapp|42|Ann|w-1"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["content"] == "echo: hi"
    assert data["session_id"] == "telegram-private-tg_42_cf-efault"
    assert data["metadata"]["source"] == "webapp"


@pytest.mark.asyncio
async def test_webapp_requires_auth(auth_client):
    resp = await auth_client.post("/webapp/chat", json={"question": "hi", "chat_id": "webapp|42|Ann|w-1"})
    assert resp.status_code == 401
    assert resp.json()["require_auth"] is True


@pytest.mark.asyncio
async def test_login_then_webapp_chat(auth_client):
    resp = await auth_client.post("/auth/telegram", json=_signed_login())
    assert resp.status_code == 200
    tokens = resp.json()
    assert tokens["user_id"] == "tg_42"
    assert decode_token(tokens["access_token"], SECRET, "HS256") == "tg_42"

    resp = await auth_client.post("/webapp/chat", json={"question": "hi", "chat_id": "webapp|42|Ann|w-1"})
    assert resp.status_code == 200


# --- Auth ---


def test_verify_telegram_login():
    payload = TelegramAuthRequest(**_signed_login())
    assert verify_telegram_login(payload, BOT_TOKEN)
    assert not verify_telegram_login(payload, "999:other")


def test_verify_telegram_login_too_old():
    payload = TelegramAuthRequest(**_signed_login(auth_date=int(time.time()) - 2 * 86_400))
    assert not verify_telegram_login(payload, BOT_TOKEN)


@pytest.mark.asyncio
async def test_login_bad_signature(auth_client):
    body = {**_signed_login(), "hash": "0" * 64}
    resp = await auth_client.post("/auth/telegram", json=body)
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_login_disabled_without_secret(client):
    resp = await client.post("/auth/telegram", json=_signed_login())
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_refresh_rotates_tokens(auth_client):
    tokens = (await auth_client.post("/auth/telegram", json=_signed_login())).json()
    resp = await auth_client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert resp.status_code == 200
    rotated = resp.json()
    assert rotated["user_id"] == "tg_42"
    assert decode_token(rotated["refresh_token"], SECRET, "HS256", kind="refresh") == "tg_42"


@pytest.mark.asyncio
async def test_refresh_revoked(auth_client, auth_app):
    tokens = (await auth_client.post("/auth/telegram", json=_signed_login())).json()
    auth_app.state.db.revoke_auth_tokens("tg_42")
    resp = await auth_client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_refresh_rejects_access_token(auth_client):
    tokens = (await auth_client.post("/auth/telegram", json=_signed_login())).json()
    resp = await auth_client.post("/auth/refresh", json={"refresh_token": tokens["access_token"]})
    assert resp.status_code == 401


# --- Telegram webhook ---


@pytest.mark.asyncio
async def test_telegram_webhook(client, app):
    orchestrator = MagicMock()
    orchestrator.handle_telegram_update = AsyncMock()
    app.state.registry.get_or_create = AsyncMock(return_value=orchestrator)

    update = {"update_id": 1, "message": {"message_id": 1, "chat": {"id": 42}, "text": "hi"}}
    resp = await client.post("/webhooks/telegram/flow-abc123", json=update)
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    app.state.registry.get_or_create.assert_awaited_once_with("flow-abc123")
    orchestrator.handle_telegram_update.assert_awaited_once_with(update)


@pytest.mark.asyncio
async def test_telegram_webhook_bot_unavailable(client, app):
    app.state.registry.get_or_create = AsyncMock(side_effect=RuntimeError("init failed"))
    resp = await client.post("/webhooks/telegram/flow-abc123", json={"update_id": 1})
    assert resp.status_code == 503


# ── Rate limiting ───────────────────────────────────────────


@pytest.mark.asyncio
async def test_rate_limit(tmp_path):
    config = Config(
        auth={"rate_limit": {"requests_per_minute": 2, "burst": 0}},
        database={"path": str(tmp_path / "test.db")},
    )
    application = _build_app(config, tmp_path)
    async with AsyncClient(transport=ASGITransport(app=application), base_url="http://test") as c:
        codes = [(await c.post("/chat", json={"message": "hi"})).status_code for _ in range(3)]
        health = await c.get("/health")
    await application.state.registry.stop_all()

    assert codes == [200, 200, 429]
    assert health.status_code == 200
