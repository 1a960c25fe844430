"""Core API routes: programmatic chat, webapp chat, health."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from loguru import logger

from relaybot import __version__
from relaybot.api.deps import get_config, get_registry
from relaybot.core.channels.base import check_allowlist
from relaybot.core.channels.context import ApiAdapter, WebappAdapter, api_context, webapp_context
from relaybot.core.config.schema import Config
from relaybot.memory.models import (
    ApiReply,
    AuthRequiredReply,
    ChatRequest,
    HealthResponse,
    WebappChatRequest,
    WebappReply,
)

router = APIRouter()

DEFAULT_DEPLOYMENT = "default"


async def _orchestrator(registry, deployment: str | None):
    try:
        return await registry.get_or_create(deployment or DEFAULT_DEPLOYMENT)
    except Exception as e:
        logger.error(f"Bot {deployment or DEFAULT_DEPLOYMENT} unavailable: {e}")
        raise HTTPException(status_code=503, detail="Bot unavailable")


@router.post("/chat", response_model=ApiReply)
async def chat(
    body: ChatRequest,
    registry=Depends(get_registry),
    config: Config = Depends(get_config),
):
    """Send a message and get the assistant response."""
    if not config.channels.api.enabled:
        raise HTTPException(status_code=404, detail="API channel disabled")
    if body.user_id and not check_allowlist(config.channels, "api", body.user_id):
        raise HTTPException(status_code=403, detail="User not allowed")

    orchestrator = await _orchestrator(registry, body.deployment)
    adapter = ApiAdapter(api_context(body.message, body.user_id or "", body.session_id))
    return await orchestrator.handle_request(adapter)


@router.post("/webapp/chat", response_model=WebappReply | AuthRequiredReply)
async def webapp_chat(
    body: WebappChatRequest,
    registry=Depends(get_registry),
    config: Config = Depends(get_config),
):
    """Webapp turn on behalf of a Telegram user (composite chat id)."""
    if not config.channels.webapp.enabled:
        raise HTTPException(status_code=404, detail="Webapp channel disabled")

    orchestrator = await _orchestrator(registry, body.deployment)
    adapter = WebappAdapter(webapp_context(body.question, body.chat_id, body.message_id))
    reply = await orchestrator.handle_request(adapter)
    if isinstance(reply, AuthRequiredReply):
        return JSONResponse(reply.model_dump(), status_code=401)
    return reply


@router.get("/health", response_model=HealthResponse)
async def health(registry=Depends(get_registry)):
    """Health check."""
    return HealthResponse(status="ok", version=__version__, deployments=len(registry))


@router.get("/deployments")
async def deployments(registry=Depends(get_registry)):
    """Deployments with a live bot instance."""
    return {
        "deployments": [
            {"key": key, "ready": registry.get(key).ready, "open_sets": registry.get(key).pagination.count}
            for key in registry.keys
        ]
    }
