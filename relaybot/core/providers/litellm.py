"""LLM access through LiteLLM, speaking LangChain message types on both sides."""

from __future__ import annotations

import os
from typing import Any

import litellm
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from loguru import logger

from relaybot.core.config.schema import Config

litellm.suppress_debug_info = True

UNAVAILABLE_REPLY = "I couldn't reach the language model right now. Please try again shortly."

_ROLES: dict[type[BaseMessage], str] = {
    HumanMessage: "user",
    AIMessage: "assistant",
    SystemMessage: "system",
}


def setup_provider(config: Config) -> None:
    """Export configured keys as the env vars LiteLLM reads. Existing env wins."""
    configured = config.providers.configured()
    for name, provider in configured.items():
        os.environ.setdefault(f"{name.upper()}_API_KEY", provider.api_key)
    logger.debug(f"LLM providers configured: {sorted(configured)}")


def to_chat_messages(
    system_prompt: str | None, history: list[BaseMessage], user_input: str
) -> list[dict[str, Any]]:
    """Flatten a system prompt, stored history and the new input into chat-completion dicts.

    History entries of other message types (tool calls and the like) are dropped.
    """
    messages = [{"role": "system", "content": system_prompt}] if system_prompt else []
    for message in history:
        role = _ROLES.get(type(message))
        if role:
            messages.append({"role": role, "content": str(message.content)})
    messages.append({"role": "user", "content": user_input})
    return messages


async def achat(
    messages: list[dict[str, Any]],
    model: str,
    temperature: float = 0.7,
    max_tokens: int = 2048,
    api_base: str | None = None,
) -> AIMessage:
    """One chat completion.

    Never raises on provider failure: the reply is then a short apology whose
    ``response_metadata["error"]`` holds the cause, so the turn can still complete.
    """
    options: dict[str, Any] = {"temperature": temperature, "max_tokens": max_tokens}
    if api_base:
        options["api_base"] = api_base
    try:
        completion = await litellm.acompletion(model=model, messages=messages, **options)
    except Exception as e:
        logger.error(f"LiteLLM call to {model} failed: {e}")
        return AIMessage(content=UNAVAILABLE_REPLY, response_metadata={"error": str(e)})

    first = completion.choices[0]
    usage = getattr(completion, "usage", None)
    token_counts = {
        key: getattr(usage, key, 0) or 0
        for key in ("prompt_tokens", "completion_tokens", "total_tokens")
    }
    return AIMessage(
        content=first.message.content or "",
        response_metadata={"finish_reason": first.finish_reason or "stop", "usage": token_counts},
    )
