"""Channel handlers: context adapters, identity and the Telegram webhook."""

from relaybot.core.channels.base import Identity, IdentityNormalizer, check_allowlist
from relaybot.core.channels.context import ContextAdapter, MessageContext, Source

__all__ = [
    "ContextAdapter",
    "Identity",
    "IdentityNormalizer",
    "MessageContext",
    "Source",
    "check_allowlist",
]
