"""Exception hierarchy shared by channels, pipeline and API."""

from __future__ import annotations


class RelayBotError(Exception):
    """Base class for all relaybot errors."""


class MalformedChannelIdError(RelayBotError, ValueError):
    """A delegated (webapp) chat id does not follow ``webapp|<user>|<name>|<session>``."""

    def __init__(self, chat_id: str):
        super().__init__(f"Malformed webapp chat id: {chat_id!r}")
        self.chat_id = chat_id


class AuthenticationRequiredError(RelayBotError):
    """Neither a valid access token nor a usable refresh token exists for the user."""

    def __init__(self, user_id: str):
        super().__init__(f"Authentication required for {user_id}")
        self.user_id = user_id


class NotReadyError(RelayBotError):
    """The orchestrator received a turn before initialization finished."""


class InitializationError(RelayBotError):
    """A bot instance failed to initialize; the registry evicts it."""
