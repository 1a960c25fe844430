"""Channel base: cross-channel identity, session derivation and access control."""

from __future__ import annotations

from typing import NamedTuple

from loguru import logger
from pydantic import BaseModel, ConfigDict

from relaybot.core.channels.context import MessageContext, Source
from relaybot.core.config.schema import ChannelsConfig, Config
from relaybot.core.errors import AuthenticationRequiredError, MalformedChannelIdError
from relaybot.memory.store import MemoryStore

PLATFORM_PREFIX = "tg_"
API_PREFIX = "api_"
_LEGACY_PLATFORM_PREFIXES = ("telegram_",)
WEBAPP_TAG = "webapp"


class Identity(BaseModel):
    """Canonical (user, session) pair for one turn."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    session_id: str
    source: Source
    raw_user_id: str
    chat_id: str
    display_name: str | None = None


class WebappChatId(NamedTuple):
    user_id: str
    display_name: str
    session_id: str


def normalize_user_id(source: Source, raw_id: str) -> str:
    """Tag a raw id with its identity namespace. Idempotent.

    Telegram and webapp share the platform namespace, since the webapp
    carries a delegated Telegram identity.
    """
    raw_id = str(raw_id).strip()
    if source is Source.API:
        return raw_id if raw_id.startswith(API_PREFIX) else f"{API_PREFIX}{raw_id}"

    if raw_id.startswith(PLATFORM_PREFIX):
        return raw_id
    for legacy in _LEGACY_PLATFORM_PREFIXES:
        if raw_id.startswith(legacy):
            return f"{PLATFORM_PREFIX}{raw_id[len(legacy):]}"
    return f"{PLATFORM_PREFIX}{raw_id}"


def parse_webapp_chat_id(chat_id: str) -> WebappChatId:
    """Split ``webapp|<userId>|<displayName>|<sessionId>``.

    Raises
    ------
    MalformedChannelIdError
        Wrong tag, fewer than four parts, or an empty user id.
    """
    parts = chat_id.split("|")
    if len(parts) < 4 or parts[0] != WEBAPP_TAG or not parts[1]:
        raise MalformedChannelIdError(chat_id)
    # Display names may themselves contain "|"; the session id is always last.
    return WebappChatId(parts[1], "|".join(parts[2:-1]), parts[-1])


def session_suffix(deployment: str) -> str:
    return deployment[-6:]


def check_allowlist(channels_config: ChannelsConfig, channel: str, sender_id: str) -> bool:
    """An empty ``allow_from`` admits everyone; unknown channels admit no one."""
    section = getattr(channels_config, channel, None)
    if section is None:
        return False
    allowed = getattr(section, "allow_from", None) or []
    return not allowed or sender_id in allowed


class IdentityNormalizer:
    """Derives the canonical identity of a turn and makes sure its records exist."""

    def __init__(self, db: MemoryStore, config: Config, deployment: str):
        self.db = db
        self.config = config
        self.deployment = deployment

    def normalize(self, context: MessageContext) -> Identity:
        if context.source is Source.TELEGRAM:
            identity = self._telegram(context)
        elif context.source is Source.WEBAPP:
            identity = self._webapp(context)
        else:
            identity = self._api(context)
        self._ensure_records(identity)
        return identity

    # ── Per-source derivation ───────────────────────────────

    def _telegram(self, context: MessageContext) -> Identity:
        user_id = normalize_user_id(Source.TELEGRAM, context.user_id)
        return Identity(
            user_id=user_id,
            session_id=self._telegram_session(user_id, context.chat_id, context.is_private),
            source=Source.TELEGRAM,
            raw_user_id=context.user_id,
            chat_id=context.chat_id,
            display_name=context.first_name or context.username,
        )

    def _webapp(self, context: MessageContext) -> Identity:
        parsed = parse_webapp_chat_id(context.chat_id)
        user_id = normalize_user_id(Source.WEBAPP, parsed.user_id)
        self._check_webapp_auth(user_id)
        return Identity(
            user_id=user_id,
            # Same session as the user's private Telegram chat so history carries over
            session_id=self._telegram_session(user_id, parsed.user_id, True),
            source=Source.WEBAPP,
            raw_user_id=parsed.user_id,
            chat_id=context.chat_id,
            display_name=parsed.display_name or None,
        )

    def _api(self, context: MessageContext) -> Identity:
        raw = context.user_id or self.deployment
        user_id = normalize_user_id(Source.API, raw)
        session_id = context.session_hint or f"api-{user_id}_cf-{session_suffix(self.deployment)}"
        return Identity(
            user_id=user_id,
            session_id=session_id,
            source=Source.API,
            raw_user_id=raw,
            chat_id=context.chat_id or user_id,
        )

    def _telegram_session(self, user_id: str, chat_id: str, private: bool) -> str:
        suffix = session_suffix(self.deployment)
        if private:
            return f"telegram-private-{user_id}_cf-{suffix}"
        return f"user-{user_id}:telegram-group-{chat_id}_cf-{suffix}"

    # ── Side effects ────────────────────────────────────────

    def _check_webapp_auth(self, user_id: str) -> None:
        if not (self.config.auth_enabled and self.config.channels.webapp.require_auth):
            return
        if self.db.has_valid_auth_token(user_id):
            return

        from relaybot.api.auth import refresh_access_token

        if refresh_access_token(self.db, self.config, user_id):
            logger.info(f"Webapp access token refreshed for {user_id}")
            return
        raise AuthenticationRequiredError(user_id)

    def _ensure_records(self, identity: Identity) -> None:
        self.db.get_or_create_user(
            identity.user_id, name=identity.display_name, source=identity.source.value
        )
        metadata = {"deployment": self.deployment}
        if identity.source is Source.WEBAPP:
            metadata["webapp_session_id"] = parse_webapp_chat_id(identity.chat_id).session_id
        self.db.get_or_create_session(
            identity.session_id,
            identity.user_id,
            channel=identity.source.value,
            chat_id=identity.chat_id,
            metadata=metadata,
        )

        # Verification read: recreate anything that vanished in between
        if not self.db.user_exists(identity.user_id):
            logger.warning(f"User {identity.user_id} missing after creation, recreating")
            self.db.get_or_create_user(identity.user_id, name=identity.display_name)
        if self.db.get_session(identity.session_id) is None:
            logger.warning(f"Session {identity.session_id} missing after creation, recreating")
            self.db.get_or_create_session(
                identity.session_id, identity.user_id, channel=identity.source.value
            )
