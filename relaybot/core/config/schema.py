"""RelayBot configuration schema: YAML + Pydantic + env override."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# ════════════════════════════════════════════════════════════
# SECTIONS
# ════════════════════════════════════════════════════════════


class ProviderConfig(BaseModel):
    api_key: str = ""
    api_base: str | None = None


class ProvidersConfig(BaseModel):
    """Credentials per LiteLLM provider prefix (providers.*)."""

    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)
    deepseek: ProviderConfig = Field(default_factory=ProviderConfig)
    groq: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)

    def configured(self) -> dict[str, ProviderConfig]:
        """Providers that carry an API key, in declaration order."""
        return {
            name: getattr(self, name)
            for name in type(self).model_fields
            if getattr(self, name).api_key
        }


# Model-name fragments that identify a provider when the model has no prefix
MODEL_ALIASES = {"claude": "anthropic", "gpt": "openai"}
OPENROUTER_BASE = "https://openrouter.ai/api/v1"


class BotConfig(BaseModel):
    """Bot behaviour (bot.*)."""

    name: str = "RelayBot"
    model: str = "anthropic/claude-sonnet-4-5-20250929"
    temperature: float = 0.7
    max_tokens: int = 2048
    system_prompt: str = "You are a helpful assistant. Answer concisely."
    rag_system_prompt: str = (
        "Answer using only the numbered sources below. "
        "End with up to three follow-up questions, one per line, each prefixed with 'Q:'."
    )
    game_system_prompt: str = (
        "You are the host of a multiple-choice quiz. Ask one question at a time "
        "with options A, B, C and D. When the player answers, say whether it was "
        "correct, then ask the next question."
    )
    welcome_message: str = "Hi! Send me a message to start chatting."
    idle_timeout_s: int = 0  # 0 = never expire
    confirmation_lifetime_s: float = 3.0
    default_token_quota: int = 25_000
    history_limit: int = 50


class BufferConfig(BaseModel):
    """Fragment joining window (buffer.*)."""

    enabled: bool = True
    window_ms: int = 1000
    max_updates: int = 15


class PaginationConfig(BaseModel):
    """Citation / follow-up question browsing (pagination.*)."""

    expiry_hours: float = 48.0
    cooldown_ms: int = 500


class MemoryConfig(BaseModel):
    chunk_size: int = 1000


# Channels
class TelegramChannelConfig(BaseModel):
    enabled: bool = False
    token: str = ""
    bot_username: str = ""
    api_base: str = "https://api.telegram.org"
    allow_from: list[str] = Field(default_factory=list)


class WebappChannelConfig(BaseModel):
    enabled: bool = True
    require_auth: bool = True


class ApiChannelConfig(BaseModel):
    enabled: bool = True
    allow_from: list[str] = Field(default_factory=list)


class ChannelsConfig(BaseModel):
    telegram: TelegramChannelConfig = Field(default_factory=TelegramChannelConfig)
    webapp: WebappChannelConfig = Field(default_factory=WebappChannelConfig)
    api: ApiChannelConfig = Field(default_factory=ApiChannelConfig)


# RAG
class RagConfig(BaseModel):
    """Knowledge base for RAG mode: a JSON list of documents (rag.*)."""

    embedding_model: str = "intfloat/multilingual-e5-small"
    data_source: str = "./data/documents.json"
    index_path: str = "./data/faiss_index"
    id_field: str = "id"
    title_field: str = "title"
    author_field: str = "author"
    file_field: str = "file_name"
    content_field: str = "content"
    passage_chars: int = 1200
    top_k: int = 4
    min_relevance: float = 0.0


# Auth
class RateLimitConfig(BaseModel):
    enabled: bool = True
    requests_per_minute: int = 60
    burst: int = 10


class AuthConfig(BaseModel):
    """Webapp token auth & API security. Empty jwt_secret_key = webapp auth disabled."""

    jwt_secret_key: str = ""
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 1440  # 24 hours
    refresh_token_expire_days: int = 30
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)


# Database
class DatabaseConfig(BaseModel):
    path: str = "data/relaybot.db"


# ════════════════════════════════════════════════════════════
# ROOT
# ════════════════════════════════════════════════════════════


class Config(BaseSettings):
    """
    Root configuration.

    Sources, strongest first: environment, .env, YAML (passed as kwargs), defaults.

    Env override examples:
        RELAYBOT_BOT__MODEL=openai/gpt-4o
        RELAYBOT_BUFFER__WINDOW_MS=1500
        RELAYBOT_CHANNELS__TELEGRAM__TOKEN=123:abc
    """

    model_config = SettingsConfigDict(
        env_prefix="RELAYBOT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings
    ):
        # YAML arrives as init kwargs and must lose to the environment
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    bot: BotConfig = Field(default_factory=BotConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    buffer: BufferConfig = Field(default_factory=BufferConfig)
    pagination: PaginationConfig = Field(default_factory=PaginationConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    rag: RagConfig | None = None
    auth: AuthConfig = Field(default_factory=AuthConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # ── Computed properties ─────────────────────────────────

    @property
    def auth_enabled(self) -> bool:
        """True when JWT secret is set (webapp token checks active)."""
        return bool(self.auth.jwt_secret_key)

    @property
    def db_path(self) -> Path:
        return Path(self.database.path)

    @property
    def buffer_window_s(self) -> float:
        return self.buffer.window_ms / 1000

    @property
    def pagination_expiry_s(self) -> float:
        return self.pagination.expiry_hours * 3600

    @property
    def pagination_cooldown_s(self) -> float:
        return self.pagination.cooldown_ms / 1000

    # ── Provider helpers ────────────────────────────────────

    def provider_for(self, model: str | None = None) -> str | None:
        """Provider name for a model string such as ``openai/gpt-4o`` or ``claude-3``."""
        model_name = (model or self.bot.model).lower()
        prefix = model_name.split("/", 1)[0]
        if prefix in ProvidersConfig.model_fields:
            return prefix
        for fragment, provider in MODEL_ALIASES.items():
            if fragment in model_name:
                return provider
        return None

    def get_api_key(self, model: str | None = None) -> str | None:
        """Key of the model's provider, else the first configured key."""
        configured = self.providers.configured()
        provider = self.provider_for(model)
        if provider in configured:
            return configured[provider].api_key
        return next((p.api_key for p in configured.values()), None)

    def get_api_base(self, model: str | None = None) -> str | None:
        provider = self.provider_for(model)
        if provider is None:
            return None
        base = getattr(self.providers, provider).api_base
        if provider == "openrouter":
            return base or OPENROUTER_BASE
        return base
