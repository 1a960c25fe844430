"""BotOrchestrator: one deployment's full message pipeline.

Inbound event → (fragment buffer) → identity → mode routing → agent →
composer → memory.  Every per-turn failure is caught here and answered
with an apology; only initialization errors escape.
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Awaitable, Callable

from loguru import logger

from relaybot.agent.conversation import pattern_prompt
from relaybot.agent.manager import AgentManager
from relaybot.core.channels.base import Identity, IdentityNormalizer, check_allowlist
from relaybot.core.channels.context import (
    ContextAdapter,
    Source,
    TelegramAdapter,
    TurnResult,
    format_reply,
)
from relaybot.core.channels.telegram import TelegramClient, context_from_update
from relaybot.core.config.schema import Config
from relaybot.core.errors import (
    AuthenticationRequiredError,
    InitializationError,
    MalformedChannelIdError,
)
from relaybot.memory.models import AuthRequiredReply, Reply
from relaybot.memory.store import MemoryStore
from relaybot.pipeline.buffer import UpdateBuffer
from relaybot.pipeline.composer import APOLOGY, ProgressReporter, ResponseComposer
from relaybot.pipeline.memory import ConversationMemory
from relaybot.pipeline.pagination import PaginationManager, parse_callback
from relaybot.pipeline.router import InteractionRouter

NOT_READY_REPLY = "I'm sorry, but I'm not ready to process messages yet."
IDLE_REPLY = "⏰ Your session has expired due to inactivity. Please start a new conversation."
MALFORMED_REPLY = "I couldn't identify this chat. Please reopen the app and try again."
UNKNOWN_ACTION_REPLY = "Sorry, I don't recognize that action."
UNKNOWN_COMMAND_REPLY = "Unknown command. Send /help to see what I can do."
HELP_TEXT = (
    "Here is what I can do:\n"
    "/ragmode - answer from the knowledge base (toggle)\n"
    "/quiz - start a quiz game, send 'quit' to stop\n"
    "/clear - forget this conversation\n"
    "/help - show this message"
)

CONFIRMATION_MESSAGES = [
    "🤔 Processing your request, please wait...",
    "⏳ Working on it, just a moment...",
    "🔍 Looking into this for you...",
    "💭 Thinking about your message...",
    "📚 Gathering the information you need...",
    "⚙️ Processing, this won't take long...",
    "🧠 Putting together an answer...",
    "✨ On it! One moment please...",
    "📝 Preparing a response...",
    "🚀 Getting that ready for you...",
]


class BotOrchestrator:
    """Owns the buffers, pagination sets, activity clock and placeholders of one deployment."""

    def __init__(
        self,
        deployment: str,
        config: Config,
        db: MemoryStore,
        agents: AgentManager | None = None,
        telegram: TelegramClient | None = None,
    ):
        self.deployment = deployment
        self.config = config
        self.db = db
        self.agents = agents or AgentManager(config)
        tg = config.channels.telegram
        self.telegram = telegram or (TelegramClient(tg.token, tg.api_base) if tg.token else None)
        self.bot_username = tg.bot_username.lstrip("@")

        self.normalizer = IdentityNormalizer(db, config, deployment)
        self.router = InteractionRouter(self.agents)
        self.pagination = PaginationManager(config.pagination_expiry_s, config.pagination_cooldown_s)
        self.composer = ResponseComposer(self.agents, self.pagination)
        self.memory = ConversationMemory(
            db, self.agents, config.memory.chunk_size, config.bot.history_limit
        )
        self.buffer = UpdateBuffer(
            self._process_update, config.buffer_window_s, config.buffer.max_updates
        )

        self._commands: dict[str, Callable[[ContextAdapter, Identity, str], Awaitable[TurnResult]]] = {
            "start": self._cmd_start,
            "help": self._cmd_help,
            "ragmode": self._cmd_ragmode,
            "quiz": self._cmd_quiz,
            "clear": self._cmd_clear,
        }
        self._last_activity: dict[str, float] = {}
        self._background: set[asyncio.Task] = set()
        self._init_task: asyncio.Task | None = None
        self.ready = False

    # ════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ════════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Idempotent; concurrent callers await the same in-flight initialization."""
        if self.ready:
            return
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._initialize())
        try:
            await self._init_task
        except Exception as e:
            self._init_task = None
            raise InitializationError(f"Bot {self.deployment} failed to initialize: {e}") from e

    async def _initialize(self) -> None:
        await self.agents.initialize()
        self.pagination.start()
        if self.telegram is not None and not self.bot_username:
            me = await self.telegram.get_me()
            if me:
                self.bot_username = me.get("username", "")
        self.ready = True
        logger.info(f"Bot {self.deployment} initialized (telegram={'on' if self.telegram else 'off'})")

    async def stop(self) -> None:
        await self.buffer.close()
        self.pagination.stop()
        for task in list(self._background):
            task.cancel()
        self._background.clear()
        self.ready = False
        logger.info(f"Bot {self.deployment} stopped")

    # ════════════════════════════════════════════════════════════
    # ENTRY POINTS
    # ════════════════════════════════════════════════════════════

    async def handle_telegram_update(self, update: dict[str, Any]) -> None:
        """Webhook entry: callbacks run now, messages go through the fragment buffer."""
        if self.telegram is None:
            logger.warning(f"Telegram update for {self.deployment} ignored: no bot token")
            return
        if "callback_query" in update:
            context = context_from_update(update)
            if context is not None:
                await self.handle_callback(TelegramAdapter(context, self.telegram))
            return
        if self.config.buffer.enabled:
            await self.buffer.ingest(update)
        else:
            await self._process_update(update)

    async def _process_update(self, update: dict[str, Any]) -> None:
        context = context_from_update(update)
        if context is None or self.telegram is None:
            return
        await self.handle_message(TelegramAdapter(context, self.telegram))

    async def handle_request(self, adapter: ContextAdapter) -> Reply:
        """API / webapp entry: run the turn and shape the caller-facing reply."""
        try:
            result = await self.handle_message(adapter)
        except AuthenticationRequiredError as e:
            logger.info(f"Authentication required: {e.user_id}")
            return AuthRequiredReply(chat_id=adapter.context.chat_id)
        token_stats = None
        if adapter.source is Source.WEBAPP and result.user_id:
            token_stats = self.db.get_token_stats(result.user_id)
        return format_reply(adapter, result, token_stats)

    # ════════════════════════════════════════════════════════════
    # MESSAGES
    # ════════════════════════════════════════════════════════════

    async def handle_message(self, adapter: ContextAdapter) -> TurnResult:
        context = adapter.context
        if not self.ready:
            await self._safe_send(adapter, NOT_READY_REPLY)
            return TurnResult(text=NOT_READY_REPLY)
        if context.is_bot or not context.input:
            return TurnResult()
        if context.source is Source.TELEGRAM and not check_allowlist(
            self.config.channels, "telegram", context.user_id
        ):
            logger.warning(f"Telegram sender {context.user_id} not in allowlist")
            return TurnResult()

        try:
            identity = self.normalizer.normalize(context)
        except MalformedChannelIdError as e:
            logger.warning(str(e))
            self._last_activity.pop(context.user_id, None)
            await self.pagination.purge_chat(context.chat_key)
            await self._safe_send(adapter, MALFORMED_REPLY)
            return TurnResult(text=MALFORMED_REPLY)
        except AuthenticationRequiredError:
            raise
        except Exception as e:
            logger.exception(f"Identity resolution failed for {context.user_id}: {e}")
            await self._safe_send(adapter, APOLOGY)
            return TurnResult(text=APOLOGY)

        base = {"user_id": identity.user_id, "session_id": identity.session_id}
        if self._expired(identity.user_id):
            await self._safe_send(adapter, IDLE_REPLY)
            return TurnResult(text=IDLE_REPLY, **base)

        if context.is_command:
            return await self._run_command(adapter, identity)
        if not self._addressed_to_bot(adapter, identity):
            return TurnResult(**base)
        if self.router.is_rag_confirmation(identity.user_id, context.input):
            reply = await self.router.handle_rag_confirmation(adapter, identity.user_id, context.input)
            return TurnResult(text=reply, mode="rag", **base)
        return await self._run_turn(adapter, identity, self._strip_mention(context.input))

    async def _run_turn(
        self, adapter: ContextAdapter, identity: Identity, text: str, is_follow_up: bool = False
    ) -> TurnResult:
        placeholder_id: int | None = None
        try:
            if adapter.interactive:
                await adapter.send_typing()
                sent = await adapter.send(random.choice(CONFIRMATION_MESSAGES))
                placeholder_id = sent.message_id
            progress = ProgressReporter(adapter, placeholder_id)

            history = self.memory.history(identity)
            mode, response = await self.router.route(adapter, text, history, identity.user_id)
            message_id = await self.composer.deliver(adapter, response, identity, progress)
            self.memory.commit(
                identity, adapter.context, text, response, message_id, is_follow_up, mode.value
            )
            return TurnResult(
                text=response.text,
                message_id=message_id,
                mode=mode.value,
                user_id=identity.user_id,
                session_id=identity.session_id,
                response=response,
            )
        except Exception as e:
            logger.exception(f"Turn failed for {identity.user_id}: {e}")
            await self._safe_send(adapter, APOLOGY)
            return TurnResult(text=APOLOGY, user_id=identity.user_id, session_id=identity.session_id)
        finally:
            if placeholder_id is not None:
                self._spawn(self._delete_later(adapter, placeholder_id))

    # ════════════════════════════════════════════════════════════
    # CALLBACKS (inline buttons)
    # ════════════════════════════════════════════════════════════

    async def handle_callback(self, adapter: ContextAdapter) -> TurnResult | None:
        context = adapter.context
        if not self.ready:
            await adapter.answer_interaction(NOT_READY_REPLY)
            return None
        data = context.callback_data or ""
        try:
            parsed = parse_callback(data)
            if parsed is not None:
                kind, action, set_id = parsed
                outcome = await self.pagination.handle(adapter, kind, action, set_id, context.chat_key)
                if outcome.selected:
                    identity = self.normalizer.normalize(context)
                    return await self._run_turn(adapter, identity, outcome.selected, is_follow_up=True)
                return None

            identity = self.normalizer.normalize(context)
            self._touch(identity.user_id)
            if data == "toggle_rag":
                enabled = self.agents.toggle_rag(identity.user_id)
                await adapter.answer_interaction(f"RAG mode {'enabled' if enabled else 'disabled'}.")
                return None
            if data.startswith("game:"):
                await adapter.answer_interaction()
                if not self.agents.is_game_active(identity.user_id):
                    await adapter.send("This game has already ended. Send /quiz to start a new one.")
                    return None
                choice = data.split(":", 1)[1]
                return await self._run_turn(adapter, identity, "quit" if choice == "quit" else choice)
            if data.startswith("pattern:"):
                prompt = pattern_prompt(data.split(":", 1)[1])
                await adapter.answer_interaction()
                if prompt:
                    return await self._run_turn(adapter, identity, prompt, is_follow_up=True)
                return None

            await adapter.answer_interaction(UNKNOWN_ACTION_REPLY)
        except Exception as e:
            logger.exception(f"Callback {data!r} failed: {e}")
            await self._safe_answer(adapter, APOLOGY)
        return None

    # ════════════════════════════════════════════════════════════
    # COMMANDS
    # ════════════════════════════════════════════════════════════

    async def _run_command(self, adapter: ContextAdapter, identity: Identity) -> TurnResult:
        word, _, args = adapter.context.input[1:].partition(" ")
        name = word.split("@", 1)[0].lower()
        handler = self._commands.get(name)
        try:
            if handler is None:
                await adapter.send(UNKNOWN_COMMAND_REPLY)
                return TurnResult(text=UNKNOWN_COMMAND_REPLY, user_id=identity.user_id, session_id=identity.session_id)
            return await handler(adapter, identity, args.strip())
        except Exception as e:
            logger.exception(f"Command /{name} failed: {e}")
            await self._safe_send(adapter, APOLOGY)
            return TurnResult(text=APOLOGY, user_id=identity.user_id, session_id=identity.session_id)

    async def _reply(self, adapter: ContextAdapter, identity: Identity, text: str) -> TurnResult:
        sent = await adapter.send(text)
        return TurnResult(
            text=text, message_id=sent.message_id, user_id=identity.user_id, session_id=identity.session_id
        )

    async def _cmd_start(self, adapter, identity, args):
        return await self._reply(adapter, identity, self.config.bot.welcome_message)

    async def _cmd_help(self, adapter, identity, args):
        return await self._reply(adapter, identity, HELP_TEXT)

    async def _cmd_ragmode(self, adapter, identity, args):
        wanted = {"on": True, "off": False}.get(args.lower())
        enabled = self.agents.toggle_rag(identity.user_id, wanted)
        if enabled:
            text = "📚 RAG mode enabled. I'll answer from the knowledge base and show my sources."
        else:
            text = "RAG mode disabled. Back to normal conversation."
        return await self._reply(adapter, identity, text)

    async def _cmd_quiz(self, adapter, identity, args):
        self.agents.initialize_game(identity.user_id)
        return await self._run_turn(adapter, identity, args or "Let's start the quiz!")

    async def _cmd_clear(self, adapter, identity, args):
        removed = self.memory.clear(identity)
        logger.info(f"Cleared {removed} memory entries for {identity.session_id}")
        return await self._reply(adapter, identity, "🧹 Conversation history cleared.")

    # ════════════════════════════════════════════════════════════
    # HELPERS
    # ════════════════════════════════════════════════════════════

    def _expired(self, user_id: str) -> bool:
        """True when the user was idle past the timeout. Always refreshes the activity clock."""
        timeout = self.config.bot.idle_timeout_s
        now = time.monotonic()
        last = self._last_activity.get(user_id)
        self._last_activity[user_id] = now
        return bool(timeout and last is not None and now - last > timeout)

    def _touch(self, user_id: str) -> None:
        self._last_activity[user_id] = time.monotonic()

    def _addressed_to_bot(self, adapter: ContextAdapter, identity: Identity) -> bool:
        context = adapter.context
        if context.is_private:
            return True
        # RAG mode users are answered in groups without a mention
        if self.agents.is_rag_enabled(identity.user_id):
            return True
        if context.reply_to is not None and context.reply_to.from_is_bot:
            return True
        return bool(self.bot_username) and f"@{self.bot_username}".lower() in context.input.lower()

    def _strip_mention(self, text: str) -> str:
        if not self.bot_username:
            return text
        return text.replace(f"@{self.bot_username}", "").strip() or text

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _delete_later(self, adapter: ContextAdapter, message_id: int) -> None:
        await asyncio.sleep(self.config.bot.confirmation_lifetime_s)
        try:
            await adapter.delete(message_id)
        except Exception as e:
            logger.warning(f"Could not delete placeholder {message_id}: {e}")

    @staticmethod
    async def _safe_send(adapter: ContextAdapter, text: str) -> None:
        try:
            await adapter.send(text)
        except Exception as e:
            logger.error(f"Could not send reply: {e}")

    @staticmethod
    async def _safe_answer(adapter: ContextAdapter, text: str) -> None:
        try:
            await adapter.answer_interaction(text)
        except Exception as e:
            logger.error(f"Could not answer interaction: {e}")
