"""Typer commands: serve the API, chat from a terminal, inspect the store."""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from relaybot import __version__

app = typer.Typer(
    name="relaybot",
    help="Multi-channel conversational front-end (Telegram, webapp, HTTP API).",
    no_args_is_help=True,
)
console = Console()

BOT_PREFIX = "[bold cyan]relaybot:[/bold cyan]"


def _show_version(value: bool) -> None:
    if not value:
        return
    console.print(f"relaybot v{__version__}")
    raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-v", callback=_show_version, is_eager=True),
) -> None:
    """Multi-channel conversational front-end (Telegram, webapp, HTTP API)."""


def _open_store():
    from relaybot.core.config.loader import load_config
    from relaybot.memory.store import MemoryStore

    config = load_config()
    return config, MemoryStore(config.database.path, default_quota=config.bot.default_token_quota)


@app.command()
def run(
    host: str = typer.Option("0.0.0.0", "--host", "-h"),
    port: int = typer.Option(8000, "--port", "-p"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
) -> None:
    """Serve the HTTP API and Telegram webhooks with uvicorn."""
    import uvicorn

    console.print(f"[green]relaybot {__version__} listening on http://{host}:{port}[/green]")
    uvicorn.run("relaybot.api.app:app", host=host, port=port, reload=reload)


@app.command()
def chat(
    message: str | None = typer.Option(None, "--message", "-m", help="Send one message and exit"),
    user: str = typer.Option("cli_user", "--user", "-u", help="Caller id (stored as api_<id>)"),
    deployment: str = typer.Option("cli", "--deployment", "-d"),
) -> None:
    """Talk to a deployment through the API channel. Slash commands behave as on Telegram."""
    from relaybot.core.channels.context import ApiAdapter, api_context
    from relaybot.pipeline.registry import BotRegistry

    config, db = _open_store()
    registry = BotRegistry(config, db)

    async def turn(text: str) -> None:
        orchestrator = await registry.get_or_create(deployment)
        reply = await orchestrator.handle_request(ApiAdapter(api_context(text, user)))
        console.print(f"\n{BOT_PREFIX} {reply.text}\n")

    async def repl() -> None:
        console.print("[bold]Interactive chat.[/bold] Type 'exit' or press Ctrl-D to leave.\n")
        while True:
            try:
                text = console.input("[bold blue]You:[/bold blue] ").strip()
            except (KeyboardInterrupt, EOFError):
                console.print()
                return
            if text.lower() in ("exit", "quit"):
                return
            if text:
                await turn(text)

    async def session() -> None:
        try:
            await (turn(message) if message else repl())
        finally:
            await registry.stop_all()

    asyncio.run(session())


@app.command()
def status() -> None:
    """Print effective configuration and store totals."""
    config, db = _open_store()
    telegram = config.channels.telegram
    telegram_state = "off"
    if telegram.token:
        telegram_state = f"@{telegram.bot_username}" if telegram.bot_username else "on"

    table = Table(title=f"relaybot {__version__}", show_header=False)
    table.add_column(style="cyan")
    table.add_column(style="green")
    rows = {
        "Model": config.bot.model,
        "Database": config.database.path,
        "Telegram": telegram_state,
        "Webapp auth": "on" if config.auth_enabled else "off",
        "RAG source": config.rag.data_source if config.rag else "-",
        "Fragment window": f"{config.buffer.window_ms} ms, max {config.buffer.max_updates}",
    }
    rows.update({table_name.capitalize(): str(n) for table_name, n in db.counts().items()})
    for key, value in rows.items():
        table.add_row(key, value)
    console.print(table)


@app.command()
def user(user_id: str = typer.Argument(help="Canonical id such as tg_12345 or api_alice")) -> None:
    """Token usage and recent sessions of one user."""
    _, db = _open_store()
    if not db.user_exists(user_id):
        console.print(f"[red]No such user: {user_id}[/red]")
        raise typer.Exit(1)

    stats = db.get_token_stats(user_id)
    console.print(
        f"[bold]{user_id}[/bold] ({stats['subscription']})  tokens {stats['used']}/{stats['quota']}, "
        f"{stats['remaining']} remaining, {stats['messages']} messages"
    )
    sessions = Table(title="Recent sessions")
    for column in ("Session", "Channel", "Started", "Last active"):
        sessions.add_column(column)
    for s in db.get_user_sessions(user_id):
        sessions.add_row(s["session_id"], s["channel"], str(s["started_at"]), str(s["last_active"] or "-"))
    console.print(sessions)
