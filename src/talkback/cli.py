"""CLI interface for talkback."""

from __future__ import annotations

import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path

import click

from . import __version__
from .config import (
    DATA_DIR,
    DEFAULT_OWNER_ID,
    DEFAULT_SYSTEM_PROMPT,
    HOST,
    PERSONALITIES,
    PORT,
    RECENT_CONVERSATIONS_LIMIT,
    SQLITE_PATH,
)
from .errors import AuthorizationError, NotFoundError


def _format_ts(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def _open_store():
    from .storage import ConversationStore

    if not SQLITE_PATH.exists():
        raise click.ClickException("No conversations yet. Start the server first: talkback serve")
    return ConversationStore(SQLITE_PATH)


@click.group()
@click.version_option(version=__version__, prog_name="talkback")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """talkback: streamed chat with saved history and a hands-free voice loop."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


@cli.command()
@click.option("--host", default=HOST, show_default=True)
@click.option("--port", default=PORT, show_default=True, type=int)
@click.option(
    "--personality",
    type=click.Choice(sorted(PERSONALITIES)),
    help="Default system prompt for new conversations.",
)
def serve(host: str, port: int, personality: str | None):
    """Start the HTTP chat API."""
    import uvicorn

    from .api import create_app
    from .exchange import ExchangeService
    from .generation import OpenAIChatGenerator
    from .storage import ConversationStore

    app = create_app(
        ExchangeService(
            ConversationStore(SQLITE_PATH),
            OpenAIChatGenerator(),
            default_system_prompt=PERSONALITIES.get(personality, DEFAULT_SYSTEM_PROMPT),
        )
    )
    if not app.state.tokens:
        click.echo("Warning: TALKBACK_API_TOKENS is empty, every request will get 401.", err=True)
    uvicorn.run(app, host=host, port=port)


@cli.command()
def mcp():
    """Start the MCP server (stdio transport)."""
    from .server import mcp as server

    server.run(transport="stdio")


@cli.command("list")
@click.option("--owner", default=DEFAULT_OWNER_ID, show_default=True)
@click.option("--limit", default=RECENT_CONVERSATIONS_LIMIT, show_default=True, type=int)
def list_cmd(owner: str, limit: int):
    """List recent conversations."""
    store = _open_store()
    try:
        conversations = store.list_recent(owner, limit=limit)
    finally:
        store.close()

    if not conversations:
        click.echo("No conversations found.")
        return
    for c in conversations:
        click.echo(f"{c.id}  {_format_ts(c.updated_at)}  {c.message_count:>3} msgs  {c.title}")


@cli.command()
@click.argument("conversation_id")
@click.option("--owner", default=DEFAULT_OWNER_ID, show_default=True)
@click.option(
    "-o", "--output", type=click.Path(dir_okay=False, path_type=Path),
    help="Write to a file instead of stdout.",
)
def export(conversation_id: str, owner: str, output: Path | None):
    """Export a conversation as Markdown."""
    from .export import conversation_to_markdown

    store = _open_store()
    try:
        conv = store.get(conversation_id, owner)
    except (NotFoundError, AuthorizationError):
        raise click.ClickException(f"Conversation not found: {conversation_id}")
    finally:
        store.close()

    markdown = conversation_to_markdown(conv)
    if output is None:
        click.echo(markdown)
    else:
        output.write_text(markdown, encoding="utf-8")
        click.echo(f"Wrote {output}")


@cli.command()
@click.argument("conversation_id")
@click.option("--owner", default=DEFAULT_OWNER_ID, show_default=True)
@click.confirmation_option(prompt="Delete this conversation?")
def delete(conversation_id: str, owner: str):
    """Delete a conversation."""
    store = _open_store()
    try:
        store.delete(conversation_id, owner)
    except (NotFoundError, AuthorizationError):
        raise click.ClickException(f"Conversation not found: {conversation_id}")
    finally:
        store.close()
    click.echo(f"Deleted {conversation_id}")


@cli.command()
@click.confirmation_option(prompt="This will delete all conversations. Are you sure?")
def reset():
    """Delete all stored data and start fresh."""
    if DATA_DIR.exists():
        shutil.rmtree(DATA_DIR)
        click.echo(f"Deleted {DATA_DIR}")
    else:
        click.echo("No data to delete.")
