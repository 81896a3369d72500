"""FastMCP server exposing the local conversation history."""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone

from mcp.server.fastmcp import FastMCP

from .config import DEFAULT_OWNER_ID, RECENT_CONVERSATIONS_LIMIT, SQLITE_PATH
from .errors import AuthorizationError, NotFoundError
from .export import conversation_to_markdown
from .storage import ConversationStore

# Logging to stderr only; stdout is the MCP JSON-RPC transport
logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)

mcp = FastMCP(
    "talkback",
    instructions=(
        "Browse the user's talkback conversations. "
        "Use list_conversations to see recent conversations. "
        "Use get_conversation to read a full conversation as Markdown."
    ),
)

# Singleton store, reused across tool calls
_store: ConversationStore | None = None


def _get_store() -> ConversationStore:
    global _store
    if _store is None:
        _store = ConversationStore(SQLITE_PATH)
    return _store


def _format_ts(ts: float | None) -> str:
    if ts is None:
        return "Unknown date"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def _check_data_exists() -> str | None:
    """Return an error message if nothing has been stored yet."""
    if not SQLITE_PATH.exists():
        return (
            "No conversations found. Start one first:\n"
            "  talkback serve"
        )
    return None


@mcp.tool()
def list_conversations(limit: int = RECENT_CONVERSATIONS_LIMIT) -> str:
    """List the most recently updated conversations.

    Args:
        limit: Maximum results (default 20)
    """
    err = _check_data_exists()
    if err:
        return err

    conversations = _get_store().list_recent(DEFAULT_OWNER_ID, limit=limit)
    if not conversations:
        return "No conversations found."

    lines = [f"Recent conversations (showing {len(conversations)}):\n"]
    for i, c in enumerate(conversations, 1):
        lines.append(f"{i}. **{c.title}** ({_format_ts(c.updated_at)})")
        lines.append(f"   ID: `{c.id}` | {c.message_count} msgs")

    lines.append("\nUse get_conversation(conversation_id) to read a transcript.")
    return "\n".join(lines)


@mcp.tool()
def get_conversation(conversation_id: str) -> str:
    """Retrieve a full conversation transcript as Markdown.

    Args:
        conversation_id: The conversation ID (from list_conversations)
    """
    err = _check_data_exists()
    if err:
        return err

    try:
        conv = _get_store().get(conversation_id, DEFAULT_OWNER_ID)
    except (NotFoundError, AuthorizationError):
        return f"Conversation not found: {conversation_id}"

    return conversation_to_markdown(conv)
