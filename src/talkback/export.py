"""Render stored conversations as Markdown documents."""

from __future__ import annotations

import re
from datetime import datetime, timezone

from .models import Conversation


def _format_ts(ts: float | None) -> str:
    if ts is None:
        return "Unknown date"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def conversation_to_markdown(conversation: Conversation) -> str:
    lines = [f"# Conversation: {conversation.title}", ""]

    for msg in conversation.messages:
        role = "You" if msg.role == "user" else "AI"
        lines.append("---")
        lines.append(f"## {role} ({_format_ts(msg.timestamp)})")
        lines.append("")
        if msg.attachments:
            names = ", ".join(a.filename for a in msg.attachments)
            lines.append(f"[File Attachments: {names}]")
            lines.append("")
        lines.append(msg.content.strip())
        if msg.truncated:
            lines.append("")
            lines.append("*[Response incomplete]*")
        lines.append("")

    return "\n".join(lines)


def export_filename(title: str) -> str:
    """Filesystem-safe ``.md`` filename derived from a conversation title."""
    return re.sub(r"[^a-z0-9]", "_", title, flags=re.IGNORECASE) + ".md"
