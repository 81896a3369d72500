"""SQLite storage for conversations with owner checks."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from pathlib import Path

from .config import RECENT_CONVERSATIONS_LIMIT, TITLE_MAX_WORDS, UNTITLED
from .errors import AuthorizationError, NotFoundError, PersistenceError
from .models import Attachment, Conversation, ConversationSummary, Message

logger = logging.getLogger(__name__)


def generate_title(first_message: str, max_words: int = TITLE_MAX_WORDS) -> str:
    """First ``max_words`` words of the message, with an ellipsis if cut short."""
    words = first_message.split()
    if not words:
        return UNTITLED
    title = " ".join(words[:max_words])
    if len(words) > max_words:
        title += "..."
    return title


class ConversationStore:
    """SQLite-backed storage for conversations and messages.

    Every method is safe to call from worker threads; a single lock guards
    the shared connection so multi-statement writes stay atomic.
    """

    def __init__(self, db_path: Path):
        if str(db_path) != ":memory:":
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._lock = threading.Lock()
        self._migrate()

    def _migrate(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                title TEXT NOT NULL,
                model TEXT,
                system_prompt TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                timestamp REAL NOT NULL,
                message_index INTEGER NOT NULL,
                truncated INTEGER NOT NULL DEFAULT 0,
                attachments TEXT NOT NULL DEFAULT '[]',
                FOREIGN KEY (conversation_id) REFERENCES conversations(id)
                    ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conv
                ON messages(conversation_id, message_index);

            CREATE INDEX IF NOT EXISTS idx_conversations_owner
                ON conversations(owner_id, updated_at);
        """)
        self.conn.commit()

    def _check_owner(self, conversation_id: str, owner_id: str) -> sqlite3.Row:
        row = self.conn.execute(
            "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Conversation not found: {conversation_id}")
        if row["owner_id"] != owner_id:
            logger.warning(
                "Owner mismatch on conversation %s (requested by %s)",
                conversation_id, owner_id,
            )
            raise AuthorizationError(f"Conversation not accessible: {conversation_id}")
        return row

    def _insert_message(self, conversation_id: str, msg: Message, index: int):
        self.conn.execute(
            """INSERT INTO messages (id, conversation_id, role, content, timestamp,
               message_index, truncated, attachments)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                msg.id,
                conversation_id,
                msg.role,
                msg.content,
                msg.timestamp,
                index,
                int(msg.truncated),
                json.dumps([a.model_dump() for a in msg.attachments]),
            ),
        )

    def get(self, conversation_id: str, owner_id: str) -> Conversation:
        """Get a conversation with all its messages, checking ownership."""
        with self._lock:
            row = self._check_owner(conversation_id, owner_id)
            messages = self.conn.execute(
                """SELECT id, role, content, timestamp, truncated, attachments
                   FROM messages WHERE conversation_id = ? ORDER BY message_index""",
                (conversation_id,),
            ).fetchall()

        return Conversation(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            model=row["model"],
            system_prompt=row["system_prompt"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            messages=[_row_to_message(m) for m in messages],
        )

    def create(
        self,
        owner_id: str,
        first_message: str,
        attachments: tuple[Attachment, ...] | list[Attachment] = (),
        model: str | None = None,
        system_prompt: str | None = None,
        timestamp: float | None = None,
    ) -> Conversation:
        """Create a conversation holding the first user message."""
        now = timestamp if timestamp is not None else time.time()
        message = Message(
            role="user",
            content=first_message,
            timestamp=now,
            attachments=tuple(attachments),
        )
        conversation = Conversation(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            title=generate_title(first_message),
            model=model,
            system_prompt=system_prompt,
            created_at=now,
            updated_at=now,
            messages=[message],
        )

        with self._lock:
            try:
                with self.conn:
                    self.conn.execute(
                        """INSERT INTO conversations (id, owner_id, title, model,
                           system_prompt, created_at, updated_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?)""",
                        (conversation.id, owner_id, conversation.title, model,
                         system_prompt, now, now),
                    )
                    self._insert_message(conversation.id, message, 0)
            except sqlite3.Error as exc:
                raise PersistenceError(f"Failed to create conversation: {exc}") from exc

        logger.info("Created conversation %s for %s", conversation.id, owner_id)
        return conversation

    def append_exchange(
        self,
        conversation_id: str,
        owner_id: str,
        user_message: Message | None,
        assistant_message: Message,
        is_first_exchange: bool = False,
    ) -> None:
        """Append one exchange in a single transaction.

        On the first exchange the user message is already stored, so only the
        assistant message is appended and the title is (re)derived from the
        first user message.
        """
        with self._lock:
            self._check_owner(conversation_id, owner_id)
            try:
                with self.conn:
                    count = self.conn.execute(
                        "SELECT COUNT(*) FROM messages WHERE conversation_id = ?",
                        (conversation_id,),
                    ).fetchone()[0]

                    if not is_first_exchange:
                        if user_message is None:
                            raise PersistenceError("user_message is required after the first exchange")
                        self._insert_message(conversation_id, user_message, count)
                        count += 1
                    self._insert_message(conversation_id, assistant_message, count)

                    if is_first_exchange:
                        first = self.conn.execute(
                            """SELECT content FROM messages WHERE conversation_id = ?
                               ORDER BY message_index LIMIT 1""",
                            (conversation_id,),
                        ).fetchone()
                        self.conn.execute(
                            "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ?",
                            (generate_title(first["content"]), time.time(), conversation_id),
                        )
                    else:
                        self.conn.execute(
                            "UPDATE conversations SET updated_at = ? WHERE id = ?",
                            (time.time(), conversation_id),
                        )
            except sqlite3.Error as exc:
                raise PersistenceError(
                    f"Failed to append exchange to {conversation_id}: {exc}"
                ) from exc

    def delete(self, conversation_id: str, owner_id: str) -> None:
        with self._lock:
            self._check_owner(conversation_id, owner_id)
            with self.conn:
                self.conn.execute(
                    "DELETE FROM messages WHERE conversation_id = ?", (conversation_id,)
                )
                self.conn.execute(
                    "DELETE FROM conversations WHERE id = ?", (conversation_id,)
                )
        logger.info("Deleted conversation %s", conversation_id)

    def list_recent(
        self, owner_id: str, limit: int = RECENT_CONVERSATIONS_LIMIT
    ) -> list[ConversationSummary]:
        """List an owner's conversations, most recently updated first."""
        with self._lock:
            rows = self.conn.execute(
                """SELECT c.id, c.title, c.updated_at,
                          (SELECT COUNT(*) FROM messages m
                           WHERE m.conversation_id = c.id) AS message_count
                   FROM conversations c
                   WHERE c.owner_id = ?
                   ORDER BY c.updated_at DESC
                   LIMIT ?""",
                (owner_id, limit),
            ).fetchall()

        return [ConversationSummary(**dict(r)) for r in rows]

    def close(self):
        self.conn.close()


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        role=row["role"],
        content=row["content"],
        timestamp=row["timestamp"],
        truncated=bool(row["truncated"]),
        attachments=tuple(Attachment(**a) for a in json.loads(row["attachments"])),
    )
