"""Commit finished exchanges to the conversation store."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict

from .errors import PersistenceError, TalkbackError
from .models import ExchangeRecord, Message
from .storage import ConversationStore

logger = logging.getLogger(__name__)


class ConversationPersistenceSink:
    """Writes each exchange exactly once, one write at a time per conversation."""

    def __init__(self, store: ConversationStore):
        self.store = store
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def persist(self, record: ExchangeRecord) -> Message:
        """Append ``record`` to its conversation and return the stored assistant message.

        Raises ``AuthorizationError``/``NotFoundError`` before touching the
        conversation if the owner does not match, and ``PersistenceError`` if
        the write itself fails.
        """
        assistant = Message(
            role="assistant",
            content=record.assistant_text,
            timestamp=time.time(),
            truncated=record.truncated,
        )
        async with self._locks[record.conversation_id]:
            try:
                await asyncio.to_thread(
                    self.store.append_exchange,
                    record.conversation_id,
                    record.owner_id,
                    None if record.is_first_exchange else record.user_message,
                    assistant,
                    record.is_first_exchange,
                )
            except TalkbackError:
                raise
            except Exception as exc:
                raise PersistenceError(
                    f"Failed to persist exchange for {record.conversation_id}: {exc}"
                ) from exc

        logger.info(
            "Persisted exchange on %s (%d chars%s)",
            record.conversation_id,
            len(record.assistant_text),
            ", truncated" if record.truncated else "",
        )
        return assistant

    async def persist_or_log(self, record: ExchangeRecord) -> bool:
        """Persist without raising; failures are logged as data loss."""
        try:
            await self.persist(record)
        except Exception:
            logger.critical(
                "Exchange for conversation %s was delivered but NOT saved "
                "(%d assistant chars lost)",
                record.conversation_id,
                len(record.assistant_text),
                exc_info=True,
            )
            return False
        return True
