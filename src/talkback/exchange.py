"""Request-to-stream pipeline for one user/assistant exchange."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import AsyncIterator, Sequence

from .config import (
    GENERATION_FAILED_MESSAGE,
    GENERATION_INTERRUPTED_NOTICE,
    TRANSPORT_SETTLE_TIMEOUT_SECONDS,
)
from .errors import TransportError, ValidationError
from .generation import TextGenerationService
from .models import Attachment, ExchangeRecord, Message
from .persistence import ConversationPersistenceSink
from .splitter import GenerationStreamSplitter
from .storage import ConversationStore

logger = logging.getLogger(__name__)


@dataclass
class ExchangeResult:
    conversation_id: str
    text: str
    is_new: bool = False


@dataclass
class StreamedExchange:
    """An exchange whose reply is still streaming.

    ``body()`` is the transport side; persistence runs in ``persisted`` and
    finishes on its own whether or not the body is read.
    """

    conversation_id: str
    is_new: bool
    splitter: GenerationStreamSplitter
    persisted: asyncio.Task | None = field(default=None, repr=False)

    async def body(self) -> AsyncIterator[bytes]:
        delivered = False
        try:
            async with contextlib.aclosing(self.splitter.transport()) as chunks:
                async for chunk in chunks:
                    delivered = True
                    yield chunk
        except TransportError as exc:
            logger.error("Exchange on %s failed: %s", self.conversation_id, exc)
            if delivered:
                yield GENERATION_INTERRUPTED_NOTICE.encode("utf-8")
            else:
                yield GENERATION_FAILED_MESSAGE.encode("utf-8")

    async def text(self) -> str:
        """Read the transport side to the end; raises ``TransportError`` on failure."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        async with contextlib.aclosing(self.splitter.transport()) as chunks:
            parts = [decoder.decode(chunk) async for chunk in chunks]
        parts.append(decoder.decode(b"", final=True))
        return "".join(parts)


class ExchangeService:
    """Validates a message, generates the reply and persists the exchange.

    Exchanges on one conversation are queued: each holds the conversation
    from ``open_exchange`` until its reply is stored, so replies are committed
    in the order the messages were sent.
    """

    def __init__(
        self,
        store: ConversationStore,
        generator: TextGenerationService,
        sink: ConversationPersistenceSink | None = None,
        *,
        default_model: str | None = None,
        default_system_prompt: str | None = None,
        transport_settle_timeout: float = TRANSPORT_SETTLE_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.generator = generator
        self.sink = sink or ConversationPersistenceSink(store)
        self.default_model = default_model
        self.default_system_prompt = default_system_prompt
        self.transport_settle_timeout = transport_settle_timeout
        self._pending: set[asyncio.Task] = set()
        self._claims: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def open_exchange(
        self,
        owner_id: str,
        message: str,
        conversation_id: str | None = None,
        attachments: Sequence[Attachment] = (),
        system_prompt: str | None = None,
        model: str | None = None,
    ) -> StreamedExchange:
        text = (message or "").strip()
        attachments = tuple(attachments)
        if not text and not attachments:
            raise ValidationError("Message cannot be empty.")

        sent_at = time.time()
        if conversation_id:
            claim = self._claims[conversation_id]
            if claim.locked():
                logger.info("Conversation %s busy, queueing exchange", conversation_id)
            await claim.acquire()
            try:
                conversation = await asyncio.to_thread(self.store.get, conversation_id, owner_id)
            except BaseException:
                claim.release()
                raise
            user_message = Message(
                role="user", content=text, timestamp=sent_at, attachments=attachments
            )
            history = [*conversation.messages, user_message]
            is_first = False
        else:
            conversation = await asyncio.to_thread(
                self.store.create,
                owner_id,
                text,
                attachments,
                model or self.default_model,
                system_prompt or self.default_system_prompt,
                sent_at,
            )
            # Nobody else knows the id yet, so this never waits.
            claim = self._claims[conversation.id]
            await claim.acquire()
            user_message = conversation.messages[0]
            history = list(conversation.messages)
            is_first = True

        instruction = system_prompt or conversation.system_prompt or self.default_system_prompt
        splitter = GenerationStreamSplitter(self.generator.generate(history, instruction))
        exchange = StreamedExchange(
            conversation_id=conversation.id, is_new=is_first, splitter=splitter
        )

        record = ExchangeRecord(
            conversation_id=conversation.id,
            owner_id=owner_id,
            user_message=user_message,
            assistant_text="",
            is_first_exchange=is_first,
        )
        task = asyncio.create_task(self._persist_when_done(splitter, record, claim))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        exchange.persisted = task
        return exchange

    async def _persist_when_done(
        self,
        splitter: GenerationStreamSplitter,
        record: ExchangeRecord,
        claim: asyncio.Lock,
    ) -> bool:
        try:
            result = await splitter.drain_history()
            try:
                await asyncio.wait_for(
                    splitter.transport_settled(), self.transport_settle_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Transport for %s still open after %.0fs, persisting anyway",
                    record.conversation_id, self.transport_settle_timeout,
                )
            record = record.model_copy(
                update={"assistant_text": result.text, "truncated": result.truncated}
            )
            return await self.sink.persist_or_log(record)
        finally:
            claim.release()

    async def complete(
        self,
        owner_id: str,
        message: str,
        conversation_id: str | None = None,
        attachments: Sequence[Attachment] = (),
        system_prompt: str | None = None,
        model: str | None = None,
    ) -> ExchangeResult:
        """Run an exchange to completion and return the full reply."""
        exchange = await self.open_exchange(
            owner_id, message, conversation_id, attachments, system_prompt, model
        )
        text = await exchange.text()
        return ExchangeResult(
            conversation_id=exchange.conversation_id, text=text, is_new=exchange.is_new
        )

    async def wait_idle(self) -> None:
        """Wait for every scheduled persistence write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
