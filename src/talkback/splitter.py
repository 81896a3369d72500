"""Fan-out of one generation stream to a transport reader and a history reader."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
from dataclasses import dataclass
from typing import AsyncIterator

from .errors import TransportError

logger = logging.getLogger(__name__)

TRANSPORT = "transport"
HISTORY = "history"

_EOF = object()


@dataclass
class _Failure:
    error: TransportError


@dataclass
class DrainResult:
    text: str
    truncated: bool = False
    error: TransportError | None = None


class GenerationStreamSplitter:
    """Broadcast an async byte stream to two independent readers.

    A pump task feeds one unbounded queue per reader as chunks arrive, so a
    slow reader never holds back the other and each sees every chunk once and
    in order. A reader that stops early only drops its own queue. If the
    upstream fails, both readers get a ``TransportError`` after whatever
    arrived before the failure.
    """

    def __init__(self, source: AsyncIterator[bytes]):
        self._source = source
        self._queues: dict[str, asyncio.Queue] = {
            TRANSPORT: asyncio.Queue(),
            HISTORY: asyncio.Queue(),
        }
        self._abandoned: set[str] = set()
        self._claimed: set[str] = set()
        self._pump_task: asyncio.Task | None = None
        self._transport_settled = asyncio.Event()
        self.bytes_received = 0

    def start(self) -> None:
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump())

    def _broadcast(self, item) -> None:
        for name, queue in self._queues.items():
            if name not in self._abandoned:
                queue.put_nowait(item)

    async def _pump(self) -> None:
        try:
            async for chunk in self._source:
                if not chunk:
                    continue
                self.bytes_received += len(chunk)
                self._broadcast(bytes(chunk))
                if len(self._abandoned) == len(self._queues):
                    logger.debug("Both readers gone, closing upstream")
                    break
        except asyncio.CancelledError:
            self._broadcast(_Failure(TransportError("Generation stream cancelled")))
            raise
        except TransportError as exc:
            logger.warning("Generation stream failed after %d bytes: %s", self.bytes_received, exc)
            self._broadcast(_Failure(exc))
        except Exception as exc:
            logger.warning(
                "Generation stream failed after %d bytes", self.bytes_received, exc_info=True
            )
            error = TransportError(f"Generation stream failed: {exc}")
            error.__cause__ = exc
            self._broadcast(_Failure(error))
        else:
            self._broadcast(_EOF)
        finally:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                with contextlib.suppress(Exception):
                    await aclose()

    async def _read(self, name: str) -> AsyncIterator[bytes]:
        if name in self._claimed:
            raise RuntimeError(f"The {name} side has already been read")
        self._claimed.add(name)
        queue = self._queues[name]
        self.start()
        try:
            while True:
                item = await queue.get()
                if item is _EOF:
                    return
                if isinstance(item, _Failure):
                    raise item.error
                yield item
        finally:
            self._abandoned.add(name)
            while not queue.empty():
                queue.get_nowait()
            if name == TRANSPORT:
                self._transport_settled.set()

    def transport(self) -> AsyncIterator[bytes]:
        """Side A: chunks as they arrive, for forwarding to the caller."""
        return self._read(TRANSPORT)

    def history(self) -> AsyncIterator[bytes]:
        """Side B: the same chunks, for persistence."""
        return self._read(HISTORY)

    async def drain_history(self) -> DrainResult:
        """Read side B to the end; a failure yields the partial text, truncated."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        parts: list[str] = []
        stream = self.history()
        try:
            async for chunk in stream:
                parts.append(decoder.decode(chunk))
        except TransportError as exc:
            parts.append(decoder.decode(b"", final=True))
            return DrainResult(text="".join(parts), truncated=True, error=exc)
        parts.append(decoder.decode(b"", final=True))
        return DrainResult(text="".join(parts))

    async def transport_settled(self) -> None:
        """Wait until side A has been read to the end or abandoned."""
        await self._transport_settled.wait()

