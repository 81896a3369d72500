"""Text generation backends.

The pipeline only needs an object with a ``generate`` method returning an
async iterator of UTF-8 encoded text chunks. ``OpenAIChatGenerator`` talks to
any server exposing the OpenAI-compatible streaming chat completions API.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator, Protocol, Sequence

import httpx

from .config import (
    GENERATION_API_KEY,
    GENERATION_BASE_URL,
    GENERATION_MODEL,
    GENERATION_TIMEOUT_SECONDS,
)
from .errors import TransportError
from .models import Message

logger = logging.getLogger(__name__)


class TextGenerationService(Protocol):
    def generate(
        self,
        history: Sequence[Message],
        system_instruction: str | None = None,
    ) -> AsyncIterator[bytes]:
        """Stream the assistant reply to ``history`` as UTF-8 bytes."""
        ...


def build_chat_messages(
    history: Sequence[Message], system_instruction: str | None = None
) -> list[dict]:
    messages: list[dict] = []
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})
    for msg in history:
        content = msg.content
        if msg.attachments:
            names = ", ".join(a.filename for a in msg.attachments)
            content = f"{content}\n\n[Attached files: {names}]".strip()
        messages.append({"role": msg.role, "content": content})
    return messages


class OpenAIChatGenerator:
    """Streams ``/v1/chat/completions`` deltas as raw text bytes."""

    def __init__(
        self,
        base_url: str = GENERATION_BASE_URL,
        model: str = GENERATION_MODEL,
        api_key: str | None = GENERATION_API_KEY,
        timeout: float = GENERATION_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        if self.api_key:
            return {"Authorization": f"Bearer {self.api_key}"}
        return {}

    async def generate(
        self,
        history: Sequence[Message],
        system_instruction: str | None = None,
    ) -> AsyncIterator[bytes]:
        payload: dict = {
            "messages": build_chat_messages(history, system_instruction),
            "stream": True,
        }
        if self.model:
            payload["model"] = self.model

        logger.info(
            "Generation request to %s (%d messages)", self.base_url, len(payload["messages"])
        )
        total = 0
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/v1/chat/completions",
                    json=payload,
                    headers=self._headers(),
                ) as response:
                    if response.status_code != 200:
                        error_text = await response.aread()
                        logger.error(
                            "Generation backend error: %s - %s",
                            response.status_code, error_text[:200],
                        )
                        raise TransportError(
                            f"Generation backend returned {response.status_code}"
                        )

                    async for line in response.aiter_lines():
                        if not line.startswith("data: "):
                            continue
                        data_str = line[6:]
                        if data_str.strip() == "[DONE]":
                            break
                        try:
                            data = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        delta = (data.get("choices") or [{}])[0].get("delta", {})
                        content = delta.get("content") or ""
                        if content:
                            total += len(content)
                            yield content.encode("utf-8")
        except httpx.ConnectError as exc:
            raise TransportError("Cannot connect to the generation backend") from exc
        except httpx.TimeoutException as exc:
            raise TransportError("Generation request timed out") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Generation stream failed: {exc}") from exc

        logger.info("Generation completed, %d chars", total)
