"""Data models for conversations, dictation and the voice loop."""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant"]


def new_id() -> str:
    return uuid.uuid4().hex


class Attachment(BaseModel):
    model_config = ConfigDict(frozen=True)

    filename: str
    mime_type: str = "application/octet-stream"
    size: int | None = None
    url: str | None = None


class Message(BaseModel):
    """A stored message. Immutable: finalizing a placeholder replaces it."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    role: Role
    content: str
    timestamp: float = Field(default_factory=time.time)
    attachments: tuple[Attachment, ...] = ()
    truncated: bool = False


class Conversation(BaseModel):
    id: str
    owner_id: str
    title: str
    created_at: float
    updated_at: float
    messages: list[Message] = []
    model: str | None = None
    system_prompt: str | None = None

    @property
    def message_count(self) -> int:
        return len(self.messages)


class ConversationSummary(BaseModel):
    id: str
    title: str
    updated_at: float
    message_count: int = 0


class ExchangeRecord(BaseModel):
    """One finished exchange, handed to the persistence sink."""

    conversation_id: str
    owner_id: str
    user_message: Message
    assistant_text: str
    is_first_exchange: bool = False
    truncated: bool = False


class DictationState(BaseModel):
    """Event-sourced state of a dictation session.

    ``finalized`` only grows while the session is active and is reset when
    the session (re)starts. ``restart_seed`` is set while a forced
    stop/restart cycle waits for the engine to end.
    """

    model_config = ConfigDict(frozen=True)

    is_active: bool = False
    is_manual_stop: bool = False
    seed: str = ""
    finalized: str = ""
    interim: str = ""
    restart_seed: str | None = None

    @property
    def committed(self) -> str:
        return join_words(self.seed, self.finalized)

    @property
    def merged(self) -> str:
        return join_words(self.seed, self.finalized, self.interim)


class LoopPhase(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"
    ERROR = "error"


class Utterance(BaseModel):
    model_config = ConfigDict(frozen=True)

    speaker: Role
    text: str


class ConversationLoopState(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: LoopPhase = LoopPhase.IDLE
    last_utterance: Utterance | None = None
    status_message: str = "Tap the mic to start speaking."
    conversation_id: str | None = None


def join_words(*parts: str) -> str:
    """Join text fragments with single spaces, skipping empty ones."""
    return " ".join(p.strip() for p in parts if p and p.strip())
