"""Shared fakes for the speech engines, the generation backend and the store."""

from __future__ import annotations

import asyncio

import pytest

from talkback.errors import TransportError
from talkback.speech import (
    EngineEnded,
    EngineFailed,
    EngineResult,
    EngineStarted,
    SpeechEnded,
    SpeechFailed,
)
from talkback.storage import ConversationStore


class FakeSpeechEngine:
    """Speech-to-text engine driven by the test.

    Like real engines, ``stop()`` on a running engine is followed by an end
    event.
    """

    def __init__(self):
        self.listener = None
        self.running = False
        self.starts = 0
        self.stops = 0

    def set_listener(self, listener):
        self.listener = listener

    def _emit(self, event):
        if self.listener is not None:
            self.listener(event)

    def start(self):
        self.starts += 1
        self.running = True
        self._emit(EngineStarted())

    def stop(self):
        self.stops += 1
        if self.running:
            self.end()

    def result(self, text, final=True):
        self._emit(EngineResult(text=text, is_final=final))

    def end(self):
        self.running = False
        self._emit(EngineEnded())

    def fail(self, code, message=None):
        self._emit(EngineFailed(code=code, message=message))
        self.end()


class FakeTTSEngine:
    def __init__(self):
        self.listener = None
        self.spoken: list[tuple[str, str | None, str]] = []
        self.cancels = 0

    def set_listener(self, listener):
        self.listener = listener

    def speak(self, text, voice_id, utterance_id):
        self.spoken.append((text, voice_id, utterance_id))

    def cancel(self):
        self.cancels += 1

    @property
    def last_id(self) -> str:
        return self.spoken[-1][2]

    def finish(self, utterance_id=None):
        self.listener(SpeechEnded(utterance_id or self.last_id))

    def fail(self, message="device lost", utterance_id=None):
        self.listener(SpeechFailed(utterance_id or self.last_id, message))


class ScriptedGenerator:
    """Generation backend replaying fixed chunks.

    ``fail_after`` raises a ``TransportError`` once that many chunks have been
    sent. ``gate`` holds the stream until the event is set.
    """

    def __init__(self, chunks=(b"Hello", b" world"), fail_after=None, gate=None):
        self.chunks = list(chunks)
        self.fail_after = fail_after
        self.gate = gate
        self.calls: list[tuple[list, str | None]] = []

    async def generate(self, history, system_instruction=None):
        self.calls.append((list(history), system_instruction))
        if self.gate is not None:
            await self.gate.wait()
        for i, chunk in enumerate(self.chunks):
            if self.fail_after is not None and i >= self.fail_after:
                break
            await asyncio.sleep(0)
            yield chunk
        if self.fail_after is not None:
            raise TransportError("backend dropped the connection")


@pytest.fixture
def store(tmp_path):
    s = ConversationStore(tmp_path / "conversations.db")
    yield s
    s.close()


@pytest.fixture
def stt():
    return FakeSpeechEngine()


@pytest.fixture
def tts():
    return FakeTTSEngine()
