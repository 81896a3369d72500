"""Speech engine contracts and the single text-to-speech output resource.

Engines deliver lifecycle events by calling the listener registered with
``set_listener``. Implementations that run on other threads must hop back
onto the event loop (``loop.call_soon_threadsafe``) before calling it.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Protocol, Union

logger = logging.getLogger(__name__)


# --------- Speech-to-text events ---------
@dataclass(frozen=True)
class EngineStarted:
    pass


@dataclass(frozen=True)
class EngineResult:
    text: str
    is_final: bool


@dataclass(frozen=True)
class EngineEnded:
    pass


@dataclass(frozen=True)
class EngineFailed:
    """An engine error. Engines always follow it with ``EngineEnded``."""

    code: str
    message: str | None = None


EngineEvent = Union[EngineStarted, EngineResult, EngineEnded, EngineFailed]


class SpeechToTextEngine(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...

    def set_listener(self, listener: Callable[[EngineEvent], None] | None) -> None: ...


# --------- Text-to-speech events ---------
@dataclass(frozen=True)
class SpeechStarted:
    utterance_id: str


@dataclass(frozen=True)
class SpeechEnded:
    utterance_id: str


@dataclass(frozen=True)
class SpeechFailed:
    utterance_id: str
    message: str = ""


SpeechEvent = Union[SpeechStarted, SpeechEnded, SpeechFailed]


class TextToSpeechEngine(Protocol):
    def speak(self, text: str, voice_id: str | None, utterance_id: str) -> None: ...

    def cancel(self) -> None: ...

    def set_listener(self, listener: Callable[[SpeechEvent], None] | None) -> None: ...


@dataclass
class _Utterance:
    utterance_id: str
    on_end: Callable[[str], None] | None = None
    on_error: Callable[[str, str], None] | None = None
    on_superseded: Callable[[str], None] | None = None
    started: bool = field(default=False)


class SpeechOutput:
    """Owns a text-to-speech engine so that at most one utterance plays.

    ``speak`` cancels whatever is playing. Engine events are matched against
    the current utterance id, so events for cancelled or superseded
    utterances are dropped.
    """

    def __init__(self, engine: TextToSpeechEngine):
        self.engine = engine
        self._current: _Utterance | None = None
        engine.set_listener(self._on_event)

    @property
    def current_utterance(self) -> str | None:
        return self._current.utterance_id if self._current else None

    def is_speaking(self, utterance_id: str | None = None) -> bool:
        if self._current is None:
            return False
        return utterance_id is None or self._current.utterance_id == utterance_id

    def speak(
        self,
        text: str,
        voice_id: str | None = None,
        *,
        on_end: Callable[[str], None] | None = None,
        on_error: Callable[[str, str], None] | None = None,
        on_superseded: Callable[[str], None] | None = None,
        utterance_id: str | None = None,
    ) -> str:
        previous = self._current
        if previous is not None:
            self._current = None
            self.engine.cancel()
            logger.debug("Utterance %s superseded", previous.utterance_id)

        utterance = _Utterance(
            utterance_id=utterance_id or uuid.uuid4().hex,
            on_end=on_end,
            on_error=on_error,
            on_superseded=on_superseded,
        )
        self._current = utterance
        if previous is not None and previous.on_superseded is not None:
            previous.on_superseded(previous.utterance_id)
        self.engine.speak(text, voice_id, utterance.utterance_id)
        return utterance.utterance_id

    def cancel(self, utterance_id: str | None = None) -> bool:
        """Stop playback. With an id, only if that utterance is the one playing."""
        if self._current is None:
            return False
        if utterance_id is not None and self._current.utterance_id != utterance_id:
            return False
        self._current = None
        self.engine.cancel()
        return True

    def close(self) -> None:
        self.cancel()
        self.engine.set_listener(None)

    def _on_event(self, event: SpeechEvent) -> None:
        current = self._current
        if current is None or event.utterance_id != current.utterance_id:
            logger.debug("Ignoring %s for inactive utterance", type(event).__name__)
            return

        if isinstance(event, SpeechStarted):
            current.started = True
        elif isinstance(event, SpeechEnded):
            self._current = None
            if current.on_end is not None:
                current.on_end(current.utterance_id)
        elif isinstance(event, SpeechFailed):
            self._current = None
            logger.warning("Speech failed: %s", event.message)
            if current.on_error is not None:
                current.on_error(current.utterance_id, event.message)
