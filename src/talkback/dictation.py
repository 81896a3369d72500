"""Continuous dictation on top of a restartable speech-to-text engine.

Engines stop on their own after silence, session limits or network drops.
``DictationSession`` tells these apart from a user-requested stop and, in
continuous mode, restarts the engine seeded with everything finalized so far.

All transitions live in ``reduce``; the session only feeds it events and
carries out the effects it returns.
"""

from __future__ import annotations

import logging
import weakref
from collections import deque
from dataclasses import dataclass
from typing import Callable, Union

from .config import FATAL_ENGINE_ERRORS, TRANSIENT_ENGINE_ERRORS
from .errors import EngineError, EngineTransientError
from .models import DictationState, join_words
from .speech import (
    EngineEnded,
    EngineEvent,
    EngineFailed,
    EngineResult,
    EngineStarted,
    SpeechToTextEngine,
)

logger = logging.getLogger(__name__)


# --------- Commands ---------
@dataclass(frozen=True)
class StartRequested:
    seed: str = ""


@dataclass(frozen=True)
class StopRequested:
    pass


DictationEvent = Union[StartRequested, StopRequested, EngineEvent]


# --------- Effects ---------
@dataclass(frozen=True)
class StartEngine:
    pass


@dataclass(frozen=True)
class StopEngine:
    pass


@dataclass(frozen=True)
class DeliverFinal:
    text: str


@dataclass(frozen=True)
class SurfaceError:
    error: EngineError


@dataclass(frozen=True)
class LogInterruption:
    error: EngineTransientError


Effect = Union[StartEngine, StopEngine, DeliverFinal, SurfaceError, LogInterruption]


def classify_engine_error(code: str, message: str | None = None):
    if code in TRANSIENT_ENGINE_ERRORS:
        return EngineTransientError(code, message)
    if code not in FATAL_ENGINE_ERRORS:
        logger.warning("Unknown speech engine error %r, treating it as fatal", code)
    return EngineError(code, message)


def _fresh(seed: str) -> DictationState:
    return DictationState(is_active=True, seed=seed.strip())


def reduce(
    state: DictationState, event: DictationEvent, continuous: bool = True
) -> tuple[DictationState, list[Effect]]:
    """Apply one event and return the new state plus effects to run."""
    if isinstance(event, StartRequested):
        if not state.is_active:
            return _fresh(event.seed), [StartEngine()]
        # Already listening: cycle the engine, restart once it reports the end.
        return (
            state.model_copy(update={"is_manual_stop": True, "restart_seed": event.seed}),
            [StopEngine()],
        )

    if isinstance(event, StopRequested):
        if not state.is_active:
            return state, []
        return (
            state.model_copy(update={"is_manual_stop": True, "restart_seed": None}),
            [StopEngine()],
        )

    if not state.is_active:
        # Late callbacks from an engine we already gave up on.
        return state, []

    if isinstance(event, EngineStarted):
        return state, []

    if isinstance(event, EngineResult):
        text = event.text.strip()
        if event.is_final:
            return (
                state.model_copy(
                    update={"finalized": join_words(state.finalized, text), "interim": ""}
                ),
                [],
            )
        return state.model_copy(update={"interim": text}), []

    if isinstance(event, EngineFailed):
        error = classify_engine_error(event.code, event.message)
        if isinstance(error, EngineTransientError):
            # The engine follows up with EngineEnded; the end policy decides.
            return state, [LogInterruption(error)]
        return DictationState(is_manual_stop=True), [SurfaceError(error)]

    if isinstance(event, EngineEnded):
        if state.restart_seed is not None:
            return _fresh(state.restart_seed), [StartEngine()]
        if state.is_manual_stop or not continuous:
            return (
                DictationState(is_manual_stop=state.is_manual_stop),
                [DeliverFinal(state.committed)],
            )
        # Unintended end: carry the finalized words over into the next run.
        return _fresh(state.committed), [StartEngine()]

    raise TypeError(f"Unknown dictation event: {event!r}")


class DictationSession:
    """Drives one speech-to-text engine through ``reduce``.

    Only one session may own an engine; creating a second session for the
    same engine closes the first.
    """

    _owners: "weakref.WeakKeyDictionary[object, DictationSession]" = weakref.WeakKeyDictionary()

    def __init__(
        self,
        engine: SpeechToTextEngine,
        *,
        continuous: bool = True,
        on_final: Callable[[str], None] | None = None,
        on_transcript: Callable[[str], None] | None = None,
        on_error: Callable[[EngineError], None] | None = None,
    ):
        self.engine = engine
        self.continuous = continuous
        self.on_final = on_final
        self.on_transcript = on_transcript
        self.on_error = on_error
        self.state = DictationState()
        self._closed = False
        self._queue: deque[DictationEvent] = deque()
        self._dispatching = False

        previous = self._owners.get(engine)
        if previous is not None and previous is not self:
            logger.info("Speech engine taken over by a new dictation session")
            previous.close()
        self._owners[engine] = self
        engine.set_listener(self._on_engine_event)

    @property
    def is_listening(self) -> bool:
        return self.state.is_active

    @property
    def transcript(self) -> str:
        return self.state.merged

    def start(self, seed: str = "") -> None:
        if self._closed:
            raise RuntimeError("Dictation session is closed")
        self._dispatch(StartRequested(seed))

    def stop(self) -> None:
        self._dispatch(StopRequested())

    def close(self) -> None:
        """Stop the engine whatever the phase and stop listening to it."""
        if self._closed:
            return
        self._closed = True
        self.state = DictationState(is_manual_stop=True)
        self._queue.clear()
        self.engine.set_listener(None)
        self.engine.stop()
        if self._owners.get(self.engine) is self:
            del self._owners[self.engine]

    def _on_engine_event(self, event: EngineEvent) -> None:
        if self._closed:
            return
        self._dispatch(event)

    def _dispatch(self, event: DictationEvent) -> None:
        self._queue.append(event)
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._queue:
                current = self._queue.popleft()
                before = self.state
                self.state, effects = reduce(self.state, current, self.continuous)
                for effect in effects:
                    self._run(effect)
                if (
                    self.on_transcript is not None
                    and self.state.is_active
                    and self.state.merged != before.merged
                ):
                    self.on_transcript(self.state.merged)
        finally:
            self._dispatching = False

    def _run(self, effect: Effect) -> None:
        if isinstance(effect, StartEngine):
            logger.debug("Starting speech engine (seed=%d chars)", len(self.state.seed))
            self.engine.start()
        elif isinstance(effect, StopEngine):
            self.engine.stop()
        elif isinstance(effect, DeliverFinal):
            logger.debug("Dictation finished with %d chars", len(effect.text))
            if self.on_final is not None:
                self.on_final(effect.text)
        elif isinstance(effect, SurfaceError):
            logger.error("Dictation stopped: %s", effect.error)
            if self.on_error is not None:
                self.on_error(effect.error)
        elif isinstance(effect, LogInterruption):
            logger.info("Dictation interrupted (%s), following end policy", effect.error.code)
