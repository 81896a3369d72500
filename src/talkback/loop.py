"""Hands-free voice conversation: listen, send, speak, listen again."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from typing import Callable

from .config import ERROR_DISPLAY_SECONDS, PERSONALITIES, RESUME_LISTENING_DELAY_SECONDS
from .dictation import DictationSession
from .errors import EngineError, ValidationError
from .exchange import ExchangeService
from .models import ConversationLoopState, LoopPhase, Utterance
from .speech import SpeechOutput, SpeechToTextEngine

logger = logging.getLogger(__name__)


class ConversationLoopController:
    """State machine for the voice round trip.

    Idle → Listening → Thinking → Speaking → Listening, with Error reachable
    from anywhere and falling back to Idle after ``error_display_seconds``.

    Each request is stamped with ``generation``; interrupting bumps it, so a
    reply that arrives for an older generation is dropped. Persistence of that
    reply still happens in the exchange pipeline.
    """

    def __init__(
        self,
        exchange: ExchangeService,
        speech: SpeechOutput,
        dictation_engine: SpeechToTextEngine | None,
        *,
        owner_id: str,
        conversation_id: str | None = None,
        voice_id: str | None = None,
        system_prompt: str | None = None,
        personality: str | None = None,
        error_display_seconds: float = ERROR_DISPLAY_SECONDS,
        resume_delay: float = RESUME_LISTENING_DELAY_SECONDS,
        on_change: Callable[[ConversationLoopState], None] | None = None,
        on_conversation_id: Callable[[str], None] | None = None,
    ):
        self.exchange = exchange
        self.speech = speech
        self.owner_id = owner_id
        self.voice_id = voice_id
        if personality is not None and personality not in PERSONALITIES:
            raise ValidationError(f"Unknown personality: {personality}")
        # An explicit prompt wins over the named personality.
        self.system_prompt = system_prompt or PERSONALITIES.get(personality)
        self.error_display_seconds = error_display_seconds
        self.resume_delay = resume_delay
        self.on_change = on_change
        self.on_conversation_id = on_conversation_id

        self.dictation: DictationSession | None = None
        if dictation_engine is not None:
            self.dictation = DictationSession(
                dictation_engine,
                continuous=False,
                on_final=self._on_final_transcript,
                on_transcript=self._on_live_transcript,
                on_error=self._on_dictation_error,
            )

        self.state = ConversationLoopState(conversation_id=conversation_id)
        self.generation = 0
        self.requests_sent = 0
        self._in_flight: asyncio.Task | None = None
        self._utterance_id: str | None = None
        self._error_timer: asyncio.TimerHandle | None = None
        self._resume_timer: asyncio.TimerHandle | None = None
        self._closed = False

    @property
    def phase(self) -> LoopPhase:
        return self.state.phase

    @property
    def conversation_id(self) -> str | None:
        return self.state.conversation_id

    @property
    def supported(self) -> bool:
        return self.dictation is not None

    # ----------------- transitions -----------------
    def _set(self, phase: LoopPhase, status: str, **changes) -> None:
        self.state = self.state.model_copy(
            update={"phase": phase, "status_message": status, **changes}
        )
        logger.debug("Loop phase -> %s", phase.value)
        if self.on_change is not None:
            self.on_change(self.state)

    def start(self) -> bool:
        """Begin listening. Only valid from Idle or Error."""
        if self._closed or self.phase not in (LoopPhase.IDLE, LoopPhase.ERROR):
            return False
        if self.dictation is None:
            self._fail("Speech recognition is not supported in this environment.")
            return False
        self._cancel_error_timer()
        self._listen()
        return True

    def toggle(self) -> None:
        """Mic button: interrupt whatever is active, otherwise start listening."""
        if self.phase in (LoopPhase.IDLE, LoopPhase.ERROR):
            self.start()
        else:
            self.interrupt()

    def interrupt(self) -> None:
        phase = self.phase
        if phase is LoopPhase.SPEAKING:
            self._stop_speaking()
            self._set(LoopPhase.IDLE, "AI speech canceled.")
        elif phase is LoopPhase.LISTENING:
            self._cancel_resume_timer()
            self._set(LoopPhase.IDLE, "Listening stopped.")
            if self.dictation is not None:
                self.dictation.stop()
        elif phase is LoopPhase.THINKING:
            self.generation += 1
            self._set(LoopPhase.IDLE, "Request canceled.")
        elif phase is LoopPhase.ERROR:
            self._cancel_error_timer()
            self._set(LoopPhase.IDLE, "Tap the mic to restart.")

    def close(self) -> None:
        if self._closed:
            return
        self.generation += 1
        self._cancel_error_timer()
        self._cancel_resume_timer()
        self._stop_speaking()
        if self.dictation is not None:
            self.dictation.close()
        self._closed = True
        if self.phase is not LoopPhase.IDLE:
            self._set(LoopPhase.IDLE, "Conversation closed.")

    async def settle(self) -> None:
        """Wait for the in-flight generation request, if any, to resolve."""
        while self._in_flight is not None and not self._in_flight.done():
            await asyncio.shield(self._in_flight)

    # ----------------- listening -----------------
    def _listen(self) -> None:
        self._set(
            LoopPhase.LISTENING,
            "Listening...",
            last_utterance=Utterance(speaker="user", text=""),
        )
        self.dictation.start("")

    def _on_live_transcript(self, text: str) -> None:
        if self.phase is LoopPhase.LISTENING:
            self.state = self.state.model_copy(
                update={"last_utterance": Utterance(speaker="user", text=text)}
            )
            if self.on_change is not None:
                self.on_change(self.state)

    def _on_final_transcript(self, text: str) -> None:
        if self.phase is not LoopPhase.LISTENING:
            logger.info("Ignoring transcript finalized while %s", self.phase.value)
            return
        if not text.strip():
            self._set(LoopPhase.IDLE, "No speech detected. Tap the mic to try again.")
            return

        self._set(
            LoopPhase.THINKING,
            "AI is thinking...",
            last_utterance=Utterance(speaker="user", text=text),
        )
        previous = self._in_flight
        self._in_flight = asyncio.create_task(
            self._generate(text, self.generation, previous)
        )

    def _on_dictation_error(self, error: EngineError) -> None:
        if self.phase is LoopPhase.LISTENING:
            self._fail(f"Error: {error.code}. Tap the mic to restart.")

    # ----------------- thinking -----------------
    async def _generate(
        self, text: str, generation: int, previous: asyncio.Task | None
    ) -> None:
        if previous is not None and not previous.done():
            # One request at a time: let the stale one resolve first.
            with contextlib.suppress(Exception):
                await previous

        try:
            self.requests_sent += 1
            result = await self.exchange.complete(
                self.owner_id,
                text,
                conversation_id=self.conversation_id,
                system_prompt=self.system_prompt,
            )
        except Exception as exc:
            if generation != self.generation:
                logger.info("Discarding failure of stale request: %s", exc)
                return
            logger.error("Conversation request failed: %s", exc)
            self._fail(f"AI Error: {exc}")
            return

        if result.conversation_id != self.conversation_id:
            self.state = self.state.model_copy(
                update={"conversation_id": result.conversation_id}
            )
            if self.on_conversation_id is not None:
                self.on_conversation_id(result.conversation_id)

        if generation != self.generation or self._closed:
            logger.info("Discarding reply for stale request (generation %d)", generation)
            return

        self._set(
            LoopPhase.SPEAKING,
            "AI Speaking...",
            last_utterance=Utterance(speaker="assistant", text=result.text),
        )
        # Claim the id first: engines may report the end before speak() returns.
        self._utterance_id = uuid.uuid4().hex
        self.speech.speak(
            result.text,
            self.voice_id,
            on_end=self._on_speech_end,
            on_error=self._on_speech_error,
            on_superseded=self._on_speech_superseded,
            utterance_id=self._utterance_id,
        )

    # ----------------- speaking -----------------
    def _stop_speaking(self) -> None:
        if self._utterance_id is not None:
            self.speech.cancel(self._utterance_id)
            self._utterance_id = None

    def _owns(self, utterance_id: str) -> bool:
        return self.phase is LoopPhase.SPEAKING and utterance_id == self._utterance_id

    def _on_speech_end(self, utterance_id: str) -> None:
        if not self._owns(utterance_id):
            return
        self._utterance_id = None
        if self.dictation is None:
            self._set(LoopPhase.IDLE, "Conversation finished. Speech recognition disabled.")
            return
        if self.resume_delay > 0:
            self._set(LoopPhase.LISTENING, "Listening...")
            loop = asyncio.get_running_loop()
            self._resume_timer = loop.call_later(self.resume_delay, self._resume)
        else:
            self._listen()

    def _resume(self) -> None:
        self._resume_timer = None
        if self.phase is LoopPhase.LISTENING and not self._closed:
            self._listen()

    def _on_speech_error(self, utterance_id: str, message: str) -> None:
        if not self._owns(utterance_id):
            return
        self._utterance_id = None
        self._fail(f"Speech output failed: {message}")

    def _on_speech_superseded(self, utterance_id: str) -> None:
        if not self._owns(utterance_id):
            return
        self._utterance_id = None
        self._set(LoopPhase.IDLE, "AI speech canceled.")

    # ----------------- errors -----------------
    def _fail(self, message: str) -> None:
        self._cancel_error_timer()
        self._set(LoopPhase.ERROR, message)
        loop = asyncio.get_running_loop()
        self._error_timer = loop.call_later(self.error_display_seconds, self._recover)

    def _recover(self) -> None:
        self._error_timer = None
        if self.phase is LoopPhase.ERROR:
            self._set(LoopPhase.IDLE, "Tap the mic to restart.")

    def _cancel_error_timer(self) -> None:
        if self._error_timer is not None:
            self._error_timer.cancel()
            self._error_timer = None

    def _cancel_resume_timer(self) -> None:
        if self._resume_timer is not None:
            self._resume_timer.cancel()
            self._resume_timer = None
