"""Per-connection voice conversation protocol."""

import asyncio
import base64
import logging
import random
from typing import Any, Awaitable, Callable, Mapping, Optional

from voice_relay.services.completion import MAX_INPUT_CHARS, CompletionClient
from voice_relay.services.greetings import random_greeting
from voice_relay.services.tts import SynthesisHandle, SynthesisQueue
from voice_relay.services.voice_session import SessionRegistry, VoiceSession

logger = logging.getLogger(__name__)

Emit = Callable[[dict[str, Any]], Awaitable[None]]

MIN_UTTERANCE_CHARS = 2
MAX_UTTERANCE_CHARS = 1000
LOCAL_FALLBACK_REPLY = "I'm having trouble processing that. Could you please try again?"


class ConnectionHandler:
    """
    Drives one client connection.

    Inbound events (``{"type": ...}`` messages):
        session-start, utterance {text}, interrupt, speech-detected, session-end
    Outbound events:
        response {text}, audio {audio: base64}, ready, error {message}

    Utterances are handled one at a time in arrival order; interrupts and
    session-end are handled while an utterance waits for its reply. A reply
    that arrives after the session ended is dropped.
    """

    def __init__(
        self,
        connection_id: str,
        emit: Emit,
        registry: SessionRegistry,
        queue: SynthesisQueue,
        completion: CompletionClient,
        *,
        rng: Optional[random.Random] = None,
    ):
        self.connection_id = connection_id
        self._emit = emit
        self._registry = registry
        self._queue = queue
        self._completion = completion
        self._rng = rng or random.Random()
        self._utterance_lock = asyncio.Lock()
        self._closed = False
        # Bumped by every barge-in; a response whose send spans a bump is not spoken
        self._barge_in = 0
        self._events: dict[str, Callable[[Mapping[str, Any]], Awaitable[None]]] = {
            "session-start": lambda message: self.on_session_start(),
            "utterance": lambda message: self.on_utterance(message.get("text")),
            "interrupt": lambda message: self.on_interrupt(),
            "speech-detected": lambda message: self.on_speech_detected(),
            "session-end": lambda message: self.on_session_end(),
        }

    async def dispatch(self, message: Any) -> None:
        """Route one inbound message; failures become an ``error`` event."""
        event_type = message.get("type") if isinstance(message, Mapping) else None
        handler = self._events.get(event_type) if isinstance(event_type, str) else None
        if handler is None:
            logger.debug(f"Ignoring unknown event from {self.connection_id}: {event_type!r}")
            return
        try:
            await handler(message)
        except Exception as e:
            logger.error(f"Error handling {event_type} for {self.connection_id}: {e}", exc_info=True)
            await self._send({"type": "error", "message": f"Failed to process {event_type}: {e}"})

    def on_connect(self) -> VoiceSession:
        logger.info(f"Client connected: {self.connection_id}")
        return self._registry.create(self.connection_id)

    async def on_session_start(self) -> None:
        logger.info(f"Starting session for {self.connection_id}")
        session = self._registry.get(self.connection_id)
        if session is None:
            # Restart after session-end
            session = self._registry.create(self.connection_id)
        session.active = True
        session.update_activity()

        greeting = random_greeting(self._rng)
        await self._respond(session, greeting, notify_ready=True)

    async def on_utterance(self, text: Any) -> None:
        if not isinstance(text, str):
            logger.debug(f"Dropping non-text utterance from {self.connection_id}")
            return
        clean_text = text.strip()
        if not MIN_UTTERANCE_CHARS <= len(clean_text) <= MAX_UTTERANCE_CHARS:
            logger.debug(f"Dropping utterance of {len(clean_text)} chars from {self.connection_id}")
            return
        if not self._has_active_session():
            logger.debug(f"Dropping utterance without active session: {self.connection_id}")
            return

        logger.info(f'User speech ({self.connection_id}): "{clean_text[:100]}"')
        self._barge_in += 1

        async with self._utterance_lock:
            session = self._registry.get(self.connection_id)
            if session is None or not session.active:
                return

            # Barge-in: the previous reply must not keep playing
            self._registry.stop_handle(self.connection_id)

            user_text = clean_text[:MAX_INPUT_CHARS]
            prior_history = list(session.history)
            self._registry.append_history(session, "user", user_text)

            try:
                reply = await self._completion.get_reply(user_text, prior_history)
                if not reply:
                    raise ValueError("No response from completion service")
            except Exception as e:
                logger.error(f"Error processing user speech for {self.connection_id}: {e}", exc_info=True)
                if self._is_current(session):
                    await self._respond(session, LOCAL_FALLBACK_REPLY, report_errors=False)
                return

            if not self._is_current(session):
                logger.info(f"Session for {self.connection_id} ended before the reply arrived")
                return

            self._registry.append_history(session, "assistant", reply)
            await self._respond(session, reply)

    async def on_interrupt(self) -> None:
        self._barge_in += 1
        if self._registry.stop_handle(self.connection_id):
            logger.info(f"Interrupted synthesis for {self.connection_id}")

    async def on_speech_detected(self) -> None:
        self._barge_in += 1
        if self._registry.stop_handle(self.connection_id):
            logger.info(f"Speech detected, interrupted synthesis for {self.connection_id}")

    async def on_session_end(self) -> None:
        logger.info(f"Ending session for {self.connection_id}")
        self._registry.stop_handle(self.connection_id)
        self._registry.delete(self.connection_id)

    def on_disconnect(self) -> None:
        logger.info(f"Client disconnected: {self.connection_id}")
        self._closed = True
        self._registry.stop_handle(self.connection_id)
        self._registry.delete(self.connection_id)

    def _has_active_session(self) -> bool:
        session = self._registry.get(self.connection_id)
        return session is not None and session.active

    def _is_current(self, session: VoiceSession) -> bool:
        return (
            not self._closed
            and session.active
            and self._registry.get(self.connection_id) is session
        )

    async def _respond(
        self,
        session: VoiceSession,
        text: str,
        *,
        report_errors: bool = True,
        notify_ready: bool = False,
    ) -> None:
        """Send ``text`` as a response, then speak it unless the user barged in."""
        generation = self._barge_in
        await self._send({"type": "response", "text": text})
        if not self._is_current(session):
            return
        if generation != self._barge_in:
            logger.info(f"Barge-in during response for {self.connection_id}, not speaking it")
            if notify_ready:
                await self._send({"type": "ready"})
            return
        self._speak(text, report_errors=report_errors, notify_ready=notify_ready)

    def _speak(
        self,
        text: str,
        *,
        report_errors: bool = True,
        notify_ready: bool = False,
    ) -> SynthesisHandle:
        """Submit ``text`` for synthesis as this connection's only handle."""
        self._registry.stop_handle(self.connection_id)
        handle: Optional[SynthesisHandle] = None

        async def on_chunk(chunk: bytes) -> None:
            if self._closed:
                return
            await self._emit({"type": "audio", "audio": base64.b64encode(chunk).decode("ascii")})

        async def on_error(message: str) -> None:
            logger.warning(f"TTS error for {self.connection_id}: {message}")
            if report_errors:
                await self._send({"type": "error", "message": f"Voice synthesis failed: {message}"})

        async def on_complete() -> None:
            self._registry.clear_handle(self.connection_id, handle)
            if notify_ready:
                await self._send({"type": "ready"})

        handle = self._queue.submit(text, on_chunk, on_error, on_complete)
        self._registry.set_handle(self.connection_id, handle)
        return handle

    async def _send(self, message: dict[str, Any]) -> None:
        if self._closed:
            return
        try:
            await self._emit(message)
        except Exception as e:
            logger.warning(f"Error sending {message.get('type')} to {self.connection_id}: {e}")


__all__ = [
    "ConnectionHandler",
    "LOCAL_FALLBACK_REPLY",
    "MAX_UTTERANCE_CHARS",
    "MIN_UTTERANCE_CHARS",
]
