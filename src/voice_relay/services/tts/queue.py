"""
Single-flight synthesis queue.

One process-wide speech synthesizer can drive only one synthesis at a time,
while every connection submits requests independently. The queue serializes
them:

    submit() → pending (FIFO) → active task → on_chunk* → on_complete
                                    │
                                    └── stop() / error → on_complete

States:
    Idle          no active request, nothing pending
    Synthesizing  exactly one active request streaming chunks
    Draining      the active request settled; the head of ``pending`` is
                  promoted immediately (or after ``drain_delay`` seconds)

Every request that is not abandoned by ``cleanup()`` receives exactly one
``on_complete`` call, after zero or more ``on_chunk`` calls or after
``on_error``. Callbacks may be plain functions or coroutine functions;
coroutine callbacks other than ``on_chunk`` run as separate tasks, so the
next request is promoted without waiting for them.
"""

import asyncio
import inspect
import logging
from collections import deque
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from voice_relay.services.tts.markup import (
    PerformanceMode,
    VoiceConfig,
    VoiceGender,
    build_ssml,
)
from voice_relay.services.tts.synthesizer import (
    SpeechSynthesizer,
    SynthesisError,
    SynthesizerFactory,
)

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[bytes], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[str], Union[None, Awaitable[None]]]
CompleteCallback = Callable[[], Union[None, Awaitable[None]]]


class _State(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DONE = "done"
    ABANDONED = "abandoned"


@dataclass(eq=False)
class _SynthesisRequest:
    text: Any
    on_chunk: Optional[ChunkCallback] = None
    on_error: Optional[ErrorCallback] = None
    on_complete: Optional[CompleteCallback] = None
    state: _State = _State.PENDING
    task: Optional[asyncio.Task] = None
    synthesizer: Optional[SpeechSynthesizer] = None


class SynthesisHandle:
    """Cancellable reference to one queued or in-flight synthesis request."""

    def __init__(self, queue: "SynthesisQueue", request: _SynthesisRequest):
        self._queue = queue
        self._request = request

    @property
    def done(self) -> bool:
        return self._request.state in (_State.DONE, _State.ABANDONED)

    def stop(self) -> None:
        """Stop the request. Safe to call repeatedly or after completion."""
        self._queue._stop(self._request)


class SynthesisQueue:
    """Serializes synthesis requests against one shared synthesizer."""

    def __init__(
        self,
        synthesizer_factory: SynthesizerFactory,
        voice: Optional[VoiceConfig] = None,
        *,
        drain_delay: float = 0.0,
    ):
        self._factory = synthesizer_factory
        self._voice = voice or VoiceConfig()
        self._drain_delay = drain_delay
        self._synthesizer: Optional[SpeechSynthesizer] = None
        self._retired: list[SpeechSynthesizer] = []
        self._pending: deque[_SynthesisRequest] = deque()
        self._active: Optional[_SynthesisRequest] = None
        self._drain_timer: Optional[asyncio.TimerHandle] = None
        self._background: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    # -- state ---------------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._active is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def voice_config(self) -> VoiceConfig:
        return self._voice

    def status(self) -> dict[str, Any]:
        return {"queue_length": len(self._pending), "busy": self.busy}

    # -- voice ---------------------------------------------------------------

    def set_voice_gender(self, gender: Union[VoiceGender, str]) -> VoiceConfig:
        """Switch voices. The cached synthesizer is dropped and recreated lazily."""
        voice = self._voice.with_gender(VoiceGender(gender))
        if voice != self._voice:
            self._voice = voice
            self._retire_synthesizer()
            logger.info(f"Voice switched to {voice.voice_name}")
        return self._voice

    def set_performance_mode(self, mode: Union[PerformanceMode, str]) -> VoiceConfig:
        """Applies to requests that start after the call."""
        self._voice = self._voice.with_performance_mode(PerformanceMode(mode))
        logger.info(f"Performance mode set to {self._voice.performance_mode.value}")
        return self._voice

    # -- public operations ---------------------------------------------------

    def submit(
        self,
        text: str,
        on_chunk: Optional[ChunkCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
    ) -> SynthesisHandle:
        """Queue ``text`` for synthesis and return its handle.

        Must be called from a running event loop. When the queue is idle the
        request starts right away; otherwise it waits behind earlier ones.
        """
        request = _SynthesisRequest(
            text=text,
            on_chunk=on_chunk,
            on_error=on_error,
            on_complete=on_complete,
        )
        self._pending.append(request)
        self._idle.clear()
        if self._drain_timer is None:
            self._drain()
        else:
            logger.debug(f"Synthesis queued behind drain ({len(self._pending)} pending)")
        return SynthesisHandle(self, request)

    async def join(self) -> None:
        """Wait until nothing is active or pending and callbacks have run."""
        await self._idle.wait()
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def cleanup(self) -> None:
        """Abandon every request and close the synthesizer.

        Abandoned requests receive no further callbacks.
        """
        abandoned = list(self._pending)
        self._pending.clear()
        for request in abandoned:
            request.state = _State.ABANDONED

        active = self._active
        self._active = None
        if active is not None:
            active.state = _State.ABANDONED
            self._cancel_request(active)

        if self._drain_timer is not None:
            self._drain_timer.cancel()
            self._drain_timer = None

        synthesizers = self._retired
        self._retired = []
        if self._synthesizer is not None:
            synthesizers.append(self._synthesizer)
            self._synthesizer = None
        self._idle.set()

        if active is not None and active.task is not None:
            if active.task is not asyncio.current_task():
                await asyncio.gather(active.task, return_exceptions=True)
        for synthesizer in synthesizers:
            await self._close_synthesizer(synthesizer)

        if active is not None or abandoned:
            count = len(abandoned) + (1 if active is not None else 0)
            logger.info(f"Synthesis queue cleaned up ({count} request(s) abandoned)")

    # -- internals -----------------------------------------------------------

    def _drain(self) -> None:
        self._drain_timer = None
        if self._active is not None:
            return
        if not self._pending:
            self._idle.set()
            return
        request = self._pending.popleft()
        request.state = _State.ACTIVE
        self._active = request
        request.task = asyncio.get_running_loop().create_task(self._run(request))

    def _schedule_drain(self) -> None:
        if self._drain_delay > 0 and self._pending:
            if self._drain_timer is None:
                loop = asyncio.get_running_loop()
                self._drain_timer = loop.call_later(self._drain_delay, self._drain)
        else:
            self._drain()

    def _acquire_synthesizer(self) -> SpeechSynthesizer:
        if self._synthesizer is None:
            self._synthesizer = self._factory(self._voice)
        return self._synthesizer

    async def _run(self, request: _SynthesisRequest) -> None:
        try:
            if not isinstance(request.text, str) or not request.text.strip():
                raise SynthesisError("Invalid text input")
            markup = build_ssml(request.text, self._voice)
            synthesizer = self._acquire_synthesizer()
            request.synthesizer = synthesizer
            async with aclosing(synthesizer.synthesize(markup)) as stream:
                async for chunk in stream:
                    if request.state is not _State.ACTIVE:
                        break
                    if chunk and request.on_chunk is not None:
                        result = request.on_chunk(chunk)
                        if inspect.isawaitable(result):
                            await result
        except asyncio.CancelledError:
            if request.state is _State.ACTIVE:
                # Cancelled by something other than stop() or cleanup()
                self._finish(request)
            raise
        except Exception as exc:
            if request.state is _State.ACTIVE:
                message = str(exc) if isinstance(exc, SynthesisError) else f"TTS Error: {exc}"
                logger.warning(f"Speech synthesis failed: {message}")
                self._finish(request, error=message)
            return

        if request.state is _State.ACTIVE:
            self._finish(request)

    def _finish(self, request: _SynthesisRequest, *, error: Optional[str] = None) -> None:
        """Settle ``request`` and promote the next one.

        Callbacks are fired, not awaited: the next request never waits on
        this one's consumer.
        """
        self._release(request)
        if error is not None:
            self._fire(request.on_error, error)
        self._fire(request.on_complete)
        self._schedule_drain()

    def _stop(self, request: _SynthesisRequest) -> None:
        if request.state is _State.PENDING:
            self._pending.remove(request)
            request.state = _State.DONE
            logger.debug("Removed pending synthesis request")
            self._fire(request.on_complete)
            if not self._pending and self._active is None:
                self._idle.set()
        elif request.state is _State.ACTIVE:
            self._cancel_request(request)
            logger.debug("Stopped active synthesis request")
            self._finish(request)

    def _cancel_request(self, request: _SynthesisRequest) -> None:
        if request.synthesizer is not None:
            try:
                request.synthesizer.cancel()
            except Exception:
                logger.warning("Failed to cancel speech synthesizer", exc_info=True)
        if request.task is not None and not request.task.done():
            request.task.cancel()

    def _release(self, request: _SynthesisRequest) -> None:
        request.state = _State.DONE
        if self._active is request:
            self._active = None
        if request.synthesizer is not None and request.synthesizer in self._retired:
            self._retired.remove(request.synthesizer)
            self._spawn(self._close_synthesizer(request.synthesizer))

    def _retire_synthesizer(self) -> None:
        synthesizer = self._synthesizer
        if synthesizer is None:
            return
        self._synthesizer = None
        if self._active is not None and self._active.synthesizer is synthesizer:
            self._retired.append(synthesizer)
        else:
            self._spawn(self._close_synthesizer(synthesizer))

    @staticmethod
    async def _close_synthesizer(synthesizer: SpeechSynthesizer) -> None:
        try:
            await synthesizer.aclose()
        except Exception:
            logger.warning("Failed to close speech synthesizer", exc_info=True)

    def _fire(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        """Invoke a callback from synchronous code; awaitables run as a task."""
        if callback is None:
            return
        try:
            result = callback(*args)
        except Exception:
            logger.exception("Synthesis callback failed")
            return
        if inspect.isawaitable(result):
            self._spawn(self._await(result))

    @staticmethod
    async def _await(awaitable: Awaitable[Any]) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception("Synthesis callback failed")

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


__all__ = ["SynthesisHandle", "SynthesisQueue"]
