"""Tests for the per-connection conversation protocol."""

from __future__ import annotations

import asyncio
import base64
import random
from dataclasses import dataclass, field
from typing import Any, Optional

import pytest
from pydantic import SecretStr

from conftest import FakeSynthesizer
from voice_relay.config import Settings
from voice_relay.services.completion import FALLBACK_RESPONSES, CompletionClient
from voice_relay.services.conversation import LOCAL_FALLBACK_REPLY, ConnectionHandler
from voice_relay.services.greetings import CONVERSATION_STARTERS
from voice_relay.services.tts import SynthesisError, SynthesisQueue
from voice_relay.services.voice_session import SessionRegistry

AUDIO = {"type": "audio", "audio": base64.b64encode(b"audio").decode("ascii")}


class StubProvider:
    has_credentials = True

    def __init__(self, reply: str = "That sounds really hard.", *, delay: float = 0.0):
        self.reply = reply
        self.delay = delay
        self.release: Optional[asyncio.Event] = None
        self.calls: list[list[dict[str, str]]] = []

    async def complete(self, messages, **options):
        self.calls.append(list(messages))
        if self.release is not None:
            await self.release.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.reply


@dataclass
class Harness:
    handler: ConnectionHandler
    registry: SessionRegistry
    queue: SynthesisQueue
    provider: StubProvider
    synthesizers: list[FakeSynthesizer]
    sent: list[dict[str, Any]] = field(default_factory=list)
    response_gate: Optional[asyncio.Event] = None
    response_waiting: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def session(self):
        return self.registry.get(self.handler.connection_id)

    def types(self) -> list[str]:
        return [message["type"] for message in self.sent]

    async def send(self, message: dict[str, Any]) -> None:
        await self.handler.dispatch(message)
        await self.queue.join()


def make_harness(
    provider: Optional[StubProvider] = None,
    *,
    gate: Optional[asyncio.Event] = None,
    synthesis_error: Optional[Exception] = None,
    **settings_overrides,
) -> Harness:
    provider = provider or StubProvider()
    registry = SessionRegistry()
    synthesizers: list[FakeSynthesizer] = []

    def factory(voice):
        synthesizer = FakeSynthesizer(voice, (b"audio",), gate=gate, error=synthesis_error)
        synthesizers.append(synthesizer)
        return synthesizer

    queue = SynthesisQueue(factory)
    settings = Settings(
        openrouter_api_key=SecretStr("test"),
        system_prompt="You are a test therapist.",
        **settings_overrides,
    )
    completion = CompletionClient(provider, settings, rng=random.Random(3))
    sent: list[dict[str, Any]] = []

    async def emit(message: dict[str, Any]) -> None:
        if message["type"] == "response" and harness.response_gate is not None:
            harness.response_waiting.set()
            await harness.response_gate.wait()
        sent.append(message)

    handler = ConnectionHandler(
        "conn-1", emit, registry, queue, completion, rng=random.Random(3)
    )
    harness = Harness(handler, registry, queue, provider, synthesizers, sent)
    return harness


async def start_session(harness: Harness) -> None:
    harness.handler.on_connect()
    await harness.send({"type": "session-start"})
    harness.sent.clear()


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def test_connect_creates_inactive_session():
    harness = make_harness()

    harness.handler.on_connect()

    assert harness.session is not None
    assert not harness.session.active
    assert harness.session.history == []


@pytest.mark.asyncio
async def test_session_start_greets_speaks_and_signals_ready():
    harness = make_harness()
    harness.handler.on_connect()

    await harness.send({"type": "session-start"})

    assert harness.session.active
    assert harness.sent[0]["type"] == "response"
    assert harness.sent[0]["text"] in CONVERSATION_STARTERS
    assert harness.sent[1:] == [AUDIO, {"type": "ready"}]
    assert harness.session.history == []
    assert harness.registry.get_handle("conn-1") is None


@pytest.mark.asyncio
async def test_utterance_gets_reply_and_audio():
    harness = make_harness()
    await start_session(harness)

    await harness.send({"type": "utterance", "text": "  I feel anxious today  "})

    assert harness.provider.calls == [
        [
            {"role": "system", "content": "You are a test therapist."},
            {"role": "user", "content": "I feel anxious today"},
        ]
    ]
    assert harness.session.history == [
        {"role": "user", "content": "I feel anxious today"},
        {"role": "assistant", "content": "That sounds really hard."},
    ]
    assert harness.sent == [{"type": "response", "text": "That sounds really hard."}, AUDIO]


@pytest.mark.asyncio
async def test_second_utterance_sends_prior_history():
    harness = make_harness()
    await start_session(harness)

    await harness.send({"type": "utterance", "text": "I feel anxious today"})
    await harness.send({"type": "utterance", "text": "Work has been a lot"})

    last_call = harness.provider.calls[-1]
    assert [message["role"] for message in last_call] == [
        "system",
        "user",
        "assistant",
        "user",
    ]
    assert last_call[-1]["content"] == "Work has been a lot"
    assert len(harness.session.history) == 4


@pytest.mark.asyncio
async def test_completion_timeout_still_replies():
    harness = make_harness(StubProvider(delay=1.0), completion_timeout=0.01)
    await start_session(harness)

    await harness.send({"type": "utterance", "text": "I feel anxious today"})

    history = harness.session.history
    assert len(history) == 2
    assert history[1]["role"] == "assistant"
    assert history[1]["content"] in FALLBACK_RESPONSES
    assert harness.sent[0] == {"type": "response", "text": history[1]["content"]}


@pytest.mark.asyncio
async def test_empty_reply_falls_back_locally():
    harness = make_harness(StubProvider(reply=""))
    await start_session(harness)

    await harness.send({"type": "utterance", "text": "I feel anxious today"})

    assert harness.sent == [{"type": "response", "text": LOCAL_FALLBACK_REPLY}, AUDIO]
    assert harness.session.history == [
        {"role": "user", "content": "I feel anxious today"}
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   ", "a", 42, None, "x" * 1001])
async def test_invalid_utterances_are_dropped(text):
    harness = make_harness()
    await start_session(harness)

    await harness.send({"type": "utterance", "text": text})

    assert harness.provider.calls == []
    assert harness.session.history == []
    assert harness.sent == []


@pytest.mark.asyncio
async def test_utterance_before_session_start_is_dropped():
    harness = make_harness()
    harness.handler.on_connect()

    await harness.send({"type": "utterance", "text": "Hello there"})

    assert harness.provider.calls == []
    assert harness.sent == []


@pytest.mark.asyncio
async def test_long_utterance_is_truncated_for_completion():
    harness = make_harness()
    await start_session(harness)

    await harness.send({"type": "utterance", "text": "y" * 900})

    assert harness.provider.calls[0][-1]["content"] == "y" * 500
    assert harness.session.history[0]["content"] == "y" * 500


@pytest.mark.asyncio
async def test_history_stays_capped_over_long_conversation():
    harness = make_harness()
    await start_session(harness)

    for index in range(8):
        await harness.send({"type": "utterance", "text": f"Thought number {index}"})

    assert len(harness.session.history) == 12
    assert harness.session.history[0]["content"] == "Thought number 2"


@pytest.mark.asyncio
async def test_repeated_interrupt_without_audio_is_harmless():
    harness = make_harness()
    await start_session(harness)

    await harness.send({"type": "interrupt"})
    await harness.send({"type": "interrupt"})

    assert harness.sent == []
    assert harness.session.active


@pytest.mark.asyncio
@pytest.mark.parametrize("event", ["interrupt", "speech-detected"])
async def test_interrupt_silences_greeting(event):
    gate = asyncio.Event()
    harness = make_harness(gate=gate)
    harness.handler.on_connect()

    await harness.handler.dispatch({"type": "session-start"})
    await settle()
    await harness.handler.dispatch({"type": event})
    gate.set()
    await harness.queue.join()

    assert harness.types() == ["response", "ready"]
    assert harness.synthesizers[0].cancel_calls == 1
    assert harness.registry.get_handle("conn-1") is None


@pytest.mark.asyncio
async def test_new_utterance_stops_previous_reply():
    gate = asyncio.Event()
    harness = make_harness(gate=gate)
    harness.handler.on_connect()

    await harness.handler.dispatch({"type": "session-start"})
    await settle()
    await harness.handler.dispatch({"type": "utterance", "text": "Sorry to cut in"})
    gate.set()
    await harness.queue.join()

    assert harness.types().count("audio") == 1
    assert "ready" in harness.types()
    assert harness.sent[-1] == AUDIO


@pytest.mark.asyncio
async def test_reply_arriving_after_session_end_is_dropped():
    provider = StubProvider()
    provider.release = asyncio.Event()
    harness = make_harness(provider)
    await start_session(harness)
    markups_before = len(harness.synthesizers[0].markups)

    pending = asyncio.create_task(
        harness.handler.dispatch({"type": "utterance", "text": "I feel anxious today"})
    )
    await settle()
    await harness.handler.dispatch({"type": "session-end"})
    provider.release.set()
    await pending
    await harness.queue.join()

    assert harness.sent == []
    assert harness.session is None
    assert len(harness.synthesizers[0].markups) == markups_before


@pytest.mark.asyncio
async def test_session_end_then_restart():
    harness = make_harness()
    await start_session(harness)
    await harness.send({"type": "utterance", "text": "I feel anxious today"})

    await harness.send({"type": "session-end"})
    assert harness.session is None

    await harness.send({"type": "utterance", "text": "Are you there?"})
    assert len(harness.provider.calls) == 1

    await harness.send({"type": "session-start"})
    assert harness.session.active
    assert harness.session.history == []


@pytest.mark.asyncio
async def test_synthesis_failure_is_reported():
    harness = make_harness(
        synthesis_error=SynthesisError("Speech synthesis failed: HTTP 401")
    )
    harness.handler.on_connect()

    await harness.send({"type": "session-start"})

    assert harness.types() == ["response", "error", "ready"]
    assert harness.sent[1] == {
        "type": "error",
        "message": "Voice synthesis failed: Speech synthesis failed: HTTP 401",
    }


@pytest.mark.asyncio
async def test_handler_failure_becomes_error_event(monkeypatch: pytest.MonkeyPatch):
    harness = make_harness()
    harness.handler.on_connect()

    async def broken():
        raise RuntimeError("boom")

    monkeypatch.setattr(harness.handler, "on_interrupt", broken)
    await harness.send({"type": "interrupt"})

    assert harness.sent == [{"type": "error", "message": "Failed to process interrupt: boom"}]


@pytest.mark.asyncio
@pytest.mark.parametrize("message", [{"type": "dance"}, {"text": "no type"}, ["interrupt"]])
async def test_unknown_messages_are_ignored(message):
    harness = make_harness()
    harness.handler.on_connect()

    await harness.send(message)

    assert harness.sent == []


@pytest.mark.asyncio
async def test_disconnect_stops_audio_and_removes_session():
    gate = asyncio.Event()
    harness = make_harness(gate=gate)
    harness.handler.on_connect()

    await harness.handler.dispatch({"type": "session-start"})
    await settle()
    harness.handler.on_disconnect()
    gate.set()
    await harness.queue.join()

    assert harness.types() == ["response"]
    assert harness.session is None
    assert harness.registry.get_handle("conn-1") is None
    assert len(harness.registry) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("event", ["interrupt", "speech-detected"])
async def test_barge_in_while_greeting_is_sent_skips_greeting_audio(event):
    harness = make_harness()
    harness.response_gate = asyncio.Event()
    harness.handler.on_connect()

    starting = asyncio.create_task(harness.handler.dispatch({"type": "session-start"}))
    await asyncio.wait_for(harness.response_waiting.wait(), timeout=1.0)
    await harness.handler.dispatch({"type": event})
    harness.response_gate.set()
    await starting
    await harness.queue.join()

    assert harness.types() == ["response", "ready"]
    assert harness.synthesizers == []
    assert harness.registry.get_handle("conn-1") is None
    assert harness.session.active


@pytest.mark.asyncio
@pytest.mark.parametrize("event", ["interrupt", "speech-detected"])
async def test_barge_in_while_reply_is_sent_skips_reply_audio(event):
    harness = make_harness()
    await start_session(harness)
    markups_before = len(harness.synthesizers[0].markups)
    harness.response_gate = asyncio.Event()

    replying = asyncio.create_task(
        harness.handler.dispatch({"type": "utterance", "text": "I feel anxious today"})
    )
    await asyncio.wait_for(harness.response_waiting.wait(), timeout=1.0)
    await harness.handler.dispatch({"type": event})
    harness.response_gate.set()
    await replying
    await harness.queue.join()

    assert harness.sent == [{"type": "response", "text": "That sounds really hard."}]
    assert len(harness.synthesizers[0].markups) == markups_before
    assert len(harness.session.history) == 2


@pytest.mark.asyncio
async def test_reply_without_barge_in_is_still_spoken_after_slow_send():
    harness = make_harness()
    await start_session(harness)
    harness.response_gate = asyncio.Event()

    replying = asyncio.create_task(
        harness.handler.dispatch({"type": "utterance", "text": "I feel anxious today"})
    )
    await asyncio.wait_for(harness.response_waiting.wait(), timeout=1.0)
    harness.response_gate.set()
    await replying
    await harness.queue.join()

    assert harness.sent == [{"type": "response", "text": "That sounds really hard."}, AUDIO]
