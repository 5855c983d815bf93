"""
TTS (Text-to-Speech) Services Package.

This package contains modules for single-flight speech synthesis:

- markup: builds SSML for the configured voice and performance mode
- synthesizer: streams encoded audio from the speech provider
- queue: serializes synthesis requests against one shared synthesizer

Architecture Overview:

    ┌──────────────┐     ┌────────────────┐     ┌─────────────────┐
    │ Connection A │────▶│                │     │                 │
    └──────────────┘     │ SynthesisQueue │────▶│ SpeechSynthesizer│
    ┌──────────────┐     │  (FIFO, one    │     │  (one per voice)│
    │ Connection B │────▶│   active)      │     └─────────────────┘
    └──────────────┘     └────────────────┘              │
           ▲                                             ▼
           └──────────── on_chunk / on_complete ◀── audio chunks

Each connection holds at most one SynthesisHandle; stopping it removes a
queued request or cancels the active one (barge-in).
"""

from .markup import PerformanceMode, VoiceConfig, VoiceGender, build_ssml
from .queue import SynthesisHandle, SynthesisQueue
from .synthesizer import (
    AzureSpeechSynthesizer,
    SpeechSynthesizer,
    SynthesisError,
    azure_synthesizer_factory,
)

__all__ = [
    "AzureSpeechSynthesizer",
    "PerformanceMode",
    "SpeechSynthesizer",
    "SynthesisError",
    "SynthesisHandle",
    "SynthesisQueue",
    "VoiceConfig",
    "VoiceGender",
    "azure_synthesizer_factory",
    "build_ssml",
]
