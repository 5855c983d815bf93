"""
SSML generation for the speech provider.

The amount of markup depends on the performance mode:

- fast: voice selection only
- balanced: adds a prosody wrapper (rate, pitch, volume)
- quality: adds an expressive style wrapper and short pauses before
  punctuation marks

Input text is always XML-escaped before it is embedded.
"""

import re
from dataclasses import dataclass, replace
from enum import Enum


class VoiceGender(str, Enum):
    MALE = "male"
    FEMALE = "female"


class PerformanceMode(str, Enum):
    FAST = "fast"
    BALANCED = "balanced"
    QUALITY = "quality"


_VOICE_NAMES = {
    VoiceGender.FEMALE: "en-US-AvaNeural",
    VoiceGender.MALE: "en-US-AndrewNeural",
}

_VOICE_STYLES = {
    VoiceGender.FEMALE: "warm",
    VoiceGender.MALE: "friendly",
}

_VOICE_DESCRIPTIONS = {
    VoiceGender.FEMALE: "Warm, empathetic female therapist with natural intonation",
    VoiceGender.MALE: "Warm, compassionate male therapist with conversational tone",
}

# (rate, pitch, volume)
_BALANCED_PROSODY = {
    VoiceGender.FEMALE: ("0.95", "+2%", "+5%"),
    VoiceGender.MALE: ("0.9", "+1%", "+5%"),
}

_QUALITY_PROSODY = {
    VoiceGender.FEMALE: ("0.95", "+3%", "+8%"),
    VoiceGender.MALE: ("0.9", "+2%", "+8%"),
}

_PAUSES = {".": "150ms", ",": "100ms", "!": "150ms"}
_QUESTION_PAUSE = "200ms"

_PUNCTUATION = re.compile(r"[.,!]")


@dataclass(frozen=True)
class VoiceConfig:
    """Process-wide voice selection."""

    gender: VoiceGender = VoiceGender.FEMALE
    performance_mode: PerformanceMode = PerformanceMode.BALANCED

    @property
    def voice_name(self) -> str:
        return _VOICE_NAMES[self.gender]

    @property
    def style(self) -> str:
        return _VOICE_STYLES[self.gender]

    @property
    def description(self) -> str:
        return _VOICE_DESCRIPTIONS[self.gender]

    def with_gender(self, gender: VoiceGender) -> "VoiceConfig":
        return replace(self, gender=VoiceGender(gender))

    def with_performance_mode(self, mode: PerformanceMode) -> "VoiceConfig":
        return replace(self, performance_mode=PerformanceMode(mode))

    def as_dict(self) -> dict[str, str]:
        return {
            "gender": self.gender.value,
            "name": self.voice_name,
            "style": self.style,
            "performanceMode": self.performance_mode.value,
            "description": self.description,
        }


def escape_text(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _insert_pauses(escaped: str) -> str:
    def _pause(match: re.Match) -> str:
        mark = match.group(0)
        return f'<break time="{_PAUSES[mark]}"/>{mark}'

    with_pauses = _PUNCTUATION.sub(_pause, escaped)
    # Only the first question mark gets a pause
    return with_pauses.replace("?", f'<break time="{_QUESTION_PAUSE}"/>?', 1)


def build_ssml(text: str, voice: VoiceConfig) -> str:
    """Return the SSML document used to synthesize ``text`` with ``voice``."""

    escaped = escape_text(text)
    name = voice.voice_name

    if voice.performance_mode is PerformanceMode.FAST:
        return (
            '<speak version="1.0" xml:lang="en-US">'
            f'<voice name="{name}">{escaped}</voice>'
            "</speak>"
        )

    if voice.performance_mode is PerformanceMode.BALANCED:
        rate, pitch, volume = _BALANCED_PROSODY[voice.gender]
        return (
            '<speak version="1.0" xml:lang="en-US">'
            f'<voice name="{name}">'
            f'<prosody rate="{rate}" pitch="{pitch}" volume="{volume}">'
            f"{escaped}"
            "</prosody>"
            "</voice>"
            "</speak>"
        )

    rate, pitch, volume = _QUALITY_PROSODY[voice.gender]
    return (
        '<speak version="1.0" xmlns="http://www.w3.org/2001/10/synthesis" '
        'xmlns:mstts="http://www.w3.org/2001/mstts" xml:lang="en-US">'
        f'<voice name="{name}">'
        f'<mstts:express-as style="{voice.style}" styledegree="1.3">'
        f'<prosody rate="{rate}" pitch="{pitch}" volume="{volume}">'
        '<break time="50ms"/>'
        f"{_insert_pauses(escaped)}"
        '<break time="200ms"/>'
        "</prosody>"
        "</mstts:express-as>"
        "</voice>"
        "</speak>"
    )


__all__ = [
    "PerformanceMode",
    "VoiceConfig",
    "VoiceGender",
    "build_ssml",
    "escape_text",
]
