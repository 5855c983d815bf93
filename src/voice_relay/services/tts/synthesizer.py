import logging
from typing import AsyncIterator, Callable, Optional, Protocol

import httpx

from voice_relay.config import Settings
from voice_relay.services.tts.markup import VoiceConfig

logger = logging.getLogger(__name__)


class SynthesisError(Exception):
    """Raised when the speech provider cannot produce audio."""


class SpeechSynthesizer(Protocol):
    """A reusable speech-synthesis resource that drives one request at a time."""

    def synthesize(self, markup: str) -> AsyncIterator[bytes]: ...

    def cancel(self) -> None: ...

    async def aclose(self) -> None: ...


SynthesizerFactory = Callable[[VoiceConfig], SpeechSynthesizer]


class AzureSpeechSynthesizer:
    """
    Streams SSML synthesis from the Azure Speech REST endpoint.

    One instance is bound to one voice and keeps its own pooled
    httpx.AsyncClient, so creating it is comparatively expensive and
    instances are reused until the voice changes.

    - synthesize() returns an async iterator of encoded audio chunks
    - The first chunk is yielded as soon as bytes arrive, later chunks are
      coalesced to ``chunk_size`` bytes
    - cancel() ends the current stream at the next chunk boundary
    """

    def __init__(
        self,
        api_key: str,
        region: str,
        voice: VoiceConfig,
        *,
        output_format: str = "audio-24khz-160kbitrate-mono-mp3",
        chunk_size: int = 16 * 1024,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.voice = voice
        self.endpoint = f"https://{region}.tts.speech.microsoft.com/cognitiveservices/v1"
        self._api_key = api_key
        self._output_format = output_format
        self._chunk_size = chunk_size
        self._cancelled = False
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )
        logger.info(f"Created speech synthesizer for voice {voice.voice_name}")

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Ocp-Apim-Subscription-Key": self._api_key,
            "Content-Type": "application/ssml+xml",
            "X-Microsoft-OutputFormat": self._output_format,
            "User-Agent": "voice-relay",
        }

    async def synthesize(self, markup: str) -> AsyncIterator[bytes]:
        self._cancelled = False
        async with self._client.stream(
            "POST",
            self.endpoint,
            headers=self._headers,
            content=markup.encode("utf-8"),
        ) as response:
            if response.status_code >= 400:
                body = await response.aread()
                detail = body.decode("utf-8", errors="ignore").strip()
                raise SynthesisError(
                    f"Speech synthesis failed: HTTP {response.status_code}"
                    + (f" - {detail}" if detail else "")
                )

            async for chunk in self._buffered(response.aiter_bytes()):
                if self._cancelled:
                    logger.debug("Speech stream cancelled")
                    return
                yield chunk

    async def _buffered(self, stream: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        """
        Buffer small chunks into larger ones for more efficient websocket transmission.
        IMPORTANT: Yields the first chunk immediately to start audio playback ASAP.
        """
        buffer = bytearray()
        first_chunk_sent = False

        async for chunk in stream:
            if self._cancelled:
                return
            buffer.extend(chunk)

            if not first_chunk_sent and buffer:
                yield bytes(buffer)
                buffer.clear()
                first_chunk_sent = True
                continue

            while len(buffer) >= self._chunk_size:
                yield bytes(buffer[: self._chunk_size])
                del buffer[: self._chunk_size]

        if buffer:
            yield bytes(buffer)

    def cancel(self) -> None:
        self._cancelled = True

    async def aclose(self) -> None:
        await self._client.aclose()
        logger.info(f"Closed speech synthesizer for voice {self.voice.voice_name}")


def azure_synthesizer_factory(
    settings: Settings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SynthesizerFactory:
    """Return a factory creating Azure synthesizers from ``settings``."""

    def _create(voice: VoiceConfig) -> SpeechSynthesizer:
        if not settings.has_speech_credentials:
            raise SynthesisError("Azure credentials not configured")
        return AzureSpeechSynthesizer(
            settings.azure_speech_key.get_secret_value(),
            settings.azure_speech_region,
            voice,
            output_format=settings.speech_output_format,
            chunk_size=settings.speech_chunk_bytes,
            transport=transport,
        )

    return _create


__all__ = [
    "AzureSpeechSynthesizer",
    "SpeechSynthesizer",
    "SynthesisError",
    "SynthesizerFactory",
    "azure_synthesizer_factory",
]
