"""Reply generation for user utterances via the completion provider."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Mapping, Optional, Protocol, Sequence

from ..config import Settings
from ..openrouter import (
    OpenRouterError,
    OpenRouterResponseError,
    OpenRouterTransportError,
)

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 500
HISTORY_WINDOW = 10

NO_CREDENTIALS_FALLBACK = "I'm here to listen. Could you tell me more about that?"
STATUS_FALLBACK = "I understand you're sharing something important. Please continue."
MALFORMED_FALLBACK = "I'm listening. Could you elaborate on that?"

FALLBACK_RESPONSES: tuple[str, ...] = (
    "I feel like there's something really important you're sharing with me. I want to make sure I understand - can you tell me more?",
    "What you're saying really resonates with me. I can sense there's a lot going on beneath the surface. How are you holding up with all of this?",
    "I'm right here with you. Sometimes the connection gets a bit wonky, but I'm still listening. What's been weighing on your heart?",
    "I can feel that this means a lot to you. I don't want to miss anything important - can you walk me through what's happening?",
    "You know what? I think what you're sharing is really significant. I want to give it the attention it deserves. Can you help me understand better?",
    "I'm sensing there's so much depth to what you're experiencing. I really want to be here for you - can you share more about how this feels?",
    "Something tells me there's a story here that matters deeply to you. I'm here to listen - what's going on in your world right now?",
)


class CompletionProvider(Protocol):
    """Remote chat-completion API as seen by :class:`CompletionClient`."""

    @property
    def has_credentials(self) -> bool: ...

    async def complete(
        self, messages: Sequence[Mapping[str, str]], **options: Any
    ) -> str: ...


class CompletionClient:
    """Turn an utterance plus bounded history into exactly one reply string.

    ``get_reply`` never raises: every provider failure maps to one of the
    fallback strings above so the conversation can always continue.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        settings: Settings,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._provider = provider
        self._system_prompt = settings.system_prompt
        self._timeout = settings.completion_timeout
        self._rng = rng or random.Random()

    def build_messages(
        self, user_input: str, history: Sequence[Mapping[str, str]]
    ) -> list[dict[str, str]]:
        messages = [{"role": "system", "content": self._system_prompt}]
        messages.extend(
            {"role": entry["role"], "content": entry["content"]}
            for entry in list(history)[-HISTORY_WINDOW:]
        )
        messages.append({"role": "user", "content": user_input[:MAX_INPUT_CHARS]})
        return messages

    def random_fallback(self) -> str:
        return self._rng.choice(FALLBACK_RESPONSES)

    async def get_reply(
        self, user_input: str, history: Sequence[Mapping[str, str]] = ()
    ) -> str:
        if not self._provider.has_credentials:
            logger.error("OpenRouter API key not configured")
            return NO_CREDENTIALS_FALLBACK

        messages = self.build_messages(user_input, history)
        try:
            return await asyncio.wait_for(
                self._provider.complete(messages), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Completion request timed out after %.1fs", self._timeout)
            return self.random_fallback()
        except OpenRouterTransportError as exc:
            logger.warning("Completion transport failure: %s", exc.detail)
            return self.random_fallback()
        except OpenRouterResponseError as exc:
            logger.error("Invalid completion response structure: %s", exc.detail)
            return MALFORMED_FALLBACK
        except OpenRouterError as exc:
            logger.error("Completion API error: %s - %s", exc.status_code, exc.detail)
            return STATUS_FALLBACK
        except Exception:
            logger.exception("Error getting completion reply")
            return self.random_fallback()


__all__ = [
    "CompletionClient",
    "CompletionProvider",
    "FALLBACK_RESPONSES",
    "HISTORY_WINDOW",
    "MALFORMED_FALLBACK",
    "MAX_INPUT_CHARS",
    "NO_CREDENTIALS_FALLBACK",
    "STATUS_FALLBACK",
]
