"""OpenRouter chat-completion client."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Mapping, Sequence

import httpx
from fastapi import status

from .config import Settings

logger = logging.getLogger(__name__)


class OpenRouterError(Exception):
    """Wrap transport or API failures when communicating with OpenRouter."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail


class OpenRouterTransportError(OpenRouterError):
    """The request never produced an HTTP response (connect, read, timeout)."""


class OpenRouterResponseError(OpenRouterError):
    """OpenRouter answered with a payload that has no usable reply."""


class OpenRouterClient:
    """Client responsible for chat completions from OpenRouter."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(self, settings: Settings):
        self._settings = settings

    @property
    def has_credentials(self) -> bool:
        key = self._settings.openrouter_api_key
        return bool(key and key.get_secret_value())

    def _client_key(self) -> tuple[str, float]:
        return (self._base_url, float(self._settings.completion_timeout))

    async def _get_http_client(self) -> httpx.AsyncClient:
        key = self._client_key()
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                timeout = httpx.Timeout(self._settings.completion_timeout, connect=5.0)
                limits = httpx.Limits(
                    max_connections=50,
                    max_keepalive_connections=20,
                )
                client = httpx.AsyncClient(
                    timeout=timeout,
                    limits=limits,
                    http2=True,
                )
                self.__class__._client_pool[key] = client
        return client

    @property
    def _headers(self) -> dict[str, str]:
        api_key = self._settings.openrouter_api_key
        headers = {
            "Authorization": f"Bearer {api_key.get_secret_value() if api_key else ''}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self._settings.openrouter_app_url:
            referer = str(self._settings.openrouter_app_url)
            headers["HTTP-Referer"] = referer
            headers["Referer"] = referer
        if self._settings.openrouter_app_name:
            headers["X-Title"] = self._settings.openrouter_app_name
        return headers

    @property
    def _base_url(self) -> str:
        """Return the OpenRouter API base URL without a trailing slash."""

        return str(self._settings.openrouter_base_url).rstrip("/")

    def build_payload(
        self, messages: Sequence[Mapping[str, str]], **options: Any
    ) -> dict[str, Any]:
        """Merge configured sampling defaults with per-call overrides."""

        payload: dict[str, Any] = {
            "model": self._settings.completion_model,
            "messages": [dict(message) for message in messages],
            "max_tokens": self._settings.completion_max_tokens,
            "temperature": self._settings.completion_temperature,
            "top_p": self._settings.completion_top_p,
            "frequency_penalty": self._settings.completion_frequency_penalty,
            "presence_penalty": self._settings.completion_presence_penalty,
            "stream": False,
        }
        payload.update({k: v for k, v in options.items() if v is not None})
        return payload

    async def complete(
        self, messages: Sequence[Mapping[str, str]], **options: Any
    ) -> str:
        """Return the assistant reply for ``messages``.

        Raises ``OpenRouterError`` for non-success responses,
        ``OpenRouterTransportError`` when no response arrived and
        ``OpenRouterResponseError`` when the payload carries no reply text.
        """

        payload = self.build_payload(messages, **options)

        client = await self._get_http_client()
        try:
            response = await client.post(
                f"{self._base_url}/chat/completions",
                headers=self._headers,
                json=payload,
            )
        except httpx.HTTPError as exc:
            raise OpenRouterTransportError(
                status.HTTP_502_BAD_GATEWAY, str(exc) or exc.__class__.__name__
            ) from exc

        if response.status_code >= 400:
            detail = self._extract_error_detail(response.content)
            raise OpenRouterError(response.status_code, detail)

        try:
            body = response.json()
        except ValueError as exc:
            raise OpenRouterResponseError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        return self._extract_reply_text(body)

    @staticmethod
    def _extract_reply_text(payload: Any) -> str:
        if not isinstance(payload, Mapping):
            raise OpenRouterResponseError(
                status.HTTP_502_BAD_GATEWAY, "Completion response is not an object"
            )
        choices = payload.get("choices")
        if not isinstance(choices, Sequence) or not choices:
            raise OpenRouterResponseError(
                status.HTTP_502_BAD_GATEWAY, "Completion response missing choices"
            )
        message_container = choices[0]
        if not isinstance(message_container, Mapping):
            raise OpenRouterResponseError(
                status.HTTP_502_BAD_GATEWAY, "Completion response missing message"
            )
        message = message_container.get("message")
        if not isinstance(message, Mapping):
            raise OpenRouterResponseError(
                status.HTTP_502_BAD_GATEWAY, "Completion response missing message"
            )
        content = message.get("content")
        if isinstance(content, str):
            text = content.strip()
        elif isinstance(content, Sequence):
            fragments: list[str] = []
            for item in content:
                if not isinstance(item, Mapping):
                    continue
                if item.get("type") == "text" and isinstance(item.get("text"), str):
                    fragments.append(item["text"])
            text = "".join(fragments).strip()
        else:
            text = ""
        if not text:
            raise OpenRouterResponseError(
                status.HTTP_502_BAD_GATEWAY, "Completion response missing content"
            )
        return text

    async def aclose(self) -> None:
        await self.__class__.aclose_shared()

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("Failed to close pooled OpenRouter client", exc_info=True)

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "OpenRouter returned an empty error response."
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            return payload.get("error") or payload
        return payload


__all__ = [
    "OpenRouterClient",
    "OpenRouterError",
    "OpenRouterResponseError",
    "OpenRouterTransportError",
]
