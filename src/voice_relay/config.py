"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

DEFAULT_SYSTEM_PROMPT = """You are Dr. Ava, a warm and experienced therapist. You speak naturally and conversationally, like a trusted friend who also happens to be a skilled therapist.

Validate feelings first, then offer gentle, thoughtful reflections. Ask more questions than you give answers and keep the focus on the client's experience. Avoid diagnosing, to-do lists and generic motivational quotes. If asked for advice, frame it as collaborative exploration ("Some people find it helpful when...").

Keep every reply short and spoken: 2-3 sentences. Never mention being an AI, virtual, or artificial."""


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = Field(
        default="development",
        validation_alias=AliasChoices("APP_ENV", "NODE_ENV", "environment"),
    )
    debug: bool = Field(
        default=False,
        validation_alias=AliasChoices("DEBUG", "debug"),
    )
    host: str = Field(
        default="0.0.0.0",
        validation_alias=AliasChoices("HOST", "host"),
    )
    port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        validation_alias=AliasChoices("PORT", "port"),
    )

    # Allowed browser origin in production
    frontend_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("FRONTEND_URL", "frontend_url"),
    )

    openrouter_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("OPENROUTER_API_KEY", "openrouter_api_key"),
    )
    openrouter_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://openrouter.ai/api/v1"),
        validation_alias=AliasChoices(
            "OPENROUTER_BASE_URL", "base_url", "openrouter_base_url"
        ),
    )
    openrouter_app_url: Optional[AnyHttpUrl] = Field(
        default_factory=lambda: AnyHttpUrl("http://localhost:3001"),
        validation_alias=AliasChoices(
            "OPENROUTER_APP_URL",
            "HTTP_REFERER",
            "http_referer",
            "openrouter_app_url",
        ),
    )
    openrouter_app_name: Optional[str] = Field(
        default="AI Therapist",
        validation_alias=AliasChoices(
            "OPENROUTER_APP_TITLE",
            "X_TITLE",
            "x_title",
            "openrouter_app_name",
        ),
    )
    completion_model: str = Field(
        default="openai/gpt-4o-mini",
        validation_alias=AliasChoices("OPENROUTER_MODEL", "completion_model"),
    )
    completion_timeout: float = Field(
        default=8.0,
        gt=0,
        validation_alias=AliasChoices("OPENROUTER_TIMEOUT", "completion_timeout"),
    )
    completion_max_tokens: int = Field(default=120, ge=1)
    completion_temperature: float = Field(default=0.8, ge=0, le=2)
    completion_top_p: float = Field(default=0.9, gt=0, le=1)
    completion_frequency_penalty: float = Field(default=0.2)
    completion_presence_penalty: float = Field(default=0.1)
    system_prompt: str = Field(
        default=DEFAULT_SYSTEM_PROMPT,
        validation_alias=AliasChoices("SYSTEM_PROMPT", "system_prompt"),
    )

    azure_speech_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("AZURE_SPEECH_KEY", "azure_speech_key"),
    )
    azure_speech_region: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AZURE_SPEECH_REGION", "azure_speech_region"),
    )
    speech_output_format: str = Field(
        default="audio-24khz-160kbitrate-mono-mp3",
        validation_alias=AliasChoices(
            "AZURE_SPEECH_OUTPUT_FORMAT", "speech_output_format"
        ),
    )
    speech_chunk_bytes: int = Field(
        default=16 * 1024,
        ge=1,
        validation_alias=AliasChoices("SPEECH_CHUNK_BYTES", "speech_chunk_bytes"),
    )
    voice_gender: Literal["male", "female"] = Field(
        default="female",
        validation_alias=AliasChoices("VOICE_GENDER", "voice_gender"),
    )
    performance_mode: Literal["fast", "balanced", "quality"] = Field(
        default="balanced",
        validation_alias=AliasChoices(
            "VOICE_PERFORMANCE_MODE", "performance_mode"
        ),
    )
    synthesis_drain_delay: float = Field(
        default=0.0,
        ge=0,
        validation_alias=AliasChoices(
            "SYNTHESIS_DRAIN_DELAY", "synthesis_drain_delay"
        ),
    )

    rate_limit_max_requests: int = Field(default=10, ge=1)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def cors_origins(self) -> list[str]:
        if self.is_production:
            return [self.frontend_url] if self.frontend_url else []
        return ["http://localhost:3000", "http://127.0.0.1:3000"]

    @property
    def has_speech_credentials(self) -> bool:
        return bool(
            self.azure_speech_key
            and self.azure_speech_key.get_secret_value()
            and self.azure_speech_region
        )

    def missing_credentials(self) -> list[str]:
        """Return the names of required credentials that are not configured."""

        missing: list[str] = []
        if not self.azure_speech_key or not self.azure_speech_key.get_secret_value():
            missing.append("AZURE_SPEECH_KEY")
        if not self.azure_speech_region:
            missing.append("AZURE_SPEECH_REGION")
        if (
            not self.openrouter_api_key
            or not self.openrouter_api_key.get_secret_value()
        ):
            missing.append("OPENROUTER_API_KEY")
        return missing


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["DEFAULT_SYSTEM_PROMPT", "Settings", "get_settings"]
