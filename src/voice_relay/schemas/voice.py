"""Voice configuration schemas for the HTTP API."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

VOICE_GENDERS = ("male", "female")
PERFORMANCE_MODES = ("fast", "balanced", "quality")


class VoiceConfigPayload(BaseModel):
    """Current voice selection as reported to clients."""

    model_config = ConfigDict(populate_by_name=True)

    gender: str
    name: str
    style: str
    performance_mode: str = Field(alias="performanceMode")
    description: str


class VoiceSwitchRequest(BaseModel):
    """Partial voice update - all fields optional, validated by the route."""

    model_config = ConfigDict(populate_by_name=True)

    gender: Optional[str] = Field(default=None)
    performance_mode: Optional[str] = Field(default=None, alias="performanceMode")


class PerformanceModeRequest(BaseModel):
    mode: Optional[str] = Field(default=None)


class VoiceConfigResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: Optional[str] = None
    voice_config: VoiceConfigPayload = Field(alias="voiceConfig")


__all__ = [
    "PERFORMANCE_MODES",
    "PerformanceModeRequest",
    "VOICE_GENDERS",
    "VoiceConfigPayload",
    "VoiceConfigResponse",
    "VoiceSwitchRequest",
]
