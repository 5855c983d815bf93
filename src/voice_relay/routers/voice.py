"""API routes for the process-wide voice configuration."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..schemas.voice import (
    PERFORMANCE_MODES,
    VOICE_GENDERS,
    PerformanceModeRequest,
    VoiceConfigPayload,
    VoiceConfigResponse,
    VoiceSwitchRequest,
)
from ..services.rate_limit import SlidingWindowRateLimiter
from ..services.tts import SynthesisQueue

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/voice", tags=["voice"])

RATE_LIMIT_MESSAGE = "Too many requests. Please wait a moment."


def get_synthesis_queue(request: Request) -> SynthesisQueue:
    queue = getattr(request.app.state, "synthesis_queue", None)
    if queue is None:  # pragma: no cover
        raise RuntimeError("Synthesis queue is not configured")
    return queue


def get_rate_limiter(request: Request) -> SlidingWindowRateLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:  # pragma: no cover
        raise RuntimeError("Rate limiter is not configured")
    return limiter


def enforce_rate_limit(
    request: Request,
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
) -> None:
    client_ip = request.client.host if request.client else "unknown"
    if not limiter.check(client_ip):
        logger.warning("Rate limit exceeded for %s", client_ip)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=RATE_LIMIT_MESSAGE
        )


def _voice_payload(queue: SynthesisQueue) -> VoiceConfigPayload:
    return VoiceConfigPayload.model_validate(queue.voice_config.as_dict())


@router.post(
    "/switch",
    response_model=VoiceConfigResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(enforce_rate_limit)],
)
async def switch_voice(
    payload: VoiceSwitchRequest,
    queue: SynthesisQueue = Depends(get_synthesis_queue),
) -> VoiceConfigResponse:
    gender = payload.gender
    mode = payload.performance_mode

    if gender and gender not in VOICE_GENDERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Invalid gender. Must be "male" or "female"',
        )
    if mode and mode not in PERFORMANCE_MODES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Invalid performance mode. Must be "fast", "balanced", or "quality"',
        )

    if gender:
        queue.set_voice_gender(gender)
    if mode:
        queue.set_performance_mode(mode)

    return VoiceConfigResponse(
        message=(
            f"Voice switched to {gender or 'current'} with "
            f"{mode or 'current'} performance mode"
        ),
        voice_config=_voice_payload(queue),
    )


@router.post(
    "/performance",
    response_model=VoiceConfigResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(enforce_rate_limit)],
)
async def set_performance_mode(
    payload: PerformanceModeRequest,
    queue: SynthesisQueue = Depends(get_synthesis_queue),
) -> VoiceConfigResponse:
    if not payload.mode or payload.mode not in PERFORMANCE_MODES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Invalid performance mode. Must be "fast", "balanced", or "quality"',
        )

    queue.set_performance_mode(payload.mode)
    return VoiceConfigResponse(
        message=f"Performance mode switched to {payload.mode}",
        voice_config=_voice_payload(queue),
    )


@router.get(
    "/current",
    response_model=VoiceConfigResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(enforce_rate_limit)],
)
async def read_current_voice(
    queue: SynthesisQueue = Depends(get_synthesis_queue),
) -> VoiceConfigResponse:
    return VoiceConfigResponse(voice_config=_voice_payload(queue))
