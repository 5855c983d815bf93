"""Application factory for the voice relay service."""

from __future__ import annotations

import asyncio
import logging
import os
import random
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .openrouter import OpenRouterClient
from .routers.conversation import router as conversation_router
from .routers.voice import enforce_rate_limit, router as voice_router
from .services.completion import CompletionClient, CompletionProvider
from .services.rate_limit import SlidingWindowRateLimiter
from .services.tts import (
    PerformanceMode,
    SynthesisQueue,
    VoiceConfig,
    VoiceGender,
    azure_synthesizer_factory,
)
from .services.tts.synthesizer import SynthesizerFactory
from .services.voice_session import SessionRegistry

APP_VERSION = "1.0.0"

logger = logging.getLogger(__name__)


def _configure_logging(settings: Settings) -> None:
    """Configure logging based on LOG_LEVEL and the deployment environment."""
    # Load .env file first to ensure LOG_FILE is available
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    # Production stays quiet unless DEBUG is enabled
    if settings.is_production and not settings.debug:
        log_level = max(log_level, logging.WARNING)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handlers: list[logging.Handler] = []

    log_file = os.getenv("LOG_FILE")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,  # Override any existing configuration
    )

    logging.getLogger("voice_relay").setLevel(log_level)
    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    # Quiet down noisy third-party libraries
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def _check_environment(settings: Settings) -> None:
    missing = settings.missing_credentials()
    if not missing:
        logger.info("All environment variables are set")
        return

    logger.error("Missing environment variables: %s", ", ".join(missing))
    logger.error("Please check your .env file")
    if settings.is_production:
        raise SystemExit(1)


def create_app(
    settings: Optional[Settings] = None,
    *,
    completion_provider: Optional[CompletionProvider] = None,
    synthesizer_factory: Optional[SynthesizerFactory] = None,
    rng: Optional[random.Random] = None,
) -> FastAPI:
    settings = settings or get_settings()
    _configure_logging(settings)

    registry = SessionRegistry()
    queue = SynthesisQueue(
        synthesizer_factory or azure_synthesizer_factory(settings),
        VoiceConfig(
            gender=VoiceGender(settings.voice_gender),
            performance_mode=PerformanceMode(settings.performance_mode),
        ),
        drain_delay=settings.synthesis_drain_delay,
    )
    rng = rng or random.Random()
    completion = CompletionClient(
        completion_provider or OpenRouterClient(settings),
        settings,
        rng=rng,
    )
    rate_limiter = SlidingWindowRateLimiter(
        settings.rate_limit_max_requests,
        settings.rate_limit_window_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting voice relay server")
        _check_environment(settings)
        try:
            yield
        finally:
            logger.info("Shutting down gracefully...")
            registry.stop_all()
            try:
                await asyncio.wait_for(queue.cleanup(), timeout=10.0)
            except asyncio.TimeoutError:
                logger.warning("Synthesis queue cleanup timed out after 10s")
            except Exception as exc:
                logger.warning("Error during synthesis queue cleanup: %s", exc)
            await OpenRouterClient.aclose_shared()
            logger.info("Graceful shutdown complete")

    app = FastAPI(
        title="Voice Relay",
        version=APP_VERSION,
        description="Real-time voice conversation relay: completion replies spoken back as streamed audio.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.session_registry = registry
    app.state.synthesis_queue = queue
    app.state.completion_client = completion
    app.state.rate_limiter = rate_limiter
    app.state.rng = rng

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(voice_router)
    app.include_router(conversation_router)

    @app.get("/health", tags=["health"], dependencies=[Depends(enforce_rate_limit)])
    async def healthcheck(response: Response) -> dict[str, Any]:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        return {
            "status": "ok",
            "message": "Voice relay server is running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "connections": len(registry),
            "synthesis": queue.status(),
            "version": APP_VERSION,
        }

    return app


__all__ = ["create_app"]
