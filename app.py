"""
Voice Relay API
WebSocket conversational relay with natural turn-taking
"""

import functools
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket

from backend.relay.asr import WhisperTranscriber, build_transcriber
from backend.relay.config import RelaySettings, load_settings
from backend.relay.provider import Provider, build_provider
from backend.relay.session import Session, SessionRegistry
from backend.relay.websocket import handle as relay_ws_handle


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[RelaySettings] = None,
    provider: Optional[Provider] = None,
    transcriber: Optional[WhisperTranscriber] = None,
) -> FastAPI:
    settings = settings or load_settings()
    provider = provider or build_provider(settings)
    if transcriber is None:
        transcriber = build_transcriber(settings)
    registry = SessionRegistry(functools.partial(Session, provider=provider, settings=settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager with graceful shutdown"""
        logger.info("Starting Voice Relay API")
        logger.info(f"Provider: {provider.name}")
        logger.info(f"Speaking policy: {settings.relay_speaking_policy}")
        logger.info(f"Provider timeout: {settings.relay_provider_timeout_s}s")
        if transcriber is not None and not transcriber.model_available():
            logger.warning("Speech recognition model unavailable - audio-only turns go to the provider as-is")

        yield

        logger.info("Shutting down Voice Relay API")
        await registry.close_all("server_shutdown")
        logger.info("Shutdown cleanup completed")

    app = FastAPI(
        title="Voice Relay API",
        description="Real-time conversational relay with natural interruption",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.provider = provider
    app.state.registry = registry

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {"message": "Voice Relay API", "protocol": settings.relay_protocol_version}

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "active_sessions": len(registry), "provider": provider.name}

    @app.get("/api/relay_config")
    async def get_relay_config():
        return {"relay": settings.as_dict()}

    @app.websocket("/ws")
    async def ws_primary(ws: WebSocket):
        await relay_ws_handle(ws, registry, settings, transcriber)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host="0.0.0.0", port=8000)
