"""
FastAPI Main Application
Progress channel server: a WebSocket that pushes pipeline events to
subscribed clients, plus a liveness probe.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Protocol

import redis.asyncio as aioredis
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from ..config import get_settings
from ..models.events import ProgressEvent, SubscribeMessage
from ..services.progress_publisher import RedisProgressSubscriber

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class ProgressSource(Protocol):
    """Anything that can stream the events of one upload."""

    def stream(self, upload_id: str) -> AsyncIterator[ProgressEvent]: ...


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Connects to Redis pub/sub unless a progress source was injected.
    """
    logger.info("Starting progress channel server...")

    owned_subscriber: Optional[RedisProgressSubscriber] = None
    if getattr(app.state, "progress_source", None) is None:
        settings = get_settings()
        owned_subscriber = RedisProgressSubscriber(
            aioredis.Redis.from_url(settings.redis_url), settings.progress_channel_prefix
        )
        app.state.progress_source = owned_subscriber

    yield

    logger.info("Shutting down progress channel server...")
    if owned_subscriber is not None:
        await owned_subscriber.close()


async def _forward(websocket: WebSocket, send_lock: asyncio.Lock, source: ProgressSource, upload_id: str):
    async for event in source.stream(upload_id):
        async with send_lock:
            await websocket.send_text(event.to_json())


def create_app(progress_source: Optional[ProgressSource] = None) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        progress_source: Event source for the WebSocket; Redis pub/sub if omitted

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(title="ingestflow progress channel", lifespan=lifespan)
    app.state.progress_source = progress_source

    @app.get("/health", status_code=status.HTTP_200_OK)
    async def health_check() -> Dict[str, str]:
        """Basic health check."""
        return {"status": "ok"}

    @app.websocket("/ws")
    async def progress_socket(websocket: WebSocket):
        """
        Accepts ``{"type": "subscribe", "uploadId": ...}`` messages, any number
        per connection, and forwards every event for those uploads. All
        subscriptions end when the client disconnects.
        """
        await websocket.accept()
        source: ProgressSource = websocket.app.state.progress_source
        send_lock = asyncio.Lock()
        forwarders: Dict[str, asyncio.Task] = {}

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = SubscribeMessage.model_validate_json(raw)
                except ValidationError as e:
                    logger.warning(f"Ignoring invalid WebSocket message: {e.error_count()} error(s)")
                    continue

                if message.upload_id in forwarders:
                    continue
                forwarders[message.upload_id] = asyncio.create_task(
                    _forward(websocket, send_lock, source, message.upload_id)
                )
                logger.info(f"Client subscribed to upload {message.upload_id}")

        except WebSocketDisconnect:
            logger.info(f"Client disconnected, dropping {len(forwarders)} subscription(s)")
        finally:
            for task in forwarders.values():
                task.cancel()
            await asyncio.gather(*forwarders.values(), return_exceptions=True)

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "ingestflow.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
