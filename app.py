from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from backend import RedisBackend
from constants import RelaySettings, load_settings
from errors import StorageError
from logging_config import get_logger, setup_logging
from relay.lifecycle import ConnectionHandler
from relay.registry import ConnectionRegistry
from relay.resolver import MembershipResolver
from relay.router import MessageRouter
from relay.storage import RelayStorage
from routers.rooms import rooms_router
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def create_app(backend=None, settings: Optional[RelaySettings] = None) -> FastAPI:
    """Build the relay application.

    The storage backend is connected at startup, not here; a startup failure
    (bad configuration, unreachable Redis) aborts the server before it serves.
    Tests pass an in-memory backend.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        relay_settings = settings or load_settings()
        storage_backend = backend or RedisBackend.from_settings(relay_settings)

        storage = RelayStorage(storage_backend, timeout=relay_settings.storage_timeout)
        registry = ConnectionRegistry()
        resolver = MembershipResolver(storage)
        router = MessageRouter(registry, resolver, storage, presence_room=relay_settings.presence_room,
                               send_timeout=relay_settings.send_timeout)

        app.state.settings = relay_settings
        app.state.storage = storage
        app.state.registry = registry
        app.state.handler = ConnectionHandler(registry, router, storage, history_limit=relay_settings.history_limit)

        try:
            await storage.reset_presence()
        except StorageError as e:
            logger.error(f"Could not reset user statuses on startup: {e}", exc_info=True)

        logger.info("Relay started")
        yield
        logger.info(f"Relay shutting down with {len(registry)} users online")

    app = FastAPI(lifespan=lifespan)

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins
        allow_credentials=True,
        allow_methods=["*"],  # Allow all HTTP methods
        allow_headers=["*"],  # Allow all headers
    )

    app.include_router(rooms_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "online_users": len(app.state.registry)}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Relay endpoint. Identity and room are bound by the first `join` (or `status`) frame."""
        handler: ConnectionHandler = websocket.app.state.handler
        await websocket.accept()
        connection = handler.open(websocket)

        try:
            message_count = 0
            while True:
                try:
                    data = await websocket.receive_text()
                except WebSocketDisconnect as e:
                    logger.info(f"WebSocket disconnected for connection {connection.id} (code {e.code})")
                    break
                message_count += 1
                logger.debug(f"Received frame #{message_count} from connection {connection.id}")
                await handler.handle_frame(connection, data)
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection.id}: {e}", exc_info=True)
            try:
                await websocket.close(code=1011)
            except Exception as close_error:
                logger.debug(f"Error closing WebSocket: {close_error}")
        finally:
            await handler.on_close(connection)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
