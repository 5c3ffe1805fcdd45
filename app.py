from contextlib import asynccontextmanager
from typing import Optional
import os

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend import RedisBackend
from constants import CORS_ALLOWED_ORIGINS, REDIS_HOST, REDIS_PORT
from engine.service import RoomEngine
from logging_config import get_logger, setup_logging
from routers.messages import messages_router
from routers.rooms import rooms_router
from sockets import register_handlers

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine: RoomEngine = app.state.engine
    try:
        await engine.store.ping()
        logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
    except Exception as e:
        logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
        raise
    yield
    logger.info("Shutting down: waiting for background tasks")
    await engine.shutdown()
    await engine.store.close()


def create_app(backend: Optional[RedisBackend] = None, sio: Optional[socketio.AsyncServer] = None) -> FastAPI:
    """Build the HTTP app together with its Socket.IO server and room engine."""
    backend = backend or RedisBackend()
    # python-socketio wants the bare string "*" for "any origin"
    socket_origins = "*" if "*" in CORS_ALLOWED_ORIGINS else CORS_ALLOWED_ORIGINS
    sio = sio or socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=socket_origins)
    engine = RoomEngine(backend, sio)
    register_handlers(sio, engine)

    app = FastAPI(lifespan=lifespan)
    app.state.engine = engine
    app.state.sio = sio

    # Configure CORS to allow the configured origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)
    app.include_router(messages_router)

    logger.info("FastAPI application initialized")
    return app


def create_asgi_app(app: FastAPI) -> socketio.ASGIApp:
    # Socket.IO answers on /socket.io, everything else falls through to FastAPI
    return socketio.ASGIApp(app.state.sio, other_asgi_app=app)


app = create_app()
asgi_app = create_asgi_app(app)
