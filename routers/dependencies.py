from fastapi import Request

from backend import RedisBackend
from engine.service import RoomEngine


def get_engine(request: Request) -> RoomEngine:
    return request.app.state.engine


def get_backend(request: Request) -> RedisBackend:
    return request.app.state.engine.store
