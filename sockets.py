"""
Socket.IO event wiring: parses every inbound payload, calls the engine, and
reports failures to the initiating connection as an ``error`` event.
"""
from typing import Awaitable, Callable, Type

from pydantic import BaseModel, ValidationError

from engine.service import RoomEngine
from errors import EngineError
from logging_config import get_logger
from schemas.events import (
    RoomEvent,
    VideoControlEvent,
    StreamStartEvent,
    ChangeEpisodeEvent,
    RoomMessageEvent,
    DeleteRoomMessageEvent,
    TransferHostEvent,
    SendMessageEvent,
    PinMessageEvent,
    MessageRefEvent,
)

logger = get_logger(__name__)

Action = Callable[[RoomEngine, str, BaseModel], Awaitable]

# event name -> (payload model, engine call)
EVENT_HANDLERS = {
    "join_room": (RoomEvent, lambda engine, sid, e: engine.join_room(sid, e.room_id)),
    "leave_room": (RoomEvent, lambda engine, sid, e: engine.leave_room(sid, e.room_id)),
    "request_room_state": (RoomEvent, lambda engine, sid, e: engine.request_room_state(sid, e.room_id)),
    "video_control": (VideoControlEvent, lambda engine, sid, e: engine.video_control(
        sid, e.room_id, e.action, e.time, e.event_id)),
    "request_host_sync": (RoomEvent, lambda engine, sid, e: engine.request_host_sync(sid, e.room_id)),
    "stream_start": (StreamStartEvent, lambda engine, sid, e: engine.stream_start(
        sid, e.room_id, e.episode_id, e.episode_number)),
    "end_live": (RoomEvent, lambda engine, sid, e: engine.end_live(sid, e.room_id)),
    "transfer_host": (TransferHostEvent, lambda engine, sid, e: engine.transfer_host(
        sid, e.room_id, e.new_host_id)),
    "change_episode": (ChangeEpisodeEvent, lambda engine, sid, e: engine.change_episode(
        sid, e.room_id, e.episode.id, e.episode.number)),
    "room_message": (RoomMessageEvent, lambda engine, sid, e: engine.room_message(
        sid, e.room_id, e.message, e.reply_to.id if e.reply_to else None)),
    "delete_room_message": (DeleteRoomMessageEvent, lambda engine, sid, e: engine.delete_room_message(
        sid, e.room_id, e.message_id)),
    "send_message": (SendMessageEvent, lambda engine, sid, e: engine.send_message(
        sid, e.message, e.avatar, e.deco, e.reply_id)),
    "pin_message": (PinMessageEvent, lambda engine, sid, e: engine.pin_message(sid, e.id, e.pinned_by)),
    "unpin_message": (MessageRefEvent, lambda engine, sid, e: engine.unpin_message(sid, e.id)),
    "delete_message": (MessageRefEvent, lambda engine, sid, e: engine.delete_message(sid, e.id)),
}


def make_handler(engine: RoomEngine, event: str, schema: Type[BaseModel], action: Action):
    async def handler(sid, data=None):
        try:
            payload = schema.model_validate(data if isinstance(data, dict) else {})
        except ValidationError as e:
            logger.info(f"Invalid {event} payload from {sid}: {e.error_count()} errors")
            await engine.report_error(sid, f"Invalid {event} payload")
            return

        try:
            await action(engine, sid, payload)
        except EngineError as e:
            logger.info(f"{event} from {sid} rejected: {e.message}")
            await engine.report_error(sid, e.message)
        except Exception as e:
            logger.error(f"Error handling {event} from {sid}: {e}", exc_info=True)
            await engine.report_error(sid, f"Failed to handle {event}")

    handler.__name__ = f"on_{event}"
    return handler


def register_handlers(sio, engine: RoomEngine) -> None:
    async def connect(sid, environ, auth=None):
        await engine.connect(sid, auth)

    async def disconnect(sid, reason=None):
        await engine.disconnect(sid)

    async def disconnect_user(sid, data=None):
        await engine.kick(sid)

    sio.on("connect", connect)
    sio.on("disconnect", disconnect)
    sio.on("disconnect_user", disconnect_user)
    for event, (schema, action) in EVENT_HANDLERS.items():
        sio.on(event, make_handler(engine, event, schema, action))
    logger.debug(f"Registered {len(EVENT_HANDLERS) + 3} socket event handlers")
