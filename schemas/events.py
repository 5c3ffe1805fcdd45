"""Inbound socket event payloads."""
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _as_text(value: Any) -> Any:
    # Clients send ids and short texts either as strings or as numbers
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class EventPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RoomEvent(EventPayload):
    room_id: str = Field(alias="roomId", min_length=1)

    @field_validator("room_id", mode="before")
    @classmethod
    def coerce_room_id(cls, value):
        return _as_text(value)


class VideoControlEvent(RoomEvent):
    action: str
    time: float = 0
    event_id: Optional[str] = Field(default=None, alias="eventId")

    @field_validator("event_id", mode="before")
    @classmethod
    def coerce_event_id(cls, value):
        return _as_text(value)


class StreamStartEvent(RoomEvent):
    episode_id: int = Field(alias="episodeId")
    episode_number: int = Field(alias="episodeNumber")


class EpisodeRef(EventPayload):
    id: int
    number: int


class ChangeEpisodeEvent(RoomEvent):
    episode: EpisodeRef


class ReplyRef(EventPayload):
    id: Optional[int] = None


class RoomMessageEvent(RoomEvent):
    message: str
    reply_to: Optional[ReplyRef] = Field(default=None, alias="replyTo")

    @field_validator("message", mode="before")
    @classmethod
    def coerce_message(cls, value):
        return _as_text(value)


class DeleteRoomMessageEvent(RoomEvent):
    message_id: int = Field(alias="messageId")


class TransferHostEvent(RoomEvent):
    new_host_id: int = Field(alias="newHostId")


class SendMessageEvent(EventPayload):
    message: str
    avatar: Optional[str] = None
    deco: Optional[str] = None
    reply_id: Optional[int] = None

    @field_validator("message", mode="before")
    @classmethod
    def coerce_message(cls, value):
        return _as_text(value)


class PinMessageEvent(EventPayload):
    id: int
    pinned_by: Optional[int] = None


class MessageRefEvent(EventPayload):
    id: int
