from pydantic import BaseModel
from typing import Optional


class CreateRoomRequest(BaseModel):
    room_id: Optional[str] = None
    host_id: Optional[int] = None
    episode_id: Optional[int] = None
    episode: Optional[int] = None

class RoomResponse(BaseModel):
    room_id: str
    host_id: Optional[int]
    episode_id: Optional[int]
    episode: Optional[int]
    current_viewers: int
    status: str

class OnlineMember(BaseModel):
    id: int
    username: str
    connection_id: str

class RoomDetailsResponse(RoomResponse):
    online_members_count: int
    online_members: list[OnlineMember]
    current_host_id: Optional[int]
    playback_state: Optional[dict] = None

class DeleteMessagesResponse(BaseModel):
    message: str
    deleted: int
