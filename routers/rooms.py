import uuid

from fastapi import APIRouter, Depends, HTTPException, Request

from backend import RedisBackend
from engine.service import RoomEngine
from errors import NoState, PersistenceFailure
from logging_config import get_logger
from routers.dependencies import get_backend, get_engine
from schemas.rooms import CreateRoomRequest, OnlineMember, RoomDetailsResponse, RoomResponse

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.post("/", response_model=RoomResponse, status_code=201)
async def create_room(room: CreateRoomRequest, request: Request, backend: RedisBackend = Depends(get_backend)):
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Room creation request from {client_host}, episode_id: {room.episode_id}, episode: {room.episode}")
    room_id = room.room_id or uuid.uuid4().hex

    try:
        if await backend.get_room(room_id) is not None:
            logger.warning(f"Room creation failed: room {room_id} already exists")
            raise HTTPException(status_code=409, detail="Room already exists")
        record = await backend.create_room(
            room_id, host_id=room.host_id, episode_id=room.episode_id, episode=room.episode
        )
    except PersistenceFailure as e:
        logger.error(f"Error creating room: {e}")
        raise HTTPException(status_code=503, detail="Failed to create room")

    logger.info(f"Room {room_id} created successfully")
    return RoomResponse(**record.to_dict())


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, engine: RoomEngine = Depends(get_engine)):
    """
    Persisted room record plus the live view of this server:
    connected members, the current host and the cached playback state.
    """
    try:
        record = await engine.store.get_room(room_id)
    except PersistenceFailure as e:
        logger.error(f"Error fetching room {room_id}: {e}")
        raise HTTPException(status_code=503, detail="Failed to fetch room")
    if record is None:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    members = engine.members_of(room_id)
    try:
        playback_state = engine.playback.query_snapshot(room_id).to_dict()
    except NoState:
        playback_state = None

    logger.debug(f"Room details retrieved for {room_id}: {len(members)} members online")
    return RoomDetailsResponse(
        **record.to_dict(),
        online_members_count=len(members),
        online_members=[OnlineMember(id=m.id, username=m.username, connection_id=m.sid) for m in members],
        current_host_id=engine.hosts.current(room_id),
        playback_state=playback_state,
    )
