"""
Playback Synchronizer.

Keeps the ephemeral ``{episode, playbackState}`` snapshot of every occupied
room. Only the room's host may change it; every accepted change is rebroadcast
to the room as a ``video_control_event`` so clients converge on the host's
timeline. Late joiners pull the snapshot with ``request_host_sync``.
"""
import random
import string
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from errors import NoHostState, NoState, Unauthorized
from logging_config import get_logger

logger = get_logger(__name__)


def new_event_id() -> str:
    """Millisecond timestamp followed by a short random suffix.

    Clients only use it to drop replayed events; it is not a sequence number.
    """
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=8))
    return f"{int(time.time() * 1000)}{suffix}"


@dataclass(frozen=True)
class Episode:
    id: Optional[int]
    number: Optional[int]

    def to_dict(self) -> dict:
        return {"id": self.id, "number": self.number}


@dataclass(frozen=True)
class PlaybackState:
    action: str = "pause"
    time: float = 0

    def to_dict(self) -> dict:
        return {"action": self.action, "time": self.time}


@dataclass(frozen=True)
class RoomState:
    episode: Episode
    playback: PlaybackState = field(default_factory=PlaybackState)

    def to_dict(self) -> dict:
        return {"episode": self.episode.to_dict(), "playbackState": self.playback.to_dict()}


class PlaybackSynchronizer:
    def __init__(self, store, transport, hosts, tasks):
        self.store = store
        self.transport = transport
        self.hosts = hosts
        self.tasks = tasks
        # Snapshots are immutable; every change replaces the whole entry.
        self.states: Dict[str, RoomState] = {}

    def initialize(self, room_id: str, episode: Episode) -> RoomState:
        """Seed a paused snapshot unless the room already has one."""
        state = self.states.get(room_id)
        if state is None:
            state = self.states[room_id] = RoomState(episode)
            logger.info(f"Initialized state for room {room_id}: {state.to_dict()}")
        return state

    def drop(self, room_id: str) -> None:
        self.states.pop(room_id, None)

    def query_snapshot(self, room_id: str) -> RoomState:
        state = self.states.get(room_id)
        if state is None:
            raise NoState(room_id)
        return state

    def sync_request(self, room_id: str) -> dict:
        state = self.states.get(room_id)
        if state is None:
            raise NoHostState(room_id)
        return {"action": state.playback.action, "time": state.playback.time, "eventId": new_event_id()}

    def _require_host(self, room_id: str, requester, message: str) -> None:
        if not self.hosts.is_host(room_id, requester.id):
            logger.warning(f"User {requester.id} is not host of room {room_id}: {message}")
            raise Unauthorized(message)

    async def apply_control(self, room_id: str, requester, action: str, time: float,
                            event_id: Optional[str] = None) -> dict:
        self._require_host(room_id, requester, "Only the host can control the video")
        state = self.states.get(room_id)
        if state is None:
            raise NoState(room_id)

        self.states[room_id] = RoomState(state.episode, PlaybackState(action, time))
        event = {
            "action": action,
            "time": time,
            "userId": requester.id,
            "eventId": event_id or new_event_id(),
        }
        await self.transport.emit("video_control_event", event, room=room_id)
        logger.debug(f"Video control in room {room_id}: {action} at {time} (eventId {event['eventId']})")

        if action == "play":
            self.tasks.spawn(self.store.set_status(room_id, "live"), f"mark room {room_id} live")
        return event

    async def change_episode(self, room_id: str, requester, episode: Episode) -> None:
        self._require_host(room_id, requester, "Only the host can change the episode")

        await self.store.update_episode(room_id, episode.id, episode.number)

        if room_id in self.states:
            self.states[room_id] = RoomState(episode)
        logger.info(f"Episode changed in room {room_id}: ID {episode.id}, Number {episode.number}")

        await self.transport.emit("episode_changed", {"episode": episode.to_dict()}, room=room_id)
        await self.transport.emit("video_control_event", {
            "action": "pause",
            "time": 0,
            "userId": requester.id,
            "eventId": new_event_id(),
        }, room=room_id)

    async def stream_start(self, room_id: str, requester, episode: Episode) -> None:
        self._require_host(room_id, requester, "Only the host can start the stream")

        await self.store.update_episode(room_id, episode.id, episode.number, status="live")

        state = self.states.get(room_id)
        if state is not None:
            self.states[room_id] = RoomState(episode, state.playback)
        logger.info(f"Stream started by host in room {room_id} for episode {episode.id} (#{episode.number})")

        await self.transport.emit("stream_started", {
            "roomId": room_id,
            "episodeId": episode.id,
            "episodeNumber": episode.number,
        }, room=room_id)
