"""
Room engine: owns every in-memory registry and implements the inbound events.

One instance per server. Handlers first await whatever they need from the
store and then commit their in-memory changes in a single synchronous step, so
interleaved handlers for the same room never observe a half-applied update.
"""
import time
from dataclasses import dataclass
from typing import List, Optional

from errors import PersistenceFailure, RoomNotFound, Unauthorized, UnknownConnection, NoState
from logging_config import get_logger
from roles import Permission, can

from engine.hosts import HostCoordinator
from engine.messages import MessageFanout
from engine.playback import Episode, PlaybackSynchronizer, RoomState
from engine.registry import ConnectedClient, ConnectionRegistry, PresenceBroadcaster, resolve_identity
from engine.rooms import RoomRegistry
from engine.tasks import BestEffortTasks
from engine.transport import Transport

logger = get_logger(__name__)


@dataclass
class Departure:
    room_id: str
    client: ConnectedClient
    emptied: bool
    new_host_id: Optional[int] = None


class RoomEngine:
    def __init__(self, store, transport: Transport, clock=time.time, **fanout_options):
        self.store = store
        self.transport = transport
        self.tasks = BestEffortTasks()
        self.connections = ConnectionRegistry()
        self.presence = PresenceBroadcaster(self.connections, transport)
        self.rooms = RoomRegistry()
        self.hosts = HostCoordinator(store, transport, self.rooms, self.connections, self.tasks)
        self.playback = PlaybackSynchronizer(store, transport, self.hosts, self.tasks)
        self.messages = MessageFanout(store, transport, self.connections, clock=clock, **fanout_options)

    def client(self, sid: str) -> ConnectedClient:
        client = self.connections.get(sid)
        if client is None:
            raise UnknownConnection(sid)
        return client

    async def report_error(self, sid: str, message: str) -> None:
        await self.transport.emit("error", {"message": message}, to=sid)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, sid: str, auth: Optional[dict]) -> ConnectedClient:
        client = resolve_identity(sid, auth)
        self.connections.register(client)
        logger.info(f"User {client.id} ({client.username}) connected as {sid}")
        await self.presence.publish()
        return client

    async def disconnect(self, sid: str) -> None:
        client = self.connections.get(sid)
        if client is None:
            logger.debug(f"Disconnect for unknown connection {sid}")
            return

        departures = [self._depart(room_id, client) for room_id in self.rooms.rooms_of(sid)]
        self.connections.unregister(sid)

        for departure in departures:
            if departure is not None:
                self.tasks.spawn(
                    self._announce_departure(departure),
                    f"announce departure of {sid} from room {departure.room_id}",
                )
        logger.info(f"User {client.id} disconnected ({sid}), left {len(departures)} rooms")
        await self.presence.publish()

    async def kick(self, sid: str) -> None:
        await self.transport.disconnect(sid)

    # ------------------------------------------------------------------
    # Room membership
    # ------------------------------------------------------------------

    async def join_room(self, sid: str, room_id: str) -> Optional[RoomState]:
        client = self.client(sid)
        record = await self.store.get_room(room_id)
        if record is None:
            logger.info(f"Join rejected: room {room_id} not found")
            raise RoomNotFound(room_id)

        rejoin = self.rooms.contains(room_id, sid)
        count = record.current_viewers
        incremented = False
        if not rejoin:
            count = await self.store.increment_viewers(room_id)
            if count is None:
                raise RoomNotFound(room_id)
            incremented = True

        # The connection may have dropped, or joined through another handler,
        # while the store calls were suspended.
        if self.connections.get(sid) is not client:
            logger.info(f"Connection {sid} went away while joining room {room_id}")
            if incremented:
                self._undo_increment(room_id)
            return None
        if incremented and self.rooms.contains(room_id, sid):
            self._undo_increment(room_id)
            rejoin = True

        # No awaits until every registry agrees on the new member.
        self.rooms.join(room_id, sid)
        state = self.playback.initialize(room_id, Episode(record.episode_id, record.episode))
        host_id = self.hosts.resolve(room_id, record.host_id, client.id)

        await self.transport.enter_room(sid, room_id)
        logger.info(f"User {client.id} ({sid}) joined room {room_id}; host is {host_id}")

        await self.transport.emit("host_status", {"isHost": self.hosts.is_host(room_id, client.id)}, to=sid)
        if not rejoin:
            await self.transport.emit("viewer_count_update", {"count": count}, room=room_id)
            await self.transport.emit("user_joined", {"user": client.summary()}, room=room_id)
        await self.transport.emit("room_state", state.to_dict(), to=sid)
        return state

    def _undo_increment(self, room_id: str) -> None:
        self.tasks.spawn(self.store.decrement_viewers(room_id), f"undo viewer increment for room {room_id}")

    def _depart(self, room_id: str, client: ConnectedClient) -> Optional[Departure]:
        """Synchronous half of a leave: membership, state, host."""
        emptied = self.rooms.leave(room_id, client.sid)
        if emptied is None:
            return None
        if emptied:
            self.playback.drop(room_id)
            self.hosts.clear(room_id)
            logger.info(f"Cleared room {room_id} state")
            return Departure(room_id, client, emptied=True)
        return Departure(room_id, client, emptied=False, new_host_id=self.hosts.failover(room_id, client))

    async def _announce_departure(self, departure: Departure) -> None:
        room_id = departure.room_id
        try:
            count = await self.store.decrement_viewers(room_id)
        except PersistenceFailure as e:
            logger.warning(f"Could not decrement viewers of room {room_id}: {e}")
            count = None

        if count is not None:
            await self.transport.emit("viewer_count_update", {"count": count}, room=room_id)
        await self.transport.emit("user_left", {"user": departure.client.summary(with_avatar=False)}, room=room_id)
        if departure.new_host_id is not None:
            await self.hosts.announce(room_id, departure.new_host_id)

    async def leave_room(self, sid: str, room_id: str) -> None:
        client = self.client(sid)
        departure = self._depart(room_id, client)
        await self.transport.leave_room(sid, room_id)
        if departure is None:
            logger.debug(f"Connection {sid} left room {room_id} without being a member")
            return
        logger.info(f"User {client.id} ({sid}) left room {room_id}")
        await self._announce_departure(departure)

    async def end_live(self, sid: str, room_id: str) -> None:
        client = self.client(sid)
        if not self.hosts.is_host(room_id, client.id) and not can(client.role, Permission.END_ANY_LIVE):
            logger.warning(f"User {client.id} may not end room {room_id}")
            raise Unauthorized("Only the host can end the live")

        await self.store.delete_room_messages(room_id)
        deleted = await self.store.delete_room(room_id)

        members = self.rooms.drop(room_id)
        self.playback.drop(room_id)
        self.hosts.clear(room_id)

        await self.transport.emit("room_ended", {"roomId": room_id}, room=room_id)
        for member_sid in members:
            await self.transport.leave_room(member_sid, room_id)
        logger.info(f"Room {room_id} ended by user {client.id} (record deleted={deleted}, {len(members)} members removed)")

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    async def request_room_state(self, sid: str, room_id: str) -> dict:
        self.client(sid)
        record = await self.store.get_room(room_id)
        if record is None:
            raise RoomNotFound(room_id)
        try:
            state = self.playback.query_snapshot(room_id)
        except NoState:
            state = RoomState(Episode(record.episode_id, record.episode))
        payload = state.to_dict()
        await self.transport.emit("room_state", payload, to=sid)
        return payload

    async def video_control(self, sid: str, room_id: str, action: str, time: float,
                            event_id: Optional[str] = None) -> dict:
        return await self.playback.apply_control(room_id, self.client(sid), action, time, event_id)

    async def request_host_sync(self, sid: str, room_id: str) -> dict:
        self.client(sid)
        response = self.playback.sync_request(room_id)
        await self.transport.emit("host_sync_response", response, to=sid)
        return response

    async def stream_start(self, sid: str, room_id: str, episode_id: int, episode_number: int) -> None:
        await self.playback.stream_start(room_id, self.client(sid), Episode(episode_id, episode_number))

    async def change_episode(self, sid: str, room_id: str, episode_id: int, episode_number: int) -> None:
        await self.playback.change_episode(room_id, self.client(sid), Episode(episode_id, episode_number))

    async def transfer_host(self, sid: str, room_id: str, new_host_id: int) -> None:
        await self.hosts.transfer(room_id, self.client(sid), new_host_id)

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def room_message(self, sid: str, room_id: str, message, reply_to_id: Optional[int] = None) -> dict:
        return await self.messages.send_room_message(room_id, self.client(sid), message, reply_to_id)

    async def delete_room_message(self, sid: str, room_id: str, message_id: int) -> None:
        await self.messages.delete_room_message(room_id, self.client(sid), message_id)

    async def send_message(self, sid: str, message, avatar: Optional[str] = None,
                           deco: Optional[str] = None, reply_id: Optional[int] = None) -> dict:
        return await self.messages.send_global_message(self.client(sid), message, avatar, deco, reply_id)

    async def pin_message(self, sid: str, message_id: int, pinned_by: Optional[int] = None) -> dict:
        return await self.messages.pin_message(self.client(sid), message_id, pinned_by)

    async def unpin_message(self, sid: str, message_id: int) -> None:
        await self.messages.unpin_message(self.client(sid), message_id)

    async def delete_message(self, sid: str, message_id: int) -> None:
        await self.messages.delete_message(self.client(sid), message_id)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def members_of(self, room_id: str) -> List[ConnectedClient]:
        members = (self.connections.get(sid) for sid in self.rooms.members_of(room_id))
        return [member for member in members if member is not None]

    async def shutdown(self) -> None:
        await self.tasks.drain()
