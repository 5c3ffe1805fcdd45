"""
Host Coordinator: one controlling user per room.

A host is either elected locally (first joiner, nothing persisted) or
confirmed from the store. A persisted host always wins over a locally elected
one, except a stored value this process has just failed over from. Failover
picks the earliest-joined remaining member.
"""
from dataclasses import dataclass
from typing import Dict, Optional

from errors import Unauthorized
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class HostAssignment:
    user_id: int
    confirmed: bool  # True once the value is known to be persisted


class HostCoordinator:
    def __init__(self, store, transport, rooms, connections, tasks):
        self.store = store
        self.transport = transport
        self.rooms = rooms
        self.connections = connections
        self.tasks = tasks
        self.assignments: Dict[str, HostAssignment] = {}
        # room id -> failover host whose store write has not landed yet
        self.persisting: Dict[str, int] = {}
        # room id -> host replaced by this process's last persisted failover
        self.replaced: Dict[str, int] = {}

    def current(self, room_id: str) -> Optional[int]:
        assignment = self.assignments.get(room_id)
        return assignment.user_id if assignment else None

    def is_host(self, room_id: str, user_id) -> bool:
        host_id = self.current(room_id)
        if host_id is None:
            return False
        try:
            return int(host_id) == int(user_id)
        except (TypeError, ValueError):
            return False

    def resolve(self, room_id: str, stored_host_id: Optional[int], joining_user_id: int) -> int:
        """Settle the room's host for a join and return it.

        A stored value older than this process's own failover is ignored:
        either the failover write is still in flight, or the join read the
        record before it landed.
        """
        cached = self.assignments.get(room_id)
        pending = self.persisting.get(room_id)
        if pending is not None:
            stored_host_id = pending
        elif cached is not None and stored_host_id is not None and stored_host_id == self.replaced.get(room_id):
            stored_host_id = cached.user_id
        if stored_host_id is not None:
            if cached is None or cached.user_id != stored_host_id or not cached.confirmed:
                if cached is not None and cached.user_id != stored_host_id:
                    logger.info(f"Room {room_id}: stored host {stored_host_id} replaces cached host {cached.user_id}")
                self.assignments[room_id] = HostAssignment(stored_host_id, confirmed=True)
        elif cached is None:
            self.assignments[room_id] = HostAssignment(joining_user_id, confirmed=False)
            logger.info(f"Room {room_id}: first joiner {joining_user_id} elected host")
        return self.assignments[room_id].user_id

    def clear(self, room_id: str) -> None:
        self.replaced.pop(room_id, None)
        if self.assignments.pop(room_id, None) is not None:
            logger.debug(f"Cleared host of room {room_id}")

    async def transfer(self, room_id: str, requester, new_host_id: int) -> None:
        if not self.is_host(room_id, requester.id):
            raise Unauthorized("Only the current host can transfer host status")

        await self.store.set_host(room_id, new_host_id)
        self.persisting.pop(room_id, None)
        self.replaced.pop(room_id, None)

        if not self.rooms.has_members(room_id):
            logger.info(f"Room {room_id} emptied during host transfer; nothing cached")
            return
        self.assignments[room_id] = HostAssignment(new_host_id, confirmed=True)
        logger.info(f"Host of room {room_id} transferred from {requester.id} to {new_host_id}")

        await self.transport.emit("host_changed", {"newHostId": new_host_id}, room=room_id)
        for sid in self.rooms.members_of(room_id):
            member = self.connections.get(sid)
            if member is not None:
                await self.transport.emit("host_status", {"isHost": member.id == new_host_id}, to=sid)

    def failover(self, room_id: str, departing) -> Optional[int]:
        """Pick a new host after ``departing`` left a still populated room.

        Must be called after the departing connection was removed from the
        membership. Returns the new host's user id, or None when nothing
        changed (departing user was not host, the room is empty, or the same
        user is still present through another connection).
        """
        assignment = self.assignments.get(room_id)
        if assignment is None or assignment.user_id != departing.id:
            return None

        remaining = [self.connections.get(sid) for sid in self.rooms.members_of(room_id)]
        remaining = [member for member in remaining if member is not None]
        if not remaining:
            return None
        if any(member.id == departing.id for member in remaining):
            return None

        successor = remaining[0]
        self.assignments[room_id] = HostAssignment(successor.id, assignment.confirmed)
        logger.info(f"Host {departing.id} left room {room_id}; {successor.id} is the new host")
        if assignment.confirmed:
            self.persisting[room_id] = successor.id
            self.replaced[room_id] = departing.id
            self.tasks.spawn(
                self._persist_failover(room_id, successor.id),
                f"persist failover host {successor.id} for room {room_id}",
            )
        return successor.id

    async def _persist_failover(self, room_id: str, host_id: int) -> None:
        try:
            await self.store.set_host(room_id, host_id)
        finally:
            if self.persisting.get(room_id) == host_id:
                del self.persisting[room_id]

    async def announce(self, room_id: str, new_host_id: int) -> None:
        await self.transport.emit("host_changed", {"newHostId": new_host_id}, room=room_id)
        for sid in self.rooms.members_of(room_id):
            member = self.connections.get(sid)
            if member is not None and member.id == new_host_id:
                await self.transport.emit("host_status", {"isHost": True}, to=sid)
