from typing import Dict, List, Optional

from logging_config import get_logger

logger = get_logger(__name__)

class RoomRegistry:
    """Room id -> member socket ids, kept in join order.

    A room exists here only while it has at least one member.
    """

    def __init__(self):
        self.members: Dict[str, Dict[str, None]] = {}

    def join(self, room_id: str, sid: str) -> bool:
        """Add a member; True when it is the room's first one."""
        members = self.members.get(room_id)
        first = members is None
        if first:
            members = self.members[room_id] = {}
        members[sid] = None
        logger.debug(f"Connection {sid} joined room {room_id} ({len(members)} members)")
        return first

    def leave(self, room_id: str, sid: str) -> Optional[bool]:
        """Remove a member; True when the room became empty, None if sid was not a member."""
        members = self.members.get(room_id)
        if members is None or sid not in members:
            return None
        del members[sid]
        if members:
            return False
        del self.members[room_id]
        logger.debug(f"Room {room_id} has no members left")
        return True

    def drop(self, room_id: str) -> List[str]:
        return list(self.members.pop(room_id, {}))

    def contains(self, room_id: str, sid: str) -> bool:
        return sid in self.members.get(room_id, {})

    def has_members(self, room_id: str) -> bool:
        return room_id in self.members

    def members_of(self, room_id: str) -> List[str]:
        return list(self.members.get(room_id, {}))

    def rooms_of(self, sid: str) -> List[str]:
        return [room_id for room_id, members in self.members.items() if sid in members]
